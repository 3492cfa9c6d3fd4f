# backend/converter/db.py
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from .config import get_settings


def make_engine(database_url: str = None):
    database_url = database_url or get_settings().DATABASE_URL
    if database_url.startswith("sqlite"):
        # one shared connection so an in-memory database is visible to every thread
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=False)


def init_db(engine):
    SQLModel.metadata.create_all(engine)


def new_session(engine) -> Session:
    # records handed out by the store must stay readable after commit/close
    return Session(engine, expire_on_commit=False)
