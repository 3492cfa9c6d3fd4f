# backend/converter/store.py
"""Keyed storage for job records.

Records are keyed by upload id and reachable by conversion id through a
unique index. Every write goes through ``JobStore.update`` or ``create``,
which hold one lock for the duration of the session transaction, so
concurrent progress/status updates to a record are serialized. Reads take
the same lock: an in-memory database is a single shared connection.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from .db import make_engine, init_db, new_session
from .errors import DuplicateJobError, JobNotFound
from .models import Job, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, engine=None):
        self.engine = engine if engine is not None else make_engine()
        init_db(self.engine)
        self._lock = threading.Lock()

    def create(self, job: Job) -> Job:
        with self._lock, new_session(self.engine) as session:
            if session.get(Job, job.id) is not None:
                raise DuplicateJobError(f"Job {job.id} already exists")
            session.add(job)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateJobError(f"Job {job.id} already exists") from exc
            return self._snapshot(job)

    def get(self, upload_id: str) -> Optional[Job]:
        with self._lock, new_session(self.engine) as session:
            job = session.get(Job, upload_id)
            return self._snapshot(job) if job else None

    def get_by_conversion_id(self, conversion_id: str) -> Optional[Job]:
        with self._lock, new_session(self.engine) as session:
            job = session.exec(select(Job).where(Job.conversion_id == conversion_id)).first()
            return self._snapshot(job) if job else None

    def update(self, upload_id: str, mutator: Callable[[Job], None]) -> Job:
        """Apply ``mutator`` to the stored record and commit atomically.

        If the mutator raises, the transaction is rolled back and the
        exception propagates to the caller unchanged.
        """
        with self._lock, new_session(self.engine) as session:
            job = session.get(Job, upload_id)
            if job is None:
                raise JobNotFound(f"Job {upload_id} not found")
            try:
                mutator(job)
                session.add(job)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return self._snapshot(job)

    def purge_finished(self, before: datetime) -> List[Job]:
        """Delete completed/failed records that finished before ``before``."""
        with self._lock, new_session(self.engine) as session:
            stmt = select(Job).where(
                col(Job.status).in_(TERMINAL_STATUSES),
                col(Job.completed_at) < before,
            )
            expired = list(session.exec(stmt).all())
            removed = [self._snapshot(job) for job in expired]
            for job in expired:
                session.delete(job)
            session.commit()
        if removed:
            logger.info("Purged %d finished jobs", len(removed))
        return removed

    @staticmethod
    def _snapshot(job: Job) -> Job:
        return Job.model_validate(job.model_dump())
