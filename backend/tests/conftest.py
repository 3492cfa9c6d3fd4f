"""Shared fixtures: isolated settings, a fresh in-memory store and a fake engine."""

import pytest
from fastapi.testclient import TestClient

from converter.config import Settings, get_settings
from converter.db import make_engine
from converter.main import app, get_dispatcher, get_store
from converter.store import JobStore
from converter.worker import ConversionDispatcher

from fakes import EngineRecorder


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        STORAGE_DIR=str(tmp_path / "storage"),
        TRANSCODE_TIMEOUT_SECONDS=5,
        MAX_UPLOAD_BYTES=1024 * 1024,
    )


@pytest.fixture
def store() -> JobStore:
    return JobStore(make_engine("sqlite://"))


@pytest.fixture
def recorder() -> EngineRecorder:
    return EngineRecorder()


@pytest.fixture
def dispatcher(store, settings, recorder) -> ConversionDispatcher:
    return ConversionDispatcher(store, settings, engine_factory=recorder)


@pytest.fixture
def client(store, settings, dispatcher):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
