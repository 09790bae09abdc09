from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Generator

_TMP_DIR = Path(tempfile.mkdtemp(prefix="worktime-tests-"))
os.environ.setdefault("WT_SQLITE_PATH", str(_TMP_DIR / "worktime.db"))
os.environ.setdefault("WT_JSON_DIR", str(_TMP_DIR / "state"))
os.environ.setdefault("WT_STORAGE", "memory")
os.environ.setdefault("WT_BACKGROUND_LOOP", "false")
os.environ.setdefault("WT_USER_ID", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from worktime import models
from worktime.clock import to_ms
from worktime.config import Settings
from worktime.database import get_db
from worktime.driving import DrivingDetector, PushSource
from worktime.engine import WorkTimeEngine
from worktime.main import app, create_work_engine
from worktime.sessions import LocalSessionService, OfflineQueue
from worktime.state import RuntimeState
from worktime.storage import MemorySnapshotStore


SHIFT_START = dt.datetime(2024, 3, 4, 6, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    """Settable millisecond clock shared by engine and services."""

    def __init__(self, start: dt.datetime = SHIFT_START) -> None:
        self.value = to_ms(start)

    def __call__(self) -> int:
        return self.value

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> int:
        self.value += int((seconds + minutes * 60 + hours * 3600) * 1000)
        return self.value

    def datetime(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.value / 1000, tz=dt.timezone.utc)


class RecordingSink:
    def __init__(self) -> None:
        self.spoken: list[str] = []

    def speak(self, message_key: str) -> None:
        self.spoken.append(message_key)


@pytest.fixture()
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture()
def engine(temp_db_path: Path):
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def runtime_state() -> RuntimeState:
    state = RuntimeState(Settings(timezone="Europe/Berlin"))
    state.apply({"user_id": "driver-1", "timezone": "Europe/Berlin"})
    return state


@pytest.fixture()
def location_source() -> PushSource:
    return PushSource("location")


@pytest.fixture()
def motion_source() -> PushSource:
    return PushSource("motion")


@pytest.fixture()
def work_engine(
    session_factory,
    runtime_state: RuntimeState,
    clock: FakeClock,
    sink: RecordingSink,
    location_source: PushSource,
    motion_source: PushSource,
) -> WorkTimeEngine:
    return WorkTimeEngine(
        context=runtime_state,
        store=MemorySnapshotStore(),
        session_service=LocalSessionService(session_factory, clock=clock.datetime),
        detector=DrivingDetector(location_source, motion_source),
        alert_sink=sink,
        offline_queue=OfflineQueue(session_factory),
        clock=clock,
    )


@pytest.fixture()
def client(session_factory, runtime_state: RuntimeState) -> Generator[TestClient, None, None]:
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_engine = create_work_engine(Settings(storage_backend="memory"), session_factory, runtime_state)
    previous_engine = app.state.work_engine
    previous_state = app.state.runtime_state
    app.state.work_engine = test_engine
    app.state.runtime_state = runtime_state
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.work_engine = previous_engine
    app.state.runtime_state = previous_state
