from __future__ import annotations

import logging
from pathlib import Path
from threading import RLock
from typing import Optional

from pydantic import ValidationError
from typing_extensions import Protocol

from .config import Settings
from .database import SessionFactory, db_session
from .models import AppSetting
from .schemas import Snapshot


logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "timer_snapshot_v4"


class SnapshotStore(Protocol):
    def save(self, snapshot: Snapshot) -> None: ...

    def load(self) -> Optional[Snapshot]: ...

    def clear(self) -> None: ...


def _decode(raw: Optional[str]) -> Optional[Snapshot]:
    if not raw:
        return None
    snapshot = Snapshot.model_validate_json(raw)
    if snapshot.is_idle or snapshot.segment_start_ms is None:
        return None
    return snapshot


class MemorySnapshotStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._raw: Optional[str] = None

    def save(self, snapshot: Snapshot) -> None:
        if snapshot.is_idle:
            self.clear()
            return
        with self._lock:
            self._raw = snapshot.model_dump_json()

    def load(self) -> Optional[Snapshot]:
        with self._lock:
            return _decode(self._raw)

    def clear(self) -> None:
        with self._lock:
            self._raw = None


class JsonSnapshotStore:
    """Keeps the snapshot in a single JSON file under the state directory."""

    def __init__(self, directory: Path, filename: str = f"{SNAPSHOT_KEY}.json") -> None:
        self.path = Path(directory) / filename

    def save(self, snapshot: Snapshot) -> None:
        if snapshot.is_idle:
            self.clear()
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(snapshot.model_dump_json(), encoding="utf-8")
        tmp_path.replace(self.path)

    def load(self) -> Optional[Snapshot]:
        if not self.path.exists():
            return None
        try:
            return _decode(self.path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as exc:
            logger.warning("Discarding unreadable snapshot %s: %s", self.path, exc)
            self.clear()
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class SqlSnapshotStore:
    """Keeps the snapshot as one row of the ``app_settings`` table."""

    def __init__(self, session_factory: SessionFactory, key: str = SNAPSHOT_KEY) -> None:
        self.session_factory = session_factory
        self.key = key

    def save(self, snapshot: Snapshot) -> None:
        if snapshot.is_idle:
            self.clear()
            return
        value = snapshot.model_dump_json()
        with db_session(self.session_factory) as session:
            record = session.query(AppSetting).filter(AppSetting.key == self.key).one_or_none()
            if record:
                record.value = value
            else:
                session.add(AppSetting(key=self.key, value=value))

    def load(self) -> Optional[Snapshot]:
        with db_session(self.session_factory) as session:
            record = session.query(AppSetting).filter(AppSetting.key == self.key).one_or_none()
            raw = record.value if record else None
        try:
            return _decode(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("Discarding unreadable snapshot row %s: %s", self.key, exc)
            self.clear()
            return None

    def clear(self) -> None:
        with db_session(self.session_factory) as session:
            session.query(AppSetting).filter(AppSetting.key == self.key).delete()


def build_snapshot_store(config: Settings, session_factory: SessionFactory) -> SnapshotStore:
    if config.storage_backend == "json":
        return JsonSnapshotStore(config.json_dir)
    if config.storage_backend == "memory":
        return MemorySnapshotStore()
    return SqlSnapshotStore(session_factory)
