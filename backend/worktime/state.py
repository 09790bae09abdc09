from __future__ import annotations

from threading import RLock
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import Settings
from .models import AppSetting


CONTEXT_KEYS = ("user_id", "timezone", "alerts_muted")


def _normalize_timezone(value: Any, fallback: str) -> str:
    if not isinstance(value, str) or not value.strip():
        return fallback
    candidate = value.strip()
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return fallback
    return candidate


class RuntimeState:
    """Driver context that the UI layer can adjust at runtime."""

    def __init__(self, base_settings: Settings):
        self._lock = RLock()
        self._default_timezone = base_settings.timezone
        self.user_id: Optional[str] = base_settings.default_user_id or None
        self.timezone: str = base_settings.timezone
        self.alerts_muted: bool = False

    @property
    def has_identity(self) -> bool:
        with self._lock:
            return bool(self.user_id)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "user_id": self.user_id,
                "timezone": self.timezone,
                "alerts_muted": self.alerts_muted,
            }

    def apply(self, updates: Dict[str, Any]) -> None:
        with self._lock:
            if "user_id" in updates:
                value = updates.get("user_id")
                self.user_id = value.strip() if isinstance(value, str) and value.strip() else None
            if "timezone" in updates and updates["timezone"] is not None:
                self.timezone = _normalize_timezone(updates["timezone"], self._default_timezone)
            if "alerts_muted" in updates and updates["alerts_muted"] is not None:
                value = updates["alerts_muted"]
                if isinstance(value, str):
                    value = value.lower() == "true"
                self.alerts_muted = bool(value)

    def load_from_db(self, session: Session) -> None:
        records = session.query(AppSetting).filter(AppSetting.key.in_(CONTEXT_KEYS)).all()
        if not records:
            return
        decoded: Dict[str, Any] = {}
        for record in records:
            if record.key == "alerts_muted":
                decoded["alerts_muted"] = record.value == "true"
            else:
                decoded[record.key] = record.value or None
        self.apply(decoded)

    def persist(self, session: Session, updates: Dict[str, Any]) -> None:
        for key, value in updates.items():
            if key not in CONTEXT_KEYS:
                continue
            if value is None:
                if key == "user_id":
                    value = ""
                else:
                    continue
            if key == "alerts_muted":
                value = "true" if value else "false"
            record = session.query(AppSetting).filter(AppSetting.key == key).one_or_none()
            if record:
                record.value = str(value)
            else:
                session.add(AppSetting(key=key, value=str(value)))
        session.commit()
