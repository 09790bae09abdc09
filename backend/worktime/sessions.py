from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing_extensions import Protocol
from zoneinfo import ZoneInfo

from .clock import as_utc, utcnow
from .compliance import (
    MAX_DAILY_DRIVING_HOURS_REGULAR,
    ComplianceResult,
    DayTotals,
    evaluate,
)
from .config import Settings
from .database import SessionFactory, db_session
from .models import PendingAction, ShiftRecord


logger = logging.getLogger(__name__)

FORTNIGHT_DAYS = 14


class SessionServiceError(RuntimeError):
    """Failure to reach or update the shift record service."""

    def __init__(self, message: str, *, response: Optional[requests.Response] = None) -> None:
        super().__init__(message)
        self.response = response


class SessionService(Protocol):
    def start_session(
        self,
        user_id: str,
        timezone: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Dict[str, Any]: ...

    def end_session(
        self,
        session_id: str,
        work_minutes: int,
        poa_minutes: int,
        break_minutes: int,
        driving_minutes: int,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> None: ...


class LocalSessionService:
    """Stores finalized shifts in the local ``shift_records`` table."""

    def __init__(self, session_factory: SessionFactory, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def start_session(
        self,
        user_id: str,
        timezone: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Dict[str, Any]:
        now = as_utc(self.clock())
        with db_session(self.session_factory) as session:
            record = ShiftRecord(
                user_id=user_id,
                timezone=timezone,
                day=now.astimezone(ZoneInfo(timezone)).date(),
                start_time=now,
                start_lat=latitude,
                start_lng=longitude,
                compliance_violations=[],
            )
            session.add(record)
            session.flush()
            return {"id": str(record.id)}

    def end_session(
        self,
        session_id: str,
        work_minutes: int,
        poa_minutes: int,
        break_minutes: int,
        driving_minutes: int,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> None:
        with db_session(self.session_factory) as session:
            record = session.get(ShiftRecord, int(session_id))
            if record is None:
                raise SessionServiceError(f"Unknown shift record {session_id}")
            record.mark_ended(self.clock(), work_minutes, poa_minutes, break_minutes, driving_minutes)
            record.end_lat = latitude
            record.end_lng = longitude


class RemoteSessionService:
    """Talks to a remote shift record API over HTTP."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = 15) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs):
        url = urljoin(self.base_url, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.update(self._headers())
        try:
            response = requests.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise SessionServiceError(str(exc)) from exc

        if response.status_code >= 400:
            raise SessionServiceError(f"API error {response.status_code}: {response.text}", response=response)

        if response.headers.get("Content-Type", "").startswith("application/json"):
            return response.json()
        return response.content

    def start_session(
        self,
        user_id: str,
        timezone: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload = {
            "user_id": user_id,
            "timezone": timezone,
            "start_lat": latitude,
            "start_lng": longitude,
            "is_manual_entry": False,
        }
        data = self._request("POST", "/work_sessions", json=payload) or {}
        if not isinstance(data, dict) or data.get("id") is None:
            raise SessionServiceError("Session service returned no id")
        return {"id": str(data["id"])}

    def end_session(
        self,
        session_id: str,
        work_minutes: int,
        poa_minutes: int,
        break_minutes: int,
        driving_minutes: int,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> None:
        payload = {
            "end_time": utcnow().isoformat(),
            "total_work_minutes": work_minutes,
            "total_poa_minutes": poa_minutes,
            "total_break_minutes": break_minutes,
            "other_data": {"driving": driving_minutes},
            "end_lat": latitude,
            "end_lng": longitude,
        }
        self._request("PATCH", f"/work_sessions/{session_id}", json=payload)


def build_session_service(config: Settings, session_factory: SessionFactory) -> SessionService:
    if config.session_service == "remote":
        if not config.session_api_url:
            raise ValueError("WT_SESSION_API_URL is required for the remote session service")
        return RemoteSessionService(
            config.session_api_url,
            token=config.session_api_token,
            timeout=config.session_api_timeout,
        )
    return LocalSessionService(session_factory)


# ----------------------------------------------------------------------
# Offline queue
# ----------------------------------------------------------------------
class OfflineQueue:
    """End-of-shift calls that could not be delivered, replayed in order."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    def enqueue(self, session_id: str, payload: Dict[str, Any], error: Optional[str] = None) -> None:
        with db_session(self.session_factory) as session:
            session.add(
                PendingAction(
                    action="END_SHIFT",
                    session_id=session_id,
                    payload=dict(payload),
                    attempts=1,
                    last_error=error,
                )
            )
        logger.info("Queued end of shift %s for later delivery", session_id)

    def pending_count(self) -> int:
        with db_session(self.session_factory) as session:
            return session.query(func.count(PendingAction.id)).scalar() or 0

    def drain(self, service: SessionService) -> int:
        delivered = 0
        with db_session(self.session_factory) as session:
            actions = session.query(PendingAction).order_by(PendingAction.queued_at, PendingAction.id).all()
            for action in actions:
                payload = action.payload or {}
                try:
                    service.end_session(
                        action.session_id,
                        payload.get("work_minutes", 0),
                        payload.get("poa_minutes", 0),
                        payload.get("break_minutes", 0),
                        payload.get("driving_minutes", 0),
                        payload.get("latitude"),
                        payload.get("longitude"),
                    )
                except Exception as exc:
                    action.attempts = (action.attempts or 0) + 1
                    action.last_error = str(exc)
                    logger.warning("Replay of shift %s failed: %s", action.session_id, exc)
                    break
                session.delete(action)
                delivered += 1
        return delivered


# ----------------------------------------------------------------------
# Day aggregation
# ----------------------------------------------------------------------
def list_shifts_for_day(db: Session, user_id: str, day: dt.date) -> List[ShiftRecord]:
    return (
        db.query(ShiftRecord)
        .filter(ShiftRecord.user_id == user_id, ShiftRecord.day == day)
        .order_by(ShiftRecord.start_time.asc())
        .all()
    )


def _finished(records: List[ShiftRecord]) -> List[ShiftRecord]:
    return [record for record in records if record.end_time is not None]


def day_totals(db: Session, user_id: str, day: dt.date) -> DayTotals:
    records = _finished(list_shifts_for_day(db, user_id, day))
    if not records:
        return DayTotals.empty(day)
    return DayTotals(
        date=day,
        work_minutes=sum(record.work_minutes or 0 for record in records),
        driving_minutes=sum(record.driving_minutes or 0 for record in records),
        break_minutes=sum(record.break_minutes or 0 for record in records),
        first_session_start=as_utc(records[0].start_time),
        session_count=len(records),
    )


def previous_day_last_end(db: Session, user_id: str, day: dt.date) -> Optional[dt.datetime]:
    record = (
        db.query(ShiftRecord)
        .filter(
            ShiftRecord.user_id == user_id,
            ShiftRecord.day < day,
            ShiftRecord.end_time.isnot(None),
        )
        .order_by(ShiftRecord.end_time.desc())
        .first()
    )
    return as_utc(record.end_time) if record else None


def fortnightly_driving_minutes(db: Session, user_id: str, day: dt.date) -> int:
    start_day = day - dt.timedelta(days=FORTNIGHT_DAYS - 1)
    total = (
        db.query(func.coalesce(func.sum(ShiftRecord.driving_minutes), 0))
        .filter(
            ShiftRecord.user_id == user_id,
            ShiftRecord.day >= start_day,
            ShiftRecord.day <= day,
        )
        .scalar()
    )
    return int(total or 0)


def weekly_extensions_used(db: Session, user_id: str, day: dt.date) -> int:
    """Days earlier in the same ISO week whose driving went past the regular 9 hours."""
    week_start = day - dt.timedelta(days=day.weekday())
    rows = (
        db.query(ShiftRecord.day, func.sum(ShiftRecord.driving_minutes))
        .filter(
            ShiftRecord.user_id == user_id,
            ShiftRecord.day >= week_start,
            ShiftRecord.day < day,
        )
        .group_by(ShiftRecord.day)
        .all()
    )
    limit = MAX_DAILY_DRIVING_HOURS_REGULAR * 60
    return sum(1 for _, minutes in rows if (minutes or 0) > limit)


def evaluate_day(db: Session, user_id: str, day: dt.date) -> ComplianceResult:
    return evaluate(
        day_totals(db, user_id, day),
        previous_day_last_end(db, user_id, day),
        fortnightly_driving_minutes(db, user_id, day),
        weekly_extensions_used(db, user_id, day),
    )


def score_day(db: Session, user_id: str, day: dt.date) -> ComplianceResult:
    """Evaluate a day and attach the result to each of its shift records."""
    result = evaluate_day(db, user_id, day)
    labels = result.labels()
    for record in list_shifts_for_day(db, user_id, day):
        record.compliance_score = result.score
        record.compliance_violations = list(labels)
        db.add(record)
    db.commit()
    return result


def compliance_map(db: Session, user_id: str, start_day: dt.date, end_day: dt.date) -> Dict[dt.date, ComplianceResult]:
    days = [
        row[0]
        for row in db.query(ShiftRecord.day)
        .filter(
            ShiftRecord.user_id == user_id,
            ShiftRecord.day >= start_day,
            ShiftRecord.day <= end_day,
        )
        .distinct()
        .order_by(ShiftRecord.day.asc())
        .all()
    ]
    return {day: evaluate_day(db, user_id, day) for day in days}
