from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_serializer

from .clock import HOUR, whole_minutes


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


class ActivityStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    POA = "poa"
    BREAK = "break"


class TimerMode(str, Enum):
    SIX_HOUR = "6h"
    NINE_HOUR = "9h"

    @property
    def ceiling_seconds(self) -> int:
        return 6 * HOUR if self is TimerMode.SIX_HOUR else 9 * HOUR


# ----------------------------------------------------------------------
# Engine state
# ----------------------------------------------------------------------
class Totals(BaseModel):
    """Closed-segment accumulators for the current shift. Driving is part of work."""

    model_config = ConfigDict(frozen=True)

    work: int = 0
    poa: int = 0
    break_: int = 0
    driving: int = 0


class BreakTracker(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_15_min_taken: bool = False
    last_break_segment_seconds: int = 0


class Snapshot(BaseModel):
    """Serializable state of one in-progress shift."""

    model_config = ConfigDict(frozen=True)

    status: ActivityStatus = ActivityStatus.IDLE
    timer_mode: TimerMode = TimerMode.SIX_HOUR
    shift_start_ms: Optional[int] = None
    segment_start_ms: Optional[int] = None
    totals: Totals = Field(default_factory=Totals)
    work_cycle_total: int = 0
    driving_cycle_total: int = 0
    driving_segment_start_ms: Optional[int] = None
    break_tracker: BreakTracker = Field(default_factory=BreakTracker)
    is_driving: bool = False
    external_session_id: Optional[str] = None

    @property
    def is_idle(self) -> bool:
        return self.status is ActivityStatus.IDLE


class LiveView(BaseModel):
    """Display projection of a snapshot at a given instant."""

    status: ActivityStatus
    timer_mode: TimerMode
    work_seconds: int = 0
    poa_seconds: int = 0
    break_seconds: int = 0
    driving_seconds: int = 0
    shift_seconds: int = 0
    break_duration_seconds: int = 0
    work_cycle_seconds: int = 0
    work_time_remaining: int = 0
    driving_time_remaining: int = 0
    is_driving: bool = False
    session_id: Optional[str] = None


class FinalizedShift(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str]
    shift_start_ms: int
    end_ms: int
    totals: Totals

    @property
    def work_minutes(self) -> int:
        return whole_minutes(self.totals.work)

    @property
    def poa_minutes(self) -> int:
        return whole_minutes(self.totals.poa)

    @property
    def break_minutes(self) -> int:
        return whole_minutes(self.totals.break_)

    @property
    def driving_minutes(self) -> int:
        return whole_minutes(self.totals.driving)


# ----------------------------------------------------------------------
# HTTP payloads
# ----------------------------------------------------------------------
class ContextUpdateRequest(BaseModel):
    user_id: Optional[str] = None
    timezone: Optional[str] = None
    alerts_muted: Optional[bool] = None


class ContextResponse(BaseModel):
    user_id: Optional[str]
    timezone: str
    alerts_muted: bool


class PositionRequest(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class LocationSampleRequest(BaseModel):
    speed_kmh: float = Field(ge=0)
    accuracy_m: float = Field(ge=0)
    timestamp_ms: Optional[int] = None


class MotionSampleRequest(BaseModel):
    x: float
    y: float
    z: float
    timestamp_ms: Optional[int] = None


class DetectorResponse(BaseModel):
    score: float
    is_driving: bool
    running: bool


class ViolationResponse(BaseModel):
    kind: str
    label: str
    informational: bool
    amount: Optional[float] = None
    title_key: str
    tip_key: str


class ComplianceResponse(BaseModel):
    date: dt.date
    score: int
    violations: List[ViolationResponse] = Field(default_factory=list)


class ComplianceEvaluateRequest(BaseModel):
    date: dt.date
    session_count: int = Field(default=1, ge=0)
    work_minutes: int = Field(default=0, ge=0)
    driving_minutes: int = Field(default=0, ge=0)
    break_minutes: int = Field(default=0, ge=0)
    first_session_start: Optional[dt.datetime] = None
    previous_day_last_session_end: Optional[dt.datetime] = None
    fortnightly_driving_minutes: int = Field(default=0, ge=0)
    weekly_driving_extensions_used: int = Field(default=0, ge=0)


class FinalizedShiftResponse(BaseModel):
    session_id: Optional[str]
    start_time: dt.datetime
    end_time: dt.datetime
    work_minutes: int
    poa_minutes: int
    break_minutes: int
    driving_minutes: int

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_datetime(self.end_time),
            "work_minutes": self.work_minutes,
            "poa_minutes": self.poa_minutes,
            "break_minutes": self.break_minutes,
            "driving_minutes": self.driving_minutes,
        }


class EndShiftResponse(BaseModel):
    shift: FinalizedShiftResponse
    compliance: Optional[ComplianceResponse] = None


class ShiftRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: str
    day: dt.date
    timezone: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    work_minutes: int
    poa_minutes: int
    break_minutes: int
    driving_minutes: int
    compliance_score: Optional[int]
    compliance_violations: List[str]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "day": self.day.isoformat(),
            "timezone": self.timezone,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_datetime(self.end_time) if self.end_time else None,
            "work_minutes": self.work_minutes,
            "poa_minutes": self.poa_minutes,
            "break_minutes": self.break_minutes,
            "driving_minutes": self.driving_minutes,
            "compliance_score": self.compliance_score,
            "compliance_violations": list(self.compliance_violations or []),
        }


class SyncResponse(BaseModel):
    delivered: int
    pending: int
