from __future__ import annotations

import logging
from typing import Optional, Tuple

from .clock import HOUR, MINUTE, SECOND_MS, elapsed_seconds
from .schemas import (
    ActivityStatus,
    BreakTracker,
    FinalizedShift,
    LiveView,
    Snapshot,
    TimerMode,
    Totals,
)


logger = logging.getLogger(__name__)

QUALIFYING_BREAK_SECONDS = 45 * MINUTE
SPLIT_SHORT_SECONDS = 15 * MINUTE
SPLIT_LONG_SECONDS = 30 * MINUTE
EXTENSION_BREAK_SECONDS = 15 * MINUTE
DRIVING_ALLOWANCE_SECONDS = int(4.5 * HOUR)


class WorkTimeError(RuntimeError):
    """Base error of the work-time engine."""


class TransitionRejected(WorkTimeError):
    """Raised when a transition is requested in a state that has no meaning for it."""

    def __init__(self, action: str, status: ActivityStatus) -> None:
        super().__init__(f"Cannot {action} while {status.value}")
        self.action = action
        self.status = status


def _require_active(snapshot: Snapshot, action: str) -> None:
    if snapshot.is_idle or snapshot.segment_start_ms is None:
        raise TransitionRejected(action, snapshot.status)


def _close_driving(snapshot: Snapshot, now_ms: int) -> Snapshot:
    if snapshot.driving_segment_start_ms is None:
        return snapshot
    driven = elapsed_seconds(snapshot.driving_segment_start_ms, now_ms)
    totals = snapshot.totals.model_copy(update={"driving": snapshot.totals.driving + driven})
    return snapshot.model_copy(
        update={
            "totals": totals,
            "driving_cycle_total": snapshot.driving_cycle_total + driven,
            "driving_segment_start_ms": None,
        }
    )


def _roll_up(snapshot: Snapshot, now_ms: int) -> Tuple[Snapshot, int, int]:
    """Close the open segment into the totals.

    Returns the updated snapshot, the closed segment's whole seconds and the
    boundary (ms) at which the next segment starts. The boundary carries the
    sub-second remainder forward so no time is lost between segments.
    """
    elapsed = elapsed_seconds(snapshot.segment_start_ms, now_ms)
    boundary = (snapshot.segment_start_ms or now_ms) + elapsed * SECOND_MS
    totals = snapshot.totals
    work_cycle = snapshot.work_cycle_total
    if snapshot.status is ActivityStatus.WORKING:
        totals = totals.model_copy(update={"work": totals.work + elapsed})
        work_cycle += elapsed
    elif snapshot.status is ActivityStatus.POA:
        totals = totals.model_copy(update={"poa": totals.poa + elapsed})
    elif snapshot.status is ActivityStatus.BREAK:
        totals = totals.model_copy(update={"break_": totals.break_ + elapsed})
    rolled = snapshot.model_copy(update={"totals": totals, "work_cycle_total": work_cycle})
    return _close_driving(rolled, now_ms), elapsed, boundary


def completes_qualifying_break(tracker: BreakTracker, closed_seconds: int) -> bool:
    """True when a closed break resets the work cycle (45 min, or a 15+30 / 30+15 split)."""
    if closed_seconds >= QUALIFYING_BREAK_SECONDS:
        return True
    if tracker.has_15_min_taken and closed_seconds >= SPLIT_LONG_SECONDS:
        return True
    return tracker.last_break_segment_seconds >= SPLIT_LONG_SECONDS and closed_seconds >= SPLIT_SHORT_SECONDS


def start_shift(snapshot: Snapshot, now_ms: int, session_id: Optional[str] = None) -> Snapshot:
    if not snapshot.is_idle:
        raise TransitionRejected("start a shift", snapshot.status)
    return Snapshot(
        status=ActivityStatus.WORKING,
        timer_mode=TimerMode.SIX_HOUR,
        shift_start_ms=now_ms,
        segment_start_ms=now_ms,
        external_session_id=session_id,
    )


def attach_session(snapshot: Snapshot, session_id: Optional[str]) -> Snapshot:
    return snapshot.model_copy(update={"external_session_id": session_id})


def toggle_break(snapshot: Snapshot, now_ms: int) -> Snapshot:
    _require_active(snapshot, "toggle a break")
    rolled, closed, boundary = _roll_up(snapshot, now_ms)

    if snapshot.status is not ActivityStatus.BREAK:
        return rolled.model_copy(
            update={
                "status": ActivityStatus.BREAK,
                "segment_start_ms": boundary,
                "is_driving": False,
            }
        )

    timer_mode = rolled.timer_mode
    if closed >= EXTENSION_BREAK_SECONDS and timer_mode is TimerMode.SIX_HOUR:
        timer_mode = TimerMode.NINE_HOUR
        logger.info("Break of %ss extends the work cycle to 9h", closed)

    tracker = rolled.break_tracker
    work_cycle = rolled.work_cycle_total
    driving_cycle = rolled.driving_cycle_total
    if completes_qualifying_break(tracker, closed):
        logger.info("Qualifying break of %ss resets the work cycle", closed)
        tracker = BreakTracker()
        work_cycle = 0
        driving_cycle = 0
    else:
        tracker = BreakTracker(
            has_15_min_taken=tracker.has_15_min_taken or closed >= SPLIT_SHORT_SECONDS,
            last_break_segment_seconds=closed,
        )

    return rolled.model_copy(
        update={
            "status": ActivityStatus.WORKING,
            "segment_start_ms": boundary,
            "timer_mode": timer_mode,
            "break_tracker": tracker,
            "work_cycle_total": work_cycle,
            "driving_cycle_total": driving_cycle,
            "is_driving": False,
        }
    )


def toggle_poa(snapshot: Snapshot, now_ms: int) -> Snapshot:
    _require_active(snapshot, "toggle availability")
    if snapshot.status is ActivityStatus.BREAK:
        return snapshot
    rolled, _, boundary = _roll_up(snapshot, now_ms)
    if snapshot.status is ActivityStatus.POA:
        return rolled.model_copy(
            update={
                "status": ActivityStatus.WORKING,
                "segment_start_ms": boundary,
                "driving_segment_start_ms": boundary if rolled.is_driving else None,
            }
        )
    return rolled.model_copy(update={"status": ActivityStatus.POA, "segment_start_ms": boundary})


def set_driving(snapshot: Snapshot, is_driving: bool, now_ms: int) -> Snapshot:
    """Record a driving flip. Driving time only accrues inside Working segments."""
    if snapshot.is_idle or snapshot.status is ActivityStatus.BREAK:
        return snapshot
    if is_driving == snapshot.is_driving:
        return snapshot
    if is_driving:
        start = now_ms if snapshot.status is ActivityStatus.WORKING else None
        return snapshot.model_copy(update={"is_driving": True, "driving_segment_start_ms": start})
    return _close_driving(snapshot, now_ms).model_copy(update={"is_driving": False})


def end_shift(snapshot: Snapshot, now_ms: int) -> Tuple[Snapshot, FinalizedShift]:
    _require_active(snapshot, "end a shift")
    rolled, _, _ = _roll_up(snapshot, now_ms)
    finalized = FinalizedShift(
        session_id=rolled.external_session_id,
        shift_start_ms=rolled.shift_start_ms if rolled.shift_start_ms is not None else now_ms,
        end_ms=now_ms,
        totals=rolled.totals,
    )
    return Snapshot(), finalized


def live_view(snapshot: Snapshot, now_ms: int) -> LiveView:
    if snapshot.is_idle:
        return LiveView(status=snapshot.status, timer_mode=snapshot.timer_mode)

    elapsed = elapsed_seconds(snapshot.segment_start_ms, now_ms)
    totals = snapshot.totals
    work = totals.work
    poa = totals.poa
    break_seconds = totals.break_
    work_cycle = snapshot.work_cycle_total
    break_duration = 0
    if snapshot.status is ActivityStatus.WORKING:
        work += elapsed
        work_cycle += elapsed
    elif snapshot.status is ActivityStatus.POA:
        poa += elapsed
    elif snapshot.status is ActivityStatus.BREAK:
        break_seconds += elapsed
        break_duration = elapsed

    driven = elapsed_seconds(snapshot.driving_segment_start_ms, now_ms)
    driving = totals.driving + driven
    driving_cycle = snapshot.driving_cycle_total + driven

    return LiveView(
        status=snapshot.status,
        timer_mode=snapshot.timer_mode,
        work_seconds=work,
        poa_seconds=poa,
        break_seconds=break_seconds,
        driving_seconds=driving,
        shift_seconds=elapsed_seconds(snapshot.shift_start_ms, now_ms),
        break_duration_seconds=break_duration,
        work_cycle_seconds=work_cycle,
        work_time_remaining=max(0, snapshot.timer_mode.ceiling_seconds - work_cycle),
        driving_time_remaining=max(0, DRIVING_ALLOWANCE_SECONDS - driving_cycle),
        is_driving=snapshot.is_driving,
        session_id=snapshot.external_session_id,
    )
