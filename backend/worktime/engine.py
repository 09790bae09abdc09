from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Callable, List, Optional

from . import alerts, timer
from .clock import local_date, now_ms, to_datetime
from .compliance import ComplianceResult, DayTotals, evaluate
from .driving import DrivingDetector
from .schemas import ActivityStatus, FinalizedShift, LiveView, Snapshot
from .sessions import OfflineQueue, SessionService
from .state import RuntimeState
from .storage import MemorySnapshotStore, SnapshotStore


logger = logging.getLogger(__name__)

Scorer = Callable[[FinalizedShift, str, str], Optional[ComplianceResult]]

DETECTOR_STATES = (ActivityStatus.WORKING, ActivityStatus.POA)


@dataclass
class TickResult:
    view: LiveView
    alerts: List[str] = field(default_factory=list)


@dataclass
class EndedShift:
    shift: FinalizedShift
    day: dt.date
    compliance: Optional[ComplianceResult] = None


def score_single_shift(shift: FinalizedShift, user_id: str, timezone: str) -> ComplianceResult:
    """Evaluate a finalized shift on its own, without history."""
    day = DayTotals(
        date=local_date(shift.shift_start_ms, timezone),
        work_minutes=shift.work_minutes,
        driving_minutes=shift.driving_minutes,
        break_minutes=shift.break_minutes,
        first_session_start=to_datetime(shift.shift_start_ms),
    )
    return evaluate(day)


class WorkTimeEngine:
    """Drives the shift state machine for one driver.

    Every public method is serialized by a re-entrant lock. Transitions
    persist the snapshot and announce themselves through the alert sink;
    :meth:`tick` only computes the live view and threshold alerts.
    """

    def __init__(
        self,
        context: RuntimeState,
        store: Optional[SnapshotStore] = None,
        session_service: Optional[SessionService] = None,
        detector: Optional[DrivingDetector] = None,
        alert_sink: Optional[alerts.AlertSink] = None,
        offline_queue: Optional[OfflineQueue] = None,
        scorer: Optional[Scorer] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.context = context
        self.store: SnapshotStore = store if store is not None else MemorySnapshotStore()
        self.session_service = session_service
        self.detector = detector if detector is not None else DrivingDetector()
        self.alert_sink = alert_sink if alert_sink is not None else alerts.LoggingAlertSink()
        self.offline_queue = offline_queue
        self.scorer: Scorer = scorer or score_single_shift
        self.clock = clock
        self._lock = RLock()
        self._snapshot = Snapshot()
        self._last_work_remaining: Optional[int] = None
        self._last_driving_remaining: Optional[int] = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    def _now(self, value: Optional[int]) -> int:
        return self.clock() if value is None else value

    @property
    def dirty(self) -> bool:
        """True while the store lags behind the in-memory snapshot."""
        with self._lock:
            return self._dirty

    def _persist(self) -> None:
        try:
            if self._snapshot.is_idle:
                self.store.clear()
            else:
                self.store.save(self._snapshot)
        except Exception as exc:
            self._dirty = True
            logger.warning("Snapshot could not be persisted, keeping in-memory state: %s", exc)
            return
        self._dirty = False

    def _announce(self, message_key: str) -> None:
        alerts.dispatch(self.alert_sink, message_key, muted=self.context.alerts_muted)

    def _reset_alert_baseline(self) -> None:
        self._last_work_remaining = None
        self._last_driving_remaining = None

    def _sync_detector(self) -> None:
        if self._snapshot.status in DETECTOR_STATES:
            self.detector.start(is_driving=self._snapshot.is_driving)
        else:
            self.detector.stop()

    def view(self, now: Optional[int] = None) -> LiveView:
        with self._lock:
            return timer.live_view(self._snapshot, self._now(now))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start_shift(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        now: Optional[int] = None,
    ) -> Optional[LiveView]:
        with self._lock:
            if not self._snapshot.is_idle:
                raise timer.TransitionRejected("start a shift", self._snapshot.status)
            context = self.context.snapshot()
            user_id = context["user_id"]
            if not user_id:
                logger.warning("Shift not started: no driver identity available")
                return None

            self.sync_pending()
            current = self._now(now)
            self._snapshot = timer.start_shift(self._snapshot, current)
            session_id = self._open_session(user_id, context["timezone"], latitude, longitude)
            self._snapshot = timer.attach_session(self._snapshot, session_id)
            self._reset_alert_baseline()
            self._persist()
            self._sync_detector()
            logger.info("Shift started for %s (session %s)", user_id, session_id)
            self._announce(alerts.SHIFT_STARTED)
            return timer.live_view(self._snapshot, current)

    def _open_session(
        self,
        user_id: str,
        timezone: str,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> Optional[str]:
        if self.session_service is None:
            return None
        try:
            data = self.session_service.start_session(user_id, timezone, latitude, longitude)
        except Exception as exc:
            logger.warning("Could not open a session record, tracking locally: %s", exc)
            return None
        session_id = data.get("id") if isinstance(data, dict) else None
        return str(session_id) if session_id is not None else None

    def toggle_break(self, now: Optional[int] = None) -> LiveView:
        with self._lock:
            current = self._now(now)
            self._snapshot = timer.toggle_break(self._snapshot, current)
            self._persist()
            self._sync_detector()
            if self._snapshot.status is ActivityStatus.BREAK:
                self._announce(alerts.BREAK_STARTED)
            else:
                self._announce(alerts.WORK_RESUMED)
            return timer.live_view(self._snapshot, current)

    def toggle_poa(self, now: Optional[int] = None) -> LiveView:
        with self._lock:
            current = self._now(now)
            previous = self._snapshot
            self._snapshot = timer.toggle_poa(previous, current)
            if self._snapshot is previous:
                return timer.live_view(self._snapshot, current)
            self._persist()
            if self._snapshot.status is ActivityStatus.POA:
                self._announce(alerts.POA_STARTED)
            else:
                self._announce(alerts.WORK_RESUMED)
            return timer.live_view(self._snapshot, current)

    def end_shift(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        now: Optional[int] = None,
    ) -> EndedShift:
        with self._lock:
            current = self._now(now)
            self._snapshot, finalized = timer.end_shift(self._snapshot, current)
            self.detector.stop()
            self._persist()
            self._reset_alert_baseline()

            context = self.context.snapshot()
            self._close_session(finalized, latitude, longitude)
            day = local_date(finalized.shift_start_ms, context["timezone"])
            compliance: Optional[ComplianceResult] = None
            try:
                compliance = self.scorer(finalized, context["user_id"] or "", context["timezone"])
            except Exception as exc:
                logger.warning("Compliance scoring failed for %s: %s", day, exc)
            logger.info(
                "Shift ended: work=%ss poa=%ss break=%ss driving=%ss",
                finalized.totals.work,
                finalized.totals.poa,
                finalized.totals.break_,
                finalized.totals.driving,
            )
            self._announce(alerts.SHIFT_ENDED)
            return EndedShift(shift=finalized, day=day, compliance=compliance)

    def _close_session(
        self,
        finalized: FinalizedShift,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> None:
        if finalized.session_id is None or self.session_service is None:
            return
        payload = {
            "work_minutes": finalized.work_minutes,
            "poa_minutes": finalized.poa_minutes,
            "break_minutes": finalized.break_minutes,
            "driving_minutes": finalized.driving_minutes,
            "latitude": latitude,
            "longitude": longitude,
        }
        try:
            self.session_service.end_session(
                finalized.session_id,
                payload["work_minutes"],
                payload["poa_minutes"],
                payload["break_minutes"],
                payload["driving_minutes"],
                latitude,
                longitude,
            )
        except Exception as exc:
            logger.warning("Could not close session %s: %s", finalized.session_id, exc)
            if self.offline_queue is not None:
                self.offline_queue.enqueue(finalized.session_id, payload, str(exc))

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    def tick(self, now: Optional[int] = None) -> TickResult:
        with self._lock:
            view = timer.live_view(self._snapshot, self._now(now))
            if self._snapshot.is_idle:
                return TickResult(view=view)
            fired: List[str] = []
            fired.extend(alerts.work_alerts(self._last_work_remaining, view.work_time_remaining))
            fired.extend(alerts.driving_alerts(self._last_driving_remaining, view.driving_time_remaining))
            self._last_work_remaining = view.work_time_remaining
            self._last_driving_remaining = view.driving_time_remaining
            for key in fired:
                self._announce(key)
            return TickResult(view=view, alerts=fired)

    def step_detector(self, now: Optional[int] = None) -> bool:
        with self._lock:
            if not self.detector.running:
                return self._snapshot.is_driving
            current = self._now(now)
            driving = self.detector.step(current)
            if driving != self._snapshot.is_driving:
                self._snapshot = timer.set_driving(self._snapshot, driving, current)
                self._persist()
                logger.info("Driving %s", "detected" if driving else "stopped")
            return self._snapshot.is_driving

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def restore(self, now: Optional[int] = None) -> LiveView:
        """Load the stored snapshot on a cold start.

        An unsaved in-memory snapshot wins over the store; it is written
        back instead of being replaced.
        """
        with self._lock:
            if self._dirty:
                return self._resume_in_memory(now)
            try:
                stored = self.store.load()
            except Exception as exc:
                logger.warning("Snapshot could not be loaded, keeping in-memory state: %s", exc)
                stored = self._snapshot if not self._snapshot.is_idle else None
            self._snapshot = stored if stored is not None else Snapshot()
            self._reset_alert_baseline()
            self._sync_detector()
            return timer.live_view(self._snapshot, self._now(now))

    def _resume_in_memory(self, now: Optional[int]) -> LiveView:
        self._persist()
        self._reset_alert_baseline()
        self._sync_detector()
        return timer.live_view(self._snapshot, self._now(now))

    def on_suspend_hint(self) -> None:
        with self._lock:
            self._persist()

    def on_resume_hint(self, now: Optional[int] = None) -> LiveView:
        with self._lock:
            if self._dirty or not self._snapshot.is_idle:
                view = self._resume_in_memory(now)
            else:
                view = self.restore(now)
            self.sync_pending()
            return view

    def sync_pending(self) -> int:
        if self.offline_queue is None or self.session_service is None:
            return 0
        try:
            delivered = self.offline_queue.drain(self.session_service)
        except Exception as exc:
            logger.warning("Offline queue could not be replayed: %s", exc)
            return 0
        if delivered:
            logger.info("Delivered %s queued shift(s)", delivered)
        return delivered
