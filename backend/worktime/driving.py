from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from threading import RLock
from typing import Callable, List, Optional

from typing_extensions import Protocol


logger = logging.getLogger(__name__)

FRESHNESS_WINDOW_MS = 8000
MAX_ACCURACY_METERS = 60.0
START_SPEED_KMH = 8.0
STOP_SPEED_KMH = 3.0
REST_GRAVITY = 1.0
MOTION_THRESHOLD = 0.12
SCORE_MIN = -6.0
SCORE_MAX = 6.0
DRIVING_ON_SCORE = 3.0
DRIVING_OFF_SCORE = -3.0
STALE_NUDGE = 0.2


@dataclass(slots=True, frozen=True)
class LocationSample:
    speed_kmh: float
    accuracy_m: float
    sample_time_ms: int


@dataclass(slots=True, frozen=True)
class MotionSample:
    magnitude: float
    sample_time_ms: int

    @classmethod
    def from_acceleration(cls, x: float, y: float, z: float, sample_time_ms: int) -> "MotionSample":
        return cls(magnitude=math.sqrt(x * x + y * y + z * z), sample_time_ms=sample_time_ms)


class Subscription(Protocol):
    def remove(self) -> None: ...


class LocationSource(Protocol):
    def subscribe(self, callback: Callable[[LocationSample], None]) -> Subscription: ...


class MotionSource(Protocol):
    def subscribe(self, callback: Callable[[MotionSample], None]) -> Subscription: ...


class _PushSubscription:
    def __init__(self, source: "PushSource", callback: Callable) -> None:
        self._source = source
        self._callback = callback

    def remove(self) -> None:
        self._source._discard(self._callback)


class PushSource:
    """In-process sample source fed by a UI bridge or a test."""

    def __init__(self, name: str = "source") -> None:
        self.name = name
        self._lock = RLock()
        self._callbacks: List[Callable] = []

    def subscribe(self, callback: Callable) -> _PushSubscription:
        with self._lock:
            self._callbacks.append(callback)
        return _PushSubscription(self, callback)

    def publish(self, sample) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(sample)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def _discard(self, callback: Callable) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


def score_step(
    score: float,
    location: Optional[LocationSample],
    motion: Optional[MotionSample],
    now_ms: int,
) -> float:
    """Advance the hysteresis score by one detector step."""
    speed_fresh = location is not None and (now_ms - location.sample_time_ms) < FRESHNESS_WINDOW_MS
    motion_fresh = motion is not None and (now_ms - motion.sample_time_ms) < FRESHNESS_WINDOW_MS
    moving = motion_fresh and abs(motion.magnitude - REST_GRAVITY) > MOTION_THRESHOLD

    if speed_fresh:
        above_start = location.speed_kmh >= START_SPEED_KMH
        below_stop = location.speed_kmh <= STOP_SPEED_KMH
        if above_start and moving:
            score += 2
        elif above_start:
            score += 1
        elif below_stop:
            score -= 2
        elif not moving:
            score -= 1
    elif motion_fresh:
        score += STALE_NUDGE if moving else -STALE_NUDGE
    # neither signal is fresh: hold the score

    return max(SCORE_MIN, min(SCORE_MAX, score))


def apply_hysteresis(score: float, is_driving: bool) -> bool:
    if score >= DRIVING_ON_SCORE:
        return True
    if score <= DRIVING_OFF_SCORE:
        return False
    return is_driving


class DrivingDetector:
    """Fuses GPS speed and accelerometer magnitude into an is-driving signal.

    Samples are recorded as they arrive; the score only moves in :meth:`step`,
    which the owner calls roughly every 500 ms while the driver is Working or
    on POA. :meth:`stop` is safe to call repeatedly and forces ``is_driving``
    to False.
    """

    def __init__(
        self,
        location_source: Optional[LocationSource] = None,
        motion_source: Optional[MotionSource] = None,
    ) -> None:
        self.location_source = location_source
        self.motion_source = motion_source
        self._lock = RLock()
        self._subscriptions: List[Subscription] = []
        self._last_location: Optional[LocationSample] = None
        self._last_motion: Optional[MotionSample] = None
        self.score: float = 0.0
        self.is_driving: bool = False
        self.running: bool = False

    def start(self, is_driving: bool = False) -> None:
        with self._lock:
            if self.running:
                return
            self.score = 0.0
            self.is_driving = is_driving
            self._last_location = None
            self._last_motion = None
            self._subscribe(self.location_source, self.on_location, "location")
            self._subscribe(self.motion_source, self.on_motion, "motion")
            self.running = True

    def _subscribe(self, source, callback: Callable, kind: str) -> None:
        if source is None:
            logger.warning("No %s source configured, driving detection degraded", kind)
            return
        try:
            self._subscriptions.append(source.subscribe(callback))
        except Exception as exc:
            logger.warning("Could not subscribe to %s updates: %s", kind, exc)

    def stop(self) -> None:
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
            for subscription in subscriptions:
                try:
                    subscription.remove()
                except Exception as exc:  # pragma: no cover - best effort only
                    logger.warning("Failed to cancel sensor subscription: %s", exc)
            self.running = False
            self.is_driving = False
            self.score = 0.0

    def on_location(self, sample: LocationSample) -> None:
        if sample.accuracy_m > MAX_ACCURACY_METERS:
            return
        with self._lock:
            self._last_location = sample

    def on_motion(self, sample: MotionSample) -> None:
        with self._lock:
            self._last_motion = sample

    def step(self, now_ms: int) -> bool:
        with self._lock:
            if not self.running:
                return self.is_driving
            self.score = score_step(self.score, self._last_location, self._last_motion, now_ms)
            driving = apply_hysteresis(self.score, self.is_driving)
            if driving != self.is_driving:
                logger.debug("Driving state changed to %s (score %.1f)", driving, self.score)
            self.is_driving = driving
            return driving
