from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from typing_extensions import Protocol

from .clock import MINUTE


logger = logging.getLogger(__name__)

WORK_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (45 * MINUTE, "audioWarningWork45"),
    (30 * MINUTE, "audioWarningWork30"),
    (5 * MINUTE, "audioWarningWork5"),
)

DRIVING_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (30 * MINUTE, "audioWarningDriving30"),
    (15 * MINUTE, "audioWarningDriving15"),
    (5 * MINUTE, "audioWarningDriving5"),
)

SHIFT_STARTED = "audioShiftStarted"
SHIFT_ENDED = "audioShiftEnded"
BREAK_STARTED = "audioBreakStarted"
POA_STARTED = "audioPoaStarted"
WORK_RESUMED = "audioResumeWork"


class AlertSink(Protocol):
    def speak(self, message_key: str) -> None: ...


class LoggingAlertSink:
    """Default sink; a UI layer replaces it with speech or a visual banner."""

    def speak(self, message_key: str) -> None:
        logger.info("Alert: %s", message_key)


def crossed_thresholds(
    previous: Optional[int],
    current: int,
    thresholds: Sequence[Tuple[int, str]],
) -> List[str]:
    """Return the alert keys for every downward threshold crossing.

    A threshold fires when ``previous > threshold >= current``. A step that
    crosses several thresholds at once, e.g. after a suspension, returns each
    key from the least to the most urgent.
    """
    if previous is None:
        return []
    return [key for threshold, key in thresholds if previous > threshold >= current]


def work_alerts(previous: Optional[int], current: int) -> List[str]:
    return crossed_thresholds(previous, current, WORK_THRESHOLDS)


def driving_alerts(previous: Optional[int], current: int) -> List[str]:
    return crossed_thresholds(previous, current, DRIVING_THRESHOLDS)


def dispatch(sink: Optional[AlertSink], message_key: str, muted: bool = False) -> bool:
    if sink is None or muted:
        return False
    try:
        sink.speak(message_key)
    except Exception as exc:
        logger.warning("Alert %s could not be delivered: %s", message_key, exc)
        return False
    return True
