from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .clock import HOUR, as_utc


MAX_DAILY_DRIVING_HOURS_REGULAR = 9
MAX_DAILY_DRIVING_HOURS_EXTENDED = 10
MAX_WEEKLY_DRIVING_EXTENSIONS = 2
MAX_FORTNIGHTLY_DRIVING_HOURS = 90
MIN_DAILY_REST_HOURS_REGULAR = 11
MIN_DAILY_REST_HOURS_REDUCED = 9
BREAK_AFTER_6_HOURS_WORK_MINS = 30
BREAK_AFTER_9_HOURS_WORK_MINS = 45
POINTS_PER_VIOLATION = 20


class ViolationKind(str, Enum):
    EXCEEDED_6H_WORK = "EXCEEDED_6H_WORK"
    INSUFFICIENT_BREAK_FOR_9H_WORK = "INSUFFICIENT_BREAK_FOR_9H_WORK"
    INSUFFICIENT_DAILY_REST = "INSUFFICIENT_DAILY_REST"
    REDUCED_DAILY_REST_TAKEN = "REDUCED_DAILY_REST_TAKEN"
    EXCEEDED_4_5H_DRIVING = "EXCEEDED_4_5H_DRIVING"
    EXCEEDED_DAILY_DRIVING_LIMIT = "EXCEEDED_DAILY_DRIVING_LIMIT"
    USED_10H_DRIVING_EXTENSION = "USED_10H_DRIVING_EXTENSION"
    EXCEEDED_WEEKLY_DRIVING_LIMIT = "EXCEEDED_WEEKLY_DRIVING_LIMIT"
    EXCEEDED_WEEKLY_WORK_LIMIT = "EXCEEDED_WEEKLY_WORK_LIMIT"
    WORK_TIME_LIMIT_EXCEEDED = "WORK_TIME_LIMIT_EXCEEDED"
    FORTNIGHTLY_DRIVING_LIMIT_EXCEEDED = "FORTNIGHTLY_DRIVING_LIMIT_EXCEEDED"

    @property
    def informational(self) -> bool:
        return self in INFORMATIONAL_KINDS

    @property
    def title_key(self) -> str:
        return f"violation.{self.value}.title"

    @property
    def tip_key(self) -> str:
        return f"violation.{self.value}.tip"


INFORMATIONAL_KINDS = frozenset(
    {ViolationKind.USED_10H_DRIVING_EXTENSION, ViolationKind.REDUCED_DAILY_REST_TAKEN}
)

_LEGACY_PATTERN = re.compile(r"^\s*([A-Z0-9_]+)(?:\s*\(([-0-9.]+)h?\))?\s*$")


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    amount: Optional[float] = None

    @property
    def informational(self) -> bool:
        return self.kind.informational

    def __str__(self) -> str:
        if self.amount is None:
            return self.kind.value
        return f"{self.kind.value} ({self.amount:.1f}h)"

    @classmethod
    def parse(cls, raw: str) -> Optional["Violation"]:
        """Read a stored violation string such as ``INSUFFICIENT_DAILY_REST (7.5h)``."""
        match = _LEGACY_PATTERN.match(raw or "")
        if not match:
            return None
        try:
            kind = ViolationKind(match.group(1))
        except ValueError:
            return None
        amount = float(match.group(2)) if match.group(2) else None
        return cls(kind=kind, amount=amount)


@dataclass(frozen=True)
class DayTotals:
    date: dt.date
    work_minutes: int = 0
    driving_minutes: int = 0
    break_minutes: int = 0
    first_session_start: Optional[dt.datetime] = None
    session_count: int = 1

    @classmethod
    def empty(cls, date: dt.date) -> "DayTotals":
        return cls(date=date, session_count=0)

    @property
    def is_empty(self) -> bool:
        return self.session_count == 0


@dataclass(frozen=True)
class ComplianceResult:
    score: int = 100
    violations: List[Violation] = field(default_factory=list)

    @property
    def scored_violations(self) -> List[Violation]:
        return [violation for violation in self.violations if not violation.informational]

    def labels(self) -> List[str]:
        return [str(violation) for violation in self.violations]


def _score(violations: Iterable[Violation]) -> int:
    scored = sum(1 for violation in violations if not violation.informational)
    return max(0, 100 - POINTS_PER_VIOLATION * scored)


def _collapse(violations: Iterable[Violation]) -> List[Violation]:
    seen: set[ViolationKind] = set()
    unique: List[Violation] = []
    for violation in violations:
        if violation.kind in seen:
            continue
        seen.add(violation.kind)
        unique.append(violation)
    return unique


def _break_violations(day: DayTotals) -> List[Violation]:
    work_hours = day.work_minutes / 60
    if work_hours > 9 and day.break_minutes < BREAK_AFTER_9_HOURS_WORK_MINS:
        return [Violation(ViolationKind.INSUFFICIENT_BREAK_FOR_9H_WORK)]
    if work_hours > 6 and day.break_minutes < BREAK_AFTER_6_HOURS_WORK_MINS:
        return [Violation(ViolationKind.EXCEEDED_6H_WORK)]
    return []


def _daily_driving_violations(day: DayTotals, weekly_extensions_used: int) -> List[Violation]:
    driving_hours = day.driving_minutes / 60
    if driving_hours <= MAX_DAILY_DRIVING_HOURS_REGULAR:
        return []
    if driving_hours > MAX_DAILY_DRIVING_HOURS_EXTENDED or weekly_extensions_used >= MAX_WEEKLY_DRIVING_EXTENSIONS:
        limit = (
            MAX_DAILY_DRIVING_HOURS_EXTENDED
            if weekly_extensions_used < MAX_WEEKLY_DRIVING_EXTENSIONS
            else MAX_DAILY_DRIVING_HOURS_REGULAR
        )
        return [Violation(ViolationKind.EXCEEDED_DAILY_DRIVING_LIMIT, round(driving_hours - limit, 2))]
    return [Violation(ViolationKind.USED_10H_DRIVING_EXTENSION)]


def _fortnight_violations(fortnightly_driving_minutes: int) -> List[Violation]:
    hours = fortnightly_driving_minutes / 60
    if hours > MAX_FORTNIGHTLY_DRIVING_HOURS:
        return [
            Violation(
                ViolationKind.FORTNIGHTLY_DRIVING_LIMIT_EXCEEDED,
                round(hours - MAX_FORTNIGHTLY_DRIVING_HOURS, 2),
            )
        ]
    return []


def rest_hours_between(previous_end: dt.datetime, next_start: dt.datetime) -> float:
    return (as_utc(next_start) - as_utc(previous_end)).total_seconds() / HOUR


def _rest_violations(day: DayTotals, previous_day_last_session_end: Optional[dt.datetime]) -> List[Violation]:
    if previous_day_last_session_end is None or day.first_session_start is None:
        return []
    rest_hours = rest_hours_between(previous_day_last_session_end, day.first_session_start)
    if rest_hours < MIN_DAILY_REST_HOURS_REDUCED:
        return [Violation(ViolationKind.INSUFFICIENT_DAILY_REST, round(rest_hours, 2))]
    if rest_hours < MIN_DAILY_REST_HOURS_REGULAR:
        return [Violation(ViolationKind.REDUCED_DAILY_REST_TAKEN, round(rest_hours, 2))]
    return []


def evaluate(
    day: DayTotals,
    previous_day_last_session_end: Optional[dt.datetime] = None,
    fortnightly_driving_minutes: int = 0,
    weekly_driving_extensions_used: int = 0,
) -> ComplianceResult:
    """Score one calendar day against the EU working-time and driving-time rules."""
    if day.is_empty:
        return ComplianceResult()

    violations: List[Violation] = []
    violations.extend(_break_violations(day))
    violations.extend(_daily_driving_violations(day, weekly_driving_extensions_used))
    violations.extend(_fortnight_violations(fortnightly_driving_minutes))
    violations.extend(_rest_violations(day, previous_day_last_session_end))

    unique = _collapse(violations)
    return ComplianceResult(score=_score(unique), violations=unique)


def merge_results(results: Iterable[ComplianceResult]) -> ComplianceResult:
    """Combine several results of the same date: lowest score, union of violations."""
    merged_score = 100
    merged: List[Violation] = []
    for result in results:
        merged_score = min(merged_score, result.score)
        merged.extend(result.violations)
    return ComplianceResult(score=merged_score, violations=_collapse(merged))
