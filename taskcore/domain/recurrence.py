"""Calendar rule evaluation.

A recurrence rule is one of a closed set of frozen dataclasses, each carrying
only the fields its cadence needs. Evaluation is pure date arithmetic: callers
hand in calendar dates already normalized to the actor's timezone.

Weekdays follow the stored convention 0 = Sunday ... 6 = Saturday, which is
not Python's ``date.weekday()`` numbering.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, ClassVar, Iterator, Mapping

from .enums import RecurrenceType
from .errors import InvalidRecurrenceRule

RULE_FIELDS = (
    "recurrence_type",
    "recurrence_interval",
    "recurrence_end_date",
    "recurrence_weekday",
    "recurrence_month_day",
    "recurrence_week_of_month",
    "completion_based",
)

LAST_WEEK_OF_MONTH = 5


@dataclass(frozen=True, kw_only=True)
class RecurrenceRule(ABC):
    type: ClassVar[RecurrenceType]

    interval: int = 1
    end_date: date | None = None
    completion_based: bool = False

    @property
    def step(self) -> int:
        return max(int(self.interval or 1), 1)

    @abstractmethod
    def advance(self, anchor: date) -> date:
        """Next occurrence strictly after ``anchor``, ignoring the end date."""

    def first_on_or_after(self, start: date) -> date:
        return start


@dataclass(frozen=True, kw_only=True)
class DailyRule(RecurrenceRule):
    type: ClassVar[RecurrenceType] = RecurrenceType.DAILY

    def advance(self, anchor: date) -> date:
        return anchor + timedelta(days=self.step)


@dataclass(frozen=True, kw_only=True)
class WeeklyRule(RecurrenceRule):
    type: ClassVar[RecurrenceType] = RecurrenceType.WEEKLY

    weekday: int | None = None

    def advance(self, anchor: date) -> date:
        if self.weekday is None:
            return anchor + timedelta(weeks=self.step)
        days_until = _days_until_weekday(anchor, self.weekday)
        if days_until == 0:
            return anchor + timedelta(weeks=self.step)
        return anchor + timedelta(days=days_until)

    def first_on_or_after(self, start: date) -> date:
        if self.weekday is None:
            return start
        return start + timedelta(days=_days_until_weekday(start, self.weekday))


@dataclass(frozen=True, kw_only=True)
class MonthlyRule(RecurrenceRule):
    type: ClassVar[RecurrenceType] = RecurrenceType.MONTHLY

    month_day: int | None = None

    def advance(self, anchor: date) -> date:
        return _add_months(anchor, self.step, self.month_day or anchor.day)

    def first_on_or_after(self, start: date) -> date:
        if self.month_day is None:
            return start
        candidate = _clamped(start.year, start.month, self.month_day)
        if candidate < start:
            candidate = _add_months(candidate, 1, self.month_day)
        return candidate


@dataclass(frozen=True, kw_only=True)
class MonthlyWeekdayRule(RecurrenceRule):
    """Nth weekday of the month; a missing fifth occurrence falls back to the last one."""

    type: ClassVar[RecurrenceType] = RecurrenceType.MONTHLY_WEEKDAY

    weekday: int
    week_of_month: int

    def advance(self, anchor: date) -> date:
        year, month = _shift_month(anchor.year, anchor.month, self.step)
        return _nth_weekday(year, month, self.weekday, self.week_of_month)

    def first_on_or_after(self, start: date) -> date:
        candidate = _nth_weekday(start.year, start.month, self.weekday, self.week_of_month)
        if candidate < start:
            year, month = _shift_month(start.year, start.month, 1)
            candidate = _nth_weekday(year, month, self.weekday, self.week_of_month)
        return candidate


@dataclass(frozen=True, kw_only=True)
class MonthlyLastDayRule(RecurrenceRule):
    type: ClassVar[RecurrenceType] = RecurrenceType.MONTHLY_LAST_DAY

    def advance(self, anchor: date) -> date:
        year, month = _shift_month(anchor.year, anchor.month, self.step)
        return date(year, month, _days_in_month(year, month))

    def first_on_or_after(self, start: date) -> date:
        return date(start.year, start.month, _days_in_month(start.year, start.month))


@dataclass(frozen=True, kw_only=True)
class YearlyRule(RecurrenceRule):
    type: ClassVar[RecurrenceType] = RecurrenceType.YEARLY

    month_day: int | None = None

    def advance(self, anchor: date) -> date:
        return _add_months(anchor, 12 * self.step, self.month_day or anchor.day)

    def first_on_or_after(self, start: date) -> date:
        if self.month_day is None:
            return start
        candidate = _clamped(start.year, start.month, self.month_day)
        if candidate < start:
            candidate = _add_months(candidate, 12, self.month_day)
        return candidate


def next_due_date(rule: RecurrenceRule | None, anchor: date) -> date | None:
    """Next occurrence strictly after ``anchor``, or None once past the end date."""
    if rule is None:
        return None
    return _within_end(rule, rule.advance(anchor))


def first_occurrence(rule: RecurrenceRule | None, start: date) -> date | None:
    """Earliest occurrence on or after ``start``."""
    if rule is None:
        return None
    return _within_end(rule, rule.first_on_or_after(start))


def iter_occurrences(rule: RecurrenceRule | None, start: date) -> Iterator[date]:
    current = first_occurrence(rule, start)
    while current is not None:
        yield current
        current = next_due_date(rule, current)


def upcoming_occurrences(rule: RecurrenceRule | None, start: date, count: int = 5) -> list[date]:
    occurrences: list[date] = []
    if count <= 0:
        return occurrences
    for occurrence in iter_occurrences(rule, start):
        occurrences.append(occurrence)
        if len(occurrences) >= count:
            break
    return occurrences


def rule_from_task(task: Any) -> RecurrenceRule | None:
    """Build the rule stored on a task row.

    Unknown types and ``none`` give None and a non-positive interval is read as
    1, but out-of-range weekday/day fields raise InvalidRecurrenceRule.
    """
    fields = {name: getattr(task, name, None) for name in RULE_FIELDS}
    return _build_rule(fields, strict=False)


def validate_rule_fields(fields: Mapping[str, Any], due_date: date | None = None) -> RecurrenceRule | None:
    rule = _build_rule(fields, strict=True)
    if rule is not None and rule.end_date is not None and due_date is not None and rule.end_date < due_date:
        raise InvalidRecurrenceRule("recurrence_end_date is before the task's due date")
    return rule


def _build_rule(fields: Mapping[str, Any], *, strict: bool) -> RecurrenceRule | None:
    raw_type = fields.get("recurrence_type") or RecurrenceType.NONE.value
    try:
        rtype = RecurrenceType(raw_type)
    except ValueError:
        if strict:
            raise InvalidRecurrenceRule(f"Unknown recurrence type {raw_type!r}") from None
        return None
    if rtype == RecurrenceType.NONE:
        return None

    interval = fields.get("recurrence_interval")
    if interval is None:
        interval = 1
    try:
        interval = int(interval)
    except (TypeError, ValueError):
        raise InvalidRecurrenceRule(f"recurrence_interval must be an integer, got {interval!r}") from None
    if interval < 1:
        if strict:
            raise InvalidRecurrenceRule("recurrence_interval must be at least 1")
        interval = 1

    weekday = _optional_int(fields, "recurrence_weekday", 0, 6)
    month_day = _optional_int(fields, "recurrence_month_day", 1, 31)
    week_of_month = _optional_int(fields, "recurrence_week_of_month", 1, LAST_WEEK_OF_MONTH)
    common = {
        "interval": interval,
        "end_date": _optional_date(fields.get("recurrence_end_date")),
        "completion_based": bool(fields.get("completion_based")),
    }

    if rtype == RecurrenceType.DAILY:
        return DailyRule(**common)
    if rtype == RecurrenceType.WEEKLY:
        return WeeklyRule(weekday=weekday, **common)
    if rtype == RecurrenceType.MONTHLY:
        if weekday is not None and week_of_month is not None:
            return MonthlyWeekdayRule(weekday=weekday, week_of_month=week_of_month, **common)
        return MonthlyRule(month_day=month_day, **common)
    if rtype == RecurrenceType.MONTHLY_WEEKDAY:
        if weekday is None or week_of_month is None:
            raise InvalidRecurrenceRule(
                "monthly_weekday recurrence needs recurrence_weekday and recurrence_week_of_month"
            )
        return MonthlyWeekdayRule(weekday=weekday, week_of_month=week_of_month, **common)
    if rtype == RecurrenceType.MONTHLY_LAST_DAY:
        return MonthlyLastDayRule(**common)
    return YearlyRule(month_day=month_day, **common)


def _optional_int(fields: Mapping[str, Any], name: str, low: int, high: int) -> int | None:
    value = fields.get(name)
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRecurrenceRule(f"{name} must be an integer, got {value!r}") from None
    if not low <= number <= high:
        raise InvalidRecurrenceRule(f"{name} must be between {low} and {high}, got {number}")
    return number


def _optional_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise InvalidRecurrenceRule(f"recurrence_end_date must be a date, got {value!r}")


def _within_end(rule: RecurrenceRule, candidate: date) -> date | None:
    if rule.end_date is not None and candidate > rule.end_date:
        return None
    return candidate


def _days_until_weekday(base: date, weekday: int) -> int:
    # stored weekday 0 = Sunday, date.weekday() 0 = Monday
    return (weekday - (base.weekday() + 1)) % 7


def _nth_weekday(year: int, month: int, weekday: int, week_of_month: int) -> date:
    first = date(year, month, 1)
    candidate = first + timedelta(days=_days_until_weekday(first, weekday) + 7 * (week_of_month - 1))
    if candidate.month != month:
        candidate -= timedelta(weeks=1)
    return candidate


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = month - 1 + months
    return year + total // 12, total % 12 + 1


def _add_months(base: date, months: int, day: int) -> date:
    year, month = _shift_month(base.year, base.month, months)
    return _clamped(year, month, day)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, _days_in_month(year, month)))


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day
