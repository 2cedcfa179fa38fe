from __future__ import annotations

from datetime import date
from types import SimpleNamespace

import pytest

from taskcore.domain.errors import InvalidRecurrenceRule
from taskcore.domain.recurrence import (
    DailyRule,
    MonthlyLastDayRule,
    MonthlyRule,
    MonthlyWeekdayRule,
    RecurrenceRule,
    WeeklyRule,
    YearlyRule,
    first_occurrence,
    next_due_date,
    rule_from_task,
    upcoming_occurrences,
    validate_rule_fields,
)

WEDNESDAY = date(2026, 3, 11)
MONDAY = date(2026, 3, 9)


def _task(**fields):
    defaults = {
        "recurrence_type": "none",
        "recurrence_interval": 1,
        "recurrence_end_date": None,
        "recurrence_weekday": None,
        "recurrence_month_day": None,
        "recurrence_week_of_month": None,
        "completion_based": False,
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


class TestNextDueDate:
    def test_daily_adds_interval(self):
        assert next_due_date(DailyRule(interval=3), WEDNESDAY) == date(2026, 3, 14)

    @pytest.mark.parametrize("interval", [0, -2])
    def test_non_positive_interval_counts_as_one(self, interval):
        assert next_due_date(DailyRule(interval=interval), WEDNESDAY) == date(2026, 3, 12)

    def test_weekly_on_target_weekday_skips_full_week(self):
        assert next_due_date(WeeklyRule(weekday=3), WEDNESDAY) == date(2026, 3, 18)

    def test_weekly_on_target_weekday_respects_interval(self):
        assert next_due_date(WeeklyRule(weekday=3, interval=2), WEDNESDAY) == date(2026, 3, 25)

    def test_weekly_moves_to_next_target_weekday(self):
        assert next_due_date(WeeklyRule(weekday=3), MONDAY) == date(2026, 3, 11)

    def test_weekly_sunday_is_zero(self):
        assert next_due_date(WeeklyRule(weekday=0), WEDNESDAY) == date(2026, 3, 15)

    def test_weekly_without_weekday_adds_weeks(self):
        assert next_due_date(WeeklyRule(), MONDAY) == date(2026, 3, 16)

    def test_monthly_clamps_to_short_month(self):
        assert next_due_date(MonthlyRule(month_day=31), date(2026, 1, 31)) == date(2026, 2, 28)

    def test_monthly_clamps_to_leap_day(self):
        assert next_due_date(MonthlyRule(month_day=31), date(2024, 1, 31)) == date(2024, 2, 29)

    def test_monthly_returns_to_month_day_after_short_month(self):
        assert next_due_date(MonthlyRule(month_day=31), date(2026, 2, 28)) == date(2026, 3, 31)

    def test_monthly_without_month_day_keeps_anchor_day(self):
        assert next_due_date(MonthlyRule(), date(2026, 1, 15)) == date(2026, 2, 15)

    def test_monthly_interval_crosses_year(self):
        assert next_due_date(MonthlyRule(month_day=10, interval=3), date(2026, 11, 10)) == date(2027, 2, 10)

    def test_monthly_weekday_second_tuesday(self):
        rule = MonthlyWeekdayRule(weekday=2, week_of_month=2)
        assert next_due_date(rule, date(2026, 3, 10)) == date(2026, 4, 14)

    def test_monthly_weekday_fifth_falls_back_to_last(self):
        rule = MonthlyWeekdayRule(weekday=5, week_of_month=5)
        assert next_due_date(rule, date(2026, 3, 27)) == date(2026, 4, 24)

    def test_monthly_last_day(self):
        rule = MonthlyLastDayRule()
        assert next_due_date(rule, date(2026, 1, 31)) == date(2026, 2, 28)
        assert next_due_date(rule, date(2026, 2, 28)) == date(2026, 3, 31)

    def test_yearly_clamps_leap_day(self):
        assert next_due_date(YearlyRule(month_day=29), date(2024, 2, 29)) == date(2025, 2, 28)

    def test_yearly_interval(self):
        assert next_due_date(YearlyRule(interval=2), WEDNESDAY) == date(2028, 3, 11)

    def test_end_date_is_inclusive(self):
        rule = DailyRule(end_date=date(2026, 3, 12))
        assert next_due_date(rule, WEDNESDAY) == date(2026, 3, 12)
        assert next_due_date(rule, date(2026, 3, 12)) is None

    def test_no_rule_has_no_next_date(self):
        assert next_due_date(None, WEDNESDAY) is None


class TestFirstOccurrence:
    def test_monthly_lands_later_in_current_month(self):
        assert first_occurrence(MonthlyRule(month_day=20), date(2026, 3, 10)) == date(2026, 3, 20)

    def test_monthly_rolls_to_next_month_when_day_passed(self):
        assert first_occurrence(MonthlyRule(month_day=20), date(2026, 3, 25)) == date(2026, 4, 20)

    def test_weekly_includes_start_on_target_weekday(self):
        assert first_occurrence(WeeklyRule(weekday=3), WEDNESDAY) == WEDNESDAY
        assert first_occurrence(WeeklyRule(weekday=3), MONDAY) == WEDNESDAY

    def test_monthly_last_day(self):
        assert first_occurrence(MonthlyLastDayRule(), WEDNESDAY) == date(2026, 3, 31)

    def test_respects_end_date(self):
        assert first_occurrence(MonthlyRule(month_day=20, end_date=date(2026, 3, 15)), date(2026, 3, 10)) is None


class TestUpcomingOccurrences:
    def test_weekly_preview(self):
        assert upcoming_occurrences(WeeklyRule(weekday=1), WEDNESDAY, 3) == [
            date(2026, 3, 16),
            date(2026, 3, 23),
            date(2026, 3, 30),
        ]

    def test_preview_stops_at_end_date(self):
        rule = WeeklyRule(weekday=1, end_date=date(2026, 3, 23))
        assert upcoming_occurrences(rule, WEDNESDAY, 5) == [date(2026, 3, 16), date(2026, 3, 23)]


class TestRuleFromTask:
    def test_builds_weekly_rule(self):
        rule = rule_from_task(_task(recurrence_type="weekly", recurrence_weekday=3))
        assert rule == WeeklyRule(weekday=3)

    def test_unknown_type_behaves_as_none(self):
        assert rule_from_task(_task(recurrence_type="fortnightly")) is None
        assert rule_from_task(_task(recurrence_type="none")) is None

    def test_lenient_about_interval(self):
        assert rule_from_task(_task(recurrence_type="daily", recurrence_interval=0)).interval == 1

    def test_rejects_out_of_range_weekday(self):
        with pytest.raises(InvalidRecurrenceRule):
            rule_from_task(_task(recurrence_type="weekly", recurrence_weekday=9))

    def test_monthly_with_week_of_month_is_nth_weekday(self):
        rule = rule_from_task(
            _task(recurrence_type="monthly", recurrence_weekday=2, recurrence_week_of_month=2)
        )
        assert isinstance(rule, MonthlyWeekdayRule)

    def test_carries_completion_based_flag(self):
        assert rule_from_task(_task(recurrence_type="daily", completion_based=True)).completion_based


class TestValidateRuleFields:
    def test_accepts_valid_rule(self):
        rule = validate_rule_fields({"recurrence_type": "monthly", "recurrence_month_day": 31})
        assert rule == MonthlyRule(month_day=31)

    @pytest.mark.parametrize(
        "fields",
        [
            {"recurrence_type": "daily", "recurrence_interval": 0},
            {"recurrence_type": "hourly"},
            {"recurrence_type": "monthly_weekday", "recurrence_weekday": 1},
            {"recurrence_type": "monthly", "recurrence_month_day": 32},
            {"recurrence_type": "monthly_weekday", "recurrence_weekday": 1, "recurrence_week_of_month": 6},
            {"recurrence_type": "daily", "recurrence_end_date": "2026-03-01"},
        ],
    )
    def test_rejects_malformed_rules(self, fields):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule_fields(fields)

    def test_rejects_end_date_before_due_date(self):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule_fields(
                {"recurrence_type": "daily", "recurrence_end_date": date(2026, 3, 1)},
                due_date=WEDNESDAY,
            )


def test_base_rule_cannot_be_instantiated():
    with pytest.raises(TypeError):
        RecurrenceRule()
