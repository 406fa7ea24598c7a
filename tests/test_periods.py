from datetime import date, datetime, time, timedelta

import pytest

from models import BudgetPeriod
from periods import budget_window, clamp_to_start, compute_range, next_window


END_OF_DAY = time(23, 59, 59, 999999)


def test_daily_range_covers_whole_day():
    window = compute_range(BudgetPeriod.daily, date(2024, 3, 15))
    assert window.slug == "daily"
    assert window.start == datetime(2024, 3, 15, 0, 0)
    assert window.end == datetime.combine(date(2024, 3, 15), END_OF_DAY)


@pytest.mark.parametrize("offset", range(7))
def test_weekly_range_runs_monday_to_sunday(offset):
    reference = date(2024, 1, 15) + timedelta(days=offset)
    window = compute_range("weekly", reference)
    assert window.start == datetime(2024, 1, 15)
    assert window.end == datetime.combine(date(2024, 1, 21), END_OF_DAY)
    assert window.contains(datetime.combine(reference, time(12, 0)))


def test_monthly_range_handles_leap_february():
    window = compute_range(BudgetPeriod.monthly, datetime(2024, 2, 10, 18, 30))
    assert window.start == datetime(2024, 2, 1)
    assert window.end == datetime.combine(date(2024, 2, 29), END_OF_DAY)


def test_monthly_range_in_december_ends_on_new_years_eve():
    window = compute_range(BudgetPeriod.monthly, date(2023, 12, 5))
    assert window.start == datetime(2023, 12, 1)
    assert window.end == datetime.combine(date(2023, 12, 31), END_OF_DAY)


def test_yearly_range():
    window = compute_range(BudgetPeriod.yearly, date(2024, 7, 4))
    assert window.start == datetime(2024, 1, 1)
    assert window.end == datetime.combine(date(2024, 12, 31), END_OF_DAY)


def test_unknown_period_falls_back_to_monthly():
    window = compute_range("fortnightly", date(2024, 5, 20))
    assert window.slug == "monthly"
    assert window.start == datetime(2024, 5, 1)


def test_reference_at_last_instant_stays_inside():
    reference = datetime.combine(date(2024, 5, 31), END_OF_DAY)
    window = compute_range(BudgetPeriod.monthly, reference)
    assert window.contains(reference)
    assert window.start == datetime(2024, 5, 1)


def test_clamp_moves_start_to_budget_start():
    window = compute_range(BudgetPeriod.monthly, date(2024, 1, 20))
    clamped = clamp_to_start(window, date(2024, 1, 15))
    assert clamped.start == datetime(2024, 1, 15)
    assert clamped.end == window.end


def test_clamp_keeps_window_when_budget_started_earlier():
    window = compute_range(BudgetPeriod.monthly, date(2024, 3, 20))
    assert clamp_to_start(window, date(2023, 6, 1)) == window


def test_budget_window_before_start_is_empty():
    window = budget_window(BudgetPeriod.monthly, date(2024, 3, 1), date(2024, 1, 10))
    assert window.is_empty


def test_next_window_follows_on_without_gap():
    window = compute_range(BudgetPeriod.weekly, date(2024, 1, 3))
    following = next_window(window)
    assert following.start == datetime(2024, 1, 8)
    assert following.start - window.end == timedelta(microseconds=1)


def test_budget_window_resumes_after_closure_inside_it():
    closed = datetime(2024, 1, 10, 12, 0)
    window = budget_window(
        BudgetPeriod.monthly, date(2024, 1, 1), date(2024, 1, 20), closed
    )
    assert window.start == closed + timedelta(microseconds=1)
    assert window.end == datetime.combine(date(2024, 1, 31), END_OF_DAY)


def test_budget_window_ignores_closures_outside_it():
    previous_month_end = datetime.combine(date(2023, 12, 31), END_OF_DAY)
    window = budget_window(
        BudgetPeriod.monthly, date(2023, 1, 1), date(2024, 1, 20), previous_month_end
    )
    assert window.start == datetime(2024, 1, 1)

    whole_month = datetime.combine(date(2024, 1, 31), END_OF_DAY)
    window = budget_window(
        BudgetPeriod.monthly, date(2023, 1, 1), date(2024, 1, 20), whole_month
    )
    assert window.start == datetime(2024, 1, 1)
