"""
Тесты арифметики дат подписки: продление и дни до сброса трафика.
"""

from datetime import datetime, timedelta, timezone

import pytest

from billing.utils.date_utils import (
    Expiry,
    add_months,
    days_until_reset,
    extend_by_period,
    period_months,
)
from db.models import Period, ResetTrafficMethod

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def test_extend_from_past_anchor_starts_at_now():
    """
    Тест: истекшее время не суммируется, продление считается от "сейчас".
    """
    expired = NOW - timedelta(days=40)

    assert extend_by_period(Period.month, expired, NOW) == datetime(2025, 7, 15, 12, tzinfo=timezone.utc)


def test_extend_from_future_anchor_stacks():
    anchor = datetime(2025, 7, 1, tzinfo=timezone.utc)

    assert extend_by_period(Period.quarter, anchor, NOW) == datetime(2025, 10, 1, tzinfo=timezone.utc)


def test_extend_without_anchor_starts_at_now():
    assert extend_by_period(Period.year, None, NOW) == datetime(2026, 6, 15, 12, tzinfo=timezone.utc)


def test_calendar_month_clamps_to_last_day():
    """
    Тест: 31 января + 1 месяц = последний день февраля.
    """
    jan_31 = datetime(2025, 1, 31, 10, tzinfo=timezone.utc)

    assert add_months(jan_31, 1) == datetime(2025, 2, 28, 10, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1).day == 29


@pytest.mark.parametrize("period, months", [
    (Period.month, 1),
    (Period.quarter, 3),
    (Period.half_year, 6),
    (Period.year, 12),
    (Period.two_year, 24),
    (Period.three_year, 36),
])
def test_period_months(period, months):
    assert period_months(period) == months
    assert period_months(period.value) == months


def test_onetime_and_reset_have_no_length():
    with pytest.raises(ValueError):
        period_months(Period.onetime)
    with pytest.raises(ValueError):
        period_months(Period.reset)


def test_expiry_variants():
    never = Expiry.never()
    assert never.is_never
    assert never.is_active(NOW)

    past = Expiry.of(NOW - timedelta(seconds=1))
    assert past.is_expired(NOW)

    exact = Expiry.of(NOW)
    assert exact.is_expired(NOW)

    future = Expiry.of(NOW + timedelta(days=1))
    assert future.is_active(NOW)
    assert not future.is_never


def test_days_until_reset_none_cases():
    """
    Тест: бессрочная, истекшая подписка и метод never не имеют даты сброса.
    """
    future = NOW + timedelta(days=10)

    assert days_until_reset(ResetTrafficMethod.month_first_day, None, NOW) is None
    assert days_until_reset(ResetTrafficMethod.month_first_day, NOW - timedelta(days=1), NOW) is None
    assert days_until_reset(ResetTrafficMethod.never, future, NOW) is None


def test_days_until_month_first_day():
    # June has 30 days
    assert days_until_reset(ResetTrafficMethod.month_first_day, NOW + timedelta(days=60), NOW) == 15


def test_days_until_expire_day():
    expires_at = datetime(2025, 9, 20, tzinfo=timezone.utc)
    assert days_until_reset(ResetTrafficMethod.expire_day, expires_at, NOW) == 5

    expires_at = datetime(2025, 9, 10, tzinfo=timezone.utc)
    assert days_until_reset(ResetTrafficMethod.expire_day, expires_at, NOW) == 25

    # Expiry day past the end of a short month resets on its last day
    expires_at = datetime(2025, 8, 31, tzinfo=timezone.utc)
    assert days_until_reset(ResetTrafficMethod.expire_day, expires_at, NOW) == 15


def test_days_until_year_first_day():
    expires_at = datetime(2027, 1, 1, tzinfo=timezone.utc)

    assert days_until_reset(ResetTrafficMethod.year_first_day, expires_at, NOW) == 199


def test_days_until_year_expire_day():
    expires_at = datetime(2027, 6, 25, tzinfo=timezone.utc)
    assert days_until_reset(ResetTrafficMethod.year_expire_day, expires_at, NOW) == 9

    expires_at = datetime(2027, 3, 1, tzinfo=timezone.utc)
    assert days_until_reset(ResetTrafficMethod.year_expire_day, expires_at, NOW) == 258
