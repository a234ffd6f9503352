from datetime import date

import pytest

from models import SubscriptionFrequency
from recurrence import add_months, calculate_next_billing_date, normalize_to_monthly


def test_weekly_adds_seven_days():
    assert calculate_next_billing_date(
        date(2024, 12, 28), SubscriptionFrequency.weekly
    ) == date(2025, 1, 4)


def test_monthly_keeps_day_of_month():
    assert calculate_next_billing_date(
        date(2025, 1, 15), SubscriptionFrequency.monthly
    ) == date(2025, 2, 15)


def test_month_end_clamps_and_returns_to_anchor():
    current = date(2024, 1, 31)
    seen = []
    for _ in range(3):
        current = calculate_next_billing_date(
            current, SubscriptionFrequency.monthly, anchor_day=31
        )
        seen.append(current)
    assert seen == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]


def test_without_anchor_the_clamped_day_sticks():
    assert calculate_next_billing_date(
        date(2024, 2, 29), SubscriptionFrequency.monthly
    ) == date(2024, 3, 29)


def test_quarterly_and_yearly():
    assert calculate_next_billing_date(
        date(2024, 11, 30), SubscriptionFrequency.quarterly
    ) == date(2025, 2, 28)
    assert calculate_next_billing_date(
        date(2024, 2, 29), SubscriptionFrequency.yearly
    ) == date(2025, 2, 28)


def test_add_months_backwards_crosses_year():
    assert add_months(date(2025, 2, 10), -3) == date(2024, 11, 10)


@pytest.mark.parametrize(
    ("amount", "frequency", "expected"),
    [
        (1_000, SubscriptionFrequency.weekly, 4_330),
        (1_000, SubscriptionFrequency.monthly, 1_000),
        (3_000, SubscriptionFrequency.quarterly, 1_000),
        (12_000, SubscriptionFrequency.yearly, 1_000),
    ],
)
def test_normalize_to_monthly(amount, frequency, expected):
    assert normalize_to_monthly(amount, frequency) == pytest.approx(expected)
