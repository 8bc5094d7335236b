import pytest

from rewards import (
    RedemptionError,
    balance_summary,
    coin_value,
    coins_for_order,
    max_discount,
    redemption_discount,
    tier_for,
)


@pytest.mark.parametrize(
    "spent,orders,tier",
    [
        (0, 0, "bronze"),
        (1999.99, 4, "bronze"),
        (2000, 0, "silver"),
        (0, 5, "silver"),
        (7999, 9, "silver"),
        (8000, 0, "gold"),
        (10, 10, "gold"),
    ],
)
def test_tier_thresholds(spent, orders, tier):
    assert tier_for(spent, orders) == tier


def test_coins_are_floored_by_tier_rate():
    assert coins_for_order(1000, "bronze") == 30
    assert coins_for_order(1000, "silver") == 50
    assert coins_for_order(1000, "gold") == 80
    assert coins_for_order(99, "bronze") == 2
    assert coins_for_order(0, "gold") == 0


def test_coin_value_and_cap():
    assert coin_value(200) == 100
    assert coin_value(50) == 25
    assert max_discount(5000) == 250


def test_redemption_within_cap():
    assert redemption_discount(200, 500, 2000) == 100


def test_redemption_over_cap_is_rejected():
    with pytest.raises(RedemptionError, match="5% of order value"):
        redemption_discount(400, 500, 2000)


def test_redemption_requires_balance():
    with pytest.raises(RedemptionError, match="Insufficient"):
        redemption_discount(300, 100, 100000)
    with pytest.raises(RedemptionError):
        redemption_discount(0, 100, 1000)


def test_balance_summary_reports_tier():
    user = {"activity": {"harvest_coins": 120, "total_spent": 2500, "total_orders": 2}}
    summary = balance_summary(user)
    assert summary["balance"] == 120
    assert summary["tier"] == "silver"
    assert summary["earnRate"] == 0.05
