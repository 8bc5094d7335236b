"""
Harvest Coins loyalty rules.

Tiers come from lifetime spend or order count, whichever is reached first:

    gold    spent >= 8000 or orders >= 10
    silver  spent >= 2000 or orders >= 5
    bronze  everyone else

Coins are earned as a percentage of each delivered order (3/5/8% by tier) and
can be redeemed at 200 coins = 100 off, never more than 5% of an order.
"""
import math

GOLD_MIN_SPENT = 8000
GOLD_MIN_ORDERS = 10
SILVER_MIN_SPENT = 2000
SILVER_MIN_ORDERS = 5

EARN_RATES = {"bronze": 0.03, "silver": 0.05, "gold": 0.08}

COINS_PER_BLOCK = 200
BLOCK_VALUE = 100
MAX_REDEMPTION_RATIO = 0.05


class RedemptionError(ValueError):
    pass


def tier_for(total_spent: float, total_orders: int) -> str:
    if total_spent >= GOLD_MIN_SPENT or total_orders >= GOLD_MIN_ORDERS:
        return "gold"
    if total_spent >= SILVER_MIN_SPENT or total_orders >= SILVER_MIN_ORDERS:
        return "silver"
    return "bronze"


def tier_for_user(user: dict) -> str:
    activity = user.get("activity") or {}
    return tier_for(activity.get("total_spent", 0), activity.get("total_orders", 0))


def earn_rate(tier: str) -> float:
    return EARN_RATES.get(tier, EARN_RATES["bronze"])


def coins_for_order(order_total: float, tier: str) -> int:
    if order_total <= 0:
        return 0
    return int(math.floor(order_total * earn_rate(tier)))


def coin_value(coins: int) -> float:
    return coins / COINS_PER_BLOCK * BLOCK_VALUE


def max_discount(order_value: float) -> float:
    return round(order_value * MAX_REDEMPTION_RATIO, 2)


def redemption_discount(coins: int, balance: int, order_value: float) -> float:
    """Discount granted for spending `coins` on an order worth `order_value`."""
    if coins <= 0:
        raise RedemptionError("Coins to redeem must be positive")
    if coins > balance:
        raise RedemptionError("Insufficient Harvest Coins")
    discount = coin_value(coins)
    if discount > max_discount(order_value):
        raise RedemptionError("Discount exceeds maximum allowed (5% of order value)")
    return round(discount, 2)


def balance_summary(user: dict) -> dict:
    activity = user.get("activity") or {}
    tier = tier_for_user(user)
    return {
        "balance": activity.get("harvest_coins", 0),
        "totalSpent": activity.get("total_spent", 0),
        "totalOrders": activity.get("total_orders", 0),
        "tier": tier,
        "earnRate": earn_rate(tier),
    }
