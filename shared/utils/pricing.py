"""
shared/utils/pricing.py
Trip price arithmetic and Stripe line-item construction.
"""

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

_NON_NUMERIC = re.compile(r"[^0-9.]")

BREAKDOWN_COMPONENTS = ("base_price", "flights", "hotel", "activities", "taxes", "fees")


def parse_display_price(price: Optional[str]) -> float:
    """'$1,299.00' -> 1299.0. Empty or unparseable strings give 0."""
    if not price:
        return 0.0
    cleaned = _NON_NUMERIC.sub("", str(price))
    if cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "", cleaned.count(".") - 1)
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def activities_total(selected_activities: list[dict]) -> float:
    return sum(float(a.get("price") or 0) for a in selected_activities or [])


def resolve_prices(
    price: Optional[str],
    base_price: Optional[float],
    total_price: Optional[float],
    price_breakdown: Optional[dict],
    selected_activities: list[dict],
) -> tuple[Decimal, Decimal, dict]:
    """
    Returns (base_price, total_price, breakdown).

    An explicit total wins. Otherwise a breakdown sums its components minus
    discounts, and without one the total is base price plus selected extras.
    """
    breakdown = dict(price_breakdown or {})
    if base_price is None:
        base_price = breakdown.get("base_price") or parse_display_price(price)

    if total_price is None:
        if breakdown:
            total_price = sum(float(breakdown.get(k) or 0) for k in BREAKDOWN_COMPONENTS)
            total_price -= float(breakdown.get("discounts") or 0)
        else:
            total_price = float(base_price) + activities_total(selected_activities)

    if not breakdown:
        breakdown = {
            "base_price": float(base_price),
            "flights": 0,
            "hotel": 0,
            "activities": activities_total(selected_activities),
            "taxes": 0,
            "fees": 0,
            "discounts": 0,
            "currency": "USD",
        }
    return money(base_price), money(max(total_price, 0)), breakdown


def to_cents(amount: Any) -> int:
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def build_line_items(
    destination: str,
    base_price: Any,
    selected_activities: list[dict],
    currency: str,
    description: Optional[str] = None,
) -> list[dict]:
    """One line item for the trip itself plus one per selected activity."""
    product = {"name": f"Trip to {destination}"}
    if description:
        product["description"] = description[:500]

    items = [
        {
            "price_data": {
                "currency": currency,
                "unit_amount": to_cents(base_price),
                "product_data": product,
            },
            "quantity": 1,
        }
    ]
    for activity in selected_activities or []:
        amount = to_cents(activity.get("price") or 0)
        if amount <= 0:
            continue
        items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": amount,
                    "product_data": {"name": activity.get("name") or "Activity"},
                },
                "quantity": 1,
            }
        )
    return items
