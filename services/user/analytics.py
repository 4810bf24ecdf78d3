"""
services/user/analytics.py
Personal travel analytics computed from a user's bookings.
"""

from collections import Counter, defaultdict
from datetime import date, datetime
from typing import Iterable, Optional

from shared.models.models import Booking, BookingStatus, User
from shared.utils.dates import as_utc, isoformat, utcnow

SPENT_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED}
UPCOMING_STATUSES = {BookingStatus.CONFIRMED, BookingStatus.PENDING_PAYMENT}
LOYALTY_MILESTONES = (5, 10, 20, 50)

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def _price(booking: Booking) -> float:
    return float(booking.total_price or 0)


def travel_frequency(trips_per_year: float) -> str:
    if trips_per_year >= 6:
        return "frequent"
    if trips_per_year >= 2:
        return "regular"
    return "occasional"


def budget_category(average_spend: float) -> str:
    if average_spend > 3000:
        return "luxury"
    if average_spend > 1500:
        return "premium"
    return "budget"


def next_milestone(completed: int) -> int:
    for target in LOYALTY_MILESTONES:
        if completed < target:
            return target
    return LOYALTY_MILESTONES[-1]


def _travel_patterns(bookings: list[Booking], spent: list[Booking],
                     total_spent: float, now: datetime) -> dict:
    patterns = {
        "average_trips_per_year": 0.0,
        "average_spend_per_trip": 0.0,
        "average_trip_duration": 0,
        "most_popular_month": None,
        "travel_frequency": "occasional",
    }
    if not bookings:
        return patterns

    first_booked = min(as_utc(b.created_at) for b in bookings)
    # Under a year of history counts as one year
    years = max((now - first_booked).total_seconds() / (365 * 86400), 1.0)
    per_year = round(len(bookings) / years, 1)
    patterns["average_trips_per_year"] = per_year

    if spent:
        patterns["average_spend_per_trip"] = round(total_spent / len(spent), 2)

    durations = [
        (b.end_date - b.start_date).days for b in bookings if b.start_date and b.end_date
    ]
    if durations:
        patterns["average_trip_duration"] = round(sum(durations) / len(durations))

    months = Counter(b.start_date.month for b in bookings if b.start_date)
    if months:
        patterns["most_popular_month"] = MONTH_NAMES[months.most_common(1)[0][0] - 1]

    patterns["travel_frequency"] = travel_frequency(per_year)
    return patterns


def _trip_summary(booking: Booking, with_price: bool = False) -> dict:
    summary = {
        "id": str(booking.id),
        "booking_reference": booking.booking_reference,
        "destination": booking.destination,
        "start_date": isoformat(booking.start_date),
        "end_date": isoformat(booking.end_date),
        "status": booking.status.value,
    }
    if with_price:
        summary["total_price"] = _price(booking)
    return summary


def _edit_request_history(user: User, bookings: Iterable[Booking], limit: int = 5) -> list[dict]:
    submitters = {str(user.id), user.email}
    history = []
    for booking in bookings:
        for entry in booking.edit_requests:
            if entry.get("modified_by") not in submitters:
                continue
            history.append({
                "id": entry.get("id"),
                "booking_id": str(booking.id),
                "destination": booking.destination,
                "request_type": entry.get("request_type"),
                "status": entry.get("status"),
                "submitted_at": entry.get("modified_at"),
                "resolved_at": entry.get("resolved_at"),
            })
    history.sort(key=lambda r: r["submitted_at"] or "", reverse=True)
    return history[:limit]


def build_user_analytics(user: User, bookings: list[Booking],
                         now: Optional[datetime] = None) -> dict:
    """Assemble the personal dashboard. `bookings` may be in any order."""
    now = now or utcnow()
    today: date = now.date()
    bookings = sorted(bookings, key=lambda b: as_utc(b.created_at), reverse=True)

    spent = [b for b in bookings if b.status in SPENT_STATUSES]
    confirmed = sum(1 for b in bookings if b.status == BookingStatus.CONFIRMED)
    completed = sum(1 for b in bookings if b.status == BookingStatus.COMPLETED)
    cancelled = sum(1 for b in bookings if b.status == BookingStatus.CANCELLED)
    total_spent = round(sum(_price(b) for b in spent), 2)

    visited = list(dict.fromkeys(b.destination for b in spent))
    favourites = [
        {"destination": dest, "count": count}
        for dest, count in Counter(b.destination for b in spent).most_common(5)
    ]

    by_month: dict[str, float] = defaultdict(float)
    by_destination: dict[str, float] = defaultdict(float)
    for b in spent:
        by_month[as_utc(b.created_at).strftime("%Y-%m")] += _price(b)
        by_destination[b.destination] += _price(b)

    patterns = _travel_patterns(bookings, spent, total_spent, now)

    upcoming = [
        b for b in bookings
        if b.start_date and b.start_date > today and b.status in UPCOMING_STATUSES
    ][:3]
    recent = [
        b for b in bookings
        if b.end_date and b.end_date < today and b.status in SPENT_STATUSES
    ][:3]

    achievements = []
    if len(visited) >= 5:
        achievements.append({
            "id": "explorer",
            "title": "World Explorer",
            "description": f"Visited {len(visited)} destinations",
        })
    if total_spent >= 10000:
        achievements.append({
            "id": "big_spender",
            "title": "Travel Enthusiast",
            "description": f"Spent over ${total_spent / 1000:.0f}K on travel",
        })
    if completed >= 10:
        achievements.append({
            "id": "frequent_traveler",
            "title": "Frequent Traveler",
            "description": f"Completed {completed} trips",
        })

    recommendations = []
    if favourites:
        top = favourites[0]
        recommendations.append({
            "type": "destination",
            "title": f"Return to {top['destination']}",
            "description": f"You've visited {top['destination']} {top['count']} times. Plan another trip!",
            "priority": "high",
        })
    if patterns["average_spend_per_trip"] > 0:
        category = budget_category(patterns["average_spend_per_trip"])
        recommendations.append({
            "type": "budget",
            "title": f"{category.capitalize()} Travel Deals",
            "description": (
                f"Based on your average spend of ${round(patterns['average_spend_per_trip'])}, "
                f"here are some {category} options"
            ),
            "priority": "medium",
        })
    if patterns["travel_frequency"] == "frequent":
        recommendations.append({
            "type": "membership",
            "title": "Premium Membership",
            "description": "As a frequent traveler, upgrade to premium for exclusive benefits",
            "priority": "high",
        })

    return {
        "overview": {
            "total_bookings": len(bookings),
            "confirmed_bookings": confirmed,
            "completed_bookings": completed,
            "cancelled_bookings": cancelled,
            "total_spent": total_spent,
            "destinations_visited": len(visited),
            "member_since": isoformat(user.created_at),
        },
        "destinations": {
            "visited": visited,
            "favorites": favourites,
            "spending_by_destination": [
                {"destination": dest, "amount": round(amount, 2)}
                for dest, amount in sorted(by_destination.items(), key=lambda kv: kv[1], reverse=True)[:5]
            ],
        },
        "spending": {
            "total": total_spent,
            "average": patterns["average_spend_per_trip"],
            "by_month": [
                {"month": month, "amount": round(amount, 2)} for month, amount in sorted(by_month.items())
            ],
        },
        "travel_patterns": patterns,
        "trips": {
            "upcoming": [_trip_summary(b) for b in upcoming],
            "recent": [_trip_summary(b, with_price=True) for b in recent],
        },
        "edit_requests": _edit_request_history(user, bookings),
        "achievements": achievements,
        "recommendations": recommendations,
        "loyalty": {
            "member_since": isoformat(user.created_at),
            "loyalty_level": patterns["travel_frequency"],
            "reward_points": user.reward_points or 0,
            "next_milestone": {
                "target": next_milestone(completed),
                "current": completed,
                "reward": "Special discount on next booking",
            },
        },
    }
