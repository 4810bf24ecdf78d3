"""
shared/utils/edit_requests.py
Edit-request workflow. Requests live as entries inside a booking's
`modifications` log (field == "edit_request"); this module builds new
entries, classifies them and moves them through the status table.
"""

import copy
from typing import Any, Optional

from shared.models.models import (
    Booking,
    EditRequestStatus,
    EditRequestType,
    ModificationType,
    Priority,
)
from shared.utils.dates import hours_between, isoformat, parse_iso, utcnow

EDIT_REQUEST_FIELD = "edit_request"

ALLOWED_TRANSITIONS: dict[EditRequestStatus, set[EditRequestStatus]] = {
    EditRequestStatus.PENDING: {
        EditRequestStatus.APPROVED,
        EditRequestStatus.REJECTED,
        EditRequestStatus.COST_ESTIMATE_PROVIDED,
        EditRequestStatus.CANCELLED,
    },
    EditRequestStatus.COST_ESTIMATE_PROVIDED: {
        EditRequestStatus.APPROVED,
        EditRequestStatus.REJECTED,
        EditRequestStatus.CANCELLED,
    },
    EditRequestStatus.APPROVED: {
        EditRequestStatus.COMPLETED,
        EditRequestStatus.CANCELLED,
    },
    EditRequestStatus.REJECTED: set(),
    EditRequestStatus.COMPLETED: set(),
    EditRequestStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {
    EditRequestStatus.REJECTED,
    EditRequestStatus.COMPLETED,
    EditRequestStatus.CANCELLED,
}

APPROVAL_REQUIRED_TYPES = {
    EditRequestType.DATE_CHANGE,
    EditRequestType.HOTEL_CHANGE,
    EditRequestType.DESTINATION_CHANGE,
    EditRequestType.CANCELLATION,
    EditRequestType.REFUND,
}


class InvalidTransitionError(ValueError):
    """Raised when an edit request cannot move to the requested status."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move edit request from '{current}' to '{target}'")


# ── Classification ────────────────────────────────────────────

def is_family_related(request_type: EditRequestType, booking: Booking) -> bool:
    if request_type == EditRequestType.CHILD_AMENITIES:
        return True
    passengers = booking.passengers or {}
    return passengers.get("children", 0) > 0 or passengers.get("infants", 0) > 0


def categorize(request_type: EditRequestType, priority: Priority, family_related: bool) -> str:
    if priority == Priority.URGENT:
        return "urgent"
    if family_related:
        return "family"
    if request_type == EditRequestType.WEATHER_CONCERN:
        return "weather"
    if request_type in (EditRequestType.CANCELLATION, EditRequestType.REFUND):
        return "financial"
    if request_type in (EditRequestType.DESTINATION_CHANGE, EditRequestType.DATE_CHANGE):
        return "complex"
    return "simple"


# ── Builders ──────────────────────────────────────────────────

def build_edit_request(
    booking: Booking,
    submitted_by: str,
    description: str,
    request_type: EditRequestType = EditRequestType.OTHER,
    proposed_changes: Optional[dict] = None,
    priority: Priority = Priority.MEDIUM,
) -> dict:
    """New pending entry, ready for Booking.append_modification()."""
    request_type = EditRequestType(request_type)
    priority = Priority(priority)
    family = is_family_related(request_type, booking)
    now = isoformat(utcnow())
    return {
        "field": EDIT_REQUEST_FIELD,
        "modification_type": ModificationType.USER_REQUEST.value,
        "modified_by": submitted_by,
        "request_type": request_type.value,
        "description": description.strip(),
        "proposed_changes": copy.deepcopy(proposed_changes or {}),
        "priority": priority.value,
        "status": EditRequestStatus.PENDING.value,
        "resolved": False,
        "category": categorize(request_type, priority, family),
        "is_family_related": family,
        "requires_approval": request_type in APPROVAL_REQUIRED_TYPES,
        "is_weather_related": request_type == EditRequestType.WEATHER_CONCERN,
        "admin_response": None,
        "internal_notes": [],
        "price_change": None,
        "refund_amount": None,
        "acknowledged_at": None,
        "resolved_at": None,
        "status_history": [
            {"status": EditRequestStatus.PENDING.value, "changed_at": now, "changed_by": submitted_by}
        ],
    }


def can_transition(current: str, target: str) -> bool:
    return EditRequestStatus(target) in ALLOWED_TRANSITIONS[EditRequestStatus(current)]


def apply_transition(
    entry: dict,
    target: EditRequestStatus,
    changed_by: str,
    admin_response: Optional[str] = None,
    price_change: Optional[float] = None,
    refund_amount: Optional[float] = None,
    internal_note: Optional[str] = None,
) -> dict:
    """
    Return an updated copy of `entry` moved to `target`.
    Only status fields change; the caller swaps the copy back into the log.
    Raises InvalidTransitionError when the table forbids the move.
    """
    target = EditRequestStatus(target)
    current = entry.get("status", EditRequestStatus.PENDING.value)
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target.value)

    updated = copy.deepcopy(entry)
    now = isoformat(utcnow())

    updated["status"] = target.value
    if current == EditRequestStatus.PENDING.value and not updated.get("acknowledged_at"):
        updated["acknowledged_at"] = now
    if target in TERMINAL_STATUSES:
        updated["resolved"] = True
        updated["resolved_at"] = now

    if admin_response is not None:
        updated["admin_response"] = admin_response
    if price_change is not None:
        updated["price_change"] = price_change
    if refund_amount is not None:
        updated["refund_amount"] = refund_amount
    if internal_note:
        updated.setdefault("internal_notes", []).append(
            {"note": internal_note, "added_by": changed_by, "added_at": now}
        )

    updated.setdefault("status_history", []).append(
        {"status": target.value, "changed_at": now, "changed_by": changed_by}
    )
    return updated


def find_edit_request(booking: Booking, request_id: str) -> Optional[dict]:
    for entry in booking.edit_requests:
        if entry.get("id") == request_id:
            return entry
    return None


# ── Read model ────────────────────────────────────────────────

def serialize_edit_request(entry: dict, booking: Optional[Booking] = None) -> dict[str, Any]:
    """Entry plus response/resolution times and, optionally, booking context."""
    submitted = parse_iso(entry.get("modified_at"))
    data = dict(entry)
    data["response_time_hours"] = hours_between(submitted, parse_iso(entry.get("acknowledged_at")))
    data["resolution_time_hours"] = hours_between(submitted, parse_iso(entry.get("resolved_at")))
    if booking is not None:
        data["booking_id"] = str(booking.id)
        data["booking_reference"] = booking.booking_reference
        data["destination"] = booking.destination
        data["user_email"] = booking.email
    return data
