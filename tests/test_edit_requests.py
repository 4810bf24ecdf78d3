"""
tests/test_edit_requests.py
Tests for the edit-request workflow stored in a booking's modification log:
submit → admin transitions → owner withdraw, categorization, analytics freshness,
plus the transition table itself.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Booking,
    BookingStatus,
    EditRequestStatus,
    EditRequestType,
    Priority,
    User,
)
from shared.utils.edit_requests import (
    InvalidTransitionError,
    apply_transition,
    build_edit_request,
    can_transition,
    categorize,
    is_family_related,
)
from tests.conftest import auth_headers, make_booking


async def submit(client: AsyncClient, user: User, booking: Booking, **overrides):
    payload = {
        "booking_id": str(booking.id),
        "request": "Could we move the trip one week later?",
        "request_type": "date_change",
        "proposed_changes": {"start_date": "2031-05-08"},
        "priority": "high",
    }
    payload.update(overrides)
    return await client.post("/api/bookings/edit-request", headers=auth_headers(user), json=payload)


# ── Submit ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_edit_request(client: AsyncClient, user: User, booking: Booking, db: AsyncSession):
    response = await submit(client, user, booking)
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "Edit request submitted successfully"
    assert data["status"] == "pending"

    await db.refresh(booking)
    [entry] = booking.edit_requests
    assert entry["id"] == data["request_id"]
    assert entry["field"] == "edit_request"
    assert entry["modification_type"] == "user_request"
    assert entry["request_type"] == "date_change"
    assert entry["priority"] == "high"
    assert entry["requires_approval"] is True
    assert entry["resolved"] is False
    assert entry["proposed_changes"] == {"start_date": "2031-05-08"}


@pytest.mark.asyncio
async def test_submit_for_missing_booking(client: AsyncClient, user: User, booking: Booking):
    response = await submit(client, user, booking, booking_id=str(uuid.uuid4()))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_submit_for_other_users_booking(client: AsyncClient, other_user: User, booking: Booking):
    response = await submit(client, other_user, booking)
    assert response.status_code == 403
    assert response.json()["message"] == "Not authorized to edit this booking"


@pytest.mark.asyncio
async def test_submit_for_cancelled_booking(client: AsyncClient, db: AsyncSession, user: User):
    cancelled = await make_booking(db, user, status=BookingStatus.CANCELLED)
    response = await submit(client, user, cancelled)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_submit_invalid_request_type(client: AsyncClient, user: User, booking: Booking):
    response = await submit(client, user, booking, request_type="teleport")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_submit_keeps_existing_modifications(
    client: AsyncClient, user: User, booking: Booking, db: AsyncSession
):
    """The log is append-only: earlier entries are untouched."""
    await client.put(f"/api/bookings/{booking.id}", headers=auth_headers(user), json={"month": "June"})
    await submit(client, user, booking)
    await submit(client, user, booking, request="Add a crib", request_type="child_amenities")

    await db.refresh(booking)
    assert len(booking.modifications) == 3
    assert booking.modifications[0]["changes"]["month"]["to"] == "June"
    assert [e["request_type"] for e in booking.edit_requests] == ["date_change", "child_amenities"]
    assert booking.edit_requests[1]["is_family_related"] is True
    assert booking.edit_requests[1]["category"] == "family"


@pytest.mark.asyncio
async def test_list_booking_edit_requests(client: AsyncClient, user: User, booking: Booking):
    await submit(client, user, booking)
    response = await client.get(f"/api/bookings/{booking.id}/edit-requests", headers=auth_headers(user))
    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["response_time_hours"] is None


# ── Admin transitions ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_approves_then_completes(
    client: AsyncClient, user: User, admin_user: User, booking: Booking
):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    url = f"/api/admin/bookings/{booking.id}/edit-requests/{request_id}"
    headers = auth_headers(admin_user)

    approved = await client.patch(url, headers=headers, json={
        "status": "approved",
        "admin_response": "Dates moved, no extra cost",
        "price_change": 0,
        "internal_note": "Hotel confirmed by phone",
    })
    assert approved.status_code == 200
    data = approved.json()
    assert data["status"] == "approved"
    assert data["acknowledged_at"] is not None
    assert data["resolved"] is False
    assert data["internal_notes"][0]["note"] == "Hotel confirmed by phone"
    assert data["booking_reference"] == booking.booking_reference

    completed = await client.patch(url, headers=headers, json={"status": "completed"})
    assert completed.status_code == 200
    data = completed.json()
    assert data["resolved"] is True
    assert data["resolved_at"] is not None
    assert data["admin_response"] == "Dates moved, no extra cost"
    assert [h["status"] for h in data["status_history"]] == ["pending", "approved", "completed"]


@pytest.mark.asyncio
async def test_illegal_transition_rejected(
    client: AsyncClient, user: User, admin_user: User, booking: Booking
):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    url = f"/api/admin/bookings/{booking.id}/edit-requests/{request_id}"
    headers = auth_headers(admin_user)

    rejected = await client.patch(url, headers=headers, json={"status": "rejected"})
    assert rejected.status_code == 200

    reopened = await client.patch(url, headers=headers, json={"status": "approved"})
    assert reopened.status_code == 400
    assert "rejected" in reopened.json()["message"]


@pytest.mark.asyncio
async def test_pending_cannot_jump_to_completed(
    client: AsyncClient, user: User, admin_user: User, booking: Booking
):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    response = await client.patch(
        f"/api/admin/bookings/{booking.id}/edit-requests/{request_id}",
        headers=auth_headers(admin_user),
        json={"status": "completed"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_transition_requires_admin(client: AsyncClient, user: User, booking: Booking):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    response = await client.patch(
        f"/api/admin/bookings/{booking.id}/edit-requests/{request_id}",
        headers=auth_headers(user),
        json={"status": "approved"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_request_id(client: AsyncClient, admin_user: User, booking: Booking):
    response = await client.patch(
        f"/api/admin/bookings/{booking.id}/edit-requests/nope",
        headers=auth_headers(admin_user),
        json={"status": "approved"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_lists_open_requests(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User, booking: Booking
):
    second = await make_booking(db, user, destination="Cusco")
    first_id = (await submit(client, user, booking)).json()["request_id"]
    await submit(client, user, second, request_type="hotel_change", priority="urgent")

    await client.patch(
        f"/api/admin/bookings/{booking.id}/edit-requests/{first_id}",
        headers=auth_headers(admin_user),
        json={"status": "rejected"},
    )

    headers = auth_headers(admin_user)
    everything = await client.get("/api/admin/edit-requests", headers=headers)
    assert everything.json()["total"] == 2

    open_only = await client.get("/api/admin/edit-requests?open_only=true", headers=headers)
    items = open_only.json()["items"]
    assert len(items) == 1
    assert items[0]["destination"] == "Cusco"
    assert items[0]["category"] == "urgent"

    rejected = await client.get("/api/admin/edit-requests?status=rejected", headers=headers)
    assert rejected.json()["total"] == 1


# ── Owner withdraw ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_owner_withdraws_request(client: AsyncClient, user: User, booking: Booking):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    headers = auth_headers(user)

    response = await client.post(
        f"/api/bookings/{booking.id}/edit-requests/{request_id}/cancel", headers=headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = await client.post(
        f"/api/bookings/{booking.id}/edit-requests/{request_id}/cancel", headers=headers
    )
    assert again.status_code == 400


# ── Transition table ───────────────────────────────────────────────────────────

def test_transition_table():
    assert can_transition("pending", "cost_estimate_provided")
    assert can_transition("cost_estimate_provided", "approved")
    assert can_transition("approved", "completed")
    assert not can_transition("approved", "pending")
    assert not can_transition("completed", "cancelled")
    assert not can_transition("cancelled", "pending")


def test_apply_transition_leaves_original_untouched():
    booking = Booking(destination="Hanoi", passengers={"adults": 1, "children": 0, "infants": 0})
    entry = build_edit_request(booking, submitted_by="u1", description="  Upgrade room  ",
                               request_type="upgrade", priority="low")
    assert entry["description"] == "Upgrade room"
    assert entry["category"] == "simple"

    updated = apply_transition(entry, EditRequestStatus.COST_ESTIMATE_PROVIDED,
                               changed_by="admin", price_change=150.0)
    assert entry["status"] == "pending"
    assert entry["price_change"] is None
    assert updated["status"] == "cost_estimate_provided"
    assert updated["price_change"] == 150.0

    with pytest.raises(InvalidTransitionError):
        apply_transition(updated, EditRequestStatus.PENDING, changed_by="admin")


@pytest.mark.parametrize("request_type,priority,family_related,expected", [
    (EditRequestType.DATE_CHANGE, Priority.URGENT, True, "urgent"),
    (EditRequestType.WEATHER_CONCERN, Priority.LOW, True, "family"),
    (EditRequestType.WEATHER_CONCERN, Priority.MEDIUM, False, "weather"),
    (EditRequestType.CANCELLATION, Priority.HIGH, False, "financial"),
    (EditRequestType.REFUND, Priority.LOW, False, "financial"),
    (EditRequestType.DESTINATION_CHANGE, Priority.MEDIUM, False, "complex"),
    (EditRequestType.DATE_CHANGE, Priority.HIGH, False, "complex"),
    (EditRequestType.HOTEL_CHANGE, Priority.HIGH, False, "simple"),
])
def test_categorize(request_type, priority, family_related, expected):
    assert categorize(request_type, priority, family_related) == expected


def test_family_related_from_passengers_or_type():
    family = Booking(passengers={"adults": 2, "children": 0, "infants": 1})
    couple = Booking(passengers={"adults": 2, "children": 0, "infants": 0})
    assert is_family_related(EditRequestType.HOTEL_CHANGE, family)
    assert not is_family_related(EditRequestType.HOTEL_CHANGE, couple)
    assert is_family_related(EditRequestType.CHILD_AMENITIES, couple)


@pytest.mark.asyncio
async def test_submitted_request_is_categorized(client: AsyncClient, user: User, booking: Booking):
    await submit(client, user, booking, request_type="weather_concern", priority="medium")
    await submit(client, user, booking, request_type="refund", priority="low")

    listed = await client.get(f"/api/bookings/{booking.id}/edit-requests", headers=auth_headers(user))
    categories = sorted(r["category"] for r in listed.json()["items"])
    assert categories == ["financial", "weather"]


# ── Analytics freshness ────────────────────────────────────────────────────────

async def analytics_requests(client: AsyncClient, user: User) -> list[dict]:
    response = await client.get("/api/users/me/analytics", headers=auth_headers(user))
    assert response.status_code == 200
    return response.json()["analytics"]["edit_requests"]


@pytest.mark.asyncio
async def test_analytics_refreshed_after_edit_request_lifecycle(
    client: AsyncClient, user: User, admin_user: User, booking: Booking
):
    assert await analytics_requests(client, user) == []

    request_id = (await submit(client, user, booking)).json()["request_id"]
    history = await analytics_requests(client, user)
    assert [r["status"] for r in history] == ["pending"]

    await client.patch(
        f"/api/admin/bookings/{booking.id}/edit-requests/{request_id}",
        headers=auth_headers(admin_user),
        json={"status": "rejected"},
    )
    assert [r["status"] for r in await analytics_requests(client, user)] == ["rejected"]


@pytest.mark.asyncio
async def test_analytics_refreshed_after_withdraw(client: AsyncClient, user: User, booking: Booking):
    request_id = (await submit(client, user, booking)).json()["request_id"]
    assert [r["status"] for r in await analytics_requests(client, user)] == ["pending"]

    await client.post(
        f"/api/bookings/{booking.id}/edit-requests/{request_id}/cancel", headers=auth_headers(user)
    )
    assert [r["status"] for r in await analytics_requests(client, user)] == ["cancelled"]


# ── Admin listing scope ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_list_skips_bookings_without_requests(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User, booking: Booking
):
    await make_booking(db, user, destination="Oslo")
    await make_booking(db, user, destination="Porto", modifications=[{
        "id": str(uuid.uuid4()),
        "field": "passengers",
        "old_value": {"adults": 1},
        "new_value": {"adults": 2},
        "modified_by": str(user.id),
        "modified_at": "2030-01-01T00:00:00+00:00",
    }])
    await submit(client, user, booking)

    response = await client.get("/api/admin/edit-requests", headers=auth_headers(admin_user))
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["booking_id"] == str(booking.id)
