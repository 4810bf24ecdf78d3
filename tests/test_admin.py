"""
tests/test_admin.py
Tests for admin-only endpoints: booking oversight, user moderation, analytics, audit log.
"""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    PaymentStatus,
    User,
    UserStatus,
)
from tests.conftest import TEST_PASSWORD, auth_headers, make_booking


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_user_cannot_access_admin_endpoints(client: AsyncClient, user: User):
    """Regular users get 403 on all admin endpoints."""
    for path in ("/api/admin/bookings", "/api/admin/users", "/api/admin/analytics", "/api/admin/audit-logs"):
        response = await client.get(path, headers=auth_headers(user))
        assert response.status_code == 403, path


@pytest.mark.asyncio
async def test_unauthenticated_cannot_access_admin(client: AsyncClient):
    response = await client.get("/api/admin/bookings")
    assert response.status_code == 401


# ── Booking Oversight ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_lists_bookings_with_filters(
    client: AsyncClient, db: AsyncSession, admin_user: User, user: User, other_user: User
):
    await make_booking(db, user, destination="Seoul")
    await make_booking(db, other_user, destination="Busan", status=BookingStatus.CONFIRMED)

    headers = auth_headers(admin_user)
    everything = await client.get("/api/admin/bookings", headers=headers)
    assert everything.status_code == 200
    assert everything.json()["total"] == 2

    by_user = await client.get(f"/api/admin/bookings?user_id={other_user.id}", headers=headers)
    assert [b["destination"] for b in by_user.json()["items"]] == ["Busan"]

    by_status = await client.get("/api/admin/bookings?status=pending_payment", headers=headers)
    assert by_status.json()["total"] == 1


@pytest.mark.asyncio
async def test_admin_gets_any_booking(client: AsyncClient, admin_user: User, booking: Booking):
    response = await client.get(f"/api/admin/bookings/{booking.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["booking_reference"] == booking.booking_reference


@pytest.mark.asyncio
async def test_admin_updates_booking_and_logs(
    client: AsyncClient, admin_user: User, booking: Booking, db: AsyncSession
):
    response = await client.put(
        f"/api/admin/bookings/{booking.id}",
        headers=auth_headers(admin_user),
        json={"total_price": 999.99, "hotel": {"name": "Pestana Palace"}, "modification_reason": "Upgrade"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["total_price"] == 999.99
    assert data["hotel_name"] == "Pestana Palace"

    entry = data["modifications"][-1]
    assert entry["modification_type"] == "admin_update"
    assert entry["modified_by"] == str(admin_user.id)
    assert set(entry["changes"]) == {"total_price", "hotel"}

    logs = (await db.execute(select(AdminAuditLog))).scalars().all()
    assert [log.action for log in logs] == ["UPDATE_BOOKING"]
    assert logs[0].entity_id == str(booking.id)


@pytest.mark.asyncio
async def test_admin_complete_booking(
    client: AsyncClient, admin_user: User, confirmed_booking: Booking
):
    url = f"/api/admin/bookings/{confirmed_booking.id}/complete"
    response = await client.post(url, headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    again = await client.post(url, headers=auth_headers(admin_user))
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_admin_cannot_complete_unpaid_booking(client: AsyncClient, admin_user: User, booking: Booking):
    response = await client.post(
        f"/api/admin/bookings/{booking.id}/complete", headers=auth_headers(admin_user)
    )
    assert response.status_code == 400


# ── User Management ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_and_search_users(
    client: AsyncClient, admin_user: User, user: User, other_user: User
):
    headers = auth_headers(admin_user)
    response = await client.get("/api/admin/users", headers=headers)
    assert response.status_code == 200
    assert response.json()["total"] == 3

    admins = await client.get("/api/admin/users?role=admin", headers=headers)
    assert [u["email"] for u in admins.json()["items"]] == [admin_user.email]

    search = await client.get("/api/admin/users?search=someone", headers=headers)
    assert [u["id"] for u in search.json()["items"]] == [str(other_user.id)]


@pytest.mark.asyncio
async def test_get_user_not_found(client: AsyncClient, admin_user: User):
    response = await client.get(f"/api/admin/users/{uuid.uuid4()}", headers=auth_headers(admin_user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_updates_user(client: AsyncClient, admin_user: User, user: User, db: AsyncSession):
    response = await client.put(
        f"/api/admin/users/{user.id}",
        headers=auth_headers(admin_user),
        json={"role": "admin", "reward_points": 250, "email_verified": False},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["role"] == "admin"
    assert data["reward_points"] == 250

    await db.refresh(user)
    assert user.email_verified is False


@pytest.mark.asyncio
async def test_admin_cannot_demote_self(client: AsyncClient, admin_user: User):
    response = await client.put(
        f"/api/admin/users/{admin_user.id}", headers=auth_headers(admin_user), json={"role": "user"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_soft_delete_user(client: AsyncClient, admin_user: User, user: User, db: AsyncSession):
    headers = auth_headers(admin_user)
    response = await client.delete(f"/api/admin/users/{user.id}", headers=headers)
    assert response.status_code == 200

    await db.refresh(user)
    assert user.deleted_at is not None
    assert user.status == UserStatus.INACTIVE

    listed = await client.get("/api/admin/users", headers=headers)
    assert str(user.id) not in {u["id"] for u in listed.json()["items"]}

    with_deleted = await client.get("/api/admin/users?include_deleted=true", headers=headers)
    assert with_deleted.json()["total"] == 2

    again = await client.delete(f"/api/admin/users/{user.id}", headers=headers)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_admin_cannot_delete_self(client: AsyncClient, admin_user: User):
    response = await client.delete(f"/api/admin/users/{admin_user.id}", headers=auth_headers(admin_user))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_suspend_and_reactivate_user(
    client: AsyncClient, admin_user: User, user: User, db: AsyncSession
):
    headers = auth_headers(admin_user)
    suspend = await client.post(
        f"/api/admin/users/{user.id}/suspend", headers=headers, json={"reason": "Chargeback fraud"}
    )
    assert suspend.status_code == 200

    # Suspended users are locked out of the API and of login
    me = await client.get("/api/auth/me", headers=auth_headers(user))
    assert me.status_code == 403
    login = await client.post("/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
    assert login.status_code == 403

    again = await client.post(
        f"/api/admin/users/{user.id}/suspend", headers=headers, json={"reason": "Chargeback fraud"}
    )
    assert again.status_code == 409

    reactivate = await client.post(f"/api/admin/users/{user.id}/reactivate", headers=headers)
    assert reactivate.status_code == 200
    await db.refresh(user)
    assert user.status == UserStatus.ACTIVE

    logs = (await db.execute(select(AdminAuditLog.action))).scalars().all()
    assert sorted(logs) == ["REACTIVATE_USER", "SUSPEND_USER"]


@pytest.mark.asyncio
async def test_cannot_suspend_admin(client: AsyncClient, admin_user: User, db: AsyncSession):
    response = await client.post(
        f"/api/admin/users/{admin_user.id}/suspend",
        headers=auth_headers(admin_user),
        json={"reason": "Testing self-suspend"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_suspend_requires_reason(client: AsyncClient, admin_user: User, user: User):
    response = await client.post(
        f"/api/admin/users/{user.id}/suspend", headers=auth_headers(admin_user), json={"reason": "x"}
    )
    assert response.status_code == 422


# ── Analytics ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_platform_analytics(
    client: AsyncClient, db: AsyncSession, admin_user: User, user: User
):
    await make_booking(db, user, destination="Lima", status=BookingStatus.CONFIRMED,
                       payment_status=PaymentStatus.PAID, total_price=Decimal("1500.00"))
    await make_booking(db, user, destination="Lima", status=BookingStatus.COMPLETED,
                       payment_status=PaymentStatus.PAID, total_price=Decimal("500.00"))
    await make_booking(db, user, destination="Quito", total_price=Decimal("800.00"))

    response = await client.get("/api/admin/analytics", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()

    assert data["users"]["total"] == 2
    assert data["bookings"]["total"] == 3
    assert data["revenue"]["total"] == 2000.0
    assert data["revenue"]["average_per_booking"] == 1000.0
    assert data["top_destinations"][0] == {"destination": "Lima", "count": 2}
    assert len(data["monthly_trend"]) == 6
    assert data["monthly_trend"][-1]["bookings"] == 3
    assert data["monthly_trend"][-1]["revenue"] == 2000.0


@pytest.mark.asyncio
async def test_platform_analytics_cached(
    client: AsyncClient, db: AsyncSession, admin_user: User, user: User
):
    headers = auth_headers(admin_user)
    first = await client.get("/api/admin/analytics", headers=headers)
    assert first.json()["bookings"]["total"] == 0

    await make_booking(db, user)
    cached = await client.get("/api/admin/analytics", headers=headers)
    assert cached.json()["generated_at"] == first.json()["generated_at"]
    assert cached.json()["bookings"]["total"] == 0


# ── Audit Log ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_log_lists_actions(client: AsyncClient, admin_user: User, user: User):
    headers = auth_headers(admin_user)
    await client.post(
        f"/api/admin/users/{user.id}/suspend", headers=headers, json={"reason": "Spam bookings"}
    )

    response = await client.get("/api/admin/audit-logs", headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    entry = data["items"][0]
    assert entry["action"] == "SUSPEND_USER"
    assert entry["admin_email"] == admin_user.email
    assert entry["entity_id"] == str(user.id)
    assert entry["payload"] == {"reason": "Spam bookings"}

    filtered = await client.get("/api/admin/audit-logs?action=delete_user", headers=headers)
    assert filtered.json()["total"] == 0
