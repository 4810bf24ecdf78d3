"""
tests/test_payments.py
Tests for Stripe checkout, session completion, webhook processing and refunds.
Stripe SDK calls are patched; nothing leaves the process.
"""

import uuid
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Booking, BookingStatus, PaymentStatus, User
from tests.conftest import auth_headers, make_booking

WEBHOOK_HEADERS = {"stripe-signature": "t=1700000000,v1=deadbeef"}


def checkout_payload(**overrides) -> dict:
    start = date.today() + timedelta(days=60)
    payload = {
        "destination": "Cape Town, South Africa",
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=7)).isoformat(),
        "hotel": {"name": "Table Bay Hotel"},
        "price": "$3,100",
        "selected_activities": [
            {"name": "Table Mountain cableway", "price": 45},
            {"name": "Free walking tour", "price": 0},
        ],
    }
    payload.update(overrides)
    return payload


def fake_session(session_id: str = "cs_test_123") -> MagicMock:
    session = MagicMock()
    session.id = session_id
    session.url = f"https://checkout.stripe.com/c/pay/{session_id}"
    return session


def stripe_event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "data": {"object": obj},
    }


async def post_event(client: AsyncClient, event: dict):
    with patch("stripe.Webhook.construct_event", return_value=event):
        return await client.post("/api/payments/webhook", content=b"{}", headers=WEBHOOK_HEADERS)


# ── Checkout ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_checkout_creates_booking_and_session(client: AsyncClient, user: User, db: AsyncSession):
    with patch("stripe.checkout.Session.create", return_value=fake_session()) as create:
        response = await client.post(
            "/api/payments/checkout", headers=auth_headers(user), json=checkout_payload()
        )

    assert response.status_code == 200
    data = response.json()
    assert data["session_id"] == "cs_test_123"
    assert data["url"].startswith("https://checkout.stripe.com/")

    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["customer_email"] == user.email
    assert kwargs["metadata"]["booking_id"] == data["booking_id"]
    line_items = kwargs["line_items"]
    # Trip + the one activity with a price
    assert len(line_items) == 2
    assert line_items[0]["price_data"]["unit_amount"] == 310000
    assert line_items[0]["price_data"]["product_data"]["name"] == "Trip to Cape Town, South Africa"
    assert line_items[1]["price_data"]["unit_amount"] == 4500

    booking = await db.scalar(select(Booking).where(Booking.id == uuid.UUID(data["booking_id"])))
    assert booking.status == BookingStatus.PENDING_PAYMENT
    assert booking.payment_status == PaymentStatus.PROCESSING
    assert booking.stripe_session_id == "cs_test_123"
    assert float(booking.total_price) == 3145.0


@pytest.mark.asyncio
async def test_checkout_stripe_failure_keeps_booking(client: AsyncClient, user: User, db: AsyncSession):
    """Stripe errors surface as 502; the booking stays saved with payment failed."""
    with patch(
        "stripe.checkout.Session.create",
        side_effect=stripe.APIConnectionError("Network down"),
    ):
        response = await client.post(
            "/api/payments/checkout", headers=auth_headers(user), json=checkout_payload()
        )

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "Bad Gateway"
    assert body["requestId"]

    bookings = (await db.execute(select(Booking).where(Booking.user_id == user.id))).scalars().all()
    assert len(bookings) == 1
    assert bookings[0].status == BookingStatus.PENDING_PAYMENT
    assert bookings[0].payment_status == PaymentStatus.FAILED
    assert bookings[0].modifications[-1]["modification_type"] == "system_update"


@pytest.mark.asyncio
async def test_checkout_requires_auth(client: AsyncClient):
    response = await client.post("/api/payments/checkout", json=checkout_payload())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_test_mode_checkout_confirms_without_stripe(
    client: AsyncClient, user: User, db: AsyncSession
):
    with patch("stripe.checkout.Session.create") as create:
        response = await client.post(
            "/api/payments/checkout",
            headers=auth_headers(user),
            json=checkout_payload(payment_method="test"),
        )
    create.assert_not_called()

    assert response.status_code == 200
    booking = await db.get(Booking, uuid.UUID(response.json()["booking_id"]))
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.TEST_MODE


@pytest.mark.asyncio
async def test_retry_checkout(client: AsyncClient, user: User, db: AsyncSession):
    failed = await make_booking(db, user, payment_status=PaymentStatus.FAILED)
    with patch("stripe.checkout.Session.create", return_value=fake_session("cs_retry")):
        response = await client.post(
            f"/api/payments/checkout/{failed.id}", headers=auth_headers(user)
        )
    assert response.status_code == 200
    assert response.json()["session_id"] == "cs_retry"


@pytest.mark.asyncio
async def test_retry_checkout_for_confirmed_booking_rejected(
    client: AsyncClient, user: User, confirmed_booking: Booking
):
    response = await client.post(
        f"/api/payments/checkout/{confirmed_booking.id}", headers=auth_headers(user)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_retry_checkout_other_users_booking(
    client: AsyncClient, other_user: User, booking: Booking
):
    response = await client.post(
        f"/api/payments/checkout/{booking.id}", headers=auth_headers(other_user)
    )
    assert response.status_code == 404


# ── Session completion ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_session_check_confirms_paid_booking(
    client: AsyncClient, user: User, booking: Booking, db: AsyncSession
):
    session = {
        "id": "cs_paid",
        "payment_status": "paid",
        "payment_intent": "pi_paid",
        "metadata": {"booking_id": str(booking.id)},
    }
    with patch("stripe.checkout.Session.retrieve", return_value=session):
        response = await client.get(
            "/api/payments/checkout/session/cs_paid", headers=auth_headers(user)
        )

    assert response.status_code == 200
    data = response.json()
    assert data["payment_status"] == "paid"
    assert data["booking_status"] == "confirmed"

    await db.refresh(booking)
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.stripe_payment_intent_id == "pi_paid"


@pytest.mark.asyncio
async def test_session_check_unknown_session(client: AsyncClient, user: User):
    with patch(
        "stripe.checkout.Session.retrieve",
        side_effect=stripe.InvalidRequestError("No such checkout.session", param="id"),
    ):
        response = await client.get(
            "/api/payments/checkout/session/cs_missing", headers=auth_headers(user)
        )
    assert response.status_code == 404


# ── Webhook ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_bad_signature(client: AsyncClient):
    response = await client.post(
        "/api/payments/webhook", content=b'{"id": "evt_1"}', headers=WEBHOOK_HEADERS
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_missing_signature(client: AsyncClient):
    response = await client.post("/api/payments/webhook", content=b"{}")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_checkout_completed_confirms_booking(
    client: AsyncClient, user: User, booking: Booking, db: AsyncSession
):
    event = stripe_event("checkout.session.completed", {
        "id": "cs_test_hook",
        "payment_status": "paid",
        "payment_intent": "pi_hook",
        "metadata": {"booking_id": str(booking.id)},
    })
    response = await post_event(client, event)
    assert response.status_code == 200
    assert response.json() == {"received": True}

    await db.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.stripe_payment_intent_id == "pi_hook"
    assert booking.paid_at is not None
    assert booking.modifications[-1]["modification_type"] == "system_update"

    await db.refresh(user)
    assert user.travel_stats["total_trips"] == 1


@pytest.mark.asyncio
async def test_webhook_is_idempotent(
    client: AsyncClient, user: User, booking: Booking, db: AsyncSession
):
    """Same event twice, or a second event for a paid booking, changes nothing."""
    obj = {
        "id": "cs_dupe",
        "payment_status": "paid",
        "payment_intent": "pi_dupe",
        "metadata": {"booking_id": str(booking.id)},
    }
    event = stripe_event("checkout.session.completed", obj, event_id="evt_same")
    assert (await post_event(client, event)).status_code == 200
    assert (await post_event(client, event)).status_code == 200

    succeeded = stripe_event("payment_intent.succeeded", {
        "id": "pi_dupe", "status": "succeeded", "metadata": {"booking_id": str(booking.id)},
    })
    assert (await post_event(client, succeeded)).status_code == 200

    await db.refresh(booking)
    await db.refresh(user)
    assert user.travel_stats["total_trips"] == 1
    assert len(booking.modifications) == 1


@pytest.mark.asyncio
async def test_webhook_unpaid_completion_ignored(
    client: AsyncClient, booking: Booking, db: AsyncSession
):
    event = stripe_event("checkout.session.completed", {
        "id": "cs_async",
        "payment_status": "unpaid",
        "metadata": {"booking_id": str(booking.id)},
    })
    assert (await post_event(client, event)).status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING_PAYMENT
    assert booking.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_payment_intent_succeeded_by_intent_id(
    client: AsyncClient, db: AsyncSession, user: User
):
    booking = await make_booking(db, user, stripe_payment_intent_id="pi_lookup")
    event = stripe_event("payment_intent.succeeded", {"id": "pi_lookup", "status": "succeeded"})
    assert (await post_event(client, event)).status_code == 200

    await db.refresh(booking)
    assert booking.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_webhook_payment_failed(client: AsyncClient, booking: Booking, db: AsyncSession):
    event = stripe_event("payment_intent.payment_failed", {
        "id": "pi_failed", "metadata": {"booking_id": str(booking.id)},
    })
    assert (await post_event(client, event)).status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.PENDING_PAYMENT
    assert booking.payment_status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_webhook_expired_session_does_not_touch_paid_booking(
    client: AsyncClient, confirmed_booking: Booking, db: AsyncSession
):
    event = stripe_event("checkout.session.expired", {
        "id": confirmed_booking.stripe_session_id, "metadata": {},
    })
    assert (await post_event(client, event)).status_code == 200

    await db.refresh(confirmed_booking)
    assert confirmed_booking.payment_status == PaymentStatus.PAID



@pytest.mark.asyncio
async def test_late_failure_events_leave_cancelled_booking_alone(
    client: AsyncClient, user: User, db: AsyncSession
):
    booking = await make_booking(
        db, user, stripe_session_id="cs_test_cancelled", payment_status=PaymentStatus.PROCESSING
    )
    cancelled = await client.delete(f"/api/bookings/{booking.id}", headers=auth_headers(user))
    assert cancelled.status_code == 200

    expired = stripe_event("checkout.session.expired", {
        "id": "cs_test_cancelled", "metadata": {"booking_id": str(booking.id)},
    })
    failed = stripe_event("payment_intent.payment_failed", {
        "id": "pi_late", "metadata": {"booking_id": str(booking.id)},
    })
    assert (await post_event(client, expired)).status_code == 200
    assert (await post_event(client, failed)).status_code == 200

    await db.refresh(booking)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.PROCESSING
    assert booking.cancellation is not None

@pytest.mark.asyncio
async def test_webhook_unhandled_event_acknowledged(client: AsyncClient):
    event = stripe_event("customer.created", {"id": "cus_1"})
    response = await post_event(client, event)
    assert response.status_code == 200
    assert response.json() == {"received": True}


# ── Refund ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_refund(
    client: AsyncClient, admin_user: User, confirmed_booking: Booking, db: AsyncSession
):
    refund = MagicMock()
    refund.id = "re_123"
    with patch("stripe.Refund.create", return_value=refund) as create:
        response = await client.post(
            f"/api/payments/{confirmed_booking.id}/refund",
            headers=auth_headers(admin_user),
            json={"reason": "Hotel closed"},
        )

    assert response.status_code == 200
    create.assert_called_once_with(payment_intent="pi_test_confirmed")
    data = response.json()
    assert data["status"] == "refunded"
    assert data["payment_status"] == "refunded"
    assert data["cancellation"]["refund_id"] == "re_123"
    assert data["cancellation"]["refund_amount"] == 1240.0


@pytest.mark.asyncio
async def test_partial_refund_sends_amount(
    client: AsyncClient, admin_user: User, confirmed_booking: Booking
):
    refund = MagicMock()
    refund.id = "re_partial"
    with patch("stripe.Refund.create", return_value=refund) as create:
        response = await client.post(
            f"/api/payments/{confirmed_booking.id}/refund",
            headers=auth_headers(admin_user),
            json={"amount": 200},
        )
    assert response.status_code == 200
    create.assert_called_once_with(payment_intent="pi_test_confirmed", amount=20000)


@pytest.mark.asyncio
async def test_refund_unpaid_booking_rejected(client: AsyncClient, admin_user: User, booking: Booking):
    response = await client.post(
        f"/api/payments/{booking.id}/refund", headers=auth_headers(admin_user), json={}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_refund_requires_admin(client: AsyncClient, user: User, confirmed_booking: Booking):
    response = await client.post(
        f"/api/payments/{confirmed_booking.id}/refund", headers=auth_headers(user), json={}
    )
    assert response.status_code == 403
