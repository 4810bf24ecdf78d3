"""
services/payment/router.py
Stripe integration: Checkout Session creation, session completion check,
signed webhook handling, and admin refunds.

A booking is persisted before Stripe is called. When Stripe fails the
booking stays with payment_status FAILED; nothing is rolled back.
"""

import logging
import uuid
from typing import Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pybreaker import CircuitBreakerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.admin.router import log_admin_action
from services.booking.router import (
    build_booking,
    get_booking_or_404,
    invalidate_analytics,
    is_owner,
)
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import (
    Booking,
    BookingStatus,
    ModificationType,
    PaymentMethod,
    PaymentStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    CheckoutResponse,
    CheckoutSessionStatusResponse,
    RefundRequest,
)
from shared.utils.dates import isoformat, utcnow
from shared.utils.pricing import build_line_items, money, to_cents
from shared.utils.resilience import circuit_breaker_manager
from tasks.notification_tasks import enqueue, send_booking_confirmation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Stripe Client ─────────────────────────────────────────────

def _configure_stripe() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Payment service unavailable")
    stripe.api_key = settings.STRIPE_SECRET_KEY


async def _stripe_call(fn, *args, **kwargs):
    """Run a blocking Stripe SDK call off the event loop, behind the circuit breaker."""
    breaker = circuit_breaker_manager.get_breaker("stripe")
    return await run_in_threadpool(breaker.call, fn, *args, **kwargs)


# ── Booking State Helpers ─────────────────────────────────────

def _log_payment_change(booking: Booking, changes: dict, reason: str) -> None:
    booking.append_modification({
        "modified_by": "system",
        "modification_type": ModificationType.SYSTEM_UPDATE.value,
        "changes": changes,
        "reason": reason,
    })


async def _confirm_booking(
    db: AsyncSession,
    booking: Booking,
    payment_intent_id: Optional[str] = None,
) -> bool:
    """
    Mark paid + confirmed and fold the trip into the traveller's stats.
    Returns False when the booking was already paid (webhook redelivery).
    """
    if booking.payment_status == PaymentStatus.PAID:
        return False

    previous = {"status": booking.status.value, "payment_status": booking.payment_status.value}
    booking.mark_as_paid(payment_intent_id)
    _log_payment_change(
        booking,
        {
            "status": {"from": previous["status"], "to": BookingStatus.CONFIRMED.value},
            "payment_status": {"from": previous["payment_status"], "to": PaymentStatus.PAID.value},
        },
        "Payment received",
    )

    owner = await db.get(User, booking.user_id)
    if owner:
        owner.update_travel_stats(booking)
    logger.info(f"Booking {booking.booking_reference} paid and confirmed")
    return True


def _fail_booking(booking: Booking, reason: str) -> bool:
    """
    Mark payment FAILED on a booking still awaiting payment. Paid, cancelled
    and refunded bookings are left alone.
    """
    if booking.status != BookingStatus.PENDING_PAYMENT:
        return False
    if booking.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return False
    previous = booking.payment_status.value
    booking.mark_as_failed()
    _log_payment_change(
        booking,
        {"payment_status": {"from": previous, "to": PaymentStatus.FAILED.value}},
        reason,
    )
    return True


async def _start_checkout(booking: Booking, db: AsyncSession) -> CheckoutResponse:
    """Create the Stripe Checkout Session for a persisted booking."""
    if booking.payment_method == PaymentMethod.TEST:
        return await _complete_test_checkout(booking, db)

    _configure_stripe()
    metadata = {
        "booking_id": str(booking.id),
        "booking_reference": booking.booking_reference,
        "user_id": str(booking.user_id),
    }
    description_parts = [
        f"Dates: {booking.start_date} → {booking.end_date}" if booking.start_date else "",
        f"Hotel: {booking.hotel_name}" if booking.hotel_name else "",
        f"Travellers: {booking.total_passengers}",
    ]

    try:
        session = await _stripe_call(
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=build_line_items(
                booking.destination,
                booking.base_price,
                booking.selected_activities or [],
                settings.STRIPE_CURRENCY,
                description=" · ".join(p for p in description_parts if p),
            ),
            mode="payment",
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
            customer_email=booking.email,
            client_reference_id=str(booking.id),
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )
    except (stripe.StripeError, CircuitBreakerError) as e:
        logger.error(f"Stripe checkout failed for booking {booking.booking_reference}: {e}")
        _fail_booking(booking, "Checkout session could not be created")
        await db.commit()
        raise HTTPException(
            status_code=502,
            detail="Payment provider error: could not create checkout session",
        )

    booking.stripe_session_id = session.id
    booking.checkout_started_at = utcnow()
    booking.payment_status = PaymentStatus.PROCESSING
    await db.commit()

    return CheckoutResponse(
        session_id=session.id,
        url=session.url,
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
    )


async def _complete_test_checkout(booking: Booking, db: AsyncSession) -> CheckoutResponse:
    """Test-mode payment: no Stripe call, the booking is confirmed immediately."""
    if settings.is_production:
        raise HTTPException(status_code=400, detail="Test payments are disabled in production")

    session_id = f"test_{booking.trip_id}"
    booking.stripe_session_id = session_id
    await _confirm_booking(db, booking)
    booking.payment_status = PaymentStatus.TEST_MODE
    await db.commit()

    return CheckoutResponse(
        session_id=session_id,
        url=settings.checkout_success_url.replace("{CHECKOUT_SESSION_ID}", session_id),
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
    )


async def _find_booking(
    db: AsyncSession,
    booking_id: Optional[str] = None,
    session_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
) -> Optional[Booking]:
    if booking_id:
        try:
            booking = await db.get(Booking, uuid.UUID(str(booking_id)))
        except ValueError:
            booking = None
        if booking:
            return booking
    if session_id:
        result = await db.execute(select(Booking).where(Booking.stripe_session_id == session_id))
        booking = result.scalars().first()
        if booking:
            return booking
    if payment_intent_id:
        result = await db.execute(
            select(Booking).where(Booking.stripe_payment_intent_id == payment_intent_id)
        )
        return result.scalars().first()
    return None


# ── Checkout ──────────────────────────────────────────────────

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Save the trip as a PENDING_PAYMENT booking, then open a Stripe Checkout
    Session (base price + one line item per selected activity).
    """
    booking = await build_booking(data, current_user, db)
    await db.commit()
    await invalidate_analytics(redis, booking.user_id)
    logger.info(f"Checkout started for booking {booking.booking_reference}")

    response = await _start_checkout(booking, db)
    if booking.status == BookingStatus.CONFIRMED:
        background_tasks.add_task(enqueue, send_booking_confirmation, booking_id=str(booking.id))
    return response


@router.post("/checkout/{booking_id}", response_model=CheckoutResponse)
async def retry_checkout(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Open a fresh Checkout Session for an unpaid booking."""
    booking = await get_booking_or_404(booking_id, db)
    if not is_owner(booking, current_user):
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.status != BookingStatus.PENDING_PAYMENT:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot start checkout for booking in '{booking.status.value}' state",
        )
    if booking.payment_status == PaymentStatus.PAID:
        raise HTTPException(status_code=409, detail="Booking is already paid")

    return await _start_checkout(booking, db)


@router.get("/checkout/session/{session_id}", response_model=CheckoutSessionStatusResponse)
async def get_checkout_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Called by the success page. Confirms the booking if Stripe reports the
    session as paid and the webhook has not done so already.
    """
    _configure_stripe()
    try:
        session = await _stripe_call(stripe.checkout.Session.retrieve, session_id)
    except stripe.InvalidRequestError:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    except stripe.StripeError as e:
        logger.error(f"Stripe session lookup failed for {session_id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")

    metadata = session.get("metadata") or {}
    booking = await _find_booking(db, booking_id=metadata.get("booking_id"), session_id=session_id)
    if not booking or (current_user.role != UserRole.ADMIN and not is_owner(booking, current_user)):
        raise HTTPException(status_code=404, detail="Booking not found")

    if session.get("payment_status") == "paid":
        if await _confirm_booking(db, booking, session.get("payment_intent")):
            await db.commit()
            await invalidate_analytics(redis, booking.user_id)
            background_tasks.add_task(enqueue, send_booking_confirmation, booking_id=str(booking.id))

    return CheckoutSessionStatusResponse(
        session_id=session_id,
        payment_status=session.get("payment_status") or "unpaid",
        booking_id=booking.id,
        booking_status=booking.status.value,
    )


# ── Stripe Webhook ────────────────────────────────────────────

async def _handle_event(event, db: AsyncSession, background_tasks: BackgroundTasks) -> Optional[Booking]:
    event_type = event["type"]
    obj = event["data"]["object"]
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            logger.warning(f"Checkout {obj.get('id')} completed without payment ({obj.get('payment_status')})")
            return None
        booking = await _find_booking(db, metadata.get("booking_id"), session_id=obj.get("id"))
        if booking and await _confirm_booking(db, booking, obj.get("payment_intent")):
            background_tasks.add_task(enqueue, send_booking_confirmation, booking_id=str(booking.id))
        return booking

    if event_type == "payment_intent.succeeded":
        if obj.get("status") != "succeeded":
            return None
        booking = await _find_booking(db, metadata.get("booking_id"), payment_intent_id=obj.get("id"))
        if booking and await _confirm_booking(db, booking, obj.get("id")):
            background_tasks.add_task(enqueue, send_booking_confirmation, booking_id=str(booking.id))
        return booking

    if event_type == "payment_intent.payment_failed":
        booking = await _find_booking(db, metadata.get("booking_id"), payment_intent_id=obj.get("id"))
        if booking:
            _fail_booking(booking, "Payment failed")
        return booking

    if event_type == "checkout.session.expired":
        booking = await _find_booking(db, metadata.get("booking_id"), session_id=obj.get("id"))
        if booking:
            _fail_booking(booking, "Checkout session expired")
        return booking

    logger.info(f"Unhandled Stripe event type {event_type}")
    return None


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Stripe webhook handler. Verifies the Stripe-Signature header, then
    handles checkout.session.completed, payment_intent.succeeded,
    payment_intent.payment_failed and checkout.session.expired.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    cache = RedisCache(redis)
    event_id = event.get("id")
    if event_id and not await cache.claim_webhook_event(event_id):
        logger.info(f"Duplicate Stripe event {event_id} ignored")
        return {"received": True}

    try:
        booking = await _handle_event(event, db, background_tasks)
        await db.commit()
    except Exception:
        if event_id:
            await cache.release_webhook_event(event_id)
        raise

    if booking:
        await invalidate_analytics(redis, booking.user_id)
    return {"received": True}


# ── Refund ────────────────────────────────────────────────────

@router.post("/{booking_id}/refund", response_model=BookingResponse)
async def refund_booking(
    booking_id: UUID,
    request: Request,
    data: Optional[RefundRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Admin-triggered refund through Stripe. The booking becomes REFUNDED."""
    data = data or RefundRequest()
    booking = await get_booking_or_404(booking_id, db)

    if booking.payment_status != PaymentStatus.PAID:
        raise HTTPException(status_code=400, detail="Booking not eligible for refund")
    if not booking.stripe_payment_intent_id:
        raise HTTPException(status_code=400, detail="No Stripe payment found for this booking")

    total = money(booking.total_price)
    amount = money(data.amount) if data.amount else total
    if amount > total:
        raise HTTPException(status_code=400, detail="Refund amount exceeds amount paid")

    _configure_stripe()
    params = {"payment_intent": booking.stripe_payment_intent_id}
    if amount < total:
        params["amount"] = to_cents(amount)
    try:
        refund = await _stripe_call(stripe.Refund.create, **params)
    except (stripe.StripeError, CircuitBreakerError) as e:
        logger.error(f"Stripe refund failed for booking {booking.booking_reference}: {e}")
        raise HTTPException(status_code=502, detail=f"Refund failed: {e}")

    previous = booking.status.value
    cancellation = dict(booking.cancellation or {})
    cancellation.update({
        "is_cancelled": True,
        "cancelled_at": cancellation.get("cancelled_at") or isoformat(utcnow()),
        "cancelled_by": cancellation.get("cancelled_by") or "admin",
        "reason": data.reason or cancellation.get("reason"),
        "refund_amount": float(amount),
        "refund_status": "processed",
        "refund_id": refund.id,
    })
    booking.cancellation = cancellation
    booking.status = BookingStatus.REFUNDED
    booking.payment_status = PaymentStatus.REFUNDED
    booking.append_modification({
        "modified_by": str(current_user.id),
        "modification_type": ModificationType.ADMIN_UPDATE.value,
        "changes": {
            "status": {"from": previous, "to": BookingStatus.REFUNDED.value},
            "payment_status": {"from": PaymentStatus.PAID.value, "to": PaymentStatus.REFUNDED.value},
        },
        "reason": data.reason or "Refund issued",
    })
    await log_admin_action(
        db, current_user, "REFUND_BOOKING", "Booking", str(booking.id),
        {"amount": float(amount), "refund_id": refund.id, "reason": data.reason}, request,
    )
    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)

    logger.info(f"Refunded {amount} on booking {booking.booking_reference}")
    return BookingResponse.model_validate(booking)
