"""
services/booking/router.py
Trip booking lifecycle for travellers: create, list, update, soft-cancel,
review, and the edit-request workflow stored in the modification log.

Booking status machine:
    PENDING_PAYMENT → CONFIRMED → COMPLETED
          ↓              ↓
      CANCELLED      CANCELLED / REFUNDED
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import get_current_user
from shared.models.models import (
    Booking,
    BookingSource,
    BookingStatus,
    EditRequestStatus,
    ModificationType,
    PaymentMethod,
    PaymentStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingReviewRequest,
    BookingUpdateRequest,
    EditRequestCreate,
    EditRequestSubmitResponse,
)
from shared.utils.dates import isoformat, utcnow
from shared.utils.edit_requests import (
    InvalidTransitionError,
    apply_transition,
    build_edit_request,
    find_edit_request,
    serialize_edit_request,
)
from shared.utils.pricing import resolve_prices
from tasks.notification_tasks import enqueue, send_edit_request_notice

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

EDITABLE_STATUSES = {BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED}


# ── Helpers ───────────────────────────────────────────────────

async def get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def is_owner(booking: Booking, user: User) -> bool:
    return booking.user_id == user.id or booking.email == user.email


def ensure_can_access(booking: Booking, user: User) -> None:
    if user.role != UserRole.ADMIN and not is_owner(booking, user):
        raise HTTPException(status_code=403, detail="Not authorized to access this booking")


def serialize_booking(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


async def invalidate_analytics(redis, user_id) -> None:
    await RedisCache(redis).delete(f"analytics:user:{user_id}")


def _has_children(passengers: dict, flag: bool) -> bool:
    return bool(flag) or passengers.get("children", 0) > 0 or passengers.get("infants", 0) > 0


async def build_booking(
    data: BookingCreateRequest,
    current_user: User,
    db: AsyncSession,
) -> Booking:
    """
    Validate ownership and pricing, then add a PENDING_PAYMENT booking to
    the session. Shared by direct creation and Stripe checkout.
    """
    email = (data.email or current_user.email).lower()
    owner = current_user
    if email != current_user.email:
        if current_user.role != UserRole.ADMIN:
            raise HTTPException(
                status_code=403,
                detail="Cannot create a booking for another user's email",
            )
        result = await db.execute(select(User).where(User.email == email))
        owner = result.scalar_one_or_none() or current_user

    payload = data.model_dump(mode="json")
    selected = payload["selected_activities"]
    base_price, total_price, breakdown = resolve_prices(
        price=data.price,
        base_price=data.base_price,
        total_price=data.total_price,
        price_breakdown=payload["price_breakdown"],
        selected_activities=selected,
    )

    booking = Booking(
        user_id=owner.id,
        email=email,
        destination=data.destination.strip(),
        month=data.month,
        reason=data.reason,
        duration=data.duration,
        start_date=data.start_date,
        end_date=data.end_date,
        passengers=payload["passengers"],
        flight=payload["flight"],
        hotel=payload["hotel"],
        activities=payload["activities"] or [a["name"] for a in selected],
        selected_activities=selected,
        weather=payload["weather"],
        has_children=_has_children(payload["passengers"], data.has_children),
        family_features=payload["family_features"],
        price=data.price,
        base_price=base_price,
        total_price=total_price,
        price_breakdown=breakdown,
        currency=(breakdown.get("currency") or settings.DEFAULT_CURRENCY).upper(),
        payment_method=PaymentMethod(data.payment_method),
        source=BookingSource(data.source),
        status=BookingStatus.PENDING_PAYMENT,
        payment_status=PaymentStatus.PENDING,
        modifications=[],
    )
    db.add(booking)
    await db.flush()
    return booking


def paginated(items: list, total: int, page: int, limit: int) -> dict:
    total_pages = -(-total // limit) if total else 0
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": limit,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def booking_filters(
    query,
    status_filter: Optional[str],
    destination: Optional[str],
    start_from: Optional[date],
    start_to: Optional[date],
    family_trips: Optional[bool],
):
    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            valid = [s.value for s in BookingStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")
    if destination:
        query = query.where(Booking.destination.ilike(f"%{destination.strip()}%"))
    if start_from:
        query = query.where(Booking.start_date >= start_from)
    if start_to:
        query = query.where(Booking.start_date <= start_to)
    if family_trips is not None:
        query = query.where(Booking.has_children.is_(family_trips))
    return query


async def paginate_bookings(query, db: AsyncSession, page: int, limit: int) -> dict:
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    items = [serialize_booking(b) for b in result.scalars().all()]
    return paginated(items, total or 0, page, limit)


# ── Booking CRUD ──────────────────────────────────────────────

@router.get("")
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    destination: Optional[str] = Query(None),
    start_from: Optional[date] = Query(None),
    start_to: Optional[date] = Query(None),
    family_trips: Optional[bool] = Query(None),
    email: Optional[str] = Query(None, description="Admin only"),
    user_id: Optional[UUID] = Query(None, description="Admin only"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.BOOKINGS_MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Own bookings, newest first. Admins see everything and may filter by user."""
    query = select(Booking)
    if current_user.role == UserRole.ADMIN:
        if email:
            query = query.where(Booking.email == email.lower())
        if user_id:
            query = query.where(Booking.user_id == user_id)
    else:
        query = query.where(
            or_(Booking.user_id == current_user.id, Booking.email == current_user.email)
        )

    query = booking_filters(query, status_filter, destination, start_from, start_to, family_trips)
    return await paginate_bookings(query, db, page, limit)


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Save a trip as PENDING_PAYMENT. Payment is started via /payments/checkout."""
    booking = await build_booking(data, current_user, db)
    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)

    logger.info(f"Booking {booking.booking_reference} created for {booking.email}")
    return serialize_booking(booking)


# ── Edit Requests ─────────────────────────────────────────────

@router.post("/edit-request", response_model=EditRequestSubmitResponse)
async def submit_edit_request(
    data: EditRequestCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Ask the travel team to change a booking. The request is appended to the
    booking's modification log as a pending entry and the admin is emailed.
    """
    booking = await get_booking_or_404(data.booking_id, db)
    if not is_owner(booking, current_user):
        raise HTTPException(status_code=403, detail="Not authorized to edit this booking")
    if booking.status == BookingStatus.CANCELLED:
        raise HTTPException(status_code=400, detail="Cannot request changes to a cancelled booking")

    entry = booking.append_modification(
        build_edit_request(
            booking,
            submitted_by=str(current_user.id),
            description=data.request,
            request_type=data.request_type,
            proposed_changes=data.proposed_changes,
            priority=data.priority,
        )
    )
    await db.commit()
    await invalidate_analytics(redis, booking.user_id)

    background_tasks.add_task(
        enqueue,
        send_edit_request_notice,
        booking_id=str(booking.id),
        request_id=entry["id"],
    )
    logger.info(
        f"Edit request {entry['id']} ({entry['request_type']}, {entry['priority']}) "
        f"submitted for booking {booking.booking_reference}"
    )
    return EditRequestSubmitResponse(
        message="Edit request submitted successfully",
        request_id=entry["id"],
        status=entry["status"],
    )


@router.get("/{booking_id}/edit-requests")
async def list_booking_edit_requests(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking_or_404(booking_id, db)
    ensure_can_access(booking, current_user)
    return {
        "booking_id": str(booking.id),
        "items": [serialize_edit_request(e) for e in booking.edit_requests],
    }


@router.post("/{booking_id}/edit-requests/{request_id}/cancel")
async def cancel_edit_request(
    booking_id: UUID,
    request_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Owner withdraws a request that has not been resolved yet."""
    booking = await get_booking_or_404(booking_id, db)
    if not is_owner(booking, current_user):
        raise HTTPException(status_code=403, detail="Not authorized to edit this booking")

    entry = find_edit_request(booking, request_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Edit request not found")

    try:
        updated = apply_transition(entry, EditRequestStatus.CANCELLED, changed_by=str(current_user.id))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    booking.replace_modification(updated)
    await db.commit()
    await invalidate_analytics(redis, booking.user_id)
    return serialize_edit_request(updated)


# ── Single Booking ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking_or_404(booking_id, db)
    ensure_can_access(booking, current_user)
    return serialize_booking(booking)


def apply_booking_changes(booking: Booking, updates: dict) -> dict:
    """
    Set changed fields on the booking and return {field: {from, to}}
    for the modification log. Unchanged values are skipped.
    """
    changes = {}
    for field, value in updates.items():
        current = getattr(booking, field)
        if jsonable_encoder(current) == jsonable_encoder(value):
            continue
        changes[field] = {"from": jsonable_encoder(current), "to": jsonable_encoder(value)}
        setattr(booking, field, value)

    if "passengers" in updates or "has_children" in updates:
        booking.has_children = _has_children(booking.passengers or {}, updates.get("has_children", False))

    if booking.start_date and booking.end_date and booking.end_date < booking.start_date:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")
    return changes


@router.put("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: UUID,
    data: BookingUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Owner edits trip details. Every change is recorded as a user_request modification."""
    booking = await get_booking_or_404(booking_id, db)
    if not is_owner(booking, current_user):
        raise HTTPException(status_code=403, detail="Not authorized to modify this booking")
    if booking.status not in EDITABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot modify booking in '{booking.status.value}' state",
        )

    reason = data.modification_reason
    updates = data.model_dump(exclude_none=True, exclude={"modification_reason"})
    if "passengers" in updates:
        updates["passengers"] = data.passengers.model_dump()
    if "selected_activities" in updates:
        updates["selected_activities"] = [a.model_dump() for a in data.selected_activities]

    changes = apply_booking_changes(booking, updates)
    if changes:
        booking.append_modification({
            "modified_by": str(current_user.id),
            "modification_type": ModificationType.USER_REQUEST.value,
            "changes": changes,
            "reason": reason,
        })

    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)
    return serialize_booking(booking)


@router.delete("/{booking_id}", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    reason: Optional[str] = Query(None, max_length=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Soft-cancel. The row is kept with status CANCELLED and a cancellation
    record; paid bookings get a pending refund for the full amount.
    """
    booking = await get_booking_or_404(booking_id, db)
    ensure_can_access(booking, current_user)

    if booking.status not in EDITABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel booking in '{booking.status.value}' state",
        )

    by_admin = current_user.role == UserRole.ADMIN and not is_owner(booking, current_user)
    previous = booking.status.value
    refund = float(booking.total_price or 0) if booking.payment_status == PaymentStatus.PAID else 0

    booking.cancel(
        cancelled_by="admin" if by_admin else "user",
        reason=reason,
        refund_amount=refund,
    )
    booking.append_modification({
        "modified_by": str(current_user.id),
        "modification_type": (
            ModificationType.ADMIN_UPDATE if by_admin else ModificationType.USER_REQUEST
        ).value,
        "changes": {"status": {"from": previous, "to": BookingStatus.CANCELLED.value}},
        "reason": reason or "Cancelled",
    })

    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)

    logger.info(f"Booking {booking.booking_reference} cancelled by {current_user.email}")
    return serialize_booking(booking)


@router.post("/{booking_id}/review", response_model=BookingResponse)
async def review_booking(
    booking_id: UUID,
    data: BookingReviewRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Rate a completed trip. One review per booking."""
    booking = await get_booking_or_404(booking_id, db)
    if not is_owner(booking, current_user):
        raise HTTPException(status_code=403, detail="Not authorized to review this booking")
    if booking.status != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Can only review completed trips")
    if booking.review:
        raise HTTPException(status_code=409, detail="Review already submitted for this booking")

    booking.review = {
        "rating": data.rating,
        "comment": data.comment,
        "reviewed_at": isoformat(utcnow()),
    }
    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)
    return serialize_booking(booking)
