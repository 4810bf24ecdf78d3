"""
services/admin/router.py
Admin-only endpoints: booking oversight, edit-request handling,
user moderation, platform analytics, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

import logging
from collections import Counter
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import Text, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking.router import (
    apply_booking_changes,
    booking_filters,
    get_booking_or_404,
    invalidate_analytics,
    paginated,
    paginate_bookings,
    serialize_booking,
)
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    EditRequestStatus,
    ModificationType,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    AdminBookingUpdateRequest,
    AdminSuspendRequest,
    AdminUserUpdateRequest,
    BookingResponse,
    EditRequestUpdate,
    MessageResponse,
    UserProfileResponse,
)
from shared.utils.dates import as_utc, isoformat, month_start, utcnow
from shared.utils.edit_requests import (
    EDIT_REQUEST_FIELD,
    InvalidTransitionError,
    apply_transition,
    find_edit_request,
    serialize_edit_request,
)
from shared.utils.pricing import money
from tasks.notification_tasks import enqueue, send_edit_request_update

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

ADMIN_ANALYTICS_CACHE_KEY = "analytics:admin"
REVENUE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def log_admin_action(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


async def _get_user_or_404(user_id: UUID, db: AsyncSession) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Booking Oversight ──────────────────────────────────────────────────────────

@router.get("/bookings")
async def list_all_bookings(
    status_filter: Optional[str] = Query(None, alias="status", description="BookingStatus value"),
    email: Optional[str] = Query(None),
    user_id: Optional[UUID] = Query(None),
    destination: Optional[str] = Query(None),
    start_from: Optional[date] = Query(None),
    start_to: Optional[date] = Query(None),
    family_trips: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=settings.BOOKINGS_MAX_PAGE_SIZE),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: every booking on the platform, newest first."""
    query = select(Booking)
    if email:
        query = query.where(Booking.email == email.lower())
    if user_id:
        query = query.where(Booking.user_id == user_id)
    query = booking_filters(query, status_filter, destination, start_from, start_to, family_trips)
    return await paginate_bookings(query, db, page, limit)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking_admin(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return serialize_booking(await get_booking_or_404(booking_id, db))


@router.put("/bookings/{booking_id}", response_model=BookingResponse)
async def update_booking_admin(
    booking_id: UUID,
    data: AdminBookingUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    """
    Admin edit of any trip field, pricing or status. The diff is recorded
    as an admin_update modification.
    """
    booking = await get_booking_or_404(booking_id, db)

    reason = data.modification_reason
    updates = data.model_dump(exclude_none=True, exclude={"modification_reason"})
    if "passengers" in updates:
        updates["passengers"] = data.passengers.model_dump()
    if "selected_activities" in updates:
        updates["selected_activities"] = [a.model_dump() for a in data.selected_activities]
    if "price_breakdown" in updates:
        updates["price_breakdown"] = data.price_breakdown.model_dump()
    for field in ("base_price", "total_price"):
        if field in updates:
            updates[field] = money(updates[field])
    if "status" in updates:
        updates["status"] = BookingStatus(updates["status"])

    changes = apply_booking_changes(booking, updates)
    if changes:
        booking.append_modification({
            "modified_by": str(current_user.id),
            "modification_type": ModificationType.ADMIN_UPDATE.value,
            "changes": changes,
            "reason": reason,
        })
        await log_admin_action(db, current_user, "UPDATE_BOOKING", "Booking", str(booking_id),
                               {"fields": sorted(changes), "reason": reason}, request)

    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)
    return serialize_booking(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    """Mark a confirmed trip as taken. Only completed trips can be reviewed."""
    booking = await get_booking_or_404(booking_id, db)
    if booking.status != BookingStatus.CONFIRMED:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot complete booking in '{booking.status.value}' state",
        )

    booking.status = BookingStatus.COMPLETED
    booking.append_modification({
        "modified_by": str(current_user.id),
        "modification_type": ModificationType.ADMIN_UPDATE.value,
        "changes": {"status": {"from": BookingStatus.CONFIRMED.value, "to": BookingStatus.COMPLETED.value}},
        "reason": "Trip completed",
    })
    await log_admin_action(db, current_user, "COMPLETE_BOOKING", "Booking", str(booking_id), {}, request)
    await db.commit()
    await db.refresh(booking)
    await invalidate_analytics(redis, booking.user_id)
    return serialize_booking(booking)


# ── Edit Requests ─────────────────────────────────────────────────────────────

@router.get("/edit-requests")
async def list_edit_requests(
    status_filter: Optional[EditRequestStatus] = Query(None, alias="status"),
    open_only: bool = Query(False, description="Only unresolved requests"),
    priority: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    All edit requests across bookings, newest first. Only bookings whose
    modification log mentions an edit request are loaded; filtering and
    paging of the entries themselves happen in Python.
    """
    result = await db.execute(
        select(Booking)
        .where(cast(Booking.modifications, Text).contains(EDIT_REQUEST_FIELD))
        .order_by(Booking.updated_at.desc())
    )

    entries = []
    for booking in result.scalars().all():
        for entry in booking.edit_requests:
            if status_filter and entry.get("status") != status_filter.value:
                continue
            if open_only and entry.get("resolved"):
                continue
            if priority and entry.get("priority") != priority:
                continue
            entries.append(serialize_edit_request(entry, booking))

    entries.sort(key=lambda e: e.get("modified_at") or "", reverse=True)
    start = (page - 1) * limit
    return paginated(entries[start:start + limit], len(entries), page, limit)


@router.patch("/bookings/{booking_id}/edit-requests/{request_id}")
async def update_edit_request(
    booking_id: UUID,
    request_id: str,
    data: EditRequestUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    """
    Move an edit request through its workflow:
        pending → approved | rejected | cost_estimate_provided | cancelled
        cost_estimate_provided → approved | rejected | cancelled
        approved → completed | cancelled
    The traveller is emailed about the new status.
    """
    booking = await get_booking_or_404(booking_id, db)
    entry = find_edit_request(booking, request_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Edit request not found")

    try:
        updated = apply_transition(
            entry,
            data.status,
            changed_by=str(current_user.id),
            admin_response=data.admin_response,
            price_change=data.price_change,
            refund_amount=data.refund_amount,
            internal_note=data.internal_note,
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    booking.replace_modification(updated)
    await log_admin_action(
        db, current_user, "UPDATE_EDIT_REQUEST", "Booking", str(booking_id),
        {"request_id": request_id, "from": entry.get("status"), "to": updated["status"]},
        request,
    )
    await db.commit()
    await invalidate_analytics(redis, booking.user_id)

    background_tasks.add_task(
        enqueue, send_edit_request_update, booking_id=str(booking.id), request_id=request_id
    )
    logger.info(
        f"Edit request {request_id} on {booking.booking_reference}: "
        f"{entry.get('status')} → {updated['status']}"
    )
    return serialize_edit_request(updated, booking)


# ── User Management ────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    role: Optional[UserRole] = Query(None),
    status_filter: Optional[UserStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, description="Name or email substring"),
    include_deleted: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(User)
    if not include_deleted:
        query = query.where(User.deleted_at.is_(None))
    if role:
        query = query.where(User.role == role)
    if status_filter:
        query = query.where(User.status == status_filter)
    if search:
        term = f"%{search.strip()}%"
        query = query.where(or_(User.name.ilike(term), User.email.ilike(term)))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    items = [UserProfileResponse.model_validate(u) for u in result.scalars().all()]
    return paginated(items, total or 0, page, limit)


@router.get("/users/{user_id}", response_model=UserProfileResponse)
async def get_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return UserProfileResponse.model_validate(await _get_user_or_404(user_id, db))


@router.put("/users/{user_id}", response_model=UserProfileResponse)
async def update_user(
    user_id: UUID,
    data: AdminUserUpdateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Edit profile, role, status or loyalty fields. Passwords are never set here."""
    user = await _get_user_or_404(user_id, db)
    if user.id == current_user.id and data.role and data.role != UserRole.ADMIN.value:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin role")

    updates = data.model_dump(exclude_none=True, mode="json")
    if "family_info" in updates:
        user.set_family_info(updates.pop("family_info"))
    if "date_of_birth" in updates:
        updates["date_of_birth"] = data.date_of_birth
    if "role" in updates:
        updates["role"] = UserRole(updates["role"])
    if "status" in updates:
        updates["status"] = UserStatus(updates["status"])

    for field, value in updates.items():
        setattr(user, field, value)

    await log_admin_action(db, current_user, "UPDATE_USER", "User", str(user_id),
                           {"fields": sorted(data.model_fields_set)}, request)
    await db.commit()
    await db.refresh(user)
    return UserProfileResponse.model_validate(user)


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Soft delete. Bookings are kept for accounting."""
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    user = await _get_user_or_404(user_id, db)
    if user.is_deleted:
        raise HTTPException(status_code=409, detail="User is already deleted")

    user.deleted_at = utcnow()
    user.status = UserStatus.INACTIVE
    await log_admin_action(db, current_user, "DELETE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User deleted")


@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Suspend a user account. Admins cannot be suspended."""
    user = await _get_user_or_404(user_id, db)
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if user.status == UserStatus.SUSPENDED:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.status = UserStatus.SUSPENDED
    await log_admin_action(db, current_user, "SUSPEND_USER", "User", str(user_id),
                           {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Re-activate a suspended or deleted account and clear any login lock."""
    user = await _get_user_or_404(user_id, db)

    user.status = UserStatus.ACTIVE
    user.deleted_at = None
    user.login_attempts = 0
    user.lock_until = None
    await log_admin_action(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Analytics ─────────────────────────────────────────────────────────────────

def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


@router.get("/analytics")
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Platform-wide metrics dashboard. Cached briefly in Redis."""
    cache = RedisCache(redis)
    cached = await cache.get(ADMIN_ANALYTICS_CACHE_KEY)
    if cached:
        return cached

    now = utcnow()
    this_month = month_start(now)
    trend_start = month_start(now, months_back=5)

    total_users = await db.scalar(
        select(func.count(User.id)).where(User.deleted_at.is_(None))
    ) or 0
    new_users = await db.scalar(
        select(func.count(User.id)).where(User.created_at >= this_month)
    ) or 0
    verified_users = await db.scalar(
        select(func.count(User.id)).where(User.deleted_at.is_(None), User.email_verified.is_(True))
    ) or 0

    total_bookings = await db.scalar(select(func.count(Booking.id))) or 0
    bookings_this_month = await db.scalar(
        select(func.count(Booking.id)).where(Booking.created_at >= this_month)
    ) or 0
    upcoming = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.start_date > date.today(),
            Booking.status.in_(REVENUE_STATUSES),
        )
    ) or 0

    total_revenue = await db.scalar(
        select(func.sum(Booking.total_price)).where(Booking.status.in_(REVENUE_STATUSES))
    )
    revenue_this_month = await db.scalar(
        select(func.sum(Booking.total_price)).where(
            Booking.status.in_(REVENUE_STATUSES),
            Booking.created_at >= this_month,
        )
    )
    paid_bookings = await db.scalar(
        select(func.count(Booking.id)).where(Booking.status.in_(REVENUE_STATUSES))
    ) or 0

    top = await db.execute(
        select(Booking.destination, func.count(Booking.id).label("count"))
        .group_by(Booking.destination)
        .order_by(func.count(Booking.id).desc())
        .limit(5)
    )
    top_destinations = [{"destination": row[0], "count": row[1]} for row in top.all()]

    # Bucketed in Python so the same code runs on SQLite and PostgreSQL
    recent = await db.execute(
        select(Booking.created_at, Booking.total_price, Booking.status)
        .where(Booking.created_at >= trend_start)
    )
    bookings_by_month: Counter = Counter()
    revenue_by_month: Counter = Counter()
    for created_at, total_price, status in recent.all():
        key = as_utc(created_at).strftime("%Y-%m")
        bookings_by_month[key] += 1
        if status in REVENUE_STATUSES:
            revenue_by_month[key] += float(total_price or 0)
    monthly_trend = []
    for months_back in range(5, -1, -1):
        key = month_start(now, months_back=months_back).strftime("%Y-%m")
        monthly_trend.append({
            "month": key,
            "bookings": bookings_by_month[key],
            "revenue": round(revenue_by_month[key], 2),
        })

    total_revenue = float(total_revenue or 0)
    analytics = {
        "users": {
            "total": total_users,
            "new_this_month": new_users,
            "verified": verified_users,
            "verification_rate": _pct(verified_users, total_users),
        },
        "bookings": {
            "total": total_bookings,
            "this_month": bookings_this_month,
            "upcoming": upcoming,
            "average_per_user": round(total_bookings / total_users, 2) if total_users else 0,
        },
        "revenue": {
            "total": round(total_revenue, 2),
            "this_month": round(float(revenue_this_month or 0), 2),
            "average_per_booking": round(total_revenue / paid_bookings, 2) if paid_bookings else 0,
            "currency": settings.DEFAULT_CURRENCY,
        },
        "top_destinations": top_destinations,
        "monthly_trend": monthly_trend,
        "generated_at": isoformat(now),
    }
    await cache.set(ADMIN_ANALYTICS_CACHE_KEY, analytics, ttl=settings.ANALYTICS_CACHE_TTL)
    return analytics


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. SUSPEND_USER"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, append-only and never editable."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": isoformat(log.created_at),
            }
            for log, admin in result.all()
        ],
        "total": total or 0,
        "page": page,
        "page_size": page_size,
    }
