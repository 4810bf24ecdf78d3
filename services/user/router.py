"""
services/user/router.py
Traveller profile management and personal analytics.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.user.analytics import build_user_analytics
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, User
from shared.schemas.schemas import UserProfileResponse, UserUpdateRequest
from shared.utils.dates import isoformat, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


def analytics_cache_key(user_id) -> str:
    return f"analytics:user:{user_id}"


@router.get("/me", response_model=UserProfileResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's full profile."""
    return UserProfileResponse.model_validate(current_user)


@router.put("/me", response_model=UserProfileResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update profile fields. Only non-None fields in the request body are
    updated; email, role, status and loyalty stats are not editable here.
    """
    updates = data.model_dump(exclude_none=True, mode="json")
    if not updates:
        return UserProfileResponse.model_validate(current_user)

    if "family_info" in updates:
        current_user.set_family_info(updates.pop("family_info"))
    if "date_of_birth" in updates:
        updates["date_of_birth"] = data.date_of_birth

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    logger.info(f"Profile updated for {current_user.email}: {sorted(data.model_fields_set)}")
    return UserProfileResponse.model_validate(current_user)


@router.get("/me/analytics")
async def get_my_analytics(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Personal dashboard: spend, destinations, travel patterns, achievements."""
    cache = RedisCache(redis)
    cached = await cache.get(analytics_cache_key(current_user.id))
    if cached:
        return cached

    result = await db.execute(
        select(Booking).where(
            or_(Booking.user_id == current_user.id, Booking.email == current_user.email)
        )
    )
    bookings = list(result.scalars().all())

    payload = {
        "analytics": build_user_analytics(current_user, bookings),
        "metadata": {
            "generated_at": isoformat(utcnow()),
            "user_id": str(current_user.id),
            "email": current_user.email,
        },
    }
    await cache.set(analytics_cache_key(current_user.id), payload, ttl=settings.ANALYTICS_CACHE_TTL)
    return payload
