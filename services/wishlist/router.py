"""
services/wishlist/router.py
Saved trips, destinations, hotels and activities for the signed-in user.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Priority, User, WishlistItem, WishlistItemType
from shared.schemas.schemas import MessageResponse, WishlistCreateRequest, WishlistItemResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wishlist", tags=["Wishlist"])


def _dedup_keys(trip_data: dict) -> tuple[str | None, str | None]:
    """A trip is the same wishlist entry when destination and start date match."""
    destination = trip_data.get("destination")
    start_date = trip_data.get("start_date") or trip_data.get("startDate")
    return (
        destination.strip().lower() if isinstance(destination, str) and destination.strip() else None,
        str(start_date) if start_date else None,
    )


@router.get("")
async def get_wishlist(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """All saved items, newest first."""
    result = await db.execute(
        select(WishlistItem)
        .where(WishlistItem.user_id == current_user.id)
        .order_by(WishlistItem.added_at.desc())
    )
    items = [WishlistItemResponse.model_validate(i) for i in result.scalars().all()]
    return {"success": True, "items": items, "total": len(items)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_to_wishlist(
    data: WishlistCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    destination, start_date = _dedup_keys(data.trip_data)

    if destination:
        query = select(WishlistItem.id).where(
            WishlistItem.user_id == current_user.id,
            WishlistItem.destination == destination,
        )
        query = query.where(
            WishlistItem.start_date == start_date if start_date else WishlistItem.start_date.is_(None)
        )
        if await db.scalar(query.limit(1)):
            raise HTTPException(status_code=400, detail="Trip already in wishlist")

    item = WishlistItem(
        user_id=current_user.id,
        item_type=WishlistItemType(data.item_type),
        trip_data=data.trip_data,
        title=data.title or data.trip_data.get("destination"),
        notes=data.notes,
        tags=data.tags,
        priority=Priority(data.priority),
        price_alert=data.price_alert,
        destination=destination,
        start_date=start_date,
    )
    db.add(item)
    await db.commit()
    await db.refresh(item)

    logger.info(f"Wishlist item {item.id} added for {current_user.email}")
    return {"success": True, "item": WishlistItemResponse.model_validate(item)}


@router.delete("/{item_id}", response_model=MessageResponse)
async def remove_from_wishlist(
    item_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(WishlistItem).where(
            WishlistItem.id == item_id,
            WishlistItem.user_id == current_user.id,
        )
    )
    item = result.scalar_one_or_none()
    if not item:
        raise HTTPException(status_code=404, detail="Wishlist item not found")

    await db.delete(item)
    await db.commit()
    return MessageResponse(message="Removed from wishlist")
