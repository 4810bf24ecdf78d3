"""
tasks/payment_tasks.py
Celery tasks for the checkout lifecycle.

Stripe Checkout Sessions expire after 24 hours. Bookings whose session was
never paid are swept here so they stop showing as "processing".
Running the sweep twice is a no-op.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select

from config.settings import settings
from tasks.celery_app import celery_app, get_sync_session

logger = logging.getLogger(__name__)


@celery_app.task
def expire_stale_checkouts() -> int:
    """
    PENDING_PAYMENT bookings whose payment is still pending/processing and
    whose latest checkout session (the booking itself when none was opened)
    is older than the checkout lifetime → payment_status FAILED, with a
    system_update entry in the modification log. Returns the count.
    """
    from shared.models.models import Booking, BookingStatus, ModificationType, PaymentStatus
    from shared.utils.dates import utcnow

    cutoff = utcnow() - timedelta(hours=settings.CHECKOUT_EXPIRE_HOURS)
    db = get_sync_session()
    try:
        stale = db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.PENDING_PAYMENT,
                Booking.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]),
                func.coalesce(Booking.checkout_started_at, Booking.created_at) < cutoff,
            )
        ).scalars().all()

        for booking in stale:
            previous = booking.payment_status.value
            booking.mark_as_failed()
            booking.append_modification({
                "modified_by": "system",
                "modification_type": ModificationType.SYSTEM_UPDATE.value,
                "changes": {"payment_status": {"from": previous, "to": PaymentStatus.FAILED.value}},
                "reason": "Checkout session expired",
            })

        db.commit()
        if stale:
            logger.info(f"Expired {len(stale)} stale checkout(s)")
        return len(stale)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
