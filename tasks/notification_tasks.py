"""
tasks/notification_tasks.py
Celery tasks for transactional email via Resend.

All tasks are idempotent. A failed delivery is logged
and never bubbles up into the request that queued it.

Usage from a route:
    background_tasks.add_task(enqueue, send_booking_confirmation, booking_id=str(booking.id))
"""

import html
import logging
import uuid

from celery import Task
from sqlalchemy import select
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import settings
from tasks.celery_app import celery_app, get_sync_session

logger = logging.getLogger(__name__)


# ── Dispatch ───────────────────────────────────────────────────────────────────

def enqueue(task: Task, **kwargs) -> None:
    """Publish a task. Broker errors are logged, not raised."""
    try:
        task.delay(**kwargs)
    except Exception as e:
        logger.error(f"Could not queue {task.name}: {e}")


# ── Delivery ───────────────────────────────────────────────────────────────────

@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
def _deliver(to_email: str, subject: str, html_body: str) -> None:
    import resend
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [to_email],
        "subject": subject,
        "html": html_body,
    })


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    if not settings.RESEND_API_KEY:
        logger.info(f"RESEND_API_KEY not set, skipping email '{subject}' to {to_email}")
        return False
    try:
        _deliver(to_email, subject, html_body)
        return True
    except Exception as e:
        logger.warning(f"Email send failed for {to_email}: {e}")
        return False


# ── Templates ──────────────────────────────────────────────────────────────────

def _booking_confirmation_html(booking) -> str:
    dates = ""
    if booking.start_date and booking.end_date:
        dates = f"<p><strong>Dates:</strong> {booking.start_date} → {booking.end_date}</p>"
    hotel = f"<p><strong>Hotel:</strong> {html.escape(booking.hotel_name)}</p>" if booking.hotel_name else ""
    return f"""
        <h2>Your trip to {html.escape(booking.destination)} is confirmed!</h2>
        <p><strong>Booking reference:</strong> {booking.booking_reference}</p>
        {dates}
        {hotel}
        <p><strong>Travellers:</strong> {booking.total_passengers}</p>
        <p><strong>Total paid:</strong> {booking.currency} {float(booking.total_price):,.2f}</p>
        <p><a href="{settings.FRONTEND_URL}/my-trips">View your trips</a></p>
    """


def _edit_request_html(booking, entry: dict, submitter: str) -> str:
    changes = entry.get("proposed_changes") or {}
    change_list = ""
    if changes:
        items = "".join(
            f"<li><strong>{html.escape(str(k))}:</strong> {html.escape(str(v))}</li>"
            for k, v in changes.items()
        )
        change_list = f"<p><strong>Proposed Changes:</strong></p><ul>{items}</ul>"
    description = html.escape(entry.get("description") or "").replace("\n", "<br>")
    return f"""
        <h2>New Edit Request</h2>
        <p><strong>Priority:</strong> {entry['priority'].upper()}</p>
        <p><strong>Category:</strong> {entry.get('category')}</p>
        <p><strong>User:</strong> {html.escape(submitter)}</p>
        <p><strong>Booking:</strong> {booking.booking_reference}</p>
        <p><strong>Destination:</strong> {html.escape(booking.destination)}</p>
        <p><strong>Request Type:</strong> {entry['request_type'].replace('_', ' ').upper()}</p>
        <p><strong>Description:</strong></p>
        <p>{description}</p>
        {change_list}
        <p><a href="{settings.FRONTEND_URL}/admin/bookings/{booking.id}">View Request</a></p>
    """


def _edit_request_update_html(booking, entry: dict) -> str:
    response = html.escape(entry.get("admin_response") or "")
    price = ""
    if entry.get("price_change") is not None:
        price = f"<p><strong>Price change:</strong> {booking.currency} {float(entry['price_change']):,.2f}</p>"
    return f"""
        <h2>Update on your request for {html.escape(booking.destination)}</h2>
        <p><strong>Status:</strong> {entry['status'].replace('_', ' ').title()}</p>
        {f'<p>{response}</p>' if response else ''}
        {price}
        <p><a href="{settings.FRONTEND_URL}/my-trips">View your trips</a></p>
    """


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3)
def send_booking_confirmation(self, booking_id: str):
    """Tell the traveller their payment went through and the trip is confirmed."""
    from shared.models.models import Booking, BookingStatus

    db = get_sync_session()
    try:
        booking = db.execute(select(Booking).where(Booking.id == uuid.UUID(booking_id))).scalar_one_or_none()
        if not booking or booking.status != BookingStatus.CONFIRMED:
            logger.info(f"Skipping confirmation email for booking {booking_id}")
            return False
        return _send_email(
            booking.email,
            f"Booking Confirmed – {booking.booking_reference}",
            _booking_confirmation_html(booking),
        )
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def send_edit_request_notice(self, booking_id: str, request_id: str):
    """Email the travel team about a newly submitted edit request."""
    from shared.models.models import Booking, User

    db = get_sync_session()
    try:
        booking = db.execute(select(Booking).where(Booking.id == uuid.UUID(booking_id))).scalar_one_or_none()
        if not booking:
            return False
        entry = next((e for e in booking.edit_requests if e.get("id") == request_id), None)
        if not entry:
            return False
        submitter = db.execute(select(User.email).where(User.id == booking.user_id)).scalar_one_or_none()
        return _send_email(
            settings.ADMIN_EMAIL,
            f"[{entry['priority'].upper()}] Edit Request - {booking.destination}",
            _edit_request_html(booking, entry, submitter or booking.email),
        )
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def send_edit_request_update(self, booking_id: str, request_id: str):
    """Tell the traveller an admin changed the status of their edit request."""
    from shared.models.models import Booking

    db = get_sync_session()
    try:
        booking = db.execute(select(Booking).where(Booking.id == uuid.UUID(booking_id))).scalar_one_or_none()
        if not booking:
            return False
        entry = next((e for e in booking.edit_requests if e.get("id") == request_id), None)
        if not entry:
            return False
        return _send_email(
            booking.email,
            f"Your edit request is {entry['status'].replace('_', ' ')} – {booking.booking_reference}",
            _edit_request_update_html(booking, entry),
        )
    finally:
        db.close()
