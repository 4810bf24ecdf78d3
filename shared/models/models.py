"""
shared/models/models.py
All SQLAlchemy ORM models for the Travel Planner platform.
Embedded trip sub-documents (flight, hotel, activities, pricing,
modifications) live in JSON columns (JSONB on PostgreSQL).
"""

import copy
import secrets
import string
import time
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import flag_modified

from config.database import Base
from shared.utils.dates import isoformat, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    BANNED = "banned"


class OAuthProvider(str, PyEnum):
    CREDENTIALS = "credentials"
    GOOGLE = "google"


class BookingStatus(str, PyEnum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    TEST_MODE = "test_mode"


class PaymentMethod(str, PyEnum):
    STRIPE = "stripe"
    TEST = "test"


class BookingSource(str, PyEnum):
    WEB = "web"
    MOBILE = "mobile"
    API = "api"
    ADMIN = "admin"


class ModificationType(str, PyEnum):
    USER_REQUEST = "user_request"
    ADMIN_UPDATE = "admin_update"
    SYSTEM_UPDATE = "system_update"


class EditRequestType(str, PyEnum):
    DATE_CHANGE = "date_change"
    HOTEL_CHANGE = "hotel_change"
    ACTIVITY_CHANGE = "activity_change"
    FLIGHT_CHANGE = "flight_change"
    PASSENGER_CHANGE = "passenger_change"
    BUDGET_CHANGE = "budget_change"
    DESTINATION_CHANGE = "destination_change"
    CANCELLATION = "cancellation"
    REFUND = "refund"
    UPGRADE = "upgrade"
    CHILD_AMENITIES = "child_amenities"
    WEATHER_CONCERN = "weather_concern"
    ACCESSIBILITY = "accessibility"
    OTHER = "other"


class EditRequestStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COST_ESTIMATE_PROVIDED = "cost_estimate_provided"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class WishlistItemType(str, PyEnum):
    TRIP = "trip"
    DESTINATION = "destination"
    HOTEL = "hotel"
    ACTIVITY = "activity"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class SoftDeleteMixin:
    """Adds soft delete capability."""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


def _base36(number: int) -> str:
    alphabet = string.digits + string.ascii_uppercase
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = alphabet[rem] + out
    return out or "0"


def generate_reference(prefix: str) -> str:
    """Human-readable id like TRIP-LZ3K9Q1A-X7K9M."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(5))
    return f"{prefix}-{stamp}-{suffix}"


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, SoftDeleteMixin, Base):
    """Traveller or admin account. Credential and/or OAuth login."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    oauth_provider: Mapped[OAuthProvider] = mapped_column(
        Enum(OAuthProvider), nullable=False, default=OAuthProvider.CREDENTIALS
    )
    oauth_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    address: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus), nullable=False, default=UserStatus.ACTIVE
    )
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Embedded profile documents
    travel_preferences: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    family_info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    documents: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    preferences: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    # Loyalty
    travel_stats: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    reward_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Credential login security
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    bookings: Mapped[List["Booking"]] = relationship(back_populates="user")
    wishlist_items: Mapped[List["WishlistItem"]] = relationship(back_populates="user")
    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_id", name="uq_oauth_provider_id"),
        Index("ix_users_role", "role"),
        Index("ix_users_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE and self.deleted_at is None

    @property
    def avatar_url(self) -> str:
        if self.image:
            return self.image
        return f"{_default_avatar_base()}{self.name.replace(' ', '+')}"

    @property
    def total_children(self) -> int:
        return len((self.family_info or {}).get("children") or [])

    @property
    def is_family_user(self) -> bool:
        return bool((self.family_info or {}).get("is_parent")) or self.total_children > 0

    def set_family_info(self, family_info: dict) -> None:
        """Replace family info; having children makes the user a parent."""
        info = copy.deepcopy(family_info or {})
        if info.get("children"):
            info["is_parent"] = True
        self.family_info = info

    def update_travel_stats(self, booking: "Booking") -> None:
        """Fold a paid booking into the loyalty stats."""
        stats = copy.deepcopy(self.travel_stats or {})
        stats["total_trips"] = stats.get("total_trips", 0) + 1
        stats["total_spent"] = round(
            float(stats.get("total_spent", 0)) + float(booking.total_price or 0), 2
        )
        stats["last_trip_date"] = isoformat(booking.end_date or utcnow())
        destination = (booking.destination or "").split(",")[0].strip()
        favourites = stats.get("favorite_destinations") or []
        if destination and destination not in favourites:
            favourites.append(destination)
        stats["favorite_destinations"] = favourites
        self.travel_stats = stats
        flag_modified(self, "travel_stats")

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


def _default_avatar_base() -> str:
    from config.settings import settings
    return settings.DEFAULT_AVATAR_URL or ""


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class Booking(TimestampMixin, Base):
    """
    One trip reservation. Created at checkout as PENDING_PAYMENT, confirmed by
    Stripe, soft-cancelled (never deleted). `modifications` is an append-only
    log which also carries the edit-request workflow entries.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trip_id: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, default=lambda: generate_reference("TRIP")
    )
    booking_reference: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, default=lambda: generate_reference("AT")
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Trip
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    month: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    passengers: Mapped[dict] = mapped_column(
        JSONType, nullable=False, default=lambda: {"adults": 2, "children": 0, "infants": 0}
    )

    # Snapshots
    flight: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    hotel: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    activities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    selected_activities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    weather: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    has_children: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    family_features: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Pricing
    price: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    price_breakdown: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod), default=PaymentMethod.STRIPE, nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    stripe_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING_PAYMENT
    )
    source: Mapped[BookingSource] = mapped_column(
        Enum(BookingSource), nullable=False, default=BookingSource.WEB
    )

    modifications: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    cancellation: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    review: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    user: Mapped["User"] = relationship(back_populates="bookings")

    __table_args__ = (
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_email", "email"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_start_date", "start_date"),
        Index("ix_bookings_stripe_session", "stripe_session_id"),
    )

    # ── Derived ──────────────────────────────────────────────

    @property
    def total_days(self) -> Optional[int]:
        if not self.start_date or not self.end_date:
            return None
        return (self.end_date - self.start_date).days + 1

    @property
    def total_passengers(self) -> int:
        p = self.passengers or {}
        return int(p.get("adults", 0)) + int(p.get("children", 0)) + int(p.get("infants", 0))

    @property
    def is_family_trip(self) -> bool:
        p = self.passengers or {}
        return bool(self.has_children) or p.get("children", 0) > 0 or p.get("infants", 0) > 0

    @property
    def is_upcoming(self) -> bool:
        return bool(self.start_date) and self.start_date > date.today()

    @property
    def is_past(self) -> bool:
        return bool(self.end_date) and self.end_date < date.today()

    @property
    def hotel_name(self) -> Optional[str]:
        if not self.hotel:
            return None
        return self.hotel.get("name") or self.hotel.get("hotelName")

    @property
    def edit_requests(self) -> list[dict]:
        return [m for m in (self.modifications or []) if m.get("field") == "edit_request"]

    # ── Mutations ────────────────────────────────────────────

    def append_modification(self, entry: dict) -> dict:
        """Append to the modification log. Existing entries are never touched."""
        entry = {"id": uuid.uuid4().hex, "modified_at": isoformat(utcnow()), **entry}
        self.modifications = [*(self.modifications or []), entry]
        flag_modified(self, "modifications")
        return entry

    def replace_modification(self, entry: dict) -> None:
        """Swap in an updated copy of an existing entry, keeping its position."""
        self.modifications = [
            entry if m.get("id") == entry["id"] else m for m in (self.modifications or [])
        ]
        flag_modified(self, "modifications")

    def mark_as_paid(self, payment_intent_id: Optional[str] = None) -> None:
        self.payment_status = PaymentStatus.PAID
        self.status = BookingStatus.CONFIRMED
        self.paid_at = utcnow()
        if payment_intent_id:
            self.stripe_payment_intent_id = payment_intent_id

    def mark_as_failed(self) -> None:
        """Payment failed. The booking status is left as is."""
        self.payment_status = PaymentStatus.FAILED

    def cancel(self, cancelled_by: str, reason: Optional[str] = None,
               refund_amount: float = 0) -> None:
        self.status = BookingStatus.CANCELLED
        self.cancellation = {
            "is_cancelled": True,
            "cancelled_at": isoformat(utcnow()),
            "cancelled_by": cancelled_by,
            "reason": reason,
            "refund_amount": refund_amount,
            "refund_status": "pending" if refund_amount else "none",
        }


class WishlistItem(Base):
    """Saved trip / destination / hotel / activity."""
    __tablename__ = "wishlist_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    item_type: Mapped[WishlistItemType] = mapped_column(
        Enum(WishlistItemType), default=WishlistItemType.TRIP, nullable=False
    )
    trip_data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    priority: Mapped[Priority] = mapped_column(Enum(Priority), default=Priority.MEDIUM)
    price_alert: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Duplicate detection keys, copied out of trip_data
    destination: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    start_date: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="wishlist_items")

    __table_args__ = (
        Index("ix_wishlist_user_added", "user_id", "added_at"),
    )


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("action <> ''", name="ck_admin_audit_action"),
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
