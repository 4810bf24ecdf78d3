"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    BookingSource,
    BookingStatus,
    EditRequestStatus,
    EditRequestType,
    PaymentMethod,
    PaymentStatus,
    Priority,
    UserRole,
    UserStatus,
    WishlistItemType,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool


# ── Auth ──────────────────────────────────────────────────────

class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: "UserResponse"


class RegisterRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    name: str = Field(..., min_length=2, max_length=50)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters long")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    name: str
    role: UserRole
    status: UserStatus
    avatar_url: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    created_at: datetime


class UserProfileResponse(UserResponse):
    date_of_birth: Optional[date] = None
    bio: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    travel_preferences: Dict[str, Any] = {}
    family_info: Dict[str, Any] = {}
    documents: Dict[str, Any] = {}
    preferences: Dict[str, Any] = {}
    travel_stats: Dict[str, Any] = {}
    reward_points: int = 0
    is_family_user: bool = False
    last_login: Optional[datetime] = None


class AddressSchema(BaseSchema):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=r"^\+?[0-9 ()-]{7,20}$")
    date_of_birth: Optional[date] = None
    bio: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    address: Optional[AddressSchema] = None
    travel_preferences: Optional[Dict[str, Any]] = None
    family_info: Optional[Dict[str, Any]] = None
    documents: Optional[Dict[str, Any]] = None
    preferences: Optional[Dict[str, Any]] = None


class AdminUserUpdateRequest(UserUpdateRequest):
    role: Optional[str] = Field(None, pattern="^(user|admin)$")
    status: Optional[str] = Field(None, pattern="^(active|inactive|suspended|banned)$")
    email_verified: Optional[bool] = None
    reward_points: Optional[int] = Field(None, ge=0)


# ── Booking ───────────────────────────────────────────────────

class PassengersSchema(BaseSchema):
    adults: int = Field(2, ge=1, le=20)
    children: int = Field(0, ge=0, le=20)
    infants: int = Field(0, ge=0, le=10)


class SelectedActivitySchema(BaseSchema):
    name: str
    price: float = Field(0, ge=0)
    child_friendly: bool = False
    category: Optional[str] = None
    duration: Optional[str] = None
    description: Optional[str] = None


class PriceBreakdownSchema(BaseSchema):
    base_price: float = Field(0, ge=0)
    flights: float = Field(0, ge=0)
    hotel: float = Field(0, ge=0)
    activities: float = Field(0, ge=0)
    taxes: float = Field(0, ge=0)
    fees: float = Field(0, ge=0)
    discounts: float = Field(0, ge=0)
    currency: str = "USD"


class BookingCreateRequest(BaseSchema):
    destination: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    month: Optional[str] = Field(None, max_length=20)
    reason: Optional[str] = Field(None, max_length=255)
    duration: Optional[str] = Field(None, max_length=50)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    passengers: PassengersSchema = PassengersSchema()
    flight: Optional[Dict[str, Any]] = None
    hotel: Optional[Dict[str, Any]] = None
    activities: List[str] = []
    selected_activities: List[SelectedActivitySchema] = []
    weather: Optional[Dict[str, Any]] = None
    has_children: bool = False
    family_features: Optional[Dict[str, Any]] = None
    price: Optional[str] = Field(None, max_length=50)
    base_price: Optional[float] = Field(None, ge=0)
    total_price: Optional[float] = Field(None, ge=0)
    price_breakdown: Optional[PriceBreakdownSchema] = None
    payment_method: PaymentMethod = PaymentMethod.STRIPE
    source: BookingSource = BookingSource.WEB

    @model_validator(mode="after")
    def validate_dates(self) -> "BookingCreateRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class BookingUpdateRequest(BaseSchema):
    """Fields a traveller may change directly on an unpaid or confirmed trip."""
    month: Optional[str] = Field(None, max_length=20)
    reason: Optional[str] = Field(None, max_length=255)
    duration: Optional[str] = Field(None, max_length=50)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    passengers: Optional[PassengersSchema] = None
    activities: Optional[List[str]] = None
    selected_activities: Optional[List[SelectedActivitySchema]] = None
    has_children: Optional[bool] = None
    family_features: Optional[Dict[str, Any]] = None
    modification_reason: Optional[str] = Field(None, max_length=500)


class AdminBookingUpdateRequest(BookingUpdateRequest):
    destination: Optional[str] = Field(None, min_length=2, max_length=255)
    flight: Optional[Dict[str, Any]] = None
    hotel: Optional[Dict[str, Any]] = None
    price: Optional[str] = Field(None, max_length=50)
    base_price: Optional[float] = Field(None, ge=0)
    total_price: Optional[float] = Field(None, ge=0)
    price_breakdown: Optional[PriceBreakdownSchema] = None
    status: Optional[str] = Field(None, pattern="^(pending_payment|confirmed|cancelled|completed|refunded)$")


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingReviewRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    trip_id: str
    booking_reference: str
    user_id: uuid.UUID
    email: str
    destination: str
    month: Optional[str]
    reason: Optional[str]
    duration: Optional[str]
    start_date: Optional[date]
    end_date: Optional[date]
    passengers: Dict[str, Any]
    flight: Optional[Dict[str, Any]]
    hotel: Optional[Dict[str, Any]]
    activities: List[Any]
    selected_activities: List[Dict[str, Any]]
    weather: Optional[Dict[str, Any]]
    has_children: bool
    family_features: Optional[Dict[str, Any]]
    price: Optional[str]
    base_price: float
    total_price: float
    price_breakdown: Dict[str, Any]
    currency: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    stripe_session_id: Optional[str]
    paid_at: Optional[datetime]
    status: BookingStatus
    source: BookingSource
    modifications: List[Dict[str, Any]]
    cancellation: Optional[Dict[str, Any]]
    review: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    # Derived
    total_days: Optional[int] = None
    total_passengers: int = 0
    is_family_trip: bool = False
    is_upcoming: bool = False
    hotel_name: Optional[str] = None


# ── Edit Requests ─────────────────────────────────────────────

class EditRequestCreate(BaseSchema):
    booking_id: uuid.UUID
    request: str = Field(..., min_length=1, max_length=5000)
    request_type: EditRequestType = EditRequestType.OTHER
    proposed_changes: Dict[str, Any] = {}
    priority: Priority = Priority.MEDIUM


class EditRequestSubmitResponse(BaseSchema):
    success: bool = True
    message: str
    request_id: str
    status: str


class EditRequestUpdate(BaseSchema):
    status: EditRequestStatus
    admin_response: Optional[str] = Field(None, max_length=5000)
    price_change: Optional[float] = None
    refund_amount: Optional[float] = Field(None, ge=0)
    internal_note: Optional[str] = Field(None, max_length=2000)


# ── Payment ───────────────────────────────────────────────────

class CheckoutResponse(BaseSchema):
    session_id: str
    url: Optional[str]
    booking_id: uuid.UUID
    booking_reference: str


class CheckoutSessionStatusResponse(BaseSchema):
    session_id: str
    payment_status: str
    booking_id: Optional[uuid.UUID] = None
    booking_status: Optional[str] = None


class RefundRequest(BaseSchema):
    amount: Optional[float] = Field(None, gt=0)  # None = full refund
    reason: Optional[str] = Field(None, max_length=500)


# ── Wishlist ──────────────────────────────────────────────────

class WishlistCreateRequest(BaseSchema):
    trip_data: Dict[str, Any]
    item_type: WishlistItemType = WishlistItemType.TRIP
    title: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=2000)
    tags: List[str] = []
    priority: Priority = Priority.MEDIUM
    price_alert: Optional[Dict[str, Any]] = None

    @field_validator("trip_data")
    @classmethod
    def trip_data_not_empty(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("tripData is required")
        return v


class WishlistItemResponse(BaseSchema):
    id: uuid.UUID
    item_type: WishlistItemType
    trip_data: Dict[str, Any]
    title: Optional[str]
    notes: Optional[str]
    tags: List[str]
    priority: Priority
    price_alert: Optional[Dict[str, Any]]
    added_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    error: str
    message: str
    requestId: Optional[str] = None


AuthResponse.model_rebuild()
