"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
Bodies are validated here before they reach the service layer.
"""

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    BookingStatus,
    CancelledBy,
    DiscountType,
    NotificationChannel,
    NotificationStatus,
    PaymentMethod,
    PaymentStatus,
    ProfileRole,
    ReviewStatus,
    TransactionType,
)

PHONE_PATTERN = r"^\+?[0-9]{10,15}$"
TIME_RANGE_PATTERN = re.compile(r"^\d{2}:\d{2}-\d{2}:\d{2}$")


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None


# ── Auth / OTP ────────────────────────────────────────────────

class OTPRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class OTPRequestResponse(BaseSchema):
    success: bool = True
    message: str = "OTP sent"
    expires_in: int


class OTPVerifyRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    code: str = Field(..., pattern=r"^\d{6}$")
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None


class ProfileResponse(BaseSchema):
    id: uuid.UUID
    phone: str
    full_name: Optional[str]
    email: Optional[str]
    role: ProfileRole
    phone_verified: bool
    email_verified: bool
    wallet_balance: Decimal
    created_at: datetime


class OTPVerifyResponse(BaseSchema):
    success: bool = True
    profile: ProfileResponse
    needsProfileCompletion: bool
    is_new_user: bool
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


# ── Booking ───────────────────────────────────────────────────

class BookingAddressSchema(BaseSchema):
    model_config = ConfigDict(extra="allow")

    address_line1: str = Field(..., min_length=1, max_length=255)
    address_line2: Optional[str] = None
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    landmark: Optional[str] = None


def _validate_booking_time(v: str) -> str:
    from config.settings import settings

    v = v.strip()
    if v.lower() in settings.TIME_SLOT_WINDOWS:
        return v.lower()
    if not TIME_RANGE_PATTERN.match(v):
        raise ValueError(
            "booking_time must be one of "
            f"{sorted(settings.TIME_SLOT_WINDOWS)} or a HH:MM-HH:MM range"
        )
    return v


class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    customer_id: uuid.UUID
    booking_date: date
    booking_time: str
    customer_address: BookingAddressSchema
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    customer_pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    base_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    addon_price: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    discount_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    wallet_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    promo_code: Optional[str] = Field(None, min_length=1, max_length=50)
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("booking_time")
    @classmethod
    def validate_booking_time(cls, v: str) -> str:
        return _validate_booking_time(v)

    @field_validator("booking_date")
    @classmethod
    def validate_booking_date(cls, v: date) -> date:
        if v < date.today():
            raise ValueError("booking_date cannot be in the past")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    customer_id: uuid.UUID
    service_id: uuid.UUID
    employee_id: Optional[uuid.UUID]
    partner_id: Optional[uuid.UUID]
    status: BookingStatus
    booking_date: date
    booking_time: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    customer_address: Dict[str, Any]
    customer_pincode: Optional[str]
    notes: Optional[str]
    base_price: Decimal
    addon_price: Decimal
    discount_amount: Decimal
    wallet_amount: Decimal
    platform_fee: Decimal
    total_price: Decimal
    promo_code: Optional[str]
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    payment_id: Optional[str]
    before_photos: List[str]
    after_photos: List[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[CancelledBy]
    is_deleted: bool
    deleted_at: Optional[datetime]
    assigned_at: Optional[datetime]
    accepted_at: Optional[datetime]
    reached_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class AssignRequest(BaseSchema):
    employee_id: uuid.UUID


class PartnerRequest(BaseSchema):
    partner_id: uuid.UUID


class BookingActionRequest(BaseSchema):
    """Body for accept / mark-reached / start-work / complete."""
    before_photos: Optional[List[str]] = Field(None, max_length=20)
    after_photos: Optional[List[str]] = Field(None, max_length=20)


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)
    cancelled_by: CancelledBy = CancelledBy.CUSTOMER


class BookingRescheduleRequest(BaseSchema):
    booking_date: date
    booking_time: str

    @field_validator("booking_time")
    @classmethod
    def validate_booking_time(cls, v: str) -> str:
        return _validate_booking_time(v)

    @field_validator("booking_date")
    @classmethod
    def validate_booking_date(cls, v: date) -> date:
        if v < date.today():
            raise ValueError("booking_date cannot be in the past")
        return v


class EligibleWorkerResponse(BaseSchema):
    id: uuid.UUID
    full_name: Optional[str]
    phone: str
    location: Optional[str]
    rating: Decimal
    experience_years: int
    current_jobs: int
    max_capacity: int
    priority_score: float
    location_match: bool


# ── Slots ─────────────────────────────────────────────────────

class SlotCreateRequest(BaseSchema):
    service_id: uuid.UUID
    date: date
    time_slot: str
    total_capacity: int = Field(1, ge=1, le=1000)

    @field_validator("time_slot")
    @classmethod
    def validate_time_slot(cls, v: str) -> str:
        return _validate_booking_time(v)


class SlotUpdateRequest(BaseSchema):
    total_capacity: int = Field(..., ge=1, le=1000)


class SlotResponse(BaseSchema):
    id: uuid.UUID
    service_id: uuid.UUID
    date: date
    time_slot: str
    total_capacity: int
    booked_count: int
    is_available: bool


# ── Promo ─────────────────────────────────────────────────────

class PromoCreateRequest(BaseSchema):
    code: str = Field(..., min_length=2, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    description: Optional[str] = Field(None, max_length=500)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    max_discount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    min_order_value: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    max_usage: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_window(self):
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class PromoUpdateRequest(BaseSchema):
    description: Optional[str] = Field(None, max_length=500)
    discount_value: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    max_discount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    min_order_value: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    max_usage: Optional[int] = Field(None, ge=1)


class PromoResponse(BaseSchema):
    id: uuid.UUID
    code: str
    description: Optional[str]
    discount_type: DiscountType
    discount_value: Decimal
    max_discount: Optional[Decimal]
    min_order_value: Decimal
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    is_active: bool
    usage_count: int
    max_usage: Optional[int]


class PromoValidationResponse(BaseSchema):
    valid: bool = True
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    discount_amount: Decimal


# ── Wallet ────────────────────────────────────────────────────

class WalletTransactionRequest(BaseSchema):
    user_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    transaction_type: TransactionType
    description: str = Field(..., min_length=1, max_length=500)
    booking_id: Optional[uuid.UUID] = None


class WalletTransactionResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    amount: Decimal
    transaction_type: TransactionType
    description: str
    booking_id: Optional[uuid.UUID]
    balance_after: Decimal
    created_at: datetime


class WalletResponse(BaseSchema):
    user_id: uuid.UUID
    balance: Decimal
    transactions: List[WalletTransactionResponse]


# ── Workers ───────────────────────────────────────────────────

class WorkerApplyRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    full_name: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    city: Optional[str] = Field(None, max_length=100)
    location: Optional[str] = Field(None, max_length=100)
    skills: List[uuid.UUID] = Field(default_factory=list)
    experience_years: int = Field(0, ge=0, le=60)
    max_capacity: int = Field(5, ge=1, le=50)


class WorkerVerificationRequest(BaseSchema):
    id_verified: Optional[bool] = None
    skills_verified: Optional[bool] = None
    background_check_status: Optional[ReviewStatus] = None


class WorkerAvailabilityRequest(BaseSchema):
    is_available: bool


class WorkerRejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class WorkerResponse(BaseSchema):
    id: uuid.UUID
    phone: str
    full_name: Optional[str]
    email: Optional[str]
    role: ProfileRole
    city: Optional[str]
    location: Optional[str]
    approval_status: ReviewStatus
    rejection_reason: Optional[str]
    id_verified: bool
    skills_verified: bool
    background_check_status: ReviewStatus
    is_available: bool
    rating: Decimal
    experience_years: int
    max_capacity: int
    current_jobs: int
    skill_ids: List[uuid.UUID] = Field(default_factory=list)
    created_at: datetime


# ── Payment ───────────────────────────────────────────────────

class PaymentOrderRequest(BaseSchema):
    booking_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class PaymentOrderResponse(BaseSchema):
    razorpay_order_id: str
    razorpay_key_id: str
    amount: int          # in paise
    currency: str
    booking_id: str


class PaymentVerifyRequest(BaseSchema):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    booking_id: uuid.UUID


# ── Notifications ─────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    booking_id: Optional[uuid.UUID]
    channel: NotificationChannel
    recipient: str
    subject: Optional[str]
    message: str
    status: NotificationStatus
    error: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime
