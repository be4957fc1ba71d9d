from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BookingStatus(str, Enum):
    pending = "pending"
    booked = "booked"
    approved = "approved"
    ongoing = "ongoing"
    rejected = "rejected"
    cancelled = "cancelled"
    terminated = "terminated"
    completed = "completed"


class BookingAction(str, Enum):
    request = "request"
    delete = "delete"
    approve = "approve"
    reject = "reject"
    start = "start"
    terminate = "terminate"
    expire = "expire"
    close = "close"


class ActorRole(str, Enum):
    customer = "customer"
    owner = "owner"
    admin = "admin"
    system = "system"


class RentalPeriodUnit(str, Enum):
    day = "day"
    hour = "hour"


class PaymentMethodEnum(str, Enum):
    gcash = "gcash"
    qrph = "qrph"
    cash = "cash"


class IntentStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    expired = "expired"


class NotificationStatus(str, Enum):
    idle = "idle"
    sending = "sending"
    sent = "sent"
    failed = "failed"


class NotificationChannel(str, Enum):
    push = "push"
    email = "email"


ONLINE_METHODS = {PaymentMethodEnum.gcash, PaymentMethodEnum.qrph}
TERMINAL_INTENT_STATUSES = {IntentStatus.succeeded, IntentStatus.failed, IntentStatus.expired}


# ---------------------------------------------------------------------------
# Booking schemas
# ---------------------------------------------------------------------------

class BookingCreateRequest(BaseModel):
    item_id: str
    rental_duration: int = Field(..., ge=1)
    rental_period_unit: RentalPeriodUnit = RentalPeriodUnit.day
    delivery_charge: Decimal = Field(Decimal("0"), ge=0)
    payment_method: PaymentMethodEnum
    pickup_date: datetime
    return_date: datetime
    customer_email: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.return_date <= self.pickup_date:
            raise ValueError("return_date must be after pickup_date")
        return self


class BookingTermsUpdate(BaseModel):
    rental_duration: Optional[int] = Field(None, ge=1)
    delivery_charge: Optional[Decimal] = Field(None, ge=0)
    pickup_date: Optional[datetime] = None
    return_date: Optional[datetime] = None


class BookingCloseRequest(BaseModel):
    return_confirmed: bool = True


class BookingResponse(BaseModel):
    id: str
    item_id: str
    customer_id: str
    owner_id: str
    status: BookingStatus
    price_per_unit: Decimal
    rental_duration: int
    rental_period_unit: RentalPeriodUnit
    delivery_charge: Decimal
    grand_total: Decimal
    payment_method: PaymentMethodEnum
    payment_intent_id: Optional[str] = None
    pickup_date: datetime
    return_date: datetime
    version: int
    created_at: datetime
    updated_at: datetime


class ActionResponse(BaseModel):
    booking: BookingResponse
    noop: bool = False
    payment: Optional["PaymentIntentResponse"] = None


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class PaymentIntentResponse(BaseModel):
    id: str
    booking_id: str
    amount: Decimal
    provider: PaymentMethodEnum
    status: IntentStatus
    next_action_url: Optional[str] = None
    requires_refund: bool = False

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    received: bool = True
    result: str


class SettlementResponse(BaseModel):
    booking_id: str
    payment_intent_id: Optional[str] = None
    rental_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    owner_share: Decimal
    settled_at: datetime


class SettlementListResponse(BaseModel):
    items: list[SettlementResponse]
    count: int
    total_commission: Decimal
    total_owner_share: Decimal


# ---------------------------------------------------------------------------
# Notification / maintenance schemas
# ---------------------------------------------------------------------------

class NotificationResponse(BaseModel):
    id: int
    booking_id: str
    recipient_id: str
    channel: NotificationChannel
    kind: str
    status: NotificationStatus
    attempts: int
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SweepResponse(BaseModel):
    intents_polled: int
    rentals_closed: int
    notifications_retried: int


ActionResponse.model_rebuild()
