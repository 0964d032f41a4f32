"""
Pydantic models for API request/response validation.
"""

import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, field_validator


# ============================================================================
# Bookings
# ============================================================================


class BookingCreate(BaseModel):
    """Request to create a pending booking."""

    venue_id: int
    court_id: int
    date: datetime.date
    slots: List[str] = Field(min_length=1)
    team1: List[Optional[int]] = Field(default_factory=list)
    team2: List[Optional[int]] = Field(default_factory=list)
    game_type: str = "Private"
    ask_to_join: bool = False
    is_competitive: bool = False
    skill_required: int = Field(default=0, ge=0)


class BookingPlayerResponse(BaseModel):
    """One roster seat."""

    team: int
    position: str
    player_id: Optional[int] = None
    payment_status: str
    paid_by: str
    player_payment: int
    transaction_id: Optional[int] = None
    rackets: int = 0
    balls: int = 0


class BookingResponse(BaseModel):
    """Booking with slots and roster."""

    id: int
    owner_user_id: int
    venue_id: int
    court_id: int
    date: str
    slots: List[str]
    game_type: str
    ask_to_join: bool
    is_competitive: bool
    skill_required: int
    kind: str
    is_paid: bool
    amount: int
    invoice_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refunded_amount: int = 0
    players: List[BookingPlayerResponse]


# ============================================================================
# Payments
# ============================================================================


class PaymentCreate(BaseModel):
    """Request to start paying for one or more pending bookings."""

    booking_ids: List[int] = Field(min_length=1)
    method: str
    credit_amount: Optional[int] = Field(default=None, ge=0)


class JoinRequestPayment(BaseModel):
    """Request to pay for an accepted join request."""

    method: str
    credit_amount: Optional[int] = Field(default=None, ge=0)


class TransactionResponse(BaseModel):
    """Transaction state as seen by the client."""

    id: int
    user_id: int
    booking_ids: List[int]
    paid_for: List[int]
    amount: int
    currency: str
    status: str
    method: str
    credit_used: int
    credit_reserved: bool
    credit_deducted: bool
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_amount_minor: int = 0
    gateway_key_id: Optional[str] = None
    refunded_amount: int = 0
    failure_reason: Optional[str] = None
    notes: dict = Field(default_factory=dict)


class CreditSummaryResponse(BaseModel):
    """Stored-credit balance and what is spendable."""

    user_id: int
    balance: int
    reserved: int
    available: int


# ============================================================================
# Join requests
# ============================================================================


class JoinRequestCreate(BaseModel):
    """Request to join an open seat of a booking."""

    requested_team: int
    requested_position: str
    rented_rackets: int = Field(default=0, ge=0)
    rented_balls: int = Field(default=0, ge=0)


class JoinRequestRespond(BaseModel):
    """Owner decision on a join request."""

    accept: bool


class JoinRequestResponse(BaseModel):
    """Join request state."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    booking_id: int
    requested_by: int
    requested_team: int
    requested_position: str
    status: str
    rented_rackets: int
    rented_balls: int
    player_payment: int
    transaction_id: Optional[int] = None


# ============================================================================
# Admin
# ============================================================================


class CancelBookingRequest(BaseModel):
    """Administrative cancellation with a refund percentage."""

    refund_percentage: int = Field(ge=0, le=100)
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason is required")
        return value.strip()


class CancellationRefund(BaseModel):
    transaction_id: int
    user_id: int
    refund: int


class CancelBookingResponse(BaseModel):
    """Outcome of a cancellation."""

    booking_id: int
    kind: str
    refund_percentage: int
    reason: str
    refunded_amount: int
    refunds: List[CancellationRefund]


class ReaperRunResponse(BaseModel):
    abandoned: int
    released: int


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    """Response returned to the gateway."""

    success: bool
    message: str


# ============================================================================
# Notifications
# ============================================================================


class NotificationResponse(BaseModel):
    """Notification response."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: int
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    is_read: bool
    read_at: Optional[str] = None
    link_url: Optional[str] = None
    created_at: Optional[str] = None


class NotificationListResponse(BaseModel):
    """Paginated notification list response."""

    notifications: List[NotificationResponse]
    total_count: int
    has_more: bool


class UnreadCountResponse(BaseModel):
    """Unread notification count response."""

    count: int
