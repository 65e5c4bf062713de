"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    phone: str | None = None
    is_active: bool


# ---------------------------------------------------------------------------
# Grant access
# ---------------------------------------------------------------------------


class AccessRequestCreate(BaseModel):
    """Agent asks for access to a pre-market request."""

    request_id: str = Field(min_length=1)


class AdminDecisionBody(BaseModel):
    """Admin approve / reject payload."""

    is_free: bool | None = None
    charge_amount: Decimal | None = None
    notes: str | None = None


class ChargeBody(BaseModel):
    """Admin charge payload."""

    charge_amount: Decimal = Field(gt=0)
    notes: str | None = None


class CreateIntentBody(BaseModel):
    """Agent starts a payment for an approved access record."""

    grant_access_id: str = Field(min_length=1)


class PaymentIntentResponse(BaseModel):
    client_secret: str | None = None
    amount: float
    currency: str
    intent_id: str


class AccessRecordResponse(BaseModel):
    """Schema for access record API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    request_id: str
    status: str

    decided_by: str | None = None
    decided_at: datetime | None = None
    charge_amount: Decimal | None = None
    is_free: bool | None = None
    admin_notes: str | None = None

    payment_amount: Decimal | None = None
    payment_currency: str | None = None
    payment_status: str | None = None
    stripe_payment_intent_id: str | None = None
    payment_failure_count: int = 0
    payment_failed_at: list[str] | None = None
    payment_succeeded_at: datetime | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_serializer("charge_amount", "payment_amount")
    def _money(self, value: Decimal | None) -> float | None:
        return float(value) if value is not None else None


class AccessRecordPage(BaseModel):
    items: list[AccessRecordResponse]
    total: int
    page: int
    per_page: int


class AccessSummaryResponse(BaseModel):
    """What an agent may see about one pre-market request."""

    grant_access_status: str
    access_type: str
    can_request_access: bool
    can_see_renter_info: bool
    listing_status: str
    charge_amount: float | None = None
    payment: dict | None = None
    grant_access_id: str | None = None


# ---------------------------------------------------------------------------
# Pre-market
# ---------------------------------------------------------------------------


class RenterInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    email: str
    phone: str | None = None


class PreMarketRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_name: str | None = None
    locations: list | None = None
    price_min: float | None = None
    price_max: float | None = None
    visibility: str
    share_consent: bool
    is_active: bool
    locked_by_agent_id: str | None = None
    created_at: datetime | None = None


class PreMarketDetailResponse(BaseModel):
    request: PreMarketRequestResponse
    access: AccessSummaryResponse
    renter_info: RenterInfo | None = None


class AcceptingRequestsBody(BaseModel):
    accepting: bool


class AcceptingRequestsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    accepting_requests: bool
    accepting_requests_toggled_at: datetime | None = None
    accepting_requests_resumed_at: datetime | None = None
