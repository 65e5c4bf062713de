"""SQLAlchemy ORM models for the pre-market access platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from premarket_platform.infra.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Users / Agents
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user. Renter PII (name, email, phone) lives here."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="renter")  # UserRole
    is_active = Column(Boolean, default=True)
    email_subscription_enabled = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    agent_profile = relationship("AgentProfile", back_populates="user", uselist=False)


class AgentProfile(Base):
    """Agent-level access flags read by the visibility and decision logic."""

    __tablename__ = "agent_profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False, index=True)
    brokerage_name = Column(String(255), nullable=True)
    license_number = Column(String(100), nullable=True)

    # Blanket admin-granted access bypassing per-request approval/payment
    has_grant_access = Column(Boolean, default=False, nullable=False, index=True)

    # Accepting-requests cutoff. toggled_at is when the agent last stopped
    # accepting; resumed_at is when they turned it back on. Every pause window
    # is kept in the history as {"paused_at", "resumed_at"} ISO strings.
    accepting_requests = Column(Boolean, default=True, nullable=False)
    accepting_requests_toggled_at = Column(DateTime(timezone=True), nullable=True)
    accepting_requests_resumed_at = Column(DateTime(timezone=True), nullable=True)
    accepting_requests_history = Column(JSON, default=list)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    user = relationship("User", back_populates="agent_profile")


# ---------------------------------------------------------------------------
# Pre-market requests
# ---------------------------------------------------------------------------


class PreMarketRequest(Base):
    """A renter's off-market housing request.

    Owned by the pre-market collaborator; the access engine reads and writes
    visibility, share_consent, referral_agent_id, locked_by_agent_id and is_active.
    """

    __tablename__ = "pre_market_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    renter_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    request_name = Column(String(255), nullable=True)
    locations = Column(JSON, default=list)
    price_min = Column(Float, nullable=True)
    price_max = Column(Float, nullable=True)

    # Visibility
    visibility = Column(String(10), nullable=False, default="PRIVATE", index=True)  # Visibility
    share_consent = Column(Boolean, nullable=False, default=False)
    referral_agent_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)

    # Exclusive claim
    locked_by_agent_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    renter = relationship("User", foreign_keys=[renter_id])
    access_records = relationship(
        "GrantAccessRequest",
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------------------------------------------------------------------------
# Grant access
# ---------------------------------------------------------------------------


class GrantAccessRequest(Base):
    """Access record: one agent's permission to see one request's renter details."""

    __tablename__ = "grant_access_requests"
    __table_args__ = (
        UniqueConstraint("agent_id", "request_id", name="uq_grant_access_agent_request"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    request_id = Column(
        String(36),
        ForeignKey("pre_market_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Status
    status = Column(String(20), nullable=False, default="pending", index=True)  # AccessStatus

    # Admin decision
    decided_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    charge_amount = Column(Numeric(12, 2), nullable=True)
    is_free = Column(Boolean, nullable=True)
    admin_notes = Column(Text, nullable=True)

    # Payment
    payment_amount = Column(Numeric(12, 2), nullable=True)
    payment_currency = Column(String(3), nullable=True)
    payment_status = Column(String(20), nullable=True, index=True)  # PaymentStatus
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_failure_count = Column(Integer, nullable=False, default=0)
    payment_failed_at = Column(JSON, default=list)  # ISO timestamps
    payment_succeeded_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    request = relationship("PreMarketRequest", back_populates="access_records")
    agent = relationship("User", foreign_keys=[agent_id])
    events = relationship(
        "AccessEvent",
        back_populates="access_record",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AccessEvent(Base):
    """Immutable audit trail entry for access record transitions."""

    __tablename__ = "access_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    access_record_id = Column(
        String(36),
        ForeignKey("grant_access_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(50), nullable=False)  # AccessEventType
    actor = Column(String(20), nullable=False)  # AccessActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(20), nullable=True)  # AccessStatus
    to_status = Column(String(20), nullable=True)  # AccessStatus
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    # Relationships
    access_record = relationship("GrantAccessRequest", back_populates="events")


class ProcessedWebhookEvent(Base):
    """Stripe event ids already applied, so exact redeliveries are acknowledged."""

    __tablename__ = "processed_webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_utcnow)
