"""Shared test infrastructure for the Pre-Market Platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- gateway_mock: StripeGateway stand-in with AsyncMock network calls
- notifier_mock: AccessNotifier stand-in recording every trigger
- make_user / make_agent / make_request / make_access_record: row factories
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from premarket_platform.infra.database import Base, enable_sqlite_foreign_keys

import premarket_platform.domain.models  # noqa: F401

from premarket_platform.domain.models import (
    AgentProfile,
    GrantAccessRequest,
    PreMarketRequest,
    User,
)
from premarket_platform.infra.payment_gateway import IntentRef, IntentSnapshot


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Foreign keys are enforced so request deletion cascades to access records.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_foreign_keys(engine.sync_engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Gateway / notifier mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def gateway_mock():
    """StripeGateway stand-in.

    create_intent returns an IntentRef for the requested amount;
    retrieve_intent defaults to a still-processing intent.
    """
    mock = MagicMock()

    async def _create_intent(amount, metadata, idempotency_key=None):
        return IntentRef(
            id="pi_test_123",
            client_secret="pi_test_123_secret_abc",
            amount=Decimal(str(amount)),
            currency="usd",
            status="requires_payment_method",
        )

    mock.create_intent = AsyncMock(side_effect=_create_intent)
    mock.retrieve_intent = AsyncMock(
        return_value=IntentSnapshot(id="pi_test_123", status="processing")
    )
    mock.verify_and_parse_webhook = MagicMock()
    return mock


@pytest.fixture
def notifier_mock():
    mock = MagicMock()
    mock.admin_access_requested = AsyncMock()
    mock.agent_access_approved = AsyncMock()
    mock.agent_access_rejected = AsyncMock()
    mock.agent_payment_link = AsyncMock()
    mock.renter_access_granted = AsyncMock()
    return mock


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        renter = await make_user(role="renter")
    """
    async def _factory(
        role: str = "renter",
        name: str = "Test User",
        email: str | None = None,
        phone: str | None = "+15551234567",
        email_subscription_enabled: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        user = User(
            id=user_id,
            email=email or f"{role}-{user_id[:8]}@test.com",
            name=name,
            phone=phone,
            role=role,
            is_active=True,
            email_subscription_enabled=email_subscription_enabled,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_agent(db_session, make_user):
    """Factory that creates an agent User plus its AgentProfile.

    Returns the AgentProfile; ``profile.user_id`` is the agent id.
    """
    async def _factory(
        has_grant_access: bool = False,
        accepting_requests: bool = True,
        toggled_at: datetime | None = None,
        resumed_at: datetime | None = None,
        name: str = "Test Agent",
    ) -> AgentProfile:
        user = await make_user(role="agent", name=name)
        profile = AgentProfile(
            id=str(uuid.uuid4()),
            user_id=user.id,
            user=user,
            brokerage_name="Test Realty",
            has_grant_access=has_grant_access,
            accepting_requests=accepting_requests,
            accepting_requests_toggled_at=toggled_at,
            accepting_requests_resumed_at=resumed_at,
        )
        db_session.add(profile)
        await db_session.flush()
        return profile

    return _factory


@pytest.fixture
def make_request(db_session, make_user):
    """Factory that creates a PreMarketRequest (and its renter when not given)."""
    async def _factory(
        renter: User | None = None,
        visibility: str = "SHARED",
        share_consent: bool = True,
        referral_agent_id: str | None = None,
        locked_by_agent_id: str | None = None,
        is_active: bool = True,
        created_at: datetime | None = None,
        request_name: str = "2BR in Williamsburg",
    ) -> PreMarketRequest:
        if renter is None:
            renter = await make_user(role="renter", name="Rita Renter")
        request = PreMarketRequest(
            id=str(uuid.uuid4()),
            renter_id=renter.id,
            request_name=request_name,
            locations=["Williamsburg"],
            price_min=2500,
            price_max=3500,
            visibility=visibility,
            share_consent=share_consent,
            referral_agent_id=referral_agent_id,
            locked_by_agent_id=locked_by_agent_id,
            is_active=is_active,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db_session.add(request)
        await db_session.flush()
        return request

    return _factory


@pytest.fixture
def make_access_record(db_session):
    """Factory that creates a GrantAccessRequest in any state."""
    async def _factory(
        agent_id: str,
        request_id: str,
        status: str = "pending",
        **fields,
    ) -> GrantAccessRequest:
        record = GrantAccessRequest(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            request_id=request_id,
            status=status,
            **fields,
        )
        db_session.add(record)
        await db_session.flush()
        return record

    return _factory


@pytest.fixture
def make_charged_record(make_access_record):
    """Factory for an approved record with a pending $50 charge."""
    async def _factory(agent_id: str, request_id: str, intent_id: str | None = "pi_test_123", **fields):
        values = {
            "is_free": False,
            "charge_amount": Decimal("50.00"),
            "payment_amount": Decimal("50.00"),
            "payment_currency": "USD",
            "payment_status": "pending",
            "stripe_payment_intent_id": intent_id,
            "payment_failure_count": 0,
            "payment_failed_at": [],
        }
        values.update(fields)
        return await make_access_record(agent_id, request_id, status="approved", **values)

    return _factory
