"""Grant access service: persistence orchestration for access records.

Covers the agent request path, admin decisions, the agent-visible summary,
payment intent creation and the admin payment overview. The transition and
summary rules live in access_decision; this module loads, writes and
notifies.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.enums import (
    AccessActor,
    AccessEventType,
    AccessStatus,
    AdminAction,
    PaymentStatus,
)
from premarket_platform.domain.errors import BadRequest, Conflict, Forbidden, NotFound
from premarket_platform.domain.models import (
    AgentProfile,
    GrantAccessRequest,
    PreMarketRequest,
)
from premarket_platform.infra.payment_gateway import to_minor_units
from premarket_platform.services.access_decision import (
    GRANTED_STATES,
    AccessSummary,
    check_existing_access,
    derive_access_summary,
    resolve_admin_decision,
)
from premarket_platform.services.access_events import record_access_event
from premarket_platform.services.request_visibility import RequestVisibilityController

logger = logging.getLogger(__name__)


class GrantAccessService:
    """Access record operations for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        gateway=None,
        notifier=None,
        settings=None,
        visibility: RequestVisibilityController | None = None,
    ):
        if settings is None:
            from premarket_platform.app.config import get_settings
            settings = get_settings()
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.visibility = visibility or RequestVisibilityController(
            db, notifier, settings.default_referral_agent_id,
        )

    # ------------------------------------------------------------------
    # Agent: request access
    # ------------------------------------------------------------------

    async def request_access(self, agent_id: str, request_id: str) -> GrantAccessRequest:
        """Create a pending access record, or hand back the in-flight one.

        Raises Conflict when the agent already has access or was rejected.
        """
        request = await self.db.get(PreMarketRequest, request_id)
        if request is None:
            raise NotFound("Pre-market request not found")
        if not request.is_active:
            raise Conflict("This pre-market request is no longer active")

        agent = await self._get_agent_profile(agent_id)
        await self.visibility.ensure_agent_can_view(agent, request)

        existing = await self._find_record(agent_id, request_id)
        if existing is not None:
            check_existing_access(existing)
            logger.info(
                "Agent %s already has a %s access request for %s",
                agent_id, existing.status, request_id,
            )
            return existing

        record = GrantAccessRequest(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            request_id=request_id,
            status=AccessStatus.PENDING.value,
        )
        self.db.add(record)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost the race on (agent_id, request_id); apply the same rules to the winner.
            await self.db.rollback()
            existing = await self._find_record(agent_id, request_id)
            if existing is None:
                raise
            check_existing_access(existing)
            return existing

        record_access_event(
            self.db, record, AccessEventType.ACCESS_REQUESTED, AccessActor.AGENT,
            actor_id=agent_id, to_status=AccessStatus.PENDING,
        )
        await self.db.commit()
        logger.info("Access requested: agent=%s request=%s record=%s", agent_id, request_id, record.id)

        if self.notifier is not None:
            await self.notifier.admin_access_requested(record)
        return record

    # ------------------------------------------------------------------
    # Admin: decide
    # ------------------------------------------------------------------

    async def admin_decide_access(
        self,
        access_id: str,
        action: AdminAction | str,
        admin_id: str,
        is_free: bool | None = None,
        charge_amount=None,
        notes: str | None = None,
    ) -> GrantAccessRequest:
        """Apply an admin approve / charge / reject to an access record.

        Admins may override any state. Overriding free or paid access is
        allowed but logged; refunds are not handled here.
        """
        record = await self.db.get(GrantAccessRequest, access_id)
        if record is None:
            raise NotFound("Access request not found")

        resolution = resolve_admin_decision(action, is_free=is_free, charge_amount=charge_amount)
        previous = AccessStatus(record.status)
        if previous in GRANTED_STATES:
            logger.warning(
                "Admin %s overriding %s access record %s -> %s (payment_status=%s)",
                admin_id, previous.value, record.id,
                resolution.target_status.value, record.payment_status,
            )

        now = datetime.now(timezone.utc)
        record.status = resolution.target_status.value
        record.decided_by = admin_id
        record.decided_at = now
        record.is_free = resolution.is_free
        record.charge_amount = resolution.charge_amount
        record.admin_notes = notes
        record.updated_at = now

        if resolution.creates_charge:
            record.payment_amount = resolution.charge_amount
            record.payment_currency = self.settings.payment_currency.upper()
            record.payment_status = PaymentStatus.PENDING.value
            record.stripe_payment_intent_id = None
            record.payment_failure_count = 0
            record.payment_failed_at = []
            record.payment_succeeded_at = None

        if resolution.target_status == AccessStatus.REJECTED:
            event_type = AccessEventType.ADMIN_REJECTED
        elif resolution.creates_charge:
            event_type = AccessEventType.ADMIN_CHARGED
        else:
            event_type = AccessEventType.ADMIN_APPROVED_FREE

        record_access_event(
            self.db, record, event_type, AccessActor.ADMIN,
            actor_id=admin_id, from_status=previous, to_status=resolution.target_status,
            data={
                "charge_amount": str(resolution.charge_amount) if resolution.charge_amount else None,
                "notes": notes,
            },
        )
        await self.db.commit()
        logger.info(
            "Admin %s decided access %s: %s -> %s",
            admin_id, record.id, previous.value, record.status,
        )

        if self.notifier is not None:
            if resolution.target_status == AccessStatus.REJECTED:
                await self.notifier.agent_access_rejected(record)
            elif resolution.creates_charge:
                await self.notifier.agent_payment_link(record)
            else:
                await self.notifier.agent_access_approved(record)
        return record

    # ------------------------------------------------------------------
    # Agent: summary
    # ------------------------------------------------------------------

    async def get_agent_access_summary(self, agent_id: str, request_id: str) -> AccessSummary:
        agent = await self._get_agent_profile(agent_id)
        record = await self._find_record(agent_id, request_id)
        return derive_access_summary(record, bool(agent.has_grant_access))

    # ------------------------------------------------------------------
    # Agent: payment intent
    # ------------------------------------------------------------------

    async def create_payment_intent(self, access_id: str, agent_id: str) -> dict:
        """Create a Stripe payment intent for an approved, charged record."""
        record = await self.db.get(GrantAccessRequest, access_id)
        if record is None:
            raise NotFound("Access request not found")
        if record.agent_id != agent_id:
            raise Forbidden("This access request belongs to another agent")

        status = AccessStatus(record.status)
        if status in GRANTED_STATES:
            raise Conflict("You already have access to this pre-market request")
        if status != AccessStatus.APPROVED or record.is_free or not record.payment_amount:
            raise BadRequest("Invalid payment status")

        request = await self.db.get(PreMarketRequest, record.request_id)
        if request is None:
            raise NotFound("Pre-market request not found")
        if not request.is_active:
            raise Conflict("This pre-market request is no longer active")

        attempts = record.payment_failure_count or 0
        if attempts >= self.settings.max_payment_attempts:
            logger.warning(
                "Access %s reached max payment attempts (%s)", record.id, attempts,
            )
            raise Conflict("Maximum payment attempts reached. Please contact support.")

        intent = await self.gateway.create_intent(
            Decimal(str(record.payment_amount)),
            metadata={
                "grant_access_id": record.id,
                "agent_id": record.agent_id,
                "request_id": record.request_id,
            },
            idempotency_key=(
                f"grant-access-{record.id}-{attempts}-{to_minor_units(record.payment_amount)}"
            ),
        )

        record.stripe_payment_intent_id = intent.id
        record.payment_status = PaymentStatus.PENDING.value
        record.updated_at = datetime.now(timezone.utc)
        record_access_event(
            self.db, record, AccessEventType.PAYMENT_INTENT_CREATED, AccessActor.AGENT,
            actor_id=agent_id, from_status=status, to_status=status,
            data={"intent_id": intent.id, "attempt": attempts + 1},
        )
        await self.db.commit()

        return {
            "client_secret": intent.client_secret,
            "amount": float(intent.amount) if intent.amount is not None else float(record.payment_amount),
            "currency": intent.currency,
            "intent_id": intent.id,
        }

    # ------------------------------------------------------------------
    # Admin: listings
    # ------------------------------------------------------------------

    async def list_access_records(
        self,
        status: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[GrantAccessRequest], int]:
        query = select(GrantAccessRequest)
        count_query = select(func.count(GrantAccessRequest.id))
        if status:
            query = query.where(GrantAccessRequest.status == status)
            count_query = count_query.where(GrantAccessRequest.status == status)

        total = await self.db.scalar(count_query) or 0
        result = await self.db.execute(
            query.order_by(GrantAccessRequest.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total

    async def list_payments(
        self,
        payment_status: str | None = None,
        access_status: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[GrantAccessRequest], int]:
        """Access records that carry a payment, newest first."""
        filters = [GrantAccessRequest.payment_status.is_not(None)]
        if payment_status:
            filters.append(GrantAccessRequest.payment_status == payment_status)
        if access_status:
            filters.append(GrantAccessRequest.status == access_status)

        total = await self.db.scalar(
            select(func.count(GrantAccessRequest.id)).where(*filters)
        ) or 0
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(*filters)
            .order_by(GrantAccessRequest.updated_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total

    async def payment_stats(self) -> dict:
        by_status = dict(
            (await self.db.execute(
                select(GrantAccessRequest.status, func.count(GrantAccessRequest.id))
                .group_by(GrantAccessRequest.status)
            )).all()
        )
        by_payment_status = dict(
            (await self.db.execute(
                select(GrantAccessRequest.payment_status, func.count(GrantAccessRequest.id))
                .where(GrantAccessRequest.payment_status.is_not(None))
                .group_by(GrantAccessRequest.payment_status)
            )).all()
        )
        revenue = await self.db.scalar(
            select(func.coalesce(func.sum(GrantAccessRequest.payment_amount), 0))
            .where(GrantAccessRequest.payment_status == PaymentStatus.SUCCEEDED.value)
        )
        failures = await self.db.scalar(
            select(func.coalesce(func.sum(GrantAccessRequest.payment_failure_count), 0))
        )

        return {
            "total_requests": sum(by_status.values()),
            "by_status": {s.value: by_status.get(s.value, 0) for s in AccessStatus},
            "by_payment_status": {s.value: by_payment_status.get(s.value, 0) for s in PaymentStatus},
            "total_revenue": float(revenue or 0),
            "total_failures": int(failures or 0),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_agent_profile(self, agent_id: str) -> AgentProfile:
        result = await self.db.execute(
            select(AgentProfile).where(AgentProfile.user_id == agent_id)
        )
        agent = result.scalar_one_or_none()
        if agent is None:
            raise NotFound("Agent profile not found")
        return agent

    async def _find_record(self, agent_id: str, request_id: str) -> GrantAccessRequest | None:
        result = await self.db.execute(
            select(GrantAccessRequest).where(
                GrantAccessRequest.agent_id == agent_id,
                GrantAccessRequest.request_id == request_id,
            )
        )
        return result.scalar_one_or_none()
