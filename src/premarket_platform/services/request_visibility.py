"""Request lock & visibility controller.

Decides which agents may see a pre-market request, owns the exclusive
claim on a request, and runs the match action (claim + free grant).

All cross-request coordination goes through the database:
- the claim is a single conditional UPDATE on ``locked_by_agent_id``
- the (agent, request) unique constraint guards record creation
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.enums import (
    AccessActor,
    AccessEventType,
    AccessStatus,
    Visibility,
)
from premarket_platform.domain.errors import Conflict, Forbidden, NotFound
from premarket_platform.domain.models import (
    AgentProfile,
    GrantAccessRequest,
    PreMarketRequest,
)
from premarket_platform.services.access_decision import (
    GRANTED_STATES,
    AccessStateMachine,
)
from premarket_platform.services.access_events import record_access_event

logger = logging.getLogger(__name__)

ALREADY_CLAIMED = "This request has already been claimed by another agent"


# ---------------------------------------------------------------------------
# Referral agent reference
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnresolvedAgent:
    """A referral agent id with no agent profile behind it."""

    agent_id: str


@dataclass(frozen=True)
class ResolvedAgent:
    """A referral agent whose profile was loaded."""

    profile: AgentProfile

    @property
    def agent_id(self) -> str:
        return self.profile.user_id


AgentRef = Union[UnresolvedAgent, ResolvedAgent]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_ts(value) -> datetime | None:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return _as_utc(value)


def _pause_windows(agent: AgentProfile) -> list[tuple[datetime, datetime | None]]:
    """Every (paused_at, resumed_at) window. An open window has resumed_at None."""
    windows = []
    for entry in agent.accepting_requests_history or []:
        paused_at = _parse_ts(entry.get("paused_at"))
        if paused_at is not None:
            windows.append((paused_at, _parse_ts(entry.get("resumed_at"))))

    toggled_at = _as_utc(agent.accepting_requests_toggled_at)
    if toggled_at is not None:
        resumed_at = _as_utc(agent.accepting_requests_resumed_at)
        if not agent.accepting_requests or (resumed_at is not None and resumed_at < toggled_at):
            resumed_at = None
        windows.append((toggled_at, resumed_at))
    return windows


def is_past_cutoff(agent: AgentProfile, request: PreMarketRequest) -> bool:
    """True when the request was created inside any of the agent's paused windows.

    A window opens when the agent stops accepting and closes when they resume.
    Requests created in a window stay hidden for good, whatever pauses follow.
    """
    created_at = _as_utc(request.created_at)
    if created_at is None:
        return False
    for paused_at, resumed_at in _pause_windows(agent):
        if created_at > paused_at and (resumed_at is None or created_at <= resumed_at):
            return True
    return False


class RequestVisibilityController:
    """Visibility checks, lock claims and the match action for one session."""

    def __init__(
        self,
        db: AsyncSession,
        notifier=None,
        default_referral_agent_id: str | None = None,
    ):
        self.db = db
        self.notifier = notifier
        if default_referral_agent_id is None:
            from premarket_platform.app.config import get_settings
            default_referral_agent_id = get_settings().default_referral_agent_id
        self.default_referral_agent_id = default_referral_agent_id or None
        self.state_machine = AccessStateMachine()

    # ------------------------------------------------------------------
    # Referral resolution
    # ------------------------------------------------------------------

    async def resolve_referral_agent(self, request: PreMarketRequest) -> AgentRef | None:
        """Resolve the agent owning a PRIVATE request.

        Falls back to the configured default agent when the renter has no
        referring agent. Returns None when neither is set.
        """
        agent_id = request.referral_agent_id or self.default_referral_agent_id
        if not agent_id:
            return None

        result = await self.db.execute(
            select(AgentProfile).where(AgentProfile.user_id == agent_id)
        )
        profile = result.scalar_one_or_none()
        if profile is None:
            return UnresolvedAgent(agent_id=agent_id)
        return ResolvedAgent(profile=profile)

    async def _is_referral_agent(self, agent_id: str, request: PreMarketRequest) -> bool:
        ref = await self.resolve_referral_agent(request)
        if isinstance(ref, ResolvedAgent):
            return ref.agent_id == agent_id
        if isinstance(ref, UnresolvedAgent):
            logger.warning(
                "Referral agent %s for request %s has no agent profile",
                ref.agent_id, request.id,
            )
            return ref.agent_id == agent_id
        return False

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    async def can_agent_view(
        self, agent: AgentProfile, request: PreMarketRequest, ignore_lock: bool = False,
    ) -> bool:
        if is_past_cutoff(agent, request):
            return False

        visibility = request.visibility or Visibility.PRIVATE.value
        if visibility == Visibility.SHARED.value:
            return ignore_lock or request.locked_by_agent_id in (None, agent.user_id)
        return await self._is_referral_agent(agent.user_id, request)

    async def ensure_agent_can_view(
        self, agent: AgentProfile, request: PreMarketRequest, ignore_lock: bool = False,
    ) -> None:
        """Raise Forbidden unless ``agent`` may see ``request``.

        Blanket access does not bypass this check. ``ignore_lock`` skips the
        SHARED lock rule for callers that claim the lock themselves.
        """
        if not await self.can_agent_view(agent, request, ignore_lock):
            logger.info(
                "Agent %s denied view of request %s (visibility=%s, locked_by=%s)",
                agent.user_id, request.id, request.visibility, request.locked_by_agent_id,
            )
            raise Forbidden("You do not have access to this pre-market request")

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    async def claim_request_lock(self, request_id: str, agent_id: str) -> None:
        """Claim exclusive ownership of a request in one conditional write.

        Re-claiming a request the agent already owns is a no-op success.
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(PreMarketRequest)
            .where(
                PreMarketRequest.id == request_id,
                or_(
                    PreMarketRequest.locked_by_agent_id.is_(None),
                    PreMarketRequest.locked_by_agent_id == agent_id,
                ),
            )
            .values(locked_by_agent_id=agent_id, locked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await self.db.commit()
            logger.info("Request %s claimed by agent %s", request_id, agent_id)
            return

        await self.db.rollback()
        exists = await self.db.scalar(
            select(PreMarketRequest.id).where(PreMarketRequest.id == request_id)
        )
        if exists is None:
            raise NotFound("Pre-market request not found")
        raise Conflict(ALREADY_CLAIMED)

    async def release_request_lock(self, request_id: str, agent_id: str) -> bool:
        """Clear the lock if ``agent_id`` holds it. Never raises."""
        try:
            result = await self.db.execute(
                update(PreMarketRequest)
                .where(
                    PreMarketRequest.id == request_id,
                    PreMarketRequest.locked_by_agent_id == agent_id,
                )
                .values(locked_by_agent_id=None, locked_at=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            released = result.rowcount == 1
            if released:
                logger.info("Request %s lock released by agent %s", request_id, agent_id)
            return released
        except Exception:
            logger.exception(
                "Failed to release lock on request %s for agent %s", request_id, agent_id,
            )
            return False

    # ------------------------------------------------------------------
    # Match
    # ------------------------------------------------------------------

    async def match_request_for_agent(self, agent_id: str, request_id: str) -> GrantAccessRequest:
        """Claim the request and grant the agent free access in one action."""
        agent = await self._get_agent_profile(agent_id)
        request = await self.db.get(PreMarketRequest, request_id)
        if request is None:
            raise NotFound("Pre-market request not found")

        # The lock is left to the claim below, so a lost race is a Conflict
        await self.ensure_agent_can_view(agent, request, ignore_lock=True)
        if not request.is_active:
            raise Conflict("This pre-market request is no longer active")

        await self.claim_request_lock(request_id, agent_id)

        try:
            record, changed = await self._grant_free_access(agent_id, request_id)
        except Exception:
            await self.db.rollback()
            await self.release_request_lock(request_id, agent_id)
            raise

        if changed and self.notifier is not None:
            await self.notifier.renter_access_granted(record)
        return record

    async def _grant_free_access(
        self, agent_id: str, request_id: str
    ) -> tuple[GrantAccessRequest, bool]:
        record = await self.find_access_record(agent_id, request_id)

        if record is None:
            record = GrantAccessRequest(
                id=str(uuid.uuid4()),
                agent_id=agent_id,
                request_id=request_id,
                status=AccessStatus.FREE.value,
                is_free=True,
            )
            self.db.add(record)
            try:
                await self.db.flush()
            except IntegrityError:
                # Another call created the pair first; advance that one instead.
                await self.db.rollback()
                record = await self.find_access_record(agent_id, request_id)
                if record is None:
                    raise
                return await self._advance_to_free(record)

            record_access_event(
                self.db, record, AccessEventType.MATCHED, AccessActor.AGENT,
                actor_id=agent_id, to_status=AccessStatus.FREE,
            )
            await self.db.commit()
            logger.info("Agent %s matched request %s (new free record %s)", agent_id, request_id, record.id)
            return record, True

        return await self._advance_to_free(record)

    async def _advance_to_free(self, record: GrantAccessRequest) -> tuple[GrantAccessRequest, bool]:
        current = AccessStatus(record.status)
        if current in GRANTED_STATES:
            logger.info(
                "Agent %s already has %s access to request %s, keeping it",
                record.agent_id, current.value, record.request_id,
            )
            await self.db.commit()
            return record, False

        self.state_machine.validate_transition(current, AccessStatus.FREE, AccessActor.AGENT)

        record.status = AccessStatus.FREE.value
        record.is_free = True
        record.updated_at = datetime.now(timezone.utc)
        record_access_event(
            self.db, record, AccessEventType.MATCHED, AccessActor.AGENT,
            actor_id=record.agent_id, from_status=current, to_status=AccessStatus.FREE,
        )
        await self.db.commit()
        logger.info(
            "Agent %s matched request %s (%s -> free)",
            record.agent_id, record.request_id, current.value,
        )
        return record, True

    # ------------------------------------------------------------------
    # Share toggle / accepting requests
    # ------------------------------------------------------------------

    async def toggle_share_visibility(self, agent_id: str, request_id: str) -> PreMarketRequest:
        """Flip PRIVATE <-> SHARED. Only the referral agent may do this.

        Without renter consent the request always ends up PRIVATE.
        """
        request = await self.db.get(PreMarketRequest, request_id)
        if request is None:
            raise NotFound("Pre-market request not found")
        if not await self._is_referral_agent(agent_id, request):
            raise Forbidden("Only the referral agent can change this request's visibility")

        current = request.visibility or Visibility.PRIVATE.value
        if current == Visibility.SHARED.value:
            target = Visibility.PRIVATE
        elif request.share_consent:
            target = Visibility.SHARED
        else:
            logger.info(
                "Request %s has no share consent, keeping PRIVATE (agent=%s)",
                request_id, agent_id,
            )
            target = Visibility.PRIVATE

        request.visibility = target.value
        request.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("Request %s visibility %s -> %s", request_id, current, target.value)
        return request

    async def set_accepting_requests(self, agent_id: str, accepting: bool) -> AgentProfile:
        """Pause or resume new requests for an agent.

        Pausing opens a window in the history and stamps the cutoff. Resuming
        closes it; requests created while paused stay hidden.
        """
        agent = await self._get_agent_profile(agent_id)
        now = datetime.now(timezone.utc)
        history = [dict(entry) for entry in agent.accepting_requests_history or []]

        if agent.accepting_requests and not accepting:
            agent.accepting_requests_toggled_at = now
            history.append({"paused_at": now.isoformat(), "resumed_at": None})
        elif not agent.accepting_requests and accepting:
            agent.accepting_requests_resumed_at = now
            if history and history[-1].get("resumed_at") is None:
                history[-1]["resumed_at"] = now.isoformat()
            else:
                history.append({
                    "paused_at": _parse_ts(agent.accepting_requests_toggled_at or now).isoformat(),
                    "resumed_at": now.isoformat(),
                })

        # Reassign so the JSON column registers the change
        agent.accepting_requests_history = history

        agent.accepting_requests = accepting
        await self.db.commit()
        logger.info("Agent %s accepting_requests=%s", agent_id, accepting)
        return agent

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

    async def find_access_record(self, agent_id: str, request_id: str) -> GrantAccessRequest | None:
        result = await self.db.execute(
            select(GrantAccessRequest).where(
                GrantAccessRequest.agent_id == agent_id,
                GrantAccessRequest.request_id == request_id,
            )
        )
        return result.scalar_one_or_none()
