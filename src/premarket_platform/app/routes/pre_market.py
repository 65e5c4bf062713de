"""Pre-market request endpoints for agents: detail view, match, share toggle."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.dependencies import (
    get_gateway,
    get_notifier,
    get_visibility_controller,
)
from premarket_platform.app.routes.auth import require_role
from premarket_platform.domain.enums import UserRole
from premarket_platform.domain.errors import Forbidden, NotFound
from premarket_platform.domain.models import PreMarketRequest, User
from premarket_platform.domain.schemas import (
    AcceptingRequestsBody,
    AcceptingRequestsResponse,
    AccessRecordResponse,
    PreMarketDetailResponse,
    PreMarketRequestResponse,
)
from premarket_platform.infra.database import get_db
from premarket_platform.services.access_decision import (
    awaiting_payment_sync,
    derive_access_summary,
)
from premarket_platform.services.auth_service import get_agent_profile
from premarket_platform.services.payment_reconciliation import PaymentReconciliationCoordinator
from premarket_platform.services.request_visibility import RequestVisibilityController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pre-market", tags=["pre-market"])

require_agent = require_role(UserRole.AGENT.value)


@router.get("/{request_id}/details", response_model=PreMarketDetailResponse)
async def request_details(
    request_id: str,
    user: User = Depends(require_agent),
    db: AsyncSession = Depends(get_db),
    visibility: RequestVisibilityController = Depends(get_visibility_controller),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
):
    """Request detail for an agent. Renter contact info only when access is granted."""
    agent = await get_agent_profile(db, user.id)
    if agent is None:
        raise Forbidden("Agent profile required")

    request = await db.get(PreMarketRequest, request_id)
    if request is None:
        raise NotFound("Pre-market request not found")
    await visibility.ensure_agent_can_view(agent, request)

    has_grant_access = bool(agent.has_grant_access)
    request_view = PreMarketRequestResponse.model_validate(request)
    renter_id = request.renter_id

    record = await visibility.find_access_record(user.id, request_id)
    if awaiting_payment_sync(record):
        # Webhooks can lag; ask Stripe directly and fall back to the stored status
        record_id, intent_id = record.id, record.stripe_payment_intent_id
        try:
            coordinator = PaymentReconciliationCoordinator(db, gateway, notifier)
            await coordinator.reconcile_payment_intent(intent_id)
        except Exception:
            logger.exception(
                "Payment reconciliation failed for record %s (intent=%s)", record_id, intent_id,
            )
            await db.rollback()
        await db.refresh(record)

    summary = derive_access_summary(record, has_grant_access)

    renter_info = None
    if summary.can_see_renter_info:
        renter_info = await db.get(User, renter_id)

    return {
        "request": request_view,
        "access": summary.to_dict(),
        "renter_info": renter_info,
    }


@router.post("/{request_id}/match", response_model=AccessRecordResponse)
async def match_request(
    request_id: str,
    user: User = Depends(require_agent),
    visibility: RequestVisibilityController = Depends(get_visibility_controller),
):
    """Claim the request and take free access to it."""
    return await visibility.match_request_for_agent(user.id, request_id)


@router.post("/{request_id}/share-toggle", response_model=PreMarketRequestResponse)
async def share_toggle(
    request_id: str,
    user: User = Depends(require_agent),
    visibility: RequestVisibilityController = Depends(get_visibility_controller),
):
    return await visibility.toggle_share_visibility(user.id, request_id)


agents_router = APIRouter(prefix="/api/agents", tags=["agents"])


@agents_router.post("/me/accepting-requests", response_model=AcceptingRequestsResponse)
async def set_accepting_requests(
    body: AcceptingRequestsBody,
    user: User = Depends(require_agent),
    visibility: RequestVisibilityController = Depends(get_visibility_controller),
):
    return await visibility.set_accepting_requests(user.id, body.accepting)
