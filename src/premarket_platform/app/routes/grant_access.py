"""Grant access API: agent requests, admin decisions, payment overview."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from premarket_platform.app.dependencies import get_grant_access_service
from premarket_platform.app.routes.auth import require_role
from premarket_platform.domain.enums import AdminAction, UserRole
from premarket_platform.domain.models import User
from premarket_platform.domain.schemas import (
    AccessRecordPage,
    AccessRecordResponse,
    AccessRequestCreate,
    AccessSummaryResponse,
    AdminDecisionBody,
    ChargeBody,
    CreateIntentBody,
    PaymentIntentResponse,
)
from premarket_platform.services.grant_access_service import GrantAccessService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/grant-access", tags=["grant-access"])

require_agent = require_role(UserRole.AGENT.value)
require_admin = require_role(UserRole.ADMIN.value)


# ---------------------------------------------------------------------------
# Agent endpoints
# ---------------------------------------------------------------------------


@router.post("/request", response_model=AccessRecordResponse)
async def request_access(
    body: AccessRequestCreate,
    user: User = Depends(require_agent),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    """Agent asks for access to a request's renter details."""
    return await service.request_access(user.id, body.request_id)


@router.post("/payment/create-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    body: CreateIntentBody,
    user: User = Depends(require_agent),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    return await service.create_payment_intent(body.grant_access_id, user.id)


@router.get("/{request_id}/summary", response_model=AccessSummaryResponse)
async def access_summary(
    request_id: str,
    user: User = Depends(require_agent),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    summary = await service.get_agent_access_summary(user.id, request_id)
    return summary.to_dict()


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/api/admin/grant-access", tags=["admin-grant-access"])


@admin_router.get("", response_model=AccessRecordPage)
async def list_access_records(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=200),
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    records, total = await service.list_access_records(status, page, per_page)
    return {"items": records, "total": total, "page": page, "per_page": per_page}


@admin_router.post("/{access_id}/approve", response_model=AccessRecordResponse)
async def approve_access(
    access_id: str,
    body: AdminDecisionBody,
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    """Approve for free, or with a charge when a positive amount is given."""
    return await service.admin_decide_access(
        access_id,
        AdminAction.APPROVE,
        admin.id,
        is_free=body.is_free,
        charge_amount=body.charge_amount,
        notes=body.notes,
    )


@admin_router.post("/{access_id}/charge", response_model=AccessRecordResponse)
async def charge_access(
    access_id: str,
    body: ChargeBody,
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    return await service.admin_decide_access(
        access_id,
        AdminAction.CHARGE,
        admin.id,
        charge_amount=body.charge_amount,
        notes=body.notes,
    )


@admin_router.post("/{access_id}/reject", response_model=AccessRecordResponse)
async def reject_access(
    access_id: str,
    body: AdminDecisionBody,
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    return await service.admin_decide_access(
        access_id, AdminAction.REJECT, admin.id, notes=body.notes,
    )


# ---------------------------------------------------------------------------
# Admin payment overview
# ---------------------------------------------------------------------------

payment_admin_router = APIRouter(prefix="/api/admin/payments", tags=["admin-payments"])


@payment_admin_router.get("", response_model=AccessRecordPage)
async def list_payments(
    payment_status: Optional[str] = Query(None),
    access_status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=200),
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    records, total = await service.list_payments(payment_status, access_status, page, per_page)
    return {"items": records, "total": total, "page": page, "per_page": per_page}


@payment_admin_router.get("/stats")
async def payment_stats(
    admin: User = Depends(require_admin),
    service: GrantAccessService = Depends(get_grant_access_service),
):
    return await service.payment_stats()
