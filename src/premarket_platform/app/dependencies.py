"""FastAPI dependency providers for the access services.

Tests override ``get_gateway`` (and ``get_db``) via ``app.dependency_overrides``.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.app.config import get_settings
from premarket_platform.infra.database import get_db
from premarket_platform.infra.payment_gateway import StripeGateway
from premarket_platform.services.access_notifier import AccessNotifier
from premarket_platform.services.grant_access_service import GrantAccessService
from premarket_platform.services.payment_reconciliation import PaymentReconciliationCoordinator
from premarket_platform.services.request_visibility import RequestVisibilityController


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_notifier(db: AsyncSession = Depends(get_db)) -> AccessNotifier:
    return AccessNotifier(db)


def get_visibility_controller(
    db: AsyncSession = Depends(get_db),
    notifier: AccessNotifier = Depends(get_notifier),
) -> RequestVisibilityController:
    return RequestVisibilityController(
        db, notifier, get_settings().default_referral_agent_id,
    )


def get_grant_access_service(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    notifier: AccessNotifier = Depends(get_notifier),
    visibility: RequestVisibilityController = Depends(get_visibility_controller),
) -> GrantAccessService:
    return GrantAccessService(db, gateway, notifier, get_settings(), visibility)


def get_reconciliation_coordinator(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    notifier: AccessNotifier = Depends(get_notifier),
) -> PaymentReconciliationCoordinator:
    return PaymentReconciliationCoordinator(db, gateway, notifier)
