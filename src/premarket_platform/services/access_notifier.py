"""Notification trigger points for the grant-access flow.

Each method looks up the people involved and hands off to email_service.
Failures are logged and swallowed: a notification must never fail the
transition that triggered it.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.models import GrantAccessRequest, PreMarketRequest, User
from premarket_platform.services import email_service

logger = logging.getLogger(__name__)


class AccessNotifier:
    """Sends the emails attached to access transitions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def admin_access_requested(self, record: GrantAccessRequest) -> None:
        try:
            agent = await self.db.get(User, record.agent_id)
            request = await self.db.get(PreMarketRequest, record.request_id)
            await email_service.send_admin_access_request_alert({
                "agent_name": agent.name if agent else None,
                "agent_email": agent.email if agent else None,
                "listing_title": self._title(request),
                "grant_access_id": record.id,
            })
        except Exception:
            logger.exception("Admin alert failed for grant access %s", record.id)

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    async def agent_access_approved(self, record: GrantAccessRequest) -> None:
        try:
            agent, request = await self._agent_and_request(record)
            if agent is None:
                return
            await email_service.send_agent_access_approved(agent.email, {
                "agent_name": agent.name,
                "listing_title": self._title(request),
                "request_id": record.request_id,
            })
        except Exception:
            logger.exception("Approval email failed for grant access %s", record.id)

    async def agent_access_rejected(self, record: GrantAccessRequest) -> None:
        try:
            agent, request = await self._agent_and_request(record)
            if agent is None:
                return
            await email_service.send_agent_access_rejected(agent.email, {
                "agent_name": agent.name,
                "listing_title": self._title(request),
                "notes": record.admin_notes,
            })
        except Exception:
            logger.exception("Rejection email failed for grant access %s", record.id)

    async def agent_payment_link(self, record: GrantAccessRequest) -> None:
        try:
            agent, request = await self._agent_and_request(record)
            if agent is None:
                return
            await email_service.send_agent_payment_link(agent.email, {
                "agent_name": agent.name,
                "listing_title": self._title(request),
                "amount": record.payment_amount,
                "grant_access_id": record.id,
            })
        except Exception:
            logger.exception("Payment link email failed for grant access %s", record.id)

    # ------------------------------------------------------------------
    # Renter
    # ------------------------------------------------------------------

    async def renter_access_granted(self, record: GrantAccessRequest) -> None:
        """Tell the renter an agent (paid or matched) can now see their details."""
        try:
            agent, request = await self._agent_and_request(record)
            if request is None or agent is None:
                return

            renter = await self.db.get(User, request.renter_id)
            if renter is None:
                logger.warning(
                    "Renter %s not found for access grant email (request=%s)",
                    request.renter_id, request.id,
                )
                return
            if renter.email_subscription_enabled is False:
                logger.info(
                    "Renter %s email subscription disabled, skipping email", renter.id,
                )
                return
            if not renter.email:
                logger.warning("Renter %s email missing, skipping access grant email", renter.id)
                return

            await email_service.send_renter_access_granted(renter.email, {
                "renter_name": renter.name,
                "agent_name": agent.name,
                "agent_email": agent.email,
                "listing_title": self._title(request),
                "request_id": request.id,
            })
        except Exception:
            logger.exception("Renter access email failed for grant access %s", record.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _agent_and_request(self, record: GrantAccessRequest):
        agent = await self.db.get(User, record.agent_id)
        request = await self.db.get(PreMarketRequest, record.request_id)
        if agent is None:
            logger.warning("Agent %s not found for grant access %s", record.agent_id, record.id)
        return agent, request

    @staticmethod
    def _title(request: PreMarketRequest | None) -> str:
        if request is None:
            return "Pre-Market Listing"
        return request.request_name or "Pre-Market Listing"
