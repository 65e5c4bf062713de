"""Payment reconciliation coordinator.

Applies Stripe payment outcomes to access records, from two directions:

- push: verified webhook events (``handle_webhook``)
- pull: on-demand intent lookups (``reconcile_payment_intent``), used by the
  request-detail read path when a payment still shows pending

Events may arrive late, duplicated or out of order. ``paid`` and ``free`` are
sticky, and only the write that actually moves a record to ``paid`` notifies
the renter.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_platform.domain.enums import (
    AccessActor,
    AccessEventType,
    AccessStatus,
    PaymentStatus,
)
from premarket_platform.domain.errors import BadRequest
from premarket_platform.domain.models import GrantAccessRequest, ProcessedWebhookEvent
from premarket_platform.infra.payment_gateway import (
    IntentSnapshot,
    PaymentEvent,
    intent_snapshot_from_payload,
)
from premarket_platform.services.access_decision import GRANTED_STATES
from premarket_platform.services.access_events import record_access_event

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"

INTENT_EVENTS = {
    "payment_intent.succeeded": SUCCESS,
    "payment_intent.payment_failed": FAILURE,
    "payment_intent.canceled": FAILURE,
}

CHECKOUT_EVENTS = {
    "checkout.session.completed": SUCCESS,
    "checkout.session.async_payment_succeeded": SUCCESS,
    "checkout.session.async_payment_failed": FAILURE,
}

CHARGE_EVENTS = {
    "charge.succeeded": SUCCESS,
    "charge.failed": FAILURE,
}


def _intent_id_of(obj: dict) -> str | None:
    """``payment_intent`` on checkout sessions and charges is an id or an expanded object."""
    value = obj.get("payment_intent")
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class PaymentReconciliationCoordinator:
    """Webhook and pull-based payment reconciliation for one session."""

    def __init__(self, db: AsyncSession, gateway, notifier=None):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Push: webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> None:
        """Verify, dedupe and apply one Stripe webhook delivery."""
        if not raw_body:
            raise BadRequest("Missing webhook payload")
        if not signature:
            raise BadRequest("Missing Stripe-Signature header")

        event = self.gateway.verify_and_parse_webhook(raw_body, signature)

        already = await self.db.scalar(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.stripe_event_id == event.id
            )
        )
        if already is not None:
            logger.info("Webhook event %s (%s) already processed, skipping", event.id, event.type)
            return

        logger.info("Webhook event received: %s (%s)", event.id, event.type)
        granted = await self._dispatch(event)

        self.db.add(ProcessedWebhookEvent(stripe_event_id=event.id, event_type=event.type))
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first.
            await self.db.rollback()
            logger.info("Webhook event %s processed concurrently, skipping", event.id)
            return

        if granted is not None and self.notifier is not None:
            await self.notifier.renter_access_granted(granted)

    async def _dispatch(self, event: PaymentEvent) -> GrantAccessRequest | None:
        """Route an event to success or failure. Returns the record if it became paid."""
        if event.type in INTENT_EVENTS:
            outcome = INTENT_EVENTS[event.type]
            snapshot = intent_snapshot_from_payload(event.data)

        elif event.type in CHECKOUT_EVENTS:
            outcome = CHECKOUT_EVENTS[event.type]
            if outcome == SUCCESS and event.data.get("payment_status") != "paid":
                logger.info(
                    "Checkout session %s not paid yet (payment_status=%s), skipping",
                    event.data.get("id"), event.data.get("payment_status"),
                )
                return None
            snapshot = await self._snapshot_for(event)

        elif event.type in CHARGE_EVENTS:
            outcome = CHARGE_EVENTS[event.type]
            snapshot = await self._snapshot_for(event)

        elif event.type == "charge.refunded":
            logger.info(
                "Charge %s refunded (intent=%s); access is not revoked automatically",
                event.data.get("id"), _intent_id_of(event.data),
            )
            return None

        else:
            logger.info("Unhandled webhook event type: %s", event.type)
            return None

        if snapshot is None:
            return None

        if outcome == SUCCESS:
            return await self._apply_success(snapshot)
        await self._apply_failure(snapshot)
        return None

    async def _snapshot_for(self, event: PaymentEvent) -> IntentSnapshot | None:
        """Normalize a checkout/charge event to its payment intent."""
        intent_id = _intent_id_of(event.data)
        if not intent_id:
            logger.warning("Webhook %s (%s) carries no payment intent", event.id, event.type)
            return None

        snapshot = await self.gateway.retrieve_intent(intent_id)
        if not snapshot.metadata.get("grant_access_id") and event.data.get("metadata"):
            # Checkout sessions may carry the record id on the session itself.
            snapshot = IntentSnapshot(
                id=snapshot.id,
                status=snapshot.status,
                amount=snapshot.amount,
                metadata=dict(event.data["metadata"]),
                has_error=snapshot.has_error,
            )
        return snapshot

    # ------------------------------------------------------------------
    # Pull: on-demand reconciliation
    # ------------------------------------------------------------------

    async def reconcile_payment_intent(self, intent_id: str) -> None:
        """Fetch an intent from Stripe and apply its outcome if it is final."""
        snapshot = await self.gateway.retrieve_intent(intent_id)
        granted = None

        if snapshot.status == "succeeded":
            granted = await self._apply_success(snapshot)
        elif snapshot.status == "canceled" or (
            snapshot.status == "requires_payment_method" and snapshot.has_error
        ):
            await self._apply_failure(snapshot, only_if_pending=True)
        else:
            logger.debug("Intent %s still %s, nothing to reconcile", intent_id, snapshot.status)
            return

        await self.db.commit()
        if granted is not None and self.notifier is not None:
            await self.notifier.renter_access_granted(granted)

    # ------------------------------------------------------------------
    # Record resolution and writes
    # ------------------------------------------------------------------

    async def _resolve_record(self, snapshot: IntentSnapshot) -> GrantAccessRequest | None:
        """Find the record by intent id, falling back to the metadata record id."""
        result = await self.db.execute(
            select(GrantAccessRequest).where(
                GrantAccessRequest.stripe_payment_intent_id == snapshot.id
            )
        )
        record = result.scalars().first()
        if record is not None:
            return record

        access_id = snapshot.metadata.get("grant_access_id")
        if not access_id:
            logger.warning("No access record for intent %s and no grant_access_id metadata", snapshot.id)
            return None

        record = await self.db.get(GrantAccessRequest, access_id)
        if record is None:
            logger.warning("Access record %s from intent %s metadata not found", access_id, snapshot.id)
            return None

        if record.stripe_payment_intent_id and record.stripe_payment_intent_id != snapshot.id:
            logger.warning(
                "Intent %s belongs to record %s which now references intent %s",
                snapshot.id, record.id, record.stripe_payment_intent_id,
            )
        else:
            record.stripe_payment_intent_id = snapshot.id
        return record

    async def _apply_success(self, snapshot: IntentSnapshot) -> GrantAccessRequest | None:
        """Move the record approved -> paid. Returns it only if this call did so."""
        record = await self._resolve_record(snapshot)
        if record is None:
            return None

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(GrantAccessRequest)
            .where(
                GrantAccessRequest.id == record.id,
                GrantAccessRequest.status == AccessStatus.APPROVED.value,
            )
            .values(
                status=AccessStatus.PAID.value,
                payment_status=PaymentStatus.SUCCEEDED.value,
                payment_succeeded_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await self.db.refresh(record)
            if AccessStatus(record.status) in GRANTED_STATES:
                logger.info(
                    "Payment success for %s ignored: record %s already %s",
                    snapshot.id, record.id, record.status,
                )
            else:
                logger.warning(
                    "Payment success for %s on record %s in status %s, not applied",
                    snapshot.id, record.id, record.status,
                )
            return None

        await self.db.refresh(record)
        record_access_event(
            self.db, record, AccessEventType.PAYMENT_SUCCEEDED, AccessActor.PAYMENT_GATEWAY,
            from_status=AccessStatus.APPROVED, to_status=AccessStatus.PAID,
            data={"intent_id": snapshot.id},
        )
        logger.info("Payment succeeded: record %s now paid (intent=%s)", record.id, snapshot.id)
        return record

    async def _apply_failure(self, snapshot: IntentSnapshot, only_if_pending: bool = False) -> bool:
        """Count a failed attempt. Only approved records awaiting payment are touched."""
        record = await self._resolve_record(snapshot)
        if record is None:
            return False

        conditions = [
            GrantAccessRequest.id == record.id,
            GrantAccessRequest.status == AccessStatus.APPROVED.value,
        ]
        if only_if_pending:
            conditions.append(GrantAccessRequest.payment_status == PaymentStatus.PENDING.value)

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(GrantAccessRequest)
            .where(*conditions)
            .values(
                payment_failure_count=GrantAccessRequest.payment_failure_count + 1,
                payment_status=PaymentStatus.FAILED.value,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            logger.info(
                "Payment failure for %s ignored on record %s (status=%s)",
                snapshot.id, record.id, record.status,
            )
            return False

        await self.db.refresh(record)
        record.payment_failed_at = [*(record.payment_failed_at or []), now.isoformat()]
        record_access_event(
            self.db, record, AccessEventType.PAYMENT_FAILED, AccessActor.PAYMENT_GATEWAY,
            from_status=record.status, to_status=record.status,
            data={"intent_id": snapshot.id, "failure_count": record.payment_failure_count},
        )
        logger.warning(
            "Payment failed for record %s (intent=%s, failures=%s)",
            record.id, snapshot.id, record.payment_failure_count,
        )
        return True
