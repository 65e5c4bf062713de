"""Stripe gateway adapter.

Wraps payment intent creation, retrieval and webhook verification and turns
Stripe objects into plain dataclasses. The Stripe SDK is synchronous, so
network calls run in a worker thread. No access-record state is touched here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import stripe

from premarket_platform.app.config import get_settings
from premarket_platform.domain.errors import InvalidSignature, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentRef:
    """Handle returned to the agent's client to confirm a payment."""

    id: str
    client_secret: str | None
    amount: Decimal
    currency: str
    status: str


@dataclass(frozen=True)
class IntentSnapshot:
    """Authoritative state of a payment intent as Stripe reports it."""

    id: str
    status: str
    amount: Decimal | None = None
    metadata: dict = field(default_factory=dict)
    has_error: bool = False


@dataclass(frozen=True)
class PaymentEvent:
    """A verified webhook event with its ``data.object`` as a plain dict."""

    id: str
    type: str
    data: dict = field(default_factory=dict)


def to_minor_units(amount) -> int:
    """Dollars to cents, rounding half up."""
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def _plain(value):
    """Recursively copy StripeObject trees into builtins."""
    if not isinstance(value, dict) and hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _snapshot(intent) -> IntentSnapshot:
    return IntentSnapshot(
        id=intent["id"],
        status=intent.get("status", ""),
        amount=from_minor_units(intent.get("amount")),
        metadata=dict(intent.get("metadata") or {}),
        has_error=bool(intent.get("last_payment_error")),
    )


class StripeGateway:
    """Thin async facade over the Stripe SDK."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        currency: str | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self.currency = (currency or settings.payment_currency).lower()

    async def create_intent(
        self,
        amount,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> IntentRef:
        """Create a PaymentIntent for ``amount`` dollars."""
        params = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "metadata": metadata,
            "description": f"Pre-Market Access - {metadata.get('request_id', '')}",
            "automatic_payment_methods": {"enabled": True},
            "api_key": self.api_key,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            intent = _plain(await asyncio.to_thread(stripe.PaymentIntent.create, **params))
        except stripe.StripeError as e:
            logger.error("Stripe intent creation failed: %s", e)
            raise UpstreamUnavailable("Payment provider is unavailable, please retry") from e

        logger.info(
            "Payment intent created: %s (grant_access=%s)",
            intent["id"], metadata.get("grant_access_id"),
        )
        return IntentRef(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=from_minor_units(intent.get("amount")),
            currency=intent.get("currency", self.currency),
            status=intent.get("status", ""),
        )

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        """Fetch the current state of a PaymentIntent."""
        try:
            intent = _plain(await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, intent_id, api_key=self.api_key
            ))
        except stripe.StripeError as e:
            logger.error("Stripe intent retrieval failed for %s: %s", intent_id, e)
            raise UpstreamUnavailable("Payment provider is unavailable, please retry") from e
        return _snapshot(intent)

    def verify_and_parse_webhook(self, raw_body: bytes, signature: str) -> PaymentEvent:
        """Verify the Stripe-Signature header against the exact raw bytes."""
        try:
            event = _plain(stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret))
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature invalid: %s", e)
            raise InvalidSignature("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("Webhook payload could not be parsed: %s", e)
            raise InvalidSignature("Invalid webhook payload") from e

        data = event.get("data") or {}
        return PaymentEvent(
            id=event["id"],
            type=event["type"],
            data=data.get("object") or {},
        )


def intent_snapshot_from_payload(payload: dict) -> IntentSnapshot:
    """Build a snapshot from a ``payment_intent.*`` webhook object."""
    return _snapshot(payload)
