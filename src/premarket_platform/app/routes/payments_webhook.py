"""Stripe webhook endpoint.

No session auth: deliveries are authenticated by the Stripe-Signature header,
which is checked against the exact raw request bytes.
"""

import logging

from fastapi import APIRouter, Depends, Request

from premarket_platform.app.dependencies import get_reconciliation_coordinator
from premarket_platform.services.payment_reconciliation import PaymentReconciliationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    coordinator: PaymentReconciliationCoordinator = Depends(get_reconciliation_coordinator),
):
    # Read the body before anything parses it
    raw_body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    await coordinator.handle_webhook(raw_body, signature)
    return {"ok": True}
