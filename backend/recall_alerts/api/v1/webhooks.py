"""Stripe webhook endpoint — receives Stripe events and reconciles entitlements."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status

from recall_alerts.billing.dependencies import get_reconciler
from recall_alerts.billing.reconciler import BillingReconciler, ReconcileOutcome
from recall_alerts.billing.stripe_client import construct_webhook_event
from recall_alerts.billing.webhooks import handle_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: BillingReconciler = Depends(get_reconciler),
) -> dict[str, str]:
    """Receive and reconcile Stripe webhook events.

    Every verified event is acknowledged so Stripe does not redeliver events
    that can never succeed; the body reports what reconciliation did.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # 2. Verify signature
    try:
        event = construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    # 3. Reconcile
    try:
        outcome = await handle_stripe_event(reconciler, event)
    except Exception:
        logger.exception("Error processing webhook event %s", event.id)
        outcome = ReconcileOutcome.FAILED

    return {"status": outcome.value}
