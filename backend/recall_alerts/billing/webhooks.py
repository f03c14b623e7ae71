"""Stripe webhook event handling — translate provider events and hand them to the reconciler."""

import logging

import stripe

from recall_alerts.billing.reconciler import BillingReconciler, ReconcileOutcome
from recall_alerts.billing.snapshots import event_from_stripe
from recall_alerts.entitlements.errors import ValidationError

logger = logging.getLogger(__name__)

# Seconds a single event may spend reconciling before it is dropped
EVENT_DEADLINE_SECONDS = 20.0


async def handle_stripe_event(
    reconciler: BillingReconciler,
    event: stripe.Event,
    deadline: float | None = EVENT_DEADLINE_SECONDS,
) -> ReconcileOutcome:
    """Reconcile a verified Stripe event; unhandled types are ignored."""
    try:
        billing_event = event_from_stripe(event)
    except ValidationError as e:
        logger.warning("Billing event %s %s - %s", event.id, event.type, e)
        return ReconcileOutcome.FAILED

    if billing_event is None:
        logger.debug("Unhandled webhook event type: %s", event.type)
        return ReconcileOutcome.IGNORED

    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)
    return await reconciler.handle_event(billing_event, deadline=deadline)
