"""Async Stripe API wrapper for the recall-alert service."""

import logging

import stripe
from stripe import StripeClient

from recall_alerts.billing.snapshots import BillingSnapshot, snapshot_from_stripe
from recall_alerts.config import settings

logger = logging.getLogger(__name__)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(subscription_id)


async def list_plans() -> list[stripe.Plan]:
    """List active Stripe plans (features are carried in plan metadata)."""
    client = get_stripe_client()
    plans = await client.v1.plans.list_async(params={"active": True, "limit": 100})
    return list(plans.data or [])


async def delete_customer(customer_id: str) -> None:
    """Delete a Stripe customer (cancels its subscriptions provider-side)."""
    client = get_stripe_client()
    logger.info("Deleting Stripe customer %s", customer_id)
    await client.v1.customers.delete_async(customer_id)


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)


async def retrieve_snapshot(subscription_id: str) -> BillingSnapshot:
    """Retrieve a Stripe subscription and convert it to a billing snapshot."""
    return snapshot_from_stripe(await get_subscription(subscription_id))
