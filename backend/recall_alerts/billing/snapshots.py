"""Billing snapshots and events — provider data already deserialized for reconciliation."""

from datetime import datetime
from enum import Enum
from typing import Any

import pydantic
import stripe
from pydantic import BaseModel, ConfigDict

from recall_alerts.entitlements.errors import ValidationError
from recall_alerts.models.entitlement import EntitlementStatus


class BillingSnapshot(BaseModel):
    """State of one provider subscription at a point in time.

    Instants may arrive as Unix timestamps or datetimes; they are normalized
    by the reconciler, not here.
    """

    model_config = ConfigDict(frozen=True)

    customer_ref: str
    subscription_ref: str
    plan_ref: str
    status: EntitlementStatus
    start_date: datetime | None = None
    current_period_end: datetime | None = None
    ended_at: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    cancel_at_period_end: bool = False


class BillingEventKind(str, Enum):
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_UPDATED = "subscription_updated"


class BillingEvent(BaseModel):
    """A targeted provider event.

    Subscription events carry their snapshot. Invoice events carry only
    references; the reconciler re-fetches the subscription.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    kind: BillingEventKind
    customer_ref: str | None = None
    subscription_ref: str | None = None
    plan_ref: str | None = None
    snapshot: BillingSnapshot | None = None


# Stripe event type -> event kind
STRIPE_EVENT_KINDS: dict[str, BillingEventKind] = {
    "invoice.paid": BillingEventKind.INVOICE_PAID,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAID,
    "invoice.payment_failed": BillingEventKind.INVOICE_FAILED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_CANCELED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_UPDATED,
}


def _get_first_item(stripe_sub: stripe.Subscription):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError):
        return None
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _get_plan_ref(stripe_sub: stripe.Subscription) -> str | None:
    """Plan reference: the first item's price, falling back to the legacy ``plan``."""
    item = _get_first_item(stripe_sub)
    if item is not None:
        price = getattr(item, "price", None)
        if price is not None and getattr(price, "id", None):
            return price.id
        plan = getattr(item, "plan", None)
        if plan is not None and getattr(plan, "id", None):
            return plan.id
    plan = getattr(stripe_sub, "plan", None)
    return getattr(plan, "id", None) if plan is not None else None


def _get_period_end(stripe_sub: stripe.Subscription) -> int | None:
    """Current period end from the subscription item, else the subscription.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item.
    """
    item = _get_first_item(stripe_sub)
    period_end = getattr(item, "current_period_end", None) if item is not None else None
    if period_end is None:
        period_end = getattr(stripe_sub, "current_period_end", None)
    return period_end


def _customer_ref(value: Any) -> str | None:
    """Customer may be an id or an expanded customer object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def snapshot_from_stripe(stripe_sub: stripe.Subscription) -> BillingSnapshot:
    """Build a snapshot from a Stripe subscription object.

    Raises:
        ValidationError: If required fields are missing or the status is unknown.
    """
    start_date = getattr(stripe_sub, "start_date", None)
    if start_date is None:
        start_date = getattr(stripe_sub, "start", None)
    try:
        return BillingSnapshot(
            customer_ref=_customer_ref(getattr(stripe_sub, "customer", None)),
            subscription_ref=getattr(stripe_sub, "id", None),
            plan_ref=_get_plan_ref(stripe_sub),
            status=getattr(stripe_sub, "status", None),
            start_date=start_date,
            current_period_end=_get_period_end(stripe_sub),
            ended_at=getattr(stripe_sub, "ended_at", None),
            cancel_at=getattr(stripe_sub, "cancel_at", None),
            canceled_at=getattr(stripe_sub, "canceled_at", None),
            cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
        )
    except pydantic.ValidationError as e:
        raise ValidationError("subscription", f"malformed billing subscription: {e.errors()[0]['msg']}") from e


def _invoice_plan_ref(invoice: Any) -> str | None:
    """Plan of the invoice's first line, if any."""
    lines = getattr(invoice, "lines", None)
    data = getattr(lines, "data", None) if lines is not None else None
    if not data:
        return None
    line = data[0]
    price = getattr(line, "price", None)
    if price is not None and getattr(price, "id", None):
        return price.id
    plan = getattr(line, "plan", None)
    return getattr(plan, "id", None) if plan is not None else None


def _invoice_subscription_ref(invoice: Any) -> str | None:
    subscription = getattr(invoice, "subscription", None)
    if subscription is None:
        # API 2025-03-31 moved the reference under parent.subscription_details
        parent = getattr(invoice, "parent", None)
        details = getattr(parent, "subscription_details", None) if parent is not None else None
        subscription = getattr(details, "subscription", None) if details is not None else None
    if subscription is None or isinstance(subscription, str):
        return subscription
    return getattr(subscription, "id", None)


def event_from_stripe(event: stripe.Event) -> BillingEvent | None:
    """Translate a Stripe event into a billing event, or ``None`` if unhandled."""
    kind = STRIPE_EVENT_KINDS.get(event.type)
    if kind is None:
        return None
    obj = event.data.object

    if kind in (BillingEventKind.INVOICE_PAID, BillingEventKind.INVOICE_FAILED):
        return BillingEvent(
            event_id=event.id,
            kind=kind,
            customer_ref=_customer_ref(getattr(obj, "customer", None)),
            subscription_ref=_invoice_subscription_ref(obj),
            plan_ref=_invoice_plan_ref(obj),
        )

    snapshot = snapshot_from_stripe(obj)
    return BillingEvent(
        event_id=event.id,
        kind=kind,
        customer_ref=snapshot.customer_ref,
        subscription_ref=snapshot.subscription_ref,
        plan_ref=snapshot.plan_ref,
        snapshot=snapshot,
    )
