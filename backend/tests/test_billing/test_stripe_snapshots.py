"""Tests for translating Stripe objects into billing snapshots and events."""

import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from recall_alerts.billing.snapshots import (
    BillingEventKind,
    event_from_stripe,
    snapshot_from_stripe,
)
from recall_alerts.entitlements.errors import ValidationError
from recall_alerts.models.entitlement import EntitlementStatus


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects).

    Stripe API 2025-08-27 (basil) changed subscription.items to require
    bracket notation to avoid collision with Python dict .items().
    """

    def __getitem__(self, key: str):
        return getattr(self, key)


def _make_event(event_type: str, data_object: _StripeObj) -> _StripeObj:
    """Create a fake Stripe Event-like object."""
    return _StripeObj(
        type=event_type,
        id=f"evt_test_{uuid.uuid4().hex[:8]}",
        data=_StripeObj(object=data_object),
    )


def _make_stripe_sub(
    price_id: str = "plan_recalls_yearly",
    status: str = "active",
    start_date: int = 1700000000,
    period_end: int = 1731622400,
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
    **extra,
) -> _StripeObj:
    """Create a fake Stripe Subscription object."""
    # Stripe API 2025-08-27 (basil): current_period_start/end moved to item level
    return _StripeObj(
        id=sub_id,
        customer=customer,
        status=status,
        start_date=start_date,
        cancel_at_period_end=extra.pop("cancel_at_period_end", False),
        items=_StripeObj(
            data=[_StripeObj(
                price=_StripeObj(id=price_id),
                current_period_end=period_end,
            )]
        ),
        **extra,
    )


class TestSnapshotFromStripe:
    def test_reads_item_level_fields(self):
        snapshot = snapshot_from_stripe(_make_stripe_sub(cancel_at=1710000000))
        assert snapshot.customer_ref == "cus_test_123"
        assert snapshot.subscription_ref == "sub_test_123"
        assert snapshot.plan_ref == "plan_recalls_yearly"
        assert snapshot.status is EntitlementStatus.ACTIVE
        assert snapshot.start_date == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert snapshot.current_period_end == datetime.fromtimestamp(1731622400, tz=timezone.utc)
        assert snapshot.cancel_at == datetime.fromtimestamp(1710000000, tz=timezone.utc)
        assert snapshot.ended_at is None

    def test_expanded_customer(self):
        snapshot = snapshot_from_stripe(_make_stripe_sub(customer=_StripeObj(id="cus_expanded")))
        assert snapshot.customer_ref == "cus_expanded"

    def test_legacy_period_end_on_subscription(self):
        sub = _StripeObj(
            id="sub_legacy",
            customer="cus_1",
            status="past_due",
            start_date=1700000000,
            current_period_end=1702600000,
            plan=_StripeObj(id="plan_recalls_monthly"),
            items=_StripeObj(data=[]),
        )
        snapshot = snapshot_from_stripe(sub)
        assert snapshot.plan_ref == "plan_recalls_monthly"
        assert snapshot.status is EntitlementStatus.PAST_DUE
        assert snapshot.current_period_end is not None

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            snapshot_from_stripe(_make_stripe_sub(status="paused_forever"))
        assert exc_info.value.field == "subscription"

    def test_missing_plan_is_validation_error(self):
        sub = _make_stripe_sub()
        sub.items = _StripeObj(data=[])
        with pytest.raises(ValidationError):
            snapshot_from_stripe(sub)


class TestEventFromStripe:
    @pytest.mark.parametrize(
        ("event_type", "kind"),
        [
            ("customer.subscription.updated", BillingEventKind.SUBSCRIPTION_UPDATED),
            ("customer.subscription.created", BillingEventKind.SUBSCRIPTION_UPDATED),
            ("customer.subscription.deleted", BillingEventKind.SUBSCRIPTION_CANCELED),
        ],
    )
    def test_subscription_events_carry_snapshot(self, event_type, kind):
        event = _make_event(event_type, _make_stripe_sub())
        billing_event = event_from_stripe(event)
        assert billing_event.kind is kind
        assert billing_event.event_id == event.id
        assert billing_event.snapshot.subscription_ref == "sub_test_123"
        assert billing_event.customer_ref == "cus_test_123"

    @pytest.mark.parametrize(
        ("event_type", "kind"),
        [
            ("invoice.paid", BillingEventKind.INVOICE_PAID),
            ("invoice.payment_succeeded", BillingEventKind.INVOICE_PAID),
            ("invoice.payment_failed", BillingEventKind.INVOICE_FAILED),
        ],
    )
    def test_invoice_events_carry_references(self, event_type, kind):
        invoice = _StripeObj(
            customer="cus_test_123",
            subscription="sub_test_123",
            lines=_StripeObj(data=[_StripeObj(price=None, plan=_StripeObj(id="plan_recalls_yearly"))]),
        )
        billing_event = event_from_stripe(_make_event(event_type, invoice))
        assert billing_event.kind is kind
        assert billing_event.snapshot is None
        assert billing_event.subscription_ref == "sub_test_123"
        assert billing_event.plan_ref == "plan_recalls_yearly"

    def test_invoice_subscription_under_parent(self):
        invoice = _StripeObj(
            customer="cus_test_123",
            parent=_StripeObj(subscription_details=_StripeObj(subscription="sub_nested")),
            lines=_StripeObj(data=[_StripeObj(price=_StripeObj(id="plan_all_yearly"))]),
        )
        billing_event = event_from_stripe(_make_event("invoice.paid", invoice))
        assert billing_event.subscription_ref == "sub_nested"
        assert billing_event.plan_ref == "plan_all_yearly"

    def test_unhandled_type(self):
        assert event_from_stripe(_make_event("charge.refunded", _StripeObj())) is None
