"""Billing Reconciler — merges provider events and snapshots into entitlements.

Every write runs through the Exclusive-Update Coordinator. Failures are
absorbed here: each call returns a ``ReconcileOutcome`` and logs why, so a
single bad or late event never blocks the delivery pipeline.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recall_alerts.billing.plans import PlanCatalog
from recall_alerts.billing.snapshots import BillingEvent, BillingEventKind, BillingSnapshot
from recall_alerts.entitlements.aggregate import SubscriberAggregate
from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.entitlements.errors import (
    ConflictError,
    LockContention,
    NotFound,
    UpstreamMismatch,
    ValidationError,
)
from recall_alerts.models.subscriber import Subscriber

logger = logging.getLogger(__name__)

SnapshotRetriever = Callable[[str], Awaitable[BillingSnapshot]]


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    CREATED = "created"
    IGNORED = "ignored"
    CONTENDED = "contended"
    FAILED = "failed"


_INVOICE_KINDS = (BillingEventKind.INVOICE_PAID, BillingEventKind.INVOICE_FAILED)


class BillingReconciler:
    """Applies billing events to subscriber aggregates, idempotently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        retrieve_snapshot: SnapshotRetriever,
        coordinator: ExclusiveUpdateCoordinator | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._retrieve_snapshot = retrieve_snapshot
        self._coordinator = coordinator or ExclusiveUpdateCoordinator(session_factory, catalog)

    async def handle_event(self, event: BillingEvent, deadline: float | None = None) -> ReconcileOutcome:
        """Reconcile one targeted event within ``deadline`` seconds.

        A deadline that passes is reported as ``failed``; the coordinator
        releases the lease on the way out.
        """
        try:
            return await asyncio.wait_for(self._handle_event(event), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Billing event %s %s - deadline exceeded", event.event_id, event.kind.value)
            return ReconcileOutcome.FAILED

    async def _handle_event(self, event: BillingEvent) -> ReconcileOutcome:
        label = (event.event_id, event.kind.value)

        subscriber_id = await self._subscriber_for_customer(event.customer_ref)
        if subscriber_id is None:
            logger.warning("Billing event %s %s - customer %s not found", *label, event.customer_ref)
            return ReconcileOutcome.IGNORED

        if event.kind in _INVOICE_KINDS:
            if self._catalog.plan_by_id(event.plan_ref) is None:
                logger.warning("Billing event %s %s - plan %s is not a recognized plan", *label, event.plan_ref)
                return ReconcileOutcome.IGNORED
            if not event.subscription_ref:
                logger.warning("Billing event %s %s - invoice has no subscription", *label)
                return ReconcileOutcome.IGNORED
            try:
                snapshot = await self._retrieve_snapshot(event.subscription_ref)
            except (stripe.StripeError, ValidationError) as e:
                logger.warning(
                    "Billing event %s %s - unable to retrieve subscription %s for subscriber %s: %s",
                    *label,
                    event.subscription_ref,
                    subscriber_id,
                    e,
                )
                return ReconcileOutcome.FAILED
            if snapshot.customer_ref != event.customer_ref:
                logger.warning(
                    "Billing event %s %s - subscription %s belongs to customer %s, not %s",
                    *label,
                    snapshot.subscription_ref,
                    snapshot.customer_ref,
                    event.customer_ref,
                )
                return ReconcileOutcome.IGNORED
        elif event.snapshot is None:
            logger.warning("Billing event %s %s - event did not contain a subscription", *label)
            return ReconcileOutcome.IGNORED
        else:
            snapshot = event.snapshot

        return await self._synchronize(subscriber_id, snapshot, label)

    async def reconcile_snapshot(self, snapshot: BillingSnapshot, deadline: float | None = None) -> ReconcileOutcome:
        """Reconcile a full subscription snapshot for its customer within ``deadline`` seconds."""
        label = (f"snapshot:{snapshot.subscription_ref}", snapshot.status.value)
        try:
            return await asyncio.wait_for(self._reconcile_snapshot(snapshot, label), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Billing event %s %s - deadline exceeded", *label)
            return ReconcileOutcome.FAILED

    async def _reconcile_snapshot(self, snapshot: BillingSnapshot, label: tuple[str, str]) -> ReconcileOutcome:
        subscriber_id = await self._subscriber_for_customer(snapshot.customer_ref)
        if subscriber_id is None:
            logger.warning("Billing event %s %s - customer %s not found", *label, snapshot.customer_ref)
            return ReconcileOutcome.IGNORED
        return await self._synchronize(subscriber_id, snapshot, label)

    async def resync_subscriber(
        self, subscriber_id: uuid.UUID, deadline: float | None = None
    ) -> dict[str, ReconcileOutcome]:
        """Re-fetch every referenced subscription and reconcile it, adopting the provider's plan.

        Returns the outcome per billing reference. ``deadline`` bounds each
        subscription separately; one that runs out is reported as ``failed``.

        Raises:
            NotFound: If the subscriber does not exist.
        """
        async with self._session_factory() as db:
            subscriber = await db.get(Subscriber, subscriber_id)
            if subscriber is None:
                raise NotFound("subscriber", subscriber_id)
            references = [e.billing_reference for e in subscriber.entitlements if e.billing_reference]

        outcomes: dict[str, ReconcileOutcome] = {}
        for reference in references:
            label = (f"resync:{subscriber_id}", reference)
            try:
                outcomes[reference] = await asyncio.wait_for(
                    self._resync_one(subscriber_id, reference, label), timeout=deadline
                )
            except asyncio.TimeoutError:
                logger.warning("Billing event %s %s - deadline exceeded", *label)
                outcomes[reference] = ReconcileOutcome.FAILED
        logger.info("Resynchronized %d subscriptions for subscriber %s", len(outcomes), subscriber_id)
        return outcomes

    async def _resync_one(
        self, subscriber_id: uuid.UUID, reference: str, label: tuple[str, str]
    ) -> ReconcileOutcome:
        try:
            snapshot = await self._retrieve_snapshot(reference)
        except (stripe.StripeError, ValidationError) as e:
            logger.warning("Billing event %s %s - unable to retrieve subscription: %s", *label, e)
            return ReconcileOutcome.FAILED
        return await self._synchronize(subscriber_id, snapshot, label, adopt_plan=True)

    async def _subscriber_for_customer(self, customer_ref: str | None) -> uuid.UUID | None:
        if not customer_ref:
            return None
        async with self._session_factory() as db:
            return await db.scalar(
                select(Subscriber.id).where(Subscriber.customer_ref == customer_ref).limit(1)
            )

    async def _synchronize(
        self,
        subscriber_id: uuid.UUID,
        snapshot: BillingSnapshot,
        label: tuple[str, str],
        adopt_plan: bool = False,
    ) -> ReconcileOutcome:
        def apply(aggregate: SubscriberAggregate) -> bool:
            _, created = aggregate.synchronize_entitlement(snapshot, adopt_plan=adopt_plan)
            return created

        try:
            created = await self._coordinator.with_exclusive_access(subscriber_id, apply)
        except LockContention:
            logger.warning("Billing event %s %s - subscriber %s is locked, dropping", *label, subscriber_id)
            return ReconcileOutcome.CONTENDED
        except NotFound as e:
            logger.warning("Billing event %s %s - %s", *label, e)
            return ReconcileOutcome.IGNORED
        except UpstreamMismatch as e:
            logger.warning("Billing event %s %s - %s; a full resync is required", *label, e)
            return ReconcileOutcome.IGNORED
        except (ValidationError, ConflictError) as e:
            logger.warning(
                "Billing event %s %s - failed to update subscription %s for subscriber %s: %s",
                *label,
                snapshot.subscription_ref,
                subscriber_id,
                e,
            )
            return ReconcileOutcome.FAILED

        logger.info(
            "Billing event %s %s - %s subscription %s with status %s for subscriber %s",
            *label,
            "created" if created else "updated",
            snapshot.subscription_ref,
            snapshot.status.value,
            subscriber_id,
        )
        return ReconcileOutcome.CREATED if created else ReconcileOutcome.APPLIED
