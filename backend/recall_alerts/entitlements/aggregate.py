"""Subscriber aggregate — the only write API for entitlements, slots and preferences.

An aggregate wraps a freshly loaded ``Subscriber`` while the caller holds its
exclusive lease. ``ExclusiveUpdateCoordinator`` creates it, runs the caller's
function against it, then calls ``finalize`` and closes it; a closed
aggregate refuses further writes.
"""

import logging
import uuid
from calendar import monthrange
from datetime import datetime, time, timedelta
from typing import Protocol

from recall_alerts.billing.plans import PlanCatalog, PlanDefinition
from recall_alerts.billing.snapshots import BillingSnapshot
from recall_alerts.config import settings
from recall_alerts.entitlements.errors import (
    ConflictError,
    EntitlementError,
    NotFound,
    UpstreamMismatch,
    ValidationError,
)
from recall_alerts.entitlements.timestamps import far_future, normalize_time
from recall_alerts.entitlements.vehicles import (
    is_valid_vehicle_key,
    is_valid_vin,
    normalize_vehicle_key,
)
from recall_alerts.models.entitlement import (
    INACTIVE_STATUSES,
    Entitlement,
    EntitlementStatus,
    VehicleSlot,
)
from recall_alerts.models.preference import Preference
from recall_alerts.models.subscriber import Subscriber
from recall_alerts.targeting.vocabulary import PREFERENCE_DEFAULTS, PREFERENCE_VOCABULARY

logger = logging.getLogger(__name__)

_CHANNEL_FLAGS = (
    "alert_by_email",
    "alert_by_phone",
    "send_summaries",
    "alert_for_vehicles",
    "send_vehicle_summaries",
)


class VehicleInterest(Protocol):
    """Cross-aggregate read: does any other subscriber already follow this key?"""

    async def has_interest_in_vehicle_key(
        self, vehicle_key: str, exclude_subscriber_id: uuid.UUID | None = None
    ) -> bool: ...


class AggregateClosed(EntitlementError):
    """A write was attempted after the lease that produced the aggregate ended."""


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SubscriberAggregate:
    """Mutations of one subscriber that keep its cross-child invariants."""

    def __init__(
        self,
        subscriber: Subscriber,
        catalog: PlanCatalog,
        now: datetime,
        grace_period: timedelta | None = None,
    ) -> None:
        self._subscriber = subscriber
        self._catalog = catalog
        self._now = now
        self._grace_period = grace_period if grace_period is not None else settings.grace_period
        self._open = True

    @property
    def subscriber(self) -> Subscriber:
        """The underlying record, for reads."""
        return self._subscriber

    @property
    def id(self) -> uuid.UUID:
        return self._subscriber.id

    @property
    def now(self) -> datetime:
        return self._now

    def close(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise AggregateClosed("Subscriber aggregate is closed; acquire a new lease to write")

    def _resolve_plan(self, plan_id: str | None) -> PlanDefinition:
        plan = self._catalog.plan_by_id(plan_id)
        if plan is None:
            raise ValidationError("plan_id", f"plan {plan_id!r} is not a recognized plan")
        return plan

    # Entitlements

    def add_entitlement(self, plan_id: str, billing_reference: str = "") -> Entitlement:
        """Append a new, empty entitlement for ``plan_id``.

        Raises:
            ValidationError: If the plan is unknown.
            ConflictError: If the plan grants recalls and one is already active.
        """
        self._ensure_open()
        plan = self._resolve_plan(plan_id)
        if plan.recall_feature and self._subscriber.recall_entitlement(self._now, self._grace_period):
            raise ConflictError("plan_id", "subscriber already has an active recall subscription")

        entitlement = Entitlement(
            id=uuid.uuid4(),
            plan_id=plan.id,
            billing_reference=billing_reference,
            recall_feature=False,
            vehicle_slot_count=0,
            vehicle_slots=[],
        )
        self._subscriber.entitlements.append(entitlement)
        self._promote_plan(entitlement, plan)
        logger.info("Added entitlement %s (plan %s) to subscriber %s", entitlement.id, plan.id, self.id)
        return entitlement

    def apply_plan(self, entitlement: Entitlement, plan_id: str) -> None:
        """Switch ``entitlement`` to ``plan_id``; a no-op when the plan is unchanged."""
        self._ensure_open()
        if entitlement.plan_id == plan_id:
            return
        plan = self._resolve_plan(plan_id)
        entitlement.plan_id = plan.id
        self._promote_plan(entitlement, plan)

    def _promote_plan(self, entitlement: Entitlement, plan: PlanDefinition) -> None:
        if plan.vehicle_slot_count < 0:
            raise ValidationError("vehicle_slot_count", "must be greater than or equal to 0")
        entitlement.recall_feature = plan.recall_feature
        entitlement.vehicle_slot_count = plan.vehicle_slot_count
        self._resize_slots(entitlement)

    @staticmethod
    def _resize_slots(entitlement: Entitlement) -> None:
        """Pad with empty slots or truncate from the tail to ``vehicle_slot_count``."""
        count = entitlement.vehicle_slot_count
        slots = entitlement.vehicle_slots
        while len(slots) < count:
            slots.append(VehicleSlot(id=uuid.uuid4(), reviewed=False))
        if len(slots) > count:
            del slots[count:]

    # Vehicle slots

    async def set_vehicle_slot_value(
        self,
        slot_id: uuid.UUID,
        vehicle_key: str | None,
        vin: str | None = None,
        interest: VehicleInterest | None = None,
    ) -> VehicleSlot:
        """Set (or clear, with ``None``) the vehicle a slot follows.

        The slot is marked reviewed when another subscriber already follows
        the same key, so only the first follower drives recall lookups.

        Raises:
            NotFound: If the slot does not belong to this subscriber.
            ValidationError: If the key or VIN is malformed.
            ConflictError: If the slot changed too recently.
        """
        self._ensure_open()
        slot = self._subscriber.slot_by_id(slot_id)
        if slot is None:
            raise NotFound("vehicle slot", slot_id)

        if vin:
            vin = vin.strip().upper()
            if not is_valid_vin(vin):
                raise ValidationError("vin", "is not a valid VIN")
            if not vehicle_key:
                raise ValidationError("vehicle_key", "is required when the VIN is present")
        if vehicle_key:
            if not is_valid_vehicle_key(vehicle_key):
                raise ValidationError("vehicle_key", "must be formatted as make|model|year")
            vehicle_key = normalize_vehicle_key(vehicle_key)
        vin = vin or None
        vehicle_key = vehicle_key or None

        if (slot.vin, slot.vehicle_key) == (vin, vehicle_key):
            return slot

        if slot.vin_updated_at is not None:
            allowed_on = _add_months(slot.vin_updated_at, settings.vehicle_slot_update_months)
            if allowed_on > datetime.combine(self._now.date(), time.max):
                raise ConflictError(
                    "vin",
                    f"VINs may be updated only once every {settings.vehicle_slot_update_months} months",
                )

        slot.vin = vin
        slot.vehicle_key = vehicle_key
        if vehicle_key is None:
            slot.reviewed = False
            slot.vin_updated_at = None
        else:
            slot.vin_updated_at = normalize_time(self._now, at_start=True)
            slot.reviewed = bool(
                interest is not None
                and await interest.has_interest_in_vehicle_key(vehicle_key, exclude_subscriber_id=self.id)
            )
        return slot

    def mark_slot_reviewed(self, slot_id: uuid.UUID, reviewed: bool = True) -> VehicleSlot:
        self._ensure_open()
        slot = self._subscriber.slot_by_id(slot_id)
        if slot is None:
            raise NotFound("vehicle slot", slot_id)
        slot.reviewed = reviewed
        return slot

    # Billing

    def synchronize_entitlement(
        self, snapshot: BillingSnapshot, adopt_plan: bool = False
    ) -> tuple[Entitlement, bool]:
        """Merge a provider snapshot into the matching entitlement, creating it if live.

        Returns the entitlement and whether it was created. With
        ``adopt_plan`` (full resync only) a plan disagreement is resolved in
        the provider's favour instead of raising.

        Raises:
            NotFound: No entitlement matches and the subscription never became active.
            UpstreamMismatch: The matching entitlement represents a different plan.
        """
        self._ensure_open()
        entitlement = self._subscriber.entitlement_by_billing_reference(snapshot.subscription_ref)
        if entitlement is None:
            # An entitlement added at checkout has no reference until its first event
            entitlement = next(
                (
                    e
                    for e in self._subscriber.entitlements
                    if not e.billing_reference and e.plan_id == snapshot.plan_ref
                ),
                None,
            )

        if entitlement is None and snapshot.status in INACTIVE_STATUSES:
            raise NotFound("billing subscription", snapshot.subscription_ref)

        if entitlement is not None and entitlement.plan_id != snapshot.plan_ref:
            if not adopt_plan:
                raise UpstreamMismatch(
                    f"Billing subscription {snapshot.subscription_ref} expects plan {snapshot.plan_ref}, "
                    f"subscriber {self.id} has plan {entitlement.plan_id}"
                )
            self.apply_plan(entitlement, snapshot.plan_ref)

        created = entitlement is None
        if created:
            entitlement = self.add_entitlement(snapshot.plan_ref, billing_reference=snapshot.subscription_ref)
        self._copy_lifecycle(entitlement, snapshot)
        return entitlement, created

    def _copy_lifecycle(self, entitlement: Entitlement, snapshot: BillingSnapshot) -> None:
        if snapshot.start_date is None:
            raise ValidationError("started_at", "can't be blank")
        if snapshot.current_period_end is None:
            raise ValidationError("renews_at", "can't be blank")

        started_at = normalize_time(snapshot.start_date, at_start=True)
        renews_at = normalize_time(snapshot.current_period_end)
        if started_at > renews_at:
            raise ValidationError("started_at", "must be on or before renews_at")

        # Order matters: the provider fills different fields depending on how
        # the subscription changed, and later rules only apply when earlier
        # fields are absent.
        if snapshot.ended_at is not None:
            expires_at = normalize_time(snapshot.ended_at)
        elif snapshot.cancel_at is not None:
            expires_at = normalize_time(snapshot.cancel_at)
        elif snapshot.canceled_at is not None:
            expires_at = normalize_time(snapshot.canceled_at)
        elif snapshot.status in INACTIVE_STATUSES:
            if entitlement.status == snapshot.status.value and entitlement.expires_at is not None:
                expires_at = entitlement.expires_at
            else:
                expires_at = normalize_time(self._now)
        elif snapshot.cancel_at_period_end:
            expires_at = renews_at
        else:
            expires_at = far_future(self._grace_period)

        entitlement.billing_reference = snapshot.subscription_ref
        entitlement.started_at = started_at
        entitlement.renews_at = renews_at
        entitlement.expires_at = expires_at
        entitlement.status = EntitlementStatus(snapshot.status).value

    # Preferences

    def _preference(self) -> Preference:
        preference = self._subscriber.preference
        if preference is None:
            preference = Preference(
                id=uuid.uuid4(),
                audience=[],
                categories=[],
                distribution=[],
                risk=[],
                **{flag: True for flag in _CHANNEL_FLAGS},
            )
            self._subscriber.preference = preference
        return preference

    def update_preferences(self, **changes) -> Preference:
        """Update tag lists and channel flags.

        Raises:
            ValidationError: For unknown fields or tags outside the vocabulary.
        """
        self._ensure_open()
        preference = self._preference()
        for field, value in changes.items():
            if field in PREFERENCE_VOCABULARY:
                values = sorted(set(value or ()))
                unknown = [v for v in values if v not in PREFERENCE_VOCABULARY[field]]
                if unknown:
                    raise ValidationError(field, f"contains unsupported values: {', '.join(unknown)}")
                setattr(preference, field, values)
            elif field in _CHANNEL_FLAGS:
                setattr(preference, field, bool(value))
            else:
                raise ValidationError(field, "is not a preference")
        return preference

    def ensure_preferences(self) -> Preference:
        """Fill blank tag dimensions with defaults once the member holds recalls."""
        preference = self._preference()
        subscriber = self._subscriber
        if not subscriber.is_member:
            return preference
        if subscriber.recall_entitlement(self._now, self._grace_period) is None:
            return preference
        for dimension, defaults in PREFERENCE_DEFAULTS.items():
            if not getattr(preference, dimension):
                setattr(preference, dimension, list(defaults))
        return preference

    # Invariants

    def finalize(self) -> None:
        """Normalize children and check invariants before the write is persisted.

        Raises:
            ValidationError: A child record is malformed.
            ConflictError: More than one recall entitlement is active.
        """
        self._ensure_open()
        subscriber = self._subscriber
        for entitlement in subscriber.entitlements:
            if entitlement.vehicle_slot_count < 0:
                raise ValidationError("vehicle_slot_count", "must be greater than or equal to 0")
            self._resize_slots(entitlement)
            if entitlement.status is not None and entitlement.status not in {s.value for s in EntitlementStatus}:
                raise ValidationError("status", f"{entitlement.status!r} is not a subscription status")
            if (
                entitlement.started_at is not None
                and entitlement.renews_at is not None
                and entitlement.started_at > entitlement.renews_at
            ):
                raise ValidationError("started_at", "must be on or before renews_at")

        if subscriber.entitlements and not subscriber.customer_ref:
            raise ValidationError("customer_ref", "is required once the subscriber holds entitlements")

        active_recalls = [
            e for e in subscriber.active_entitlements(self._now, self._grace_period) if e.recall_feature
        ]
        if len(active_recalls) > 1:
            raise ConflictError("entitlements", "at most one recall subscription may be active")

        self.ensure_preferences()
