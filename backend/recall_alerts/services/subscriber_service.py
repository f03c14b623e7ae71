"""Subscriber service — account lifecycle and coordinated subscriber updates."""

import logging
import uuid

import stripe
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from recall_alerts.billing.stripe_client import delete_customer
from recall_alerts.entitlements.aggregate import SubscriberAggregate, VehicleInterest
from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.entitlements.errors import ConflictError, NotFound, ValidationError
from recall_alerts.models.entitlement import Entitlement, VehicleSlot
from recall_alerts.models.preference import Preference
from recall_alerts.models.subscriber import Role, Subscriber

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def get_by_email(db: AsyncSession, email: str) -> Subscriber | None:
    """Look up a subscriber by email, case-insensitively."""
    result = await db.execute(
        select(Subscriber).where(func.lower(Subscriber.email) == normalize_email(email))
    )
    return result.scalar_one_or_none()


async def create_subscriber(
    db: AsyncSession,
    email: str,
    role: str | None = None,
    customer_ref: str | None = None,
) -> Subscriber:
    """Create a subscriber; unknown roles become ``member``.

    Raises:
        ValidationError: If the email is blank.
        ConflictError: If the email is already registered.
    """
    email = normalize_email(email)
    if not email or "@" not in email:
        raise ValidationError("email", "is not a valid email address")
    if await get_by_email(db, email) is not None:
        raise ConflictError("email", "has already been taken")

    if role not in {r.value for r in Role}:
        role = Role.MEMBER.value

    subscriber = Subscriber(
        id=uuid.uuid4(),
        email=email,
        role=role,
        customer_ref=customer_ref,
        preference=Preference(
            id=uuid.uuid4(),
            audience=[],
            categories=[],
            distribution=[],
            risk=[],
        ),
        entitlements=[],
    )
    db.add(subscriber)
    await db.flush()
    logger.info("Created subscriber %s (%s)", subscriber.id, role)
    return subscriber


async def delete_subscriber(db: AsyncSession, subscriber_id: uuid.UUID) -> None:
    """Delete a subscriber with its entitlements, then the billing customer.

    The billing customer is removed on a best-effort basis; a provider
    failure is logged and does not undo the deletion.

    Raises:
        NotFound: If the subscriber does not exist.
    """
    subscriber = await db.get(Subscriber, subscriber_id)
    if subscriber is None:
        raise NotFound("subscriber", subscriber_id)

    customer_ref = subscriber.customer_ref
    await db.delete(subscriber)
    await db.flush()
    logger.info("Deleted subscriber %s", subscriber_id)

    if customer_ref:
        try:
            await delete_customer(customer_ref)
        except stripe.StripeError as e:
            logger.warning("Failed to delete billing customer %s for subscriber %s: %s", customer_ref, subscriber_id, e)


# Coordinated updates


async def subscribe_to_plan(
    coordinator: ExclusiveUpdateCoordinator,
    subscriber_id: uuid.UUID,
    plan_id: str,
) -> Entitlement:
    """Add an entitlement awaiting its first billing event."""
    return await coordinator.with_exclusive_access(
        subscriber_id, lambda aggregate: aggregate.add_entitlement(plan_id)
    )


async def update_vehicle_slot(
    coordinator: ExclusiveUpdateCoordinator,
    interest: VehicleInterest,
    subscriber_id: uuid.UUID,
    slot_id: uuid.UUID,
    vehicle_key: str | None,
    vin: str | None = None,
) -> VehicleSlot:
    """Set or clear the vehicle a slot follows."""

    async def apply(aggregate: SubscriberAggregate) -> VehicleSlot:
        return await aggregate.set_vehicle_slot_value(slot_id, vehicle_key, vin=vin, interest=interest)

    slot = await coordinator.with_exclusive_access(subscriber_id, apply)
    logger.info("Updated vehicle slot %s for subscriber %s", slot_id, subscriber_id)
    return slot


async def mark_slot_reviewed(
    coordinator: ExclusiveUpdateCoordinator,
    subscriber_id: uuid.UUID,
    slot_id: uuid.UUID,
) -> VehicleSlot:
    return await coordinator.with_exclusive_access(
        subscriber_id, lambda aggregate: aggregate.mark_slot_reviewed(slot_id)
    )


async def update_preferences(
    coordinator: ExclusiveUpdateCoordinator,
    subscriber_id: uuid.UUID,
    **changes,
) -> Preference:
    return await coordinator.with_exclusive_access(
        subscriber_id, lambda aggregate: aggregate.update_preferences(**changes)
    )
