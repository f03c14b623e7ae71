"""Entitlement model — one paid subscription, with its vehicle-interest slots."""

import uuid
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recall_alerts.config import settings
from recall_alerts.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from recall_alerts.entitlements import grace


class EntitlementStatus(str, Enum):
    """Billing-provider subscription states, stored with the provider's spelling."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


ACTIVE_STATUSES = frozenset(
    {EntitlementStatus.INCOMPLETE, EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE}
)
INACTIVE_STATUSES = frozenset(EntitlementStatus) - ACTIVE_STATUSES


class VehicleSlot(UUIDPrimaryKeyMixin, Base):
    """One vehicle-interest slot granted by a vehicle plan."""

    __tablename__ = "vehicle_slots"

    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("entitlements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    vin: Mapped[str | None] = mapped_column(String(17), nullable=True)
    vehicle_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # None means the VIN has never been set
    vin_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    entitlement: Mapped["Entitlement"] = relationship(back_populates="vehicle_slots")

    @property
    def is_empty(self) -> bool:
        return not self.vin and not self.vehicle_key

    def __repr__(self) -> str:
        return f"<VehicleSlot(id={self.id}, vehicle_key={self.vehicle_key!r}, reviewed={self.reviewed})>"


class Entitlement(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A subscriber's subscription to a recall and/or vehicle plan.

    Never hard-deleted: cancellation is a status change plus an expiration.
    Mutated only through ``SubscriberAggregate`` under an exclusive lease.
    """

    __tablename__ = "entitlements"

    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Plan & billing provider identifiers
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_reference: Mapped[str] = mapped_column(String(255), nullable=False, default="", index=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Lifecycle (naive UTC, minute granularity). expires_at is the real
    # expiration; compare it only through the Grace-Period Clock.
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    renews_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    # Features promoted from the plan catalog
    recall_feature: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vehicle_slot_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    vehicle_slots: Mapped[list[VehicleSlot]] = relationship(
        back_populates="entitlement",
        order_by="VehicleSlot.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    subscriber: Mapped["Subscriber"] = relationship(back_populates="entitlements")  # type: ignore[name-defined]  # noqa: F821

    def is_active(self, now: datetime | None = None, grace_period: timedelta | None = None) -> bool:
        return grace.is_active(
            self.expires_at,
            now or grace.utcnow(),
            grace_period if grace_period is not None else settings.grace_period,
        )

    @property
    def grants_vehicles(self) -> bool:
        return self.vehicle_slot_count > 0

    def __repr__(self) -> str:
        return (
            f"<Entitlement(id={self.id}, plan_id={self.plan_id}, status={self.status}, "
            f"expires_at={self.expires_at})>"
        )
