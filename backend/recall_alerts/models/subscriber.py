"""Subscriber model — the aggregate root owning entitlements and preferences."""

from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import String
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recall_alerts.config import settings
from recall_alerts.database import Base, TimestampMixin, UUIDPrimaryKeyMixin
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.models.entitlement import Entitlement, VehicleSlot
from recall_alerts.models.preference import Preference


class Role(str, Enum):
    GUEST = "guest"
    MEMBER = "member"
    WORKER = "worker"
    ADMIN = "admin"


ELEVATED_ROLES = frozenset({Role.WORKER, Role.ADMIN})


class Subscriber(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One account: contact channels, billing customer, entitlements, preferences.

    The read helpers below are safe anywhere. Writes go through
    ``SubscriberAggregate`` inside ``ExclusiveUpdateCoordinator``.
    """

    __tablename__ = "subscribers"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default=Role.MEMBER.value, nullable=False, index=True)

    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email_confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    phone_confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Billing provider customer identifier
    customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Exclusive-update lease
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    preference: Mapped[Preference | None] = relationship(
        back_populates="subscriber",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    entitlements: Mapped[list[Entitlement]] = relationship(
        back_populates="subscriber",
        order_by="Entitlement.position",
        collection_class=ordering_list("position"),
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # Roles

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST.value or self.email == settings.guest_email

    @property
    def is_member(self) -> bool:
        return self.role == Role.MEMBER.value and not self.is_guest

    @property
    def acts_as_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def acts_as_worker(self) -> bool:
        return self.acts_as_admin or self.role == Role.WORKER.value

    # Contact channels

    def email_confirmed(self, now: datetime | None = None) -> bool:
        return self.email_confirmed_at is not None and self.email_confirmed_at <= (now or utcnow())

    def phone_confirmed(self, now: datetime | None = None) -> bool:
        return (
            bool(self.phone)
            and self.phone_confirmed_at is not None
            and self.phone_confirmed_at <= (now or utcnow())
        )

    # Entitlements

    def active_entitlements(
        self, now: datetime | None = None, grace_period: timedelta | None = None
    ) -> list[Entitlement]:
        now = now or utcnow()
        return [e for e in self.entitlements if e.is_active(now, grace_period)]

    def recall_entitlement(
        self, now: datetime | None = None, grace_period: timedelta | None = None
    ) -> Entitlement | None:
        """First active entitlement granting recalls, or ``None``."""
        return next((e for e in self.active_entitlements(now, grace_period) if e.recall_feature), None)

    def has_vehicle_entitlement(
        self, now: datetime | None = None, grace_period: timedelta | None = None
    ) -> bool:
        return any(e.grants_vehicles for e in self.active_entitlements(now, grace_period))

    def receives_recalls(self, now: datetime | None = None, grace_period: timedelta | None = None) -> bool:
        """Elevated roles are always treated as entitled; others need a live recall entitlement."""
        if self.acts_as_worker:
            return True
        return self.recall_entitlement(now, grace_period) is not None

    def entitlement_by_billing_reference(self, billing_reference: str) -> Entitlement | None:
        return next((e for e in self.entitlements if e.billing_reference == billing_reference), None)

    def vehicle_slots(
        self,
        now: datetime | None = None,
        grace_period: timedelta | None = None,
        include_inactive: bool = False,
    ) -> list[VehicleSlot]:
        entitlements = self.entitlements if include_inactive else self.active_entitlements(now, grace_period)
        return [slot for e in entitlements if e.grants_vehicles for slot in e.vehicle_slots]

    def slot_by_id(self, slot_id) -> VehicleSlot | None:
        return next((s for s in self.vehicle_slots(include_inactive=True) if s.id == slot_id), None)

    def vehicle_keys(self, now: datetime | None = None, grace_period: timedelta | None = None) -> set[str]:
        return {slot.vehicle_key for slot in self.vehicle_slots(now, grace_period) if slot.vehicle_key}

    def unreviewed_slots(self, now: datetime | None = None, grace_period: timedelta | None = None) -> list[VehicleSlot]:
        return [slot for slot in self.vehicle_slots(now, grace_period) if slot.vin and not slot.reviewed]

    def __repr__(self) -> str:
        return f"<Subscriber id={self.id} email={self.email!r} role={self.role!r}>"
