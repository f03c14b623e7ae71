"""Preference model — what a subscriber wants to hear about and how."""

import uuid

from sqlalchemy import JSON, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recall_alerts.database import Base, UUIDPrimaryKeyMixin


class Preference(UUIDPrimaryKeyMixin, Base):
    """Targeting tags and delivery-channel flags for one subscriber."""

    __tablename__ = "preferences"

    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Recall tags
    audience: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    distribution: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    risk: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Recall channels
    alert_by_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    alert_by_phone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    send_summaries: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Vehicle channels
    alert_for_vehicles: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    send_vehicle_summaries: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    subscriber: Mapped["Subscriber"] = relationship(back_populates="preference")  # type: ignore[name-defined]  # noqa: F821

    def tags(self, dimension: str) -> set[str]:
        return set(getattr(self, dimension) or ())

    def __repr__(self) -> str:
        return f"<Preference(subscriber_id={self.subscriber_id}, audience={self.audience})>"
