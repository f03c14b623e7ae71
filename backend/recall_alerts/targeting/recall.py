"""Recall attributes consumed by targeting, and the notification handoff."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from recall_alerts.entitlements.vehicles import normalize_vehicle_key

# Recall attribute -> preference dimension
DIMENSIONS = ("audience", "categories", "distribution", "risk")


class Recall(BaseModel):
    """A published recall or vehicle campaign, as far as targeting cares."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    audience: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()
    distribution: frozenset[str] = frozenset()
    risk: frozenset[str] = frozenset()
    published_at: datetime | None = None
    vehicle_keys: frozenset[str] = frozenset()
    # Audience-restricted recalls only reach subscribers holding a recall entitlement
    requires_entitlement: bool = True

    @field_validator("vehicle_keys", mode="before")
    @classmethod
    def _normalize_keys(cls, value):
        if value is None:
            return frozenset()
        return frozenset(normalize_vehicle_key(key) for key in value)


class AlertChannel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class TargetingOptions(BaseModel):
    """Refinements applied on top of attribute matching."""

    model_config = ConfigDict(frozen=True)

    include_elevated: bool = False
    # Require the channel's alert flag and a confirmed contact for it
    channel: AlertChannel | None = None


class SummaryKind(str, Enum):
    RECALLS = "recalls"
    VEHICLES = "vehicles"


class NotificationReason(str, Enum):
    ALERT = "alert"
    SUMMARY = "summary"


class NotificationBatch(BaseModel):
    """Recipients handed to the dispatch collaborator, in a stable order."""

    model_config = ConfigDict(frozen=True)

    reason: NotificationReason
    subscriber_ids: list[uuid.UUID] = Field(default_factory=list)
    recall_id: str | None = None

    @field_validator("subscriber_ids")
    @classmethod
    def _sorted(cls, value: list[uuid.UUID]) -> list[uuid.UUID]:
        return sorted(set(value), key=str)

    def __len__(self) -> int:
        return len(self.subscriber_ids)
