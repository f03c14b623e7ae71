"""Pydantic v2 request/response schemas for subscriber endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class VehicleSlotUpdate(BaseModel):
    """Set a slot's vehicle; both fields ``None`` clears the slot."""

    vehicle_key: str | None = Field(None, max_length=255)
    vin: str | None = Field(None, max_length=17)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class VehicleSlotResponse(BaseModel):
    id: uuid.UUID
    vin: str | None = None
    vehicle_key: str | None = None
    reviewed: bool
    vin_updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class EntitlementResponse(BaseModel):
    """One entitlement as seen by its owner."""

    id: uuid.UUID
    plan_id: str
    status: str | None = None
    started_at: datetime | None = None
    renews_at: datetime | None = None
    expires_at: datetime | None = None
    recall_feature: bool
    vehicle_slot_count: int
    vehicle_slots: list[VehicleSlotResponse]

    model_config = ConfigDict(from_attributes=True)


class EntitlementListResponse(BaseModel):
    items: list[EntitlementResponse]
    total: int


class ErrorDetail(BaseModel):
    """Field-attributed error returned for validation and conflict failures."""

    field: str
    message: str


class ErrorResponse(BaseModel):
    errors: list[ErrorDetail]
