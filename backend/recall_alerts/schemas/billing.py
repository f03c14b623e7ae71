"""Pydantic v2 response schemas for billing endpoints."""

from pydantic import BaseModel


class PlanResponse(BaseModel):
    """Plan details for display."""

    id: str
    name: str
    amount: int  # in cents
    interval: str
    recall_feature: bool
    vehicle_slot_count: int


class PlansListResponse(BaseModel):
    """All recognized plans."""

    plans: list[PlanResponse]


class ResyncResponse(BaseModel):
    """Outcome of a full resync, per billing subscription."""

    outcomes: dict[str, str]
