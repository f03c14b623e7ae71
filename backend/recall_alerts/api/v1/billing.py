"""Billing API endpoints — the plan catalog."""

from fastapi import APIRouter, Depends

from recall_alerts.api.deps import get_plan_catalog
from recall_alerts.billing.plans import PlanCatalog
from recall_alerts.schemas.billing import PlanResponse, PlansListResponse

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)) -> PlansListResponse:
    """List recognized plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                id=p.id,
                name=p.name,
                amount=p.amount,
                interval=p.interval,
                recall_feature=p.recall_feature,
                vehicle_slot_count=p.vehicle_slot_count,
            )
            for p in catalog.all()
        ]
    )
