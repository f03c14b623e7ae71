"""Subscriber endpoints — entitlements, vehicle slots and billing resync."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from recall_alerts.api.deps import (
    get_coordinator,
    get_current_subscriber,
    get_reconciler,
    get_targeting_engine,
    require_worker,
)
from recall_alerts.billing.reconciler import BillingReconciler
from recall_alerts.billing.webhooks import EVENT_DEADLINE_SECONDS
from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.models.subscriber import Subscriber
from recall_alerts.schemas.billing import ResyncResponse
from recall_alerts.schemas.subscribers import (
    EntitlementListResponse,
    EntitlementResponse,
    ErrorResponse,
    VehicleSlotResponse,
    VehicleSlotUpdate,
)
from recall_alerts.services import subscriber_service
from recall_alerts.targeting.engine import TargetingEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscribers", tags=["subscribers"])


@router.get("/me/entitlements", response_model=EntitlementListResponse)
async def list_my_entitlements(
    subscriber: Subscriber = Depends(get_current_subscriber),
) -> EntitlementListResponse:
    """Active entitlements of the authenticated subscriber."""
    entitlements = subscriber.active_entitlements()
    return EntitlementListResponse(
        items=[EntitlementResponse.model_validate(e) for e in entitlements],
        total=len(entitlements),
    )


@router.put(
    "/{subscriber_id}/vehicle-slots/{slot_id}",
    response_model=VehicleSlotResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    },
)
async def update_vehicle_slot(
    subscriber_id: uuid.UUID,
    slot_id: uuid.UUID,
    body: VehicleSlotUpdate,
    caller: Subscriber = Depends(get_current_subscriber),
    coordinator: ExclusiveUpdateCoordinator = Depends(get_coordinator),
    engine: TargetingEngine = Depends(get_targeting_engine),
) -> VehicleSlotResponse:
    """Set or clear the vehicle followed by one of the subscriber's slots."""
    if caller.id != subscriber_id and not caller.acts_as_worker:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to update this subscriber",
        )
    slot = await subscriber_service.update_vehicle_slot(
        coordinator,
        engine,
        subscriber_id,
        slot_id,
        vehicle_key=body.vehicle_key,
        vin=body.vin,
    )
    return VehicleSlotResponse.model_validate(slot)


@router.post("/{subscriber_id}/vehicle-slots/{slot_id}/reviewed", response_model=VehicleSlotResponse)
async def mark_vehicle_slot_reviewed(
    subscriber_id: uuid.UUID,
    slot_id: uuid.UUID,
    _worker: Subscriber = Depends(require_worker),
    coordinator: ExclusiveUpdateCoordinator = Depends(get_coordinator),
) -> VehicleSlotResponse:
    slot = await subscriber_service.mark_slot_reviewed(coordinator, subscriber_id, slot_id)
    return VehicleSlotResponse.model_validate(slot)


@router.post("/{subscriber_id}/resync", response_model=ResyncResponse)
async def resync_subscriber(
    subscriber_id: uuid.UUID,
    worker: Subscriber = Depends(require_worker),
    reconciler: BillingReconciler = Depends(get_reconciler),
) -> ResyncResponse:
    """Re-fetch every billing subscription of a subscriber and reconcile it."""
    logger.info("Worker %s requested billing resync of subscriber %s", worker.id, subscriber_id)
    outcomes = await reconciler.resync_subscriber(subscriber_id, deadline=EVENT_DEADLINE_SECONDS)
    return ResyncResponse(outcomes={ref: outcome.value for ref, outcome in outcomes.items()})
