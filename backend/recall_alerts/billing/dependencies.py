"""Component dependencies — the plan catalog, coordinator, reconciler and targeting engine.

The plan catalog is process-wide and owned here; the lifespan handler loads
it and routes refresh it lazily once it is older than its TTL.
"""

import logging

import stripe
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recall_alerts.billing.plans import PlanCatalog
from recall_alerts.billing.reconciler import BillingReconciler
from recall_alerts.billing.stripe_client import list_plans, retrieve_snapshot
from recall_alerts.database import get_session_factory
from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.targeting.engine import TargetingEngine
from recall_alerts.targeting.population import SqlPopulationStore

logger = logging.getLogger(__name__)

plan_catalog = PlanCatalog(list_plans)


async def get_plan_catalog() -> PlanCatalog:
    """Return the shared plan catalog, reloading it when stale.

    If the provider is unreachable the previously loaded plans are served.
    """
    try:
        await plan_catalog.ensure_fresh()
    except stripe.StripeError as e:
        logger.warning("Serving plan catalog loaded at %s: %s", plan_catalog.loaded_at, e)
    return plan_catalog


def get_coordinator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    catalog: PlanCatalog = Depends(get_plan_catalog),
) -> ExclusiveUpdateCoordinator:
    return ExclusiveUpdateCoordinator(session_factory, catalog)


def get_targeting_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> TargetingEngine:
    return TargetingEngine(SqlPopulationStore(session_factory))


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    coordinator: ExclusiveUpdateCoordinator = Depends(get_coordinator),
) -> BillingReconciler:
    return BillingReconciler(session_factory, catalog, retrieve_snapshot, coordinator=coordinator)
