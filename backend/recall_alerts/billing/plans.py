"""Plan catalog — recall/vehicle plans loaded from the billing provider.

The catalog is an explicitly owned cache: whoever constructs it passes it to
the components that need it and decides when to refresh. Between refreshes
it may be up to ``ttl`` stale.
"""

import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from recall_alerts.config import settings
from recall_alerts.entitlements.grace import utcnow

logger = logging.getLogger(__name__)

INTERVALS = ("month", "year")

# Nominal lengths, for display and estimates only
_INTERVAL_DURATION = {
    "month": timedelta(days=31),
    "year": timedelta(days=366),
}

_TRUE_REGEX = re.compile(r"true", re.IGNORECASE)
_DIGITS_REGEX = re.compile(r"\A\s*\d+\s*\Z")


@dataclass(frozen=True)
class PlanDefinition:
    """Features and pricing of one billing-provider plan."""

    id: str
    name: str
    amount: int  # in cents
    interval: str
    recall_feature: bool
    vehicle_slot_count: int

    @property
    def duration(self) -> timedelta:
        return _INTERVAL_DURATION[self.interval]

    @property
    def is_yearly(self) -> bool:
        return self.interval == "year"

    @property
    def grants_vehicles(self) -> bool:
        return self.vehicle_slot_count > 0


class InvalidPlan(ValueError):
    pass


def plan_from_provider(plan: Any) -> PlanDefinition:
    """Build a plan from a provider plan object, reading features from its metadata.

    Raises:
        InvalidPlan: If the plan lacks an id, a positive amount, a supported
            interval, or grants neither recalls nor vehicles.
    """
    metadata = _get(plan, "metadata") or {}
    recalls = bool(_TRUE_REGEX.search(str(_get(metadata, "recalls") or "")))
    vins_raw = str(_get(metadata, "vins") or "")
    vins = int(vins_raw) if _DIGITS_REGEX.match(vins_raw) else 0

    definition = PlanDefinition(
        id=_get(plan, "id") or "",
        name=_get(plan, "nickname") or _get(plan, "name") or "",
        amount=_get(plan, "amount") or 0,
        interval=_get(plan, "interval") or "",
        recall_feature=recalls,
        vehicle_slot_count=vins,
    )

    if not definition.id:
        raise InvalidPlan("plan id is required")
    if len(definition.name) < 4:
        raise InvalidPlan(f"plan {definition.id} name is too short")
    if definition.amount <= 0:
        raise InvalidPlan(f"plan {definition.id} amount must be positive")
    if definition.interval not in INTERVALS:
        raise InvalidPlan(f"plan {definition.id} interval {definition.interval!r} is not supported")
    if not definition.recall_feature and definition.vehicle_slot_count <= 0:
        raise InvalidPlan(f"plan {definition.id} grants neither recalls nor vehicles")
    return definition


def _get(obj: Any, key: str) -> Any:
    """Read a field from a provider object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


PlanLoader = Callable[[], Awaitable[Iterable[Any]]]


class PlanCatalog:
    """Read-mostly, explicitly refreshed cache of plan definitions."""

    def __init__(
        self,
        loader: PlanLoader,
        ttl: timedelta | None = None,
    ) -> None:
        self._loader = loader
        self._ttl = ttl if ttl is not None else timedelta(seconds=settings.plan_catalog_ttl_seconds)
        self._plans: dict[str, PlanDefinition] = {}
        self._loaded_at: datetime | None = None

    @classmethod
    def from_plans(cls, plans: Iterable[PlanDefinition]) -> "PlanCatalog":
        """Build a catalog that never reloads (fixed plan set)."""
        plans = list(plans)

        async def _static() -> list[PlanDefinition]:
            return plans

        catalog = cls(_static, ttl=timedelta.max)
        catalog._store(plans, utcnow())
        return catalog

    @property
    def loaded_at(self) -> datetime | None:
        return self._loaded_at

    async def refresh(self, now: datetime | None = None) -> None:
        """Reload all plans from the provider, skipping invalid ones.

        A failed load keeps the previous plans and propagates the error.
        """
        raw_plans = await self._loader()
        plans = []
        for raw in raw_plans:
            if isinstance(raw, PlanDefinition):
                plans.append(raw)
                continue
            try:
                plans.append(plan_from_provider(raw))
            except InvalidPlan as e:
                logger.warning("Skipping billing plan: %s", e)
        self._store(plans, now or utcnow())
        logger.info("Loaded %d billing plans", len(plans))

    async def ensure_fresh(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        if self._loaded_at is None or now - self._loaded_at > self._ttl:
            await self.refresh(now)

    def _store(self, plans: list[PlanDefinition], loaded_at: datetime) -> None:
        self._plans = {plan.id: plan for plan in plans}
        self._loaded_at = loaded_at

    def plan_by_id(self, plan_id: str | None) -> PlanDefinition | None:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def all(self) -> list[PlanDefinition]:
        return sorted(self._plans.values(), key=lambda p: p.name)

    @property
    def yearly_all(self) -> PlanDefinition | None:
        return next((p for p in self.all() if p.recall_feature and p.grants_vehicles and p.is_yearly), None)

    @property
    def yearly_recalls(self) -> PlanDefinition | None:
        return next((p for p in self.all() if p.recall_feature and not p.grants_vehicles and p.is_yearly), None)

    @property
    def yearly_vehicles(self) -> PlanDefinition | None:
        return next((p for p in self.all() if not p.recall_feature and p.grants_vehicles and p.is_yearly), None)
