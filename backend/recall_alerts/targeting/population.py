"""Population store — paged, read-only scans over subscribers for targeting."""

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recall_alerts.config import settings
from recall_alerts.entitlements.grace import start_of_grace_period
from recall_alerts.models.entitlement import Entitlement, VehicleSlot
from recall_alerts.models.subscriber import ELEVATED_ROLES, Role, Subscriber

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PopulationQuery:
    """Coarse pre-filter for a scan.

    The store may return a superset of the matching subscribers; the
    Targeting Engine re-checks every candidate.
    """

    include_elevated: bool = False
    # "recall", "vehicle" or None
    entitlement: str | None = None
    # Elevated roles skip the entitlement filter
    elevated_bypass: bool = True
    email_confirmed: bool = False
    phone_confirmed: bool = False
    vehicle_keys: frozenset[str] = field(default_factory=frozenset)
    exclude_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)


class PopulationStore(Protocol):
    """Streams subscribers (with entitlements and preferences loaded) page by page."""

    def scan(self, query: PopulationQuery, now: datetime) -> AsyncIterator[list[Subscriber]]: ...


class SqlPopulationStore:
    """Keyset-paginated scan over the subscribers table.

    Each page is read in a short session and detached, so memory stays
    bounded by the page size regardless of population size.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        page_size: int | None = None,
        grace_period: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._page_size = page_size or settings.population_page_size
        self._grace_period = grace_period if grace_period is not None else settings.grace_period

    def _filters(self, query: PopulationQuery, now: datetime) -> list:
        roles = [Role.MEMBER.value]
        if query.include_elevated:
            roles.extend(role.value for role in ELEVATED_ROLES)
        filters = [
            Subscriber.role.in_(roles),
            Subscriber.email != settings.guest_email,
        ]
        if query.email_confirmed:
            filters.append(Subscriber.email_confirmed_at <= now)
        if query.phone_confirmed:
            filters.extend(
                [
                    Subscriber.phone.is_not(None),
                    Subscriber.phone != "",
                    Subscriber.phone_confirmed_at <= now,
                ]
            )
        if query.exclude_ids:
            filters.append(Subscriber.id.not_in(list(query.exclude_ids)))

        cutoff = start_of_grace_period(now, self._grace_period)
        live = [Entitlement.subscriber_id == Subscriber.id, Entitlement.expires_at >= cutoff]
        entitled = None
        if query.vehicle_keys:
            entitled = exists().where(
                *live,
                Entitlement.vehicle_slot_count > 0,
                VehicleSlot.entitlement_id == Entitlement.id,
                VehicleSlot.vehicle_key.in_(sorted(query.vehicle_keys)),
            )
        elif query.entitlement == "recall":
            entitled = exists().where(*live, Entitlement.recall_feature.is_(True))
        elif query.entitlement == "vehicle":
            entitled = exists().where(*live, Entitlement.vehicle_slot_count > 0)

        if entitled is not None:
            if query.include_elevated and query.elevated_bypass:
                elevated = Subscriber.role.in_([role.value for role in ELEVATED_ROLES])
                filters.append(or_(elevated, entitled))
            else:
                filters.append(entitled)
        return filters

    async def scan(self, query: PopulationQuery, now: datetime) -> AsyncIterator[list[Subscriber]]:
        filters = self._filters(query, now)
        last_id: uuid.UUID | None = None
        pages = 0
        while True:
            stmt = select(Subscriber).where(*filters)
            if last_id is not None:
                stmt = stmt.where(Subscriber.id > last_id)
            stmt = stmt.order_by(Subscriber.id).limit(self._page_size)

            async with self._session_factory() as db:
                page = list((await db.scalars(stmt)).all())
                db.expunge_all()
            if not page:
                break
            pages += 1
            yield page
            if len(page) < self._page_size:
                break
            last_id = page[-1].id
        logger.debug("Population scan finished after %d pages", pages)
