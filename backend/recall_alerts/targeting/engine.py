"""Targeting Engine — who should hear about a recall, a vehicle campaign or a digest.

Scans are read-only and lock-free. Results reflect the population as of the
scan and may miss reconciliations that land mid-scan. A scan either finishes
or raises: store errors and deadlines propagate, and a partial result is never
returned.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from recall_alerts.config import settings
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.entitlements.vehicles import normalize_vehicle_key
from recall_alerts.models.subscriber import Subscriber
from recall_alerts.targeting.population import PopulationQuery, PopulationStore
from recall_alerts.targeting.recall import (
    DIMENSIONS,
    AlertChannel,
    NotificationBatch,
    NotificationReason,
    Recall,
    SummaryKind,
    TargetingOptions,
)

logger = logging.getLogger(__name__)

Predicate = Callable[[Subscriber, datetime], bool]


class TargetingEngine:
    def __init__(
        self,
        store: PopulationStore,
        grace_period: timedelta | None = None,
        deadline: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._grace_period = grace_period if grace_period is not None else settings.grace_period
        self._deadline = deadline if deadline is not None else settings.targeting_deadline_seconds
        self._clock = clock

    # Scanning

    async def _collect(self, query: PopulationQuery, predicate: Predicate, deadline: float | None) -> set[uuid.UUID]:
        now = self._clock()

        async def _scan() -> set[uuid.UUID]:
            matched: set[uuid.UUID] = set()
            async for page in self._store.scan(query, now):
                matched.update(s.id for s in page if predicate(s, now))
            return matched

        return await asyncio.wait_for(_scan(), timeout=deadline if deadline is not None else self._deadline)

    # Shared checks

    @staticmethod
    def _eligible_role(subscriber: Subscriber, include_elevated: bool) -> bool:
        if subscriber.is_guest:
            return False
        if subscriber.acts_as_worker:
            return include_elevated
        return subscriber.is_member

    @staticmethod
    def _wants_channel(subscriber: Subscriber, now: datetime, channel: AlertChannel | None, vehicles: bool) -> bool:
        if channel is None:
            return True
        preference = subscriber.preference
        if vehicles and not preference.alert_for_vehicles:
            return False
        if channel is AlertChannel.EMAIL:
            return (vehicles or preference.alert_by_email) and subscriber.email_confirmed(now)
        return (vehicles or preference.alert_by_phone) and subscriber.phone_confirmed(now)

    # Recalls

    def _interested_in_recall(self, recall: Recall, options: TargetingOptions) -> Predicate:
        def predicate(subscriber: Subscriber, now: datetime) -> bool:
            if not self._eligible_role(subscriber, options.include_elevated):
                return False
            if recall.requires_entitlement and not subscriber.receives_recalls(now, self._grace_period):
                return False
            preference = subscriber.preference
            if preference is None:
                return False
            for dimension in DIMENSIONS:
                wanted = getattr(recall, dimension)
                if wanted and not (preference.tags(dimension) & wanted):
                    return False
            return self._wants_channel(subscriber, now, options.channel, vehicles=False)

        return predicate

    async def find_interested(
        self,
        recall: Recall,
        options: TargetingOptions | None = None,
        deadline: float | None = None,
    ) -> set[uuid.UUID]:
        """Subscribers whose preferences intersect every non-empty recall dimension."""
        options = options or TargetingOptions()
        query = PopulationQuery(
            include_elevated=options.include_elevated,
            entitlement="recall" if recall.requires_entitlement else None,
            email_confirmed=options.channel is AlertChannel.EMAIL,
            phone_confirmed=options.channel is AlertChannel.PHONE,
        )
        matched = await self._collect(query, self._interested_in_recall(recall, options), deadline)
        logger.info("Recall %s targets %d subscribers", recall.id, len(matched))
        return matched

    # Vehicles

    def _interested_in_vehicle(self, keys: frozenset[str], options: TargetingOptions) -> Predicate:
        def predicate(subscriber: Subscriber, now: datetime) -> bool:
            if not self._eligible_role(subscriber, options.include_elevated):
                return False
            if not subscriber.vehicle_keys(now, self._grace_period) & keys:
                return False
            if options.channel is not None and subscriber.preference is None:
                return False
            return self._wants_channel(subscriber, now, options.channel, vehicles=True)

        return predicate

    async def find_vehicle_interested(
        self,
        recall: Recall,
        options: TargetingOptions | None = None,
        deadline: float | None = None,
    ) -> set[uuid.UUID]:
        """Subscribers following any of the campaign's vehicle keys on a live vehicle entitlement."""
        options = options or TargetingOptions()
        if not recall.vehicle_keys:
            return set()
        query = PopulationQuery(
            include_elevated=options.include_elevated,
            entitlement="vehicle",
            elevated_bypass=False,
            email_confirmed=options.channel is AlertChannel.EMAIL,
            phone_confirmed=options.channel is AlertChannel.PHONE,
            vehicle_keys=recall.vehicle_keys,
        )
        matched = await self._collect(query, self._interested_in_vehicle(recall.vehicle_keys, options), deadline)
        logger.info("Vehicle campaign %s targets %d subscribers", recall.id, len(matched))
        return matched

    async def has_interest_in_vehicle_key(
        self, vehicle_key: str, exclude_subscriber_id: uuid.UUID | None = None
    ) -> bool:
        """True if some other member already follows ``vehicle_key``."""
        keys = frozenset({normalize_vehicle_key(vehicle_key)})
        query = PopulationQuery(
            entitlement="vehicle",
            vehicle_keys=keys,
            exclude_ids=frozenset({exclude_subscriber_id}) if exclude_subscriber_id else frozenset(),
        )
        predicate = self._interested_in_vehicle(keys, TargetingOptions())
        now = self._clock()
        async for page in self._store.scan(query, now):
            if any(s.id != exclude_subscriber_id and predicate(s, now) for s in page):
                return True
        return False

    async def find_unreviewed_slots(self, deadline: float | None = None) -> dict[uuid.UUID, list[uuid.UUID]]:
        """Slot ids awaiting review, by subscriber."""
        now = self._clock()

        async def _scan() -> dict[uuid.UUID, list[uuid.UUID]]:
            pending: dict[uuid.UUID, list[uuid.UUID]] = {}
            async for page in self._store.scan(PopulationQuery(entitlement="vehicle"), now):
                for subscriber in page:
                    if not self._eligible_role(subscriber, include_elevated=False):
                        continue
                    slots = subscriber.unreviewed_slots(now, self._grace_period)
                    if slots:
                        pending[subscriber.id] = [slot.id for slot in slots]
            return pending

        return await asyncio.wait_for(_scan(), timeout=deadline if deadline is not None else self._deadline)

    # Summaries

    def _wants_summary(self, kind: SummaryKind) -> Predicate:
        def predicate(subscriber: Subscriber, now: datetime) -> bool:
            if not self._eligible_role(subscriber, include_elevated=False):
                return False
            if not subscriber.email_confirmed(now) or subscriber.preference is None:
                return False
            if kind is SummaryKind.RECALLS:
                return (
                    subscriber.preference.send_summaries
                    and subscriber.recall_entitlement(now, self._grace_period) is not None
                )
            return subscriber.preference.send_vehicle_summaries and subscriber.has_vehicle_entitlement(
                now, self._grace_period
            )

        return predicate

    async def find_summary_recipients(self, kind: SummaryKind, deadline: float | None = None) -> set[uuid.UUID]:
        """Members with a confirmed email and a live entitlement who asked for this digest."""
        query = PopulationQuery(
            entitlement="recall" if kind is SummaryKind.RECALLS else "vehicle",
            email_confirmed=True,
        )
        matched = await self._collect(query, self._wants_summary(kind), deadline)
        logger.info("%s summary targets %d subscribers", kind.value.capitalize(), len(matched))
        return matched

    # Handoff

    async def alert_batch(
        self,
        recall: Recall,
        options: TargetingOptions | None = None,
        deadline: float | None = None,
    ) -> NotificationBatch:
        """Recipients of a recall or vehicle-campaign alert, ready for dispatch."""
        if recall.vehicle_keys:
            ids = await self.find_vehicle_interested(recall, options, deadline)
        else:
            ids = await self.find_interested(recall, options, deadline)
        return NotificationBatch(reason=NotificationReason.ALERT, subscriber_ids=list(ids), recall_id=recall.id)

    async def summary_batch(self, kind: SummaryKind, deadline: float | None = None) -> NotificationBatch:
        ids = await self.find_summary_recipients(kind, deadline)
        return NotificationBatch(reason=NotificationReason.SUMMARY, subscriber_ids=list(ids))
