"""Exclusive-Update Coordinator — lease-guarded writes to one subscriber.

A writer acquires a short lease with a compare-and-swap on the subscriber
row, re-reads the subscriber, applies its change through a
``SubscriberAggregate`` and commits. The lease is released in the same
transaction as the write, and that transaction only commits if the lease is
still held. A writer whose lease ran out fails instead of overwriting.
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recall_alerts.billing.plans import PlanCatalog
from recall_alerts.config import settings
from recall_alerts.entitlements.aggregate import SubscriberAggregate
from recall_alerts.entitlements.errors import LockContention, NotFound
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.models.subscriber import Subscriber

logger = logging.getLogger(__name__)

UpdateFn = Callable[[SubscriberAggregate], Any]


class ExclusiveUpdateCoordinator:
    """Serializes writes to a subscriber across processes with a database lease.

    ``with_exclusive_access`` never retries: contention surfaces as
    ``LockContention`` and the caller decides.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        lease_duration: timedelta | None = None,
        grace_period: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._lease_duration = lease_duration if lease_duration is not None else settings.lease_duration
        self._grace_period = grace_period if grace_period is not None else settings.grace_period
        self._clock = clock

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    async def with_exclusive_access(self, subscriber_id: uuid.UUID, fn: UpdateFn) -> Any:
        """Run ``fn(aggregate)`` under an exclusive lease and persist its changes.

        ``fn`` may be a plain function or a coroutine function. Its return
        value is returned after the write commits.

        Raises:
            NotFound: If the subscriber does not exist.
            LockContention: If another writer holds a live lease, or this
                writer's lease lapsed before commit.
            ValidationError, ConflictError: From ``fn`` or the aggregate's
                invariant checks; nothing is persisted.
        """
        token = uuid.uuid4().hex
        committed = False
        try:
            # The lease may be committed even if we are cancelled before this returns
            acquired_at = await self._acquire(subscriber_id, token)
            deadline = acquired_at + self._lease_duration
            async with self._session_factory() as db:
                try:
                    result = await self._apply(db, subscriber_id, fn, deadline)
                    await self._release(db, subscriber_id, token)
                    await db.commit()
                    committed = True
                except Exception:
                    await db.rollback()
                    raise
            return result
        finally:
            if not committed:
                await self._abandon(subscriber_id, token)

    async def _acquire(self, subscriber_id: uuid.UUID, token: str) -> datetime:
        now = self._clock()
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.id == subscriber_id,
                or_(
                    Subscriber.lock_owner.is_(None),
                    Subscriber.lock_expires_at.is_(None),
                    Subscriber.lock_expires_at < now,
                ),
            )
            .values(lock_owner=token, lock_expires_at=now + self._lease_duration)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
            if result.rowcount == 1:
                logger.debug("Acquired lease on subscriber %s", subscriber_id)
                return now
            exists = await db.scalar(select(Subscriber.id).where(Subscriber.id == subscriber_id))
        if exists is None:
            raise NotFound("subscriber", subscriber_id)
        logger.info("Subscriber %s is locked by another writer", subscriber_id)
        raise LockContention(subscriber_id)

    async def _apply(
        self,
        db: AsyncSession,
        subscriber_id: uuid.UUID,
        fn: UpdateFn,
        deadline: datetime,
    ):
        subscriber = await db.get(Subscriber, subscriber_id, populate_existing=True)
        if subscriber is None:
            raise NotFound("subscriber", subscriber_id)

        aggregate = SubscriberAggregate(
            subscriber,
            self._catalog,
            now=self._clock(),
            grace_period=self._grace_period,
        )
        try:
            remaining = (deadline - self._clock()).total_seconds()
            if remaining <= 0:
                raise LockContention(subscriber_id)
            try:
                result = await asyncio.wait_for(self._call(fn, aggregate), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("Lease on subscriber %s lapsed while applying an update", subscriber_id)
                raise LockContention(subscriber_id) from None
            aggregate.finalize()
            await db.flush()
        finally:
            aggregate.close()
        return result

    @staticmethod
    async def _call(fn: UpdateFn, aggregate: SubscriberAggregate):
        result = fn(aggregate)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _release(self, db: AsyncSession, subscriber_id: uuid.UUID, token: str) -> None:
        """Clear the lease in the write's transaction; fail if it is no longer ours."""
        now = self._clock()
        stmt = (
            update(Subscriber)
            .where(
                Subscriber.id == subscriber_id,
                Subscriber.lock_owner == token,
                Subscriber.lock_expires_at >= now,
            )
            .values(lock_owner=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            logger.warning("Lost lease on subscriber %s before commit; discarding update", subscriber_id)
            raise LockContention(subscriber_id)

    async def _abandon(self, subscriber_id: uuid.UUID, token: str) -> None:
        """Release a lease we still own after a failed write; a no-op if we never held it."""
        stmt = (
            update(Subscriber)
            .where(Subscriber.id == subscriber_id, Subscriber.lock_owner == token)
            .values(lock_owner=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            await db.execute(stmt)
            await db.commit()
