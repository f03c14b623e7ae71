"""Tests for the lease-based Exclusive-Update Coordinator against a real database."""

import asyncio
import uuid
from datetime import timedelta

import pytest
from conftest import PLAN_RECALLS, PLAN_VEHICLES, load_subscriber
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.entitlements.errors import LockContention, NotFound, ValidationError
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.models import Subscriber


class _Clock:
    """Manually advanced clock."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


async def _set_lease(session_factory, subscriber_id: uuid.UUID, owner: str, expires_in: timedelta) -> None:
    async with session_factory() as db:
        await db.execute(
            update(Subscriber)
            .where(Subscriber.id == subscriber_id)
            .values(lock_owner=owner, lock_expires_at=utcnow() + expires_in)
        )
        await db.commit()


class TestWithExclusiveAccess:
    @pytest.mark.asyncio
    async def test_commits_and_releases(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        entitlement = await coordinator.with_exclusive_access(
            subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_VEHICLES.id)
        )

        stored = await load_subscriber(session_factory, subscriber.id)
        assert [e.id for e in stored.entitlements] == [entitlement.id]
        assert len(stored.entitlements[0].vehicle_slots) == 2
        assert stored.lock_owner is None
        assert stored.lock_expires_at is None

    @pytest.mark.asyncio
    async def test_accepts_coroutine_functions(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        async def apply(aggregate):
            await asyncio.sleep(0)
            return aggregate.id

        assert await coordinator.with_exclusive_access(subscriber.id, apply) == subscriber.id

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, session_factory, plan_catalog):
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)
        with pytest.raises(NotFound):
            await coordinator.with_exclusive_access(uuid.uuid4(), lambda aggregate: None)

    @pytest.mark.asyncio
    async def test_live_lease_blocks_writer(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        await _set_lease(session_factory, subscriber.id, "someone-else", timedelta(minutes=1))
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        with pytest.raises(LockContention):
            await coordinator.with_exclusive_access(
                subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
            )

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner == "someone-else"

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        await _set_lease(session_factory, subscriber.id, "crashed-writer", timedelta(seconds=-1))
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        await coordinator.with_exclusive_access(
            subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
        )

        stored = await load_subscriber(session_factory, subscriber.id)
        assert len(stored.entitlements) == 1
        assert stored.lock_owner is None

    @pytest.mark.asyncio
    async def test_failed_update_persists_nothing(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        def apply(aggregate):
            aggregate.add_entitlement(PLAN_RECALLS.id)
            raise ValidationError("vin", "is not a valid VIN")

        with pytest.raises(ValidationError):
            await coordinator.with_exclusive_access(subscriber.id, apply)

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner is None

    @pytest.mark.asyncio
    async def test_invariant_violation_persists_nothing(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory(customer_ref=None)
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.with_exclusive_access(
                subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
            )

        assert exc_info.value.field == "customer_ref"
        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []

    @pytest.mark.asyncio
    async def test_lease_lapsing_during_update(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(
            session_factory, plan_catalog, lease_duration=timedelta(milliseconds=200)
        )

        async def slow(aggregate):
            aggregate.add_entitlement(PLAN_RECALLS.id)
            await asyncio.sleep(1)

        with pytest.raises(LockContention):
            await coordinator.with_exclusive_access(subscriber.id, slow)

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner is None

    @pytest.mark.asyncio
    async def test_lease_lost_before_commit(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        clock = _Clock()
        coordinator = ExclusiveUpdateCoordinator(
            session_factory, plan_catalog, lease_duration=timedelta(seconds=10), clock=clock
        )

        def apply(aggregate):
            aggregate.add_entitlement(PLAN_RECALLS.id)
            clock.now += timedelta(minutes=5)

        with pytest.raises(LockContention):
            await coordinator.with_exclusive_access(subscriber.id, apply)

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner is None


def _stalling_close_factory(engine, closing: asyncio.Event, release: asyncio.Event):
    """Session factory whose first session stalls in ``close()`` until released."""

    class _StallingSession(AsyncSession):
        async def close(self):
            if not closing.is_set():
                closing.set()
                await release.wait()
            await super().close()

    return async_sessionmaker(engine, class_=_StallingSession, expire_on_commit=False)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_applying_releases_lease(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)
        started = asyncio.Event()

        async def stuck(aggregate):
            aggregate.add_entitlement(PLAN_RECALLS.id)
            started.set()
            await asyncio.sleep(5)

        task = asyncio.create_task(coordinator.with_exclusive_access(subscriber.id, stuck))
        await started.wait()
        assert (await load_subscriber(session_factory, subscriber.id)).lock_owner is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner is None
        assert stored.lock_expires_at is None

    @pytest.mark.asyncio
    async def test_cancel_right_after_lease_is_taken_releases_it(
        self, test_engine, session_factory, plan_catalog, subscriber_factory
    ):
        subscriber = await subscriber_factory()
        closing = asyncio.Event()
        release = asyncio.Event()
        coordinator = ExclusiveUpdateCoordinator(
            _stalling_close_factory(test_engine, closing, release), plan_catalog
        )

        task = asyncio.create_task(
            coordinator.with_exclusive_access(
                subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
            )
        )
        # The lease has been committed; the acquiring session is still closing
        await closing.wait()
        assert (await load_subscriber(session_factory, subscriber.id)).lock_owner is not None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()
        await asyncio.sleep(0.05)

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.entitlements == []
        assert stored.lock_owner is None

        # The next writer is not locked out
        await ExclusiveUpdateCoordinator(session_factory, plan_catalog).with_exclusive_access(
            subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
        )
        assert len((await load_subscriber(session_factory, subscriber.id)).entitlements) == 1


class TestConcurrentWriters:
    @pytest.mark.asyncio
    async def test_second_writer_is_rejected_while_first_holds_lease(
        self, session_factory, plan_catalog, subscriber_factory
    ):
        subscriber = await subscriber_factory()
        first = ExclusiveUpdateCoordinator(session_factory, plan_catalog)
        second = ExclusiveUpdateCoordinator(session_factory, plan_catalog)
        holding = asyncio.Event()
        proceed = asyncio.Event()

        async def slow_writer(aggregate):
            holding.set()
            await proceed.wait()
            aggregate.add_entitlement(PLAN_RECALLS.id)

        first_task = asyncio.create_task(first.with_exclusive_access(subscriber.id, slow_writer))
        await holding.wait()

        with pytest.raises(LockContention):
            await second.with_exclusive_access(
                subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_VEHICLES.id)
            )

        # No partially applied state is visible while the first writer works
        observed = await load_subscriber(session_factory, subscriber.id)
        assert observed.entitlements == []

        proceed.set()
        await first_task

        stored = await load_subscriber(session_factory, subscriber.id)
        assert [e.plan_id for e in stored.entitlements] == [PLAN_RECALLS.id]
        assert stored.lock_owner is None

    @pytest.mark.asyncio
    async def test_sequential_writers_both_apply(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        await coordinator.with_exclusive_access(
            subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_RECALLS.id)
        )
        await coordinator.with_exclusive_access(
            subscriber.id, lambda aggregate: aggregate.add_entitlement(PLAN_VEHICLES.id)
        )

        stored = await load_subscriber(session_factory, subscriber.id)
        assert [e.plan_id for e in stored.entitlements] == [PLAN_RECALLS.id, PLAN_VEHICLES.id]
