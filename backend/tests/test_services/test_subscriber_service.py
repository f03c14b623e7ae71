"""Tests for the subscriber service: account lifecycle and coordinated updates."""

import logging
import uuid
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from conftest import PLAN_ALL, PLAN_RECALLS, build_entitlement, load_subscriber

from recall_alerts.entitlements.coordinator import ExclusiveUpdateCoordinator
from recall_alerts.entitlements.errors import ConflictError, NotFound, ValidationError
from recall_alerts.models import Entitlement
from recall_alerts.services import subscriber_service


class TestCreateSubscriber:
    @pytest.mark.asyncio
    async def test_normalizes_email_and_creates_preference(self, session_factory):
        async with session_factory() as db:
            subscriber = await subscriber_service.create_subscriber(db, "  Jane.Doe@Example.COM ")
            await db.commit()

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.email == "jane.doe@example.com"
        assert stored.role == "member"
        assert stored.preference is not None
        assert stored.entitlements == []

    @pytest.mark.asyncio
    async def test_unknown_role_becomes_member(self, session_factory):
        async with session_factory() as db:
            subscriber = await subscriber_service.create_subscriber(db, "who@example.com", role="superuser")
        assert subscriber.role == "member"

    @pytest.mark.asyncio
    async def test_keeps_known_role(self, session_factory):
        async with session_factory() as db:
            subscriber = await subscriber_service.create_subscriber(db, "ops@example.com", role="worker")
        assert subscriber.role == "worker"

    @pytest.mark.asyncio
    async def test_rejects_invalid_email(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(ValidationError) as exc_info:
                await subscriber_service.create_subscriber(db, "not-an-email")
        assert exc_info.value.field == "email"

    @pytest.mark.asyncio
    async def test_rejects_duplicate_email_case_insensitively(self, session_factory, subscriber_factory):
        await subscriber_factory(email="taken@example.com")
        async with session_factory() as db:
            with pytest.raises(ConflictError):
                await subscriber_service.create_subscriber(db, "TAKEN@example.com")


class TestLookups:
    @pytest.mark.asyncio
    async def test_get_by_email(self, session_factory, subscriber_factory):
        subscriber = await subscriber_factory(email="lookup@example.com")
        async with session_factory() as db:
            found = await subscriber_service.get_by_email(db, "LookUp@Example.com")
            missing = await subscriber_service.get_by_email(db, "nobody@example.com")
        assert found.id == subscriber.id
        assert missing is None


class TestDeleteSubscriber:
    @pytest.mark.asyncio
    async def test_deletes_subscriber_and_billing_customer(self, session_factory, subscriber_factory):
        subscriber = await subscriber_factory(entitlements=[build_entitlement(PLAN_RECALLS)])

        with patch(
            "recall_alerts.services.subscriber_service.delete_customer", new_callable=AsyncMock
        ) as mock_delete:
            async with session_factory() as db:
                await subscriber_service.delete_subscriber(db, subscriber.id)
                await db.commit()

        mock_delete.assert_awaited_once_with(subscriber.customer_ref)
        assert await load_subscriber(session_factory, subscriber.id) is None
        async with session_factory() as db:
            assert await db.get(Entitlement, subscriber.entitlements[0].id) is None

    @pytest.mark.asyncio
    async def test_billing_failure_is_logged(self, session_factory, subscriber_factory, caplog):
        subscriber = await subscriber_factory()

        with (
            patch(
                "recall_alerts.services.subscriber_service.delete_customer",
                new_callable=AsyncMock,
                side_effect=stripe.APIConnectionError("Stripe is down"),
            ),
            caplog.at_level(logging.WARNING, logger="recall_alerts.services.subscriber_service"),
        ):
            async with session_factory() as db:
                await subscriber_service.delete_subscriber(db, subscriber.id)
                await db.commit()

        assert "Failed to delete billing customer" in caplog.text
        assert await load_subscriber(session_factory, subscriber.id) is None

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(NotFound):
                await subscriber_service.delete_subscriber(db, uuid.uuid4())


class TestCoordinatedUpdates:
    @pytest.mark.asyncio
    async def test_subscribe_to_plan(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory()
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        entitlement = await subscriber_service.subscribe_to_plan(coordinator, subscriber.id, PLAN_ALL.id)

        stored = await load_subscriber(session_factory, subscriber.id)
        assert [e.id for e in stored.entitlements] == [entitlement.id]
        assert entitlement.billing_reference == ""
        assert len(stored.entitlements[0].vehicle_slots) == PLAN_ALL.vehicle_slot_count

    @pytest.mark.asyncio
    async def test_update_preferences(self, session_factory, plan_catalog, subscriber_factory):
        subscriber = await subscriber_factory(entitlements=[build_entitlement(PLAN_RECALLS)])
        coordinator = ExclusiveUpdateCoordinator(session_factory, plan_catalog)

        await subscriber_service.update_preferences(
            coordinator, subscriber.id, categories=["food"], alert_by_phone=False
        )

        stored = await load_subscriber(session_factory, subscriber.id)
        assert stored.preference.categories == ["food"]
        assert stored.preference.alert_by_phone is False
