"""Shared test configuration and fixtures.

Each test gets its own SQLite database file (via aiosqlite) with all tables
created, so coordinator tests can open as many independent sessions as they
need and still start from a clean population.
"""

import uuid
from collections.abc import AsyncGenerator, Sequence
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from recall_alerts.auth.jwt import create_access_token
from recall_alerts.billing.dependencies import get_plan_catalog
from recall_alerts.billing.plans import PlanCatalog, PlanDefinition
from recall_alerts.database import Base, get_db, get_session_factory
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.entitlements.timestamps import normalize_time
from recall_alerts.main import app
from recall_alerts.models import (
    Entitlement,
    EntitlementStatus,
    Preference,
    Subscriber,
    VehicleSlot,
)

# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

PLAN_RECALLS = PlanDefinition(
    id="plan_recalls_yearly",
    name="Recalls Yearly",
    amount=1200,
    interval="year",
    recall_feature=True,
    vehicle_slot_count=0,
)
PLAN_RECALLS_MONTHLY = PlanDefinition(
    id="plan_recalls_monthly",
    name="Recalls Monthly",
    amount=150,
    interval="month",
    recall_feature=True,
    vehicle_slot_count=0,
)
PLAN_VEHICLES = PlanDefinition(
    id="plan_vehicles_yearly",
    name="Vehicles Yearly",
    amount=900,
    interval="year",
    recall_feature=False,
    vehicle_slot_count=2,
)
PLAN_ALL = PlanDefinition(
    id="plan_all_yearly",
    name="Everything Yearly",
    amount=1800,
    interval="year",
    recall_feature=True,
    vehicle_slot_count=3,
)
ALL_PLANS = (PLAN_RECALLS, PLAN_RECALLS_MONTHLY, PLAN_VEHICLES, PLAN_ALL)


def build_entitlement(
    plan: PlanDefinition,
    expires_in: timedelta | None = timedelta(days=300),
    billing_reference: str = "",
    status: EntitlementStatus = EntitlementStatus.ACTIVE,
    vehicle_keys: Sequence[str | None] = (),
    now: datetime | None = None,
) -> Entitlement:
    """Build an entitlement as the reconciler would have left it."""
    now = now or utcnow()
    entitlement = Entitlement(
        id=uuid.uuid4(),
        plan_id=plan.id,
        billing_reference=billing_reference,
        status=status.value,
        started_at=normalize_time(now - timedelta(days=30), at_start=True),
        renews_at=normalize_time(now + timedelta(days=335)),
        expires_at=None if expires_in is None else normalize_time(now + expires_in),
        recall_feature=plan.recall_feature,
        vehicle_slot_count=plan.vehicle_slot_count,
        vehicle_slots=[],
    )
    for index in range(plan.vehicle_slot_count):
        key = vehicle_keys[index] if index < len(vehicle_keys) else None
        entitlement.vehicle_slots.append(VehicleSlot(id=uuid.uuid4(), vehicle_key=key, reviewed=False))
    return entitlement


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """A fresh file-backed database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'recall_alerts_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def plan_catalog() -> PlanCatalog:
    return PlanCatalog.from_plans(ALL_PLANS)


@pytest_asyncio.fixture
async def subscriber_factory(session_factory):
    """Return an async builder that persists a subscriber and returns it (detached)."""

    async def _create(
        role: str = "member",
        email: str | None = None,
        customer_ref: str | None = "auto",
        entitlements: Sequence[Entitlement] = (),
        preference: dict | None = None,
        email_confirmed: bool = True,
        phone: str | None = None,
        phone_confirmed: bool = False,
    ) -> Subscriber:
        unique = uuid.uuid4().hex[:8]
        now = utcnow()
        subscriber = Subscriber(
            id=uuid.uuid4(),
            email=email or f"subscriber-{unique}@test.com",
            role=role,
            customer_ref=f"cus_{unique}" if customer_ref == "auto" else customer_ref,
            phone=phone,
            email_confirmed_at=now - timedelta(days=30) if email_confirmed else None,
            phone_confirmed_at=now - timedelta(days=30) if phone_confirmed else None,
            entitlements=[],
        )
        tags = {"audience": [], "categories": [], "distribution": [], "risk": []}
        tags.update(preference or {})
        subscriber.preference = Preference(id=uuid.uuid4(), **tags)
        for entitlement in entitlements:
            subscriber.entitlements.append(entitlement)

        async with session_factory() as db:
            db.add(subscriber)
            await db.commit()
        return subscriber

    return _create


async def load_subscriber(session_factory, subscriber_id: uuid.UUID) -> Subscriber:
    """Read a subscriber back with its children, bypassing any cached state."""
    async with session_factory() as db:
        return await db.get(Subscriber, subscriber_id, populate_existing=True)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory, plan_catalog) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database and plan catalog."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    async def override_get_plan_catalog() -> PlanCatalog:
        return plan_catalog

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_plan_catalog] = override_get_plan_catalog

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers_for(subscriber: Subscriber) -> dict[str, str]:
    """Authorization headers carrying an access token for ``subscriber``."""
    return {"Authorization": f"Bearer {create_access_token(str(subscriber.id))}"}
