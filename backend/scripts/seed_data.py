"""Seed the database with sample subscribers, entitlements and preferences.

Creates a worker, a handful of members on the recall and vehicle plans (one
of them lapsed), and the shared guest account, so targeting can be tried
against a small but realistic population.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
import sys
import uuid
from datetime import timedelta
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete

from recall_alerts.config import settings
from recall_alerts.database import async_session_factory, engine
from recall_alerts.entitlements.grace import utcnow
from recall_alerts.entitlements.timestamps import far_future, normalize_time
from recall_alerts.models import Entitlement, Preference, Subscriber, VehicleSlot

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

WORKER = {"email": "worker@recall-alerts.dev", "role": "worker"}

MEMBERS = [
    {
        "email": "dana@example.com",
        "phone": "+15555550101",
        "plan": ("plan_recalls_yearly", True, 0),
        "expires_in_days": None,
        "preference": {
            "audience": ["consumers"],
            "categories": ["animals", "food"],
            "distribution": ["CA", "NV", "OR"],
            "risk": ["possible", "probable"],
        },
    },
    {
        "email": "lee@example.com",
        "phone": None,
        "plan": ("plan_all_yearly", True, 3),
        "expires_in_days": None,
        "vehicles": [("ford|f-150|2019", "1M8GDM9AXKP042788"), ("honda|civic|2018", None)],
        "preference": {
            "audience": ["consumers", "professionals"],
            "categories": ["electronics", "home", "toys"],
            "distribution": ["TX"],
            "risk": ["probable"],
        },
    },
    {
        "email": "sam@example.com",
        "phone": "+15555550103",
        "plan": ("plan_vehicles_yearly", False, 2),
        "expires_in_days": None,
        "vehicles": [("ford|f-150|2019", None)],
        "preference": {},
    },
    {
        # Lapsed: expired well beyond the grace window
        "email": "ari@example.com",
        "phone": None,
        "plan": ("plan_recalls_monthly", True, 0),
        "expires_in_days": -45,
        "preference": {"audience": ["consumers"], "categories": ["food"]},
    },
]


def _preference(tags: dict) -> Preference:
    values = {"audience": [], "categories": [], "distribution": [], "risk": []}
    values.update(tags)
    return Preference(id=uuid.uuid4(), **values)


def _entitlement(member: dict, now) -> Entitlement:
    plan_id, recalls, slots = member["plan"]
    expires_in_days = member["expires_in_days"]
    if expires_in_days is None:
        expires_at = far_future(settings.grace_period)
        status = "active"
    else:
        expires_at = normalize_time(now + timedelta(days=expires_in_days))
        status = "canceled"

    entitlement = Entitlement(
        id=uuid.uuid4(),
        plan_id=plan_id,
        billing_reference=f"sub_seed_{uuid.uuid4().hex[:10]}",
        status=status,
        started_at=normalize_time(now - timedelta(days=120), at_start=True),
        renews_at=normalize_time(now + timedelta(days=245)),
        expires_at=expires_at,
        recall_feature=recalls,
        vehicle_slot_count=slots,
        vehicle_slots=[],
    )
    vehicles = member.get("vehicles", [])
    for index in range(slots):
        key, vin = vehicles[index] if index < len(vehicles) else (None, None)
        entitlement.vehicle_slots.append(
            VehicleSlot(
                id=uuid.uuid4(),
                vehicle_key=key,
                vin=vin,
                reviewed=False,
                vin_updated_at=normalize_time(now - timedelta(days=200), at_start=True) if key else None,
            )
        )
    return entitlement


# ---------------------------------------------------------------------------
# Main seed function
# ---------------------------------------------------------------------------


async def seed() -> None:
    """Replace all subscribers with the sample population."""
    print("🌱 Seeding database...")
    now = utcnow()

    async with async_session_factory() as session:
        # Cascades to entitlements, slots and preferences
        await session.execute(delete(Subscriber))
        await session.flush()
        print("🗑️  Cleared existing subscribers")

        worker = Subscriber(
            id=uuid.uuid4(),
            email_confirmed_at=now,
            preference=_preference({}),
            entitlements=[],
            **WORKER,
        )
        guest = Subscriber(
            id=uuid.uuid4(),
            email=settings.guest_email,
            role="guest",
            preference=_preference({}),
            entitlements=[],
        )
        session.add_all([worker, guest])

        for member in MEMBERS:
            subscriber = Subscriber(
                id=uuid.uuid4(),
                email=member["email"],
                role="member",
                phone=member["phone"],
                customer_ref=f"cus_seed_{uuid.uuid4().hex[:10]}",
                email_confirmed_at=now - timedelta(days=90),
                phone_confirmed_at=now - timedelta(days=90) if member["phone"] else None,
                preference=_preference(member["preference"]),
                entitlements=[_entitlement(member, now)],
            )
            session.add(subscriber)
            print(f"   👤 {subscriber.email} — {member['plan'][0]}")

        await session.commit()

    print()
    print("=" * 60)
    print("📊 Seed Summary")
    print("=" * 60)
    print(f"   Workers:  1 ({WORKER['email']})")
    print(f"   Members:  {len(MEMBERS)} (1 lapsed)")
    print(f"   Guests:   1 ({settings.guest_email})")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
