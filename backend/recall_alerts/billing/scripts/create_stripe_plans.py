"""Create the recall and vehicle plans in Stripe test mode.

Run once inside the backend container:
    python -m recall_alerts.billing.scripts.create_stripe_plans

Features are carried in plan metadata and read back by the plan catalog:
``recalls`` ("true"/"false") and ``vins`` (number of vehicle slots).
"""

import asyncio

import stripe
from stripe import StripeClient

from recall_alerts.billing.plans import plan_from_provider
from recall_alerts.config import settings

PLANS = [
    {
        "id": "plan_recalls_monthly",
        "nickname": "Recalls Monthly",
        "amount": 150,
        "interval": "month",
        "metadata": {"recalls": "true", "vins": "0"},
    },
    {
        "id": "plan_recalls_yearly",
        "nickname": "Recalls Yearly",
        "amount": 1200,
        "interval": "year",
        "metadata": {"recalls": "true", "vins": "0"},
    },
    {
        "id": "plan_vehicles_yearly",
        "nickname": "Vehicles Yearly",
        "amount": 900,
        "interval": "year",
        "metadata": {"recalls": "false", "vins": "2"},
    },
    {
        "id": "plan_all_yearly",
        "nickname": "Recalls and Vehicles Yearly",
        "amount": 1800,
        "interval": "year",
        "metadata": {"recalls": "true", "vins": "3"},
    },
]


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    for params in PLANS:
        # Fail before touching Stripe if the catalog would reject the plan
        plan_from_provider(params)
        try:
            plan = await client.v1.plans.create_async(
                params={
                    **params,
                    "currency": "usd",
                    "product": {"name": f"{settings.app_name} {params['nickname']}"},
                }
            )
        except stripe.InvalidRequestError as e:
            print(f"Skipped {params['id']}: {e.user_message or e}")
            continue
        print(f"Created plan: {plan.nickname} ({plan.id})")
        print(f"  ${plan.amount / 100:.2f}/{plan.interval}, metadata={dict(plan.metadata)}")


if __name__ == "__main__":
    asyncio.run(main())
