# scripts/seed_plans.py
import asyncio
from dotenv import load_dotenv

load_dotenv()  # make sure POSTGRES_* / DATABASE_URL are in the environment

from app.data.dbinit import SessionLocal, init_db
from app.data.subscription import create_subscription_plan, get_subscription_plan_by_slug


PLANS = [
    dict(
        name="Free Trial",
        slug="free-trial",
        description="14 days to try everything in Silver.",
        price_monthly_cents=0,
        features=dict(
            max_restaurants=1, max_categories=10, max_menu_items=50, max_staff_accounts=2,
            activity_log_enabled=True, activity_log_days=7,
            analytics_enabled=True, analytics_history_days=7,
            search_priority_boost=0,
        ),
        display_order=0,
    ),
    dict(
        name="Free",
        slug="free",
        description="One restaurant with a small menu.",
        price_monthly_cents=0,
        features=dict(
            max_restaurants=1, max_categories=3, max_menu_items=15, max_staff_accounts=1,
            activity_log_enabled=False, activity_log_days=0,
            analytics_enabled=False, analytics_history_days=0,
            search_priority_boost=0,
        ),
        display_order=1,
    ),
    dict(
        name="Bronze",
        slug="bronze",
        description="For a single restaurant with a full menu.",
        price_monthly_cents=1999,
        price_annual_cents=19990,
        features=dict(
            max_restaurants=1, max_categories=15, max_menu_items=100, max_staff_accounts=3,
            activity_log_enabled=True, activity_log_days=30,
            analytics_enabled=False, analytics_history_days=0,
            search_priority_boost=1,
        ),
        display_order=2,
    ),
    dict(
        name="Silver",
        slug="silver",
        description="Several locations and a team.",
        price_monthly_cents=4999,
        price_annual_cents=49990,
        features=dict(
            max_restaurants=3, max_categories=50, max_menu_items=500, max_staff_accounts=10,
            activity_log_enabled=True, activity_log_days=90,
            analytics_enabled=True, analytics_history_days=90,
            search_priority_boost=2,
        ),
        display_order=3,
    ),
    dict(
        name="Gold",
        slug="gold",
        description="No limits.",
        price_monthly_cents=9999,
        price_annual_cents=99990,
        features=dict(
            max_restaurants=0, max_categories=0, max_menu_items=0, max_staff_accounts=0,
            activity_log_enabled=True, activity_log_days=365,
            analytics_enabled=True, analytics_history_days=365,
            search_priority_boost=5,
        ),
        display_order=4,
    ),
]


async def seed_plans():
    await init_db()
    async with SessionLocal() as db:
        for plan in PLANS:
            if await get_subscription_plan_by_slug(db, plan["slug"]):
                continue
            await create_subscription_plan(db, currency="ETB", **plan)

        await db.commit()


if __name__ == "__main__":
    asyncio.run(seed_plans())
