import asyncio

from config.settings import settings
from core.db import build_engine, build_session_maker
from services.subscription_db_service import SubscriptionStore


async def main():
    """
    One-time script to create all tables in the configured database.
    Uses a temporary async engine built from settings.DATABASE_URL.
    """
    engine = build_engine(settings.DATABASE_URL)
    store = SubscriptionStore(build_session_maker(engine))
    await store.create_tables()
    await engine.dispose()
    print("✅ Database schema created/updated successfully.")


if __name__ == "__main__":
    asyncio.run(main())
