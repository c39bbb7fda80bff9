# api/deps.py
from config.settings import settings
from core.db import async_session_maker
from services.schedule_fetcher import ScheduleFetcher
from services.subscription_db_service import SubscriptionStore

# Shared by the API routes and the in-process poller
store = SubscriptionStore(async_session_maker)

# Feed client for the /api/mtd proxy routes; closed on app shutdown
feed = ScheduleFetcher(settings.MTD_API_KEY, settings.MTD_API_BASE, timeout=settings.HTTP_TIMEOUT_SECONDS)


def get_store() -> SubscriptionStore:
    """FastAPI dependency; tests override it with a store on a throwaway DB."""
    return store


def get_feed() -> ScheduleFetcher:
    """FastAPI dependency; tests override it with a fetcher on a mock transport."""
    return feed
