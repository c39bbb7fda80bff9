"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire API routers (users / subscriptions / MTD feed proxy)
- Register centralized exception handlers
- Provide request-id logging middleware
- Add health endpoint
- On startup: create DB tables and start the arrival poller when both the MTD key
  and a Firebase service account are configured; stop it on shutdown
Notes:
- The poller can also run alone: python -m workers.arrival_poller
  (do not run both against the same database)
"""
import logging

from fastapi import FastAPI
import uvicorn

from api import routes_mtd, routes_user, routes_subscriptions
from api.deps import feed, store
from config.settings import settings
from core.errors import ConfigurationError
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.response import ok
from services.push_service import FirebaseMessagingClient, init_firebase_app
from tools.service_time import resolve_timezone
from workers.arrival_poller import ArrivalPoller, PollerConfig

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION)

app.include_router(routes_user.router, prefix="/api/users", tags=["users"])
app.include_router(routes_subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(routes_mtd.router, prefix="/api/mtd", tags=["mtd"])

# Register centralized exception handlers
register_exception_handlers(app)

# Add request logging middleware (adds X-Request-ID header and logs)
app.middleware("http")(request_logging_middleware)

poller = ArrivalPoller(store, tz=resolve_timezone(settings.SERVICE_TIMEZONE))

@app.get("/health")
async def health():
    """Simple health endpoint used by load balancers and orchestrators."""
    return ok({"status": "ok", "poller_running": poller.is_running})

@app.on_event("startup")
async def on_startup():
    """
    On startup:
    - Create DB tables (development convenience). In production use Alembic migrations instead.
    - Start the poller if it is fully configured; otherwise serve the API only.
    """
    await store.create_tables()

    firebase_app = init_firebase_app(settings.FCM_SERVICE_ACCOUNT_PATH, settings.FCM_SERVICE_ACCOUNT)
    messaging_client = FirebaseMessagingClient(firebase_app) if firebase_app else None
    try:
        poller.start(PollerConfig.from_settings(messaging_client))
    except ConfigurationError as e:
        logger.warning("Poller not started (%s); set MTD_API_KEY and a Firebase service account", e)

@app.on_event("shutdown")
async def on_shutdown():
    poller.stop()
    await poller.wait_stopped()
    await feed.aclose()

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn/gunicorn with one worker per poller.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
