"""
Firebase Cloud Messaging client.

The poller talks to any object with:

    async def send(tokens: list[str], title: str, body: str, data: dict[str, str]) -> None

raising core.errors.DispatchError on failure. FirebaseMessagingClient is the
production implementation; tests pass fakes with the same method.
"""
import asyncio
import json
import logging
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from core.errors import ConfigurationError, DispatchError

logger = logging.getLogger(__name__)


def init_firebase_app(service_account_path: Optional[str] = None,
                      service_account_json: Optional[str] = None):
    """
    Initialize (or reuse) the default Firebase app.

    Returns None when no service account is configured, so callers can decide
    whether push delivery is required.
    """
    try:
        app = firebase_admin.get_app()
        logger.info("Firebase app already initialized")
        return app
    except ValueError:
        pass

    if service_account_path:
        cred = credentials.Certificate(service_account_path)
    elif service_account_json:
        try:
            cred = credentials.Certificate(json.loads(service_account_json))
        except ValueError as e:
            raise ConfigurationError(f"FCM_SERVICE_ACCOUNT is not valid JSON: {e}") from e
    else:
        logger.warning("No Firebase service account configured; push delivery disabled")
        return None

    app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin SDK initialized")
    return app


class FirebaseMessagingClient:
    """Sends one multicast message per notification to all of a user's tokens."""

    def __init__(self, app=None):
        self.app = app

    def _send_sync(self, tokens: List[str], title: str, body: str, data: Dict[str, str]):
        message = messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data=data,
            android=messaging.AndroidConfig(priority="high"),
        )
        return messaging.send_each_for_multicast(message, app=self.app)

    async def send(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> None:
        try:
            # firebase_admin is blocking; keep it off the event loop
            response = await asyncio.to_thread(self._send_sync, tokens, title, body, data)
        except (exceptions.FirebaseError, ValueError) as e:
            raise DispatchError(f"FCM send failed: {e}") from e

        if response.success_count == 0:
            errors = [str(r.exception) for r in response.responses if r.exception]
            raise DispatchError(f"FCM rejected all {len(tokens)} tokens: {errors[:3]}")
        if response.failure_count:
            # per-token failures (stale tokens etc.) are the provider's concern
            logger.warning("FCM partial failure: %d/%d tokens failed",
                           response.failure_count, len(tokens))
