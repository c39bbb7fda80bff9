"""
Arrival notification dispatcher.

Purpose:
- Resolve the subscriber's current push tokens (read fresh every dispatch)
- Build the "arriving soon" payload and send it to all tokens in one call
- Commit the idempotency marker (last_notified_for) only after a successful send

Delivery is at-least-once: a failed send leaves the marker untouched so the
same arrival is retried on the next poll cycle while it is still in window.
"""
import enum
import logging
import math

from core.errors import DispatchError
from services.arrival_matcher import ArrivalCandidate
from services.subscription_db_service import SubscriptionStore

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Bus arriving soon"


class DispatchOutcome(str, enum.Enum):
    SENT = "sent"
    NO_TOKENS = "no_tokens"
    FAILED = "failed"


def build_payload(candidate: ArrivalCandidate) -> dict:
    """title/body/data for one arrival; FCM data values must be strings."""
    sub = candidate.subscription
    arrival = candidate.stop_time.arrival_time
    minutes = math.floor(candidate.diff_minutes + 0.5)
    return {
        "title": NOTIFICATION_TITLE,
        "body": (
            f"Your trip {sub.trip_id} is arriving at stop {sub.stop_id} "
            f"at {arrival} (in {minutes} min)"
        ),
        "data": {
            "trip_id": sub.trip_id,
            "stop_id": sub.stop_id,
            "arrival_time": arrival,
        },
    }


class Dispatcher:
    def __init__(self, store: SubscriptionStore, messaging_client):
        self.store = store
        self.messaging_client = messaging_client

    async def dispatch(self, candidate: ArrivalCandidate) -> DispatchOutcome:
        sub = candidate.subscription
        tokens = await self.store.get_user_tokens(sub.email)
        if not tokens:
            # No registered device yet; try again next cycle while in window
            logger.debug("No push tokens for %s, skipping %s", sub.email, candidate.arrival_key)
            return DispatchOutcome.NO_TOKENS

        payload = build_payload(candidate)
        try:
            await self.messaging_client.send(tokens, payload["title"], payload["body"], payload["data"])
        except DispatchError as e:
            logger.error("Push send failed for %s (%s @ %s, %s): %s",
                         sub.email, sub.trip_id, sub.stop_id, candidate.arrival_key, e)
            return DispatchOutcome.FAILED
        except Exception as e:
            logger.exception("Unexpected messaging error for %s (%s): %s", sub.email, candidate.arrival_key, e)
            return DispatchOutcome.FAILED

        logger.info("Notified %s for %s @ %s (%s)",
                    sub.email, sub.trip_id, sub.stop_id, candidate.stop_time.arrival_time)
        try:
            updated = await self.store.mark_notified(sub.id, candidate.arrival_key)
        except Exception as e:
            # Sent but not recorded: the arrival may be notified again next cycle
            logger.exception("Failed to record notification marker for subscription %s: %s", sub.id, e)
        else:
            if not updated:
                logger.warning("Subscription %s disappeared before marker %s was stored",
                               sub.id, candidate.arrival_key)
        return DispatchOutcome.SENT
