"""
Arrival notification poller.

Purpose:
- Periodically reconcile subscriptions against the MTD stop-times feed
- Notify riders once per scheduled arrival when their trip is about to reach their stop
- Run as a separate process (python -m workers.arrival_poller) or inside the API app

Cycle:
  store.list_active -> group_by_stop -> per stop, concurrently:
  fetch -> match -> gate -> dispatch -> join

Cycles are serialized: the next cycle starts `poll_interval` seconds after the
previous one started, or right away if that cycle overran. There is never more
than one cycle in flight per poller.

Production notes:
- A failed stop fetch only skips that stop until the next cycle
- No exception inside a cycle stops the loop; only stop() does
"""
import asyncio
import logging
import signal
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional

import httpx

from config.settings import settings
from core.errors import ConfigurationError, FetchError
from services.arrival_matcher import match_arrivals
from services.dispatcher import Dispatcher, DispatchOutcome
from services.notification_gate import should_notify
from services.schedule_fetcher import ScheduleFetcher, StopFetchResult
from services.subscription_db_service import SubscriptionStore
from models.subscription import Subscription
from tools.service_time import format_service_date, local_now

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    schedule_credential: Optional[str]
    messaging_client: Any
    poll_interval: float = 60.0
    default_notify_window_minutes: float = 5.0

    @classmethod
    def from_settings(cls, messaging_client) -> "PollerConfig":
        return cls(
            schedule_credential=settings.MTD_API_KEY,
            messaging_client=messaging_client,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            default_notify_window_minutes=settings.NOTIFY_WINDOW_MINUTES,
        )


@dataclass
class PollSummary:
    """What one cycle did; per-stop fetch outcomes are kept in `results`."""
    results: Dict[str, StopFetchResult] = field(default_factory=dict)
    candidates: int = 0
    sent: int = 0
    skipped_no_tokens: int = 0
    failed: int = 0

    @property
    def stops(self) -> int:
        return len(self.results)

    @property
    def failed_stops(self) -> List[str]:
        return [stop_id for stop_id, result in self.results.items() if not result.ok]


def group_by_stop(subscriptions: Iterable[Subscription]) -> Dict[str, List[Subscription]]:
    """Collapse subscriptions sharing a stop so each stop is queried once."""
    groups: Dict[str, List[Subscription]] = defaultdict(list)
    for sub in subscriptions:
        groups[sub.stop_id].append(sub)
    return dict(groups)


class ArrivalPoller:
    """Owns its loop task and running flag; start(config) / stop() lifecycle."""

    def __init__(
        self,
        store: SubscriptionStore,
        tz: Optional[tzinfo] = None,
        read_limit: Optional[int] = None,
        base_url: Optional[str] = None,
        http_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.tz = tz
        self.read_limit = read_limit or settings.SUBSCRIPTION_READ_LIMIT
        self.base_url = base_url or settings.MTD_API_BASE
        self.http_timeout = http_timeout or settings.HTTP_TIMEOUT_SECONDS
        self._http_client = http_client

        self._config: Optional[PollerConfig] = None
        self._fetcher: Optional[ScheduleFetcher] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def _validate(config: PollerConfig):
        if not config.schedule_credential:
            raise ConfigurationError("schedule API credential (MTD_API_KEY) is required")
        if config.messaging_client is None:
            raise ConfigurationError("messaging client is required")

    def configure(self, config: PollerConfig):
        """Validate config and build the fetcher/dispatcher for it."""
        self._validate(config)
        self._config = config
        self._fetcher = ScheduleFetcher(
            config.schedule_credential, self.base_url,
            timeout=self.http_timeout, client=self._http_client,
        )
        self._dispatcher = Dispatcher(self.store, config.messaging_client)

    def start(self, config: PollerConfig):
        """
        Validate config, run one cycle immediately, then one every poll_interval.

        No-op while already running. After stop(), a cycle still in flight
        finishes before the new loop runs its first one.
        Must be called from a running event loop.
        Raises ConfigurationError when the credential or messaging client is missing.
        """
        self._validate(config)
        if self._running:
            return
        previous = self._task if self._task is not None and not self._task.done() else None
        self.configure(config)
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._stop_event, self._fetcher, config.poll_interval, previous)
        )
        logger.info("Arrival poller started, interval=%ss window=%smin",
                    config.poll_interval, config.default_notify_window_minutes)

    def stop(self):
        """Stop scheduling cycles; a cycle already in flight runs to completion."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        logger.info("Arrival poller stopping")

    async def wait_stopped(self):
        """Wait until the loop task has exited."""
        if self._task is not None:
            await self._task

    async def _run(
        self,
        stop_event: asyncio.Event,
        fetcher: ScheduleFetcher,
        interval: float,
        previous: Optional[asyncio.Task] = None,
    ):
        loop = asyncio.get_running_loop()
        try:
            if previous is not None:
                # one cycle in flight per poller, across restarts too
                await asyncio.wait({previous})
            while not stop_event.is_set():
                started = loop.time()
                await self.poll_once()
                delay = max(0.0, interval - (loop.time() - started))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            await fetcher.aclose()
            logger.info("Arrival poller stopped after %d cycles", self.cycles)

    async def poll_once(self, now: Optional[datetime] = None) -> PollSummary:
        """
        Run one full cycle.

        Raises ConfigurationError if the poller was never configured. Anything
        that fails inside the cycle is logged and absorbed.

        `now` defaults to the current time in the poller's timezone; a naive
        `now` is taken to be in that timezone. Its date is the service date used
        for the feed query and arrival keys.
        """
        if self._config is None:
            raise ConfigurationError("poller is not configured; call start() or configure() first")

        if now is None:
            now = local_now(self.tz)
        elif now.tzinfo is None and self.tz is not None:
            now = now.replace(tzinfo=self.tz)

        summary = PollSummary()
        self.cycles += 1
        try:
            await self._poll(now, summary)
        except Exception as e:
            logger.exception("Poll cycle failed: %s", e)
            return summary

        if summary.results:
            logger.info(
                "Poll cycle done: stops=%d failed_stops=%d due=%d sent=%d no_tokens=%d send_failed=%d",
                summary.stops, len(summary.failed_stops), summary.candidates,
                summary.sent, summary.skipped_no_tokens, summary.failed,
            )
        return summary

    async def _poll(self, now: datetime, summary: PollSummary):
        subs = await self.store.list_active(limit=self.read_limit)
        if not subs:
            logger.debug("No subscriptions, nothing to poll")
            return

        groups = group_by_stop(subs)
        reference_date = now.date()
        outcomes = await asyncio.gather(*(
            self._process_stop(stop_id, stop_subs, now, reference_date, summary)
            for stop_id, stop_subs in groups.items()
        ), return_exceptions=True)
        for stop_id, outcome in zip(groups, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Stop %s task ended with %r", stop_id, outcome)

    async def _process_stop(
        self,
        stop_id: str,
        subs: List[Subscription],
        now: datetime,
        reference_date: date,
        summary: PollSummary,
    ):
        window = self._config.default_notify_window_minutes
        try:
            try:
                result = await self._fetcher.fetch_result(stop_id, format_service_date(reference_date))
            except Exception as e:
                logger.exception("Schedule fetch for stop %s failed unexpectedly: %s", stop_id, e)
                result = StopFetchResult(stop_id=stop_id, error=FetchError(stop_id, f"unexpected error: {e}"))
            summary.results[stop_id] = result
            if not result.ok:
                return

            candidates = match_arrivals(result.stop_times, subs, now, reference_date, self.tz)
            for candidate in candidates:
                if not should_notify(candidate, window):
                    continue
                summary.candidates += 1
                outcome = await self._dispatcher.dispatch(candidate)
                if outcome is DispatchOutcome.SENT:
                    summary.sent += 1
                elif outcome is DispatchOutcome.NO_TOKENS:
                    summary.skipped_no_tokens += 1
                else:
                    summary.failed += 1
        except Exception as e:
            logger.exception("Processing stop %s failed: %s", stop_id, e)


async def main():
    """Entry point for running the poller on its own."""
    from core.db import async_session_maker
    from core.logging import configure_logging
    from services.push_service import FirebaseMessagingClient, init_firebase_app
    from tools.service_time import resolve_timezone

    configure_logging(settings.LOG_LEVEL)
    firebase_app = init_firebase_app(settings.FCM_SERVICE_ACCOUNT_PATH, settings.FCM_SERVICE_ACCOUNT)
    messaging_client = FirebaseMessagingClient(firebase_app) if firebase_app else None

    store = SubscriptionStore(async_session_maker)
    await store.create_tables()

    poller = ArrivalPoller(store, tz=resolve_timezone(settings.SERVICE_TIMEZONE))
    poller.start(PollerConfig.from_settings(messaging_client))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, poller.stop)
    await poller.wait_stopped()

if __name__ == "__main__":
    # Run worker: python -m workers.arrival_poller
    asyncio.run(main())
