import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from core.errors import ConfigurationError
from tools.service_time import local_now
from models.subscription import Subscription
from workers.arrival_poller import ArrivalPoller, PollerConfig, group_by_stop

from conftest import feed_transport, stop_times_body

NOW = datetime(2025, 3, 14, 14, 0, 0)


def ok_feed(*entries):
    return lambda request: httpx.Response(200, json=stop_times_body(*entries))


def make_poller(store, messaging, responses, interval=60.0, tz=None):
    transport = feed_transport(responses)
    poller = ArrivalPoller(store, tz=tz, base_url="https://feed.test", http_client=httpx.AsyncClient(transport=transport))
    config = PollerConfig(
        schedule_credential="secret-key",
        messaging_client=messaging,
        poll_interval=interval,
        default_notify_window_minutes=5,
    )
    return poller, config, transport


def test_group_by_stop_collapses_shared_stops():
    subs = [
        Subscription(id=1, email="a@x.com", stop_id="IU:1", trip_id="T1"),
        Subscription(id=2, email="b@x.com", stop_id="IT:2", trip_id="T2"),
        Subscription(id=3, email="c@x.com", stop_id="IU:1", trip_id="T3"),
    ]
    groups = group_by_stop(subs)
    assert list(groups) == ["IU:1", "IT:2"]
    assert [s.id for s in groups["IU:1"]] == [1, 3]


@pytest.mark.asyncio
async def test_due_arrival_is_notified_once(store, messaging):
    await store.register_token("a@x.com", "tok-1")
    await store.upsert_subscription("a@x.com", "IU:1", "T1", notify_before_minutes=5)
    poller, config, _ = make_poller(store, messaging, {"IU:1": ok_feed(("T1", "14:02:00"), ("T7", "14:01:00"))})
    poller.configure(config)

    first = await poller.poll_once(now=NOW)
    assert first.sent == 1
    [saved] = await store.list_by_email("a@x.com")
    assert saved.last_notified_for == "20250314_14:02:00"

    second = await poller.poll_once(now=datetime(2025, 3, 14, 14, 1, 0))
    assert second.sent == 0
    assert second.candidates == 0
    assert len(messaging.calls) == 1


@pytest.mark.asyncio
async def test_one_query_per_stop(store, messaging):
    for email in ("a@x.com", "b@x.com", "c@x.com"):
        await store.upsert_subscription(email, "IU:1", "T1")
    poller, config, transport = make_poller(store, messaging, {"IU:1": ok_feed(("T1", "18:00:00"))})
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)

    assert summary.stops == 1
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_failed_stop_does_not_block_other_stops(store, messaging):
    await store.register_token("b@x.com", "tok-b")
    await store.upsert_subscription("a@x.com", "BAD", "T1")
    await store.upsert_subscription("b@x.com", "IU:1", "T2")
    poller, config, _ = make_poller(store, messaging, {
        "BAD": lambda request: httpx.Response(500, json={"status": {"code": 500}}),
        "IU:1": ok_feed(("T2", "14:03:00")),
    })
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)

    assert summary.failed_stops == ["BAD"]
    assert summary.sent == 1
    assert messaging.calls[0]["data"]["trip_id"] == "T2"


@pytest.mark.asyncio
async def test_user_without_tokens_stays_eligible(store, messaging):
    await store.upsert_subscription("a@x.com", "IU:1", "T1", notify_before_minutes=5)
    poller, config, _ = make_poller(store, messaging, {"IU:1": ok_feed(("T1", "14:02:00"))})
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)
    assert summary.candidates == 1
    assert summary.skipped_no_tokens == 1
    assert messaging.calls == []

    # token registered a minute later, still inside the window
    await store.register_token("a@x.com", "tok-1")
    later = await poller.poll_once(now=datetime(2025, 3, 14, 14, 1, 0))
    assert later.sent == 1


@pytest.mark.asyncio
async def test_default_window_applies_when_subscription_has_none(store, messaging):
    await store.register_token("a@x.com", "tok-1")
    await store.upsert_subscription("a@x.com", "IU:1", "T1")
    poller, config, _ = make_poller(store, messaging, {"IU:1": ok_feed(("T1", "14:06:00"), ("T1", "14:04:00"))})
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)

    assert summary.sent == 1
    assert messaging.calls[0]["data"]["arrival_time"] == "14:04:00"


@pytest.mark.asyncio
async def test_store_failure_is_absorbed(messaging):
    class BrokenStore:
        async def list_active(self, limit=1000):
            raise RuntimeError("db down")

    poller, config, _ = make_poller(BrokenStore(), messaging, {})
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)
    assert summary.stops == 0


def test_start_requires_credential_and_messaging_client(messaging):
    poller = ArrivalPoller(store=None)
    with pytest.raises(ConfigurationError):
        poller.start(PollerConfig(schedule_credential="", messaging_client=messaging))
    with pytest.raises(ConfigurationError):
        poller.start(PollerConfig(schedule_credential="key", messaging_client=None))
    assert not poller.is_running


@pytest.mark.asyncio
async def test_start_runs_immediately_repeats_and_stops(store, messaging):
    poller, config, _ = make_poller(store, messaging, {}, interval=0.05)

    poller.start(config)
    first_task = poller._task
    poller.start(config)  # already running: no-op
    assert poller._task is first_task
    assert poller.is_running

    for _ in range(100):
        if poller.cycles >= 3:
            break
        await asyncio.sleep(0.02)
    assert poller.cycles >= 3

    poller.stop()
    await asyncio.wait_for(poller.wait_stopped(), timeout=2)
    assert not poller.is_running
    cycles = poller.cycles
    await asyncio.sleep(0.15)
    assert poller.cycles == cycles


@pytest.mark.asyncio
async def test_stop_lets_in_flight_cycle_finish(messaging):
    class SlowStore:
        def __init__(self):
            self.release = asyncio.Event()
            self.entered = asyncio.Event()
            self.completed = 0

        async def list_active(self, limit=1000):
            self.entered.set()
            await self.release.wait()
            self.completed += 1
            return []

    slow = SlowStore()
    poller, config, _ = make_poller(slow, messaging, {}, interval=0.01)
    poller.start(config)
    await asyncio.wait_for(slow.entered.wait(), timeout=2)

    poller.stop()
    slow.release.set()
    await asyncio.wait_for(poller.wait_stopped(), timeout=2)

    assert slow.completed == 1
    assert poller.cycles == 1


@pytest.mark.asyncio
async def test_unexpected_http_error_only_fails_its_stop(store, messaging):
    """A stop whose request dies with a non-transport httpx error is recorded as failed; others still dispatch."""
    def undecodable(request):
        raise httpx.DecodingError("bad gzip stream", request=request)

    await store.register_token("b@x.com", "tok-b")
    await store.upsert_subscription("a@x.com", "BAD", "T1")
    await store.upsert_subscription("b@x.com", "IU:1", "T2")
    poller, config, _ = make_poller(store, messaging, {
        "BAD": undecodable,
        "IU:1": ok_feed(("T2", "14:03:00")),
    })
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)

    assert summary.failed_stops == ["BAD"]
    assert summary.stops == 2
    assert summary.sent == 1
    assert [c["data"]["trip_id"] for c in messaging.calls] == ["T2"]


@pytest.mark.asyncio
async def test_unexpected_fetcher_exception_is_recorded_per_stop(store, messaging):
    await store.register_token("b@x.com", "tok-b")
    await store.upsert_subscription("a@x.com", "BAD", "T1")
    await store.upsert_subscription("b@x.com", "IU:1", "T2")
    poller, config, _ = make_poller(store, messaging, {"IU:1": ok_feed(("T2", "14:03:00"))})
    poller.configure(config)

    real_fetch = poller._fetcher.fetch_result

    async def fetch_result(stop_id, service_date):
        if stop_id == "BAD":
            raise RuntimeError("boom")
        return await real_fetch(stop_id, service_date)

    poller._fetcher.fetch_result = fetch_result

    summary = await poller.poll_once(now=NOW)

    assert summary.failed_stops == ["BAD"]
    assert summary.sent == 1


@pytest.mark.asyncio
async def test_naive_now_is_read_in_poller_timezone(store, messaging):
    await store.register_token("a@x.com", "tok-1")
    await store.upsert_subscription("a@x.com", "IU:1", "T1", notify_before_minutes=5)
    poller, config, _ = make_poller(store, messaging, {"IU:1": ok_feed(("T1", "14:02:00"))},
                                    tz=ZoneInfo("America/Chicago"))
    poller.configure(config)

    summary = await poller.poll_once(now=NOW)

    assert summary.failed_stops == []
    assert summary.sent == 1


@pytest.mark.asyncio
async def test_restart_waits_for_in_flight_cycle(messaging):
    class GatedStore:
        def __init__(self):
            self.release = asyncio.Event()
            self.entered = asyncio.Event()
            self.calls = 0
            self.active = 0
            self.max_active = 0

        async def list_active(self, limit=1000):
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.entered.set()
            try:
                await self.release.wait()
            finally:
                self.active -= 1
            return []

    gated = GatedStore()
    poller, config, _ = make_poller(gated, messaging, {}, interval=0.01)
    poller.start(config)
    await asyncio.wait_for(gated.entered.wait(), timeout=2)

    poller.stop()
    poller.start(config)
    assert poller.is_running
    await asyncio.sleep(0.05)
    assert gated.calls == 1

    gated.release.set()
    for _ in range(100):
        if gated.calls >= 2:
            break
        await asyncio.sleep(0.02)
    assert gated.calls >= 2
    assert gated.max_active == 1

    poller.stop()
    await asyncio.wait_for(poller.wait_stopped(), timeout=2)


@pytest.mark.asyncio
async def test_running_loop_survives_a_failed_cycle(store, messaging):
    class FlakyStore:
        """Fails the first read, then serves the real store."""

        def __init__(self, inner):
            self.inner = inner
            self.reads = 0

        async def list_active(self, limit=1000):
            self.reads += 1
            if self.reads == 1:
                raise RuntimeError("db down")
            return await self.inner.list_active(limit=limit)

        def __getattr__(self, name):
            return getattr(self.inner, name)

    await store.register_token("a@x.com", "tok-1")
    await store.upsert_subscription("a@x.com", "IU:1", "T1", notify_before_minutes=5)
    flaky = FlakyStore(store)
    # arrival two minutes from the moment the loop runs, on the service-day clock
    soon = local_now().replace(microsecond=0)
    arrival_at = soon + timedelta(minutes=2)
    hours = arrival_at.hour + 24 * (arrival_at.date() - soon.date()).days
    arrival = f"{hours:02d}:{arrival_at.minute:02d}:{arrival_at.second:02d}"
    poller, config, _ = make_poller(flaky, messaging, {"IU:1": ok_feed(("T1", arrival))}, interval=0.02)

    poller.start(config)
    for _ in range(100):
        if messaging.calls:
            break
        await asyncio.sleep(0.02)
    poller.stop()
    await asyncio.wait_for(poller.wait_stopped(), timeout=2)

    assert flaky.reads >= 2
    assert poller.cycles >= 2
    assert len(messaging.calls) == 1
