import sys
from pathlib import Path
from typing import Callable, Dict

import httpx
import pytest
import pytest_asyncio


# Ensure project root is on sys.path so `services.*` / `workers.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.db import build_engine, build_session_maker
from core.errors import DispatchError
from services.subscription_db_service import SubscriptionStore


class FakeMessagingClient:
    """Records every send; optionally fails like a provider outage."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def send(self, tokens, title, body, data):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": dict(data)})
        if self.fail:
            raise DispatchError("provider unavailable")


def stop_times_body(*entries):
    """Feed body in the MTD getstoptimesbystop shape; entries are (trip_id, arrival_time)."""
    return {
        "stop_times": [
            {
                "arrival_time": arrival,
                "departure_time": arrival,
                "stop_id": "IU:1",
                "trip": {"trip_id": trip_id, "trip_headsign": "Illini Union"},
            }
            for trip_id, arrival in entries
        ]
    }


def feed_transport(responses: Dict[str, Callable[[httpx.Request], httpx.Response]]):
    """
    httpx MockTransport routing on the stop_id query param.

    `responses` maps stop_id -> callable(request) returning a response; the
    transport records requests on `.requests`.
    """
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        stop_id = request.url.params.get("stop_id")
        if stop_id not in responses:
            return httpx.Response(404, json={"status": {"code": 404, "msg": "unknown stop"}})
        return responses[stop_id](request)

    transport = httpx.MockTransport(handler)
    transport.requests = requests
    return transport


@pytest_asyncio.fixture()
async def store(tmp_path):
    """Store on a throwaway SQLite file so concurrent sessions see each other's commits."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    store = SubscriptionStore(build_session_maker(engine))
    await store.create_tables()
    yield store
    await engine.dispose()


@pytest.fixture()
def messaging():
    return FakeMessagingClient()
