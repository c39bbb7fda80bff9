"""
Schedule fetcher for the MTD stop-times feed.

Provides:
- ScheduleFetcher.get_json(method, params, ref): one raw feed call, errors mapped to FetchError.
- ScheduleFetcher.fetch_stop_times(stop_id, service_date): one upstream query per stop.
- ScheduleFetcher.fetch_result(stop_id, service_date): same, wrapped in a StopFetchResult
  so callers never see a raised FetchError.
- normalize_stop_time(raw): map a raw feed record onto models.schedule.StopTime.

Raw feed shape (getstoptimesbystop):
    {
        "stop_times": [
            {"arrival_time": "14:02:00", "departure_time": "14:02:00",
             "stop_id": "IU:1", "trip": {"trip_id": "T1", "trip_headsign": "..."}},
            ...
        ]
    }
Only this module knows about that shape.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from core.errors import FetchError, NetworkError, UpstreamError
from models.schedule import StopTime

logger = logging.getLogger(__name__)

STOP_TIMES_METHOD = "getstoptimesbystop"

# Field spellings seen across feed versions, in order of preference
_TRIP_ID_KEYS = ("trip_id", "tripId")
_TIME_KEYS = ("arrival_time", "arrivalTime", "scheduled_arrival", "departure_time")


@dataclass
class StopFetchResult:
    """Outcome of one stop's fetch: either stop_times or error is set."""
    stop_id: str
    stop_times: List[StopTime] = field(default_factory=list)
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _first(raw: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def normalize_stop_time(raw: Dict[str, Any]) -> Optional[StopTime]:
    """
    Convert one raw stop-time record into a StopTime.

    Returns None when the record has no trip id or no scheduled time.
    """
    if not isinstance(raw, dict):
        return None

    trip = raw.get("trip") if isinstance(raw.get("trip"), dict) else {}
    trip_id = _first(trip, _TRIP_ID_KEYS) or _first(raw, _TRIP_ID_KEYS)
    arrival_time = _first(raw, _TIME_KEYS)
    if not trip_id or not arrival_time:
        return None

    return StopTime(
        trip_id=trip_id,
        arrival_time=arrival_time,
        stop_id=_first(raw, ("stop_id",)),
        headsign=_first(trip, ("trip_headsign", "headsign")),
    )


class ScheduleFetcher:
    """Async client for the schedule feed; share one per poller."""

    def __init__(self, api_key: Optional[str], base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_json(self, method: str, params: Dict[str, Any], ref: str) -> Dict[str, Any]:
        """
        Call one feed method and return its JSON object body.

        `ref` names what was asked for (stop id, shape id) in raised errors.

        Raises:
            UpstreamError: non-200 status or a body that is not a JSON object
            NetworkError: timeout, connection failure or any other transport-level error
        """
        client = await self._get_client()
        try:
            resp = await client.get(f"{self.base_url}/{method}", params={"key": self.api_key, **params})
        except httpx.TimeoutException as e:
            raise NetworkError(ref, f"timeout: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(ref, f"connection failed: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(ref, f"request failed: {e}") from e

        if resp.status_code != 200:
            raise UpstreamError(ref, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(ref, resp.status_code, "invalid JSON body") from e
        if not isinstance(data, dict):
            raise UpstreamError(ref, resp.status_code, "unexpected body shape")
        return data

    async def fetch_stop_times(self, stop_id: str, service_date: str) -> List[StopTime]:
        """
        Fetch the scheduled stop-times for a stop on a service date (YYYYMMDD).

        Raises UpstreamError / NetworkError as get_json does.
        """
        data = await self.get_json(STOP_TIMES_METHOD, {"stop_id": stop_id, "date": service_date}, stop_id)

        stop_times = []
        dropped = 0
        for raw in data.get("stop_times") or []:
            st = normalize_stop_time(raw)
            if st is None:
                dropped += 1
                continue
            stop_times.append(st)
        if dropped:
            logger.debug("Dropped %d unusable stop-time records for stop %s", dropped, stop_id)
        return stop_times

    async def fetch_result(self, stop_id: str, service_date: str) -> StopFetchResult:
        try:
            stop_times = await self.fetch_stop_times(stop_id, service_date)
        except FetchError as e:
            logger.warning("Schedule fetch failed for stop %s: %s", stop_id, e)
            return StopFetchResult(stop_id=stop_id, error=e)
        return StopFetchResult(stop_id=stop_id, stop_times=stop_times)
