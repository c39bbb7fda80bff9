# api/routes_mtd.py
"""
Thin proxy over the MTD feed for the rider-facing map/schedule screens.

Stop ids may name a stop point ("IU:1"). The feed is queried with the parent
stop ("IU") and results are narrowed to the requested point locally.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_feed
from config.settings import settings
from core.errors import FetchError, UpstreamError
from core.response import ok
from services.schedule_fetcher import STOP_TIMES_METHOD, ScheduleFetcher
from tools.service_time import format_service_date, local_now, resolve_timezone

logger = logging.getLogger(__name__)

router = APIRouter()

DEPARTURES_METHOD = "getdeparturesbystop"
STOP_METHOD = "getstop"
SHAPE_METHOD = "GetShape"

SERVICE_TZ = resolve_timezone(settings.SERVICE_TIMEZONE)

# Known stops, used when the feed has no coordinates for them (or is down)
FALLBACK_COORDS = {
    "IU": (40.1099, -88.2272),
    "IU:1": (40.1099, -88.2272),
    "IU:2": (40.1099, -88.2272),
}
FALLBACK_NAMES = {"IU": "Illini Union"}

_LAT_KEYS = ("stop_lat", "stop_latitude", "stop_point_lat", "stop_point_latitude", "latitude", "lat")
_LON_KEYS = ("stop_lon", "stop_longitude", "stop_point_lon", "stop_point_longitude", "longitude", "lon")


def parse_stop_id(stop_id: str) -> Tuple[str, Optional[str]]:
    """Split "IU:1" into ("IU", "IU:1"); a bare parent id has no point."""
    parent_id, sep, _ = str(stop_id or "").partition(":")
    return parent_id, (stop_id if sep else None)


def matches_point(obj: Any, parent_id: str, point_id: Optional[str]) -> bool:
    """True when a feed record belongs to the requested stop point (always, if none was requested)."""
    if not point_id:
        return True
    if not isinstance(obj, dict):
        return False

    sp = obj.get("stop_point") or obj.get("stopPoint") or {}
    if not isinstance(sp, dict):
        sp = {}
    ids = [sp.get("stop_id"), sp.get("stop_point_id"), obj.get("stop_id"), obj.get("stop_point_id")]
    for candidate in filter(None, ids):
        if candidate == point_id:
            return True
        # some records carry only the point suffix ("1")
        if isinstance(candidate, str) and ":" not in candidate and f"{parent_id}:{candidate}" == point_id:
            return True
    return False


def extract_lat_lon(obj: Any) -> Tuple[Optional[float], Optional[float]]:
    if not isinstance(obj, dict):
        return None, None
    lat = next((obj[k] for k in _LAT_KEYS if obj.get(k) is not None), None)
    lon = next((obj[k] for k in _LON_KEYS if obj.get(k) is not None), None)
    return lat, lon


def _require_key(feed: ScheduleFetcher):
    if not feed.api_key:
        raise HTTPException(status_code=500, detail="MTD_API_KEY is not configured")


async def _call_feed(feed: ScheduleFetcher, method: str, params: Dict[str, Any], ref: str) -> Dict[str, Any]:
    """Feed call with fetch errors mapped to 502 Bad Gateway."""
    try:
        return await feed.get_json(method, params, ref)
    except UpstreamError as e:
        logger.error("MTD %s upstream error for %s: %s", method, ref, e)
        raise HTTPException(status_code=502, detail=f"upstream error (status={e.status_code})")
    except FetchError as e:
        logger.error("MTD %s request failed for %s: %s", method, ref, e)
        raise HTTPException(status_code=502, detail="upstream unreachable")


@router.get("/stop-times")
async def stop_times(stop_id: str = Query(..., min_length=1), feed: ScheduleFetcher = Depends(get_feed)):
    """Today's scheduled stop-times, narrowed to the stop point when one is given."""
    _require_key(feed)
    parent_id, point_id = parse_stop_id(stop_id)
    service_date = format_service_date(local_now(SERVICE_TZ).date())

    data = await _call_feed(feed, STOP_TIMES_METHOD, {"stop_id": parent_id, "date": service_date}, stop_id)
    if point_id and isinstance(data.get("stop_times"), list):
        data["stop_times"] = [st for st in data["stop_times"] if matches_point(st, parent_id, point_id)]
    return ok(data)


@router.get("/departures")
async def departures(
    stop_id: str = Query(..., min_length=1),
    pt: int = Query(60, ge=0, le=60, description="preview time in minutes"),
    feed: ScheduleFetcher = Depends(get_feed),
):
    """Live departures (carries shape ids for the map)."""
    _require_key(feed)
    parent_id, point_id = parse_stop_id(stop_id)

    data = await _call_feed(feed, DEPARTURES_METHOD, {"stop_id": parent_id, "pt": pt}, stop_id)
    if point_id and isinstance(data.get("departures"), list):
        data["departures"] = [d for d in data["departures"] if matches_point(d, parent_id, point_id)]
    return ok(data)


@router.get("/shape")
async def shape(shape_id: str = Query(..., min_length=1), feed: ScheduleFetcher = Depends(get_feed)):
    _require_key(feed)
    return ok(await _call_feed(feed, SHAPE_METHOD, {"shape_id": shape_id}, shape_id))


@router.get("/stop-info")
async def stop_info(stop_id: str = Query(..., min_length=1), feed: ScheduleFetcher = Depends(get_feed)):
    """
    Name and coordinates of a stop (point) for the map.

    Falls back to a small table of known stops when the key is missing, the
    feed fails, or it returns no coordinates. 404 when neither has the stop.
    """
    parent_id, point_id = parse_stop_id(stop_id)

    if not feed.api_key:
        logger.warning("MTD_API_KEY missing, stop-info uses fallback coordinates only")
    else:
        try:
            raw = await feed.get_json(STOP_METHOD, {"stop_id": parent_id}, stop_id)
        except FetchError as e:
            logger.warning("MTD getstop failed for %s: %s", stop_id, e)
        else:
            stops = raw.get("stops")
            stop_obj = (stops[0] if isinstance(stops, list) and stops else None) or raw.get("stop") or raw
            if not isinstance(stop_obj, dict):
                stop_obj = raw
            points = stop_obj.get("stop_points")

            chosen = stop_obj
            if point_id and isinstance(points, list):
                chosen = next((p for p in points if matches_point(p, parent_id, point_id)), stop_obj)

            lat, lon = extract_lat_lon(chosen)
            if lat is not None and lon is not None:
                return ok({
                    "stop_id": chosen.get("stop_id") or point_id or parent_id,
                    "stop_name": chosen.get("stop_name") or stop_obj.get("stop_name") or "Unknown stop (MTD)",
                    "stop_lat": lat,
                    "stop_lon": lon,
                    "source": "mtd",
                })
            logger.warning("MTD getstop returned no coordinates for %s", stop_id)

    coords = FALLBACK_COORDS.get(point_id or stop_id) or FALLBACK_COORDS.get(parent_id)
    if coords is None:
        raise HTTPException(status_code=404, detail="Stop not found and no fallback coordinates")
    return ok({
        "stop_id": point_id or stop_id,
        "stop_name": FALLBACK_NAMES.get(parent_id, "Unknown stop"),
        "stop_lat": coords[0],
        "stop_lon": coords[1],
        "source": "fallback",
    })
