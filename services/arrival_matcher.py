# services/arrival_matcher.py
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, List, Optional

from models.schedule import StopTime
from models.subscription import Subscription
from services.notification_gate import make_arrival_key
from tools.service_time import format_service_date, parse_service_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArrivalCandidate:
    """A scheduled arrival of a subscribed trip at the subscribed stop."""
    subscription: Subscription
    stop_time: StopTime
    arrival_at: datetime
    diff_minutes: float
    arrival_key: str


def _minutes_between(start: datetime, end: datetime) -> float:
    if start.tzinfo is not None and end.tzinfo is not None:
        # same-zone aware subtraction ignores DST offset changes; compare in UTC
        start, end = start.astimezone(timezone.utc), end.astimezone(timezone.utc)
    return (end - start).total_seconds() / 60.0


def match_arrivals(
    stop_times: Iterable[StopTime],
    subscriptions: Iterable[Subscription],
    now: datetime,
    reference_date: date,
    tz: Optional[tzinfo] = None,
) -> List[ArrivalCandidate]:
    """
    Pair each subscription with the stop-times of its trip.

    Trip ids must match exactly: a stop serves many unrelated trips.
    Window and idempotency checks are left to the notification gate.
    """
    stop_times = list(stop_times)
    service_date = format_service_date(reference_date)
    candidates = []
    for sub in subscriptions:
        for st in stop_times:
            if st.trip_id != sub.trip_id:
                continue
            try:
                arrival_at = parse_service_time(reference_date, st.arrival_time, tz)
            except ValueError:
                logger.warning("Skipping trip %s at stop %s: bad time %r",
                               st.trip_id, sub.stop_id, st.arrival_time)
                continue
            diff_minutes = _minutes_between(now, arrival_at)
            candidates.append(ArrivalCandidate(
                subscription=sub,
                stop_time=st,
                arrival_at=arrival_at,
                diff_minutes=diff_minutes,
                arrival_key=make_arrival_key(service_date, st.arrival_time),
            ))
    return candidates
