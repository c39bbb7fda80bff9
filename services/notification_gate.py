"""
Notification gate: decides whether a matched arrival should be notified.

An arrival is notified when it is due (0 <= minutes-until-arrival <= window) and
the subscription's last_notified_for differs from the arrival key. The key is
built from the literal schedule string, so it stays stable across every poll of
the same service day.
"""
from typing import Optional

from models.subscription import Subscription


def make_arrival_key(service_date: str, scheduled_time: str) -> str:
    """"20250101" + "14:02:00" -> "20250101_14:02:00"."""
    return f"{service_date}_{scheduled_time}"


def resolve_window(sub: Subscription, default_window: float) -> float:
    window: Optional[float] = sub.notify_before_minutes
    if window is not None and window >= 0:
        return window
    return default_window


def is_due(diff_minutes: float, window: float) -> bool:
    return 0 <= diff_minutes <= window


def already_notified(sub: Subscription, arrival_key: str) -> bool:
    return sub.last_notified_for == arrival_key


def should_notify(candidate, default_window: float) -> bool:
    """candidate: services.arrival_matcher.ArrivalCandidate."""
    sub = candidate.subscription
    if not is_due(candidate.diff_minutes, resolve_window(sub, default_window)):
        return False
    return not already_notified(sub, candidate.arrival_key)
