# models/schedule.py
from pydantic import BaseModel
from typing import Optional


class StopTime(BaseModel):
    """
    One scheduled stop-time from the feed, normalized.

    arrival_time is the literal feed string (HH:MM:SS, hour may be >= 24);
    it is part of the arrival key, so it is never reformatted.
    """
    trip_id: str
    arrival_time: str
    stop_id: Optional[str] = None
    headsign: Optional[str] = None
