# models/subscription.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class Subscription(BaseModel):
    """Read-only snapshot of a subscription row, safe to pass across tasks."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    email: str
    stop_id: str
    trip_id: str
    notify_before_minutes: Optional[float] = None
    last_notified_for: Optional[str] = None
    created_at: Optional[datetime] = None


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    email: str
    fcm_tokens: List[str] = []
    created_at: Optional[datetime] = None
