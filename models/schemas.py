from pydantic import BaseModel, Field
from typing import Optional

class RegisterTokenRequest(BaseModel):
    email: str = Field(..., min_length=3)
    fcm_token: str = Field(..., min_length=1)

class SubscribeRequest(BaseModel):
    email: str = Field(..., min_length=3)
    stop_id: str = Field(..., min_length=1)
    trip_id: str = Field(..., min_length=1)
    notify_before_minutes: Optional[float] = Field(None, ge=0, description="Minutes before arrival to notify")
