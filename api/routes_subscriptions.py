# api/routes_subscriptions.py
from fastapi import APIRouter, Depends, Query
from api.deps import get_store
from models.schemas import SubscribeRequest
from services.subscription_db_service import SubscriptionStore
from core.response import ok

router = APIRouter()

@router.post("")
async def subscribe(req: SubscribeRequest, store: SubscriptionStore = Depends(get_store)):
    """
    Create or update a subscription keyed on (email, stop_id, trip_id).

    Behavior / edge cases:
    - same key posted twice updates the existing row (no duplicate, no 409)
    - notify_before_minutes omitted: existing value kept, poller default applies to new rows
    - 422: negative notify_before_minutes or missing fields
    """
    sub = await store.upsert_subscription(
        email=req.email,
        stop_id=req.stop_id,
        trip_id=req.trip_id,
        notify_before_minutes=req.notify_before_minutes,
    )
    return ok(sub)

@router.get("")
async def list_subscriptions(
    limit: int = Query(200, ge=1, le=200),
    store: SubscriptionStore = Depends(get_store),
):
    """Debug listing, capped at 200 rows."""
    subs = await store.list_subscriptions(limit=limit)
    return ok({"count": len(subs), "subscriptions": [s.model_dump(mode="json") for s in subs]})

@router.get("/by-email/{email}")
async def list_by_email(email: str, store: SubscriptionStore = Depends(get_store)):
    subs = await store.list_by_email(email)
    return ok({"count": len(subs), "subscriptions": [s.model_dump(mode="json") for s in subs]})
