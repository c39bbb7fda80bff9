# api/routes_user.py
from fastapi import APIRouter, HTTPException, Depends
from api.deps import get_store
from models.schemas import RegisterTokenRequest
from services.subscription_db_service import SubscriptionStore
from core.response import ok

router = APIRouter()

@router.post("/register-token")
async def register_token(req: RegisterTokenRequest, store: SubscriptionStore = Depends(get_store)):
    """Add a push token for an email (creates the user on first call)."""
    user = await store.register_token(req.email, req.fcm_token)
    return ok(user)

@router.get("/tokens/{email}")
async def get_tokens(email: str, store: SubscriptionStore = Depends(get_store)):
    user = await store.get_user(email)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return ok({"email": user.email, "fcm_tokens": user.fcm_tokens})
