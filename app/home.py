"""
Authenticated area under /app. The auth gate has already redirected anonymous
requests, so handlers here rely on get_current_user.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from auth import get_current_user
from config import APP_PREFIX
from context import AppContext, get_context
from models import UserRecord

router = APIRouter(prefix=APP_PREFIX)


def _profile(user: UserRecord) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "discriminator": user.discriminator,
        "avatar": user.avatar,
        "is_admin": user.is_admin,
        "daily_questions": user.daily_questions,
    }


@router.get("")
def home(user: UserRecord = Depends(get_current_user)):
    """Return the logged-in user's profile."""
    return _profile(user)


@router.get("/users")
async def list_users(
    user: UserRecord = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """Admin only: every registered user."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    users = await run_in_threadpool(ctx.users.list_all)
    return {"users": [_profile(u) for u in users]}
