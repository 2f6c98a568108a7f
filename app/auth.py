"""
Discord OAuth 2.0 login, callback, session cookie, logout, current-user dependency.

- Login redirects to Discord with a CSRF state stored in a short-lived cookie.
- Callback validates state, exchanges code for tokens, creates the User on first
  login, replaces the user's active session with a new one holding encrypted
  tokens, sets the session cookie and redirects to /app.
- Logout deletes the session row and clears the cookie.
- get_current_user reads the identity attached by AuthGateMiddleware.
"""
import logging
import secrets
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse

from config import (
    APP_PREFIX,
    COOKIE_NAME,
    GENERIC_DAILY_LIMIT,
    LANDING_PATH,
    OAUTH_STATE_COOKIE_NAME,
    OAUTH_STATE_MAX_AGE,
)
from context import AppContext, get_context
from errors import AuthError
from models import SessionRecord, UserRecord, utcnow
from oauth import DiscordUser
from services.session_service import new_session_id, seal_tokens

logger = logging.getLogger(__name__)

router = APIRouter()


# Cookie flags: HttpOnly (no JS access), SameSite=Lax (CSRF mitigation), Secure when configured
def _cookie_kwargs(secure: bool = False) -> dict:
    return {
        "httponly": True,
        "samesite": "lax",
        "secure": secure,
        "path": "/",
    }


def session_cookie_max_age(expires_at: datetime, now: datetime | None = None) -> int:
    """Seconds from now until expires_at, never negative."""
    now = now or utcnow()
    return max(0, int((expires_at - now).total_seconds()))


def get_current_user(request: Request) -> UserRecord:
    """
    FastAPI dependency: the user attached by the auth gate.
    Raises 401 when the request is anonymous.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


@router.get("/auth/discord")
def discord_login(ctx: AppContext = Depends(get_context)):
    """
    Redirect to Discord OAuth consent. Sets a short-lived cookie with a random
    state value and includes the same state in the redirect URL so the callback
    can verify the request was not forged (CSRF protection).
    """
    state = secrets.token_urlsafe(32)
    redirect = RedirectResponse(url=ctx.oauth.authorization_url(state), status_code=307)
    redirect.set_cookie(
        OAUTH_STATE_COOKIE_NAME,
        state,
        max_age=OAUTH_STATE_MAX_AGE,
        **_cookie_kwargs(secure=ctx.settings.secure_cookies),
    )
    return redirect


def _ensure_user(ctx: AppContext, profile: DiscordUser) -> UserRecord:
    user = ctx.users.get(profile.id)
    if user is None:
        user = UserRecord(
            id=profile.id,
            username=profile.username,
            discriminator=profile.discriminator,
            avatar=profile.avatar,
            is_admin=ctx.settings.admin_id is not None and profile.id == ctx.settings.admin_id,
            joined_at=utcnow(),
            daily_questions=GENERIC_DAILY_LIMIT,
        )
        ctx.users.create(user)
        logger.info("Created user %s (%s)", user.id, user.username)
    return user


def _start_session(ctx: AppContext, code: str) -> SessionRecord:
    tokens = ctx.oauth.exchange_code(code)
    profile = ctx.oauth.fetch_user(tokens.access_token)
    user = _ensure_user(ctx, profile)

    # Supersede the previous login. Two simultaneous logins can still leave two rows.
    existing = ctx.sessions.get_active_by_user(user.id)
    if existing is not None:
        ctx.sessions.delete(existing.id)

    session = seal_tokens(ctx.cipher, tokens, session_id=new_session_id(), user_id=user.id)
    ctx.sessions.create(session)
    return session


@router.get("/discord/callback")
async def discord_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    ctx: AppContext = Depends(get_context),
):
    """
    Handle redirect from Discord. Validates the state cookie (CSRF), exchanges
    the code, stores the session and sets the session cookie.
    """
    if error:
        raise HTTPException(status_code=400, detail=f"OAuth error: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    state_cookie = request.cookies.get(OAUTH_STATE_COOKIE_NAME)
    if not state_cookie or not secrets.compare_digest(state, state_cookie):
        raise HTTPException(status_code=400, detail="Invalid or expired state; please try logging in again")

    try:
        session = await run_in_threadpool(_start_session, ctx, code)
    except AuthError as e:
        logger.warning("Discord login failed: %s", e)
        raise HTTPException(status_code=401, detail="Discord login failed; please try again")

    redirect = RedirectResponse(url=APP_PREFIX, status_code=307)
    redirect.set_cookie(
        COOKIE_NAME,
        session.id,
        max_age=session_cookie_max_age(session.expires_at),
        **_cookie_kwargs(secure=ctx.settings.secure_cookies),
    )
    # Clear state cookie
    redirect.delete_cookie(OAUTH_STATE_COOKIE_NAME, path="/")
    return redirect


@router.get("/logout")
async def logout(request: Request, ctx: AppContext = Depends(get_context)):
    """Delete the session row (if any) and clear the session cookie."""
    redirect = RedirectResponse(url=LANDING_PATH, status_code=307)
    session_id = request.cookies.get(COOKIE_NAME)
    if not session_id:
        return redirect

    await run_in_threadpool(ctx.sessions.delete, session_id)
    redirect.delete_cookie(COOKIE_NAME, **_cookie_kwargs(secure=ctx.settings.secure_cookies))
    return redirect
