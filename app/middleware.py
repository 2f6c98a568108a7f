"""
Request pipeline: per-IP rate limiting, then the auth gate.

RateLimitMiddleware is registered last so it is outermost and runs before
AuthGateMiddleware on every request. The auth gate is the single authorization
checkpoint: it resolves the session cookie to a user (or anonymous) and applies
gate_decision. Handlers read the result from request.state.user.
"""
import enum
import logging
import math

from fastapi import Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from config import APP_PREFIX, COOKIE_NAME, LANDING_PATH
from models import UserRecord
from services.rate_limiter import KeyedTokenBucket
from services.session_service import SessionResolver
from store import UserStore

logger = logging.getLogger(__name__)


class GateAction(enum.Enum):
    REDIRECT_TO_APP = "redirect_to_app"
    ATTACH = "attach"
    REDIRECT_TO_LOGIN = "redirect_to_login"
    PASS = "pass"


def is_protected(path: str) -> bool:
    return path == APP_PREFIX or path.startswith(APP_PREFIX + "/")


def gate_decision(authenticated: bool, path: str) -> GateAction:
    """
    Logged-in users skip the landing page; anonymous users are kept out of the
    /app area; everything else passes through.
    """
    if authenticated:
        if path == LANDING_PATH:
            return GateAction.REDIRECT_TO_APP
        return GateAction.ATTACH
    if is_protected(path):
        return GateAction.REDIRECT_TO_LOGIN
    return GateAction.PASS


class AuthGateMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, resolver: SessionResolver, users: UserStore):
        super().__init__(app)
        self.resolver = resolver
        self.users = users

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        user = await self._identify(request)
        action = gate_decision(user is not None, request.url.path)

        if action is GateAction.REDIRECT_TO_APP:
            return RedirectResponse(url=APP_PREFIX, status_code=307)
        if action is GateAction.REDIRECT_TO_LOGIN:
            return RedirectResponse(url=LANDING_PATH, status_code=307)

        request.state.user = user if action is GateAction.ATTACH else None
        return await call_next(request)

    async def _identify(self, request: Request) -> UserRecord | None:
        session_id = request.cookies.get(COOKIE_NAME)
        if not session_id:
            return None
        try:
            # Storage and OAuth calls block; keep them off the event loop
            session = await run_in_threadpool(self.resolver.resolve, session_id)
            if session is None:
                return None
            return await run_in_threadpool(self.users.get, session.user_id)
        except Exception:
            # An unresolvable identity is anonymous
            logger.exception("Failed to resolve session; treating request as anonymous")
            return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, limiter: KeyedTokenBucket):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Peer address only, never X-Forwarded-For
        client = request.client
        if client is None or not client.host:
            logger.error("Request without client address; check proxy configuration")
            return PlainTextResponse("Unable to determine client address", status_code=400)

        result = self.limiter.try_acquire(client.host)
        if not result.allowed:
            logger.debug("Rate limited %s", client.host)
            return PlainTextResponse(
                "Too Many Requests",
                status_code=429,
                headers={"Retry-After": str(max(1, math.ceil(result.retry_after)))},
            )
        return await call_next(request)
