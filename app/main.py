"""
AskLP web backend: Discord OAuth login, server-side sessions, auth gate, per-IP
rate limiting.

Run with: uvicorn main:create_app --factory (from the app/ directory).
Load .env in development only (production uses env vars directly). All shared
services are built here and passed to the middleware and routers through
app.state.ctx.
"""
import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse

from auth import router as auth_router
from config import LOGIN_PATH, Settings, load_settings
from context import AppContext
from crypto import TokenCipher
from database import init_db, make_engine, make_session_factory
from errors import AuthError, StorageError
from home import router as home_router
from middleware import AuthGateMiddleware, RateLimitMiddleware
from oauth import DiscordOAuthClient
from services.rate_limiter import KeyedTokenBucket
from services.session_service import SessionResolver, sweep_expired_sessions
from store import SessionStore, UserStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx: AppContext = app.state.ctx
    interval = ctx.settings.session_sweep_interval_seconds
    task = None
    if interval > 0:
        task = asyncio.create_task(sweep_expired_sessions(ctx.sessions, interval))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def build_context(settings: Settings, oauth: DiscordOAuthClient | None = None) -> AppContext:
    engine = make_engine(settings.database_url, settings.database_auth_token)
    # Create DB tables if not skipping (production uses migrations)
    if not settings.skip_db_init:
        init_db(engine)
    factory = make_session_factory(engine)

    cipher = TokenCipher(settings.encryption_key)
    sessions = SessionStore(factory)
    oauth = oauth or DiscordOAuthClient.from_settings(settings)
    return AppContext(
        settings=settings,
        cipher=cipher,
        sessions=sessions,
        users=UserStore(factory),
        oauth=oauth,
        resolver=SessionResolver(
            sessions,
            oauth,
            cipher,
            refresh_attempts=settings.refresh_attempts,
            refresh_backoff=settings.refresh_backoff_seconds,
        ),
        limiter=KeyedTokenBucket(
            settings.rate_limit_per_second,
            settings.rate_limit_burst,
            max_keys=settings.rate_limit_max_keys,
        ),
    )


def create_app(settings: Settings | None = None, ctx: AppContext | None = None) -> FastAPI:
    """
    Build the application. Without arguments, configuration comes from the
    environment and a ConfigError stops startup.
    """
    if ctx is None:
        if settings is None:
            # Load .env only in development; production should set env vars directly
            if os.getenv("ENV", "development").lower() == "development":
                load_dotenv(Path(__file__).resolve().parent.parent / ".env")
            settings = load_settings()
        ctx = build_context(settings)
    settings = ctx.settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="AskLP",
        description="Discord-authenticated Q&A: sessions, auth gate, rate limiting.",
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    # Last added runs first: rate limiter, then auth gate, then the route
    app.add_middleware(AuthGateMiddleware, resolver=ctx.resolver, users=ctx.users)
    app.add_middleware(RateLimitMiddleware, limiter=ctx.limiter)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        logger.warning("Authentication error: %s", exc)
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage error: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch unhandled exceptions; log and return generic 500. Never leak stack traces."""
        # Let FastAPI handle HTTPException (validation, auth, etc.)
        if isinstance(exc, HTTPException):
            raise exc
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.get("/")
    def index():
        return {"login_url": LOGIN_PATH}

    @app.get("/ping")
    def ping():
        return PlainTextResponse("pong")

    app.include_router(auth_router)
    app.include_router(home_router)
    return app
