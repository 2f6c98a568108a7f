"""
Application context: the service objects built once by create_app and shared
by the middleware and routers. Stored on app.state.ctx; handlers get it through
the get_context dependency.
"""
from dataclasses import dataclass

from fastapi import Request

from config import Settings
from crypto import TokenCipher
from oauth import DiscordOAuthClient
from services.rate_limiter import KeyedTokenBucket
from services.session_service import SessionResolver
from store import SessionStore, UserStore


@dataclass
class AppContext:
    settings: Settings
    cipher: TokenCipher
    sessions: SessionStore
    users: UserStore
    oauth: DiscordOAuthClient
    resolver: SessionResolver
    limiter: KeyedTokenBucket


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx
