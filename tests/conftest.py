from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from config import Settings
from crypto import TokenCipher
from database import init_db, make_engine, make_session_factory
from errors import AuthError
from models import SessionRecord, UserRecord
from oauth import DiscordUser, TokenSet
from store import SessionStore, UserStore

TEST_KEY = bytes(range(32))
TEST_KEY_HEX = TEST_KEY.hex()


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeOAuthClient:
    """Stands in for DiscordOAuthClient. Set refresh_error / exchange_error to make calls fail."""

    def __init__(self):
        self.profile = DiscordUser(id="1001", username="alice", discriminator="0", avatar="abc")
        self.refresh_error: Exception | None = None
        self.exchange_error: Exception | None = None
        self.omit_refresh_token = False
        self.expires_in: int | None = 3600
        self.refresh_calls: list[str] = []
        self.exchanged_codes: list[str] = []
        self._counter = 0
        self._lock = threading.Lock()

    def authorization_url(self, state: str) -> str:
        return f"https://discord.test/authorize?scope=identify+email&state={state}"

    def _next_tokens(self) -> TokenSet:
        with self._lock:
            self._counter += 1
            n = self._counter
        return TokenSet(
            access_token=f"access-{n}",
            refresh_token=None if self.omit_refresh_token else f"refresh-{n}",
            expires_in=self.expires_in,
        )

    def exchange_code(self, code: str) -> TokenSet:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self._next_tokens()

    def refresh(self, refresh_token: str) -> TokenSet:
        with self._lock:
            self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._next_tokens()

    def fetch_user(self, access_token: str) -> DiscordUser:
        return self.profile


def make_session(
    cipher: TokenCipher,
    *,
    session_id: str = "sess-1",
    user_id: str = "1001",
    expires_at: datetime,
    access: str = "old-access",
    refresh: str = "old-refresh",
) -> SessionRecord:
    access_token, access_nonce = cipher.encrypt(access)
    refresh_token, refresh_nonce = cipher.encrypt(refresh)
    return SessionRecord(
        id=session_id,
        user_id=user_id,
        access_token=access_token,
        access_token_nonce=access_nonce,
        refresh_token=refresh_token,
        refresh_token_nonce=refresh_nonce,
        expires_at=expires_at,
    )


def make_user(user_id: str = "1001", *, is_admin: bool = False, username: str = "alice") -> UserRecord:
    return UserRecord(
        id=user_id,
        username=username,
        discriminator="0",
        avatar=None,
        is_admin=is_admin,
        joined_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def make_settings(**overrides) -> Settings:
    values = dict(
        discord_client_id="client-id",
        discord_client_secret="client-secret",
        discord_redirect_uri="http://testserver/discord/callback",
        encryption_key=TEST_KEY,
        database_url="sqlite://",
        session_sweep_interval_seconds=0,
        rate_limit_per_second=100.0,
        rate_limit_burst=1000,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_KEY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock) -> SessionStore:
    return SessionStore(session_factory, clock=clock)


@pytest.fixture
def users(session_factory) -> UserStore:
    return UserStore(session_factory)


@pytest.fixture
def oauth() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture
def auth_error() -> AuthError:
    return AuthError("invalid_grant")
