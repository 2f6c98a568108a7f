"""
Session service: token refresh, active-session resolution, expired-session sweep.

Business logic separated from the HTTP layer. resolve() either returns a
currently valid session or removes the dead one; callers never see a stale
session. Crypto and OAuth failures stay inside this module and turn into
"no session"; storage failures propagate.
"""
import asyncio
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Callable, Protocol

from starlette.concurrency import run_in_threadpool

from config import DEFAULT_TOKEN_EXPIRES_IN
from crypto import TokenCipher
from errors import AuthError, CryptoError
from models import SessionRecord, utcnow
from oauth import TokenSet
from store import SessionStore

logger = logging.getLogger(__name__)


class OAuthClient(Protocol):
    def refresh(self, refresh_token: str) -> TokenSet: ...


def new_session_id() -> str:
    """Opaque, unguessable cookie value."""
    return secrets.token_urlsafe(32)


def seal_tokens(
    cipher: TokenCipher,
    tokens: TokenSet,
    *,
    session_id: str,
    user_id: str,
    now: datetime | None = None,
) -> SessionRecord:
    """
    Encrypt a provider token response into a SessionRecord.
    The provider must return a refresh token; without one the session could
    never be renewed, so this raises AuthError instead of storing it.
    """
    if not tokens.refresh_token:
        raise AuthError("Provider response did not include a refresh token")
    now = now or utcnow()
    expires_in = tokens.expires_in if tokens.expires_in is not None else DEFAULT_TOKEN_EXPIRES_IN
    access_token, access_token_nonce = cipher.encrypt(tokens.access_token)
    refresh_token, refresh_token_nonce = cipher.encrypt(tokens.refresh_token)
    return SessionRecord(
        id=session_id,
        user_id=user_id,
        access_token=access_token,
        access_token_nonce=access_token_nonce,
        refresh_token=refresh_token,
        refresh_token_nonce=refresh_token_nonce,
        expires_at=now + timedelta(seconds=expires_in),
    )


def refresh_session(
    oauth_client: OAuthClient,
    cipher: TokenCipher,
    session: SessionRecord,
    now: datetime | None = None,
) -> SessionRecord:
    """
    Exchange the session's stored refresh token for a new token pair.
    Returns the replacement record (same id and user_id); the caller persists it.
    Raises CryptoError if the stored token cannot be decrypted, AuthError if the
    provider refuses or misbehaves.
    """
    refresh_token = cipher.decrypt(session.refresh_token, session.refresh_token_nonce)
    tokens = oauth_client.refresh(refresh_token)
    return seal_tokens(
        cipher,
        tokens,
        session_id=session.id,
        user_id=session.user_id,
        now=now,
    )


class SessionResolver:
    """
    Looks up a session by cookie value and makes expiry transparent:
    valid -> returned untouched; expired -> refreshed and persisted, or deleted.

    refresh_attempts / refresh_backoff: how many times a failing refresh is
    tried (exponential backoff between tries) before the session is revoked.
    The default of one attempt revokes on the first failure.
    """

    def __init__(
        self,
        store: SessionStore,
        oauth_client: OAuthClient,
        cipher: TokenCipher,
        *,
        refresh_attempts: int = 1,
        refresh_backoff: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.oauth_client = oauth_client
        self.cipher = cipher
        self.refresh_attempts = max(1, refresh_attempts)
        self.refresh_backoff = refresh_backoff
        self._clock = clock
        self._sleep = sleep

    def resolve(self, session_id: str) -> SessionRecord | None:
        session = self.store.get_by_id(session_id)
        if session is None:
            return None
        if session.is_valid(self._clock()):
            return session

        refreshed = self._refresh(session)
        if refreshed is None:
            self.store.delete(session.id)
            logger.info("Revoked session %s... after failed refresh", session.id[:8])
            return None
        self.store.update(refreshed)
        return refreshed

    def _refresh(self, session: SessionRecord) -> SessionRecord | None:
        for attempt in range(self.refresh_attempts):
            if attempt:
                self._sleep(self.refresh_backoff * 2 ** (attempt - 1))
            try:
                return refresh_session(self.oauth_client, self.cipher, session, now=self._clock())
            except CryptoError as e:
                logger.warning("Stored token for session %s... is unreadable: %s", session.id[:8], e)
                return None
            except AuthError as e:
                logger.warning(
                    "Refresh attempt %d/%d failed for session %s...: %s",
                    attempt + 1,
                    self.refresh_attempts,
                    session.id[:8],
                    e,
                )
        return None


async def sweep_expired_sessions(store: SessionStore, interval: float) -> None:
    """Background loop: delete expired sessions every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(store.sweep_expired)
        except Exception:
            logger.exception("Expired session sweep failed")
