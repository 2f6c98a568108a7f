from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import FakeOAuthClient, make_session
from database import init_db, make_engine, make_session_factory
from errors import AuthError
from oauth import TokenSet
from services.session_service import (
    SessionResolver,
    refresh_session,
    seal_tokens,
    sweep_expired_sessions,
)
from store import SessionStore


class SpyStore:
    """Wraps a SessionStore and records writes."""

    def __init__(self, inner: SessionStore):
        self.inner = inner
        self.updates = []
        self.deletes = []

    def get_by_id(self, session_id):
        return self.inner.get_by_id(session_id)

    def update(self, record):
        self.updates.append(record)
        self.inner.update(record)

    def delete(self, session_id):
        self.deletes.append(session_id)
        self.inner.delete(session_id)


def _resolver(store, oauth, cipher, clock, **kwargs) -> SessionResolver:
    return SessionResolver(store, oauth, cipher, clock=clock, **kwargs)


def test_seal_tokens_requires_refresh_token(cipher, clock):
    with pytest.raises(AuthError):
        seal_tokens(cipher, TokenSet(access_token="a"), session_id="s", user_id="u", now=clock.now)


def test_seal_tokens_defaults_expiry_to_one_hour(cipher, clock):
    record = seal_tokens(
        cipher,
        TokenSet(access_token="a", refresh_token="r"),
        session_id="s",
        user_id="u",
        now=clock.now,
    )

    assert record.expires_at == clock.now + timedelta(seconds=3600)
    assert cipher.decrypt(record.access_token, record.access_token_nonce) == "a"
    assert cipher.decrypt(record.refresh_token, record.refresh_token_nonce) == "r"


def test_refresh_session_sends_decrypted_refresh_token(cipher, clock, oauth):
    oauth.expires_in = 600
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))

    refreshed = refresh_session(oauth, cipher, session, now=clock.now)

    assert oauth.refresh_calls == ["old-refresh"]
    assert refreshed.id == session.id
    assert refreshed.user_id == session.user_id
    assert refreshed.expires_at == clock.now + timedelta(seconds=600)
    assert refreshed.refresh_token_nonce != session.refresh_token_nonce
    assert cipher.decrypt(refreshed.access_token, refreshed.access_token_nonce) == "access-1"
    assert cipher.decrypt(refreshed.refresh_token, refreshed.refresh_token_nonce) == "refresh-1"


def test_resolve_unknown_session_returns_none(store, cipher, clock, oauth):
    assert _resolver(store, oauth, cipher, clock).resolve("missing") is None


def test_resolve_valid_session_performs_no_refresh_or_write(store, cipher, clock, oauth):
    session = make_session(cipher, expires_at=clock.now + timedelta(seconds=1))
    store.create(session)
    spy = SpyStore(store)

    result = _resolver(spy, oauth, cipher, clock).resolve(session.id)

    assert result == session
    assert oauth.refresh_calls == []
    assert spy.updates == [] and spy.deletes == []


def test_resolve_expired_session_refreshes_and_persists(store, cipher, clock, oauth):
    session = make_session(cipher, expires_at=clock.now)
    store.create(session)
    spy = SpyStore(store)

    result = _resolver(spy, oauth, cipher, clock).resolve(session.id)

    assert len(oauth.refresh_calls) == 1
    assert result.expires_at == clock.now + timedelta(hours=1)
    assert store.get_by_id(session.id) == result
    assert spy.updates == [result]
    assert spy.deletes == []


def test_resolve_expired_session_deleted_when_refresh_fails(store, cipher, clock, oauth, auth_error):
    oauth.refresh_error = auth_error
    session = make_session(cipher, expires_at=clock.now - timedelta(hours=2))
    store.create(session)

    assert _resolver(store, oauth, cipher, clock).resolve(session.id) is None
    assert len(oauth.refresh_calls) == 1
    assert store.get_by_id(session.id) is None


def test_revocation_log_shows_only_session_id_prefix(store, cipher, clock, oauth, auth_error, caplog):
    oauth.refresh_error = auth_error
    session = make_session(cipher, session_id="abcdefgh-rest-of-secret", expires_at=clock.now - timedelta(hours=2))
    store.create(session)

    with caplog.at_level("INFO", logger="services.session_service"):
        _resolver(store, oauth, cipher, clock).resolve(session.id)

    assert "Revoked session abcdefgh... after failed refresh" in caplog.messages
    assert "rest-of-secret" not in caplog.text
    assert caplog.text.isascii()


def test_missing_refresh_token_in_response_revokes_session(store, cipher, clock, oauth):
    oauth.omit_refresh_token = True
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))
    store.create(session)

    assert _resolver(store, oauth, cipher, clock).resolve(session.id) is None
    assert store.get_by_id(session.id) is None


def test_undecryptable_refresh_token_revokes_without_calling_provider(store, cipher, clock, oauth):
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))
    # Valid hex, wrong nonce: authentication fails
    store.create(replace(session, refresh_token_nonce="00" * 12))

    assert _resolver(store, oauth, cipher, clock).resolve(session.id) is None
    assert oauth.refresh_calls == []
    assert store.get_by_id(session.id) is None


def test_retry_policy_backs_off_before_revoking(store, cipher, clock, auth_error):
    class FlakyOAuth(FakeOAuthClient):
        def __init__(self, failures):
            super().__init__()
            self.failures = failures

        def refresh(self, refresh_token):
            if self.failures:
                self.failures -= 1
                self.refresh_calls.append(refresh_token)
                raise auth_error
            return super().refresh(refresh_token)

    sleeps = []
    oauth = FlakyOAuth(failures=2)
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))
    store.create(session)
    resolver = _resolver(
        store, oauth, cipher, clock, refresh_attempts=3, refresh_backoff=0.5, sleep=sleeps.append
    )

    result = resolver.resolve(session.id)

    assert result is not None
    assert len(oauth.refresh_calls) == 3
    assert sleeps == [0.5, 1.0]


def test_retry_policy_exhausted_revokes(store, cipher, clock, oauth, auth_error):
    oauth.refresh_error = auth_error
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))
    store.create(session)
    resolver = _resolver(store, oauth, cipher, clock, refresh_attempts=2, sleep=lambda _: None)

    assert resolver.resolve(session.id) is None
    assert len(oauth.refresh_calls) == 2
    assert store.get_by_id(session.id) is None


@pytest.mark.parametrize("refresh_fails", [False, True])
def test_concurrent_resolution_leaves_consistent_row(tmp_path, cipher, clock, refresh_fails):
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    store = SessionStore(make_session_factory(engine), clock=clock)
    barrier = threading.Barrier(2)

    class SlowOAuth(FakeOAuthClient):
        def refresh(self, refresh_token):
            barrier.wait(timeout=5)
            time.sleep(0.01)
            return super().refresh(refresh_token)

    oauth = SlowOAuth()
    if refresh_fails:
        oauth.refresh_error = AuthError("revoked")
    session = make_session(cipher, expires_at=clock.now - timedelta(seconds=1))
    store.create(session)
    resolver = _resolver(store, oauth, cipher, clock)
    results = []

    def worker():
        results.append(resolver.resolve(session.id))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    final = store.get_by_id(session.id)
    if refresh_fails:
        assert final is None
        assert results == [None, None]
    else:
        assert final in results
        assert cipher.decrypt(final.access_token, final.access_token_nonce).startswith("access-")
        assert cipher.decrypt(final.refresh_token, final.refresh_token_nonce).startswith("refresh-")
    engine.dispose()


def test_sweep_loop_removes_expired_sessions(store, cipher, clock):
    store.create(make_session(cipher, expires_at=clock.now - timedelta(seconds=1)))

    async def run():
        task = asyncio.create_task(sweep_expired_sessions(store, 0.01))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if store.get_by_id("sess-1") is None:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert store.get_by_id("sess-1") is None


class FlakySweepStore:
    def __init__(self):
        self.calls = 0

    def sweep_expired(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("connection reset")
        return 0


def test_sweep_loop_survives_unexpected_errors():
    store = FlakySweepStore()

    async def run():
        task = asyncio.create_task(sweep_expired_sessions(store, 0.01))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if store.calls >= 2:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert store.calls >= 2
