"""
Session and user persistence.

Each public method runs in its own transaction; SQLAlchemy errors are rolled
back and re-raised as StorageError. Deletes and updates of rows that no longer
exist are no-ops, so two requests racing on the same session cannot fail each
other.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from errors import StorageError
from models import SessionRecord, User, UserRecord, UserSession, utcnow

logger = logging.getLogger(__name__)


@contextmanager
def _transaction(factory: sessionmaker) -> Iterator[Session]:
    db = factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(str(e)) from e
    finally:
        db.close()


class SessionStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._factory = session_factory
        self._clock = clock

    def get_by_id(self, session_id: str) -> SessionRecord | None:
        with _transaction(self._factory) as db:
            row = db.get(UserSession, session_id)
            return SessionRecord.from_row(row) if row else None

    def get_active_by_user(self, user_id: str) -> SessionRecord | None:
        """
        Newest still-valid session for user_id. Expired rows seen on the way
        are deleted in the same transaction.
        """
        now = self._clock()
        with _transaction(self._factory) as db:
            rows = db.scalars(
                select(UserSession)
                .where(UserSession.user_id == user_id)
                .order_by(UserSession.expires_at.desc())
            ).all()
            active = None
            for row in rows:
                if row.expires_at > now:
                    if active is None:
                        active = SessionRecord.from_row(row)
                else:
                    db.delete(row)
            return active

    def create(self, record: SessionRecord) -> None:
        with _transaction(self._factory) as db:
            db.add(
                UserSession(
                    id=record.id,
                    user_id=record.user_id,
                    access_token=record.access_token,
                    access_token_nonce=record.access_token_nonce,
                    refresh_token=record.refresh_token,
                    refresh_token_nonce=record.refresh_token_nonce,
                    expires_at=record.expires_at,
                )
            )

    def update(self, record: SessionRecord) -> None:
        """Replace tokens, nonces and expiry by id. id and user_id never change."""
        with _transaction(self._factory) as db:
            db.execute(
                update(UserSession)
                .where(UserSession.id == record.id)
                .values(
                    access_token=record.access_token,
                    access_token_nonce=record.access_token_nonce,
                    refresh_token=record.refresh_token,
                    refresh_token_nonce=record.refresh_token_nonce,
                    expires_at=record.expires_at,
                )
            )

    def delete(self, session_id: str) -> None:
        with _transaction(self._factory) as db:
            db.execute(delete(UserSession).where(UserSession.id == session_id))

    def delete_all_for_user(self, user_id: str) -> int:
        with _transaction(self._factory) as db:
            result = db.execute(delete(UserSession).where(UserSession.user_id == user_id))
            return result.rowcount or 0

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every session with expires_at <= now; returns the number removed."""
        now = now or self._clock()
        with _transaction(self._factory) as db:
            result = db.execute(delete(UserSession).where(UserSession.expires_at <= now))
            removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed


class UserStore:
    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def get(self, user_id: str) -> UserRecord | None:
        with _transaction(self._factory) as db:
            row = db.get(User, user_id)
            return UserRecord.from_row(row) if row else None

    def create(self, record: UserRecord) -> None:
        with _transaction(self._factory) as db:
            db.add(
                User(
                    id=record.id,
                    username=record.username,
                    discriminator=record.discriminator,
                    avatar=record.avatar,
                    is_admin=record.is_admin,
                    joined_at=record.joined_at,
                    daily_questions=record.daily_questions,
                    last_question_reset=record.last_question_reset,
                )
            )

    def list_all(self) -> list[UserRecord]:
        with _transaction(self._factory) as db:
            rows = db.scalars(select(User).order_by(User.joined_at)).all()
            return [UserRecord.from_row(r) for r in rows]
