"""
Data models: users, sessions, and the immutable records handed to callers.

Stores return UserRecord / SessionRecord values, never ORM rows, so two
requests resolving the same session never share mutable state.
"""
from dataclasses import dataclass
from datetime import UTC, date, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.types import TypeDecorator

from config import GENERIC_DAILY_LIMIT
from database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """
    Timestamps stored as naive UTC (sortable on every backend, including SQLite)
    and always loaded back as timezone-aware UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime requires a timezone-aware datetime")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class User(Base):
    """
    Discord user, created on first successful login.

    - id: Discord user id (snowflake string), primary key.
    - is_admin: set when id matches ADMIN_ID at creation time.
    - daily_questions / last_question_reset: quota bookkeeping for the Q&A
      pages; the reset itself lives outside the session layer.
    """
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(255), nullable=False)
    discriminator = Column(String(16), nullable=False, default="0")
    avatar = Column(String(255), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    joined_at = Column(UTCDateTime, nullable=False, default=utcnow)
    daily_questions = Column(Integer, nullable=False, default=GENERIC_DAILY_LIMIT)
    last_question_reset = Column(Date, nullable=True)


class UserSession(Base):
    """
    One logged-in browser. id is the cookie value.

    Tokens are AES-GCM ciphertext (crypto.encrypt); each has its own nonce,
    and the pair is always written together. expires_at is the access token
    expiry; past it the session must be refreshed before use.
    """
    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    access_token = Column(String(4096), nullable=False)
    access_token_nonce = Column(String(32), nullable=False)
    refresh_token = Column(String(4096), nullable=False)
    refresh_token_nonce = Column(String(32), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: str
    discriminator: str
    avatar: str | None
    is_admin: bool
    joined_at: datetime
    daily_questions: int = GENERIC_DAILY_LIMIT
    last_question_reset: date | None = None

    @classmethod
    def from_row(cls, row: User) -> "UserRecord":
        return cls(
            id=row.id,
            username=row.username,
            discriminator=row.discriminator,
            avatar=row.avatar,
            is_admin=bool(row.is_admin),
            joined_at=row.joined_at,
            daily_questions=row.daily_questions,
            last_question_reset=row.last_question_reset,
        )


@dataclass(frozen=True)
class SessionRecord:
    id: str
    user_id: str
    access_token: str
    access_token_nonce: str
    refresh_token: str
    refresh_token_nonce: str
    expires_at: datetime

    @classmethod
    def from_row(cls, row: UserSession) -> "SessionRecord":
        return cls(
            id=row.id,
            user_id=row.user_id,
            access_token=row.access_token,
            access_token_nonce=row.access_token_nonce,
            refresh_token=row.refresh_token,
            refresh_token_nonce=row.refresh_token_nonce,
            expires_at=row.expires_at,
        )

    def is_valid(self, now: datetime) -> bool:
        """True while the access token has not expired."""
        return self.expires_at > now
