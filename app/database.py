"""
Database engine and session factory. Supports SQLite (dev/tests), Postgres and
remote libsql databases (sqlite+libsql:// with DATABASE_AUTH_TOKEN, needs the
libsql extra) via DATABASE_URL.

create_app builds one engine and one sessionmaker and hands the factory to the
stores; nothing here is a module-level singleton.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import LIBSQL_DRIVERNAME
from errors import ConfigError

Base = declarative_base()


def make_engine(database_url: str, auth_token: str | None = None) -> Engine:
    """Create the engine; in-memory SQLite shares one connection across threads."""
    url = make_url(database_url)
    connect_args: dict = {}
    kwargs: dict = {}
    if url.drivername == LIBSQL_DRIVERNAME:
        if auth_token:
            connect_args["auth_token"] = auth_token
    elif auth_token:
        raise ConfigError(f"auth token is only supported for {LIBSQL_DRIVERNAME}:// URLs")
    elif url.get_backend_name() == "sqlite":
        # SQLite needs check_same_thread=False for the threadpool; Postgres does not
        connect_args["check_same_thread"] = False
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, connect_args=connect_args, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables (production uses migrations and sets SKIP_DB_INIT)."""
    # Register the mapped classes on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
