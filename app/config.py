"""
Application configuration from environment variables.

main.create_app loads .env with python-dotenv in development, then builds a
Settings value with load_settings(). Missing or malformed secrets raise
ConfigError so the process never starts half-configured.
"""
import os
from dataclasses import dataclass

from crypto import load_key
from errors import ConfigError

# --- Fixed names ---
COOKIE_NAME = "asklp_session"

# OAuth CSRF: cookie name for state parameter, short-lived
OAUTH_STATE_COOKIE_NAME = "oauth_state"
OAUTH_STATE_MAX_AGE = 600  # 10 minutes

# Auth gate routing: landing page and the authenticated area
LANDING_PATH = "/"
APP_PREFIX = "/app"
LOGIN_PATH = "/auth/discord"

DISCORD_AUTHORIZE_URL = "https://discord.com/api/oauth2/authorize"
DISCORD_TOKEN_URL = "https://discord.com/api/oauth2/token"
DISCORD_USER_URL = "https://discord.com/api/users/@me"
DISCORD_SCOPES = ("identify", "email")

# Access token lifetime assumed when the provider omits expires_in
DEFAULT_TOKEN_EXPIRES_IN = 3600

GENERIC_DAILY_LIMIT = 10

# SQLAlchemy driver name of the libsql dialect; the only one that takes DATABASE_AUTH_TOKEN
LIBSQL_DRIVERNAME = "sqlite+libsql"


def _required(name: str) -> str:
    val = os.getenv(name)
    if not val or not str(val).strip():
        raise ConfigError(f"Required env var {name} is missing or empty")
    return val.strip()


def _int_env(key: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.getenv(key, str(default))))
    except ValueError:
        return default


def _float_env(key: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.getenv(key, str(default))))
    except ValueError:
        return default


def _bool_env(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    discord_client_id: str
    discord_client_secret: str
    discord_redirect_uri: str
    # 32 raw bytes, decoded from the 64-char ENCRYPTION_KEY
    encryption_key: bytes
    database_url: str
    database_auth_token: str | None = None
    admin_id: str | None = None
    secure_cookies: bool = False
    oauth_timeout_seconds: float = 10.0
    refresh_attempts: int = 1
    refresh_backoff_seconds: float = 0.5
    rate_limit_per_second: float = 5.0
    rate_limit_burst: int = 20
    rate_limit_max_keys: int = 10000
    session_sweep_interval_seconds: int = 300
    skip_db_init: bool = False
    log_level: str = "INFO"
    env: str = "development"


def load_settings() -> Settings:
    """Build Settings from the environment. Raises ConfigError on bad input."""
    client_id = _required("DISCORD_CLIENT_ID")
    client_secret = _required("DISCORD_CLIENT_SECRET")
    redirect_uri = _required("DISCORD_REDIRECT_URI")
    encryption_key = load_key(_required("ENCRYPTION_KEY"))
    database_url = _required("DATABASE_URL")
    database_auth_token = os.getenv("DATABASE_AUTH_TOKEN") or None
    if database_auth_token and not database_url.startswith(LIBSQL_DRIVERNAME + "://"):
        raise ConfigError(f"DATABASE_AUTH_TOKEN requires a {LIBSQL_DRIVERNAME}:// DATABASE_URL")

    return Settings(
        discord_client_id=client_id,
        discord_client_secret=client_secret,
        discord_redirect_uri=redirect_uri,
        encryption_key=encryption_key,
        database_url=database_url,
        database_auth_token=database_auth_token,
        admin_id=os.getenv("ADMIN_ID") or None,
        secure_cookies=_bool_env("SECURE_COOKIES"),
        oauth_timeout_seconds=_float_env("OAUTH_TIMEOUT_SECONDS", 10.0, minimum=1.0),
        refresh_attempts=_int_env("REFRESH_ATTEMPTS", 1, minimum=1),
        refresh_backoff_seconds=_float_env("REFRESH_BACKOFF_SECONDS", 0.5),
        rate_limit_per_second=_float_env("RATE_LIMIT_PER_SECOND", 5.0, minimum=0.001),
        rate_limit_burst=_int_env("RATE_LIMIT_BURST", 20, minimum=1),
        rate_limit_max_keys=_int_env("RATE_LIMIT_MAX_KEYS", 10000, minimum=1),
        session_sweep_interval_seconds=_int_env("SESSION_SWEEP_INTERVAL_SECONDS", 300),
        skip_db_init=_bool_env("SKIP_DB_INIT"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        env=os.getenv("ENV", "development").lower(),
    )
