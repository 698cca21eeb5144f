from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

MIN_JWT_SECRET_LENGTH = 32
DEFAULT_SESSION_TTL_SECONDS = 3 * 24 * 3600


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_bool(name: str) -> Optional[bool]:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in ("1", "true", "yes", "y", "on"):
        return True
    if raw in ("0", "false", "no", "n", "off"):
        return False
    return None


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})")


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})")


@dataclass(frozen=True)
class ServerConfig:
    port: int

    # Session signing
    jwt_secret: str
    session_ttl_seconds: int
    cookie_secure: bool

    # OpenID Connect client
    client_id: str
    client_secret: str
    oauth_server: str
    redirect_uri: str

    # Public base URL of this server (used for cookies and instance metadata)
    frontfacing: str

    database_url: str
    db_pool_min_size: int
    db_pool_max_size: int

    request_timeout_seconds: float


def build_database_url() -> Optional[str]:
    dsn = _env("DATABASE_URL")
    if dsn:
        return dsn
    host = _env("POSTGRES_HOST")
    db = _env("POSTGRES_DB")
    user = _env("POSTGRES_USER")
    password = _env("POSTGRES_PASSWORD")
    if not (host and db and user and password):
        return None
    from psycopg.conninfo import make_conninfo

    return make_conninfo(
        host=host,
        port=_env_int("POSTGRES_PORT", 5432),
        dbname=db,
        user=user,
        password=password,
    )


@lru_cache(maxsize=1)
def load_server_config() -> ServerConfig:
    """
    Load server configuration from environment variables.

    Raises ValueError for anything that would prevent the server from serving
    traffic safely (missing signing secret, OAuth client or database).
    """
    jwt_secret = os.getenv("JWT_SECRET", "") or ""
    if len(jwt_secret) < MIN_JWT_SECRET_LENGTH:
        raise ValueError(f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters")

    missing = [
        name for name in ("CLIENT_ID", "CLIENT_SECRET", "OAUTH_SERVER", "REDIRECT_URI") if not _env(name)
    ]
    if missing:
        raise ValueError(f"Missing OAuth configuration: {', '.join(missing)}")

    database_url = build_database_url()
    if not database_url:
        raise ValueError("Database not configured (set DATABASE_URL or POSTGRES_* env vars)")

    frontfacing = (_env("FRONTFACING") or "http://localhost:8085").rstrip("/")
    cookie_secure = _env_bool("COOKIE_SECURE")
    if cookie_secure is None:
        cookie_secure = frontfacing.startswith("https://")

    ttl = _env_int("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)
    if ttl < 60:
        ttl = 60

    min_size = max(_env_int("DB_POOL_MIN_SIZE", 1), 0)
    max_size = max(_env_int("DB_POOL_MAX_SIZE", 10), min_size, 1)

    timeout = _env_float("REQUEST_TIMEOUT_SECONDS", 10.0)
    if not timeout > 0:
        timeout = 10.0

    return ServerConfig(
        port=_env_int("PORT", 8085),
        jwt_secret=jwt_secret,
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        client_id=_env("CLIENT_ID") or "",
        client_secret=_env("CLIENT_SECRET") or "",
        oauth_server=(_env("OAUTH_SERVER") or "").rstrip("/"),
        redirect_uri=_env("REDIRECT_URI") or "",
        frontfacing=frontfacing,
        database_url=database_url,
        db_pool_min_size=min_size,
        db_pool_max_size=max_size,
        request_timeout_seconds=timeout,
    )
