from __future__ import annotations

import logging
import time
from typing import Optional

import jwt  # PyJWT

from iceblink.config import ServerConfig

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "iceblink_jwt"
SESSION_ISSUER = "iceblink"
SESSION_ALGORITHM = "HS256"


class TokenError(ValueError):
    """A session token was rejected. `reason` is for logs only, never for clients."""

    MALFORMED = "malformed"
    SIGNATURE = "signature"
    EXPIRED = "expired"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid session token ({reason})")
        self.reason = reason


def mint(cfg: ServerConfig, user_id: str, *, now: Optional[int] = None) -> str:
    """Issue a signed session token for `user_id`, valid for the configured TTL."""
    if not user_id:
        raise ValueError("user_id is required")
    iat = int(time.time()) if now is None else int(now)
    payload = {
        "sub": user_id,
        "iat": iat,
        "exp": iat + cfg.session_ttl_seconds,
        "iss": SESSION_ISSUER,
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=SESSION_ALGORITHM)


def validate(cfg: ServerConfig, token: str) -> str:
    """
    Verify a session token and return its user id.

    Raises TokenError for malformed tokens, signature mismatches and expired tokens.
    """
    if not token:
        raise TokenError(TokenError.MALFORMED)
    try:
        claims = jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=[SESSION_ALGORITHM],
            issuer=SESSION_ISSUER,
            options={"require": ["exp", "iat", "sub", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenError(TokenError.EXPIRED)
    except jwt.InvalidSignatureError:
        raise TokenError(TokenError.SIGNATURE)
    except jwt.InvalidTokenError:
        raise TokenError(TokenError.MALFORMED)

    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise TokenError(TokenError.MALFORMED)
    return sub


def session_cookie_kwargs(cfg: ServerConfig, value: str) -> dict:
    return {
        "key": SESSION_COOKIE_NAME,
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: ServerConfig) -> dict:
    return {
        "key": SESSION_COOKIE_NAME,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
