from __future__ import annotations

import logging
from typing import Optional

from fastapi import HTTPException, Request

from iceblink.auth.session import SESSION_COOKIE_NAME, TokenError, validate
from iceblink.config import load_server_config

logger = logging.getLogger(__name__)


def extract_token(request: Request) -> Optional[str]:
    """Return the candidate session token: Authorization header first, then cookie."""
    header = (request.headers.get("authorization") or "").strip()
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    cookie = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    return cookie or None


def authenticate_request(request: Request) -> Optional[str]:
    """
    Authenticate a request and return the user id if the session token is valid.

    Every failure (missing, malformed, bad signature, expired) returns None so
    callers cannot tell them apart.
    """
    token = extract_token(request)
    if token is None:
        return None
    try:
        return validate(load_server_config(), token)
    except TokenError as e:
        logger.debug("Rejected session token on %s: %s", request.url.path, e.reason)
        return None


def current_user_id(request: Request) -> str:
    """Route dependency: the user id the auth middleware attached to this request."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
