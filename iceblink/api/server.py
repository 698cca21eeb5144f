"""
Iceblink sync HTTP API.

Public routes handle login and instance discovery; every other route runs
behind the session gate in `gate_requests` and acts only on the caller's data.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import psycopg
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from iceblink import __version__
from iceblink.auth import oidc, session
from iceblink.auth.deps import authenticate_request, current_user_id
from iceblink.config import load_server_config
from iceblink.icons import IconStore
from iceblink.storage import checksum, codes, db, migrate

logger = logging.getLogger(__name__)

app = FastAPI(title="Iceblink Sync Server", version=__version__)

# Process-wide state, set once during startup.
_openid: Optional[oidc.OpenIdClient] = None
_icon_store = IconStore()

_PUBLIC_PATHS = frozenset(
    {
        "/healthz",
        "/v1/instance",
        "/v1/oauth",
        "/v1/oauth/authorize",
        "/v1/logout",
        "/docs",
        "/docs/oauth2-redirect",
        "/openapi.json",
    }
)

_CODE_NOT_FOUND = "Code not found"


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS


def get_openid() -> oidc.OpenIdClient:
    if _openid is None:
        raise HTTPException(status_code=503, detail="Identity provider not configured")
    return _openid


class OAuthRequest(BaseModel):
    code: str
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    nonce: Optional[str] = None


class AddCodeRequest(BaseModel):
    content: str
    display_name: str
    icon_url: Optional[str] = None
    website_url: Optional[str] = None


class EditCodeRequest(BaseModel):
    content: Optional[str] = None
    display_name: Optional[str] = None
    icon_url: Optional[str] = None
    website_url: Optional[str] = None


@app.on_event("startup")
def _startup() -> None:
    """
    Load configuration, migrate, open the pool and discover the identity provider.

    Any failure here is fatal: the server must not serve traffic half-configured.
    """
    global _openid

    cfg = load_server_config()
    logger.info("Running SQL migrations")
    applied = migrate.apply_migrations(cfg.database_url)
    if applied:
        logger.info("Applied %d migration(s): %s", len(applied), ", ".join(applied))

    db.open_pool(cfg)

    logger.info("Discovering OpenID configuration at %s", cfg.oauth_server)
    _openid = oidc.discover(cfg.oauth_server, cfg.client_id, cfg.client_secret)


@app.on_event("shutdown")
def _shutdown() -> None:
    db.close_pool()


@app.exception_handler(psycopg.Error)
async def _storage_error(request: Request, exc: psycopg.Error) -> JSONResponse:
    # Never leak storage details to clients.
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, type(exc).__name__, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def gate_requests(request: Request, call_next):
    """Enforce the request timeout, require a session on private routes and log requests."""
    start_time = time.time()
    path = request.url.path or ""
    timeout = load_server_config().request_timeout_seconds
    try:
        if request.method != "OPTIONS" and not _is_public_path(path):
            # Fail closed: anything not explicitly public requires a valid session.
            user_id = authenticate_request(request)
            if user_id is None:
                # No `WWW-Authenticate`, and the same body for every failure mode.
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
            request.state.user_id = user_id

        try:
            response = await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s %s - timed out after %.1fs", request.method, path, timeout)
            return JSONResponse(status_code=504, content={"detail": "Request timed out"})

        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, path, process_time, type(e).__name__)
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/v1/instance")
def instance_metadata() -> Dict[str, Any]:
    """Server identity and the OAuth settings a client needs to start login. Contains no secrets."""
    cfg = load_server_config()
    openid = get_openid()
    return {
        "version": __version__,
        "client_id": cfg.client_id,
        "server_url": cfg.oauth_server,
        "authorization_endpoint": openid.metadata.authorization_endpoint,
        "redirect_uri": cfg.redirect_uri,
        "frontfacing": cfg.frontfacing,
    }


@app.get("/v1/oauth/authorize")
def oauth_authorize_url(
    state: str = Query(..., min_length=8),
    code_challenge: Optional[str] = None,
    redirect_uri: Optional[str] = None,
) -> Dict[str, Any]:
    """Provider login URL for a client-generated `state` (and PKCE challenge, if used)."""
    cfg = load_server_config()
    url = get_openid().authorize_url(
        redirect_uri=(redirect_uri or "").strip() or cfg.redirect_uri,
        state=state,
        code_challenge=code_challenge,
    )
    return {"url": url}


@app.post("/v1/oauth")
def oauth_login(req: OAuthRequest) -> JSONResponse:
    """Complete login: exchange the provider's authorization code for a session token."""
    cfg = load_server_config()
    openid = get_openid()
    redirect_uri = (req.redirect_uri or "").strip() or cfg.redirect_uri

    try:
        identity = openid.exchange_code(
            req.code,
            redirect_uri,
            code_verifier=req.code_verifier,
            nonce=req.nonce,
        )
    except oidc.ExchangeError as e:
        if e.kind == oidc.ExchangeError.REJECTED:
            logger.info("Login rejected by provider: %s", e)
            raise HTTPException(status_code=400, detail="Login failed; restart the login flow")
        if e.kind == oidc.ExchangeError.UNAVAILABLE:
            logger.warning("Identity provider unavailable: %s", e)
            raise HTTPException(status_code=502, detail="Identity provider unavailable")
        logger.error("Identity token validation failed: %s", e)
        raise HTTPException(status_code=502, detail="Identity verification failed")

    with db.connection() as conn:
        codes.upsert_user(conn, identity.subject, identity.display_name)

    token = session.mint(cfg, identity.subject)
    logger.info("User logged in")
    resp = JSONResponse(content={"token": token})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**session.session_cookie_kwargs(cfg, token))
    return resp


@app.post("/v1/logout")
def logout() -> JSONResponse:
    # Sessions are stateless; this only clears the browser cookie.
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**session.clear_session_cookie_kwargs(load_server_config()))
    return resp


@app.get("/v1/codes")
def list_all_codes(user_id: str = Depends(current_user_id)) -> List[Dict[str, Any]]:
    with db.connection() as conn:
        return [c.to_dict() for c in codes.list_codes(conn, user_id)]


@app.put("/v1/code")
def add_code(req: AddCodeRequest, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    with db.connection() as conn:
        try:
            code = codes.create_code(
                conn,
                user_id,
                content=req.content,
                display_name=req.display_name,
                icon_url=req.icon_url,
                website_url=req.website_url,
            )
        except psycopg.errors.ForeignKeyViolation:
            # The account was deleted while this session token was still valid.
            raise HTTPException(status_code=401, detail="Unauthorized")
    return code.to_dict()


@app.patch("/v1/code/{code_id}")
def edit_code(code_id: str, req: EditCodeRequest, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    # Only fields present in the request body are written; `null` clears the optional URLs.
    fields = {name: getattr(req, name) for name in req.model_fields_set}
    with db.connection() as conn:
        try:
            code = codes.edit_code(conn, code_id, user_id, **fields)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    if code is None:
        raise HTTPException(status_code=404, detail=_CODE_NOT_FOUND)
    return code.to_dict()


@app.delete("/v1/code/{code_id}")
def delete_code(code_id: str, user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    with db.connection() as conn:
        deleted = codes.delete_code(conn, code_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=_CODE_NOT_FOUND)
    return {"ok": True}


@app.get("/v1/code/{code_id}/icon")
def code_icon(code_id: str, user_id: str = Depends(current_user_id)) -> Response:
    with db.connection() as conn:
        code = codes.get_code(conn, code_id, user_id)
    if code is None:
        raise HTTPException(status_code=404, detail=_CODE_NOT_FOUND)
    if not code.icon_url:
        raise HTTPException(status_code=404, detail="Icon not found")
    icon = _icon_store.fetch(code.icon_url)
    if icon is None:
        raise HTTPException(status_code=404, detail="Icon not found")
    body, content_type = icon
    return Response(content=body, media_type=content_type, headers={"Cache-Control": "private, max-age=86400"})


@app.get("/v1/checksum")
def user_checksum(user_id: str = Depends(current_user_id)) -> Dict[str, Any]:
    with db.connection() as conn:
        return {"checksum": checksum.user_checksum(conn, user_id)}


@app.delete("/v1/user")
def delete_account(user_id: str = Depends(current_user_id)) -> JSONResponse:
    with db.connection() as conn:
        deleted = codes.delete_user(conn, user_id)
    logger.info("Account deletion requested (deleted=%s)", deleted)
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**session.clear_session_cookie_kwargs(load_server_config()))
    return resp


def run(host: str = "0.0.0.0", port: int = 8085) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").lower()
    uvicorn_log_level = log_level if log_level in ["critical", "error", "warning", "info", "debug", "trace"] else "info"

    logger.info("Starting sync server on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
