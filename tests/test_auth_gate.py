from __future__ import annotations

import time

import jwt

from conftest import TEST_JWT_SECRET, bearer
from iceblink.auth.session import SESSION_COOKIE_NAME, mint
from iceblink.config import load_server_config

PROTECTED = [
    ("GET", "/v1/codes"),
    ("PUT", "/v1/code"),
    ("PATCH", "/v1/code/abcdefghijklmnop"),
    ("DELETE", "/v1/code/abcdefghijklmnop"),
    ("GET", "/v1/code/abcdefghijklmnop/icon"),
    ("GET", "/v1/checksum"),
    ("DELETE", "/v1/user"),
]


def _expired_token() -> str:
    cfg = load_server_config()
    return mint(cfg, "user-1", now=int(time.time()) - cfg.session_ttl_seconds - 10)


def _forged_token() -> str:
    now = int(time.time())
    return jwt.encode(
        {"sub": "user-1", "iat": now, "exp": now + 60, "iss": "iceblink"},
        "not-" + TEST_JWT_SECRET,
        algorithm="HS256",
    )


def test_healthz_is_public(client) -> None:  # type: ignore[no-untyped-def]
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_protected_routes_require_auth(client) -> None:  # type: ignore[no-untyped-def]
    for method, path in PROTECTED:
        r = client.request(method, path)
        assert r.status_code == 401, (method, path)
        assert r.json() == {"detail": "Unauthorized"}


def test_unknown_paths_fail_closed(client) -> None:  # type: ignore[no-untyped-def]
    assert client.get("/v1/does-not-exist").status_code == 401


def test_all_token_failures_look_the_same(client) -> None:  # type: ignore[no-untyped-def]
    responses = [
        client.get("/v1/codes"),
        client.get("/v1/codes", headers={"Authorization": "Bearer garbage"}),
        client.get("/v1/codes", headers={"Authorization": f"Bearer {_expired_token()}"}),
        client.get("/v1/codes", headers={"Authorization": f"Bearer {_forged_token()}"}),
        client.get("/v1/codes", headers={"Authorization": "Basic dXNlcjpwYXNz"}),
    ]
    for r in responses:
        assert r.status_code == 401
        assert r.content == responses[0].content
        assert "www-authenticate" not in {k.lower() for k in r.headers.keys()}


def test_bearer_header_authenticates(client, memory_store) -> None:  # type: ignore[no-untyped-def]
    r = client.get("/v1/codes", headers=bearer("user-1"))
    assert r.status_code == 200
    assert r.json() == []


def test_cookie_authenticates(client) -> None:  # type: ignore[no-untyped-def]
    token = mint(load_server_config(), "user-1")
    r = client.get("/v1/codes", headers={"Cookie": f"{SESSION_COOKIE_NAME}={token}"})
    assert r.status_code == 200


def test_header_is_tried_before_cookie(client, memory_store) -> None:  # type: ignore[no-untyped-def]
    memory_store.upsert_user(None, "user-1", None)
    memory_store.upsert_user(None, "user-2", None)
    memory_store.create_code(None, "user-2", content="c2", display_name="two")

    cookie = f"{SESSION_COOKIE_NAME}={mint(load_server_config(), 'user-1')}"
    r = client.get("/v1/codes", headers={**bearer("user-2"), "Cookie": cookie})
    assert r.status_code == 200
    assert [c["owner_id"] for c in r.json()] == ["user-2"]


def test_identity_does_not_leak_between_requests(client, memory_store) -> None:  # type: ignore[no-untyped-def]
    memory_store.upsert_user(None, "user-1", None)
    memory_store.create_code(None, "user-1", content="c1", display_name="one")

    assert len(client.get("/v1/codes", headers=bearer("user-1")).json()) == 1
    assert client.get("/v1/codes").status_code == 401
    assert client.get("/v1/codes", headers=bearer("user-2")).json() == []
