"""
Pytest config.

Imports resolve against the repo root so tests run from a plain checkout as
well as from an editable install.
"""

from __future__ import annotations

import dataclasses
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import psycopg
import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from iceblink.auth import oidc, session  # noqa: E402
from iceblink.config import load_server_config  # noqa: E402
from iceblink.storage.codes import Code, new_code_id  # noqa: E402

TEST_JWT_SECRET = "test-secret-key-for-testing-purposes-only-0123456789"
TEST_CLIENT_ID = "test-client-id"
TEST_ISSUER = "https://id.example.com"


@pytest.fixture(autouse=True)
def _server_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("CLIENT_ID", TEST_CLIENT_ID)
    monkeypatch.setenv("CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("OAUTH_SERVER", TEST_ISSUER)
    monkeypatch.setenv("REDIRECT_URI", "iceblink://oauth")
    monkeypatch.setenv("DATABASE_URL", "postgresql://iceblink@localhost/iceblink_test")
    for name in (
        "FRONTFACING",
        "COOKIE_SECURE",
        "SESSION_TTL_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
        "PORT",
        "DB_POOL_MIN_SIZE",
        "DB_POOL_MAX_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
    load_server_config.cache_clear()
    yield
    load_server_config.cache_clear()


def make_openid_client(jwks: Optional[dict] = None) -> oidc.OpenIdClient:
    metadata = oidc.ProviderMetadata(
        issuer=TEST_ISSUER,
        authorization_endpoint=f"{TEST_ISSUER}/authorize",
        token_endpoint=f"{TEST_ISSUER}/token",
        jwks_uri=f"{TEST_ISSUER}/jwks",
    )
    return oidc.OpenIdClient(
        metadata,
        client_id=TEST_CLIENT_ID,
        client_secret="test-client-secret",
        jwks=jwks if jwks is not None else {"keys": []},
    )


class MemoryCodeStore:
    """In-memory stand-in for `iceblink.storage.codes` used by API tests."""

    def __init__(self) -> None:
        self.users: Dict[str, Optional[str]] = {}
        self.rows: List[Code] = []

    def upsert_user(self, _conn, user_id: str, display_name: Optional[str]) -> None:
        self.users[user_id] = display_name or self.users.get(user_id)

    def delete_user(self, _conn, user_id: str) -> bool:
        self.rows = [c for c in self.rows if c.owner_id != user_id]
        existed = user_id in self.users
        self.users.pop(user_id, None)
        return existed

    def create_code(self, _conn, owner_id: str, *, content, display_name, icon_url=None, website_url=None) -> Code:
        if owner_id not in self.users:
            raise psycopg.errors.ForeignKeyViolation("codes_owner_id_fkey")
        code = Code(
            id=new_code_id(),
            owner_id=owner_id,
            content=content,
            display_name=display_name,
            icon_url=icon_url,
            website_url=website_url,
        )
        self.rows.append(code)
        return code

    def list_codes(self, _conn, owner_id: str) -> List[Code]:
        return [c for c in self.rows if c.owner_id == owner_id]

    def get_code(self, _conn, code_id: str, owner_id: str) -> Optional[Code]:
        for c in self.rows:
            if c.id == code_id and c.owner_id == owner_id:
                return c
        return None

    def edit_code(self, _conn, code_id: str, owner_id: str, **fields) -> Optional[Code]:
        for name in ("content", "display_name"):
            if name in fields and fields[name] is None:
                raise ValueError(f"{name} cannot be null")
        for i, c in enumerate(self.rows):
            if c.id == code_id and c.owner_id == owner_id:
                self.rows[i] = dataclasses.replace(c, **fields)
                return self.rows[i]
        return None

    def delete_code(self, _conn, code_id: str, owner_id: str) -> bool:
        before = len(self.rows)
        self.rows = [c for c in self.rows if not (c.id == code_id and c.owner_id == owner_id)]
        return len(self.rows) < before

    def install(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("upsert_user", "delete_user", "create_code", "list_codes", "get_code", "edit_code", "delete_code"):
            monkeypatch.setattr(f"iceblink.storage.codes.{name}", getattr(self, name))
        monkeypatch.setattr("iceblink.storage.checksum.list_codes", self.list_codes)

        @contextmanager
        def _connection():
            yield None

        monkeypatch.setattr("iceblink.storage.db.connection", _connection)


@pytest.fixture
def memory_store(monkeypatch: pytest.MonkeyPatch) -> MemoryCodeStore:
    store = MemoryCodeStore()
    store.install(monkeypatch)
    return store


@pytest.fixture
def stub_startup(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Server startup migrates, opens the pool and discovers the provider.
    Stub all three so `TestClient(app)` makes no network or database calls.
    """
    monkeypatch.setattr("iceblink.storage.migrate.apply_migrations", lambda dsn, migrations=None: [])
    monkeypatch.setattr("iceblink.storage.db.open_pool", lambda _cfg: None)
    monkeypatch.setattr("iceblink.storage.db.close_pool", lambda: None)
    monkeypatch.setattr("iceblink.auth.oidc.discover", lambda *_a, **_kw: make_openid_client())


@pytest.fixture
def client(stub_startup, memory_store):  # type: ignore[no-untyped-def]
    from fastapi.testclient import TestClient

    from iceblink.api.server import app

    with TestClient(app) as c:
        yield c


def bearer(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {session.mint(load_server_config(), user_id)}"}
