from __future__ import annotations

import os
import sys

import pytest

import main


@pytest.fixture(autouse=True)
def _restore_exported_env(monkeypatch) -> None:
    # main() writes flags into os.environ; register every name so teardown restores it.
    for name in list(main._SETTINGS.values()) + ["LOG_LEVEL"]:
        if name in os.environ:
            monkeypatch.setenv(name, os.environ[name])
        else:
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)


def test_migrate_command_applies_migrations(monkeypatch, capsys) -> None:
    seen = []

    def _apply(dsn, migrations=None):  # type: ignore[no-untyped-def]
        seen.append(dsn)
        return ["0001"]

    monkeypatch.setattr("iceblink.storage.migrate.apply_migrations", _apply)
    monkeypatch.setattr(sys, "argv", ["main.py", "migrate", "--database-url", "postgresql://ice@db/iceblink"])

    assert main.main() == 0
    assert seen == ["postgresql://ice@db/iceblink"]
    assert "Applied 1 migration(s): 0001" in capsys.readouterr().out


def test_migrate_without_database_fails(monkeypatch, capsys) -> None:
    monkeypatch.delenv("DATABASE_URL")
    for name in ("POSTGRES_HOST", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(sys, "argv", ["main.py", "migrate"])
    assert main.main() == 2


def test_serve_passes_flags_through_config(monkeypatch) -> None:
    started = []
    monkeypatch.setattr("iceblink.api.server.run", lambda host, port: started.append((host, port)))
    monkeypatch.setattr(sys, "argv", ["main.py", "serve", "--host", "127.0.0.1", "--port", "9123"])

    assert main.main() == 0
    assert started == [("127.0.0.1", 9123)]


def test_serve_reports_bad_config(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["main.py", "serve", "--jwt-secret", "short"])
    assert main.main() == 2
    assert "JWT_SECRET" in capsys.readouterr().err


def test_command_is_required(monkeypatch) -> None:
    monkeypatch.setattr(sys, "argv", ["main.py"])
    with pytest.raises(SystemExit):
        main.main()
