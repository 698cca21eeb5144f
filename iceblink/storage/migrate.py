"""
Schema migrations, applied at server startup (or with `main.py migrate`).

Files in `migrations/` are named `NNNN_description.sql` and run in version
order. The digest of every applied file is recorded; a file edited after it
ran stops startup instead of silently diverging.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional

import psycopg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
MIGRATION_LOCK_KEY = 4260581137

_FILENAME = re.compile(r"^(\d{4})_\w+\.sql$")

# contype in pg_constraint -> what the code store relies on it for
_CODES_CONSTRAINTS = {
    "p": "unique code ids (codes primary key)",
    "f": "code ownership (codes.owner_id -> users.id)",
}


class Migration(NamedTuple):
    version: str
    name: str
    sql: str
    digest: str


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    by_version: Dict[str, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        match = _FILENAME.match(path.name)
        if match is None:
            raise ValueError(f"Migration file {path.name!r} is not named NNNN_description.sql")
        version = match.group(1)
        if version in by_version:
            raise ValueError(f"Migration version {version} used by {by_version[version].name} and {path.name}")
        raw = path.read_bytes()
        by_version[version] = Migration(version, path.name, raw.decode("utf-8"), hashlib.sha256(raw).hexdigest())
    return [by_version[v] for v in sorted(by_version)]


def _connect(dsn: str) -> psycopg.Connection:
    return psycopg.connect(dsn, autocommit=True)


def check_codes_constraints(conn) -> None:
    """Raise RuntimeError unless the schema enforces id uniqueness and ownership for codes."""
    rows = conn.execute(
        "SELECT contype FROM pg_constraint WHERE conrelid = 'codes'::regclass AND contype IN ('p', 'f')"
    ).fetchall()
    present = {str(r[0]) for r in rows}
    missing = [desc for kind, desc in _CODES_CONSTRAINTS.items() if kind not in present]
    if missing:
        raise RuntimeError(f"Schema does not enforce {', '.join(missing)}")


def apply_migrations(dsn: str, migrations: Optional[Iterable[Migration]] = None) -> List[str]:
    """
    Bring the schema up to date and return the versions this call applied.

    Runs as a single transaction under an advisory lock: replicas starting at
    the same time serialize here, and a failing file leaves nothing behind.
    """
    pending = load_migrations() if migrations is None else list(migrations)
    applied: List[str] = []

    with _connect(dsn) as conn, conn.transaction():
        conn.execute("SELECT pg_advisory_xact_lock(%s)", (MIGRATION_LOCK_KEY,))
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            " version text PRIMARY KEY,"
            " digest text NOT NULL,"
            " applied_at timestamptz NOT NULL DEFAULT now())"
        )
        recorded = {str(v): str(d) for v, d in conn.execute("SELECT version, digest FROM schema_migrations").fetchall()}

        for m in pending:
            if m.version in recorded:
                if recorded[m.version] != m.digest:
                    raise RuntimeError(f"Migration {m.name} changed after it was applied")
                continue
            conn.execute(m.sql)
            conn.execute("INSERT INTO schema_migrations (version, digest) VALUES (%s, %s)", (m.version, m.digest))
            logger.info("Applied migration %s", m.name)
            applied.append(m.version)

        check_codes_constraints(conn)

    return applied
