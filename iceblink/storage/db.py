"""Process-wide Postgres connection pool."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
from psycopg_pool import ConnectionPool

from iceblink.config import ServerConfig

logger = logging.getLogger(__name__)

_pool: Optional[ConnectionPool] = None


def open_pool(cfg: ServerConfig) -> ConnectionPool:
    global _pool
    if _pool is None:
        # Autocommit: multi-statement units of work opt in with `conn.transaction()`.
        _pool = ConnectionPool(
            cfg.database_url,
            min_size=cfg.db_pool_min_size,
            max_size=cfg.db_pool_max_size,
            kwargs={"autocommit": True},
            timeout=cfg.request_timeout_seconds,
            open=True,
        )
        logger.info("Opened Postgres pool (min=%d max=%d)", cfg.db_pool_min_size, cfg.db_pool_max_size)
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None
        logger.info("Closed Postgres pool")


@contextmanager
def connection() -> Iterator[psycopg.Connection]:
    """Borrow a pooled connection for the duration of one request."""
    if _pool is None:
        raise RuntimeError("Database pool is not open")
    with _pool.connection() as conn:
        yield conn
