"""
Database initialization for the receipt document store.

This module wires up the Postgres connection pool (via psycopg_pool) and the
two document tables: one JSONB document per receipt under the owning user's
partition, and one JSONB document per user holding every category budget.

Usage:
    from receiptwise.database import ensure_db_ready, ensure_schema, get_connection
    ensure_db_ready()  # optional: verifies DB connectivity
    ensure_schema()
    with get_connection() as conn:
        ...
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv
from psycopg import Connection, connect
from psycopg.errors import DuplicatePreparedStatement, OperationalError
from psycopg_pool import ConnectionPool


_POOL: Optional[ConnectionPool] = None

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS receipt_documents (
        user_id    TEXT        NOT NULL,
        id         TEXT        NOT NULL,
        data       JSONB       NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS receipt_documents_user_date_idx
        ON receipt_documents (user_id, (data->>'date') DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_documents (
        user_id    TEXT        PRIMARY KEY,
        data       JSONB       NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _load_env() -> None:
    """Load environment variables from .env if present."""
    load_dotenv(override=False)


def use_in_memory() -> bool:
    """True when USE_IN_MEMORY selects the in-process store instead of Postgres."""
    _load_env()
    return os.getenv("USE_IN_MEMORY", "").lower() in {"1", "true", "yes"}


def get_database_url() -> str:
    _load_env()
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set in environment/.env")
    return url


def ensure_db_ready(timeout_seconds: int = 10) -> None:
    """Attempt a simple connection and ping to verify DB is reachable."""
    dsn = get_database_url()
    try:
        with connect(
            dsn,
            connect_timeout=timeout_seconds,
            prepare_threshold=None,
            autocommit=True,
        ) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
    except (OperationalError, DuplicatePreparedStatement) as e:
        raise RuntimeError(f"Unable to connect to Postgres: {e}")


def get_pool() -> ConnectionPool:
    """Return a singleton connection pool bound to DATABASE_URL.

    prepare_threshold=None disables server-side prepared statements so the
    pool also works behind transaction-mode poolers (Supabase/Supavisor).
    """
    global _POOL
    if _POOL is None:
        _POOL = ConnectionPool(
            get_database_url(),
            kwargs={"prepare_threshold": None},
            open=True,
        )
    return _POOL


@contextmanager
def get_connection() -> Iterator[Connection]:
    """Borrow a pooled connection; the transaction commits on clean exit."""
    with get_pool().connection() as conn:
        yield conn


def ensure_schema() -> None:
    """Create the document tables if they do not exist yet."""
    with get_connection() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)


def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.close()
        _POOL = None
