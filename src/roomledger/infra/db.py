"""Database access layer using psycopg2.

Provides:
- get_conn(): connection from DATABASE_URL (DB_PASSWORD fills a missing password)
- txn(): short transaction, commit on success and rollback on error
- advisory_xact_lock(): transaction-scoped advisory lock
"""

import os
from contextlib import contextmanager
from typing import Iterator

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor, parse_dsn

# uuid[] columns (applies_to_rooms) arrive as unparsed text without this
psycopg2.extras.register_uuid()


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    db_password = os.environ.get("DB_PASSWORD")
    if db_password and not parse_dsn(dsn).get("password"):
        return psycopg2.connect(dsn, password=db_password)
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a block inside one transaction.

    If conn is None, a connection is opened for the block and closed on exit.
    Commits on successful exit, rolls back on exception.

    Example:
        with txn() as cur:
            cur.execute("UPDATE stays SET notes = %s WHERE id = %s", (n, sid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def advisory_xact_lock(cur: PgCursor, key: int) -> None:
    """Block until the transaction-scoped advisory lock `key` is ours.

    Released automatically at commit or rollback; there is no unlock call.
    """
    cur.execute("SELECT pg_advisory_xact_lock(%s)", (key,))
