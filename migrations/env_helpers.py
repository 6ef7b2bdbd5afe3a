"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
DATABASE_URL may be a URL (postgres://, postgresql://) or a libpq key=value
DSN as used by psycopg2 in the application; DB_PASSWORD fills in a missing
password in either form.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVERNAME = "postgresql+psycopg2"


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert `dbname=... user=... host=...` to a SQLAlchemy URL string.

    A host starting with "/" is a Unix socket directory (Cloud SQL) and is
    passed as the `host` query parameter.
    """
    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD") or None
    host = params.get("host", "localhost")

    if host.startswith("/"):
        url = URL.create(
            DRIVERNAME,
            username=params.get("user"),
            password=password,
            database=params.get("dbname"),
            query={"host": host},
        )
    else:
        url = URL.create(
            DRIVERNAME,
            username=params.get("user"),
            password=password,
            host=host,
            port=int(params.get("port", "5432")),
            database=params.get("dbname"),
        )
    return url.render_as_string(hide_password=False)


def get_database_url() -> str:
    """Read DATABASE_URL and normalise it for SQLAlchemy + psycopg2.

    Raises:
        RuntimeError: DATABASE_URL is not set.
    """
    raw = os.environ.get("DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in raw:
        return libpq_dsn_to_url(raw)

    url = make_url(raw.replace("postgres://", "postgresql://", 1))
    url = url.set(drivername=DRIVERNAME)
    db_password = os.environ.get("DB_PASSWORD")
    if db_password and not url.password:
        url = url.set(password=db_password)
    return url.render_as_string(hide_password=False)
