"""Initial schema: properties, rooms, guests, pricing rules, stays, blocks, outbox.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-09-14
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "001_initial.sql"


def upgrade() -> None:
    # raw execution so the file may hold several statements
    op.get_bind().exec_driver_sql(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
