"""Channels, room mappings and sync logs.

Revision ID: 0002_channels
Revises: 0001_initial_schema
Create Date: 2026-09-21
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "0002_channels"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "002_channels.sql"


def upgrade() -> None:
    op.get_bind().exec_driver_sql(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_logs")
    op.execute("DROP TABLE IF EXISTS channel_mappings")
    op.execute("DROP TABLE IF EXISTS channels")
