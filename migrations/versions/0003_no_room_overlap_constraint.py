"""Exclusion constraint preventing overlapping occupying stays on one room.

The application checks availability under a room row lock; this constraint
holds even if that path is bypassed. Cancelled and no-show stays are exempt.

Revision ID: 0003_no_room_overlap_constraint
Revises: 0002_channels
Create Date: 2026-09-28
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "0003_no_room_overlap_constraint"
down_revision = "0002_channels"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parents[1] / "sql" / "003_no_room_overlap_constraint.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute("ALTER TABLE stays DROP CONSTRAINT IF EXISTS stays_no_room_overlap")
    # btree_gist is kept: other indexes may depend on it
