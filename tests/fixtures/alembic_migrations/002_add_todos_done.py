"""add_todos_done

Revision ID: todos_002
Revises: todos_001
Create Date: 2024-01-02 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "todos_002"
down_revision = "todos_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("ALTER TABLE todos ADD COLUMN done BOOLEAN NOT NULL DEFAULT false")


def downgrade() -> None:
    op.execute("ALTER TABLE todos DROP COLUMN IF EXISTS done")
