"""create_todos

Revision ID: todos_001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "todos_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE todos (
            id SERIAL PRIMARY KEY,
            title TEXT
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS todos")
