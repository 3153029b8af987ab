"""Alembic environment for migrating ephemeral test databases.

Only programmatic, online invocation is supported: ``pgtestdb.migrations``
hands over a live connection through ``config.attributes["connection"]`` and
revisions are discovered from the configured ``version_locations``.
Revisions use raw SQL via ``op.execute()``; there is no target metadata.
"""

from __future__ import annotations

from alembic import context


def run_migrations_online() -> None:
    """Run migrations over the connection supplied by the caller."""
    connection = context.config.attributes.get("connection")
    if connection is None:
        raise RuntimeError(
            "pgtestdb's Alembic environment needs a connection in config.attributes"
        )

    context.configure(connection=connection, target_metadata=None)

    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    raise RuntimeError("pgtestdb's Alembic environment does not support offline mode")

run_migrations_online()
