"""pytest plugin providing ephemeral database fixtures.

Loaded automatically through the ``pytest11`` entry point. Configure with
ini options::

    [tool.pytest.ini_options]
    pgtestdb_migrations = "migrations"
    pgtestdb_url = "postgres://postgres@localhost:5432"

When ``pgtestdb_url`` is unset the server is resolved from the environment
(``PGTESTDB_URL``, ``DATABASE_URL``, then ``POSTGRES_*``).
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from pgtestdb.config import server_url_from_env
from pgtestdb.db import DEFAULT_MIGRATIONS, EphemeralDatabase
from pgtestdb.errors import TeardownError


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addini(
        "pgtestdb_migrations",
        help="Migration directory applied to each ephemeral database (relative to rootdir)",
        default=DEFAULT_MIGRATIONS,
    )
    parser.addini(
        "pgtestdb_url",
        help="Administrative PostgreSQL URL used to create ephemeral databases",
        default="",
    )


def _default_migrations(config: pytest.Config) -> Path:
    path = Path(config.getini("pgtestdb_migrations"))
    if not path.is_absolute():
        path = config.rootpath / path
    return path


@pytest.fixture
def pgtestdb_factory(
    request: pytest.FixtureRequest,
) -> Iterator[Callable[..., EphemeralDatabase]]:
    """Factory for ephemeral databases, all dropped when the test finishes.

    Tests should use this as:
        db = pgtestdb_factory()
        other = pgtestdb_factory(migrations="tests/other_migrations")
    """
    created: list[EphemeralDatabase] = []

    def _make(migrations: str | Path | None = None, **kwargs: Any) -> EphemeralDatabase:
        server_url = request.config.getini("pgtestdb_url") or server_url_from_env()
        db = EphemeralDatabase.from_url(
            server_url,
            migrations if migrations is not None else _default_migrations(request.config),
            **kwargs,
        )
        created.append(db)
        return db

    yield _make

    errors: list[TeardownError] = []
    for db in reversed(created):
        try:
            db.close()
        except TeardownError as exc:
            errors.append(exc)
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise ExceptionGroup("Failed to drop ephemeral databases", errors)


@pytest.fixture
def ephemeral_db(pgtestdb_factory: Callable[..., EphemeralDatabase]) -> EphemeralDatabase:
    """A single ephemeral database migrated with the configured migration set."""
    return pgtestdb_factory()
