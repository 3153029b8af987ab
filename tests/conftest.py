"""Shared fixtures for the pgtestdb test suite.

Integration tests run against a PostgreSQL testcontainer shared for the whole
session; each test provisions its own ephemeral databases on it.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SQL_MIGRATIONS = FIXTURES_DIR / "migrations"
ALEMBIC_MIGRATIONS = FIXTURES_DIR / "alembic_migrations"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture(scope="session")
def pg_coordinates(postgres_container: PostgresContainer) -> dict[str, str | int]:
    """Structured server coordinates of the shared container."""
    return {
        "host": postgres_container.get_container_host_ip(),
        "port": int(postgres_container.get_exposed_port(5432)),
        "user": postgres_container.username,
        "password": postgres_container.password,
    }


@pytest.fixture(scope="session")
def pg_server_url(pg_coordinates: dict[str, str | int]) -> str:
    """Administrative URL of the shared container."""
    from pgtestdb.config import build_server_url

    return build_server_url(
        host=str(pg_coordinates["host"]),
        port=int(pg_coordinates["port"]),
        user=str(pg_coordinates["user"]),
        password=str(pg_coordinates["password"]),
    )


@pytest.fixture
def sql_migrations() -> Path:
    return SQL_MIGRATIONS


@pytest.fixture
def alembic_migrations() -> Path:
    return ALEMBIC_MIGRATIONS
