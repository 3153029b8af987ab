"""pgtestdb — disposable, migrated PostgreSQL databases for tests."""

from pgtestdb.config import build_instance_url, build_server_url, server_url_from_env
from pgtestdb.db import EphemeralDatabase
from pgtestdb.errors import (
    ConfigError,
    MigrationError,
    PgTestDbError,
    ProvisioningError,
    TeardownError,
)
from pgtestdb.migrations import apply_migrations
from pgtestdb.naming import generate_db_name

__all__ = [
    "ConfigError",
    "EphemeralDatabase",
    "MigrationError",
    "PgTestDbError",
    "ProvisioningError",
    "TeardownError",
    "apply_migrations",
    "build_instance_url",
    "build_server_url",
    "generate_db_name",
    "server_url_from_env",
]
