"""Exception types raised by pgtestdb."""

from __future__ import annotations


class PgTestDbError(Exception):
    """Base class for all pgtestdb failures."""


class ConfigError(PgTestDbError, ValueError):
    """Raised when connection coordinates are missing, malformed, or invalid."""


class ProvisioningError(PgTestDbError):
    """Raised when the server is unreachable or the database cannot be created."""


class MigrationError(PgTestDbError):
    """Raised when a migration set cannot be loaded or fails to apply."""


class TeardownError(PgTestDbError):
    """Raised when an ephemeral database cannot be dropped."""
