"""Ephemeral database naming and SQL quoting helpers."""

from __future__ import annotations

import uuid

DEFAULT_PREFIX = "test_"

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes.
MAX_IDENTIFIER_BYTES = 63


def generate_db_name(prefix: str = DEFAULT_PREFIX) -> str:
    """Return a fresh database name: *prefix* followed by a canonical UUID4.

    No collision check is made; a duplicate name fails at CREATE DATABASE.
    """
    if not prefix:
        raise ValueError("Database name prefix must be non-empty")
    name = f"{prefix}{uuid.uuid4()}"
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        raise ValueError(
            f"Database name prefix {prefix!r} is too long: generated names must fit "
            f"in {MAX_IDENTIFIER_BYTES} bytes"
        )
    return name


def quote_ident(identifier: str) -> str:
    """Quote a SQL identifier for safe interpolation."""
    return '"' + identifier.replace('"', '""') + '"'
