"""Ephemeral PostgreSQL databases for tests.

An :class:`EphemeralDatabase` owns exactly one freshly created, fully migrated
database for its lifetime. Construction blocks until the database exists and
every migration has been applied; closing it terminates any remaining
connections and drops the database.

Typical use::

    with EphemeralDatabase("localhost", 5432, "postgres", "postgres", "migrations") as db:
        pool = await db.get_pool()
        await pool.execute("INSERT INTO todos (title) VALUES ('todo1')")
"""

from __future__ import annotations

import logging
import os
import weakref
from pathlib import Path
from typing import Any

import asyncpg

from pgtestdb.bridge import run_sync
from pgtestdb.config import (
    DEFAULT_HOST,
    DEFAULT_PASSWORD,
    DEFAULT_PORT,
    DEFAULT_USER,
    build_instance_url,
    build_server_url,
    normalize_server_url,
    redact_url,
    server_url_from_env,
)
from pgtestdb.errors import MigrationError, ProvisioningError, TeardownError
from pgtestdb.migrations import apply_migrations
from pgtestdb.naming import DEFAULT_PREFIX, generate_db_name, quote_ident

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS = "migrations"
DEFAULT_MAX_CONNECTIONS = 5

_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"
_DRIVER_ERRORS = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError)

_TERMINATE_BACKENDS_SQL = """
    SELECT pg_terminate_backend(pid)
    FROM pg_stat_activity
    WHERE pid <> pg_backend_pid() AND datname = $1
"""


def should_retry_with_ssl_disable(exc: Exception, server_url: str) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        "sslmode=" not in server_url
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


async def _connect_admin(server_url: str) -> asyncpg.Connection:
    """Open an administrative connection to the server."""
    try:
        return await asyncpg.connect(server_url)
    except Exception as exc:
        if not should_retry_with_ssl_disable(exc, server_url):
            raise
        logger.info(
            "Retrying PostgreSQL admin connection with ssl=disable after SSL upgrade loss"
        )
        return await asyncpg.connect(server_url, ssl="disable")


async def create_database(server_url: str, db_name: str, migrations: Path) -> None:
    """Create *db_name* on the server and apply *migrations* to it.

    Steps run strictly in order and the first failure aborts the rest. A
    database that was created but failed to migrate is left in place.
    """
    try:
        conn = await _connect_admin(server_url)
    except _DRIVER_ERRORS as exc:
        raise ProvisioningError(
            f"Cannot connect to PostgreSQL at {redact_url(server_url)}: {exc}"
        ) from exc
    try:
        # Can't use a parameterized query for CREATE DATABASE
        await conn.execute(f"CREATE DATABASE {quote_ident(db_name)}")
    except _DRIVER_ERRORS as exc:
        raise ProvisioningError(f"Cannot create database {db_name!r}: {exc}") from exc
    finally:
        await conn.close()
    logger.info("Created database: %s", db_name)

    try:
        await apply_migrations(build_instance_url(server_url, db_name), migrations)
    except MigrationError:
        raise
    except _DRIVER_ERRORS as exc:
        raise ProvisioningError(
            f"Cannot connect to new database {db_name!r} to migrate it: {exc}"
        ) from exc


async def drop_database(server_url: str, db_name: str) -> None:
    """Terminate every other connection to *db_name*, then drop it."""
    try:
        conn = await _connect_admin(server_url)
        try:
            terminated = await conn.fetch(_TERMINATE_BACKENDS_SQL, db_name)
            logger.debug("Terminated %d backend(s) connected to %s", len(terminated), db_name)
            await conn.execute(f"DROP DATABASE {quote_ident(db_name)}")
        finally:
            await conn.close()
    except _DRIVER_ERRORS as exc:
        raise TeardownError(f"Cannot drop database {db_name!r}: {exc}") from exc
    logger.info("Dropped database: %s", db_name)


def _finalize(server_url: str, db_name: str) -> None:
    """Teardown for databases that were never closed explicitly.

    Runs from garbage collection or interpreter exit, where there is no
    caller to raise to; a failure aborts the process rather than leaking the
    database silently.
    """
    logger.warning("Ephemeral database %s was not closed; dropping it now", db_name)
    try:
        run_sync(drop_database, server_url, db_name)
    except Exception:
        logger.critical(
            "Failed to drop ephemeral database %s; aborting", db_name, exc_info=True
        )
        os.abort()


class EphemeralDatabase:
    """A disposable, migrated PostgreSQL database owned by one test.

    Construct with structured coordinates, :meth:`from_url`, :meth:`from_env`
    or :meth:`default`. All entry points resolve the coordinates to a single
    administrative URL before provisioning.

    The database is dropped by :meth:`close`, by leaving a ``with`` block, or,
    as a last resort, when the object is garbage-collected.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str | None,
        migrations: str | os.PathLike[str],
        *,
        prefix: str = DEFAULT_PREFIX,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> None:
        self._provision(
            build_server_url(host, port, user, password),
            migrations,
            prefix=prefix,
            max_connections=max_connections,
        )

    @classmethod
    def from_url(
        cls,
        server_url: str,
        migrations: str | os.PathLike[str],
        *,
        prefix: str = DEFAULT_PREFIX,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> EphemeralDatabase:
        """Provision a database on the server at the pre-composed *server_url*."""
        db = cls.__new__(cls)
        db._provision(
            normalize_server_url(server_url),
            migrations,
            prefix=prefix,
            max_connections=max_connections,
        )
        return db

    @classmethod
    def from_env(
        cls,
        migrations: str | os.PathLike[str] = DEFAULT_MIGRATIONS,
        **kwargs: Any,
    ) -> EphemeralDatabase:
        """Provision a database on the server named by environment variables.

        See :func:`pgtestdb.config.server_url_from_env` for the variables read.
        """
        return cls.from_url(server_url_from_env(), migrations, **kwargs)

    @classmethod
    def default(cls) -> EphemeralDatabase:
        """Provision against ``postgres:postgres@localhost:5432`` with ``./migrations``."""
        return cls(DEFAULT_HOST, DEFAULT_PORT, DEFAULT_USER, DEFAULT_PASSWORD, DEFAULT_MIGRATIONS)

    def _provision(
        self,
        server_url: str,
        migrations: str | os.PathLike[str],
        *,
        prefix: str,
        max_connections: int,
    ) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self._server_url = server_url
        self._name = generate_db_name(prefix)
        self._migrations = Path(migrations)
        self.max_connections = max_connections
        self._closed = False

        try:
            run_sync(create_database, self._server_url, self._name, self._migrations)
        except Exception:
            logger.error(
                "Failed to provision ephemeral database %s on %s; "
                "any partially created database is left in place",
                self._name,
                redact_url(self._server_url),
            )
            raise

        self._finalizer = weakref.finalize(self, _finalize, self._server_url, self._name)

    # -- Addressing ---------------------------------------------------------

    @property
    def name(self) -> str:
        """Generated name of the ephemeral database."""
        return self._name

    @property
    def server_url(self) -> str:
        """Administrative URL: the server, with no database selected."""
        return self._server_url

    @property
    def url(self) -> str:
        """Instance URL: the administrative URL plus ``/<name>``."""
        return build_instance_url(self._server_url, self._name)

    @property
    def migrations(self) -> Path:
        return self._migrations

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Pools --------------------------------------------------------------

    async def get_pool(
        self,
        *,
        max_connections: int | None = None,
        min_connections: int = 1,
        **pool_kwargs: Any,
    ) -> asyncpg.Pool:
        """Open a new asyncpg pool on this database.

        The caller owns the returned pool. Pools are not tracked; any still
        connected at teardown are disconnected by the server.
        """
        if self._closed:
            raise RuntimeError(f"Ephemeral database '{self._name}' has already been dropped")
        max_size = self.max_connections if max_connections is None else max_connections
        if max_size < 1:
            raise ValueError("max_connections must be >= 1")
        pool = await asyncpg.create_pool(
            dsn=self.url,
            min_size=min(min_connections, max_size),
            max_size=max_size,
            **pool_kwargs,
        )
        logger.debug("Connection pool created for: %s (max_size=%d)", self._name, max_size)
        return pool

    # -- Teardown -----------------------------------------------------------

    def close(self) -> None:
        """Terminate remaining connections and drop the database.

        Calling ``close()`` again is a no-op. A failure raises
        :class:`TeardownError`; the drop is not retried.
        """
        if self._closed:
            return
        self._closed = True
        self._finalizer.detach()
        run_sync(drop_database, self._server_url, self._name)

    def __enter__(self) -> EphemeralDatabase:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<EphemeralDatabase {self._name!r} on {redact_url(self._server_url)} ({state})>"
