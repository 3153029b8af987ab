"""Apply a migration set to a freshly created database.

Two on-disk formats are understood, detected from the directory contents:

- **SQL files** named ``<version>_<description>.sql`` (or ``.up.sql``;
  ``.down.sql`` files are ignored). Versions are integers and are applied in
  ascending order over one asyncpg connection. Each applied version is
  recorded in ``_pgtestdb_migrations`` with a SHA-384 checksum.
- **Alembic revisions**: a directory of ``*.py`` revision scripts, upgraded
  to ``heads`` through the environment shipped in ``pgtestdb/alembic``.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path

import asyncpg
from alembic.config import Config
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from alembic import command
from pgtestdb.errors import MigrationError

logger = logging.getLogger(__name__)

# Alembic script location (env.py) bundled with this package
ALEMBIC_DIR = Path(__file__).resolve().parent / "alembic"

MIGRATIONS_TABLE = "_pgtestdb_migrations"

_SQL_MIGRATION_RE = re.compile(
    r"^(?P<version>\d+)_(?P<description>.+?)(?P<direction>\.up|\.down)?\.sql$"
)
_NO_TRANSACTION_DIRECTIVE = "-- no-transaction"


class MigrationFormat(enum.StrEnum):
    """On-disk layout of a migration directory."""

    SQL = "sql"
    ALEMBIC = "alembic"


@dataclass(frozen=True)
class SqlMigration:
    """A single forward SQL migration loaded from disk."""

    version: int
    description: str
    path: Path
    sql: str
    checksum: bytes
    no_transaction: bool = False


def _is_alembic_revision(entry: Path) -> bool:
    return entry.suffix == ".py" and entry.name != "__init__.py"


def detect_migration_format(path: Path) -> MigrationFormat | None:
    """Return the format of the migration directory at *path*.

    Returns ``None`` for a directory with nothing to apply.
    """
    if not path.is_dir():
        raise MigrationError(f"Migration path is not a directory: {path}")
    files = [entry for entry in path.iterdir() if entry.is_file()]
    has_sql = any(entry.suffix == ".sql" for entry in files)
    has_alembic = any(_is_alembic_revision(entry) for entry in files)
    if has_sql and has_alembic:
        raise MigrationError(
            f"Migration path {path} mixes SQL files and Alembic revisions; use one format"
        )
    if has_sql:
        return MigrationFormat.SQL
    if has_alembic:
        return MigrationFormat.ALEMBIC
    return None


# ---------------------------------------------------------------------------
# SQL-file migrations
# ---------------------------------------------------------------------------


def load_sql_migrations(path: Path) -> list[SqlMigration]:
    """Load forward SQL migrations from *path*, sorted by version."""
    migrations: dict[int, SqlMigration] = {}
    for entry in sorted(path.iterdir()):
        if not entry.is_file() or entry.suffix != ".sql":
            continue
        match = _SQL_MIGRATION_RE.fullmatch(entry.name)
        if match is None:
            raise MigrationError(
                f"Invalid migration filename {entry.name!r}: "
                "expected <version>_<description>.sql"
            )
        if match.group("direction") == ".down":
            continue

        version = int(match.group("version"))
        if version in migrations:
            raise MigrationError(
                f"Duplicate migration version {version}: "
                f"{migrations[version].path.name} and {entry.name}"
            )
        try:
            raw = entry.read_bytes()
        except OSError as exc:
            raise MigrationError(f"Cannot read migration {entry.name}: {exc}") from exc
        try:
            sql = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MigrationError(f"Migration {entry.name} is not valid UTF-8") from exc
        migrations[version] = SqlMigration(
            version=version,
            description=match.group("description").replace("_", " "),
            path=entry,
            sql=sql,
            checksum=hashlib.sha384(raw).digest(),
            no_transaction=sql.lstrip().startswith(_NO_TRANSACTION_DIRECTIVE),
        )
    return [migrations[version] for version in sorted(migrations)]


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
            version BIGINT PRIMARY KEY,
            description TEXT NOT NULL,
            installed_on TIMESTAMPTZ NOT NULL DEFAULT now(),
            checksum BYTEA NOT NULL,
            execution_time BIGINT NOT NULL
        )
    """)


async def _record_migration(
    conn: asyncpg.Connection, migration: SqlMigration, elapsed_ns: int
) -> None:
    await conn.execute(
        f"INSERT INTO {MIGRATIONS_TABLE} (version, description, checksum, execution_time) "
        "VALUES ($1, $2, $3, $4)",
        migration.version,
        migration.description,
        migration.checksum,
        elapsed_ns,
    )


async def run_sql_migrations(conn: asyncpg.Connection, migrations: list[SqlMigration]) -> int:
    """Apply *migrations* over *conn* in order and return how many were applied.

    Versions already recorded are skipped; a recorded version whose checksum
    differs from the file on disk is an error.
    """
    await _ensure_migrations_table(conn)
    applied = {
        row["version"]: bytes(row["checksum"])
        for row in await conn.fetch(f"SELECT version, checksum FROM {MIGRATIONS_TABLE}")
    }

    count = 0
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is not None:
            if recorded != migration.checksum:
                raise MigrationError(
                    f"Migration {migration.version} ({migration.path.name}) was modified "
                    "after it was applied"
                )
            continue

        started = time.perf_counter_ns()
        try:
            if migration.no_transaction:
                await conn.execute(migration.sql)
                await _record_migration(conn, migration, time.perf_counter_ns() - started)
            else:
                async with conn.transaction():
                    await conn.execute(migration.sql)
                    await _record_migration(conn, migration, time.perf_counter_ns() - started)
        except asyncpg.PostgresError as exc:
            raise MigrationError(
                f"Migration {migration.version} ({migration.path.name}) failed: {exc}"
            ) from exc
        logger.debug("Applied migration %s: %s", migration.version, migration.description)
        count += 1
    return count


async def _apply_sql(db_url: str, path: Path) -> int:
    migrations = load_sql_migrations(path)
    conn = await asyncpg.connect(db_url)
    try:
        return await run_sql_migrations(conn, migrations)
    finally:
        await conn.close()


# ---------------------------------------------------------------------------
# Alembic migrations
# ---------------------------------------------------------------------------


def sqlalchemy_url(db_url: str) -> str:
    """Convert a libpq-style URL into a SQLAlchemy ``postgresql+asyncpg`` URL.

    ``sslmode`` is renamed to ``ssl``, the spelling the asyncpg dialect accepts.
    """
    url = make_url(db_url).set(drivername="postgresql+asyncpg")
    sslmode = url.query.get("sslmode")
    if sslmode is not None:
        url = url.difference_update_query(["sslmode"]).update_query_dict({"ssl": sslmode})
    return url.render_as_string(hide_password=False)


def _build_alembic_config(path: Path) -> Config:
    """Build an Alembic Config using the bundled env.py and revisions at *path*."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; escape '%' in paths.
    config.set_main_option("version_locations", str(path).replace("%", "%%"))
    config.set_main_option("path_separator", "os")
    return config


def _upgrade_heads(connection: object, config: Config) -> None:
    config.attributes["connection"] = connection
    command.upgrade(config, "heads")


def _count_alembic_revisions(path: Path) -> int:
    return sum(1 for entry in path.iterdir() if entry.is_file() and _is_alembic_revision(entry))


async def _apply_alembic(db_url: str, path: Path) -> int:
    config = _build_alembic_config(path)
    engine = create_async_engine(sqlalchemy_url(db_url), poolclass=NullPool)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(_upgrade_heads, config)
    except OSError:
        raise
    except Exception as exc:
        # Revision scripts may raise anything, including on import.
        raise MigrationError(f"Alembic upgrade of {path} failed: {exc!r}") from exc
    finally:
        await engine.dispose()
    return _count_alembic_revisions(path)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def apply_migrations(db_url: str, path: str | os.PathLike[str]) -> int:
    """Apply every migration found at *path* to the database at *db_url*.

    Returns the number of migrations found and applied. Raises
    :class:`MigrationError` when the set is malformed or a migration fails.
    Anything a revision script raises, including on import, is wrapped in
    :class:`MigrationError`. Raw :class:`OSError` connection failures are
    not wrapped on either path.
    """
    migrations_dir = Path(path)
    fmt = detect_migration_format(migrations_dir)
    if fmt is None:
        logger.warning("No migrations found in %s; database left empty", migrations_dir)
        return 0

    if fmt is MigrationFormat.SQL:
        count = await _apply_sql(db_url, migrations_dir)
    else:
        count = await _apply_alembic(db_url, migrations_dir)
    logger.info("Applied %d %s migration(s) from %s", count, fmt, migrations_dir)
    return count
