"""SQLite driver.

An "instance" is a directory; each database is a ``<name>.db`` file inside
it. SQLite supports transactional DDL, so a migration and its history row
commit together.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from schemaflow.drivers.base import (
    MIGRATION_HISTORY_TABLE,
    ConnectionConfig,
    Driver,
    DriverTransaction,
    MigrationHistory,
    register_driver,
)
from schemaflow.errors import DriverConnectionError, ExecutionError, TransientError, ValidationError
from schemaflow.models import EngineType

_MIGRATION_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATION_HISTORY_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_ts TEXT NOT NULL,
    creator TEXT DEFAULT '',
    version TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    description TEXT DEFAULT '',
    statement TEXT DEFAULT '',
    execution_duration_ms INTEGER DEFAULT 0
);
"""


def split_statements(sql: str) -> list[str]:
    """Split a script into complete statements using SQLite's own tokenizer.

    A ``;`` inside a string literal or trigger body does not end a statement.
    Trailing text that is not a complete statement is kept as the last item
    so the engine reports the syntax error.
    """
    statements: list[str] = []
    buf = ""
    for ch in sql:
        buf += ch
        if ch == ";" and sqlite3.complete_statement(buf):
            stmt = buf.strip()
            if stmt != ";":
                statements.append(stmt)
            buf = ""
    if buf.strip():
        statements.append(buf.strip())
    return statements


def _translate(exc: sqlite3.Error, action: str) -> Exception:
    message = f"{action}: {exc}"
    if isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower():
        return TransientError(message, cause=exc)
    return ExecutionError(message, cause=exc)


async def _rollback(conn: aiosqlite.Connection) -> None:
    if conn.in_transaction:
        await conn.execute("ROLLBACK")


def _database_path(directory: Path, name: str) -> Path:
    """``<directory>/<name>.db``, refusing names that resolve elsewhere."""
    path = (directory / f"{name}.db").resolve()
    if path.parent != directory.resolve():
        raise ValidationError(f"invalid database name: {name!r}", database=name)
    return path


class SqliteTransaction(DriverTransaction):
    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def execute(self, statement: str) -> None:
        for stmt in split_statements(statement):
            await self._conn.execute(stmt)

    async def find_migration(self, version: str) -> MigrationHistory | None:
        cursor = await self._conn.execute(
            f"SELECT * FROM {MIGRATION_HISTORY_TABLE} WHERE version = ?", (version,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return MigrationHistory(
            id=row["id"],
            version=row["version"],
            type=row["type"],
            description=row["description"] or "",
            statement=row["statement"] or "",
            creator=row["creator"] or "",
            execution_duration_ms=row["execution_duration_ms"] or 0,
            created_ts=datetime.fromisoformat(row["created_ts"]),
        )

    async def record_migration(self, history: MigrationHistory) -> None:
        await self._conn.execute(
            f"""
            INSERT INTO {MIGRATION_HISTORY_TABLE} (
                created_ts, creator, version, type, description, statement, execution_duration_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                history.created_ts.isoformat(),
                history.creator,
                history.version,
                history.type,
                history.description,
                history.statement,
                history.execution_duration_ms,
            ),
        )


@register_driver(EngineType.SQLITE)
class SqliteDriver(Driver):
    def __init__(
        self,
        directory: Path,
        conn: aiosqlite.Connection | None,
        *,
        logger: logging.Logger,
    ):
        self._directory = directory
        self._conn = conn
        self._logger = logger

    @classmethod
    async def open(cls, config: ConnectionConfig, *, logger: logging.Logger) -> SqliteDriver:
        directory = Path(config.host)
        if not directory.is_dir():
            raise DriverConnectionError(
                f"instance directory does not exist: {directory}", host=config.host
            )
        conn = None
        if config.database:
            path = _database_path(directory, config.database)
            try:
                # mode=rw refuses to create a missing file
                conn = await aiosqlite.connect(
                    f"file:{path}?mode=rw", uri=True, isolation_level=None
                )
            except sqlite3.Error as exc:
                raise DriverConnectionError(
                    f"failed to open database {config.database!r} at {path}: {exc}",
                    cause=exc,
                    database=config.database,
                ) from exc
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout=2000")
        return cls(directory, conn, logger=logger)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise DriverConnectionError("no database selected for this connection")
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def ping(self) -> None:
        try:
            await self.conn.execute("SELECT 1")
        except sqlite3.Error as exc:
            raise DriverConnectionError(f"ping failed: {exc}", cause=exc) from exc

    async def execute(self, statement: str) -> None:
        async with self.transaction() as tx:
            await tx.execute(statement)

    async def create_database(self, name: str, *, character_set: str = "", collation: str = "") -> None:
        # SQLite has no per-database charset or collation; both are accepted and ignored.
        path = _database_path(self._directory, name)
        if path.exists():
            raise ExecutionError(f"database {name!r} already exists", database=name)
        try:
            async with aiosqlite.connect(str(path)) as conn:
                await conn.execute("PRAGMA user_version = 0")
                await conn.commit()
        except sqlite3.Error as exc:
            raise _translate(exc, f"failed to create database {name!r}") from exc
        self._logger.info("Created SQLite database %s", path)

    async def database_exists(self, name: str) -> bool:
        return _database_path(self._directory, name).exists()

    async def needs_setup_migration(self) -> bool:
        cursor = await self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (MIGRATION_HISTORY_TABLE,),
        )
        return await cursor.fetchone() is None

    async def setup_migration_schema(self) -> None:
        await self.conn.executescript(_MIGRATION_SCHEMA_SQL)
        self._logger.info("Created migration schema in %s", self._directory)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        conn = self.conn
        try:
            await conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise _translate(exc, "failed to begin transaction") from exc
        try:
            yield SqliteTransaction(conn)
        except sqlite3.Error as exc:
            await _rollback(conn)
            raise _translate(exc, "statement failed") from exc
        except BaseException:
            await _rollback(conn)
            raise
        try:
            await conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise _translate(exc, "failed to commit") from exc
