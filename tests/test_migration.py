"""Tests for migration naming and the replay-safe migration protocol."""

from __future__ import annotations

import pytest
import pytest_asyncio

from schemaflow.drivers import ConnectionConfig, Driver, open_driver
from schemaflow.errors import EmptyStatementError, MigrationInfoError, MigrationSchemaMissingError
from schemaflow.migration import (
    MigrationInfo,
    MigrationKind,
    MigrationProtocol,
    parse_migration_info,
)
from schemaflow.models import EngineType


# ── Naming convention ─────────────────────────────────────────────────────────


class TestParseMigrationInfo:
    def test_migrate(self):
        info = parse_migration_info("0002__migrate__add_orders_table.sql")
        assert info.kind == MigrationKind.MIGRATE
        assert info.version == "0002"
        assert info.description == "add orders table"

    def test_baseline(self):
        info = parse_migration_info("0001__baseline__initial.sql")
        assert info.kind == MigrationKind.BASELINE
        assert info.version == "0001"

    def test_kind_is_case_insensitive(self):
        assert parse_migration_info("7__MIGRATE__x.sql").kind == MigrationKind.MIGRATE

    def test_uses_basename_of_path(self):
        info = parse_migration_info("db/migrations/2024.05.01-1__migrate__backfill.sql")
        assert info.version == "2024.05.01-1"
        assert info.description == "backfill"

    def test_author_not_set_by_parser(self):
        assert parse_migration_info("1__migrate__a.sql").author == ""

    @pytest.mark.parametrize(
        "filename",
        [
            "0001__migrate__add_table.txt",
            "0001__add_table.sql",
            "0001__migrate__add__table.sql",
            "0001__drop__add_table.sql",
            "0001__sql__add_table.sql",
            "0001__migrate__.sql",
            "v1__migrate__add_table.sql",
            "",
        ],
    )
    def test_rejects_unrecognized_names(self, filename: str):
        with pytest.raises(MigrationInfoError, match="invalid migration"):
            parse_migration_info(filename)


# ── Protocol ──────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def target(tmp_path):
    """Open driver on a fresh SQLite database with the migration schema."""
    async with await open_driver(EngineType.SQLITE, ConnectionConfig(host=str(tmp_path))) as d:
        await d.create_database("app")
    driver = await open_driver(EngineType.SQLITE, ConnectionConfig(host=str(tmp_path), database="app"))
    await driver.setup_migration_schema()
    yield driver
    await driver.close()


async def _tables(driver: Driver) -> set[str]:
    cursor = await driver.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row["name"] for row in await cursor.fetchall()}


async def _history_count(driver: Driver) -> int:
    cursor = await driver.conn.execute("SELECT COUNT(*) FROM migration_history")
    return (await cursor.fetchone())[0]


class TestMigrationProtocol:
    async def test_apply_records_history(self, target):
        protocol = MigrationProtocol()
        info = MigrationInfo(kind=MigrationKind.MIGRATE, version="0001", description="orders", author="alice")

        outcome = await protocol.apply(target, info, "CREATE TABLE orders (id INTEGER PRIMARY KEY);")

        assert outcome.applied is True
        assert "orders" in await _tables(target)
        async with target.transaction() as tx:
            history = await tx.find_migration("0001")
        assert history is not None
        assert history.type == "MIGRATE"
        assert history.creator == "alice"
        assert history.description == "orders"

    async def test_replay_is_skipped(self, target):
        protocol = MigrationProtocol()
        info = MigrationInfo(kind=MigrationKind.MIGRATE, version="0001")
        statement = "CREATE TABLE orders (id INTEGER PRIMARY KEY);"

        first = await protocol.apply(target, info, statement)
        # Would fail with "table orders already exists" if re-applied
        second = await protocol.apply(target, info, statement)

        assert first.applied is True
        assert second.applied is False
        assert await _history_count(target) == 1

    async def test_empty_baseline_records_version_only(self, target):
        protocol = MigrationProtocol()
        before = await _tables(target)

        outcome = await protocol.apply(target, MigrationInfo(kind=MigrationKind.BASELINE, version="0001"), "  ")

        assert outcome.applied is True
        assert await _tables(target) == before
        assert await _history_count(target) == 1

    async def test_empty_migrate_rejected(self, target):
        with pytest.raises(EmptyStatementError, match="empty sql statement"):
            await MigrationProtocol().apply(target, MigrationInfo(kind=MigrationKind.MIGRATE, version="2"), "")
        assert await _history_count(target) == 0

    async def test_failed_statement_leaves_no_history(self, target):
        info = MigrationInfo(kind=MigrationKind.MIGRATE, version="0003")
        with pytest.raises(Exception):
            await MigrationProtocol().apply(
                target, info, "CREATE TABLE a (id INTEGER); INSERT INTO missing VALUES (1);"
            )
        assert await _history_count(target) == 0
        assert "a" not in await _tables(target)

    async def test_missing_schema_is_fatal(self, tmp_path):
        async with await open_driver(EngineType.SQLITE, ConnectionConfig(host=str(tmp_path))) as d:
            await d.create_database("bare")
        config = ConnectionConfig(host=str(tmp_path), database="bare")
        async with await open_driver(EngineType.SQLITE, config) as driver:
            for kind in (MigrationKind.MIGRATE, MigrationKind.BASELINE):
                with pytest.raises(MigrationSchemaMissingError, match="missing migration schema for instance: dev"):
                    await MigrationProtocol().apply(
                        driver, MigrationInfo(kind=kind, version="1"), "SELECT 1", instance_name="dev"
                    )
            # Never auto-provisioned
            assert await driver.needs_setup_migration() is True

    async def test_adhoc_kind_not_accepted(self, target):
        with pytest.raises(ValueError):
            await MigrationProtocol().apply(target, MigrationInfo(kind=MigrationKind.SQL), "SELECT 1")
