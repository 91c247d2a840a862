"""Shared fixtures.

Provides:
- A fresh store on a temporary SQLite file
- A SQLite target instance (a directory) registered in the store
- A target database with the migration schema in place, and one without
- An issue factory built on IssueService
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from schemaflow.drivers import ConnectionConfig, open_driver
from schemaflow.issues import IssueCreate, IssueService, StageCreate, TaskCreate
from schemaflow.models import Database, EngineType, Instance, Issue
from schemaflow.store import Store

ENV_DEV = 1


# ── Store ─────────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    """Create a fresh store for each test."""
    s = await Store.open(tmp_path / "schemaflow.db")
    await s.initialize()
    yield s
    await s.close()


# ── Target instance ───────────────────────────────────────────────────────────


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    d = tmp_path / "targets"
    d.mkdir()
    return d


@pytest_asyncio.fixture
async def instance(store: Store, target_dir: Path) -> Instance:
    return await store.create_instance(
        Instance(environment_id=ENV_DEV, name="dev-sqlite", engine=EngineType.SQLITE, host=str(target_dir))
    )


async def provision_database(
    store: Store, instance: Instance, name: str, *, migration_schema: bool = True
) -> Database:
    """Create the database file on the target and register it in the store."""
    async with await open_driver(instance.engine, ConnectionConfig(host=instance.host)) as driver:
        await driver.create_database(name)
    if migration_schema:
        config = ConnectionConfig(host=instance.host, database=name)
        async with await open_driver(instance.engine, config) as driver:
            await driver.setup_migration_schema()
    return await store.create_database(Database(instance_id=instance.id, name=name))


@pytest_asyncio.fixture
async def database(store: Store, instance: Instance) -> Database:
    """Target database ``app`` with the migration-tracking schema."""
    return await provision_database(store, instance, "app")


@pytest_asyncio.fixture
async def bare_database(store: Store, instance: Instance) -> Database:
    """Target database ``bare`` without the migration-tracking schema."""
    return await provision_database(store, instance, "bare", migration_schema=False)


# ── Issues ────────────────────────────────────────────────────────────────────


def general_task(name: str, *, depends_on: list[str] | None = None) -> TaskCreate:
    return TaskCreate(
        name=name,
        payload={"type": "general", "comment": name},
        depends_on=depends_on or [],
    )


def schema_update_task(
    name: str,
    database: Database,
    *,
    statement: str,
    filename: str | None = None,
    author: str = "alice",
) -> TaskCreate:
    payload: dict = {"type": "database.schema.update", "statement": statement}
    if filename is not None:
        payload["vcsPushEvent"] = {
            "repositoryUrl": "https://git.example.com/acme/schema",
            "ref": "refs/heads/main",
            "fileCommit": {"id": "c0ffee", "added": filename, "authorName": author},
        }
    return TaskCreate(
        name=name,
        payload=payload,
        instance_id=database.instance_id,
        database_id=database.id,
    )


@pytest.fixture
def make_issue(store: Store):
    """Factory: ``await make_issue([task, ...], [task, ...])`` — one list per stage."""

    async def _make(*stages: list[TaskCreate], name: str = "Add orders table") -> Issue:
        return await IssueService(store).create_issue(
            IssueCreate(
                name=name,
                creator_id=101,
                subscriber_ids=[102],
                stages=[
                    StageCreate(name=f"stage-{i}", environment_id=ENV_DEV, tasks=tasks)
                    for i, tasks in enumerate(stages)
                ],
            )
        )

    return _make
