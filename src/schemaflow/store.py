"""Store — SQLite persistence for issues, pipelines, stages, tasks and their runs.

Key exports:
    Store — create/find/patch for every entity, plus ``transaction()`` for
        callers that need several reads and writes to commit atomically.

All access goes through one aiosqlite connection opened in autocommit mode.
``transaction()`` serializes callers with an asyncio lock and issues
``BEGIN IMMEDIATE``, so a read-then-write inside it cannot interleave with
another coroutine's. Nested ``transaction()`` calls in the same asyncio task
join the outer transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite
from pydantic import BaseModel

from schemaflow.errors import NotFoundError
from schemaflow.models import (
    Database,
    DatabaseFind,
    EngineType,
    Instance,
    InstanceFind,
    Issue,
    IssueFind,
    IssuePatch,
    IssueStatus,
    Pipeline,
    PipelineFind,
    PipelinePatch,
    PipelineStatus,
    Stage,
    StageFind,
    StagePatch,
    StageStatus,
    Task,
    TaskCheckResult,
    TaskCheckRun,
    TaskCheckRunFind,
    TaskCheckRunStatus,
    TaskCheckRunStatusPatch,
    TaskFind,
    TaskRun,
    TaskRunFind,
    TaskRunPatch,
    TaskRunStatus,
    TaskStatus,
    TaskStatusPatch,
)
from schemaflow.payloads import TaskType, dump_payload, parse_payload

_in_transaction: ContextVar[bool] = ContextVar("schemaflow_store_in_transaction", default=False)


class Store:
    """SQLite-backed persistence for the change pipeline.

    Takes an already-open aiosqlite connection in autocommit mode
    (``isolation_level=None``); use :meth:`open` to get one configured
    correctly. Call ``initialize()`` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection, *, logger: logging.Logger | None = None):
        self._db = db
        self._lock = asyncio.Lock()
        self._log = logger or logging.getLogger(__name__)

    @classmethod
    async def open(cls, path: str | Path, **kwargs: Any) -> Store:
        """Open (or create) the store database at ``path``."""
        db = await aiosqlite.connect(str(path), isolation_level=None)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        return cls(db, **kwargs)

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        self._log.info("Store tables initialized")

    async def close(self) -> None:
        await self._db.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed store calls as one atomic unit."""
        if _in_transaction.get():
            yield
            return
        async with self._lock:
            token = _in_transaction.set(True)
            try:
                await self._db.execute("BEGIN IMMEDIATE")
                try:
                    yield
                except BaseException:
                    await self._db.execute("ROLLBACK")
                    raise
                await self._db.execute("COMMIT")
            finally:
                _in_transaction.reset(token)

    async def _fetchall(self, sql: str, args: list[Any] | tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        async with self.transaction():
            cursor = await self._db.execute(sql, args)
            return list(await cursor.fetchall())

    async def _insert(self, sql: str, args: tuple[Any, ...]) -> int:
        async with self.transaction():
            cursor = await self._db.execute(sql, args)
            return cursor.lastrowid  # type: ignore[return-value]

    # ── Reference data ───────────────────────────────────────────────────────

    async def create_instance(self, instance: Instance) -> Instance:
        instance.id = await self._insert(
            """
            INSERT INTO instance (environment_id, name, engine, host, port, username, password)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                instance.environment_id,
                instance.name,
                instance.engine.value,
                instance.host,
                instance.port,
                instance.username,
                instance.password,
            ),
        )
        return instance

    async def find_instances(self, find: InstanceFind) -> list[Instance]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM instance WHERE {where} ORDER BY id", args)
        return [_row_to_instance(r) for r in rows]

    async def get_instance(self, instance_id: int) -> Instance:
        found = await self.find_instances(InstanceFind(id=instance_id))
        if not found:
            raise NotFoundError(f"instance not found: {instance_id}", instance_id=instance_id)
        return found[0]

    async def create_database(self, database: Database) -> Database:
        database.created_ts = database.created_ts or _now()
        database.id = await self._insert(
            """
            INSERT INTO db (instance_id, name, character_set, collation, created_ts)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                database.instance_id,
                database.name,
                database.character_set,
                database.collation,
                _dt_to_str(database.created_ts),
            ),
        )
        return database

    async def find_databases(self, find: DatabaseFind) -> list[Database]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM db WHERE {where} ORDER BY id", args)
        return [_row_to_database(r) for r in rows]

    async def get_database(self, database_id: int) -> Database:
        found = await self.find_databases(DatabaseFind(id=database_id))
        if not found:
            raise NotFoundError(f"database not found: {database_id}", database_id=database_id)
        return found[0]

    # ── Issue ────────────────────────────────────────────────────────────────

    async def create_issue(self, issue: Issue) -> Issue:
        now = _now()
        issue.created_ts = issue.updated_ts = now
        issue.updater_id = issue.updater_id or issue.creator_id
        issue.id = await self._insert(
            """
            INSERT INTO issue (
                creator_id, updater_id, created_ts, updated_ts,
                name, description, status, pipeline_id, subscriber_ids
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                issue.creator_id,
                issue.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                issue.name,
                issue.description,
                issue.status.value,
                issue.pipeline_id,
                json.dumps(issue.subscriber_ids),
            ),
        )
        return issue

    async def find_issues(self, find: IssueFind) -> list[Issue]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM issue WHERE {where} ORDER BY id", args)
        return [_row_to_issue(r) for r in rows]

    async def get_issue(self, issue_id: int) -> Issue:
        found = await self.find_issues(IssueFind(id=issue_id))
        if not found:
            raise NotFoundError(f"issue not found: {issue_id}", issue_id=issue_id)
        return found[0]

    async def patch_issue(self, patch: IssuePatch) -> Issue:
        async with self.transaction():
            await self._db.execute(
                "UPDATE issue SET status = ?, updater_id = ?, updated_ts = ? WHERE id = ?",
                (patch.status.value, patch.updater_id, _dt_to_str(_now()), patch.id),
            )
            return await self.get_issue(patch.id)

    # ── Pipeline ─────────────────────────────────────────────────────────────

    async def create_pipeline(self, pipeline: Pipeline) -> Pipeline:
        now = _now()
        pipeline.created_ts = pipeline.updated_ts = now
        pipeline.updater_id = pipeline.updater_id or pipeline.creator_id
        pipeline.id = await self._insert(
            """
            INSERT INTO pipeline (creator_id, updater_id, created_ts, updated_ts, name, status)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                pipeline.creator_id,
                pipeline.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                pipeline.name,
                pipeline.status.value,
            ),
        )
        return pipeline

    async def find_pipelines(self, find: PipelineFind) -> list[Pipeline]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM pipeline WHERE {where} ORDER BY id", args)
        return [_row_to_pipeline(r) for r in rows]

    async def get_pipeline(self, pipeline_id: int) -> Pipeline:
        found = await self.find_pipelines(PipelineFind(id=pipeline_id))
        if not found:
            raise NotFoundError(f"pipeline not found: {pipeline_id}", pipeline_id=pipeline_id)
        return found[0]

    async def patch_pipeline(self, patch: PipelinePatch) -> Pipeline:
        async with self.transaction():
            await self._db.execute(
                "UPDATE pipeline SET status = ?, updater_id = ?, updated_ts = ? WHERE id = ?",
                (patch.status.value, patch.updater_id, _dt_to_str(_now()), patch.id),
            )
            return await self.get_pipeline(patch.id)

    # ── Stage ────────────────────────────────────────────────────────────────

    async def create_stage(self, stage: Stage) -> Stage:
        now = _now()
        stage.created_ts = stage.updated_ts = now
        stage.updater_id = stage.updater_id or stage.creator_id
        stage.id = await self._insert(
            """
            INSERT INTO stage (
                creator_id, updater_id, created_ts, updated_ts,
                pipeline_id, environment_id, position, name, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stage.creator_id,
                stage.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                stage.pipeline_id,
                stage.environment_id,
                stage.position,
                stage.name,
                stage.status.value,
            ),
        )
        return stage

    async def find_stages(self, find: StageFind) -> list[Stage]:
        """Stages matching ``find``, in pipeline order."""
        where, args = _compose_where(find)
        rows = await self._fetchall(
            f"SELECT * FROM stage WHERE {where} ORDER BY pipeline_id, position", args
        )
        return [_row_to_stage(r) for r in rows]

    async def get_stage(self, stage_id: int) -> Stage:
        found = await self.find_stages(StageFind(id=stage_id))
        if not found:
            raise NotFoundError(f"stage not found: {stage_id}", stage_id=stage_id)
        return found[0]

    async def patch_stage(self, patch: StagePatch) -> Stage:
        async with self.transaction():
            await self._db.execute(
                "UPDATE stage SET status = ?, updater_id = ?, updated_ts = ? WHERE id = ?",
                (patch.status.value, patch.updater_id, _dt_to_str(_now()), patch.id),
            )
            return await self.get_stage(patch.id)

    # ── Task ─────────────────────────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        now = _now()
        task.created_ts = task.updated_ts = now
        task.updater_id = task.updater_id or task.creator_id
        task.id = await self._insert(
            """
            INSERT INTO task (
                creator_id, updater_id, created_ts, updated_ts,
                pipeline_id, stage_id, instance_id, database_id,
                name, type, status, payload, blocked_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.creator_id,
                task.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                task.pipeline_id,
                task.stage_id,
                task.instance_id,
                task.database_id,
                task.name,
                task.type.value,
                task.status.value,
                dump_payload(task.payload),
                json.dumps(task.blocked_by),
            ),
        )
        return task

    async def find_tasks(self, find: TaskFind) -> list[Task]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM task WHERE {where} ORDER BY id", args)
        return [_row_to_task(r) for r in rows]

    async def get_task(self, task_id: int) -> Task:
        found = await self.find_tasks(TaskFind(id=task_id))
        if not found:
            raise NotFoundError(f"task not found: {task_id}", task_id=task_id)
        return found[0]

    async def patch_task_status(self, patch: TaskStatusPatch) -> Task | None:
        """Apply a status change. Returns the updated task, or None when the
        current status is not in ``patch.expected``."""
        sql = "UPDATE task SET status = ?, updater_id = ?, updated_ts = ? WHERE id = ?"
        args: list[Any] = [patch.status.value, patch.updater_id, _dt_to_str(_now()), patch.id]
        if patch.expected is not None:
            sql += f" AND status IN ({', '.join('?' for _ in patch.expected)})"
            args.extend(s.value for s in patch.expected)
        async with self.transaction():
            cursor = await self._db.execute(sql, args)
            if cursor.rowcount == 0:
                return None
            return await self.get_task(patch.id)

    async def patch_task_database(self, task_id: int, database_id: int, updater_id: int) -> Task:
        """Link a task to the database it created or targets."""
        async with self.transaction():
            await self._db.execute(
                "UPDATE task SET database_id = ?, updater_id = ?, updated_ts = ? WHERE id = ?",
                (database_id, updater_id, _dt_to_str(_now()), task_id),
            )
            return await self.get_task(task_id)

    # ── Task Run ─────────────────────────────────────────────────────────────

    async def create_task_run(self, run: TaskRun) -> TaskRun:
        now = _now()
        run.created_ts = run.updated_ts = now
        run.updater_id = run.updater_id or run.creator_id
        run.id = await self._insert(
            """
            INSERT INTO task_run (
                creator_id, updater_id, created_ts, updated_ts,
                task_id, name, status, type, comment, result
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.creator_id,
                run.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                run.task_id,
                run.name,
                run.status.value,
                run.type.value,
                run.comment,
                json.dumps(run.result),
            ),
        )
        return run

    async def find_task_runs(self, find: TaskRunFind) -> list[TaskRun]:
        where, args = _compose_where(find)
        rows = await self._fetchall(f"SELECT * FROM task_run WHERE {where} ORDER BY id", args)
        return [_row_to_task_run(r) for r in rows]

    async def patch_task_run(self, patch: TaskRunPatch) -> TaskRun:
        async with self.transaction():
            await self._db.execute(
                """
                UPDATE task_run SET status = ?, comment = ?, result = ?,
                    updater_id = ?, updated_ts = ?
                WHERE id = ?
                """,
                (
                    patch.status.value,
                    patch.comment,
                    json.dumps(patch.result),
                    patch.updater_id,
                    _dt_to_str(_now()),
                    patch.id,
                ),
            )
            found = await self.find_task_runs(TaskRunFind(id=patch.id))
        if not found:
            raise NotFoundError(f"task run not found: {patch.id}", task_run_id=patch.id)
        return found[0]

    # ── Task Check Run ───────────────────────────────────────────────────────

    async def create_task_check_run(self, run: TaskCheckRun) -> TaskCheckRun:
        """Insert a check run. Raises aiosqlite.IntegrityError when a RUNNING
        run already exists for the same (task, type)."""
        now = _now()
        run.created_ts = run.updated_ts = now
        run.updater_id = run.updater_id or run.creator_id
        run.id = await self._insert(
            """
            INSERT INTO task_check_run (
                creator_id, updater_id, created_ts, updated_ts,
                task_id, name, status, type, comment, result, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.creator_id,
                run.updater_id,
                _dt_to_str(now),
                _dt_to_str(now),
                run.task_id,
                run.name,
                run.status.value,
                run.type,
                run.comment,
                _dump_check_results(run.result),
                json.dumps(run.payload),
            ),
        )
        return run

    async def find_task_check_runs(self, find: TaskCheckRunFind) -> list[TaskCheckRun]:
        where, args = _compose_where(find)
        rows = await self._fetchall(
            f"SELECT * FROM task_check_run WHERE {where} ORDER BY id", args
        )
        return [_row_to_task_check_run(r) for r in rows]

    async def patch_task_check_run_status(self, patch: TaskCheckRunStatusPatch) -> TaskCheckRun:
        async with self.transaction():
            await self._db.execute(
                """
                UPDATE task_check_run SET status = ?, comment = ?, result = ?,
                    updater_id = ?, updated_ts = ?
                WHERE id = ?
                """,
                (
                    patch.status.value,
                    patch.comment,
                    _dump_check_results(patch.result),
                    patch.updater_id,
                    _dt_to_str(_now()),
                    patch.id,
                ),
            )
            found = await self.find_task_check_runs(TaskCheckRunFind(id=patch.id))
        if not found:
            raise NotFoundError(f"task check run not found: {patch.id}", task_check_run_id=patch.id)
        return found[0]


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS instance (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    environment_id INTEGER NOT NULL,
    name TEXT NOT NULL UNIQUE,
    engine TEXT NOT NULL,
    host TEXT NOT NULL,
    port TEXT DEFAULT '',
    username TEXT DEFAULT '',
    password TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS db (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL REFERENCES instance(id),
    name TEXT NOT NULL,
    character_set TEXT DEFAULT '',
    collation TEXT DEFAULT '',
    created_ts TEXT,
    UNIQUE(instance_id, name)
);

CREATE TABLE IF NOT EXISTS pipeline (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    name TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('open', 'blocked', 'done', 'canceled'))
);

CREATE INDEX IF NOT EXISTS idx_pipeline_status ON pipeline(status);

CREATE TABLE IF NOT EXISTS issue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT NOT NULL CHECK (status IN ('open', 'blocked', 'done', 'canceled')),
    pipeline_id INTEGER REFERENCES pipeline(id),
    subscriber_ids TEXT DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_issue_pipeline ON issue(pipeline_id);

CREATE TABLE IF NOT EXISTS stage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    pipeline_id INTEGER NOT NULL REFERENCES pipeline(id) ON DELETE CASCADE,
    environment_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'done', 'failed', 'canceled')),
    UNIQUE(pipeline_id, position)
);

CREATE TABLE IF NOT EXISTS task (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    pipeline_id INTEGER NOT NULL REFERENCES pipeline(id) ON DELETE CASCADE,
    stage_id INTEGER NOT NULL REFERENCES stage(id) ON DELETE CASCADE,
    instance_id INTEGER REFERENCES instance(id),
    database_id INTEGER REFERENCES db(id),
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'done', 'failed', 'canceled')),
    payload TEXT NOT NULL DEFAULT '{}',
    blocked_by TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_task_stage ON task(stage_id, status);
CREATE INDEX IF NOT EXISTS idx_task_status ON task(status);

CREATE TABLE IF NOT EXISTS task_run (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    task_id INTEGER NOT NULL REFERENCES task(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('running', 'done', 'failed', 'retry', 'canceled')),
    type TEXT NOT NULL,
    comment TEXT DEFAULT '',
    result TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_task_run_task ON task_run(task_id);

CREATE TABLE IF NOT EXISTS task_check_run (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    creator_id INTEGER NOT NULL,
    updater_id INTEGER NOT NULL,
    created_ts TEXT,
    updated_ts TEXT,
    task_id INTEGER NOT NULL REFERENCES task(id) ON DELETE CASCADE,
    name TEXT DEFAULT '',
    status TEXT NOT NULL CHECK (status IN ('running', 'done', 'failed')),
    type TEXT NOT NULL,
    comment TEXT DEFAULT '',
    result TEXT DEFAULT '[]',
    payload TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_task_check_run_task ON task_check_run(task_id, type);

-- At most one RUNNING check run per (task, type).
CREATE UNIQUE INDEX IF NOT EXISTS uk_task_check_run_running
    ON task_check_run(task_id, type) WHERE status = 'running';
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _compose_where(find: BaseModel) -> tuple[str, list[Any]]:
    """Build a conjunctive WHERE clause from a ``*Find`` model.

    ``None`` fields are skipped; ``<col>_list`` fields become ``<col> IN (...)``.
    """
    where, args = ["1 = 1"], []
    for name, value in find:
        if value is None:
            continue
        if name.endswith("_list"):
            column = name[: -len("_list")]
            if not value:
                where.append("0 = 1")
                continue
            where.append(f"{column} IN ({', '.join('?' for _ in value)})")
            args.extend(_sql_value(v) for v in value)
        else:
            where.append(f"{name} = ?")
            args.append(_sql_value(value))
    return " AND ".join(where), args


def _sql_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _dump_check_results(results: list[TaskCheckResult]) -> str:
    return json.dumps([r.model_dump(mode="json") for r in results])


def _row_to_instance(row: aiosqlite.Row) -> Instance:
    return Instance(
        id=row["id"],
        environment_id=row["environment_id"],
        name=row["name"],
        engine=EngineType(row["engine"]),
        host=row["host"],
        port=row["port"] or "",
        username=row["username"] or "",
        password=row["password"] or "",
    )


def _row_to_database(row: aiosqlite.Row) -> Database:
    return Database(
        id=row["id"],
        instance_id=row["instance_id"],
        name=row["name"],
        character_set=row["character_set"] or "",
        collation=row["collation"] or "",
        created_ts=_str_to_dt(row["created_ts"]),
    )


def _row_to_issue(row: aiosqlite.Row) -> Issue:
    return Issue(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        name=row["name"],
        description=row["description"] or "",
        status=IssueStatus(row["status"]),
        pipeline_id=row["pipeline_id"],
        subscriber_ids=json.loads(row["subscriber_ids"] or "[]"),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )


def _row_to_pipeline(row: aiosqlite.Row) -> Pipeline:
    return Pipeline(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        name=row["name"],
        status=PipelineStatus(row["status"]),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )


def _row_to_stage(row: aiosqlite.Row) -> Stage:
    return Stage(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        pipeline_id=row["pipeline_id"],
        environment_id=row["environment_id"],
        position=row["position"],
        name=row["name"],
        status=StageStatus(row["status"]),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        pipeline_id=row["pipeline_id"],
        stage_id=row["stage_id"],
        instance_id=row["instance_id"],
        database_id=row["database_id"],
        name=row["name"],
        type=TaskType(row["type"]),
        status=TaskStatus(row["status"]),
        payload=parse_payload(row["payload"]),
        blocked_by=json.loads(row["blocked_by"] or "[]"),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )


def _row_to_task_run(row: aiosqlite.Row) -> TaskRun:
    return TaskRun(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        task_id=row["task_id"],
        name=row["name"],
        status=TaskRunStatus(row["status"]),
        type=TaskType(row["type"]),
        comment=row["comment"] or "",
        result=json.loads(row["result"] or "{}"),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )


def _row_to_task_check_run(row: aiosqlite.Row) -> TaskCheckRun:
    return TaskCheckRun(
        id=row["id"],
        creator_id=row["creator_id"],
        updater_id=row["updater_id"],
        task_id=row["task_id"],
        name=row["name"] or "",
        type=row["type"],
        status=TaskCheckRunStatus(row["status"]),
        comment=row["comment"] or "",
        result=[TaskCheckResult(**r) for r in json.loads(row["result"] or "[]")],
        payload=json.loads(row["payload"] or "{}"),
        created_ts=_str_to_dt(row["created_ts"]),
        updated_ts=_str_to_dt(row["updated_ts"]),
    )
