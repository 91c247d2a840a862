"""Executor for ``database.schema.update`` tasks.

A task either carries a raw statement (executed directly as an ad-hoc
command) or a VCS push event whose added file names the migration. The
latter goes through :class:`~schemaflow.migration.MigrationProtocol`, so a
replayed push or a re-invocation after a restart never applies a version
twice.
"""

from __future__ import annotations

import logging

from schemaflow.errors import DriverConnectionError, EmptyStatementError
from schemaflow.executors.base import ExecutionResult, TaskExecutor
from schemaflow.migration import MigrationInfo, MigrationKind, MigrationProtocol, parse_migration_info
from schemaflow.models import Task, TaskCheckType
from schemaflow.payloads import SchemaUpdatePayload, TaskType
from schemaflow.store import Store
from schemaflow.targets import open_target, resolve_target


class SchemaUpdateExecutor(TaskExecutor):
    task_type = TaskType.DATABASE_SCHEMA_UPDATE
    required_checks = (
        TaskCheckType.DATABASE_CONNECT.value,
        TaskCheckType.STATEMENT_ADVISE.value,
    )

    def __init__(
        self,
        store: Store,
        *,
        migrations: MigrationProtocol | None = None,
        logger: logging.Logger | None = None,
    ):
        super().__init__(store, logger=logger)
        self.migrations = migrations or MigrationProtocol(logger=self.logger)

    async def execute(self, task: Task) -> ExecutionResult:
        payload: SchemaUpdatePayload = task.payload  # type: ignore[assignment]

        info = MigrationInfo(kind=MigrationKind.SQL)
        if payload.vcs_push_event is not None:
            commit = payload.vcs_push_event.file_commit
            # Names are validated at issue creation; a failure here is a bug upstream.
            info = parse_migration_info(commit.added)
            info.author = commit.author_name

        statement = payload.statement.strip()
        # Only a baseline may be empty: it adopts the database as-is.
        if info.kind != MigrationKind.BASELINE and not statement:
            raise EmptyStatementError(task_id=task.id)

        instance, database = await resolve_target(self.store, task)
        try:
            _, driver = await open_target(self.store, task, logger=self.logger)
        except DriverConnectionError as exc:
            raise DriverConnectionError(
                f"failed to connect instance: {instance.name} with user: {instance.username}. {exc.message}",
                cause=exc,
                instance=instance.name,
            ) from exc

        async with driver:
            if payload.vcs_push_event is None:
                self.logger.debug(
                    "Executing statement on %s/%s: %s",
                    instance.name,
                    database.name if database else "",
                    statement,
                )
                await driver.execute(statement)
                return ExecutionResult.success(kind=info.kind.value)

            self.logger.debug(
                "Starting %s migration %s on %s/%s",
                info.kind.value.lower(),
                info.version,
                instance.name,
                database.name if database else "",
            )
            outcome = await self.migrations.apply(
                driver, info, statement, instance_name=instance.name
            )

        return ExecutionResult.success(
            kind=info.kind.value,
            version=outcome.version,
            applied=outcome.applied,
            duration_ms=outcome.duration_ms,
        )
