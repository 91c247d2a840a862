"""Executor for ``database.create`` tasks."""

from __future__ import annotations

from schemaflow.errors import ExecutionError, ValidationError
from schemaflow.executors.base import ExecutionResult, TaskExecutor
from schemaflow.models import SYSTEM_BOT_ID, Database, DatabaseFind, Task
from schemaflow.payloads import DatabaseCreatePayload, TaskType
from schemaflow.targets import open_target, resolve_target


class DatabaseCreateExecutor(TaskExecutor):
    """Provision a database on the task's instance and register it in the store.

    Always terminal. Re-invocation is safe at every point:

    - database registered and linked to this task: success, target untouched
    - database registered for something else: failure
    - database present on the target but not registered (an earlier attempt
      was interrupted before the store write): it is registered and linked
    """

    task_type = TaskType.DATABASE_CREATE

    async def execute(self, task: Task) -> ExecutionResult:
        payload: DatabaseCreatePayload = task.payload  # type: ignore[assignment]
        instance, _ = await resolve_target(self.store, task)
        if instance.environment_id != payload.environment_id:
            raise ValidationError(
                f"instance {instance.name!r} is in environment {instance.environment_id}, "
                f"not {payload.environment_id}",
                task_id=task.id,
            )

        existing = await self.store.find_databases(
            DatabaseFind(instance_id=instance.id, name=payload.database_name)
        )
        if existing:
            if task.database_id == existing[0].id:
                self.logger.info(
                    "Database %s on %s already created by task %s",
                    payload.database_name,
                    instance.name,
                    task.id,
                )
                return ExecutionResult.success(
                    database_id=existing[0].id, database_name=payload.database_name
                )
            raise ExecutionError(
                f"database {payload.database_name!r} already exists",
                database=payload.database_name,
                task_id=task.id,
            )

        _, driver = await open_target(self.store, task, with_database=False, logger=self.logger)
        async with driver:
            if await driver.database_exists(payload.database_name):
                self.logger.warning(
                    "Database %s already on %s but not registered, adopting it for task %s",
                    payload.database_name,
                    instance.name,
                    task.id,
                )
            else:
                await driver.create_database(
                    payload.database_name,
                    character_set=payload.character_set,
                    collation=payload.collation,
                )

        async with self.store.transaction():
            database = await self.store.create_database(
                Database(
                    instance_id=instance.id,
                    name=payload.database_name,
                    character_set=payload.character_set,
                    collation=payload.collation,
                )
            )
            await self.store.patch_task_database(task.id, database.id, SYSTEM_BOT_ID)

        self.logger.info(
            "Created database %s on instance %s (task %s)",
            payload.database_name,
            instance.name,
            task.id,
        )
        return ExecutionResult.success(database_id=database.id, database_name=database.name)
