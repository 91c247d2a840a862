"""Resolve a task's target instance and database into an open driver."""

from __future__ import annotations

import logging

from schemaflow.drivers import ConnectionConfig, Driver, open_driver
from schemaflow.errors import ValidationError
from schemaflow.models import Database, Instance, Task
from schemaflow.store import Store


async def resolve_target(store: Store, task: Task) -> tuple[Instance, Database | None]:
    """Load the instance (and database, if linked) a task points at."""
    if task.instance_id is None:
        raise ValidationError(f"task {task.id} has no target instance", task_id=task.id)
    instance = await store.get_instance(task.instance_id)
    database = None
    if task.database_id is not None:
        database = await store.get_database(task.database_id)
        if database.instance_id != instance.id:
            raise ValidationError(
                f"database {database.name!r} does not belong to instance {instance.name!r}",
                task_id=task.id,
            )
    return instance, database


def connection_config(instance: Instance, database: Database | None = None) -> ConnectionConfig:
    return ConnectionConfig(
        username=instance.username,
        password=instance.password,
        host=instance.host,
        port=instance.port,
        database=database.name if database else "",
    )


async def open_target(
    store: Store,
    task: Task,
    *,
    with_database: bool = True,
    logger: logging.Logger | None = None,
) -> tuple[Instance, Driver]:
    """Open a driver against the task's target.

    With ``with_database`` the task must be linked to a database and the
    connection selects it; otherwise only the instance is reached.
    """
    instance, database = await resolve_target(store, task)
    if with_database and database is None:
        raise ValidationError(f"task {task.id} has no target database", task_id=task.id)
    config = connection_config(instance, database if with_database else None)
    driver = await open_driver(instance.engine, config, logger=logger)
    return instance, driver
