"""Task executors — one per task type, behind a uniform ``run_once`` contract."""

from __future__ import annotations

import logging

from schemaflow.executors.base import (
    ExecutionResult,
    Outcome,
    TaskExecutor,
    TaskExecutorRegistry,
)
from schemaflow.executors.database_create import DatabaseCreateExecutor
from schemaflow.executors.general import GeneralExecutor
from schemaflow.executors.schema_update import SchemaUpdateExecutor
from schemaflow.store import Store

__all__ = [
    "DatabaseCreateExecutor",
    "ExecutionResult",
    "GeneralExecutor",
    "Outcome",
    "SchemaUpdateExecutor",
    "TaskExecutor",
    "TaskExecutorRegistry",
    "default_executors",
]


def default_executors(store: Store, *, logger: logging.Logger | None = None) -> TaskExecutorRegistry:
    """Registry with an executor for every built-in task type."""
    return TaskExecutorRegistry(
        [
            GeneralExecutor(store, logger=logger),
            DatabaseCreateExecutor(store, logger=logger),
            SchemaUpdateExecutor(store, logger=logger),
        ]
    )
