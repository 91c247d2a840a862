"""Task executor contract and the executor registry.

Every task type has one executor implementing :meth:`TaskExecutor.run_once`,
which attempts one unit of work and returns an :class:`ExecutionResult`:

    SUCCESS            work completed; the task becomes DONE
    PERMANENT_FAILURE  fatal, user-actionable error; the task becomes FAILED
    RETRY              no progress for a transient reason; the task stays
                       RUNNING and is re-invoked on a later tick

Executors never mutate task status themselves. They must be safe to invoke
again on the same task after a RETRY, a timeout or a process restart.
"""

from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel

from schemaflow.errors import NotFoundError, SchemaflowError
from schemaflow.models import Task
from schemaflow.payloads import TaskType
from schemaflow.store import Store

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    RETRY = "retry"


class ExecutionResult(BaseModel):
    outcome: Outcome
    error: str = ""
    detail: dict[str, Any] = {}

    @classmethod
    def success(cls, **detail: Any) -> ExecutionResult:
        return cls(outcome=Outcome.SUCCESS, detail=detail)

    @classmethod
    def failure(cls, error: str, **detail: Any) -> ExecutionResult:
        return cls(outcome=Outcome.PERMANENT_FAILURE, error=error, detail=detail)

    @classmethod
    def retry(cls, reason: str, **detail: Any) -> ExecutionResult:
        return cls(outcome=Outcome.RETRY, error=reason, detail=detail)

    @classmethod
    def from_error(cls, exc: SchemaflowError) -> ExecutionResult:
        detail = exc.to_dict()
        if exc.retryable:
            return cls.retry(exc.message, **detail)
        return cls.failure(exc.message, **detail)


class TaskExecutor(abc.ABC):
    """Base class for per-task-type executors."""

    task_type: TaskType
    # Check types that must be DONE and non-blocking before the task starts
    required_checks: tuple[str, ...] = ()

    def __init__(self, store: Store, *, logger: logging.Logger | None = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    async def run_once(self, task: Task) -> ExecutionResult:
        """Attempt the task once. Typed errors become a failure or a retry."""
        try:
            return await self.execute(task)
        except SchemaflowError as exc:
            self.logger.warning(
                "Task %s (%s) attempt failed: %s [%s, retryable=%s]",
                task.id,
                task.type.value,
                exc.message,
                exc.category.value,
                exc.retryable,
            )
            return ExecutionResult.from_error(exc)

    @abc.abstractmethod
    async def execute(self, task: Task) -> ExecutionResult:
        """Do the work. Raise a SchemaflowError to report a failure."""


class TaskExecutorRegistry:
    """Maps task types to executor instances.

    Usage::

        executors = TaskExecutorRegistry()
        executors.register(SchemaUpdateExecutor(store))
        result = await executors.get(task.type).run_once(task)
    """

    def __init__(self, executors: Iterable[TaskExecutor] = ()) -> None:
        self._executors: dict[TaskType, TaskExecutor] = {}
        for executor in executors:
            self.register(executor)

    def register(self, executor: TaskExecutor) -> None:
        if executor.task_type in self._executors:
            logger.warning("Overriding executor for task type %s", executor.task_type.value)
        self._executors[executor.task_type] = executor
        logger.debug(
            "Registered executor %s for %s", type(executor).__name__, executor.task_type.value
        )

    def get(self, task_type: TaskType) -> TaskExecutor:
        executor = self._executors.get(task_type)
        if executor is None:
            raise NotFoundError(
                f"no executor registered for task type {task_type.value}",
                task_type=task_type.value,
            )
        return executor

    def has(self, task_type: TaskType) -> bool:
        return task_type in self._executors

    @property
    def task_types(self) -> list[TaskType]:
        return sorted(self._executors, key=lambda t: t.value)
