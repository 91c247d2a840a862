"""Executor for ``general`` tasks — manual checkpoints with no target side effect."""

from __future__ import annotations

from schemaflow.executors.base import ExecutionResult, TaskExecutor
from schemaflow.models import Task
from schemaflow.payloads import TaskType


class GeneralExecutor(TaskExecutor):
    task_type = TaskType.GENERAL

    async def execute(self, task: Task) -> ExecutionResult:
        self.logger.info("General task %s (%s) completed", task.id, task.name)
        return ExecutionResult.success(comment=task.payload.comment)
