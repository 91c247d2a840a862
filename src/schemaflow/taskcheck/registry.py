"""Task check registry — lifecycle of TaskCheckRuns.

At most one check run may be RUNNING per (task, check type). Two layers
enforce it:

1. :meth:`TaskCheckRegistry.ensure_check_run` reads the existing runs and
   inserts a new one inside a single ``BEGIN IMMEDIATE`` store transaction,
   so concurrent callers are serialized.
2. A partial unique index on ``task_check_run(task_id, type) WHERE
   status = 'running'`` rejects a second RUNNING row even if a writer
   bypasses the transaction, e.g. another process on the same store file.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from schemaflow.errors import ConflictError, ValidationError
from schemaflow.models import (
    SYSTEM_BOT_ID,
    TaskCheckResult,
    TaskCheckRun,
    TaskCheckRunFind,
    TaskCheckRunStatus,
    TaskCheckRunStatusPatch,
)
from schemaflow.store import Store


class TaskCheckRegistry:
    def __init__(self, store: Store, *, logger: logging.Logger | None = None):
        self.store = store
        self._log = logger or logging.getLogger(__name__)

    async def ensure_check_run(
        self,
        task_id: int,
        check_type: str,
        *,
        skip_if_done: bool = False,
        creator_id: int = SYSTEM_BOT_ID,
        payload: dict[str, Any] | None = None,
    ) -> TaskCheckRun:
        """Return the in-flight check run for (task, type), creating one if needed.

        With ``skip_if_done``, an existing DONE run is returned instead of
        starting a new one; the most recent DONE run wins so repeated calls
        return the same row.
        """
        statuses = [TaskCheckRunStatus.RUNNING]
        if skip_if_done:
            statuses.append(TaskCheckRunStatus.DONE)
        find = TaskCheckRunFind(task_id=task_id, type=check_type, status_list=statuses)

        try:
            async with self.store.transaction():
                existing = await self.store.find_task_check_runs(find)

                done = [r for r in existing if r.status == TaskCheckRunStatus.DONE]
                if skip_if_done and done:
                    return done[-1]

                running = [r for r in existing if r.status == TaskCheckRunStatus.RUNNING]
                if running:
                    if len(running) > 1:
                        self._log.warning(
                            "Found %d running check runs for task %d type %s, expect at most 1",
                            len(running),
                            task_id,
                            check_type,
                        )
                    return running[0]

                run = await self.store.create_task_check_run(
                    TaskCheckRun(
                        creator_id=creator_id,
                        task_id=task_id,
                        name=f"{check_type} {task_id}",
                        type=check_type,
                        status=TaskCheckRunStatus.RUNNING,
                        payload=payload or {},
                    )
                )
        except aiosqlite.IntegrityError as exc:
            # Lost the race to a writer outside this process; theirs is the run.
            running = await self.store.find_task_check_runs(
                TaskCheckRunFind(
                    task_id=task_id, type=check_type, status_list=[TaskCheckRunStatus.RUNNING]
                )
            )
            if running:
                self._log.info(
                    "Concurrent check run creation for task %d type %s, using run %d",
                    task_id,
                    check_type,
                    running[0].id,
                )
                return running[0]
            raise ConflictError(
                f"failed to create check run for task {task_id} type {check_type}: {exc}",
                cause=exc,
                task_id=task_id,
                check_type=check_type,
            ) from exc

        self._log.info("Started check run %d (%s) for task %d", run.id, check_type, task_id)
        return run

    async def complete_check_run(
        self,
        check_run_id: int,
        status: TaskCheckRunStatus,
        *,
        comment: str = "",
        result: list[TaskCheckResult] | None = None,
        updater_id: int = SYSTEM_BOT_ID,
    ) -> TaskCheckRun:
        """Move a check run out of RUNNING, recording its advice."""
        if status == TaskCheckRunStatus.RUNNING:
            raise ValidationError(
                "a check run can only be completed as done or failed",
                check_run_id=check_run_id,
            )
        run = await self.store.patch_task_check_run_status(
            TaskCheckRunStatusPatch(
                id=check_run_id,
                updater_id=updater_id,
                status=status,
                comment=comment,
                result=result or [],
            )
        )
        self._log.info(
            "Check run %d (%s) for task %d completed: %s",
            run.id,
            run.type,
            run.task_id,
            status.value,
        )
        return run

    async def list_check_runs(self, find: TaskCheckRunFind) -> list[TaskCheckRun]:
        return await self.store.find_task_check_runs(find)

    async def latest_check_runs(self, task_id: int) -> dict[str, TaskCheckRun]:
        """Most recent check run per check type for one task."""
        latest: dict[str, TaskCheckRun] = {}
        for run in await self.store.find_task_check_runs(TaskCheckRunFind(task_id=task_id)):
            latest[run.type] = run
        return latest
