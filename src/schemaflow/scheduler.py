"""Task scheduler — the poll-based control loop driving pipelines.

Every tick:
1. Dispatch RUNNING check runs to the check runner.
2. For each OPEN or BLOCKED pipeline, find the earliest stage that is not
   DONE. Stages run strictly in order; a later stage is never looked at
   while an earlier one is unfinished.
3. In that stage, start PENDING tasks whose dependencies are DONE and whose
   required checks passed (OPEN pipelines only), and re-dispatch RUNNING
   tasks that are not in flight (after a RETRY verdict, a timeout or a
   restart).
4. Mark a stage DONE when all its tasks are DONE, and the pipeline and
   issue DONE after the last stage.
5. Sweep RUNNING tasks of canceled pipelines to CANCELED once their
   in-flight attempt is over.

Each dispatch runs in its own asyncio task. Workers report an
ExecutionResult; only the scheduler writes task status, always as a
compare-and-set against the status it expects.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from schemaflow.errors import NotFoundError, SchemaflowError
from schemaflow.executors import ExecutionResult, Outcome, TaskExecutorRegistry
from schemaflow.models import (
    SYSTEM_BOT_ID,
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
    TaskCheckRunStatus,
    TaskFind,
    TaskRun,
    TaskRunFind,
    TaskRunPatch,
    TaskRunStatus,
    TaskStatus,
    TaskStatusPatch,
)
from schemaflow.store import Store
from schemaflow.taskcheck import TaskCheckRegistry, TaskCheckRunner


class TaskScheduler:
    """Periodic background scheduler."""

    def __init__(
        self,
        store: Store,
        executors: TaskExecutorRegistry,
        checks: TaskCheckRegistry,
        check_runner: TaskCheckRunner | None = None,
        *,
        interval: float = 1.0,
        task_timeout: float = 600.0,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.executors = executors
        self.checks = checks
        self.check_runner = check_runner
        self.interval = interval
        self.task_timeout = task_timeout
        self._log = logger or logging.getLogger(__name__)

        self._running = False
        self._task: asyncio.Task | None = None
        self._inflight: dict[int, asyncio.Task] = {}

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.recover()
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="task-scheduler")
        self._log.info(
            "Task scheduler started (interval=%ss, task_timeout=%ss)",
            self.interval,
            self.task_timeout,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        for worker in list(self._inflight.values()):
            worker.cancel()
        await self.wait()
        if self.check_runner:
            await self.check_runner.stop()
        self._log.info("Task scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                self._log.exception("Scheduler tick error")
                await asyncio.sleep(self.interval)

    async def wait(self) -> None:
        """Wait for every in-flight task attempt to finish."""
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    @property
    def inflight(self) -> set[int]:
        return set(self._inflight)

    async def recover(self) -> int:
        """Fail task runs left RUNNING by a previous process.

        Their tasks stay RUNNING and are re-dispatched by the next tick.
        """
        stale = await self.store.find_task_runs(TaskRunFind(status_list=[TaskRunStatus.RUNNING]))
        for run in stale:
            await self.store.patch_task_run(
                TaskRunPatch(
                    id=run.id,
                    updater_id=SYSTEM_BOT_ID,
                    status=TaskRunStatus.FAILED,
                    comment="interrupted",
                )
            )
        if stale:
            self._log.warning("Marked %d interrupted task runs as failed", len(stale))
        return len(stale)

    # ── Tick ─────────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        """Run one scheduling pass."""
        if self.check_runner:
            await self.check_runner.dispatch()

        pipelines = await self.store.find_pipelines(
            PipelineFind(status_list=[PipelineStatus.OPEN, PipelineStatus.BLOCKED])
        )
        for pipeline in pipelines:
            try:
                await self._advance_pipeline(pipeline)
            except Exception:
                # One pipeline's trouble never stalls the others
                self._log.exception("Failed to advance pipeline %s", pipeline.id)

        await self._sweep_canceled()

    async def _advance_pipeline(self, pipeline: Pipeline) -> None:
        stages = await self.store.find_stages(StageFind(pipeline_id=pipeline.id))
        current = next((s for s in stages if s.status != StageStatus.DONE), None)
        if current is None:
            await self._complete_pipeline(pipeline)
            return
        if current.status == StageStatus.CANCELED:
            return

        tasks = await self.store.find_tasks(TaskFind(stage_id=current.id))
        if all(t.status == TaskStatus.DONE for t in tasks):
            await self._complete_stage(pipeline, current, is_last=current.id == stages[-1].id)
            return

        by_id = {t.id: t for t in tasks}
        stage_failed = any(t.status == TaskStatus.FAILED for t in tasks)
        # A BLOCKED pipeline lets in-flight work finish but starts nothing new
        may_start = pipeline.status == PipelineStatus.OPEN and not stage_failed

        for task in tasks:
            if task.id in self._inflight:
                continue
            if task.status == TaskStatus.RUNNING:
                self._dispatch(task)
            elif task.status == TaskStatus.PENDING and may_start:
                if not self._dependencies_done(task, by_id):
                    continue
                if not await self._checks_passed(task):
                    continue
                await self._start_task(task, current)

    def _dependencies_done(self, task: Task, by_id: dict[int, Task]) -> bool:
        for dep_id in task.blocked_by:
            dep = by_id.get(dep_id)
            if dep is None or dep.status != TaskStatus.DONE:
                return False
        return True

    async def _checks_passed(self, task: Task) -> bool:
        """True when every required check's latest run is DONE and non-blocking.

        Missing checks are requested and the task waits for a later tick.
        """
        if not self.executors.has(task.type):
            # Let the worker record the missing executor as a failure
            return True
        required = self.executors.get(task.type).required_checks
        if not required:
            return True

        latest = await self.checks.latest_check_runs(task.id)
        passed = True
        for check_type in required:
            run = latest.get(check_type)
            if run is None:
                await self.checks.ensure_check_run(task.id, check_type, skip_if_done=True)
                passed = False
            elif run.status == TaskCheckRunStatus.RUNNING:
                passed = False
            elif run.blocking:
                self._log.debug(
                    "Task %s blocked by check run %s (%s)", task.id, run.id, check_type
                )
                passed = False
        return passed

    async def _start_task(self, task: Task, stage: Stage) -> None:
        claimed = await self.store.patch_task_status(
            TaskStatusPatch(
                id=task.id,
                updater_id=SYSTEM_BOT_ID,
                status=TaskStatus.RUNNING,
                expected=[TaskStatus.PENDING],
            )
        )
        if claimed is None:
            self._log.debug("Task %s left PENDING before it could be claimed", task.id)
            return
        if stage.status == StageStatus.PENDING:
            async with self.store.transaction():
                # A worker may have failed the stage since the tick read it
                if (await self.store.get_stage(stage.id)).status == StageStatus.PENDING:
                    await self.store.patch_stage(
                        StagePatch(id=stage.id, updater_id=SYSTEM_BOT_ID, status=StageStatus.RUNNING)
                    )
            stage.status = StageStatus.RUNNING
        self._log.info("Starting task %s (%s) in stage %s", task.id, task.name, stage.name)
        self._dispatch(claimed)

    async def _complete_stage(self, pipeline: Pipeline, stage: Stage, *, is_last: bool) -> None:
        async with self.store.transaction():
            current = await self.store.get_pipeline(pipeline.id)
            if current.status not in (PipelineStatus.OPEN, PipelineStatus.BLOCKED):
                return
            await self.store.patch_stage(
                StagePatch(id=stage.id, updater_id=SYSTEM_BOT_ID, status=StageStatus.DONE)
            )
        self._log.info("Stage %s (%s) of pipeline %s done", stage.id, stage.name, pipeline.id)
        if is_last:
            await self._complete_pipeline(pipeline)

    async def _complete_pipeline(self, pipeline: Pipeline) -> None:
        """Mark the pipeline and its issue DONE unless it left OPEN/BLOCKED meanwhile."""
        async with self.store.transaction():
            current = await self.store.get_pipeline(pipeline.id)
            if current.status not in (PipelineStatus.OPEN, PipelineStatus.BLOCKED):
                self._log.debug(
                    "Pipeline %s is %s, not marking it done", pipeline.id, current.status.value
                )
                return
            await self.store.patch_pipeline(
                PipelinePatch(id=pipeline.id, updater_id=SYSTEM_BOT_ID, status=PipelineStatus.DONE)
            )
            for issue in await self.store.find_issues(IssueFind(pipeline_id=pipeline.id)):
                await self.store.patch_issue(
                    IssuePatch(id=issue.id, updater_id=SYSTEM_BOT_ID, status=IssueStatus.DONE)
                )
        self._log.info("Pipeline %s (%s) done", pipeline.id, pipeline.name)

    async def _sweep_canceled(self) -> None:
        running = await self.store.find_tasks(TaskFind(status_list=[TaskStatus.RUNNING]))
        pipelines: dict[int, Pipeline] = {}
        for task in running:
            if task.id in self._inflight:
                continue
            if task.pipeline_id not in pipelines:
                pipelines[task.pipeline_id] = await self.store.get_pipeline(task.pipeline_id)
            if pipelines[task.pipeline_id].status != PipelineStatus.CANCELED:
                continue
            swept = await self.store.patch_task_status(
                TaskStatusPatch(
                    id=task.id,
                    updater_id=SYSTEM_BOT_ID,
                    status=TaskStatus.CANCELED,
                    expected=[TaskStatus.RUNNING],
                )
            )
            if swept:
                self._log.info("Canceled task %s of canceled pipeline %s", task.id, task.pipeline_id)

    # ── Workers ──────────────────────────────────────────────────────────────

    def _dispatch(self, task: Task) -> None:
        worker = asyncio.create_task(self._run_task(task), name=f"task-{task.id}")
        self._inflight[task.id] = worker
        worker.add_done_callback(lambda _t, task_id=task.id: self._inflight.pop(task_id, None))

    async def _run_task(self, stale: Task) -> None:
        # The tick may have listed the task before an earlier attempt finished
        async with self.store.transaction():
            task = await self.store.get_task(stale.id)
            if task.status != TaskStatus.RUNNING:
                self._log.debug("Task %s is %s, skipping dispatch", task.id, task.status.value)
                return
            run = await self.store.create_task_run(
                TaskRun(
                    creator_id=SYSTEM_BOT_ID,
                    task_id=task.id,
                    name=f"{task.name} {datetime.now(timezone.utc).isoformat(timespec='seconds')}",
                    type=task.type,
                )
            )
        try:
            executor = self.executors.get(task.type)
            result = await asyncio.wait_for(executor.run_once(task), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            self._log.warning("Task %s attempt timed out after %ss", task.id, self.task_timeout)
            # The task stays RUNNING; the next tick re-dispatches it
            await self.store.patch_task_run(
                TaskRunPatch(
                    id=run.id,
                    updater_id=SYSTEM_BOT_ID,
                    status=TaskRunStatus.FAILED,
                    comment=f"timed out after {self.task_timeout}s",
                )
            )
            return
        except SchemaflowError as exc:
            result = ExecutionResult.from_error(exc)
        except Exception as exc:
            self._log.exception("Executor for task %s raised", task.id)
            result = ExecutionResult.failure(f"unexpected error: {exc}")

        try:
            await self._apply_result(task, run, result)
        except Exception:
            self._log.exception("Failed to record result for task %s", task.id)

    async def _apply_result(self, task: Task, run: TaskRun, result: ExecutionResult) -> None:
        if result.outcome == Outcome.SUCCESS:
            await self._finish(task, run, TaskRunStatus.DONE, TaskStatus.DONE, result)
            self._log.info("Task %s (%s) done", task.id, task.name)
            return

        if result.outcome == Outcome.PERMANENT_FAILURE:
            await self._finish(task, run, TaskRunStatus.FAILED, TaskStatus.FAILED, result)
            self._log.warning("Task %s (%s) failed: %s", task.id, task.name, result.error)
            await self._block(task)
            return

        pipeline = await self.store.get_pipeline(task.pipeline_id)
        if pipeline.status == PipelineStatus.CANCELED:
            await self._finish(task, run, TaskRunStatus.CANCELED, TaskStatus.CANCELED, result)
            self._log.info("Task %s canceled instead of retried", task.id)
            return
        await self.store.patch_task_run(
            TaskRunPatch(
                id=run.id,
                updater_id=SYSTEM_BOT_ID,
                status=TaskRunStatus.RETRY,
                comment=result.error,
                result=result.detail,
            )
        )
        self._log.info("Task %s will be retried: %s", task.id, result.error)

    async def _finish(
        self,
        task: Task,
        run: TaskRun,
        run_status: TaskRunStatus,
        task_status: TaskStatus,
        result: ExecutionResult,
    ) -> None:
        async with self.store.transaction():
            await self.store.patch_task_run(
                TaskRunPatch(
                    id=run.id,
                    updater_id=SYSTEM_BOT_ID,
                    status=run_status,
                    comment=result.error,
                    result=result.detail,
                )
            )
            updated = await self.store.patch_task_status(
                TaskStatusPatch(
                    id=task.id,
                    updater_id=SYSTEM_BOT_ID,
                    status=task_status,
                    expected=[TaskStatus.RUNNING],
                )
            )
        if updated is None:
            self._log.warning(
                "Task %s was no longer RUNNING when its %s verdict arrived",
                task.id,
                task_status.value,
            )

    async def _block(self, task: Task) -> None:
        """Freeze the failed task's stage, pipeline and issue."""
        async with self.store.transaction():
            try:
                pipeline = await self.store.get_pipeline(task.pipeline_id)
            except NotFoundError:
                return
            if pipeline.status.terminal:
                return
            await self.store.patch_stage(
                StagePatch(id=task.stage_id, updater_id=SYSTEM_BOT_ID, status=StageStatus.FAILED)
            )
            await self.store.patch_pipeline(
                PipelinePatch(id=pipeline.id, updater_id=SYSTEM_BOT_ID, status=PipelineStatus.BLOCKED)
            )
            for issue in await self.store.find_issues(IssueFind(pipeline_id=pipeline.id)):
                await self.store.patch_issue(
                    IssuePatch(id=issue.id, updater_id=SYSTEM_BOT_ID, status=IssueStatus.BLOCKED)
                )
