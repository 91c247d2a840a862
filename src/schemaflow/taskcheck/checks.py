"""Check executors — what actually runs behind a RUNNING TaskCheckRun.

Built-in checks:
    - ``database.connect``          — open and ping the task's target database
    - ``database.statement.advise`` — run the statement through the Advisor

Each check function receives a :class:`TaskCheckContext` and returns a list
of advice. Raising marks the check run FAILED; returning marks it DONE, and
any ERROR advice in the list makes it blocking for the task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from schemaflow.errors import SchemaflowError, ValidationError
from schemaflow.models import (
    AdviceStatus,
    Task,
    TaskCheckResult,
    TaskCheckRun,
    TaskCheckRunFind,
    TaskCheckRunStatus,
    TaskCheckType,
)
from schemaflow.payloads import SchemaUpdatePayload
from schemaflow.store import Store
from schemaflow.targets import open_target, resolve_target
from schemaflow.taskcheck.advisor import AdviceCode, Advisor, DefaultAdvisor, ok_advice
from schemaflow.taskcheck.registry import TaskCheckRegistry

logger = logging.getLogger(__name__)


@dataclass
class TaskCheckContext:
    task: Task
    store: Store
    advisor: Advisor = field(default_factory=DefaultAdvisor)
    logger: logging.Logger = logger


CheckFunc = Callable[[TaskCheckContext], Awaitable[list[TaskCheckResult]]]


@dataclass
class CheckOutcome:
    status: TaskCheckRunStatus
    comment: str = ""
    result: list[TaskCheckResult] = field(default_factory=list)


# ── Check Executor Registry ──────────────────────────────────────────────────


class TaskCheckExecutorRegistry:
    """Registry mapping check types to check functions.

    Usage::

        checks = TaskCheckExecutorRegistry()

        @checks.register("database.lint")
        async def lint(ctx: TaskCheckContext) -> list[TaskCheckResult]:
            ...

    Built-in checks are pre-registered at construction time.
    """

    def __init__(self) -> None:
        self._checks: dict[str, CheckFunc] = {}
        self._register_builtin_checks()

    def register(self, check_type: str) -> Callable[[CheckFunc], CheckFunc]:
        def decorator(fn: CheckFunc) -> CheckFunc:
            self.register_fn(check_type, fn)
            return fn

        return decorator

    def register_fn(self, check_type: str, fn: CheckFunc) -> None:
        self._checks[check_type] = fn
        logger.debug("Registered task check: %s", check_type)

    def get(self, check_type: str) -> CheckFunc | None:
        return self._checks.get(check_type)

    def list_checks(self) -> list[str]:
        return sorted(self._checks.keys())

    async def evaluate(self, check_type: str, ctx: TaskCheckContext) -> CheckOutcome:
        fn = self._checks.get(check_type)
        if fn is None:
            return CheckOutcome(
                status=TaskCheckRunStatus.FAILED,
                comment=f"Unknown task check: '{check_type}'. Available: {self.list_checks()}",
            )
        try:
            result = await fn(ctx)
        except SchemaflowError as exc:
            return CheckOutcome(status=TaskCheckRunStatus.FAILED, comment=exc.message)
        except Exception as exc:
            ctx.logger.exception("Task check '%s' raised an exception", check_type)
            return CheckOutcome(status=TaskCheckRunStatus.FAILED, comment=f"Task check error: {exc}")
        return CheckOutcome(status=TaskCheckRunStatus.DONE, result=result)

    def _register_builtin_checks(self) -> None:
        self.register_fn(TaskCheckType.DATABASE_CONNECT.value, _check_database_connect)
        self.register_fn(TaskCheckType.STATEMENT_ADVISE.value, _check_statement_advise)


# ── Built-in Check Implementations ───────────────────────────────────────────


async def _check_database_connect(ctx: TaskCheckContext) -> list[TaskCheckResult]:
    try:
        instance, driver = await open_target(
            ctx.store, ctx.task, with_database=ctx.task.database_id is not None, logger=ctx.logger
        )
        async with driver:
            await driver.ping()
    except ValidationError:
        raise
    except SchemaflowError as exc:
        return [
            TaskCheckResult(
                status=AdviceStatus.ERROR,
                code=AdviceCode.CONNECTION_FAILURE,
                title="Failed to connect",
                content=exc.message,
            )
        ]
    advice = ok_advice()
    advice.content = f"Connected to instance {instance.name}"
    return [advice]


async def _check_statement_advise(ctx: TaskCheckContext) -> list[TaskCheckResult]:
    payload = ctx.task.payload
    if not isinstance(payload, SchemaUpdatePayload):
        raise ValidationError(
            f"statement advice does not apply to {ctx.task.type.value} tasks", task_id=ctx.task.id
        )
    instance, _ = await resolve_target(ctx.store, ctx.task)
    return await ctx.advisor.advise(payload.statement.strip(), engine=instance.engine)


# ── Runner ───────────────────────────────────────────────────────────────────


class TaskCheckRunner:
    """Executes RUNNING check runs and completes them through the registry.

    ``dispatch()`` is called on every scheduler tick; each check run is
    executed in its own asyncio task so a slow target never delays the tick.
    """

    def __init__(
        self,
        store: Store,
        registry: TaskCheckRegistry,
        checks: TaskCheckExecutorRegistry | None = None,
        *,
        advisor: Advisor | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.registry = registry
        self.checks = checks or TaskCheckExecutorRegistry()
        self.advisor = advisor or DefaultAdvisor()
        self._log = logger or logging.getLogger(__name__)
        self._inflight: dict[int, asyncio.Task] = {}

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def dispatch(self) -> int:
        """Start a worker for every RUNNING check run not already in flight."""
        pending = await self.registry.list_check_runs(
            TaskCheckRunFind(status_list=[TaskCheckRunStatus.RUNNING])
        )
        started = 0
        for run in pending:
            if run.id in self._inflight:
                continue
            worker = asyncio.create_task(self.run_check(run), name=f"task-check-{run.id}")
            self._inflight[run.id] = worker
            worker.add_done_callback(lambda _t, run_id=run.id: self._inflight.pop(run_id, None))
            started += 1
        return started

    async def run_check(self, run: TaskCheckRun) -> TaskCheckRun:
        # The listing may predate a worker that already completed this run
        current = await self.registry.list_check_runs(TaskCheckRunFind(id=run.id))
        if not current or current[0].status != TaskCheckRunStatus.RUNNING:
            self._log.debug("Check run %s already completed, skipping", run.id)
            return current[0] if current else run
        task = await self.store.get_task(run.task_id)
        ctx = TaskCheckContext(task=task, store=self.store, advisor=self.advisor, logger=self._log)
        outcome = await self.checks.evaluate(run.type, ctx)
        return await self.registry.complete_check_run(
            run.id, outcome.status, comment=outcome.comment, result=outcome.result
        )

    async def wait(self) -> None:
        """Wait for every in-flight check to finish."""
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    async def stop(self) -> None:
        for worker in list(self._inflight.values()):
            worker.cancel()
        await self.wait()
