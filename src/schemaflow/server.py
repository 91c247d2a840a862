"""Schemaflow server — wires the store, scheduler and operator HTTP surface.

Startup:
1. Open and initialize the store
2. Build executor and check registries
3. Recover interrupted task runs and start the scheduler loop

Routes:
    GET  /health
    POST /issues                       create an issue from an IssueCreate body
    GET  /issues/{issue_id}            issue, pipeline, stages and tasks
    POST /issues/{issue_id}/cancel
    POST /tasks/{task_id}/retry        retrigger a failed task
    GET  /tasks/{task_id}/runs
    GET  /tasks/{task_id}/checks
    POST /tasks/{task_id}/checks?type=...&skip_if_done=...
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from schemaflow.config import SchemaflowConfig
from schemaflow.errors import ErrorCategory, SchemaflowError
from schemaflow.executors import TaskExecutorRegistry, default_executors
from schemaflow.issues import IssueCreate, IssueService, IssueView
from schemaflow.models import (
    Issue,
    Task,
    TaskCheckRun,
    TaskCheckRunFind,
    TaskRun,
    TaskRunFind,
)
from schemaflow.scheduler import TaskScheduler
from schemaflow.store import Store
from schemaflow.taskcheck import Advisor, TaskCheckRegistry, TaskCheckRunner

logger = logging.getLogger(__name__)

_STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.TRANSIENT: 503,
}


class SchemaflowServer:
    """Owns every long-lived component. One instance per process."""

    def __init__(self, config: SchemaflowConfig, *, advisor: Advisor | None = None):
        self.config = config
        self.advisor = advisor
        self.store: Store | None = None
        self.executors: TaskExecutorRegistry | None = None
        self.checks: TaskCheckRegistry | None = None
        self.check_runner: TaskCheckRunner | None = None
        self.scheduler: TaskScheduler | None = None
        self.issues: IssueService | None = None

    async def start(self) -> None:
        db_path = Path(self.config.store.path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.store = await Store.open(db_path)
        await self.store.initialize()

        self.executors = default_executors(self.store)
        self.checks = TaskCheckRegistry(self.store)
        self.check_runner = TaskCheckRunner(self.store, self.checks, advisor=self.advisor)
        self.issues = IssueService(self.store)
        self.scheduler = TaskScheduler(
            self.store,
            self.executors,
            self.checks,
            self.check_runner,
            interval=self.config.scheduler.interval,
            task_timeout=self.config.scheduler.task_timeout,
        )
        await self.scheduler.start()
        logger.info("Schemaflow server started (store=%s)", db_path)

    async def stop(self) -> None:
        if self.scheduler:
            await self.scheduler.stop()
        if self.store:
            await self.store.close()
        logger.info("Schemaflow server stopped")


def create_app(config: SchemaflowConfig, *, advisor: Advisor | None = None) -> FastAPI:
    """Create the FastAPI application."""
    server = SchemaflowServer(config, advisor=advisor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="Schemaflow",
        version="0.1.0",
        description="Database change-management control plane",
        lifespan=lifespan,
    )
    app.state.server = server

    @app.exception_handler(SchemaflowError)
    async def schemaflow_error(request: Request, exc: SchemaflowError) -> JSONResponse:
        status = _STATUS_BY_CATEGORY.get(exc.category, 500)
        if status == 500:
            logger.error("Request %s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/health")
    async def health():
        scheduler = server.scheduler
        return {
            "status": "ok",
            "inflight_tasks": len(scheduler.inflight) if scheduler else 0,
            "inflight_checks": server.check_runner.inflight if server.check_runner else 0,
            "task_types": [t.value for t in server.executors.task_types] if server.executors else [],
        }

    @app.post("/issues", status_code=201)
    async def create_issue(create: IssueCreate) -> IssueView:
        issue = await server.issues.create_issue(create)
        return await server.issues.get_issue_view(issue.id)

    @app.get("/issues/{issue_id}")
    async def get_issue(issue_id: int) -> IssueView:
        return await server.issues.get_issue_view(issue_id)

    @app.post("/issues/{issue_id}/cancel")
    async def cancel_issue(issue_id: int) -> Issue:
        return await server.issues.cancel_issue(issue_id)

    @app.post("/tasks/{task_id}/retry")
    async def retry_task(task_id: int) -> Task:
        return await server.issues.retry_task(task_id)

    @app.get("/tasks/{task_id}/runs")
    async def list_task_runs(task_id: int) -> list[TaskRun]:
        await server.store.get_task(task_id)
        return await server.store.find_task_runs(TaskRunFind(task_id=task_id))

    @app.get("/tasks/{task_id}/checks")
    async def list_task_checks(task_id: int) -> list[TaskCheckRun]:
        await server.store.get_task(task_id)
        return await server.checks.list_check_runs(TaskCheckRunFind(task_id=task_id))

    @app.post("/tasks/{task_id}/checks", status_code=201)
    async def request_task_check(
        task_id: int,
        check_type: str = Query(alias="type", min_length=1),
        skip_if_done: bool = False,
    ) -> TaskCheckRun:
        await server.store.get_task(task_id)
        return await server.checks.ensure_check_run(task_id, check_type, skip_if_done=skip_if_done)

    return app
