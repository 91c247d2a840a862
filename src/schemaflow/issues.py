"""Issue service — creating, canceling and retriggering change requests.

``create_issue`` validates the whole request up front (stage layout, task
payloads, targets, migration artifact names, dependencies) and then writes
the issue, its pipeline, stages and tasks in one store transaction. Nothing
is persisted for an invalid request.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from schemaflow.errors import ConflictError, NotFoundError, ValidationError
from schemaflow.migration import parse_migration_info
from schemaflow.models import (
    SYSTEM_BOT_ID,
    Instance,
    Issue,
    IssueFind,
    IssuePatch,
    IssueStatus,
    Pipeline,
    PipelinePatch,
    PipelineStatus,
    Stage,
    StageFind,
    StagePatch,
    StageStatus,
    Task,
    TaskFind,
    TaskStatus,
    TaskStatusPatch,
)
from schemaflow.payloads import (
    DatabaseCreatePayload,
    SchemaUpdatePayload,
    TaskPayload,
    TaskType,
)
from schemaflow.store import Store


# ── Requests ─────────────────────────────────────────────────────────────────


class TaskCreate(BaseModel):
    name: str = Field(min_length=1)
    payload: TaskPayload
    instance_id: int | None = None
    database_id: int | None = None
    # Names of tasks in the same stage that must be DONE first
    depends_on: list[str] = []

    @property
    def type(self) -> TaskType:
        return TaskType(self.payload.type)


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    environment_id: int
    tasks: list[TaskCreate] = Field(min_length=1)


class IssueCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    creator_id: int
    subscriber_ids: list[int] = []
    stages: list[StageCreate] = Field(min_length=1)


class StageView(BaseModel):
    stage: Stage
    tasks: list[Task]


class IssueView(BaseModel):
    issue: Issue
    pipeline: Pipeline
    stages: list[StageView]


# ── Service ──────────────────────────────────────────────────────────────────


class IssueService:
    def __init__(self, store: Store, *, logger: logging.Logger | None = None):
        self.store = store
        self._log = logger or logging.getLogger(__name__)

    async def create_issue(self, create: IssueCreate) -> Issue:
        orders = []
        for stage in create.stages:
            for task in stage.tasks:
                await self._validate_task(stage, task)
            orders.append(_dependency_order(stage))

        async with self.store.transaction():
            pipeline = await self.store.create_pipeline(
                Pipeline(creator_id=create.creator_id, name=f"Pipeline - {create.name}")
            )
            issue = await self.store.create_issue(
                Issue(
                    creator_id=create.creator_id,
                    name=create.name,
                    description=create.description,
                    pipeline_id=pipeline.id,
                    subscriber_ids=create.subscriber_ids,
                )
            )
            for position, (stage_create, order) in enumerate(zip(create.stages, orders)):
                stage = await self.store.create_stage(
                    Stage(
                        creator_id=create.creator_id,
                        pipeline_id=pipeline.id,
                        environment_id=stage_create.environment_id,
                        position=position,
                        name=stage_create.name,
                    )
                )
                ids: dict[str, int] = {}
                # Dependencies first, so their ids are known
                for task_create in order:
                    task = await self.store.create_task(
                        Task(
                            creator_id=create.creator_id,
                            pipeline_id=pipeline.id,
                            stage_id=stage.id,
                            instance_id=task_create.instance_id,
                            database_id=task_create.database_id,
                            name=task_create.name,
                            type=task_create.type,
                            payload=task_create.payload,
                            blocked_by=[ids[name] for name in task_create.depends_on],
                        )
                    )
                    ids[task.name] = task.id

        self._log.info(
            "Created issue %s (%s) with pipeline %s: %d stages",
            issue.id,
            issue.name,
            pipeline.id,
            len(create.stages),
        )
        return issue

    async def _validate_task(self, stage: StageCreate, task: TaskCreate) -> None:
        payload = task.payload
        if isinstance(payload, DatabaseCreatePayload):
            if task.instance_id is None:
                raise ValidationError(f"task {task.name!r}: database.create needs an instance")
            instance = await self._instance(task)
            if payload.environment_id != stage.environment_id:
                raise ValidationError(
                    f"task {task.name!r}: environment {payload.environment_id} "
                    f"does not match stage {stage.name!r} environment {stage.environment_id}"
                )
            if instance.environment_id != stage.environment_id:
                raise ValidationError(
                    f"task {task.name!r}: instance {instance.name!r} is not in "
                    f"environment {stage.environment_id}"
                )
        elif isinstance(payload, SchemaUpdatePayload):
            if task.instance_id is None or task.database_id is None:
                raise ValidationError(
                    f"task {task.name!r}: database.schema.update needs an instance and a database"
                )
            instance = await self._instance(task)
            try:
                database = await self.store.get_database(task.database_id)
            except NotFoundError as exc:
                raise ValidationError(f"task {task.name!r}: {exc.message}") from exc
            if database.instance_id != instance.id:
                raise ValidationError(
                    f"task {task.name!r}: database {database.name!r} is not on instance {instance.name!r}"
                )
            if instance.environment_id != stage.environment_id:
                raise ValidationError(
                    f"task {task.name!r}: instance {instance.name!r} is not in "
                    f"environment {stage.environment_id}"
                )
            if payload.vcs_push_event is not None:
                parse_migration_info(payload.vcs_push_event.file_commit.added)

    async def _instance(self, task: TaskCreate) -> Instance:
        try:
            return await self.store.get_instance(task.instance_id)
        except NotFoundError as exc:
            raise ValidationError(f"task {task.name!r}: {exc.message}") from exc

    async def get_issue_view(self, issue_id: int) -> IssueView:
        issue = await self.store.get_issue(issue_id)
        pipeline = await self.store.get_pipeline(issue.pipeline_id)
        stages = await self.store.find_stages(StageFind(pipeline_id=pipeline.id))
        views = [
            StageView(stage=s, tasks=await self.store.find_tasks(TaskFind(stage_id=s.id)))
            for s in stages
        ]
        return IssueView(issue=issue, pipeline=pipeline, stages=views)

    async def cancel_issue(self, issue_id: int, *, updater_id: int = SYSTEM_BOT_ID) -> Issue:
        """Cancel an issue and its pipeline.

        PENDING tasks are canceled now. RUNNING tasks finish their current
        attempt; the scheduler never re-dispatches them and sweeps them to
        CANCELED afterwards.
        """
        async with self.store.transaction():
            issue = await self.store.get_issue(issue_id)
            pipeline = await self.store.get_pipeline(issue.pipeline_id)
            if pipeline.status == PipelineStatus.CANCELED:
                return issue
            if pipeline.status == PipelineStatus.DONE:
                raise ConflictError(f"issue {issue_id} is already done", issue_id=issue_id)

            await self.store.patch_pipeline(
                PipelinePatch(id=pipeline.id, updater_id=updater_id, status=PipelineStatus.CANCELED)
            )
            issue = await self.store.patch_issue(
                IssuePatch(id=issue.id, updater_id=updater_id, status=IssueStatus.CANCELED)
            )
            for stage in await self.store.find_stages(StageFind(pipeline_id=pipeline.id)):
                if stage.status != StageStatus.DONE:
                    await self.store.patch_stage(
                        StagePatch(id=stage.id, updater_id=updater_id, status=StageStatus.CANCELED)
                    )
            canceled = 0
            for task in await self.store.find_tasks(
                TaskFind(pipeline_id=pipeline.id, status_list=[TaskStatus.PENDING])
            ):
                if await self.store.patch_task_status(
                    TaskStatusPatch(
                        id=task.id,
                        updater_id=updater_id,
                        status=TaskStatus.CANCELED,
                        expected=[TaskStatus.PENDING],
                    )
                ):
                    canceled += 1

        self._log.info("Canceled issue %s (%d pending tasks canceled)", issue_id, canceled)
        return issue

    async def retry_task(self, task_id: int, *, updater_id: int = SYSTEM_BOT_ID) -> Task:
        """Retrigger a FAILED task.

        The task goes back to PENDING. Once no FAILED task is left in its
        stage, the stage, pipeline and issue are unblocked.
        """
        async with self.store.transaction():
            task = await self.store.get_task(task_id)
            pipeline = await self.store.get_pipeline(task.pipeline_id)
            if pipeline.status.terminal:
                raise ConflictError(
                    f"pipeline {pipeline.id} is {pipeline.status.value}", task_id=task_id
                )
            retried = await self.store.patch_task_status(
                TaskStatusPatch(
                    id=task_id,
                    updater_id=updater_id,
                    status=TaskStatus.PENDING,
                    expected=[TaskStatus.FAILED],
                )
            )
            if retried is None:
                raise ConflictError(
                    f"task {task_id} is {task.status.value}, only failed tasks can be retried",
                    task_id=task_id,
                )

            still_failed = await self.store.find_tasks(
                TaskFind(stage_id=task.stage_id, status_list=[TaskStatus.FAILED])
            )
            if not still_failed:
                await self.store.patch_stage(
                    StagePatch(id=task.stage_id, updater_id=updater_id, status=StageStatus.RUNNING)
                )
                await self.store.patch_pipeline(
                    PipelinePatch(id=pipeline.id, updater_id=updater_id, status=PipelineStatus.OPEN)
                )
                for issue in await self.store.find_issues(IssueFind(pipeline_id=pipeline.id)):
                    await self.store.patch_issue(
                        IssuePatch(id=issue.id, updater_id=updater_id, status=IssueStatus.OPEN)
                    )

        self._log.info("Task %s retriggered by %s", task_id, updater_id)
        return retried


def _dependency_order(stage: StageCreate) -> list[TaskCreate]:
    """Tasks of a stage ordered so each comes after its dependencies.

    Raises ValidationError on duplicate names, unknown or self dependencies,
    and cycles.
    """
    by_name: dict[str, TaskCreate] = {}
    for task in stage.tasks:
        if task.name in by_name:
            raise ValidationError(f"stage {stage.name!r}: duplicate task name {task.name!r}")
        by_name[task.name] = task
    for task in stage.tasks:
        for dep in task.depends_on:
            if dep == task.name:
                raise ValidationError(f"task {task.name!r} depends on itself")
            if dep not in by_name:
                raise ValidationError(
                    f"task {task.name!r} depends on {dep!r}, which is not in stage {stage.name!r}"
                )

    ordered: list[TaskCreate] = []
    state: dict[str, str] = {}

    def visit(name: str, path: list[str]) -> None:
        if state.get(name) == "done":
            return
        if state.get(name) == "visiting":
            cycle = " -> ".join(path[path.index(name):] + [name])
            raise ValidationError(f"stage {stage.name!r}: dependency cycle {cycle}")
        state[name] = "visiting"
        for dep in by_name[name].depends_on:
            visit(dep, path + [name])
        state[name] = "done"
        ordered.append(by_name[name])

    for task in stage.tasks:
        visit(task.name, [])
    return ordered
