"""Pydantic models — persisted entities, store filters and patches.

Key exports:
    Status enums: IssueStatus, PipelineStatus, StageStatus, TaskStatus,
        TaskRunStatus, TaskCheckRunStatus, AdviceStatus
    Entities: Issue, Pipeline, Stage, Task, TaskRun, TaskCheckRun,
        Instance, Database
    Filters (``*Find``): every field optional; ``None`` means unconstrained,
        ``*_list`` fields are matched with IN.
    Patches (``*Patch``): always carry ``updater_id``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from schemaflow.payloads import TaskPayload, TaskType

# Principal used for transitions the scheduler makes on its own.
SYSTEM_BOT_ID = 1


# ── Enums ────────────────────────────────────────────────────────────────────


class IssueStatus(str, Enum):
    OPEN = "open"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELED = "canceled"


class PipelineStatus(str, Enum):
    """Pipeline lifecycle states. DONE and CANCELED are terminal."""

    OPEN = "open"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (PipelineStatus.DONE, PipelineStatus.CANCELED)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.DONE, StageStatus.CANCELED)


class TaskStatus(str, Enum):
    """Task lifecycle: PENDING → RUNNING → DONE | FAILED | CANCELED."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CANCELED)


class TaskRunStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    RETRY = "retry"
    CANCELED = "canceled"


class TaskCheckRunStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class TaskCheckType(str, Enum):
    """Built-in check types. Check runs accept any type string; these are
    the ones the scheduler knows how to execute."""

    DATABASE_CONNECT = "database.connect"
    STATEMENT_ADVISE = "database.statement.advise"


class AdviceStatus(str, Enum):
    SUCCESS = "SUCCESS"
    WARN = "WARN"
    ERROR = "ERROR"


class EngineType(str, Enum):
    SQLITE = "SQLITE"
    MYSQL = "MYSQL"
    POSTGRES = "POSTGRES"


# ── Reference data ───────────────────────────────────────────────────────────


class Instance(BaseModel):
    """A database server. For SQLite, ``host`` is the directory holding the files."""

    id: int | None = None
    environment_id: int
    name: str
    engine: EngineType
    host: str
    port: str = ""
    username: str = ""
    password: str = ""


class Database(BaseModel):
    id: int | None = None
    instance_id: int
    name: str
    character_set: str = ""
    collation: str = ""
    created_ts: datetime | None = None


# ── Entities ─────────────────────────────────────────────────────────────────


class Issue(BaseModel):
    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    name: str
    description: str = ""
    status: IssueStatus = IssueStatus.OPEN
    pipeline_id: int | None = None
    subscriber_ids: list[int] = []
    created_ts: datetime | None = None
    updated_ts: datetime | None = None


class Pipeline(BaseModel):
    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    name: str
    status: PipelineStatus = PipelineStatus.OPEN
    created_ts: datetime | None = None
    updated_ts: datetime | None = None


class Stage(BaseModel):
    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    pipeline_id: int
    environment_id: int
    position: int
    name: str
    status: StageStatus = StageStatus.PENDING
    created_ts: datetime | None = None
    updated_ts: datetime | None = None


class Task(BaseModel):
    """Atomic unit of work. ``payload.type`` always equals ``type``."""

    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    pipeline_id: int
    stage_id: int
    instance_id: int | None = None
    database_id: int | None = None
    name: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    payload: TaskPayload
    # Ids of tasks in the same stage that must be DONE before this one starts
    blocked_by: list[int] = []
    created_ts: datetime | None = None
    updated_ts: datetime | None = None

    @model_validator(mode="after")
    def validate_payload_type(self) -> Task:
        if self.payload.type != self.type.value:
            msg = f"Task '{self.name}': payload type '{self.payload.type}' != task type '{self.type.value}'"
            raise ValueError(msg)
        return self


class TaskRun(BaseModel):
    """Audit record of one execution attempt."""

    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    task_id: int
    name: str
    status: TaskRunStatus = TaskRunStatus.RUNNING
    type: TaskType
    comment: str = ""
    result: dict[str, Any] = {}
    created_ts: datetime | None = None
    updated_ts: datetime | None = None


class TaskCheckResult(BaseModel):
    """One piece of advice produced by a check."""

    status: AdviceStatus
    code: int = 0
    title: str
    content: str = ""


class TaskCheckRun(BaseModel):
    id: int | None = None
    creator_id: int
    updater_id: int | None = None
    task_id: int
    name: str = ""
    type: str
    status: TaskCheckRunStatus = TaskCheckRunStatus.RUNNING
    comment: str = ""
    result: list[TaskCheckResult] = []
    payload: dict[str, Any] = {}
    created_ts: datetime | None = None
    updated_ts: datetime | None = None

    @property
    def blocking(self) -> bool:
        """A check blocks its task if it failed or reported any ERROR advice."""
        if self.status == TaskCheckRunStatus.FAILED:
            return True
        return any(r.status == AdviceStatus.ERROR for r in self.result)


# ── Filters ──────────────────────────────────────────────────────────────────


class IssueFind(BaseModel):
    id: int | None = None
    pipeline_id: int | None = None
    status_list: list[IssueStatus] | None = None


class PipelineFind(BaseModel):
    id: int | None = None
    status_list: list[PipelineStatus] | None = None


class StageFind(BaseModel):
    id: int | None = None
    pipeline_id: int | None = None
    status_list: list[StageStatus] | None = None


class TaskFind(BaseModel):
    id: int | None = None
    pipeline_id: int | None = None
    stage_id: int | None = None
    status_list: list[TaskStatus] | None = None


class TaskRunFind(BaseModel):
    id: int | None = None
    task_id: int | None = None
    status_list: list[TaskRunStatus] | None = None


class TaskCheckRunFind(BaseModel):
    id: int | None = None
    task_id: int | None = None
    type: str | None = None
    status_list: list[TaskCheckRunStatus] | None = None


class InstanceFind(BaseModel):
    id: int | None = None
    name: str | None = None


class DatabaseFind(BaseModel):
    id: int | None = None
    instance_id: int | None = None
    name: str | None = None


# ── Patches ──────────────────────────────────────────────────────────────────


class IssuePatch(BaseModel):
    id: int
    updater_id: int
    status: IssueStatus


class PipelinePatch(BaseModel):
    id: int
    updater_id: int
    status: PipelineStatus


class StagePatch(BaseModel):
    id: int
    updater_id: int
    status: StageStatus


class TaskStatusPatch(BaseModel):
    """Compare-and-set status update.

    When ``expected`` is given the update only applies if the current
    status is one of them.
    """

    id: int
    updater_id: int
    status: TaskStatus
    expected: list[TaskStatus] | None = None


class TaskRunPatch(BaseModel):
    id: int
    updater_id: int
    status: TaskRunStatus
    comment: str = ""
    result: dict[str, Any] = Field(default_factory=dict)


class TaskCheckRunStatusPatch(BaseModel):
    id: int
    updater_id: int
    status: TaskCheckRunStatus
    comment: str = ""
    result: list[TaskCheckResult] = Field(default_factory=list)
