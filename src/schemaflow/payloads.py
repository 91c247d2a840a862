"""Task payload schema — the wire contract between issue creation and executors.

Each task type has its own payload model. Payloads travel as JSON objects
discriminated by ``type`` and use stable camelCase field identifiers shared
with the front-end forms (``environmentId``, ``databaseName``, ``statement``,
``vcsPushEvent`` ...). They are validated once, at the deserialization
boundary, so executors never probe for missing keys.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from schemaflow.errors import PayloadError


class TaskType(str, Enum):
    """Discriminates which executor handles a task."""

    GENERAL = "general"
    DATABASE_CREATE = "database.create"
    DATABASE_SCHEMA_UPDATE = "database.schema.update"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class FileCommit(_WireModel):
    """The commit that added a migration file to the repository."""

    id: str = ""
    title: str = ""
    url: str = ""
    added: str
    author_name: str = Field("", alias="authorName")


class VCSPushEvent(_WireModel):
    """Push event descriptor captured when the issue was created from VCS."""

    repository_url: str = Field("", alias="repositoryUrl")
    ref: str = ""
    file_commit: FileCommit = Field(alias="fileCommit")


class GeneralPayload(_WireModel):
    type: Literal["general"] = "general"
    comment: str = ""


class DatabaseCreatePayload(_WireModel):
    type: Literal["database.create"] = "database.create"
    environment_id: int = Field(alias="environmentId")
    database_name: str = Field(alias="databaseName", pattern=r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")
    character_set: str = Field("", alias="characterSet")
    collation: str = ""


class SchemaUpdatePayload(_WireModel):
    type: Literal["database.schema.update"] = "database.schema.update"
    statement: str = ""
    vcs_push_event: VCSPushEvent | None = Field(None, alias="vcsPushEvent")


TaskPayload = Annotated[
    Union[GeneralPayload, DatabaseCreatePayload, SchemaUpdatePayload],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(TaskPayload)


def parse_payload(raw: str | bytes | dict[str, Any]) -> TaskPayload:
    """Validate a raw payload (JSON text or dict) into its typed model.

    Raises PayloadError on anything that does not match a known task type.
    """
    try:
        if isinstance(raw, (str, bytes)):
            return _payload_adapter.validate_json(raw)
        return _payload_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        raise PayloadError(f"invalid task payload: {exc}", cause=exc) from exc


def dump_payload(payload: TaskPayload) -> str:
    """Serialize a payload to its wire JSON form (camelCase identifiers)."""
    return payload.model_dump_json(by_alias=True)
