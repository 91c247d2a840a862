"""Tests for the task payload wire contract."""

import json

import pytest

from schemaflow.errors import PayloadError
from schemaflow.models import Task, TaskStatus
from schemaflow.payloads import (
    DatabaseCreatePayload,
    GeneralPayload,
    SchemaUpdatePayload,
    TaskType,
    dump_payload,
    parse_payload,
)


class TestParsePayload:
    def test_database_create_from_camel_case(self):
        payload = parse_payload(
            '{"type": "database.create", "environmentId": 3, "databaseName": "orders"}'
        )
        assert isinstance(payload, DatabaseCreatePayload)
        assert payload.environment_id == 3
        assert payload.database_name == "orders"
        assert payload.character_set == ""

    def test_schema_update_with_push_event(self):
        payload = parse_payload(
            {
                "type": "database.schema.update",
                "statement": "CREATE TABLE t (id INTEGER);",
                "vcsPushEvent": {
                    "repositoryUrl": "https://git.example.com/acme/schema",
                    "ref": "refs/heads/main",
                    "fileCommit": {
                        "id": "abc123",
                        "added": "migrations/0001__migrate__create_t.sql",
                        "authorName": "alice",
                    },
                },
            }
        )
        assert isinstance(payload, SchemaUpdatePayload)
        assert payload.vcs_push_event is not None
        assert payload.vcs_push_event.file_commit.added.endswith("create_t.sql")
        assert payload.vcs_push_event.file_commit.author_name == "alice"

    def test_schema_update_without_push_event(self):
        payload = parse_payload({"type": "database.schema.update", "statement": "SELECT 1"})
        assert payload.vcs_push_event is None

    def test_general(self):
        payload = parse_payload({"type": "general", "comment": "sign-off"})
        assert isinstance(payload, GeneralPayload)
        assert payload.comment == "sign-off"

    def test_unknown_type_rejected(self):
        with pytest.raises(PayloadError):
            parse_payload({"type": "database.drop", "databaseName": "orders"})

    def test_missing_required_field_rejected(self):
        with pytest.raises(PayloadError):
            parse_payload({"type": "database.create", "environmentId": 1})

    def test_empty_database_name_rejected(self):
        with pytest.raises(PayloadError):
            parse_payload({"type": "database.create", "environmentId": 1, "databaseName": ""})

    @pytest.mark.parametrize("name", ["../escaped", "a/b", ".hidden", "-orders", "orders.db"])
    def test_path_like_database_name_rejected(self, name: str):
        with pytest.raises(PayloadError):
            parse_payload({"type": "database.create", "environmentId": 1, "databaseName": name})

    def test_unknown_field_rejected(self):
        with pytest.raises(PayloadError):
            parse_payload({"type": "general", "comment": "", "extra": True})

    def test_malformed_json_rejected(self):
        with pytest.raises(PayloadError):
            parse_payload("{not json")


class TestDumpPayload:
    def test_uses_wire_identifiers(self):
        raw = dump_payload(
            DatabaseCreatePayload(environment_id=2, database_name="orders", character_set="utf8mb4")
        )
        data = json.loads(raw)
        assert data == {
            "type": "database.create",
            "environmentId": 2,
            "databaseName": "orders",
            "characterSet": "utf8mb4",
            "collation": "",
        }

    def test_parses_back(self):
        original = SchemaUpdatePayload(statement="ALTER TABLE t ADD COLUMN c TEXT")
        assert parse_payload(dump_payload(original)) == original


class TestTaskPayloadType:
    def test_payload_must_match_task_type(self):
        with pytest.raises(ValueError, match="payload type"):
            Task(
                creator_id=1,
                pipeline_id=1,
                stage_id=1,
                name="mismatch",
                type=TaskType.DATABASE_CREATE,
                payload=GeneralPayload(),
            )

    def test_matching_payload_accepted(self):
        task = Task(
            creator_id=1,
            pipeline_id=1,
            stage_id=1,
            name="ok",
            type=TaskType.GENERAL,
            payload={"type": "general"},
        )
        assert task.status == TaskStatus.PENDING
