"""Tests for the task check registry, check executors and the check runner."""

from __future__ import annotations

import asyncio

import pytest

from conftest import general_task, schema_update_task
from schemaflow.errors import ValidationError
from schemaflow.models import (
    AdviceStatus,
    EngineType,
    TaskCheckResult,
    TaskCheckRunFind,
    TaskCheckRunStatus,
    TaskCheckType,
    TaskFind,
)
from schemaflow.store import Store
from schemaflow.taskcheck import (
    AdviceCode,
    DefaultAdvisor,
    TaskCheckContext,
    TaskCheckExecutorRegistry,
    TaskCheckRegistry,
    TaskCheckRunner,
)


async def _first_task_id(store: Store, make_issue, *tasks) -> int:
    issue = await make_issue(list(tasks) or [general_task("t")])
    found = await store.find_tasks(TaskFind(pipeline_id=issue.pipeline_id))
    return found[0].id


class TestEnsureCheckRun:
    async def test_creates_running_run(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)

        run = await registry.ensure_check_run(task_id, "lint")

        assert run.id is not None
        assert run.status == TaskCheckRunStatus.RUNNING
        assert run.type == "lint"

    async def test_returns_in_flight_run(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)

        first = await registry.ensure_check_run(task_id, "lint")
        second = await registry.ensure_check_run(task_id, "lint")

        assert second.id == first.id
        assert len(await registry.list_check_runs(TaskCheckRunFind(task_id=task_id))) == 1

    async def test_concurrent_calls_create_one_run(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)

        runs = await asyncio.gather(
            registry.ensure_check_run(task_id, "lint", skip_if_done=False),
            registry.ensure_check_run(task_id, "lint", skip_if_done=False),
        )

        assert runs[0].id == runs[1].id
        all_runs = await registry.list_check_runs(TaskCheckRunFind(task_id=task_id, type="lint"))
        assert len(all_runs) == 1

    async def test_types_are_independent(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)

        lint = await registry.ensure_check_run(task_id, "lint")
        connect = await registry.ensure_check_run(task_id, "connect")

        assert lint.id != connect.id

    async def test_skip_if_done_is_idempotent(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")
        await registry.complete_check_run(run.id, TaskCheckRunStatus.DONE)

        first = await registry.ensure_check_run(task_id, "lint", skip_if_done=True)
        second = await registry.ensure_check_run(task_id, "lint", skip_if_done=True)

        assert first.id == second.id == run.id
        assert first.status == TaskCheckRunStatus.DONE

    async def test_without_skip_a_done_run_is_rechecked(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")
        await registry.complete_check_run(run.id, TaskCheckRunStatus.DONE)

        fresh = await registry.ensure_check_run(task_id, "lint", skip_if_done=False)

        assert fresh.id != run.id
        assert fresh.status == TaskCheckRunStatus.RUNNING

    async def test_failed_run_is_not_reused(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")
        await registry.complete_check_run(run.id, TaskCheckRunStatus.FAILED, comment="boom")

        fresh = await registry.ensure_check_run(task_id, "lint", skip_if_done=True)

        assert fresh.id != run.id

    async def test_lost_race_returns_winner(self, store: Store, make_issue, monkeypatch):
        """The unique index catches a RUNNING row the read did not see."""
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        winner = await registry.ensure_check_run(task_id, "lint")

        real_find = store.find_task_check_runs
        calls = 0

        async def stale_find(find):
            nonlocal calls
            calls += 1
            if calls == 1:
                return []
            return await real_find(find)

        monkeypatch.setattr(store, "find_task_check_runs", stale_find)

        run = await registry.ensure_check_run(task_id, "lint")

        assert run.id == winner.id
        monkeypatch.undo()
        assert len(await store.find_task_check_runs(TaskCheckRunFind(task_id=task_id))) == 1


class TestCompleteCheckRun:
    async def test_records_advice(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")
        advice = [TaskCheckResult(status=AdviceStatus.WARN, code=3, title="Nullable column", content="c")]

        done = await registry.complete_check_run(run.id, TaskCheckRunStatus.DONE, comment="ok", result=advice)

        assert done.status == TaskCheckRunStatus.DONE
        assert done.comment == "ok"
        assert done.result == advice
        assert done.blocking is False

    async def test_error_advice_is_blocking(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")

        done = await registry.complete_check_run(
            run.id,
            TaskCheckRunStatus.DONE,
            result=[TaskCheckResult(status=AdviceStatus.ERROR, code=9, title="Drop table")],
        )

        assert done.blocking is True

    async def test_cannot_complete_as_running(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        run = await registry.ensure_check_run(task_id, "lint")

        with pytest.raises(ValidationError):
            await registry.complete_check_run(run.id, TaskCheckRunStatus.RUNNING)

    async def test_latest_check_runs(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        old = await registry.ensure_check_run(task_id, "lint")
        await registry.complete_check_run(old.id, TaskCheckRunStatus.FAILED)
        new = await registry.ensure_check_run(task_id, "lint")

        latest = await registry.latest_check_runs(task_id)

        assert latest["lint"].id == new.id


# ── Check executors ───────────────────────────────────────────────────────────


class TestCheckExecutors:
    def test_builtin_checks_registered(self):
        checks = TaskCheckExecutorRegistry()
        assert checks.list_checks() == ["database.connect", "database.statement.advise"]

    async def test_unknown_check_fails(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        ctx = TaskCheckContext(task=await store.get_task(task_id), store=store)

        outcome = await TaskCheckExecutorRegistry().evaluate("lint", ctx)

        assert outcome.status == TaskCheckRunStatus.FAILED
        assert "Unknown task check" in outcome.comment

    async def test_custom_check(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        checks = TaskCheckExecutorRegistry()

        @checks.register("lint")
        async def lint(ctx: TaskCheckContext) -> list[TaskCheckResult]:
            return [TaskCheckResult(status=AdviceStatus.WARN, title=ctx.task.name)]

        outcome = await checks.evaluate("lint", TaskCheckContext(task=await store.get_task(task_id), store=store))

        assert outcome.status == TaskCheckRunStatus.DONE
        assert outcome.result[0].title == "t"

    async def test_check_exception_becomes_failed(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        checks = TaskCheckExecutorRegistry()

        @checks.register("boom")
        async def boom(ctx: TaskCheckContext) -> list[TaskCheckResult]:
            raise RuntimeError("kaput")

        outcome = await checks.evaluate("boom", TaskCheckContext(task=await store.get_task(task_id), store=store))

        assert outcome.status == TaskCheckRunStatus.FAILED
        assert "kaput" in outcome.comment

    async def test_connect_check_succeeds(self, store: Store, make_issue, database):
        task_id = await _first_task_id(store, make_issue, schema_update_task("m", database, statement="SELECT 1"))
        ctx = TaskCheckContext(task=await store.get_task(task_id), store=store)

        outcome = await TaskCheckExecutorRegistry().evaluate(TaskCheckType.DATABASE_CONNECT.value, ctx)

        assert outcome.status == TaskCheckRunStatus.DONE
        assert outcome.result[0].status == AdviceStatus.SUCCESS
        assert "dev-sqlite" in outcome.result[0].content

    async def test_connect_check_reports_error_advice(self, store: Store, make_issue, database, target_dir):
        task_id = await _first_task_id(store, make_issue, schema_update_task("m", database, statement="SELECT 1"))
        (target_dir / "app.db").unlink()
        ctx = TaskCheckContext(task=await store.get_task(task_id), store=store)

        outcome = await TaskCheckExecutorRegistry().evaluate(TaskCheckType.DATABASE_CONNECT.value, ctx)

        assert outcome.status == TaskCheckRunStatus.DONE
        assert outcome.result[0].status == AdviceStatus.ERROR
        assert outcome.result[0].code == AdviceCode.CONNECTION_FAILURE

    async def test_advise_check_delegates_to_advisor(self, store: Store, make_issue, database):
        task_id = await _first_task_id(
            store, make_issue, schema_update_task("m", database, statement="  DROP TABLE t;  ")
        )
        seen = {}

        class RecordingAdvisor:
            async def advise(self, statement: str, *, engine: EngineType) -> list[TaskCheckResult]:
                seen["statement"] = statement
                seen["engine"] = engine
                return [TaskCheckResult(status=AdviceStatus.ERROR, code=42, title="Drop table")]

        ctx = TaskCheckContext(task=await store.get_task(task_id), store=store, advisor=RecordingAdvisor())
        outcome = await TaskCheckExecutorRegistry().evaluate(TaskCheckType.STATEMENT_ADVISE.value, ctx)

        assert seen == {"statement": "DROP TABLE t;", "engine": EngineType.SQLITE}
        assert outcome.result[0].code == 42

    async def test_advise_check_rejects_other_task_types(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        ctx = TaskCheckContext(task=await store.get_task(task_id), store=store)

        outcome = await TaskCheckExecutorRegistry().evaluate(TaskCheckType.STATEMENT_ADVISE.value, ctx)

        assert outcome.status == TaskCheckRunStatus.FAILED

    async def test_default_advisor_accepts_empty_statement(self):
        advice = await DefaultAdvisor().advise("", engine=EngineType.SQLITE)
        assert advice == [TaskCheckResult(status=AdviceStatus.SUCCESS, code=0, title="OK", content="")]


class TestTaskCheckRunner:
    async def test_dispatch_completes_running_runs(self, store: Store, make_issue, database):
        task_id = await _first_task_id(store, make_issue, schema_update_task("m", database, statement="SELECT 1"))
        registry = TaskCheckRegistry(store)
        runner = TaskCheckRunner(store, registry)
        await registry.ensure_check_run(task_id, TaskCheckType.DATABASE_CONNECT.value)
        await registry.ensure_check_run(task_id, TaskCheckType.STATEMENT_ADVISE.value)

        started = await runner.dispatch()
        await runner.wait()

        assert started == 2
        runs = await registry.list_check_runs(TaskCheckRunFind(task_id=task_id))
        assert {r.status for r in runs} == {TaskCheckRunStatus.DONE}
        assert runner.inflight == 0

    async def test_dispatch_skips_finished_runs(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        runner = TaskCheckRunner(store, registry)
        run = await registry.ensure_check_run(task_id, "lint")
        await registry.complete_check_run(run.id, TaskCheckRunStatus.DONE)

        assert await runner.dispatch() == 0

    async def test_run_check_skips_completed_run(self, store: Store, make_issue):
        task_id = await _first_task_id(store, make_issue)
        registry = TaskCheckRegistry(store)
        checks = TaskCheckExecutorRegistry()
        calls = []

        @checks.register("lint")
        async def lint(ctx: TaskCheckContext) -> list[TaskCheckResult]:
            calls.append(ctx.task.id)
            return [TaskCheckResult(status=AdviceStatus.ERROR, code=9, title="Drop table")]

        runner = TaskCheckRunner(store, registry, checks)
        listed = await registry.ensure_check_run(task_id, "lint")
        advice = [TaskCheckResult(status=AdviceStatus.SUCCESS, title="OK")]
        await registry.complete_check_run(listed.id, TaskCheckRunStatus.DONE, comment="first", result=advice)

        # ``listed`` still says RUNNING
        returned = await runner.run_check(listed)

        assert calls == []
        assert returned.status == TaskCheckRunStatus.DONE
        latest = await registry.latest_check_runs(task_id)
        assert latest["lint"].comment == "first"
        assert latest["lint"].result == advice
