"""Tests for the schemaflow CLI subcommands."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from schemaflow.__main__ import main
from schemaflow.drivers import ConnectionConfig, open_driver
from schemaflow.models import EngineType


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "targets").mkdir()
    (tmp_path / "schemaflow.yaml").write_text(f"store:\n  path: {tmp_path / 'schemaflow.db'}\n")
    return tmp_path


def _run(monkeypatch, workspace: Path, *args: str) -> None:
    monkeypatch.setattr(sys, "argv", ["schemaflow", "--config", str(workspace / "schemaflow.yaml"), *args])
    main()


def _add_instance(monkeypatch, workspace: Path) -> None:
    _run(
        monkeypatch,
        workspace,
        "add-instance",
        "--name", "dev-sqlite",
        "--engine", "SQLITE",
        "--host", str(workspace / "targets"),
        "--password", "hunter2",
        "--environment-id", "1",
    )


class TestInit:
    def test_writes_default_config(self, tmp_path: Path, monkeypatch, capsys):
        path = tmp_path / "schemaflow.yaml"
        monkeypatch.setattr(sys, "argv", ["schemaflow", "--config", str(path), "init"])
        main()
        assert "store:" in path.read_text()

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1
        assert "already exists" in capsys.readouterr().err

    def test_no_command_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["schemaflow"])
        with pytest.raises(SystemExit):
            main()
        assert "usage" in capsys.readouterr().out


class TestInstanceCommands:
    def test_add_instance(self, workspace: Path, monkeypatch, capsys):
        _add_instance(monkeypatch, workspace)

        out = json.loads(capsys.readouterr().out)
        assert out["id"] == 1
        assert out["name"] == "dev-sqlite"
        assert out["engine"] == "SQLITE"
        assert "password" not in out

    def test_setup_migration(self, workspace: Path, monkeypatch, capsys):
        _add_instance(monkeypatch, workspace)

        async def create() -> None:
            config = ConnectionConfig(host=str(workspace / "targets"))
            async with await open_driver(EngineType.SQLITE, config) as driver:
                await driver.create_database("app")

        asyncio.run(create())
        capsys.readouterr()

        _run(monkeypatch, workspace, "setup-migration", "--instance-id", "1", "--database", "app")
        assert "Created migration schema on dev-sqlite/app" in capsys.readouterr().out

        _run(monkeypatch, workspace, "setup-migration", "--instance-id", "1", "--database", "app")
        assert "already present" in capsys.readouterr().out

    def test_setup_migration_on_missing_database(self, workspace: Path, monkeypatch, capsys):
        _add_instance(monkeypatch, workspace)

        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, workspace, "setup-migration", "--instance-id", "1", "--database", "ghost")

        assert exc.value.code == 1
        assert "failed to open database" in capsys.readouterr().err


class TestOperatorCommands:
    def test_cancel_unknown_issue(self, workspace: Path, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, workspace, "cancel", "--issue-id", "5")
        assert exc.value.code == 1
        assert "Error: issue not found: 5" in capsys.readouterr().err

    def test_retry_unknown_task(self, workspace: Path, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, workspace, "retry", "--task-id", "5")
        assert exc.value.code == 1
        assert "Error: task not found: 5" in capsys.readouterr().err

    def test_invalid_config(self, workspace: Path, monkeypatch, capsys):
        (workspace / "schemaflow.yaml").write_text("scheduler:\n  interval: -1\n")
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, workspace, "cancel", "--issue-id", "5")
        assert exc.value.code == 1
        assert "invalid configuration" in capsys.readouterr().err
