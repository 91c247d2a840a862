"""Schemaflow CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from schemaflow.config import CONFIG_FILENAME, DEFAULT_CONFIG, SchemaflowConfig, load_config
from schemaflow.errors import SchemaflowError
from schemaflow.models import SYSTEM_BOT_ID, EngineType, Instance
from schemaflow.store import Store


def _init_config(path: Path) -> None:
    if path.exists():
        print(f"Error: {path} already exists", file=sys.stderr)
        sys.exit(1)
    path.write_text(DEFAULT_CONFIG)
    print(f"Wrote default configuration to {path}")


async def _open_store(config: SchemaflowConfig) -> Store:
    store = await Store.open(config.store.path)
    await store.initialize()
    return store


async def _add_instance(config: SchemaflowConfig, args: argparse.Namespace) -> None:
    store = await _open_store(config)
    try:
        instance = await store.create_instance(
            Instance(
                environment_id=args.environment_id,
                name=args.name,
                engine=EngineType(args.engine),
                host=args.host,
                port=args.port,
                username=args.username,
                password=args.password,
            )
        )
    finally:
        await store.close()
    print(json.dumps(instance.model_dump(mode="json", exclude={"password"})))


async def _setup_migration(config: SchemaflowConfig, args: argparse.Namespace) -> None:
    from schemaflow.drivers import open_driver
    from schemaflow.targets import connection_config

    store = await _open_store(config)
    try:
        instance = await store.get_instance(args.instance_id)
    finally:
        await store.close()

    config_for_db = connection_config(instance)
    config_for_db.database = args.database
    async with await open_driver(instance.engine, config_for_db) as driver:
        if not await driver.needs_setup_migration():
            print(f"Migration schema already present on {instance.name}/{args.database}")
            return
        await driver.setup_migration_schema()
    print(f"Created migration schema on {instance.name}/{args.database}")


async def _cancel(config: SchemaflowConfig, args: argparse.Namespace) -> None:
    from schemaflow.issues import IssueService

    store = await _open_store(config)
    try:
        issue = await IssueService(store).cancel_issue(args.issue_id, updater_id=args.updater_id)
    finally:
        await store.close()
    print(f"Issue {issue.id} is {issue.status.value}")


async def _retry(config: SchemaflowConfig, args: argparse.Namespace) -> None:
    from schemaflow.issues import IssueService

    store = await _open_store(config)
    try:
        task = await IssueService(store).retry_task(args.task_id, updater_id=args.updater_id)
    finally:
        await store.close()
    print(f"Task {task.id} is {task.status.value}")


def main():
    parser = argparse.ArgumentParser(
        prog="schemaflow",
        description="Schemaflow — database change-management control plane",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.cwd() / CONFIG_FILENAME,
        help=f"Path to the configuration file (default: ./{CONFIG_FILENAME})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # schemaflow init
    subparsers.add_parser("init", help="Write a default configuration file")

    # schemaflow serve
    serve_parser = subparsers.add_parser("serve", help="Start the scheduler and the HTTP server")
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")

    # schemaflow add-instance
    instance_parser = subparsers.add_parser("add-instance", help="Register a database instance")
    instance_parser.add_argument("--name", required=True)
    instance_parser.add_argument(
        "--engine", required=True, choices=[e.value for e in EngineType]
    )
    instance_parser.add_argument(
        "--host", required=True, help="Server host; for SQLite, the directory holding the files"
    )
    instance_parser.add_argument("--port", default="")
    instance_parser.add_argument("--username", default="")
    instance_parser.add_argument("--password", default="")
    instance_parser.add_argument("--environment-id", type=int, required=True)

    # schemaflow setup-migration
    setup_parser = subparsers.add_parser(
        "setup-migration", help="Create the migration-tracking schema on a target database"
    )
    setup_parser.add_argument("--instance-id", type=int, required=True)
    setup_parser.add_argument("--database", required=True)

    # schemaflow cancel
    cancel_parser = subparsers.add_parser("cancel", help="Cancel an issue and its pipeline")
    cancel_parser.add_argument("--issue-id", type=int, required=True)
    cancel_parser.add_argument("--updater-id", type=int, default=SYSTEM_BOT_ID)

    # schemaflow retry
    retry_parser = subparsers.add_parser("retry", help="Retrigger a failed task")
    retry_parser.add_argument("--task-id", type=int, required=True)
    retry_parser.add_argument("--updater-id", type=int, default=SYSTEM_BOT_ID)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_config(args.config)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        from schemaflow.server import create_app

        app = create_app(config)
        uvicorn.run(
            app,
            host=args.host or config.server.host,
            port=args.port or config.server.port,
            log_level=args.log_level.lower(),
        )
        return

    commands = {
        "add-instance": _add_instance,
        "setup-migration": _setup_migration,
        "cancel": _cancel,
        "retry": _retry,
    }
    try:
        asyncio.run(commands[args.command](config, args))
    except SchemaflowError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
