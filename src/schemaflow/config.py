"""Configuration loading.

Reads ``schemaflow.yaml``; every key is optional. Environment variables
override the file for deployment:

    SCHEMAFLOW_DB_PATH              store.path
    SCHEMAFLOW_SCHEDULER_INTERVAL   scheduler.interval
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "schemaflow.yaml"

DEFAULT_CONFIG = """\
# schemaflow.yaml — schemaflow control plane configuration

store:
  path: schemaflow.db

scheduler:
  interval: 1.0        # seconds between ticks
  task_timeout: 600.0  # seconds before an attempt is treated as stalled

server:
  host: 127.0.0.1
  port: 8080
"""


class StoreConfig(BaseModel):
    path: str = "schemaflow.db"


class SchedulerConfig(BaseModel):
    interval: float = Field(1.0, gt=0)
    task_timeout: float = Field(600.0, gt=0)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class SchemaflowConfig(BaseModel):
    """Top-level configuration (matches schemaflow.yaml)."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def load_config(path: Path | None = None) -> SchemaflowConfig:
    """Load configuration from ``path``, falling back to defaults when absent.

    Raises:
        ValueError: If the file does not hold a mapping or fails validation.
    """
    raw: dict = {}
    if path is not None and path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
    elif path is not None:
        logger.info("Config file %s not found, using defaults", path)

    config = SchemaflowConfig(**raw)

    db_path = os.environ.get("SCHEMAFLOW_DB_PATH")
    if db_path:
        config.store.path = db_path

    interval = os.environ.get("SCHEMAFLOW_SCHEDULER_INTERVAL")
    if interval:
        try:
            value = float(interval)
        except ValueError as exc:
            raise ValueError(f"SCHEMAFLOW_SCHEDULER_INTERVAL must be a number, got {interval!r}") from exc
        if value <= 0:
            raise ValueError(f"SCHEMAFLOW_SCHEDULER_INTERVAL must be positive, got {interval!r}")
        config.scheduler.interval = value

    logger.info("Loaded config: store=%s interval=%ss", config.store.path, config.scheduler.interval)
    return config
