"""Driver contract for target database instances.

A driver is opened per task attempt against one instance (and optionally one
database on it). Engines register their implementation with
:func:`register_driver`; :func:`open_driver` resolves it by engine type.
"""

from __future__ import annotations

import abc
import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable, TypeVar

from pydantic import BaseModel, Field

from schemaflow.errors import UnsupportedEngineError
from schemaflow.models import EngineType

logger = logging.getLogger("schemaflow.drivers")

MIGRATION_HISTORY_TABLE = "migration_history"


class ConnectionConfig(BaseModel):
    username: str = ""
    password: str = ""
    host: str
    port: str = ""
    database: str = ""


class MigrationHistory(BaseModel):
    """One applied migration, as recorded in the target database."""

    id: int | None = None
    version: str
    type: str
    description: str = ""
    statement: str = ""
    creator: str = ""
    execution_duration_ms: int = 0
    created_ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DriverTransaction(abc.ABC):
    """Operations that run inside one target-database transaction."""

    @abc.abstractmethod
    async def execute(self, statement: str) -> None: ...

    @abc.abstractmethod
    async def find_migration(self, version: str) -> MigrationHistory | None: ...

    @abc.abstractmethod
    async def record_migration(self, history: MigrationHistory) -> None: ...


class Driver(abc.ABC):
    """A live connection to a target instance."""

    engine: EngineType

    @classmethod
    @abc.abstractmethod
    async def open(cls, config: ConnectionConfig, *, logger: logging.Logger) -> Driver: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise DriverConnectionError if the target is unreachable."""

    @abc.abstractmethod
    async def execute(self, statement: str) -> None:
        """Execute an ad-hoc statement (possibly several) atomically."""

    @abc.abstractmethod
    async def create_database(self, name: str, *, character_set: str = "", collation: str = "") -> None: ...

    @abc.abstractmethod
    async def database_exists(self, name: str) -> bool: ...

    @abc.abstractmethod
    async def needs_setup_migration(self) -> bool:
        """True when the migration-tracking schema is missing."""

    @abc.abstractmethod
    async def setup_migration_schema(self) -> None:
        """Create the migration-tracking schema. Operator action only."""

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[DriverTransaction]: ...

    async def __aenter__(self) -> Driver:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


# ── Registry ─────────────────────────────────────────────────────────────────

_D = TypeVar("_D", bound=type[Driver])

_drivers: dict[EngineType, type[Driver]] = {}


def register_driver(engine: EngineType) -> Callable[[_D], _D]:
    """Class decorator registering a driver implementation for ``engine``."""

    def decorator(cls: _D) -> _D:
        cls.engine = engine
        _drivers[engine] = cls
        logger.debug("Registered driver for engine %s: %s", engine.value, cls.__name__)
        return cls

    return decorator


def supported_engines() -> list[EngineType]:
    return sorted(_drivers, key=lambda e: e.value)


async def open_driver(
    engine: EngineType,
    config: ConnectionConfig,
    *,
    logger: logging.Logger | None = None,
) -> Driver:
    """Open a driver for ``engine``. Raises UnsupportedEngineError if none is registered."""
    cls = _drivers.get(engine)
    if cls is None:
        raise UnsupportedEngineError(
            f"unsupported database engine: {engine.value}. "
            f"Available: {[e.value for e in supported_engines()]}",
            engine=engine.value,
        )
    return await cls.open(config, logger=logger or logging.getLogger("schemaflow.drivers"))
