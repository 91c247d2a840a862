"""Target database drivers.

Importing this package registers the built-in engines.
"""

from schemaflow.drivers.base import (
    MIGRATION_HISTORY_TABLE,
    ConnectionConfig,
    Driver,
    DriverTransaction,
    MigrationHistory,
    open_driver,
    register_driver,
    supported_engines,
)
from schemaflow.drivers.sqlite import SqliteDriver

__all__ = [
    "MIGRATION_HISTORY_TABLE",
    "ConnectionConfig",
    "Driver",
    "DriverTransaction",
    "MigrationHistory",
    "SqliteDriver",
    "open_driver",
    "register_driver",
    "supported_engines",
]
