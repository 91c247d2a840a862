"""Migration protocol — versioned, replay-safe application of schema changes.

Migration artifacts are named ``<version>__<kind>__<description>.sql``:

    0001__baseline__initial_schema.sql
    0002__migrate__add_orders_table.sql
    2024.05.01.1__migrate__backfill_status.sql

``kind`` is ``baseline`` or ``migrate`` (case-insensitive); underscores in the
description become spaces. Anything else is rejected.

The migration-history table in the target database is the de-duplication
key: a version that is already recorded is skipped, never re-applied.
"""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from pathlib import PurePosixPath

from pydantic import BaseModel

from schemaflow.drivers import Driver, MigrationHistory
from schemaflow.errors import (
    EmptyStatementError,
    MigrationInfoError,
    MigrationSchemaMissingError,
)

_VERSION_PATTERN = re.compile(r"^[0-9][0-9A-Za-z.\-]*$")


class MigrationKind(str, Enum):
    BASELINE = "BASELINE"
    MIGRATE = "MIGRATE"
    # Ad-hoc statement with no VCS artifact; not recorded in history
    SQL = "SQL"


class MigrationInfo(BaseModel):
    kind: MigrationKind
    version: str = ""
    description: str = ""
    author: str = ""


class MigrationOutcome(BaseModel):
    version: str
    applied: bool
    """False when the version was already recorded and the apply was skipped."""
    duration_ms: int = 0


def parse_migration_info(filename: str) -> MigrationInfo:
    """Derive MigrationInfo from an artifact path or file name.

    Raises MigrationInfoError with the expected format on any mismatch.
    """
    base = PurePosixPath(filename).name
    expected = "want <version>__<baseline|migrate>__<description>.sql"
    if not base.endswith(".sql"):
        raise MigrationInfoError(f"invalid migration file name {base!r}: {expected}", filename=filename)

    parts = base[: -len(".sql")].split("__")
    if len(parts) != 3 or not all(parts):
        raise MigrationInfoError(f"invalid migration file name {base!r}: {expected}", filename=filename)

    version, kind_raw, description = parts
    if not _VERSION_PATTERN.match(version):
        raise MigrationInfoError(
            f"invalid migration version {version!r} in {base!r}: "
            "must start with a digit and contain only letters, digits, '.' or '-'",
            filename=filename,
        )
    try:
        kind = MigrationKind(kind_raw.upper())
    except ValueError:
        kind = None
    if kind not in (MigrationKind.BASELINE, MigrationKind.MIGRATE):
        raise MigrationInfoError(
            f"invalid migration kind {kind_raw!r} in {base!r}: {expected}", filename=filename
        )

    return MigrationInfo(
        kind=kind,
        version=version,
        description=description.replace("_", " "),
    )


class MigrationProtocol:
    """Applies a migration to a target database exactly once."""

    def __init__(self, *, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)

    async def ensure_schema(self, driver: Driver, *, instance_name: str = "") -> None:
        """Fail if the target lacks the migration-tracking schema.

        Never creates it; provisioning is an explicit operator action.
        """
        if await driver.needs_setup_migration():
            raise MigrationSchemaMissingError(
                f"missing migration schema for instance: {instance_name}",
                instance=instance_name,
            )

    async def apply(
        self,
        driver: Driver,
        info: MigrationInfo,
        statement: str,
        *,
        instance_name: str = "",
    ) -> MigrationOutcome:
        """Apply ``statement`` as migration ``info.version`` and record it.

        The history lookup, the schema change and the history insert share
        one transaction, so a concurrent or repeated apply of the same version
        either sees the committed row and skips, or fails on the unique key.
        """
        if info.kind == MigrationKind.SQL:
            raise ValueError("ad-hoc statements are executed directly, not as migrations")
        statement = statement.strip()
        if not statement and info.kind != MigrationKind.BASELINE:
            raise EmptyStatementError(version=info.version)

        await self.ensure_schema(driver, instance_name=instance_name)

        started = time.monotonic()
        async with driver.transaction() as tx:
            existing = await tx.find_migration(info.version)
            if existing is not None:
                self._logger.info(
                    "Migration %s already applied at %s by %r, skipping",
                    info.version,
                    existing.created_ts.isoformat(),
                    existing.creator,
                )
                return MigrationOutcome(version=info.version, applied=False)

            if statement:
                await tx.execute(statement)
            duration_ms = int((time.monotonic() - started) * 1000)
            await tx.record_migration(
                MigrationHistory(
                    version=info.version,
                    type=info.kind.value,
                    description=info.description,
                    statement=statement,
                    creator=info.author,
                    execution_duration_ms=duration_ms,
                )
            )

        self._logger.info(
            "Applied %s migration %s (%s) in %dms",
            info.kind.value.lower(),
            info.version,
            info.description,
            duration_ms,
        )
        return MigrationOutcome(version=info.version, applied=True, duration_ms=duration_ms)
