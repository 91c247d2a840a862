"""Statement advisor interface.

The SQL review rule engine lives outside this package; the scheduler only
needs "run checks on a statement, get advice back". Anything implementing
:class:`Advisor` can be plugged into the ``database.statement.advise`` check.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Protocol, runtime_checkable

from schemaflow.models import AdviceStatus, EngineType, TaskCheckResult


class AdviceCode(IntEnum):
    OK = 0
    CONNECTION_FAILURE = 101


@runtime_checkable
class Advisor(Protocol):
    async def advise(self, statement: str, *, engine: EngineType) -> list[TaskCheckResult]:
        """Return advice for ``statement``; an empty list means nothing to report."""
        ...


class DefaultAdvisor:
    """Accepts every statement."""

    async def advise(self, statement: str, *, engine: EngineType) -> list[TaskCheckResult]:
        return [ok_advice()]


def ok_advice() -> TaskCheckResult:
    return TaskCheckResult(status=AdviceStatus.SUCCESS, code=AdviceCode.OK, title="OK", content="")
