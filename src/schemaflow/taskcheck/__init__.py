"""Task checks — deduplicated check runs gating task execution."""

from schemaflow.taskcheck.advisor import AdviceCode, Advisor, DefaultAdvisor
from schemaflow.taskcheck.checks import (
    CheckOutcome,
    TaskCheckContext,
    TaskCheckExecutorRegistry,
    TaskCheckRunner,
)
from schemaflow.taskcheck.registry import TaskCheckRegistry

__all__ = [
    "AdviceCode",
    "Advisor",
    "CheckOutcome",
    "DefaultAdvisor",
    "TaskCheckContext",
    "TaskCheckExecutorRegistry",
    "TaskCheckRegistry",
    "TaskCheckRunner",
]
