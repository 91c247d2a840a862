"""Typed error hierarchy for schemaflow.

Every error carries a category and a ``retryable`` flag. Executors use the
flag to decide between a permanent failure and a retry on a later tick:

    SchemaflowError
    ├── ValidationError          (validation, never retried)
    │   ├── PayloadError         malformed task payload
    │   ├── EmptyStatementError  empty statement outside a baseline
    │   └── MigrationInfoError   unrecognized migration artifact name
    ├── TargetEnvironmentError  (environment, operator-actionable)
    │   ├── DriverConnectionError
    │   ├── UnsupportedEngineError
    │   └── MigrationSchemaMissingError
    ├── ExecutionError           statement or migration failed on the target
    ├── TransientError           (transient, retried)
    └── NotFoundError / ConflictError   store lookups and state conflicts
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Coarse classification used for logging and retry decisions."""

    VALIDATION = "validation"
    ENVIRONMENT = "environment"
    EXECUTION = "execution"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class SchemaflowError(Exception):
    """Base class for all schemaflow errors."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        cause: Exception | None = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.cause = cause
        self.context = context
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# ── Validation ───────────────────────────────────────────────────────────────


class ValidationError(SchemaflowError):
    default_category = ErrorCategory.VALIDATION


class PayloadError(ValidationError):
    """Task payload failed to deserialize into its typed model."""


class EmptyStatementError(ValidationError):
    def __init__(self, message: str = "empty sql statement", **context: Any):
        super().__init__(message, **context)


class MigrationInfoError(ValidationError):
    """Migration artifact name does not follow the naming convention."""


# ── Environment ──────────────────────────────────────────────────────────────


class TargetEnvironmentError(SchemaflowError):
    """Target environment is not usable; an operator has to act."""

    default_category = ErrorCategory.ENVIRONMENT


class DriverConnectionError(TargetEnvironmentError):
    pass


class UnsupportedEngineError(TargetEnvironmentError):
    pass


class MigrationSchemaMissingError(TargetEnvironmentError):
    pass


# ── Execution ────────────────────────────────────────────────────────────────


class ExecutionError(SchemaflowError):
    """The statement or migration itself failed on the target database."""

    default_category = ErrorCategory.EXECUTION


class TransientError(SchemaflowError):
    """Momentary condition; the same attempt may succeed on a later tick."""

    default_category = ErrorCategory.TRANSIENT
    default_retryable = True


# ── Store ────────────────────────────────────────────────────────────────────


class NotFoundError(SchemaflowError):
    default_category = ErrorCategory.NOT_FOUND


class ConflictError(SchemaflowError):
    """Requested transition does not match the current persisted state."""

    default_category = ErrorCategory.CONFLICT
