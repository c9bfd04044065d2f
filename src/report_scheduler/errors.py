"""
Structured error types for the report scheduler.

Every error raised or reported by the scheduler extends
:class:`SchedulerError`, which carries a category, explicit retry
semantics, a structured context and an optional chained cause. Errors
serialize with ``to_dict()`` so they can be logged as structured fields.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      SchedulerError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  ValidationError     NotFoundError      ExecutionError          │
        │  (VALIDATION)        (NOT_FOUND)        (EXECUTION, retryable)  │
        │                                                                 │
        │  RetryExhaustedError ConfigError                                │
        │  (EXECUTION)         (CONFIG)                                   │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    - ValidationError / NotFoundError: raised synchronously to the caller
      of create/update/delete. Nothing is mutated.
    - ExecutionError: never escapes the queue processor. It is captured
      into the execution's ``error`` field and fed to the retry controller.
    - RetryExhaustedError: reported (logged and counted), never raised.

Usage:
    from report_scheduler.errors import NotFoundError

    schedule = store.get(schedule_id)
    if schedule is None:
        raise NotFoundError("schedule", schedule_id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    EXECUTION = "EXECUTION"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Typed fields for the identifiers the scheduler deals with; anything
    else goes in ``metadata``. ``to_dict()`` drops unset fields.
    """

    schedule_id: str | None = None
    execution_id: str | None = None
    report_id: str | None = None
    tenant_id: str | None = None
    retry_attempt: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["schedule_id", "execution_id", "report_id", "tenant_id", "retry_attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SchedulerError(Exception):
    """
    Base exception for all scheduler errors.

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = SchedulerError("boom").with_context(schedule_id="s-1")
        >>> error.context.schedule_id
        's-1'
        >>> error.to_dict()["category"]
        'INTERNAL'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SchedulerError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NotFoundError("schedule", sid).with_context(tenant_id="t-1")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ValidationError(SchedulerError):
    """
    Malformed schedule definition.

    Carries every violated rule in ``errors``, not just the first one.
    Never retryable.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, errors: list[str], message: str | None = None, **kwargs: Any):
        self.errors = list(errors)
        if message is None:
            message = "Invalid schedule definition: " + "; ".join(self.errors)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["errors"] = list(self.errors)
        return result


class NotFoundError(SchedulerError):
    """Operation referenced an unknown schedule or execution."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False

    def __init__(self, resource: str, resource_id: str, **kwargs: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource.capitalize()} {resource_id} not found", **kwargs)


class ExecutionError(SchedulerError):
    """
    The report engine failed to produce a report.

    ``code`` comes from the engine exception's ``code`` attribute when it
    has one, else ``"UNKNOWN"``.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(self, message: str, *, code: str = "UNKNOWN", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.code = code

    @classmethod
    def from_exception(cls, exc: BaseException) -> ExecutionError:
        """Wrap an arbitrary engine exception."""
        if isinstance(exc, ExecutionError):
            return exc
        code = getattr(exc, "code", None) or "UNKNOWN"
        message = str(exc) or exc.__class__.__name__
        return cls(message, code=str(code), cause=exc if isinstance(exc, Exception) else None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["code"] = self.code
        return result


class RetryExhaustedError(SchedulerError):
    """
    Retries exceeded ``max_retries``.

    Reported, not raised: the scheduler logs it and flags the execution.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = False

    def __init__(self, execution_id: str, retry_attempt: int, max_retries: int, **kwargs: Any):
        self.retry_attempt = retry_attempt
        self.max_retries = max_retries
        super().__init__(
            f"Execution {execution_id} exhausted {max_retries} retries",
            **kwargs,
        )
        self.context.execution_id = execution_id
        self.context.retry_attempt = retry_attempt


class ConfigError(SchedulerError):
    """Invalid scheduler configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, SchedulerError):
        return error.category
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SchedulerError",
    "ValidationError",
    "NotFoundError",
    "ExecutionError",
    "RetryExhaustedError",
    "ConfigError",
    "categorize_error",
]
