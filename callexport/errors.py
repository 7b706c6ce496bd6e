"""
Exception hierarchy for the call-based export engine.

    ExportError (base)
    ├── SchemaError
    ├── MalformedRecordError
    ├── BindingError
    ├── BatchExecutionError
    │   ├── TransientExecutionError
    │   └── FatalExecutionError
    └── PartitionError

Every exception carries a `context` dict; workers report failures across
process boundaries as plain data (see `to_dict`).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ExportError(Exception):
    """
    Base exception for all export-related errors.

    Attributes
    ----------
    message : str
        Human-readable error message.
    context : dict
        Structured details (offsets, field names, sqlstate...).
    cause : Exception | None
        The underlying exception, also chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        text = self.message
        if self.cause is not None:
            text += f" (caused by {type(self.cause).__name__}: {self.cause})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": str(self),
            "context": dict(self.context),
        }


class SchemaError(ExportError):
    """The field schema could not be resolved or is invalid."""


class MalformedRecordError(ExportError):
    """A delimited line could not be parsed into a record."""

    def __init__(self, offset: int, line: str, reason: str) -> None:
        self.offset = offset
        self.line = line
        self.reason = reason
        super().__init__(
            f"Malformed record at offset {offset}: {reason} (line={line!r})",
            context={"offset": offset, "reason": reason},
        )


class BindingError(ExportError):
    """A record value does not fit its declared parameter type."""

    def __init__(self, field: str, reason: str, offset: Optional[int] = None) -> None:
        self.field = field
        self.reason = reason
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(
            f"Cannot bind field '{field}'{where}: {reason}",
            context={"field": field, "reason": reason, "offset": offset},
        )


class BatchExecutionError(ExportError):
    """
    A batch failed to execute and was rolled back.

    ``start_offset`` is the record offset of the first statement in the batch.
    """

    def __init__(
        self,
        message: str,
        start_offset: int,
        size: int,
        attempts: int = 1,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.start_offset = start_offset
        self.size = size
        self.attempts = attempts
        sqlstate = getattr(cause, "sqlstate", None)
        super().__init__(
            message,
            context={
                "offset": start_offset,
                "size": size,
                "attempts": attempts,
                "sqlstate": sqlstate,
            },
            cause=cause,
        )


class TransientExecutionError(BatchExecutionError):
    """Connectivity, lock or timeout failure; the batch may be re-submitted."""


class FatalExecutionError(BatchExecutionError):
    """Non-retryable failure or exhausted retry budget; aborts the task."""


class PartitionError(ExportError):
    """
    Aggregate failure raised by the coordinator.

    ``failures`` lists one entry per failed partition with its id, offset and cause.
    """

    def __init__(self, failures: List[Dict[str, Any]]) -> None:
        self.failures = failures
        summary = "; ".join(
            f"partition {f.get('partition_id')} at offset {f.get('offset')}: {f.get('message')}"
            for f in failures
        )
        super().__init__(
            f"{len(failures)} partition(s) failed: {summary}",
            context={"failed_partitions": [f.get("partition_id") for f in failures]},
        )


__all__ = [
    "ExportError",
    "SchemaError",
    "MalformedRecordError",
    "BindingError",
    "BatchExecutionError",
    "TransientExecutionError",
    "FatalExecutionError",
    "PartitionError",
]
