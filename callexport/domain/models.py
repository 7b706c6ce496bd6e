"""
Domain models for the call-based export engine.

Task descriptions (field schema, delimiters, partitions, retry policy) are frozen
pydantic models: they are created once by the coordinator, validated, and
shipped read-only to workers. Results are plain dataclasses so they travel
cheaply back across process boundaries.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from callexport.errors import PartitionError, SchemaError

_SQL_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9 _]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?$")


class FieldType(str, Enum):
    INTEGER = "integer"
    DECIMAL = "decimal"
    FLOAT = "float"
    STRING = "string"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"


DEFAULT_SQL_TYPES: Dict[FieldType, str] = {
    FieldType.INTEGER: "bigint",
    FieldType.DECIMAL: "numeric",
    FieldType.FLOAT: "double precision",
    FieldType.STRING: "text",
    FieldType.DATE: "date",
    FieldType.TIMESTAMP: "timestamp",
    FieldType.BOOLEAN: "boolean",
}


class FieldSpec(BaseModel):
    """
    One procedure parameter: its name, semantic type and the SQL type it is cast to.
    """

    name: str = Field(..., min_length=1)
    type: FieldType
    sql_type: Optional[str] = Field(None, description="Declared SQL type used as the bind cast.")
    nullable: bool = True

    model_config = {"frozen": True}

    @field_validator("sql_type")
    @classmethod
    def _check_sql_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _SQL_TYPE_RE.match(value):
            raise ValueError(f"unsupported SQL type literal {value!r}")
        return value

    @property
    def cast(self) -> str:
        return self.sql_type or DEFAULT_SQL_TYPES[self.type]


FieldSchema = Tuple[FieldSpec, ...]


def parse_schema(text: str) -> FieldSchema:
    """
    Parse a compact schema string: ``name:type[:sql_type],...``.

    Example: ``id:integer:int,msg:string:varchar(24),d:date,f:float:real``
    """
    specs: List[FieldSpec] = []
    for chunk in text.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":", 2)]
        if len(parts) < 2:
            raise SchemaError(f"Schema entry {chunk!r} must look like name:type[:sql_type]")
        try:
            specs.append(
                FieldSpec(
                    name=parts[0],
                    type=FieldType(parts[1].lower()),
                    sql_type=parts[2] if len(parts) == 3 else None,
                )
            )
        except ValueError as exc:
            raise SchemaError(f"Invalid schema entry {chunk!r}", cause=exc) from exc
    if not specs:
        raise SchemaError("Schema string declares no fields")
    return tuple(specs)


class DelimiterConfig(BaseModel):
    """Field/line separators plus optional enclosing, escaping and null marker."""

    fields_terminated_by: str = ","
    lines_terminated_by: str = "\n"
    enclosed_by: Optional[str] = None
    escaped_by: Optional[str] = None
    null_string: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("fields_terminated_by")
    @classmethod
    def _single_char(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("field delimiter must be a single character")
        return value

    @field_validator("enclosed_by", "escaped_by")
    @classmethod
    def _optional_single_char(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) != 1:
            raise ValueError("enclosing/escape markers must be a single character")
        return value

    @model_validator(mode="after")
    def _distinct(self) -> "DelimiterConfig":
        if not self.lines_terminated_by:
            raise ValueError("line delimiter must not be empty")
        if self.fields_terminated_by in self.lines_terminated_by:
            raise ValueError("field delimiter must differ from the line delimiter")
        return self


class MalformedPolicy(str, Enum):
    SKIP = "skip"
    ABORT = "abort"


class RetryPolicy(BaseModel):
    """Bounded retry budget for transient batch failures."""

    max_retries: int = Field(3, ge=0)
    backoff_seconds: float = Field(0.5, ge=0)
    backoff_max_seconds: float = Field(10.0, ge=0)

    model_config = {"frozen": True}


class FileSegment(BaseModel):
    """Byte range ``[start, end)`` of one input file; both ends sit on line boundaries."""

    path: str
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    model_config = {"frozen": True}

    @property
    def length(self) -> int:
        return self.end - self.start


class Partition(BaseModel):
    partition_id: int
    segments: Tuple[FileSegment, ...]

    model_config = {"frozen": True}

    @property
    def size(self) -> int:
        return sum(segment.length for segment in self.segments)


class ExportTask(BaseModel):
    """
    One worker's unit of work. Immutable and owned by exactly one worker.
    """

    task_id: int
    partition: Partition
    procedure: str
    field_schema: FieldSchema
    delimiters: DelimiterConfig = DelimiterConfig()
    batch_size: int = Field(100, ge=1)
    malformed_policy: MalformedPolicy = MalformedPolicy.ABORT
    retry: RetryPolicy = RetryPolicy()
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"frozen": True}


class ExportStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class ExportResult:
    """
    Per-task outcome.

    ``rows`` only counts records from committed batches. ``error`` holds the
    first failure as plain data (error_type, message, offset).
    """

    task_id: int
    status: ExportStatus = ExportStatus.SUCCESS
    rows: int = 0
    batches: int = 0
    skipped: int = 0
    retries: int = 0
    cancelled: bool = False
    error: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return self.status is ExportStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class PartitionFailure:
    partition_id: int
    offset: Optional[int]
    error_type: str
    message: str
    cancelled: bool = False


@dataclass
class JobResult:
    """Aggregated outcome of an export job across all partitions."""

    status: ExportStatus
    rows: int
    tasks: List[ExportResult] = field(default_factory=list)
    failures: List[PartitionFailure] = field(default_factory=list)
    duration_seconds: float = 0.0
    peak_rss_bytes: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is ExportStatus.SUCCESS

    def raise_for_status(self) -> None:
        if self.failures:
            raise PartitionError([asdict(failure) for failure in self.failures])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "rows": self.rows,
            "duration_seconds": round(self.duration_seconds, 3),
            "peak_rss_bytes": self.peak_rss_bytes,
            "tasks": [task.to_dict() for task in self.tasks],
            "failures": [asdict(failure) for failure in self.failures],
        }


__all__ = [
    "DEFAULT_SQL_TYPES",
    "DelimiterConfig",
    "ExportResult",
    "ExportStatus",
    "ExportTask",
    "FieldSchema",
    "FieldSpec",
    "FieldType",
    "FileSegment",
    "JobResult",
    "MalformedPolicy",
    "Partition",
    "PartitionFailure",
    "RetryPolicy",
    "parse_schema",
]
