"""
Domain package for callexport.

Exports the task, schema and result models shared by the parser, statement
builder, executor, worker and coordinator.
"""

from callexport.domain.models import (
    DelimiterConfig,
    ExportResult,
    ExportStatus,
    ExportTask,
    FieldSchema,
    FieldSpec,
    FieldType,
    FileSegment,
    JobResult,
    MalformedPolicy,
    Partition,
    PartitionFailure,
    RetryPolicy,
    parse_schema,
)

__all__ = [
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
