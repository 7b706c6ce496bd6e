"""
callexport - export delimited files into a relational database through a
stored procedure, one CALL per record.

The package provides the export execution engine:

- Record parsing of delimited lines into typed tuples
- CALL statement templates with typed parameter binding
- Transactional, bounded batches with transient-failure retries
- Line-aligned input partitioning and parallel export workers
- A coordinator aggregating row counts and per-partition failures
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from callexport.config import ExportConfig, Settings, get_settings
from callexport.coordinator import available_modes, run_export
from callexport.domain.models import (
    DelimiterConfig,
    ExportResult,
    ExportStatus,
    FieldSpec,
    FieldType,
    JobResult,
    MalformedPolicy,
    RetryPolicy,
)
from callexport.errors import (
    BatchExecutionError,
    BindingError,
    ExportError,
    FatalExecutionError,
    MalformedRecordError,
    PartitionError,
    SchemaError,
    TransientExecutionError,
)
from callexport.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "ExportConfig",
    "Settings",
    "get_settings",
    # Coordination
    "available_modes",
    "run_export",
    # Domain
    "DelimiterConfig",
    "ExportResult",
    "ExportStatus",
    "FieldSpec",
    "FieldType",
    "JobResult",
    "MalformedPolicy",
    "RetryPolicy",
    # Errors
    "BatchExecutionError",
    "BindingError",
    "ExportError",
    "FatalExecutionError",
    "MalformedRecordError",
    "PartitionError",
    "SchemaError",
    "TransientExecutionError",
    # Logging
    "configure_logging",
    "get_logger",
]
