"""
Export engine package.

Re-exports the parser, statement builder, batch executor, partitioner and
worker entry point so callers can import from `callexport.export` directly.
"""

from callexport.export.executor import Batch, BatchExecutor, BatchState, is_transient
from callexport.export.parser import Record, RecordParser
from callexport.export.partitioner import iter_lines, list_input_files, plan_partitions
from callexport.export.statement import CallTemplate, StatementBuilder
from callexport.export.worker import run_task

__all__ = [
    # Parsing
    "Record",
    "RecordParser",
    # Statements
    "CallTemplate",
    "StatementBuilder",
    # Execution
    "Batch",
    "BatchExecutor",
    "BatchState",
    "is_transient",
    # Partitioning
    "iter_lines",
    "list_input_files",
    "plan_partitions",
    # Worker
    "run_task",
]
