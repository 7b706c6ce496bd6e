"""
Export worker: drives one partition through parser -> builder -> executor.

``run_task`` is a module-level function so it can be shipped to spawned
worker processes. It never raises for export failures; every outcome,
including cancellation, comes back as an ``ExportResult``.

Record offsets are 0-based ordinals of lines within the task's partition.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from callexport.domain.models import ExportResult, ExportStatus, ExportTask, MalformedPolicy
from callexport.errors import BindingError, FatalExecutionError, MalformedRecordError
from callexport.export.executor import BatchExecutor
from callexport.export.parser import RecordParser
from callexport.export.partitioner import iter_lines
from callexport.export.statement import CallTemplate, StatementBuilder
from callexport.infrastructure.db_factory import ConnectionFactory
from callexport.utils.logging import get_logger

log = get_logger(__name__)

ENCODING = "utf-8"


class CancelEvent(Protocol):
    def is_set(self) -> bool: ...


class _Cancelled(Exception):
    def __init__(self, offset: int, dropped: int) -> None:
        super().__init__(f"cancelled at offset {offset}; {dropped} uncommitted statement(s) dropped")
        self.offset = offset
        self.dropped = dropped


def _error_info(exc: BaseException, offset: Optional[int]) -> Dict[str, Any]:
    return {"error_type": type(exc).__name__, "message": str(exc), "offset": offset}


def _decode(raw: bytes, offset: int) -> str:
    try:
        return raw.decode(ENCODING)
    except UnicodeDecodeError as exc:
        raise MalformedRecordError(offset, repr(raw), f"invalid {ENCODING}: {exc.reason}") from exc


def _drive(
    task: ExportTask,
    parser: RecordParser,
    template: CallTemplate,
    executor: BatchExecutor,
    result: ExportResult,
    cancel_event: Optional[CancelEvent],
) -> None:
    offset = -1
    for offset, raw in enumerate(iter_lines(task.partition, task.delimiters.lines_terminated_by, ENCODING)):
        # Checked once per batch; the event may be a manager proxy.
        if cancel_event is not None and executor.pending == 0 and cancel_event.is_set():
            raise _Cancelled(offset, executor.discard())
        try:
            params = template.bind(parser.parse(_decode(raw, offset), offset), offset)
        except (MalformedRecordError, BindingError) as exc:
            if task.malformed_policy is MalformedPolicy.ABORT:
                dropped = executor.discard()
                log.error(
                    f"[RECORD REJECTED] task {task.task_id} aborting at offset {offset}",
                    extra={"task_id": task.task_id, "offset": offset, "dropped": dropped},
                )
                raise
            result.skipped += 1
            log.warning(
                f"[RECORD SKIPPED] {exc}",
                extra={"task_id": task.task_id, "offset": offset, "skipped": result.skipped},
            )
            continue
        executor.add(offset, params)

    if cancel_event is not None and cancel_event.is_set():
        raise _Cancelled(offset + 1, executor.discard())
    executor.flush()


def run_task(
    task: ExportTask,
    connect: ConnectionFactory,
    cancel_event: Optional[CancelEvent] = None,
) -> ExportResult:
    """
    Export one partition and report its outcome.

    Parameters
    ----------
    task : ExportTask
        The partition, procedure, schema and policies for this worker.
    connect : ConnectionFactory
        Opens the worker's private connection.
    cancel_event : Event-like, optional
        Set by the coordinator under fail-fast; the worker stops at the next
        batch boundary and reports FAILED with ``cancelled=True``.
    """
    result = ExportResult(task_id=task.task_id)
    log.info(
        f"[TASK START] task {task.task_id} ({task.partition.size} bytes)",
        extra={"task_id": task.task_id, "procedure": task.procedure, "batch_size": task.batch_size},
    )

    try:
        template = StatementBuilder(task.procedure, task.field_schema).build()
        parser = RecordParser(task.field_schema, task.delimiters)
        with BatchExecutor(
            connect, template, task.batch_size, task.retry, task_id=task.task_id
        ) as executor:
            try:
                _drive(task, parser, template, executor, result, cancel_event)
            finally:
                result.rows = executor.committed_rows
                result.batches = executor.batches_committed
                result.retries = executor.retries
    except _Cancelled as exc:
        result.status = ExportStatus.FAILED
        result.cancelled = True
        result.error = {"error_type": "Cancelled", "message": str(exc), "offset": exc.offset}
    except FatalExecutionError as exc:
        result.status = ExportStatus.FAILED
        result.error = _error_info(exc, exc.start_offset)
        result.error["attempts"] = exc.attempts
    except (MalformedRecordError, BindingError) as exc:
        result.status = ExportStatus.FAILED
        result.error = _error_info(exc, exc.offset)
    except Exception as exc:  # noqa: BLE001 - reported in the result, not swallowed
        log.exception(f"[TASK ERROR] task {task.task_id}", extra={"task_id": task.task_id})
        result.status = ExportStatus.FAILED
        result.error = _error_info(exc, None)

    if result.failed:
        log.error(
            f"[TASK FAILED] task {task.task_id}: {result.error['message']}",
            extra={"task_id": task.task_id, "rows": result.rows, "cancelled": result.cancelled},
        )
    else:
        log.info(
            f"[TASK SUCCESS] task {task.task_id}",
            extra={
                "task_id": task.task_id,
                "rows": result.rows,
                "batches": result.batches,
                "skipped": result.skipped,
                "retries": result.retries,
            },
        )
    return result


__all__ = ["CancelEvent", "run_task"]
