"""
Export coordinator: partition the input, run workers in parallel, aggregate.

Usage (example from CLI):
    from callexport.coordinator import run_export

    job = run_export(config)
    job.raise_for_status()

Workers run in a ``spawn`` process pool by default (``mode="process"``) or in
a thread pool (``mode="thread"``). Results are consumed as they complete;
with fail-fast enabled, the first FAILED result sets a shared event that the
remaining workers poll at batch boundaries.

When ``results_dir`` is given the job result is saved to:
- `<results_dir>/latest.json` (last run)
- `<results_dir>/run-<timestamp>.json` (timestamped archive)
"""

from __future__ import annotations

import json
import multiprocessing as mp
import threading
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from callexport.config import ExportConfig
from callexport.domain.models import (
    ExportResult,
    ExportStatus,
    ExportTask,
    FieldSchema,
    JobResult,
    Partition,
    PartitionFailure,
)
from callexport.export.partitioner import list_input_files, plan_partitions
from callexport.export.worker import CancelEvent, run_task
from callexport.infrastructure.db_factory import (
    ConnectionFactory,
    connection_factory,
    fetch_procedure_schema,
)
from callexport.utils.logging import configure_logging, get_logger
from callexport.utils.profiler import ProfileStats, profile_block

log = get_logger(__name__)

Runner = Callable[[Sequence[ExportTask], ConnectionFactory, bool], List[ExportResult]]


def resolve_field_schema(config: ExportConfig, connect: ConnectionFactory) -> FieldSchema:
    """Use the configured schema, or introspect the procedure's parameters."""
    if config.field_schema:
        return config.field_schema
    conn = connect()
    try:
        return fetch_procedure_schema(conn, config.procedure)
    finally:
        conn.close()


def build_tasks(
    config: ExportConfig, partitions: Sequence[Partition], field_schema: FieldSchema
) -> List[ExportTask]:
    return [
        ExportTask(
            task_id=partition.partition_id,
            partition=partition,
            procedure=config.procedure,
            field_schema=field_schema,
            delimiters=config.delimiters,
            batch_size=config.batch_size,
            malformed_policy=config.malformed_policy,
            retry=config.retry,
            log_level=config.log_level,
            log_json=config.log_json,
        )
        for partition in partitions
    ]


def _process_entry(
    task: ExportTask, connect: ConnectionFactory, cancel_event: CancelEvent
) -> ExportResult:
    # Spawned interpreters start without logging configuration.
    configure_logging(level=task.log_level, json_logs=task.log_json, force=False)
    return run_task(task, connect, cancel_event)


def _collect(future: Future, task: ExportTask) -> ExportResult:
    try:
        return future.result()
    except Exception as exc:  # noqa: BLE001 - a crashed worker is reported as a failed partition
        log.exception(f"[WORKER CRASHED] task {task.task_id}", extra={"task_id": task.task_id})
        return ExportResult(
            task_id=task.task_id,
            status=ExportStatus.FAILED,
            error={"error_type": type(exc).__name__, "message": str(exc), "offset": None},
        )


def _gather(
    pool: Executor,
    entry: Callable[..., ExportResult],
    tasks: Sequence[ExportTask],
    connect: ConnectionFactory,
    cancel_event,
    fail_fast: bool,
) -> List[ExportResult]:
    futures: Dict[Future, ExportTask] = {
        pool.submit(entry, task, connect, cancel_event): task for task in tasks
    }
    results: Dict[int, ExportResult] = {}
    for future in as_completed(futures):
        task = futures[future]
        result = _collect(future, task)
        results[task.task_id] = result
        if result.failed and fail_fast and not cancel_event.is_set():
            log.warning(
                f"[FAIL FAST] task {task.task_id} failed; cancelling remaining workers",
                extra={"task_id": task.task_id},
            )
            cancel_event.set()
    return [results[task.task_id] for task in tasks]


def _run_in_processes(
    tasks: Sequence[ExportTask], connect: ConnectionFactory, fail_fast: bool
) -> List[ExportResult]:
    # Local spawn context; the global start method is left untouched.
    ctx = mp.get_context("spawn")
    with ctx.Manager() as manager:
        cancel_event = manager.Event()
        with ProcessPoolExecutor(max_workers=len(tasks), mp_context=ctx) as pool:
            return _gather(pool, _process_entry, tasks, connect, cancel_event, fail_fast)


def _run_in_threads(
    tasks: Sequence[ExportTask], connect: ConnectionFactory, fail_fast: bool
) -> List[ExportResult]:
    cancel_event = threading.Event()
    with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="export-worker") as pool:
        return _gather(pool, run_task, tasks, connect, cancel_event, fail_fast)


def _runners() -> Dict[str, Runner]:
    """Registry of worker pool implementations."""
    return {
        "process": _run_in_processes,
        "thread": _run_in_threads,
    }


def available_modes() -> List[str]:
    return sorted(_runners().keys())


def aggregate(results: Sequence[ExportResult], stats: Optional[ProfileStats] = None) -> JobResult:
    """Sum committed rows and collect a failure entry for every failed partition."""
    failures = [
        PartitionFailure(
            partition_id=result.task_id,
            offset=(result.error or {}).get("offset"),
            error_type=(result.error or {}).get("error_type", "Unknown"),
            message=(result.error or {}).get("message", ""),
            cancelled=result.cancelled,
        )
        for result in results
        if result.failed
    ]
    return JobResult(
        status=ExportStatus.FAILED if failures else ExportStatus.SUCCESS,
        rows=sum(result.rows for result in results),
        tasks=list(results),
        failures=failures,
        duration_seconds=stats.duration_seconds if stats else 0.0,
        peak_rss_bytes=stats.peak_rss_bytes if stats else None,
    )


def _persist_results(payload: dict, results_dir: Path) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"run-{timestamp}.json"

    with latest_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    with archive_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)

    log.info("Results persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})


def run_export(
    config: ExportConfig,
    connect: Optional[ConnectionFactory] = None,
    mode: str = "process",
    results_dir: Path | str | None = None,
) -> JobResult:
    """
    Run a complete export job and return its aggregated result.

    Parameters
    ----------
    config : ExportConfig
        Job configuration.
    connect : ConnectionFactory | None
        Connection factory shared by the workers (each call opens a new
        connection). Defaults to one built from ``config.dsn``. Must be
        picklable in process mode.
    mode : str
        ``"process"`` or ``"thread"``.
    results_dir : Path | str | None
        Where to persist the JSON result; nothing is written when None.

    Returns
    -------
    JobResult
        Total rows, overall status and per-partition failures. Failures do not
        raise; call ``JobResult.raise_for_status()`` for that.
    """
    runners = _runners()
    if mode not in runners:
        raise ValueError(f"Unknown mode '{mode}'. Available: {', '.join(runners)}")
    connect = connect or connection_factory(config.dsn, config.statement_timeout_ms)

    log.info(
        f"[JOB START] CALL {config.procedure} from {config.export_dir}",
        extra={
            "procedure": config.procedure,
            "parallelism": config.parallelism,
            "batch_size": config.batch_size,
            "mode": mode,
        },
    )
    with profile_block(f"export:{config.procedure}") as stats:
        paths = list_input_files(config.export_dir)
        partitions = plan_partitions(
            paths, config.parallelism, config.delimiters.lines_terminated_by
        )
        results: List[ExportResult] = []
        if partitions:
            field_schema = resolve_field_schema(config, connect)
            tasks = build_tasks(config, partitions, field_schema)
            results = runners[mode](tasks, connect, config.fail_fast)
        else:
            log.warning("[JOB] No input records found", extra={"export_dir": str(config.export_dir)})

    job = aggregate(results, stats)

    if results_dir is not None:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "procedure": config.procedure,
            "export_dir": str(config.export_dir),
            "mode": mode,
            **job.to_dict(),
        }
        _persist_results(payload, Path(results_dir))

    log_fn = log.info if job.ok else log.error
    log_fn(
        f"[JOB {job.status.value}] {job.rows} row(s) exported by {len(results)} task(s)",
        extra={
            "rows": job.rows,
            "tasks": len(results),
            "failed_partitions": [failure.partition_id for failure in job.failures],
            "duration": round(job.duration_seconds, 3),
        },
    )
    return job


__all__ = [
    "aggregate",
    "available_modes",
    "build_tasks",
    "resolve_field_schema",
    "run_export",
]
