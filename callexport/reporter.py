from __future__ import annotations

from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from callexport.domain.models import ExportStatus, FieldSchema, JobResult


def _status_cell(status: ExportStatus, cancelled: bool = False) -> str:
    if status is ExportStatus.SUCCESS:
        return "[bold green]SUCCESS[/bold green]"
    return "[bold yellow]CANCELLED[/bold yellow]" if cancelled else "[bold red]FAILED[/bold red]"


def print_job_result(job: JobResult, procedure: str, console: Optional[Console] = None) -> None:
    """
    Render an export job as a rich table, one row per partition.

    Partitions are listed by id; row arrival order in the target is unrelated.
    """
    console = console or Console()

    if not job.tasks:
        console.print(f"[yellow]No input records for CALL {procedure}.[/yellow]")
        return

    title = (
        f"CALL {procedure} │ {_status_cell(job.status)} │ rows={job.rows:,} "
        f"│ {job.duration_seconds:.2f}s"
    )
    if job.peak_rss_bytes:
        title += f" │ peak RSS {job.peak_rss_bytes / (1024 * 1024):.1f} MB"

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Partition", style="cyan", justify="right", no_wrap=True)
    table.add_column("Status")
    table.add_column("Rows", justify="right", style="magenta")
    table.add_column("Batches", justify="right")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Retries", justify="right")
    table.add_column("Error", style="red", overflow="fold")

    for task in sorted(job.tasks, key=lambda t: t.task_id):
        error = ""
        if task.error:
            offset = task.error.get("offset")
            where = f"@{offset} " if offset is not None else ""
            error = f"{where}{task.error.get('error_type')}: {task.error.get('message')}"
        table.add_row(
            str(task.task_id),
            _status_cell(task.status, task.cancelled),
            f"{task.rows:,}",
            str(task.batches),
            str(task.skipped),
            str(task.retries),
            error,
        )

    console.print(table)


def print_field_schema(procedure: str, field_schema: FieldSchema, console: Optional[Console] = None) -> None:
    """Render a procedure's parameter list in declared order."""
    console = console or Console()
    table = Table(title=f"Parameters of {procedure}", box=box.ROUNDED)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Type", style="green")
    table.add_column("SQL type")
    for position, spec in enumerate(field_schema, start=1):
        table.add_row(str(position), spec.name, spec.type.value, spec.cast)
    console.print(table)


__all__ = ["print_field_schema", "print_job_result"]
