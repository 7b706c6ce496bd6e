from __future__ import annotations

import codecs
import json
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from callexport.config import ExportConfig, get_settings
from callexport.coordinator import available_modes, run_export
from callexport.domain.models import DelimiterConfig, MalformedPolicy, RetryPolicy, parse_schema
from callexport.errors import ExportError
from callexport.infrastructure.db_factory import build_dsn, connect, fetch_procedure_schema
from callexport.reporter import print_field_schema, print_job_result
from callexport.utils.logging import configure_logging

app = typer.Typer(help="Export delimited files into a database through a stored procedure.")


def unescape_delimiter(value: Optional[str]) -> Optional[str]:
    r"""
    Turn shell-friendly escapes (``\n``, ``\t``, ``\001``) into the actual characters.

    Values that are not a valid escape sequence, such as a lone ``\`` given
    as the escape character, are returned unchanged.
    """
    if value is None or "\\" not in value:
        return value
    try:
        return codecs.decode(value, "unicode_escape")
    except UnicodeDecodeError:
        return value


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"batch={settings.export_batch_size} parallelism={settings.export_parallelism} "
        f"retries={settings.export_max_retries} on_malformed={settings.export_malformed_policy.value} "
        f"fail_fast={settings.export_fail_fast}"
    )


@app.command()
def describe(procedure: str = typer.Argument(..., help="Procedure name, optionally schema-qualified.")) -> None:
    """
    Print the field schema introspected from a procedure's parameters.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    conn = connect(build_dsn(settings))
    try:
        field_schema = fetch_procedure_schema(conn, procedure)
    except ExportError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    finally:
        conn.close()
    print_field_schema(procedure, field_schema)


@app.command()
def export(
    call: str = typer.Option(..., "--call", help="Stored procedure to invoke once per record."),
    export_dir: Path = typer.Option(..., "--export-dir", help="File or directory of delimited input."),
    fields_terminated_by: str = typer.Option(",", "--fields-terminated-by", help="Field separator."),
    lines_terminated_by: str = typer.Option("\\n", "--lines-terminated-by", help="Line separator."),
    enclosed_by: Optional[str] = typer.Option(None, "--enclosed-by", help="Field enclosing character."),
    escaped_by: Optional[str] = typer.Option(None, "--escaped-by", help="Escape character."),
    null_string: Optional[str] = typer.Option(None, "--null-string", help="Field value meaning SQL NULL."),
    schema: Optional[str] = typer.Option(
        None,
        "--schema",
        help="Explicit field schema, e.g. 'id:integer:int,msg:string'. Introspected when omitted.",
    ),
    num_mappers: Optional[int] = typer.Option(None, "--num-mappers", "-m", help="Parallel workers."),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Statements per commit."),
    on_malformed: Optional[MalformedPolicy] = typer.Option(
        None, "--on-malformed", help="Skip or abort on malformed records."
    ),
    fail_fast: Optional[bool] = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Cancel other partitions after a failure."
    ),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries per batch on transient errors."),
    mode: str = typer.Option("process", "--mode", help=f"Worker pool: {', '.join(available_modes())}."),
    persist: bool = typer.Option(False, "--persist", help="Write JSON results under results/."),
    as_json: bool = typer.Option(False, "--json", help="Print the job result as JSON."),
) -> None:
    """
    Export delimited records by calling a stored procedure for each one.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    if mode not in available_modes():
        typer.echo(f"Unknown mode '{mode}'. Choose from: {', '.join(available_modes())}", err=True)
        raise typer.Exit(code=2)

    try:
        delimiters = DelimiterConfig(
            fields_terminated_by=unescape_delimiter(fields_terminated_by),
            lines_terminated_by=unescape_delimiter(lines_terminated_by),
            enclosed_by=unescape_delimiter(enclosed_by),
            escaped_by=unescape_delimiter(escaped_by),
            null_string=null_string,
        )
        retry = None
        if max_retries is not None:
            retry = RetryPolicy(
                max_retries=max_retries,
                backoff_seconds=settings.export_retry_backoff_seconds,
                backoff_max_seconds=settings.export_retry_backoff_max_seconds,
            )
        config = ExportConfig.from_settings(
            settings,
            procedure=call,
            export_dir=export_dir,
            field_schema=parse_schema(schema) if schema else None,
            delimiters=delimiters,
            parallelism=num_mappers,
            batch_size=batch_size,
            malformed_policy=on_malformed,
            fail_fast=fail_fast,
            retry=retry,
        )
    except (ValidationError, ExportError) as exc:
        typer.echo(f"Invalid export configuration: {exc}", err=True)
        raise typer.Exit(code=2)

    try:
        job = run_export(config, mode=mode, results_dir="results" if persist else None)
    except (ExportError, FileNotFoundError) as exc:
        typer.echo(f"Export could not start: {exc}", err=True)
        raise typer.Exit(code=2)

    if as_json:
        typer.echo(json.dumps(job.to_dict(), indent=2))
    else:
        print_job_result(job, call)
    if not job.ok:
        raise typer.Exit(code=1)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
