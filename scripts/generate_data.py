"""
Fixture generation for callexport.

Writes deterministic pseudo-random delimited part files and creates the demo
target table plus the stored procedure the export calls. The procedure
inserts each row and fills the computed ``vc`` column with ``msg || '_2'``.
"""

from __future__ import annotations

import random
import sys
from datetime import date, timedelta
from pathlib import Path

import psycopg
import typer
from psycopg import sql

from callexport.infrastructure.db_factory import build_dsn

app = typer.Typer(help="Generate delimited export input and the demo table/procedure.")

DEMO_TABLE = "call_export_base_table"
DEMO_PROCEDURE = "call_export_proc"


def _build_dsn(dsn_override: str | None) -> str:
    if dsn_override:
        return dsn_override
    return build_dsn()


def _format_line(row_id: int, rng: random.Random, field_sep: str) -> str:
    day = date(2000, 1, 1) + timedelta(days=rng.randint(0, 9000))
    amount = round(rng.uniform(1, 10_000), 2)
    return field_sep.join([str(row_id), f"textfield{row_id}", day.isoformat(), str(amount)])


def _write_part_files(
    out_dir: Path,
    rows: int,
    parts: int = 1,
    seed: int = 42,
    field_sep: str = ",",
    line_sep: str = "\n",
) -> list[Path]:
    """Split ``rows`` lines contiguously across ``parts`` files named part-00000, part-00001, ..."""
    rng = random.Random(seed)
    out_dir.mkdir(parents=True, exist_ok=True)
    per_part = -(-rows // parts) if parts else rows
    paths: list[Path] = []
    row_id = 0
    for part in range(parts):
        path = out_dir / f"part-{part:05d}"
        with path.open("w", encoding="utf-8", newline="") as f:
            for _ in range(min(per_part, rows - row_id)):
                f.write(_format_line(row_id, rng, field_sep))
                f.write(line_sep)
                row_id += 1
        paths.append(path)
    return paths


def _create_demo_objects(dsn: str, table: str = DEMO_TABLE, procedure: str = DEMO_PROCEDURE) -> None:
    """(Re)create the target table and the procedure that inserts into it."""
    statements = [
        sql.SQL("DROP PROCEDURE IF EXISTS {}").format(sql.Identifier(procedure)),
        sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(table)),
        sql.SQL(
            "CREATE TABLE {} ("
            "id INT NOT NULL PRIMARY KEY, "
            "msg VARCHAR(24) NOT NULL, "
            "d DATE, "
            "f FLOAT, "
            "vc VARCHAR(32))"
        ).format(sql.Identifier(table)),
        sql.SQL(
            "CREATE PROCEDURE {proc} (IN id INT, IN msg VARCHAR(24), IN d DATE, IN f FLOAT) "
            "LANGUAGE sql AS $$ INSERT INTO {table} VALUES (id, msg, d, f, msg || '_2') $$"
        ).format(proc=sql.Identifier(procedure), table=sql.Identifier(table)),
    ]
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            for statement in statements:
                cur.execute(statement)
        conn.commit()


@app.command()
def generate(
    out_dir: Path = typer.Option(Path("data/export"), "--out-dir", help="Directory for part files."),
    rows: int = typer.Option(10_000, "--rows", "-r", help="Total lines to write."),
    parts: int = typer.Option(4, "--parts", "-p", help="Number of part files."),
    seed: int = typer.Option(42, "--seed", help="Random seed for reproducibility."),
) -> None:
    """Write delimited part files matching the demo procedure's parameters."""
    paths = _write_part_files(out_dir, rows=rows, parts=parts, seed=seed)
    typer.echo(f"Wrote {rows} lines into {len(paths)} file(s) under {out_dir}")


@app.command("setup-db")
def setup_db(
    dsn: str = typer.Option(None, "--dsn", help="Override DSN; defaults to settings."),
) -> None:
    """Drop and recreate the demo table and procedure."""
    _create_demo_objects(_build_dsn(dsn))
    typer.echo(f"Created table {DEMO_TABLE} and procedure {DEMO_PROCEDURE}")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
