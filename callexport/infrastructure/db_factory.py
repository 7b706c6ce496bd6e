"""
Database connectivity for callexport.

Each export worker owns exactly one connection for the lifetime of its task,
so there is no pool here: ``connection_factory`` returns a picklable callable
that workers (threads or spawned processes) invoke to open their own
connection. Opening a connection is retried with tenacity on transient
connectivity failures.

Also provides procedure introspection used to derive a field schema when the
job configuration does not declare one.
"""

from __future__ import annotations

from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

import psycopg
from psycopg import Connection
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from callexport.config import Settings, get_settings
from callexport.domain.models import FieldSchema, FieldSpec, FieldType
from callexport.errors import SchemaError
from callexport.utils.logging import get_logger

log = get_logger(__name__)

ConnectionFactory = Callable[[], Connection]

_SQL_TYPE_MAP: Dict[str, FieldType] = {
    "smallint": FieldType.INTEGER,
    "integer": FieldType.INTEGER,
    "bigint": FieldType.INTEGER,
    "numeric": FieldType.DECIMAL,
    "real": FieldType.FLOAT,
    "double precision": FieldType.FLOAT,
    "character varying": FieldType.STRING,
    "character": FieldType.STRING,
    "text": FieldType.STRING,
    "date": FieldType.DATE,
    "timestamp without time zone": FieldType.TIMESTAMP,
    "timestamp with time zone": FieldType.TIMESTAMP,
    "boolean": FieldType.BOOLEAN,
}

_PROCEDURE_PARAMS_SQL = """
SELECT r.specific_name, p.ordinal_position, p.parameter_name, p.data_type
FROM information_schema.routines AS r
JOIN information_schema.parameters AS p
  ON p.specific_schema = r.specific_schema
 AND p.specific_name = r.specific_name
WHERE r.routine_schema = COALESCE(%s, current_schema())
  AND r.routine_name = %s
  AND p.parameter_mode IN ('IN', 'INOUT')
ORDER BY r.specific_name, p.ordinal_position;
"""


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def connect(dsn: str, statement_timeout_ms: int = 0) -> Connection:
    """
    Open a dedicated, non-autocommit connection with automatic retry.

    Parameters
    ----------
    dsn : str
        libpq connection string or URI.
    statement_timeout_ms : int
        Server-side statement timeout; 0 disables it. Timed-out statements
        surface as ``QueryCanceled`` and are retried by the batch executor.

    Raises
    ------
    psycopg.OperationalError
        If the connection fails after all retry attempts.
    """
    kwargs = {}
    if statement_timeout_ms > 0:
        kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
    return psycopg.connect(dsn, autocommit=False, **kwargs)


def connection_factory(dsn: str, statement_timeout_ms: int = 0) -> ConnectionFactory:
    """Return a picklable zero-argument callable opening a new connection."""
    return partial(connect, dsn, statement_timeout_ms)


def _split_procedure(procedure: str) -> Tuple[Optional[str], str]:
    if "." in procedure:
        schema, name = procedure.split(".", 1)
        return schema, name
    return None, procedure


def fetch_procedure_schema(conn: Connection, procedure: str) -> FieldSchema:
    """
    Derive the field schema from a procedure's declared IN/INOUT parameters.

    Raises
    ------
    SchemaError
        If the procedure is missing, overloaded, or declares an unsupported type.
    """
    schema, name = _split_procedure(procedure)
    with conn.cursor() as cur:
        cur.execute(_PROCEDURE_PARAMS_SQL, (schema, name))
        rows = cur.fetchall()

    if not rows:
        raise SchemaError(f"Procedure {procedure!r} not found or has no input parameters")

    overloads = {row[0] for row in rows}
    if len(overloads) > 1:
        raise SchemaError(
            f"Procedure {procedure!r} is overloaded ({len(overloads)} signatures); "
            "declare the field schema explicitly"
        )

    specs: List[FieldSpec] = []
    for _, position, param_name, data_type in rows:
        field_type = _SQL_TYPE_MAP.get(data_type)
        if field_type is None:
            raise SchemaError(
                f"Parameter {param_name or position} of {procedure!r} has unsupported type {data_type!r}"
            )
        specs.append(
            FieldSpec(name=param_name or f"arg{position}", type=field_type, sql_type=data_type)
        )

    log.info(
        f"Resolved field schema for {procedure}",
        extra={"procedure": procedure, "fields": [spec.name for spec in specs]},
    )
    return tuple(specs)


__all__ = [
    "ConnectionFactory",
    "build_dsn",
    "connect",
    "connection_factory",
    "fetch_procedure_schema",
]
