"""
Pytest configuration for callexport.

Provides:
- An in-memory fake database (connections, cursors, transactions) for unit
  tests of the executor, worker and coordinator
- Helpers to write delimited input files
- Postgres fixtures for integration tests (skipped when unreachable)
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence

import psycopg
import pytest

from callexport.config import Settings
from callexport.domain.models import FieldSpec, FieldType

DEMO_SCHEMA = (
    FieldSpec(name="id", type=FieldType.INTEGER, sql_type="integer", nullable=False),
    FieldSpec(name="msg", type=FieldType.STRING, sql_type="character varying", nullable=False),
    FieldSpec(name="d", type=FieldType.DATE),
    FieldSpec(name="f", type=FieldType.FLOAT, sql_type="double precision"),
)


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._rows: List[tuple] = []

    def executemany(self, query: Any, params_seq: Iterable[Sequence[Any]]) -> None:
        db = self._conn.db
        db.executemany_calls += 1
        for params in params_seq:
            exc = db.next_failure(tuple(params), self._conn)
            if exc is not None:
                raise exc
            self._conn.pending.append(tuple(params))

    def execute(self, query: Any, params: Optional[Sequence[Any]] = None) -> None:
        self._rows = list(self._conn.db.query_rows)

    def fetchall(self) -> List[tuple]:
        return self._rows

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        del exc_type, exc, tb
        return False


class FakeConnection:
    def __init__(self, db: "FakeDatabase") -> None:
        self.db = db
        self.pending: List[tuple] = []
        self.closed = False
        self.broken = False

    def cursor(self) -> FakeCursor:
        if self.closed:
            raise psycopg.OperationalError("the connection is closed")
        return FakeCursor(self)

    def commit(self) -> None:
        with self.db.lock:
            self.db.committed.extend(self.pending)
            self.db.commits += 1
        self.pending = []

    def rollback(self) -> None:
        self.pending = []
        with self.db.lock:
            self.db.rollbacks += 1

    def close(self) -> None:
        self.closed = True


class FakeDatabase:
    """
    Stand-in for the target database.

    Committed rows land in ``committed``. Failures can be queued (raised by the
    next executemany calls, in order) or attached to specific rows.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.committed: List[tuple] = []
        self.connections: List[FakeConnection] = []
        self.commits = 0
        self.rollbacks = 0
        self.executemany_calls = 0
        self.queued_failures: List[BaseException] = []
        self.row_failures: List[Callable[[tuple], Optional[BaseException]]] = []
        self.unique_key: Optional[int] = None
        self.query_rows: List[tuple] = []

    def connect(self) -> FakeConnection:
        conn = FakeConnection(self)
        with self.lock:
            self.connections.append(conn)
        return conn

    def queue_failure(self, exc: BaseException, times: int = 1) -> None:
        self.queued_failures.extend([exc] * times)

    def fail_row(self, predicate: Callable[[tuple], bool], exc: BaseException) -> None:
        self.row_failures.append(lambda row: exc if predicate(row) else None)

    def next_failure(self, row: tuple, conn: FakeConnection) -> Optional[BaseException]:
        with self.lock:
            if self.queued_failures:
                return self.queued_failures.pop(0)
            if self.unique_key is not None:
                key = row[self.unique_key]
                seen = {r[self.unique_key] for r in self.committed}
                seen.update(r[self.unique_key] for r in conn.pending)
                if key in seen:
                    return psycopg.errors.UniqueViolation(f"duplicate key value ({key})")
        for check in self.row_failures:
            exc = check(row)
            if exc is not None:
                return exc
        return None


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def demo_schema():
    return DEMO_SCHEMA


@pytest.fixture
def write_lines(tmp_path: Path) -> Callable[..., Path]:
    """Write lines into ``<tmp>/export/<name>`` and return the export directory."""

    def _write(lines: Sequence[str], name: str = "part-00000", line_sep: str = "\n") -> Path:
        export_dir = tmp_path / "export"
        export_dir.mkdir(exist_ok=True)
        (export_dir / name).write_bytes("".join(line + line_sep for line in lines).encode("utf-8"))
        return export_dir

    return _write


# Integration fixtures


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "callexport"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture
def demo_objects(test_dsn: str, db_connection_available: bool):
    """Recreate the demo table and procedure for one test; yields their names."""
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    from scripts.generate_data import DEMO_PROCEDURE, DEMO_TABLE, _create_demo_objects

    _create_demo_objects(test_dsn)
    yield DEMO_TABLE, DEMO_PROCEDURE
    with psycopg.connect(test_dsn) as conn:
        conn.execute(f"DROP PROCEDURE IF EXISTS {DEMO_PROCEDURE}")
        conn.execute(f"DROP TABLE IF EXISTS {DEMO_TABLE}")
