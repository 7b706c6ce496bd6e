from __future__ import annotations

import math
from datetime import date

import psycopg
import pytest

from callexport.domain.models import RetryPolicy
from callexport.errors import FatalExecutionError
from callexport.export.executor import BatchExecutor, BatchState, is_transient
from callexport.export.statement import StatementBuilder

NO_WAIT = RetryPolicy(max_retries=2, backoff_seconds=0, backoff_max_seconds=0)


def _row(i: int) -> tuple:
    return (i, f"textfield{i}", date(2020, 1, 1), float(i))


@pytest.fixture
def template(demo_schema):
    return StatementBuilder("call_export_proc", demo_schema).build()


@pytest.mark.parametrize("rows, batch_size", [(10, 3), (10, 5), (1, 100), (7, 1)])
def test_all_rows_committed_in_ceil_n_over_b_batches(fake_db, template, rows, batch_size) -> None:
    with BatchExecutor(fake_db.connect, template, batch_size, NO_WAIT) as executor:
        for i in range(rows):
            executor.add(i, _row(i))
        executor.flush()

    assert len(fake_db.committed) == rows
    assert executor.committed_rows == rows
    assert executor.batches_committed == math.ceil(rows / batch_size)
    assert fake_db.commits == math.ceil(rows / batch_size)


def test_add_returns_rows_only_when_batch_executes(fake_db, template) -> None:
    with BatchExecutor(fake_db.connect, template, 2, NO_WAIT) as executor:
        assert executor.add(0, _row(0)) == 0
        assert executor.pending == 1
        assert executor.add(1, _row(1)) == 2
        assert executor.pending == 0
        assert executor.last_batch.state is BatchState.COMMITTED


def test_flush_without_pending_statements_is_a_no_op(fake_db, template) -> None:
    with BatchExecutor(fake_db.connect, template, 2, NO_WAIT) as executor:
        assert executor.flush() == 0
        executor.add(0, _row(0))
        executor.add(1, _row(1))
        assert executor.flush() == 0
        assert executor.flush() == 0

    assert len(fake_db.executemany_calls) == 1
    assert fake_db.commits == 1
    assert executor.batches_committed == 1


def test_fatal_error_rolls_back_whole_batch(fake_db, template) -> None:
    fake_db.fail_row(lambda row: row[0] == 4, psycopg.errors.NotNullViolation("null value"))

    with BatchExecutor(fake_db.connect, template, 3, NO_WAIT) as executor:
        for i in range(3):
            executor.add(i, _row(i))
        executor.add(3, _row(3))
        with pytest.raises(FatalExecutionError) as excinfo:
            executor.add(4, _row(4))
            executor.add(5, _row(5))

    err = excinfo.value
    assert err.start_offset == 3
    assert err.size == 3
    assert err.attempts == 1
    assert isinstance(err.cause, psycopg.errors.NotNullViolation)
    # row 3 was individually valid but shares the failed batch
    assert [row[0] for row in fake_db.committed] == [0, 1, 2]
    assert fake_db.rollbacks == 1
    assert executor.last_batch.state is BatchState.FAILED


def test_transient_error_is_retried_then_commits(fake_db, template) -> None:
    fake_db.queue_failure(psycopg.errors.DeadlockDetected("deadlock detected"), times=2)

    with BatchExecutor(fake_db.connect, template, 2, NO_WAIT) as executor:
        executor.add(0, _row(0))
        executor.add(1, _row(1))

    assert [row[0] for row in fake_db.committed] == [0, 1]
    assert executor.retries == 2
    assert executor.last_batch.attempts == 3
    assert fake_db.rollbacks == 2


def test_retry_budget_exhaustion_is_fatal_with_attempts(fake_db, template) -> None:
    fake_db.queue_failure(psycopg.errors.QueryCanceled("statement timeout"), times=10)

    with BatchExecutor(fake_db.connect, template, 1, NO_WAIT) as executor:
        with pytest.raises(FatalExecutionError, match="retry budget exhausted") as excinfo:
            executor.add(0, _row(0))

    assert excinfo.value.attempts == NO_WAIT.max_retries + 1
    assert excinfo.value.context["attempts"] == 3
    assert isinstance(excinfo.value.cause, psycopg.errors.QueryCanceled)
    assert fake_db.committed == []
    assert executor.retries == 2


def test_non_transient_error_is_not_retried(fake_db, template) -> None:
    fake_db.queue_failure(psycopg.errors.UniqueViolation("duplicate key"))

    with BatchExecutor(fake_db.connect, template, 1, NO_WAIT) as executor:
        with pytest.raises(FatalExecutionError):
            executor.add(0, _row(0))

    assert fake_db.executemany_calls == 1
    assert executor.retries == 0


def test_reconnects_after_connection_loss(fake_db, template) -> None:
    with BatchExecutor(fake_db.connect, template, 1, NO_WAIT) as executor:
        fake_db.connections[0].closed = True
        executor.add(0, _row(0))

    assert len(fake_db.connections) == 2
    assert [row[0] for row in fake_db.committed] == [0]
    assert executor.retries == 0


def test_connection_closed_on_every_exit_path(fake_db, template) -> None:
    fake_db.queue_failure(psycopg.errors.CheckViolation("check"))

    with pytest.raises(FatalExecutionError):
        with BatchExecutor(fake_db.connect, template, 1, NO_WAIT) as executor:
            executor.add(0, _row(0))

    assert all(conn.closed for conn in fake_db.connections)


def test_discard_drops_pending_statements(fake_db, template) -> None:
    with BatchExecutor(fake_db.connect, template, 10, NO_WAIT) as executor:
        executor.add(0, _row(0))
        executor.add(1, _row(1))
        assert executor.discard() == 2
        assert executor.flush() == 0

    assert fake_db.committed == []
    assert fake_db.executemany_calls == 0


@pytest.mark.parametrize(
    "exc, expected",
    [
        (psycopg.OperationalError("server closed the connection"), True),
        (psycopg.errors.SerializationFailure("could not serialize"), True),
        (psycopg.errors.LockNotAvailable("lock"), True),
        (psycopg.errors.QueryCanceled("timeout"), True),
        (psycopg.errors.UniqueViolation("dup"), False),
        (psycopg.errors.InvalidTextRepresentation("bad"), False),
        (TimeoutError("socket"), True),
        (ValueError("nope"), False),
    ],
)
def test_is_transient(exc, expected) -> None:
    assert is_transient(exc) is expected
