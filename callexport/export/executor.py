"""
Batch executor: groups bound CALL parameters and commits them transactionally.

A batch is all-or-nothing. Every statement of the batch runs on one cursor,
then a single COMMIT is issued; on any failure the transaction is rolled back
and the failure is classified:

- transient (connection loss, deadlock/serialization, lock or statement
  timeout): the whole batch is re-submitted with exponential backoff, at most
  ``RetryPolicy.max_retries`` times;
- anything else (constraint violation, bad parameter): ``FatalExecutionError``.

Batch lifecycle::

    EMPTY -> FILLING -> EXECUTING -> COMMITTED
                                  -> ROLLED_BACK -> RETRY_FILLING -> EXECUTING ...
                                                 -> FAILED

The executor owns its connection for the whole task and closes it on every
exit path; use it as a context manager.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

import psycopg
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from callexport.domain.models import RetryPolicy
from callexport.errors import FatalExecutionError, TransientExecutionError
from callexport.export.statement import CallTemplate
from callexport.infrastructure.db_factory import ConnectionFactory
from callexport.utils.logging import get_logger

log = get_logger(__name__)

# SQLSTATE classes/codes worth re-submitting a batch for.
_TRANSIENT_SQLSTATES = (
    "08",  # connection exception
    "40",  # transaction rollback: serialization failure, deadlock
    "53300",  # too many connections
    "55P03",  # lock not available
    "57014",  # query canceled (statement_timeout)
    "57P01",  # admin shutdown
)


def is_transient(exc: BaseException) -> bool:
    """Return True when a failed batch may succeed if re-submitted."""
    if isinstance(exc, psycopg.Error):
        sqlstate = exc.sqlstate
        if sqlstate:
            return sqlstate.startswith(_TRANSIENT_SQLSTATES)
        return isinstance(exc, psycopg.OperationalError)
    return isinstance(exc, (TimeoutError, ConnectionError))


class BatchState(str, Enum):
    EMPTY = "EMPTY"
    FILLING = "FILLING"
    EXECUTING = "EXECUTING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    RETRY_FILLING = "RETRY_FILLING"
    FAILED = "FAILED"


@dataclass
class Batch:
    start_offset: int
    statements: List[Tuple[Any, ...]] = field(default_factory=list)
    state: BatchState = BatchState.EMPTY
    attempts: int = 0

    def __len__(self) -> int:
        return len(self.statements)


class BatchExecutor:
    """
    Accumulate bound statements and execute them in bounded, atomic batches.

    Parameters
    ----------
    connect : ConnectionFactory
        Zero-argument callable returning a new DB-API connection.
    template : CallTemplate
        The task's CALL template, built once.
    batch_size : int
        Maximum statements per transaction.
    retry_policy : RetryPolicy
        Retry bound and backoff for transient failures.
    task_id : int | None
        Only used to tag log records.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        template: CallTemplate,
        batch_size: int,
        retry_policy: Optional[RetryPolicy] = None,
        task_id: Optional[int] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._connect = connect
        self._conn = None
        self.template = template
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.task_id = task_id
        self.committed_rows = 0
        self.batches_committed = 0
        self.retries = 0
        self.last_batch: Optional[Batch] = None
        self._batch: Optional[Batch] = None

    def __enter__(self) -> "BatchExecutor":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def open(self) -> None:
        if self._conn is None:
            self._conn = self._connect()

    def close(self) -> None:
        """Release the connection. Uncommitted statements are dropped, never committed."""
        self._batch = None
        self._drop_connection()

    def _drop_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except psycopg.Error:
            log.warning(
                "[EXECUTOR] Failed to close connection",
                extra={"task_id": self.task_id},
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._batch) if self._batch is not None else 0

    def add(self, offset: int, params: Tuple[Any, ...]) -> int:
        """
        Queue one bound statement; execute the batch once it is full.

        Returns the number of rows committed by this call (0 or a full batch).
        """
        batch = self._batch
        if batch is None:
            batch = self._batch = Batch(start_offset=offset)
        batch.statements.append(params)
        batch.state = BatchState.FILLING
        if len(batch) < self.batch_size:
            return 0
        self._batch = None
        return self._execute(batch)

    def flush(self) -> int:
        """Execute a partial trailing batch, if any."""
        batch, self._batch = self._batch, None
        if batch is None or not batch.statements:
            return 0
        return self._execute(batch)

    def discard(self) -> int:
        """Drop the uncommitted batch and return how many statements it held."""
        batch, self._batch = self._batch, None
        return len(batch) if batch is not None else 0

    def _execute(self, batch: Batch) -> int:
        self.last_batch = batch
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_policy.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_policy.backoff_seconds,
                max=self.retry_policy.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientExecutionError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            retryer(self._execute_once, batch)
        except TransientExecutionError as exc:
            batch.state = BatchState.FAILED
            raise FatalExecutionError(
                f"Batch at offset {batch.start_offset} still failing after "
                f"{batch.attempts} attempts; retry budget exhausted",
                start_offset=batch.start_offset,
                size=len(batch),
                attempts=batch.attempts,
                cause=exc.cause,
            ) from exc
        except FatalExecutionError:
            batch.state = BatchState.FAILED
            raise

        self.committed_rows += len(batch)
        self.batches_committed += 1
        log.debug(
            f"[BATCH COMMIT] offset={batch.start_offset} size={len(batch)}",
            extra={
                "task_id": self.task_id,
                "offset": batch.start_offset,
                "size": len(batch),
                "attempts": batch.attempts,
                "committed_rows": self.committed_rows,
            },
        )
        return len(batch)

    def _execute_once(self, batch: Batch) -> None:
        if batch.attempts:
            batch.state = BatchState.RETRY_FILLING
            self.retries += 1
        batch.attempts += 1
        batch.state = BatchState.EXECUTING
        try:
            conn = self._live_connection()
            with conn.cursor() as cur:
                cur.executemany(self.template.query, batch.statements)
            conn.commit()
        except Exception as exc:  # noqa: BLE001 - every failure rolls back and is classified
            self._rollback()
            batch.state = BatchState.ROLLED_BACK
            error_cls = TransientExecutionError if is_transient(exc) else FatalExecutionError
            raise error_cls(
                f"Batch at offset {batch.start_offset} rolled back: {exc}",
                start_offset=batch.start_offset,
                size=len(batch),
                attempts=batch.attempts,
                cause=exc,
            ) from exc
        batch.state = BatchState.COMMITTED

    def _live_connection(self):
        conn = self._conn
        if conn is not None and not getattr(conn, "closed", False) and not getattr(conn, "broken", False):
            return conn
        if conn is not None:
            log.warning("[EXECUTOR] Connection lost; reconnecting", extra={"task_id": self.task_id})
            self._drop_connection()
        self._conn = self._connect()
        return self._conn

    def _rollback(self) -> None:
        conn = self._conn
        if conn is None:
            return
        try:
            conn.rollback()
        except psycopg.Error:
            # A connection that cannot roll back is unusable; drop it so the
            # next attempt reconnects.
            log.warning(
                "[EXECUTOR] Rollback failed; discarding connection",
                extra={"task_id": self.task_id},
                exc_info=True,
            )
            self._drop_connection()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log.warning(
            f"[BATCH RETRY] attempt {retry_state.attempt_number} failed; retrying in {sleep:.2f}s",
            extra={
                "task_id": self.task_id,
                "attempt": retry_state.attempt_number,
                "max_retries": self.retry_policy.max_retries,
                "error": str(exc),
            },
        )


__all__ = ["Batch", "BatchExecutor", "BatchState", "is_transient"]
