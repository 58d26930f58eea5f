"""Read-only database sessions on pooled connections.

Both the query executor and the schema inspector borrow connections
through ``read_only_session``: acquire, mark read-only, open a
transaction with a local statement timeout, and release on every exit
path. Driver exceptions are translated into the sqlgate hierarchy by
``translate_driver_error``. Long-running cursors keep to one overall
time budget through ``StatementDeadline``.
"""

from __future__ import annotations

import contextlib
import time
from typing import TYPE_CHECKING, Any

import psycopg
import psycopg.errors

from sqlgate.core.exceptions import (
    ConnectionError,
    ExecutionError,
    QueryTimeoutError,
    SqlGateError,
)
from sqlgate.core.logging import excerpt

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from sqlgate.core.pool import ConnectionPool

DRIVER_MESSAGE_LIMIT = 300


def driver_message(e: psycopg.Error) -> str:
    """Primary driver message, without the echoed statement text."""
    diag = getattr(e, "diag", None)
    primary = getattr(diag, "message_primary", None) if diag is not None else None
    return excerpt(primary or str(e), DRIVER_MESSAGE_LIMIT)


def translate_driver_error(e: psycopg.Error, timeout: float | None = None) -> SqlGateError:
    if isinstance(e, psycopg.errors.QueryCanceled):
        return QueryTimeoutError(f"Query timed out after {timeout}s: {driver_message(e)}")
    if isinstance(e, psycopg.OperationalError):
        return ConnectionError(f"Database error: {driver_message(e)}")
    return ExecutionError(f"SQL error: {driver_message(e)}")


class StatementDeadline:
    """Time budget for one statement across all of its round trips.

    A server-side cursor runs DECLARE and then one FETCH per batch, and
    PostgreSQL applies ``statement_timeout`` to each of them separately.
    ``arm`` narrows the transaction's timeout to whatever is left before
    the next round trip.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining_ms(self) -> int:
        return int((self._expires_at - self._clock()) * 1000)

    def arm(self, conn: psycopg.Connection[Any]) -> None:
        """Set the local statement timeout to the remaining budget.

        Raises QueryTimeoutError once the budget is spent.
        """
        remaining = self.remaining_ms()
        if remaining <= 0:
            raise QueryTimeoutError(f"Query timed out after {self.seconds}s")
        with conn.cursor() as cur:
            cur.execute(f"SET LOCAL statement_timeout = {remaining}")


@contextlib.contextmanager
def read_only_session(
    pool: ConnectionPool,
    statement_timeout: float,
    *,
    acquire_timeout: float | None = None,
) -> Iterator[psycopg.Connection[Any]]:
    """Yield a pooled connection inside a READ ONLY transaction.

    The transaction is rolled back on error and committed (a no-op for a
    read-only transaction) on success. The connection is released in all
    cases; the pool discards it if it is left broken or mid-transaction.
    """
    lease = pool.acquire(acquire_timeout)
    try:
        conn = lease.connection
        conn.read_only = True
        timeout_ms = int(statement_timeout * 1000)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SET LOCAL statement_timeout = {timeout_ms}")
                cur.execute("SET LOCAL bytea_output = 'hex'")
            yield conn
    except psycopg.Error as e:
        raise translate_driver_error(e, statement_timeout) from e
    finally:
        pool.release(lease)
