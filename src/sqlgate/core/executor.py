"""Bounded execution of admitted queries.

Classifies the statement, borrows a pooled connection through a
read-only session, runs the caller's text unchanged on a server-side
cursor and pulls at most ``max_rows`` rows through the marshaller.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import sentry_sdk

from sqlgate.core.classifier import StatementClassifier
from sqlgate.core.config import DEFAULT_STATEMENT_TIMEOUT
from sqlgate.core.exceptions import SqlGateError, ValidationError
from sqlgate.core.logging import excerpt, get_logger
from sqlgate.core.marshal import ResultMarshaller
from sqlgate.core.models import Query, QueryResult
from sqlgate.core.session import StatementDeadline, read_only_session

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlgate.core.pool import ConnectionPool

CURSOR_NAME = "sqlgate_cursor"
FETCH_BATCH = 500


class QueryExecutor:
    """Run admitted SELECT statements under row and time limits."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        classifier: StatementClassifier | None = None,
        marshaller: ResultMarshaller | None = None,
        logger: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self._clock = clock
        self._log = logger or get_logger("executor")
        self.classifier = classifier or StatementClassifier(logger=self._log)
        self.marshaller = marshaller or ResultMarshaller()

    def execute(self, query: Query) -> QueryResult:
        """Execute ``query`` and return at most ``query.max_rows`` rows.

        Raises ValidationError on denial, ConnectionError when no pooled
        connection is available, ExecutionError (QueryTimeoutError on
        statement timeout) when the driver reports a failure.
        """
        verdict = self.classifier.classify(query.text)
        if not verdict.admitted:
            raise ValidationError(verdict.reason or "query denied", verdict)

        log = self._log.bind(query=excerpt(query.text), max_rows=query.max_rows)
        log.info("executing query")

        with sentry_sdk.start_span(op="db.query", description=excerpt(query.text)) as span:
            start_time = time.monotonic()
            try:
                result = self._run(query)
            except SqlGateError as e:
                span.set_status("internal_error")
                log.error("query failed", kind=str(e.kind), error=e.message)
                raise
            duration_ms = (time.monotonic() - start_time) * 1000
            span.set_data("row_count", result.row_count)
            span.set_data("duration_ms", duration_ms)
            log.info(
                "query complete",
                duration_ms=f"{duration_ms:.1f}",
                row_count=result.row_count,
                truncated=result.truncated,
            )
            return result

    def _run(self, query: Query) -> QueryResult:
        rows: list[dict[str, Any]] = []
        with (
            read_only_session(self.pool, query.timeout_seconds) as conn,
            conn.cursor(name=CURSOR_NAME) as cur,
        ):
            self.marshaller.install(cur)
            deadline = StatementDeadline(query.timeout_seconds, self._clock)
            cur.execute(query.text)
            names, kinds = self.marshaller.describe(cur.description)

            while len(rows) < query.max_rows:
                deadline.arm(conn)
                batch = cur.fetchmany(min(FETCH_BATCH, query.max_rows - len(rows)))
                if not batch:
                    break
                rows.extend(self.marshaller.row(names, kinds, raw) for raw in batch)

        return QueryResult(
            columns=names,
            rows=rows,
            row_count=len(rows),
            truncated=len(rows) >= query.max_rows,
            max_rows=query.max_rows,
        )

    def query(
        self,
        text: str,
        max_rows: int | None = None,
        timeout_seconds: float = DEFAULT_STATEMENT_TIMEOUT,
    ) -> QueryResult:
        """Build a Query from loose arguments and execute it."""
        kwargs: dict[str, Any] = {"text": text, "timeout_seconds": timeout_seconds}
        if max_rows is not None:
            kwargs["max_rows"] = max_rows
        return self.execute(Query(**kwargs))
