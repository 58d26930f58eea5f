"""Bounded PostgreSQL connection pool.

A counting semaphore bounds the number of live connections handed out;
idle connections are kept in a LIFO stack guarded by a lock. Waiters
block on the semaphore until a slot frees up or the acquire timeout
elapses, at which point PoolExhaustedError is raised. The pool never
opens a connection beyond its capacity.

Connections older than ``max_lifetime``, idle longer than
``idle_timeout``, broken, or left mid-transaction are destroyed on
release/acquire and replaced lazily.
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import psycopg
import psycopg.pq

from sqlgate.core.exceptions import ConnectionError, PoolExhaustedError
from sqlgate.core.logging import get_logger
from sqlgate.core.models import PoolState

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from sqlgate.core.config import PoolSettings, ResolvedConfig


@dataclass(eq=False)
class _Member:
    """One live connection owned by the pool."""

    connection: psycopg.Connection[Any]
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    lease: PooledConnection | None = None

    @property
    def closed(self) -> bool:
        return bool(self.connection.closed or getattr(self.connection, "broken", False))

    @property
    def clean(self) -> bool:
        """True when the session is idle outside any transaction."""
        if self.closed:
            return False
        status = self.connection.info.transaction_status
        return status == psycopg.pq.TransactionStatus.IDLE


@dataclass(eq=False)
class PooledConnection:
    """A single borrow of a pooled connection.

    Every acquire() hands out a new handle, so a handle released twice
    can never return the connection out from under its next borrower.
    """

    _member: _Member = field(repr=False)
    released: bool = False

    @property
    def connection(self) -> psycopg.Connection[Any]:
        return self._member.connection


def psycopg_factory(config: ResolvedConfig) -> Callable[[], psycopg.Connection[Any]]:
    """Build a connection factory from resolved settings."""

    def connect() -> psycopg.Connection[Any]:
        try:
            return psycopg.connect(**config.connect_kwargs(), autocommit=True)
        except psycopg.OperationalError as e:
            msg = (
                f"Connection failed to {config.host}:{config.port} "
                f"database '{config.dbname}': {e}"
            )
            raise ConnectionError(msg) from e

    return connect


class ConnectionPool:
    """Thread-safe pool of at most ``capacity`` live connections."""

    def __init__(
        self,
        settings: PoolSettings,
        factory: Callable[[], psycopg.Connection[Any]],
        *,
        logger: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._factory = factory
        self._log = logger or get_logger("pool")
        self._clock = clock
        self._slots = threading.BoundedSemaphore(settings.capacity)
        self._lock = threading.Lock()
        self._idle: list[_Member] = []
        self._active = 0
        self._waiters = 0
        self._closed = False

    @classmethod
    def from_config(cls, config: ResolvedConfig, *, logger: Any | None = None) -> ConnectionPool:
        return cls(config.pool, psycopg_factory(config), logger=logger)

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- lifecycle ----------------------------------------------------------

    def open(self) -> None:
        """Create ``min_idle`` connections and validate them with the probe."""
        for _ in range(self.settings.min_idle):
            member = self._create()
            if not self._probe(member):
                self._destroy(member)
                raise ConnectionError("Startup probe failed on new connection")
            with self._lock:
                self._idle.append(member)
        self._log.info(
            "connection pool opened",
            capacity=self.settings.capacity,
            min_idle=self.settings.min_idle,
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
        for member in idle:
            self._destroy(member)
        self._log.info("connection pool closed")

    @property
    def closed(self) -> bool:
        return self._closed

    # -- acquire / release --------------------------------------------------

    def acquire(self, timeout: float | None = None) -> PooledConnection:
        """Borrow a connection, blocking up to ``timeout`` seconds.

        Raises PoolExhaustedError when no slot frees up in time.
        """
        if self._closed:
            raise ConnectionError("Connection pool is closed")
        wait = self.settings.acquire_timeout if timeout is None else timeout

        with self._lock:
            self._waiters += 1
        try:
            got_slot = self._slots.acquire(timeout=wait)
        finally:
            with self._lock:
                self._waiters -= 1

        if not got_slot:
            self._log.warning(
                "pool exhausted",
                timeout=wait,
                capacity=self.settings.capacity,
            )
            msg = (
                f"Timed out after {wait}s waiting for a database connection "
                f"(pool capacity {self.settings.capacity})"
            )
            raise PoolExhaustedError(msg)

        try:
            member = self._take_idle() or self._create()
        except BaseException:
            self._slots.release()
            raise

        member.last_used = self._clock()
        lease = PooledConnection(member)
        with self._lock:
            member.lease = lease
            self._active += 1
        self._log.debug("connection acquired", active=self._active)
        return lease

    def release(self, lease: PooledConnection) -> None:
        """Return a borrowed connection. Safe to call more than once.

        Broken, expired or mid-transaction connections are destroyed
        instead of being returned to the idle set.
        """
        member = lease._member
        with self._lock:
            if lease.released or member.lease is not lease:
                return
            lease.released = True
            member.lease = None
            self._active -= 1

        try:
            member.last_used = self._clock()
            if self._closed or not member.clean or self._expired(member):
                self._destroy(member)
            else:
                with self._lock:
                    self._idle.append(member)
        finally:
            self._slots.release()
        self._log.debug("connection released", active=self._active)

    @contextlib.contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[psycopg.Connection[Any]]:
        """Borrow a connection for the duration of a with-block."""
        lease = self.acquire(timeout)
        try:
            yield lease.connection
        finally:
            self.release(lease)

    # -- observation --------------------------------------------------------

    def stats(self) -> PoolState:
        with self._lock:
            return PoolState(
                capacity=self.settings.capacity,
                active=self._active,
                idle=len(self._idle),
                waiters=self._waiters,
            )

    def health_check(self) -> bool:
        """Borrow a connection and run the probe query."""
        try:
            lease = self.acquire(self.settings.probe_timeout)
        except ConnectionError as e:
            self._log.error("health check failed", error=e.message)
            return False
        try:
            return self._probe(lease._member)
        finally:
            self.release(lease)

    # -- internals ----------------------------------------------------------

    def _expired(self, member: _Member) -> bool:
        now = self._clock()
        return (
            now - member.created_at >= self.settings.max_lifetime
            or now - member.last_used >= self.settings.idle_timeout
        )

    def _take_idle(self) -> _Member | None:
        while True:
            with self._lock:
                if not self._idle:
                    return None
                member = self._idle.pop()
            if member.closed or self._expired(member):
                self._destroy(member)
                continue
            idle_for = self._clock() - member.last_used
            if idle_for >= self.settings.validation_interval and not self._probe(member):
                self._destroy(member)
                continue
            return member

    def _create(self) -> _Member:
        conn = self._factory()
        now = self._clock()
        self._log.debug("connection created")
        return _Member(connection=conn, created_at=now, last_used=now)

    def _probe(self, member: _Member) -> bool:
        try:
            with member.connection.cursor() as cur:
                cur.execute(self.settings.probe_query)
                cur.fetchone()
        except psycopg.Error as e:
            self._log.warning("connection probe failed", error=str(e))
            return False
        return True

    def _destroy(self, member: _Member) -> None:
        try:
            member.connection.close()
        except psycopg.Error as e:
            self._log.debug("error closing connection", error=str(e))
        self._log.debug("connection destroyed")
