"""Exception hierarchy for sqlgate.

Every exception carries a ``kind`` (the discriminator callers branch on)
and an ``exit_code`` for CLI return value mapping.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

from sqlgate.core.exit_codes import ExitCode

if TYPE_CHECKING:
    from sqlgate.core.models import Verdict


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    CONNECTION = "connection"
    EXECUTION = "execution"
    NOT_FOUND = "not_found"
    CONFIG = "config"
    INPUT = "input"


class SqlGateError(Exception):
    """Base exception for all sqlgate errors."""

    kind: ErrorKind = ErrorKind.EXECUTION
    exit_code: int = ExitCode.GENERAL_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(SqlGateError):
    """Statement denied by the classifier. Never retried."""

    kind = ErrorKind.VALIDATION
    exit_code: int = ExitCode.SECURITY_ERROR

    def __init__(self, message: str, verdict: Verdict | None = None) -> None:
        super().__init__(message)
        self.verdict = verdict


class ConnectionError(SqlGateError):  # noqa: A001
    """Pool exhaustion, unreachable host, broken session."""

    kind = ErrorKind.CONNECTION
    exit_code: int = ExitCode.NETWORK_ERROR


class PoolExhaustedError(ConnectionError):
    """No pooled connection became free before the acquire timeout."""


class ExecutionError(SqlGateError):
    """Driver-reported SQL failure."""

    kind = ErrorKind.EXECUTION
    exit_code: int = ExitCode.EXECUTION_ERROR


class QueryTimeoutError(ExecutionError):
    """Statement cancelled by the session statement timeout."""

    exit_code: int = ExitCode.TIMEOUT


class NotFoundError(SqlGateError):
    """Table lookup returned no columns."""

    kind = ErrorKind.NOT_FOUND
    exit_code: int = ExitCode.NOT_FOUND


class InputError(SqlGateError):
    """Missing argument, unreadable query file, bad parameters."""

    kind = ErrorKind.INPUT
    exit_code: int = ExitCode.INPUT_ERROR


class ConfigError(SqlGateError):
    """Malformed config, missing profile."""

    kind = ErrorKind.CONFIG
    exit_code: int = ExitCode.CONFIG_ERROR
