"""Shared test fixtures for sqlgate."""

from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from sqlgate.cli.main import app
from sqlgate.core.config import PoolSettings, ResolvedConfig
from sqlgate.core.pool import ConnectionPool
from tests.fakes import FakeFactory


@pytest.fixture
def runner():
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_runner(runner):
    """Invoke the CLI app with the given arguments."""

    def invoke(*args: str, **kwargs):
        return runner.invoke(app, list(args), **kwargs)

    return invoke


@pytest.fixture
def temp_dir():
    """Temporary directory for test files."""
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def make_pool():
    """Build a pool over a fake factory; closed at teardown."""
    pools = []

    def build(factory=None, clock=None, **settings):
        settings.setdefault("min_idle", 0)
        settings.setdefault("acquire_timeout", 0.2)
        kwargs = {"logger": MagicMock()}
        if clock is not None:
            kwargs["clock"] = clock
        pool = ConnectionPool(PoolSettings(**settings), factory or FakeFactory(), **kwargs)
        pools.append(pool)
        return pool

    yield build
    for pool in pools:
        pool.close()


@pytest.fixture
def resolved_config():
    return ResolvedConfig(host="localhost", dbname="testdb", user="tester")
