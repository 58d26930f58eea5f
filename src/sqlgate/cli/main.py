"""sqlgate main entry point and command registration."""

from __future__ import annotations

import atexit
import json
from pathlib import Path  # noqa: TC003
from typing import Annotated, Any

import sentry_sdk
import typer

from sqlgate.__about__ import __version__
from sqlgate.cli.output import (
    OutputFormat,
    PayloadPrinter,
    query_grid,
    resolve_format,
    schema_grid,
    tables_grid,
)
from sqlgate.cli.source import read_sql, stdin_is_interactive
from sqlgate.core.classifier import StatementClassifier
from sqlgate.core.config import load_config, resolve_config
from sqlgate.core.exceptions import (
    ErrorKind,
    InputError,
    SqlGateError,
    ValidationError,
)
from sqlgate.core.exit_codes import ExitCode
from sqlgate.core.logging import get_logger, setup_logging
from sqlgate.core.monitoring import setup_sentry
from sqlgate.core.tools import Gateway

app = typer.Typer(
    help="sqlgate - read-only SQL gateway for PostgreSQL",
    no_args_is_help=True,
)

_EXIT_BY_KIND: dict[str, ExitCode] = {
    ErrorKind.VALIDATION: ExitCode.SECURITY_ERROR,
    ErrorKind.CONNECTION: ExitCode.NETWORK_ERROR,
    ErrorKind.EXECUTION: ExitCode.EXECUTION_ERROR,
    ErrorKind.NOT_FOUND: ExitCode.NOT_FOUND,
    ErrorKind.CONFIG: ExitCode.CONFIG_ERROR,
    ErrorKind.INPUT: ExitCode.INPUT_ERROR,
}


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sqlgate {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable verbose logging"),
    ] = False,
    profile: Annotated[
        str | None,
        typer.Option("--profile", "-P", help="Named connection profile"),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option("--host", "-H", help="PostgreSQL host"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="PostgreSQL port"),
    ] = None,
    database: Annotated[
        str | None,
        typer.Option("--database", "-d", help="Database name"),
    ] = None,
    user: Annotated[
        str | None,
        typer.Option("--user", "-U", help="User name"),
    ] = None,
    password: Annotated[
        str | None,
        typer.Option("--password", "-W", help="Password"),
    ] = None,
    dsn: Annotated[
        str | None,
        typer.Option("--dsn", help="Connection DSN"),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config file"),
    ] = None,
    pool_size: Annotated[
        int | None,
        typer.Option("--pool-size", help="Connection pool capacity"),
    ] = None,
    format: Annotated[
        OutputFormat | None,
        typer.Option("--format", "-f", help="Output format: table|json|csv"),
    ] = None,
    compact: Annotated[
        bool,
        typer.Option("--compact", help="Compact JSON output (no indentation)"),
    ] = False,
    width: Annotated[
        int,
        typer.Option("--width", help="Column width for table format"),
    ] = 40,
) -> None:
    """sqlgate - read-only SQL gateway for PostgreSQL."""
    setup_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["profile"] = profile
    ctx.obj["host"] = host
    ctx.obj["port"] = port
    ctx.obj["database"] = database
    ctx.obj["user"] = user
    ctx.obj["password"] = password
    ctx.obj["dsn"] = dsn
    ctx.obj["config_file"] = config_file
    ctx.obj["pool_size"] = pool_size
    ctx.obj["format"] = format.value if format else None
    ctx.obj["compact"] = compact
    ctx.obj["width"] = width


def _start_monitoring(dsn: str | None, command: str) -> None:
    if not setup_sentry(dsn):
        return
    transaction = sentry_sdk.start_transaction(op="cli", name=command)
    transaction.__enter__()

    def cleanup() -> None:
        transaction.__exit__(None, None, None)
        sentry_sdk.flush(timeout=2)

    atexit.register(cleanup)


def get_gateway(ctx: typer.Context, **overrides: Any) -> Gateway:
    """Resolve configuration from the global options and open a Gateway."""
    obj = ctx.ensure_object(dict)
    config = load_config(obj.get("config_file"))

    cli_overrides: dict[str, Any] = {}
    for key in ("host", "port", "database", "user", "password", "pool_size"):
        val = obj.get(key)
        if val is not None:
            cli_overrides[key] = val
    cli_overrides.update({k: v for k, v in overrides.items() if v is not None})

    resolved = resolve_config(
        config,
        profile_name=obj.get("profile"),
        dsn=obj.get("dsn"),
        **cli_overrides,
    )
    _start_monitoring(resolved.sentry_dsn, ctx.info_name or "sqlgate")
    get_logger("cli").debug("resolved connection", url=resolved.connection_url)
    return Gateway(resolved)


def _printer(ctx: typer.Context) -> PayloadPrinter:
    obj = ctx.ensure_object(dict)
    return PayloadPrinter(
        resolve_format(obj.get("format")),
        compact=obj.get("compact", False),
        width=obj.get("width", 40),
    )


def _read_sql(ctx: typer.Context, execute: str | None, file: str | None) -> str:
    if execute is None and file is None and stdin_is_interactive():
        typer.echo(ctx.get_help())
        raise typer.Exit()
    source = read_sql(execute, file)
    get_logger("cli").debug("statement read", origin=source.origin, length=len(source.text))
    return source.text


@app.command("query")
def query_command(
    ctx: typer.Context,
    file: Annotated[
        str | None,
        typer.Argument(help="SQL file to execute"),
    ] = None,
    execute: Annotated[
        str | None,
        typer.Option("--execute", "-e", help="Execute inline SQL query"),
    ] = None,
    max_rows: Annotated[
        int | None,
        typer.Option("--max-rows", "-n", help="Maximum number of rows to return"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", "-t", help="Statement timeout in seconds"),
    ] = None,
) -> None:
    """Execute a read-only query from file, inline (-e), or stdin."""
    sql = _read_sql(ctx, execute, file)

    with get_gateway(ctx, timeout=timeout, max_rows=max_rows) as gateway:
        result = gateway.executor.query(
            sql,
            max_rows=gateway.config.default_max_rows,
            timeout_seconds=gateway.config.statement_timeout,
        )

    _printer(ctx).emit(result.to_payload(), query_grid)


@app.command("tables")
def tables_command(
    ctx: typer.Context,
    schema: Annotated[
        str | None,
        typer.Option("--schema", "-s", help="Schema name filter (LIKE pattern)"),
    ] = None,
) -> None:
    """List tables, optionally filtered by schema."""
    with get_gateway(ctx) as gateway:
        payload = gateway.list_tables(schema)

    _printer(ctx).emit(payload, tables_grid)


@app.command("schema")
def schema_command(
    ctx: typer.Context,
    table: Annotated[str, typer.Argument(help="Table name (schema.table or table)")],
) -> None:
    """Show column metadata for a table."""
    with get_gateway(ctx) as gateway:
        payload = gateway.get_table_schema(table)

    _printer(ctx).emit(payload, schema_grid)


@app.command("validate")
def validate_command(
    ctx: typer.Context,
    file: Annotated[
        str | None,
        typer.Argument(help="SQL file to validate"),
    ] = None,
    execute: Annotated[
        str | None,
        typer.Option("--execute", "-e", help="Validate inline SQL"),
    ] = None,
) -> None:
    """Classify a statement without touching the database."""
    sql = _read_sql(ctx, execute, file)
    verdict = StatementClassifier().classify(sql)

    printer = _printer(ctx)
    if printer.fmt is OutputFormat.JSON:
        printer.write_json(verdict.model_dump())
        if not verdict.admitted:
            raise typer.Exit(ExitCode.SECURITY_ERROR)
        return
    if not verdict.admitted:
        raise ValidationError(verdict.reason or "query denied", verdict)
    typer.echo("Query admitted")


@app.command("health")
def health_command(ctx: typer.Context) -> None:
    """Probe a pooled connection and show pool statistics."""
    with get_gateway(ctx) as gateway:
        report = gateway.health()

    printer = _printer(ctx)
    if printer.fmt is OutputFormat.JSON:
        printer.write_json(report)
    else:
        typer.echo("Healthy" if report["healthy"] else "Unhealthy")
        typer.echo(report["summary"])
    if not report["healthy"]:
        raise typer.Exit(ExitCode.NETWORK_ERROR)


@app.command("call")
def call_command(
    ctx: typer.Context,
    tool: Annotated[str, typer.Argument(help="Tool name")],
    args: Annotated[
        str | None,
        typer.Option("--args", "-a", help="Tool arguments as a JSON object"),
    ] = None,
) -> None:
    """Dispatch a tool call and print its JSON payload."""
    arguments: Any = {}
    if args:
        try:
            arguments = json.loads(args)
        except json.JSONDecodeError as e:
            raise InputError(f"Invalid --args JSON: {e.msg}") from e
        if not isinstance(arguments, dict):
            raise InputError("--args must be a JSON object")

    with get_gateway(ctx) as gateway:
        payload = gateway.call(tool, arguments)

    _printer(ctx).write_json(payload)
    if payload.get("isError"):
        raise typer.Exit(_EXIT_BY_KIND.get(payload["kind"], ExitCode.GENERAL_ERROR))


def run() -> None:
    """Entry point with global error handling."""
    try:
        app()
    except SqlGateError as e:
        sentry_sdk.capture_exception(e)
        prefix = "Security Error" if e.kind is ErrorKind.VALIDATION else "Error"
        typer.echo(f"{prefix}: {e.message}", err=True)
        raise SystemExit(e.exit_code) from None
    except SystemExit:
        raise
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        typer.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from None
