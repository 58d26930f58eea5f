"""Configuration management for sqlgate.

Handles TOML config files, environment variables, named profiles,
and configuration precedence resolution.

Precedence order (highest to lowest):
1. CLI flags (--host, --port, etc.)
2. --dsn flag (parsed into components)
3. Environment variables (PGHOST, PGPORT, PGDATABASE, PGUSER, PGPASSWORD,
   SQLGATE_POOL_SIZE)
4. Named profile (--profile or SQLGATE_PROFILE env var)
5. Config file defaults
6. Built-in defaults

The resolved configuration is frozen: components receive it at
construction and never mutate it.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    computed_field,
    field_validator,
    model_validator,
)

from sqlgate.core.exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "sqlgate" / "config.toml"

DEFAULT_STATEMENT_TIMEOUT = 30.0
DEFAULT_MAX_ROWS = 10000

_PG_ENV_VARS: dict[str, str] = {
    "PGHOST": "host",
    "PGPORT": "port",
    "PGDATABASE": "dbname",
    "PGUSER": "user",
    "PGPASSWORD": "password",  # pragma: allowlist secret
}

_PROFILE_DEFAULTS: dict[str, Any] = {
    "host": "localhost",
    "port": 5432,
    "dbname": "postgres",
    "user": None,
    "password": None,
    "sslmode": "prefer",
    "connect_timeout": 10,
    "application_name": "sqlgate",
}

_VALID_SSLMODES = {
    "disable",
    "allow",
    "prefer",
    "require",
    "verify-ca",
    "verify-full",
}


def parse_dsn(dsn: str) -> dict[str, Any]:
    """Supports postgresql:// and postgres:// schemes with query params."""
    parsed = urlparse(dsn)
    if parsed.scheme not in ("postgresql", "postgres"):
        msg = f"Invalid DSN scheme: '{parsed.scheme}'. Expected 'postgresql' or 'postgres'"
        raise ConfigError(msg)

    result: dict[str, Any] = {}
    if parsed.hostname:
        result["host"] = parsed.hostname
    if parsed.port:
        result["port"] = parsed.port
    if parsed.path and parsed.path.strip("/"):
        result["dbname"] = parsed.path.strip("/")
    if parsed.username:
        result["user"] = parsed.username
    if parsed.password:
        result["password"] = parsed.password
    query_params = parse_qs(parsed.query)
    if "sslmode" in query_params:
        result["sslmode"] = query_params["sslmode"][0]
    if "connect_timeout" in query_params:
        result["connect_timeout"] = int(query_params["connect_timeout"][0])
    if "application_name" in query_params:
        result["application_name"] = query_params["application_name"][0]
    return result


def _check_sslmode(v: str) -> str:
    if v not in _VALID_SSLMODES:
        msg = f"Invalid sslmode: '{v}'. Must be one of: {', '.join(sorted(_VALID_SSLMODES))}"
        raise ValueError(msg)
    return v


def _check_port(v: int) -> int:
    if not (1 <= v <= 65535):
        msg = f"Invalid port: {v}. Must be 1-65535"
        raise ValueError(msg)
    return v


class PoolSettings(BaseModel):
    """Connection pool sizing and lifecycle. Durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    capacity: int = 5
    min_idle: int = 1
    acquire_timeout: float = 30.0
    idle_timeout: float = 600.0
    max_lifetime: float = 1800.0
    probe_query: str = "SELECT 1"
    probe_timeout: float = 5.0
    validation_interval: float = 30.0

    @field_validator("capacity")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v < 1:
            msg = f"Invalid pool capacity: {v}. Must be at least 1"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_min_idle(self) -> PoolSettings:
        if not (0 <= self.min_idle <= self.capacity):
            msg = (
                f"Invalid min_idle: {self.min_idle}. "
                f"Must be between 0 and capacity ({self.capacity})"
            )
            raise ValueError(msg)
        return self


class PgProfile(BaseModel):
    dsn: str | None = None
    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    user: str | None = None
    password: str | None = None
    sslmode: str = "prefer"
    connect_timeout: int = 10
    application_name: str = "sqlgate"

    @model_validator(mode="before")
    @classmethod
    def parse_dsn_into_components(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("dsn"):
            dsn_fields = parse_dsn(data["dsn"])
            for key, value in dsn_fields.items():
                if key not in data:
                    data[key] = value
        return data

    @field_validator("sslmode")
    @classmethod
    def validate_sslmode(cls, v: str) -> str:
        return _check_sslmode(v)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)


class AppConfig(BaseModel):
    statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT
    default_max_rows: int = DEFAULT_MAX_ROWS
    max_text_length: int | None = None
    sentry_dsn: str | None = None
    default_profile: str | None = None
    pool: PoolSettings = PoolSettings()
    profiles: dict[str, PgProfile] = {}


class ResolvedConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 5432
    dbname: str = "postgres"
    user: str | None = None
    password: str | None = None
    sslmode: str = "prefer"
    connect_timeout: int = 10
    application_name: str = "sqlgate"
    statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT
    default_max_rows: int = DEFAULT_MAX_ROWS
    max_text_length: int | None = None
    sentry_dsn: str | None = None
    pool: PoolSettings = PoolSettings()
    active_profile: str | None = None
    sources: dict[str, str] = {}

    @field_validator("sslmode")
    @classmethod
    def validate_sslmode(cls, v: str) -> str:
        return _check_sslmode(v)

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    @field_validator("default_max_rows")
    @classmethod
    def validate_max_rows(cls, v: int) -> int:
        if v < 1:
            msg = f"Invalid default_max_rows: {v}. Must be at least 1"
            raise ValueError(msg)
        return v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def connection_url(self) -> str:
        """Connection URL with the password masked, safe to log."""
        userinfo = f"{self.user}@" if self.user else ""
        return (
            f"postgresql://{userinfo}{self.host}:{self.port}"
            f"/{self.dbname}?sslmode={self.sslmode}"
        )

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for psycopg.connect()."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "sslmode": self.sslmode,
            "connect_timeout": self.connect_timeout,
            "application_name": self.application_name,
        }


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file.

    Returns default AppConfig if file doesn't exist.
    Raises ConfigError on malformed TOML or invalid config.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        return AppConfig()

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Malformed TOML in {config_path}: {e}"
        raise ConfigError(msg) from e

    try:
        return AppConfig.model_validate(data)
    except Exception as e:
        msg = f"Invalid configuration in {config_path}: {e}"
        raise ConfigError(msg) from e


def _env_int(env_var: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        msg = f"Invalid {env_var} value: '{value}'. Must be an integer"
        raise ConfigError(msg) from None


def resolve_config(
    config: AppConfig,
    profile_name: str | None = None,
    dsn: str | None = None,
    **cli_overrides: Any,
) -> ResolvedConfig:
    """Resolve configuration using precedence chain.

    CLI > DSN > env > profile > config defaults > built-in defaults.
    """
    sources: dict[str, str] = {}
    resolved: dict[str, Any] = {}
    pool_fields: dict[str, Any] = config.pool.model_dump()

    # Layer 1: Built-in defaults
    resolved.update(_PROFILE_DEFAULTS)
    resolved["statement_timeout"] = DEFAULT_STATEMENT_TIMEOUT
    resolved["default_max_rows"] = DEFAULT_MAX_ROWS
    resolved["max_text_length"] = None
    resolved["sentry_dsn"] = None
    for key in resolved:
        sources[key] = "default"
    sources["pool"] = "default"

    # Layer 2: Config file global defaults
    for key in ("statement_timeout", "default_max_rows", "max_text_length", "sentry_dsn"):
        if key in config.model_fields_set:
            resolved[key] = getattr(config, key)
            sources[key] = "config"
    if "pool" in config.model_fields_set:
        sources["pool"] = "config"

    # Layer 3: Named profile
    effective_profile = profile_name
    if not effective_profile:
        effective_profile = os.environ.get("SQLGATE_PROFILE")
    if not effective_profile:
        effective_profile = config.default_profile

    if effective_profile:
        if effective_profile not in config.profiles:
            available = (
                ", ".join(sorted(config.profiles.keys())) if config.profiles else "none"
            )
            msg = f"Unknown profile: '{effective_profile}'. Available profiles: {available}"
            raise ConfigError(msg)
        profile = config.profiles[effective_profile]
        for key in profile.model_fields_set:
            if key in ("dsn",):
                continue
            if key in resolved:
                resolved[key] = getattr(profile, key)
                sources[key] = f"profile: {effective_profile}"

    # Layer 4: Environment variables
    for env_var, field_name in _PG_ENV_VARS.items():
        value = os.environ.get(env_var)
        if value is not None:
            if field_name == "port":
                resolved[field_name] = _env_int(env_var, value)
            else:
                resolved[field_name] = value
            sources[field_name] = f"env: {env_var}"

    pool_size = os.environ.get("SQLGATE_POOL_SIZE")
    if pool_size is not None:
        pool_fields["capacity"] = _env_int("SQLGATE_POOL_SIZE", pool_size)
        pool_fields["min_idle"] = min(pool_fields["min_idle"], pool_fields["capacity"])
        sources["pool"] = "env: SQLGATE_POOL_SIZE"

    # Layer 5: DSN flag
    if dsn:
        dsn_fields = parse_dsn(dsn)
        for key, value in dsn_fields.items():
            if key in resolved:
                resolved[key] = value
                sources[key] = "dsn"

    # Layer 6: CLI flags (highest priority)
    cli_to_field = {
        "host": "host",
        "port": "port",
        "database": "dbname",
        "user": "user",
        "password": "password",  # pragma: allowlist secret
        "sslmode": "sslmode",
        "timeout": "statement_timeout",
        "max_rows": "default_max_rows",
    }
    for cli_name, field_name in cli_to_field.items():
        value = cli_overrides.get(cli_name)
        if value is not None:
            resolved[field_name] = value
            sources[field_name] = f"cli: --{cli_name.replace('_', '-')}"

    pool_override = cli_overrides.get("pool_size")
    if pool_override is not None:
        pool_fields["capacity"] = pool_override
        pool_fields["min_idle"] = min(pool_fields["min_idle"], pool_override)
        sources["pool"] = "cli: --pool-size"

    try:
        resolved["pool"] = PoolSettings(**pool_fields)
        resolved["active_profile"] = effective_profile
        resolved["sources"] = sources
        return ResolvedConfig(**resolved)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
