"""Configuration loading utilities for the sqlview core."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, MutableMapping

import yaml

from . import paths
from .exceptions import ConfigurationError

BUSY_POLICIES = ("reject", "queue")
BEGIN_MODES = ("deferred", "immediate", "exclusive")


@dataclass(frozen=True, slots=True)
class ConnectionSettings:
    """Limits and engine pragmas applied to every opened database."""

    max_open: int
    busy_timeout: float
    foreign_keys: bool


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Statement execution behaviour."""

    busy_policy: str  # "reject" or "queue"
    queue_timeout: float
    progress_interval: int
    workers: int


@dataclass(frozen=True, slots=True)
class PaginationSettings:
    """Cursor window sizes and lifetime."""

    default_window: int
    max_window: int
    cursor_idle_timeout: float


@dataclass(frozen=True, slots=True)
class TransactionSettings:
    begin_mode: str


@dataclass(frozen=True, slots=True)
class SchemaSettings:
    include_internal: bool


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Top-level application configuration."""

    source_path: Path
    connections: ConnectionSettings
    execution: ExecutionSettings
    pagination: PaginationSettings
    transactions: TransactionSettings
    schema: SchemaSettings


def _default_config() -> dict[str, Any]:
    return {
        "connections": {
            "max_open": 8,
            "busy_timeout": 5.0,
            "foreign_keys": True,
        },
        "execution": {
            "busy_policy": "reject",
            "queue_timeout": 5.0,
            "progress_interval": 1000,
            "workers": 4,
        },
        "pagination": {
            "default_window": 200,
            "max_window": 5000,
            "cursor_idle_timeout": 300.0,
        },
        "transactions": {
            "begin_mode": "deferred",
        },
        "schema": {
            "include_internal": False,
        },
    }


ENV_OVERRIDE_SPEC: dict[str, tuple[str, type]] = {
    "connections.max_open": ("SQLVIEW_MAX_OPEN", int),
    "connections.busy_timeout": ("SQLVIEW_BUSY_TIMEOUT", float),
    "connections.foreign_keys": ("SQLVIEW_FOREIGN_KEYS", bool),
    "execution.busy_policy": ("SQLVIEW_BUSY_POLICY", str),
    "execution.queue_timeout": ("SQLVIEW_QUEUE_TIMEOUT", float),
    "execution.progress_interval": ("SQLVIEW_PROGRESS_INTERVAL", int),
    "execution.workers": ("SQLVIEW_WORKERS", int),
    "pagination.default_window": ("SQLVIEW_DEFAULT_WINDOW", int),
    "pagination.max_window": ("SQLVIEW_MAX_WINDOW", int),
    "pagination.cursor_idle_timeout": ("SQLVIEW_CURSOR_IDLE_TIMEOUT", float),
    "transactions.begin_mode": ("SQLVIEW_BEGIN_MODE", str),
    "schema.include_internal": ("SQLVIEW_SCHEMA_INCLUDE_INTERNAL", bool),
}


def load_config(
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> AppConfig:
    """Load configuration from defaults, YAML file, and env overrides."""
    env = dict(os.environ if env is None else env)
    resolved_config_path = _resolve_config_path(config_path, env)
    file_data = _load_yaml(resolved_config_path)
    defaults = _default_config()
    merged: dict[str, Any] = _deep_merge(defaults, file_data)
    merged = _apply_env_overrides(merged, env)
    return _build_config(merged, resolved_config_path)


def default_config() -> AppConfig:
    """Return the built-in defaults without reading files or the environment."""
    return _build_config(_default_config(), paths.default_config_path(env={}))


def _resolve_config_path(config_path: str | Path | None, env: Mapping[str, str]) -> Path:
    if config_path:
        return paths.resolve_path(config_path)
    return paths.default_config_path(env=env)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file at {path} is not valid YAML: {exc}") from exc
        if not isinstance(data, MutableMapping):
            raise ConfigurationError(f"Config file at {path} must define a mapping root object.")
        return dict(data)


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], Mapping) and isinstance(value, Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    config_copy = _deep_merge(config, {})  # shallow copy via merge
    for dotted_key, (env_key, expected_type) in ENV_OVERRIDE_SPEC.items():
        if env_key not in env:
            continue
        raw_value = env[env_key]
        try:
            value = _coerce_env_value(raw_value, expected_type)
        except ValueError as exc:
            raise ConfigurationError(
                f"Environment override {env_key} has invalid value '{raw_value}': {exc}"
            ) from exc
        _assign_nested(config_copy, dotted_key.split("."), value)
    return config_copy


def _coerce_env_value(raw: str, expected_type: type) -> Any:
    cleaned = raw.strip()
    if expected_type is bool:
        lowered = cleaned.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError("expected boolean (true/false)")
    if expected_type is int:
        return int(cleaned)
    if expected_type is float:
        return float(cleaned)
    return cleaned


def _assign_nested(target: MutableMapping[str, Any], keys: list[str], value: Any) -> None:
    current = target
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], MutableMapping):
            current[key] = {}
        current = current[key]  # type: ignore[assignment]
    current[keys[-1]] = value


def _build_config(data: Mapping[str, Any], source_path: Path) -> AppConfig:
    try:
        conn_cfg = data["connections"]
        connections = ConnectionSettings(
            max_open=int(conn_cfg["max_open"]),
            busy_timeout=float(conn_cfg["busy_timeout"]),
            foreign_keys=bool(conn_cfg["foreign_keys"]),
        )
        exec_cfg = data["execution"]
        execution = ExecutionSettings(
            busy_policy=str(exec_cfg["busy_policy"]).lower(),
            queue_timeout=float(exec_cfg["queue_timeout"]),
            progress_interval=int(exec_cfg["progress_interval"]),
            workers=int(exec_cfg["workers"]),
        )
        page_cfg = data["pagination"]
        pagination = PaginationSettings(
            default_window=int(page_cfg["default_window"]),
            max_window=int(page_cfg["max_window"]),
            cursor_idle_timeout=float(page_cfg["cursor_idle_timeout"]),
        )
        transactions = TransactionSettings(
            begin_mode=str(data["transactions"]["begin_mode"]).lower(),
        )
        schema = SchemaSettings(
            include_internal=bool(data["schema"]["include_internal"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration structure: {exc}") from exc

    _validate(connections, execution, pagination, transactions)
    return AppConfig(
        source_path=source_path,
        connections=connections,
        execution=execution,
        pagination=pagination,
        transactions=transactions,
        schema=schema,
    )


def _validate(
    connections: ConnectionSettings,
    execution: ExecutionSettings,
    pagination: PaginationSettings,
    transactions: TransactionSettings,
) -> None:
    if connections.max_open < 1:
        raise ConfigurationError("connections.max_open must be at least 1.")
    if execution.busy_policy not in BUSY_POLICIES:
        raise ConfigurationError(
            f"execution.busy_policy must be one of {', '.join(BUSY_POLICIES)}; got '{execution.busy_policy}'."
        )
    if execution.progress_interval < 1:
        raise ConfigurationError("execution.progress_interval must be a positive step count.")
    if execution.workers < 1:
        raise ConfigurationError("execution.workers must be at least 1.")
    if pagination.max_window < 1 or pagination.default_window < 1:
        raise ConfigurationError("pagination windows must be positive.")
    if pagination.default_window > pagination.max_window:
        raise ConfigurationError("pagination.default_window cannot exceed pagination.max_window.")
    if transactions.begin_mode not in BEGIN_MODES:
        raise ConfigurationError(
            f"transactions.begin_mode must be one of {', '.join(BEGIN_MODES)}; got '{transactions.begin_mode}'."
        )
