"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Update intervals, the freshness window and the viewer's port identifiers
are constants and deliberately absent from the config file.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: int = 2
    jitter_pct: int = 20


@dataclass
class GpsdConfig:
    """Connection settings for the gpsd location provider."""

    host: str = "127.0.0.1"
    port: int = 2947
    timeout_s: Optional[float] = None
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class ChannelConfig:
    """Where viewer message ports live."""

    socket_dir: str = "/run/gps-extra-service"
    send_timeout_s: float = 5.0


@dataclass
class PowerConfig:
    """Battery monitoring used to raise the low-battery signal."""

    enabled: bool = True
    battery_path: str = "/sys/class/power_supply/BAT0"
    low_battery_pct: int = 5
    poll_interval_s: float = 60.0


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the service writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/gps-extra-service/service.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)


@dataclass
class AppConfig:
    """Top-level service configuration."""

    gpsd: GpsdConfig = field(default_factory=GpsdConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    power: PowerConfig = field(default_factory=PowerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment "
            f"or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure.

    Placeholders always resolve to strings, so a substituted value that
    reads as a number or boolean is turned into one.  Literal strings are
    left alone.
    """
    if isinstance(obj, str):
        if not _VAR_RE.search(obj):
            return obj
        return _as_scalar(_interpolate_value(obj, overrides))
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    gpsd_raw = dict(raw.get("gpsd", {}))
    reconnect_raw = gpsd_raw.pop("reconnect", {})
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        gpsd=GpsdConfig(
            reconnect=ReconnectConfig(**_pick(ReconnectConfig, reconnect_raw)),
            **_pick(GpsdConfig, gpsd_raw),
        ),
        channel=ChannelConfig(**_pick(ChannelConfig, raw.get("channel", {}))),
        power=PowerConfig(**_pick(PowerConfig, raw.get("power", {}))),
        logging=LoggingConfig(
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
            **_pick(LoggingConfig, logging_raw),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the service config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw_bytes = Path(path).read_bytes()
    raw: dict[str, Any] = orjson.loads(raw_bytes)

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)


def _as_scalar(value: str) -> Any:
    if value in ("true", "false"):
        return value == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value
