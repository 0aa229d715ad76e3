"""Click entry point for the GPS extra service.

Registered in ``pyproject.toml`` as ``gps-extra-service``::

    gps-extra-service                       # run the service
    gps-extra-service --validate-config     # check the config file and exit
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
import orjson

from gps_extra_service import __version__
from gps_extra_service.channel import MessagePortChannel
from gps_extra_service.config import AppConfig, LogFileConfig, load_config
from gps_extra_service.gpsd import GpsdLocationProvider
from gps_extra_service.lifecycle import BatteryMonitor, ServiceLifecycleController
from gps_extra_service.manager import SubscriptionManager

logger = logging.getLogger("gps_extra_service")

DEFAULT_CONFIG = "/etc/gps-extra-service/config.json"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    fmt: str = "json",
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger: stderr always, plus an optional rotating file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = _JsonFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT)

    # journald picks up stderr
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        log_dir = Path(log_file_config.path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# ── main command ────────────────────────────────────────────────────


@click.command()
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warning", "error"]),
              help="Log verbosity.")
@click.option("--gpsd-host", default=None,
              help="gpsd host; overrides ${GPSD_HOST} in the config.")
@click.option("--gpsd-port", default=None, type=click.IntRange(1, 65535),
              help="gpsd port; overrides ${GPSD_PORT} in the config.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
def main(
    config_path: Optional[str],
    log_level: Optional[str],
    gpsd_host: Optional[str],
    gpsd_port: Optional[int],
    validate_only: bool,
) -> None:
    """Relay location and satellite updates to the GPS viewer."""
    cfg_path = config_path or os.environ.get("GPS_SERVICE_CONFIG", DEFAULT_CONFIG)

    overrides: dict[str, str] = {}
    if gpsd_host:
        overrides["GPSD_HOST"] = gpsd_host
    if gpsd_port is not None:
        overrides["GPSD_PORT"] = str(gpsd_port)

    try:
        cfg = load_config(cfg_path, overrides=overrides or None)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    effective_level = (
        log_level
        or os.environ.get("GPS_SERVICE_LOG_LEVEL")
        or cfg.logging.level
    )
    _setup_logging(effective_level, cfg.logging.format, cfg.logging.file)

    logger.info("Starting gps-extra-service %s", __version__)

    if not asyncio.run(_run_service(cfg)):
        raise SystemExit(1)


# ── async service ───────────────────────────────────────────────────


async def _run_service(cfg: AppConfig) -> bool:
    """Wire the components together and run until terminated."""
    channel = MessagePortChannel(cfg.channel)
    manager = SubscriptionManager(
        provider_factory=lambda: GpsdLocationProvider(cfg.gpsd),
        channel=channel,
    )
    controller = ServiceLifecycleController(manager)
    controller.install_signal_handlers()

    battery = None
    if cfg.power.enabled:
        battery = BatteryMonitor(cfg.power, controller.on_low_battery)

    try:
        ok = await controller.run(battery)
    finally:
        await channel.close()
        logger.info("Service shut down")

    if not ok:
        logger.error("Service initialization failed")
    return ok
