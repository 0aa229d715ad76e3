"""Tests for the CLI entry point and log formatting."""

import logging

import orjson
from click.testing import CliRunner

from gps_extra_service import __version__, cli
from gps_extra_service.cli import _JsonFormatter, main


def test_validate_config(tmp_path) -> None:
    cfg = tmp_path / "config.json"
    cfg.write_text('{"gpsd": {"port": 2947}}')
    result = CliRunner().invoke(main, ["-c", str(cfg), "--validate-config"])
    assert result.exit_code == 0
    assert "Configuration is valid." in result.output


def test_bad_config_exits_nonzero(tmp_path) -> None:
    cfg = tmp_path / "config.json"
    cfg.write_text("{not json")
    result = CliRunner().invoke(main, ["-c", str(cfg)])
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])
    assert __version__ in result.output


def test_json_formatter() -> None:
    record = logging.LogRecord(
        "gps_extra_service.manager", logging.ERROR, __file__, 1,
        "Position update register error [%s,%s]", ("NOT_SUPPORTED", "no gps"), None,
    )
    line = orjson.loads(_JsonFormatter().format(record))
    assert line["level"] == "error"
    assert line["logger"] == "gps_extra_service.manager"
    assert line["event"] == "Position update register error [NOT_SUPPORTED,no gps]"


def test_gpsd_options_override_placeholders(tmp_path, monkeypatch) -> None:
    """--gpsd-host/--gpsd-port win over the environment for the gpsd placeholders."""
    monkeypatch.setenv("GPSD_HOST", "from-env")
    cfg_file = tmp_path / "config.json"
    cfg_file.write_text('{"gpsd": {"host": "${GPSD_HOST}", "port": "${GPSD_PORT:-2947}"}}')
    seen = []

    async def fake_run(cfg):
        seen.append(cfg)
        return True

    monkeypatch.setattr(cli, "_run_service", fake_run)
    monkeypatch.setattr(cli, "_setup_logging", lambda *args: None)

    result = CliRunner().invoke(
        main, ["-c", str(cfg_file), "--gpsd-host", "gps.lan", "--gpsd-port", "3001"]
    )
    assert result.exit_code == 0
    assert seen[0].gpsd.host == "gps.lan"
    assert seen[0].gpsd.port == 3001


def test_failed_start_exits_nonzero(tmp_path, monkeypatch) -> None:
    cfg_file = tmp_path / "config.json"
    cfg_file.write_text("{}")

    async def fake_run(cfg):
        return False

    monkeypatch.setattr(cli, "_run_service", fake_run)
    monkeypatch.setattr(cli, "_setup_logging", lambda *args: None)

    result = CliRunner().invoke(main, ["-c", str(cfg_file)])
    assert result.exit_code == 1
