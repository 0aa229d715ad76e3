"""Location provider backed by gpsd, read through :mod:`gpsdclient`.

``GPSDClient.dict_stream`` is a blocking generator, so each session runs
in a worker thread and hands every report back to the event loop with
``call_soon_threadsafe``; all provider state is only touched on the loop.
Sessions are wrapped in an exponential-backoff reconnect state machine::

    INIT → CONNECTING → (first report) → CONNECTED → (disconnect) → WAIT_BACKOFF → CONNECTING
                      → (failure) →                   WAIT_BACKOFF → CONNECTING
    CONNECTED → (stop) → SHUTTING_DOWN

Report mapping:

- ``TPV`` with ``mode >= 2`` → position fix, service state ``ENABLED``
- ``TPV`` with ``mode < 2``  → service state ``SEARCHING``
- ``SKY``                    → satellite counts and per-satellite detail
- ``DEVICES`` / ``DEVICE``   → attached receivers
- connection lost            → service state ``DISABLED``

Position and satellite callbacks are throttled to the interval they were
registered with.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import socket
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

from gpsdclient import GPSDClient

from gps_extra_service.config import GpsdConfig
from gps_extra_service.exceptions import ErrorCode, ProviderError, ResourceError
from gps_extra_service.models import (
    AccuracyLevel,
    GpsStatus,
    PositionReading,
    ProviderState,
    SatelliteInfo,
    SatelliteReading,
)
from gps_extra_service.provider import (
    LocationProvider,
    PositionUpdatedCallback,
    SatelliteInViewCallback,
    SatelliteUpdatedCallback,
    StateChangedCallback,
)

logger = logging.getLogger(__name__)

# gpsd fix modes
MODE_NO_FIX = 1
MODE_2D = 2
MODE_3D = 3

REPORT_CLASSES = {"VERSION", "DEVICES", "DEVICE", "TPV", "SKY", "ERROR"}

# How long stop() waits for the reader thread to notice the closed socket.
_STOP_GRACE_S = 5.0


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAIT_BACKOFF = "WAIT_BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class _Subscription:
    """A registered update callback and its throttle bookkeeping."""

    def __init__(self, callback: Any, interval: int) -> None:
        self.callback = callback
        self.interval = interval
        self._last_delivery: Optional[float] = None

    def due(self) -> bool:
        now = time.monotonic()
        if self._last_delivery is not None and now - self._last_delivery < self.interval:
            return False
        self._last_delivery = now
        return True


class GpsdLocationProvider(LocationProvider):
    """Streams TPV/SKY reports from a gpsd daemon.

    Parameters
    ----------
    config:
        gpsd host/port, socket timeout and reconnect parameters.
    """

    def __init__(self, config: GpsdConfig) -> None:
        if not config.host or not 0 < config.port < 65536:
            raise ResourceError(
                ErrorCode.INVALID_PARAMETER,
                f"invalid gpsd address {config.host}:{config.port}",
            )
        self._host = config.host
        self._port = config.port
        self._timeout = config.timeout_s
        self._reconnect = config.reconnect

        self._conn_state = ConnectionState.INIT
        self._shutdown = asyncio.Event()
        # Read by the worker thread; asyncio.Event is loop-only.
        self._stop_reading = threading.Event()
        self._client: Optional[GPSDClient] = None
        self._task: Optional[asyncio.Task] = None
        self._attempt = 0
        self._destroyed = False

        self._service_state = ProviderState.DISABLED
        self._state_cb: Optional[StateChangedCallback] = None
        self._position_sub: Optional[_Subscription] = None
        self._satellite_sub: Optional[_Subscription] = None

        self._devices: dict[str, dict] = {}
        self._fix: Optional[PositionReading] = None
        self._last_fix: Optional[PositionReading] = None
        self._sky: Optional[SatelliteReading] = None
        self._last_sky: Optional[SatelliteReading] = None
        self._satellites: list[SatelliteInfo] = []

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        self._check_handle()
        if self._task is not None and not self._task.done():
            return
        self._shutdown.clear()
        self._stop_reading.clear()
        self._task = asyncio.create_task(self._run(), name="gpsd-reader")

    async def stop(self) -> None:
        self._check_handle()
        self._set_conn_state(ConnectionState.SHUTTING_DOWN)
        self._shutdown.set()
        self._stop_reading.set()
        self._wake_reader()
        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=_STOP_GRACE_S)
            except asyncio.TimeoutError:
                logger.warning("gpsd reader did not stop within %.0fs", _STOP_GRACE_S)
        self._clear_live_data()
        self._service_state = ProviderState.DISABLED

    def destroy(self) -> None:
        self._check_handle()
        self._shutdown.set()
        self._stop_reading.set()
        self._wake_reader()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._state_cb = None
        self._position_sub = None
        self._satellite_sub = None
        self._destroyed = True

    # ── callback registration ───────────────────────────────────────

    def set_service_state_changed_cb(self, callback: StateChangedCallback) -> None:
        self._check_handle()
        if callback is None:
            raise ResourceError(ErrorCode.INVALID_PARAMETER, "state callback is required")
        self._state_cb = callback

    def unset_service_state_changed_cb(self) -> None:
        self._check_handle()
        self._state_cb = None

    def set_position_updated_cb(self, callback: PositionUpdatedCallback, interval: int) -> None:
        self._check_handle()
        self._check_interval(interval)
        self._position_sub = _Subscription(callback, interval)

    def unset_position_updated_cb(self) -> None:
        self._check_handle()
        self._position_sub = None

    def set_satellite_updated_cb(self, callback: SatelliteUpdatedCallback, interval: int) -> None:
        self._check_handle()
        self._check_interval(interval)
        self._satellite_sub = _Subscription(callback, interval)

    def unset_satellite_updated_cb(self) -> None:
        self._check_handle()
        self._satellite_sub = None

    # ── queries ─────────────────────────────────────────────────────

    def get_location(self) -> PositionReading:
        self._check_handle()
        if self._fix is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, "no current fix")
        return self._fix

    def get_last_location(self) -> PositionReading:
        self._check_handle()
        if self._last_fix is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, "no fix received yet")
        return self._last_fix

    def get_satellite_status(self) -> SatelliteReading:
        self._check_handle()
        if self._sky is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, "no current sky report")
        return self._sky

    def get_last_satellite_status(self) -> SatelliteReading:
        self._check_handle()
        if self._last_sky is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, "no sky report received yet")
        return self._last_sky

    def foreach_satellite_in_view(self, callback: SatelliteInViewCallback) -> None:
        self._check_handle()
        if self._sky is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, "no current sky report")
        for sat in list(self._satellites):
            if not callback(sat):
                break

    def gps_status(self) -> GpsStatus:
        self._check_handle()
        if self._conn_state is not ConnectionState.CONNECTED:
            raise ProviderError(ErrorCode.NETWORK_FAILED, "gpsd not connected")
        if self._fix is not None:
            return GpsStatus.CONNECTED
        if self._devices:
            return GpsStatus.SEARCHING
        return GpsStatus.DISABLED

    @property
    def service_state(self) -> ProviderState:
        return self._service_state

    # ── internal: connect + read ────────────────────────────────────

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self._connect_and_read()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("gpsd session error: %s", exc)

            self._on_disconnected()
            if self._shutdown.is_set():
                break

            await self._backoff()

    async def _connect_and_read(self) -> None:
        """Run one gpsd session in a worker thread until it ends."""
        self._set_conn_state(ConnectionState.CONNECTING)
        client = GPSDClient(host=self._host, port=self._port, timeout=self._timeout)
        self._client = client
        loop = asyncio.get_running_loop()
        try:
            await asyncio.to_thread(self._read_reports, client, loop)
            if not self._shutdown.is_set():
                logger.info("gpsd closed the connection")
        except OSError as exc:
            logger.warning("gpsd network error at %s:%d: %s", self._host, self._port, exc)
        finally:
            self._client = None

    def _read_reports(self, client: GPSDClient, loop: asyncio.AbstractEventLoop) -> None:
        """Blocking stream loop; runs in a worker thread."""
        try:
            for report in client.dict_stream(convert_datetime=False, filter=REPORT_CLASSES):
                if self._stop_reading.is_set():
                    break
                loop.call_soon_threadsafe(self._on_report, report)
        finally:
            client.close()

    def _wake_reader(self) -> None:
        """Unblock a worker thread waiting on the gpsd socket."""
        client = self._client
        sock = client.sock if client is not None else None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("gpsd socket already closed: %s", exc)

    def _on_report(self, report: dict) -> None:
        if self._shutdown.is_set():
            return
        if self._conn_state is ConnectionState.CONNECTING:
            self._set_conn_state(ConnectionState.CONNECTED)
            self._attempt = 0  # reset backoff on success
            if self._service_state is ProviderState.DISABLED:
                self._set_service_state(ProviderState.SEARCHING)
        self.handle_report(report)

    def handle_report(self, report: dict) -> None:
        """Apply one decoded gpsd report."""
        cls = report.get("class")
        if cls == "TPV":
            self._on_tpv(report)
        elif cls == "SKY":
            self._on_sky(report)
        elif cls == "DEVICES":
            self._devices = {
                d.get("path", ""): d for d in report.get("devices", []) if d.get("activated")
            }
            logger.info("gpsd devices: %s", ", ".join(self._devices) or "none")
        elif cls == "DEVICE":
            path = report.get("path", "")
            if report.get("activated"):
                self._devices[path] = report
            else:
                self._devices.pop(path, None)
        elif cls == "VERSION":
            logger.info("Connected to gpsd %s", report.get("release", "?"))
        elif cls == "ERROR":
            logger.error("gpsd error: %s", report.get("message"))

    def _on_tpv(self, report: dict) -> None:
        mode = report.get("mode", 0)
        if mode < MODE_2D or "lat" not in report or "lon" not in report:
            self._fix = None
            self._set_service_state(ProviderState.SEARCHING)
            return

        reading = PositionReading(
            altitude=float(report.get("altHAE", report.get("alt", 0.0))),
            latitude=float(report["lat"]),
            longitude=float(report["lon"]),
            climb=float(report.get("climb", 0.0)),
            heading=float(report.get("track", 0.0)),
            speed=float(report.get("speed", 0.0)),
            horizontal_accuracy=float(
                report.get("eph", max(report.get("epx", 0.0), report.get("epy", 0.0)))
            ),
            vertical_accuracy=float(report.get("epv", 0.0)),
            accuracy_level=AccuracyLevel.DETAILED if mode >= MODE_3D else AccuracyLevel.STREET,
            timestamp=parse_time(report.get("time")),
        )
        self._fix = reading
        self._last_fix = reading
        self._set_service_state(ProviderState.ENABLED)

        sub = self._position_sub
        if sub is not None and sub.due():
            sub.callback(reading.latitude, reading.longitude, reading.altitude, reading.timestamp)

    def _on_sky(self, report: dict) -> None:
        sats = report.get("satellites")
        if sats is None:
            # Some receivers split SKY into a DOP-only report; keep the previous list.
            return
        self._satellites = [
            SatelliteInfo(
                azimuth=int(s.get("az", 0)),
                elevation=int(s.get("el", 0)),
                prn=int(s.get("PRN", 0)),
                snr=int(s.get("ss", 0)),
                in_use=bool(s.get("used", False)),
            )
            for s in sats
        ]
        reading = SatelliteReading(
            active=int(report.get("uSat", sum(1 for s in self._satellites if s.in_use))),
            inview=int(report.get("nSat", len(self._satellites))),
            timestamp=parse_time(report.get("time")),
        )
        self._sky = reading
        self._last_sky = reading

        sub = self._satellite_sub
        if sub is not None and sub.due():
            sub.callback(reading.active, reading.inview, reading.timestamp)

    def _on_disconnected(self) -> None:
        self._clear_live_data()
        if not self._shutdown.is_set():
            self._set_service_state(ProviderState.DISABLED)

    def _clear_live_data(self) -> None:
        self._devices = {}
        self._fix = None
        self._sky = None
        self._satellites = []

    # ── backoff ─────────────────────────────────────────────────────

    async def _backoff(self) -> None:
        """Wait with exponential backoff + jitter before reconnecting."""
        self._set_conn_state(ConnectionState.WAIT_BACKOFF)
        self._attempt += 1

        base = self._reconnect.initial_delay_ms / 1000.0
        multiplier = self._reconnect.backoff_multiplier
        max_delay = self._reconnect.max_delay_ms / 1000.0
        jitter_pct = self._reconnect.jitter_pct / 100.0

        delay = min(base * (multiplier ** (self._attempt - 1)), max_delay)
        jitter = delay * jitter_pct * (2 * random.random() - 1)
        delay = max(0.1, delay + jitter)

        logger.info("Reconnecting to gpsd in %.1fs (attempt %d)", delay, self._attempt)

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # backoff elapsed normally

    # ── helpers ─────────────────────────────────────────────────────

    def _check_handle(self) -> None:
        if self._destroyed:
            raise ProviderError(ErrorCode.INVALID_PARAMETER, "provider handle destroyed")

    @staticmethod
    def _check_interval(interval: int) -> None:
        if not 1 <= interval <= 120:
            raise ResourceError(ErrorCode.INVALID_PARAMETER, f"interval {interval}s out of range")

    def _set_conn_state(self, new: ConnectionState) -> None:
        old = self._conn_state
        self._conn_state = new
        if old is not new:
            logger.info("gpsd connection state: %s → %s", old.value, new.value)

    def _set_service_state(self, new: ProviderState) -> None:
        if new is self._service_state:
            return
        self._service_state = new
        if self._state_cb is not None:
            self._state_cb(new)


def parse_time(value: Optional[str]) -> datetime:
    """Parse a gpsd ISO-8601 timestamp; missing or bad values mean "now"."""
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Bad gpsd timestamp %r", value)
    return datetime.now(timezone.utc)
