"""Subscription manager: owns the provider handle and both update subscriptions.

Lifecycle::

    UNINITIALIZED → INITIALIZING → (ok) → RUNNING → (finalize/stop) → STOPPED
                                 → (handle or callback failure) → STOPPED

Provider callbacks never run service logic directly.  They enqueue a
:class:`ServiceStateChanged`, :class:`PositionUpdated` or
:class:`SatelliteUpdated` event which a single dispatcher task handles.
The dispatcher, the warm-start retry task, :meth:`initialize` and
:meth:`finalize` all hold ``_lock`` while they work, so none of them
interleave at an ``await``.

Warm-start: right after the position subscription is registered the
manager pushes the last known satellites and position to the viewer.  If
that fails (stale fix, viewer send error) a retry task re-runs it every
``SEND_DATA_INTERVAL`` seconds until it succeeds.  Live updates are only
forwarded once warm-start has succeeded (``store.data_sent``).
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from gps_extra_service.channel import MessagePortChannel
from gps_extra_service.exceptions import ErrorCode, ProviderError, ResourceError, StaleDataError
from gps_extra_service.models import (
    MAX_TIME_DIFF,
    PositionUpdated,
    ProviderState,
    SatelliteInfo,
    SatelliteUpdated,
    ServiceStateChanged,
    ServiceStatus,
)
from gps_extra_service.probe import ConnectivityProbe
from gps_extra_service.provider import LocationProvider
from gps_extra_service.sender import MessageSender
from gps_extra_service.store import ReadingStore

logger = logging.getLogger(__name__)

POSITION_UPDATE_INTERVAL = 3
SATELLITE_UPDATE_INTERVAL = 10
SEND_DATA_INTERVAL = 5.0

ProviderEvent = Union[ServiceStateChanged, PositionUpdated, SatelliteUpdated]


class ManagerState(enum.Enum):
    """Lifecycle states of the subscription manager."""

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_provider_error(what: str, exc: ProviderError) -> None:
    logger.error("%s error [%s,%s]", what, exc.code.value, exc.message)


class SubscriptionManager:
    """Starts and stops the provider subscriptions and relays readings.

    Parameters
    ----------
    provider_factory:
        Creates a new provider handle; raises :class:`ProviderError` on failure.
    channel:
        IPC channel to the viewer.
    clock:
        Returns the current UTC time; used for freshness checks.
    send_data_interval:
        Seconds between warm-start retries.
    """

    def __init__(
        self,
        provider_factory: Callable[[], LocationProvider],
        channel: MessagePortChannel,
        clock: Callable[[], datetime] = _utcnow,
        send_data_interval: float = SEND_DATA_INTERVAL,
    ) -> None:
        self._provider_factory = provider_factory
        self._clock = clock
        self._send_data_interval = send_data_interval

        self.status = ServiceStatus()
        self.store = ReadingStore()
        self.probe = ConnectivityProbe(channel, self.status)
        self.sender = MessageSender(channel, self.store, self.status)

        self._state = ManagerState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[ProviderEvent] = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def retry_pending(self) -> bool:
        """True while a warm-start retry task is scheduled."""
        return self._retry_task is not None and not self._retry_task.done()

    # ── lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> bool:
        """Create the provider handle, register for state changes and start it.

        Returns False if the handle cannot be created or the state callback
        cannot be registered; nothing is left registered in that case.  A
        second call while a handle exists does nothing.
        """
        async with self._lock:
            if self.status.provider is not None:
                logger.warning("Subscription manager already initialized")
                return True
            self._set_state(ManagerState.INITIALIZING)

            try:
                provider = self._provider_factory()
            except ProviderError as exc:
                _log_provider_error("Location provider creation", exc)
                self._set_state(ManagerState.STOPPED)
                return False
            self.status.provider = provider
            self._events = asyncio.Queue()

            # Informational only.
            self.probe.is_sensor_connected(provider)

            try:
                provider.set_service_state_changed_cb(self._on_state_changed_cb)
            except ProviderError as exc:
                _log_provider_error("State change register", exc)
                await self._teardown()
                self._set_state(ManagerState.STOPPED)
                return False

            self._dispatcher = asyncio.create_task(
                self._dispatch_events(), name="provider-events"
            )

            try:
                await provider.start()
            except ProviderError as exc:
                _log_provider_error("Location provider start", exc)

            self.probe.check_peer_reachable()

            self._set_state(ManagerState.RUNNING)
            return True

    async def stop(self) -> None:
        """Stop the service; currently identical to :meth:`finalize`."""
        await self.finalize()

    async def finalize(self) -> None:
        """Tear down subscriptions, tasks and the provider handle.

        Safe to call repeatedly and before :meth:`initialize` succeeded.
        """
        async with self._lock:
            tasks = await self._teardown()

        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._state in (ManagerState.INITIALIZING, ManagerState.RUNNING):
            self._set_state(ManagerState.STOPPED)

    async def _teardown(self) -> list[asyncio.Task]:
        """Cancel tasks and release the handle; caller holds ``_lock``.

        Returns the cancelled tasks so the caller can reap them outside
        the lock.
        """
        tasks = [t for t in (self._retry_task, self._dispatcher) if t is not None]
        self._retry_task = None
        self._dispatcher = None
        for task in tasks:
            task.cancel()

        self.disable_sat()
        self.disable_gps()

        provider = self.status.provider
        if provider is not None:
            try:
                provider.unset_service_state_changed_cb()
            except ProviderError as exc:
                _log_provider_error("State change unregister", exc)
            try:
                await provider.stop()
            except ProviderError as exc:
                _log_provider_error("Location provider stop", exc)
            try:
                provider.destroy()
            except ProviderError as exc:
                _log_provider_error("Location provider destroy", exc)
        self.status.provider = None
        self.status.state = ProviderState.DISABLED
        return tasks

    # ── subscriptions ───────────────────────────────────────────────

    async def enable_gps(self) -> bool:
        """Register for position updates and attempt the warm-start push.

        A failed warm-start schedules the retry task; it never fails the
        enable itself.
        """
        if self.status.gps_enabled:
            return True

        try:
            self._require_provider().set_position_updated_cb(
                self._on_position_cb, POSITION_UPDATE_INTERVAL
            )
        except ProviderError as exc:
            _log_provider_error("Position update register", exc)
            self.disable_gps()
            return False
        self.status.gps_enabled = True

        if not await self.init_data_send():
            logger.error(
                "Initial data send failed, retrying every %.1fs", self._send_data_interval
            )
            self._schedule_retry()

        return True

    def enable_sat(self) -> bool:
        """Register for satellite updates."""
        if self.status.sat_enabled:
            return True

        try:
            self._require_provider().set_satellite_updated_cb(
                self._on_satellite_cb, SATELLITE_UPDATE_INTERVAL
            )
        except ProviderError as exc:
            _log_provider_error("Satellite update register", exc)
            self.disable_sat()
            return False

        self.status.sat_enabled = True
        return True

    def disable_gps(self) -> None:
        provider = self.status.provider
        if provider is not None:
            try:
                provider.unset_position_updated_cb()
            except ProviderError as exc:
                _log_provider_error("Position update unregister", exc)
        self.status.gps_enabled = False

    def disable_sat(self) -> None:
        provider = self.status.provider
        if provider is not None:
            try:
                provider.unset_satellite_updated_cb()
            except ProviderError as exc:
                _log_provider_error("Satellite update unregister", exc)
        self.status.sat_enabled = False

    # ── event handlers ──────────────────────────────────────────────

    async def on_state_change(self, state: ProviderState) -> None:
        self.status.state = state
        logger.info("Location service state: %s", state.value)

        if state is ProviderState.ENABLED:
            await self.enable_gps()
            if self.probe.is_sensor_connected(self.status.provider):
                self.enable_sat()
            self._fetch_current()
            self._log_nmea()
        elif state is ProviderState.DISABLED:
            self.disable_sat()
            self.disable_gps()

    async def on_position_change(
        self, latitude: float, longitude: float, altitude: float, timestamp: datetime
    ) -> None:
        reading = replace(
            self.store.position,
            latitude=latitude,
            longitude=longitude,
            altitude=altitude,
            timestamp=timestamp,
        )
        if not self.store.update_position(reading):
            return

        if self.probe.is_sensor_connected(self.status.provider):
            self.enable_sat()

        if self.store.data_sent and self.store.position.is_fresh(self._clock()):
            if await self.sender.send_position():
                logger.info("Position Lt %f, Lg %f, Al %f", latitude, longitude, altitude)
            else:
                logger.error("Failed to send position")

    async def on_satellite_change(self, active: int, inview: int, timestamp: datetime) -> None:
        reading = replace(self.store.satellites, active=active, inview=inview, timestamp=timestamp)
        if not self.store.update_satellites(reading):
            return

        if inview > 0:
            self._log_satellites_in_view()

        if self.store.data_sent:
            if await self.sender.send_satellite():
                logger.info("Satellites active %d, in view %d", active, inview)
            else:
                logger.error("Failed to send satellites")

    # ── warm-start ──────────────────────────────────────────────────

    async def init_data_send(self) -> bool:
        """Push the last known satellites and position to the viewer.

        ``data_sent`` is latched only when the fix is fresh and both sends
        succeed.
        """
        try:
            self._init_data()
        except StaleDataError as exc:
            logger.error("Last location not usable: %s", exc)
            return False

        if not await self.sender.send_satellite() or not await self.sender.send_position():
            logger.error("Failed to send initial location data")
            return False

        self.store.mark_data_sent()
        logger.info("Initial location data sent")
        return True

    def _init_data(self) -> None:
        provider = self.status.provider
        if provider is not None:
            try:
                self.store.update_position(provider.get_last_location())
                self._log_position("Last location")
            except ProviderError as exc:
                _log_provider_error("Last location", exc)

        age = self.store.position.age(self._clock())
        if age > MAX_TIME_DIFF:
            raise StaleDataError(age)

        if provider is not None:
            try:
                self.store.update_satellites(provider.get_last_satellite_status())
                self._log_satellites("Last satellite")
            except ProviderError as exc:
                _log_provider_error("Last satellite status", exc)

        if self.store.satellites.inview > 0:
            self._log_satellites_in_view()

    def _schedule_retry(self) -> None:
        if self.retry_pending:
            return
        self._retry_task = asyncio.create_task(self._retry_init_data_send(), name="warm-start-retry")

    async def _retry_init_data_send(self) -> None:
        while True:
            await asyncio.sleep(self._send_data_interval)
            async with self._lock:
                if await self.init_data_send():
                    return

    # ── provider callbacks → events ─────────────────────────────────

    def _on_state_changed_cb(self, state: ProviderState) -> None:
        self._events.put_nowait(ServiceStateChanged(state))

    def _on_position_cb(
        self, latitude: float, longitude: float, altitude: float, timestamp: datetime
    ) -> None:
        self._events.put_nowait(PositionUpdated(latitude, longitude, altitude, timestamp))

    def _on_satellite_cb(self, active: int, inview: int, timestamp: datetime) -> None:
        self._events.put_nowait(SatelliteUpdated(active, inview, timestamp))

    async def _dispatch_events(self) -> None:
        while True:
            event = await self._events.get()
            async with self._lock:
                try:
                    await self.handle_event(event)
                except Exception:
                    logger.exception("Error handling %s", type(event).__name__)
                finally:
                    self._events.task_done()

    async def handle_event(self, event: ProviderEvent) -> None:
        if isinstance(event, ServiceStateChanged):
            await self.on_state_change(event.state)
        elif isinstance(event, PositionUpdated):
            await self.on_position_change(
                event.latitude, event.longitude, event.altitude, event.timestamp
            )
        elif isinstance(event, SatelliteUpdated):
            await self.on_satellite_change(event.active, event.inview, event.timestamp)

    # ── helpers ─────────────────────────────────────────────────────

    def _require_provider(self) -> LocationProvider:
        if self.status.provider is None:
            raise ResourceError(ErrorCode.SERVICE_NOT_AVAILABLE, "no provider handle")
        return self.status.provider

    def _fetch_current(self) -> None:
        provider = self.status.provider
        if provider is None:
            return
        try:
            self.store.update_position(provider.get_location())
        except ProviderError as exc:
            _log_provider_error("Current location", exc)
        self._log_position("Location")

        try:
            self.store.update_satellites(provider.get_satellite_status())
        except ProviderError as exc:
            _log_provider_error("Current satellite status", exc)
        self._log_satellites("Satellite")

    def _log_position(self, label: str) -> None:
        p = self.store.position
        logger.info(
            "%s data: Al%f Lt%f Lg%f Cl%f Dr%f Sp%f Lv%s Hr%f Vr%f",
            label,
            p.altitude, p.latitude, p.longitude,
            p.climb, p.heading, p.speed,
            p.accuracy_level.name, p.horizontal_accuracy, p.vertical_accuracy,
        )

    def _log_satellites(self, label: str) -> None:
        s = self.store.satellites
        logger.info("%s data: active [%d] in view [%d]", label, s.active, s.inview)

    def _log_satellites_in_view(self) -> None:
        provider = self.status.provider
        if provider is None:
            return
        try:
            provider.foreach_satellite_in_view(_log_satellite)
        except ProviderError as exc:
            _log_provider_error("Satellites in view", exc)

    def _log_nmea(self) -> None:
        provider = self.status.provider
        if provider is None:
            return
        try:
            logger.info("NMEA [%s]", provider.get_nmea())
        except ProviderError as exc:
            logger.debug("NMEA unavailable [%s,%s]", exc.code.value, exc.message)

    def _set_state(self, new: ManagerState) -> None:
        old = self._state
        self._state = new
        logger.info("Subscription manager state: %s → %s", old.value, new.value)


def _log_satellite(sat: SatelliteInfo) -> bool:
    logger.debug(
        "Satellite prn %d azimuth %d elevation %d snr %d in use %s",
        sat.prn, sat.azimuth, sat.elevation, sat.snr, sat.in_use,
    )
    return True
