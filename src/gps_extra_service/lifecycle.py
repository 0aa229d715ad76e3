"""Maps OS lifecycle signals onto the subscription manager.

======================  =================================
Signal                  Action
======================  =================================
service create          ``manager.initialize()``
SIGTERM / SIGINT        ``manager.finalize()`` and exit
low battery / SIGUSR1   ``manager.stop()``
low memory              logged, no action
language change         logged, no action
region format change    logged, no action
======================  =================================

Low battery is detected by :class:`BatteryMonitor`, which polls the
kernel's power-supply class directory.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional

from gps_extra_service.config import PowerConfig
from gps_extra_service.manager import SubscriptionManager

logger = logging.getLogger(__name__)


class ServiceLifecycleController:
    """Top-level owner of the subscription manager for one service run."""

    def __init__(self, manager: SubscriptionManager) -> None:
        self._manager = manager
        self._shutdown = asyncio.Event()
        self._signal_tasks: set[asyncio.Task] = set()

    @property
    def manager(self) -> SubscriptionManager:
        return self._manager

    async def on_create(self) -> bool:
        logger.info("Service create")
        return await self._manager.initialize()

    async def on_terminate(self) -> None:
        logger.info("Service terminate")
        await self._manager.finalize()

    async def on_low_battery(self) -> None:
        logger.warning("Low battery: stopping location updates")
        await self._manager.stop()

    def on_low_memory(self) -> None:
        logger.info("Low memory event ignored")

    def on_language_changed(self) -> None:
        logger.info("Language change event ignored")

    def on_region_changed(self) -> None:
        logger.info("Region format change event ignored")

    # ── process loop ────────────────────────────────────────────────

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        """Route SIGTERM/SIGINT to shutdown and SIGUSR1 to low battery."""
        loop = asyncio.get_running_loop()
        handlers = {
            signal.SIGTERM: self._handle_terminate_signal,
            signal.SIGINT: self._handle_terminate_signal,
            signal.SIGUSR1: self._handle_low_battery_signal,
        }
        for sig, handler in handlers.items():
            try:
                loop.add_signal_handler(sig, handler)
            except NotImplementedError:
                pass  # Windows

    async def run(self, battery: Optional["BatteryMonitor"] = None) -> bool:
        """Create the service, wait for a terminate signal, then finalize.

        Returns False if creation failed.
        """
        if not await self.on_create():
            await self.on_terminate()
            return False

        monitor_task = None
        if battery is not None:
            monitor_task = asyncio.create_task(battery.run(), name="battery-monitor")
        try:
            await self._shutdown.wait()
        finally:
            if monitor_task is not None:
                monitor_task.cancel()
                try:
                    await monitor_task
                except asyncio.CancelledError:
                    pass
            await self.on_terminate()
        return True

    def _handle_terminate_signal(self) -> None:
        logger.info("Received shutdown signal")
        self.request_shutdown()

    def _handle_low_battery_signal(self) -> None:
        task = asyncio.get_running_loop().create_task(self.on_low_battery())
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)


class BatteryMonitor:
    """Polls a power-supply directory and fires *on_low* when the battery runs low.

    The callback fires once per low-battery episode; it is re-armed when the
    level recovers above the threshold or the battery starts charging.
    """

    def __init__(
        self,
        config: PowerConfig,
        on_low: Callable[[], Awaitable[None]],
    ) -> None:
        self._path = Path(config.battery_path)
        self._threshold = config.low_battery_pct
        self._interval = config.poll_interval_s
        self._on_low = on_low
        self._fired = False

    def read(self) -> Optional[tuple[int, str]]:
        """Return ``(capacity_pct, status)`` or None when unreadable."""
        try:
            capacity = int((self._path / "capacity").read_text().strip())
            status = (self._path / "status").read_text().strip()
        except (OSError, ValueError) as exc:
            logger.debug("Battery read failed at %s: %s", self._path, exc)
            return None
        return capacity, status

    async def poll(self) -> None:
        """Take one reading and fire the low-battery callback if due."""
        reading = self.read()
        if reading is None:
            return
        capacity, status = reading
        low = status == "Discharging" and capacity <= self._threshold
        if low and not self._fired:
            self._fired = True
            logger.warning("Battery at %d%% (%s)", capacity, status)
            await self._on_low()
        elif not low and self._fired:
            logger.info("Battery recovered: %d%% (%s)", capacity, status)
            self._fired = False

    async def run(self) -> None:
        if self.read() is None:
            logger.info("No battery at %s, low-battery monitoring disabled", self._path)
            return
        while True:
            await self.poll()
            await asyncio.sleep(self._interval)
