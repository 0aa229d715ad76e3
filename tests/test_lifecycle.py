"""Tests for the lifecycle controller and battery monitor."""

import asyncio
from pathlib import Path

import pytest

from conftest import FakeChannel, FakeProvider, fixed_clock
from gps_extra_service.config import PowerConfig
from gps_extra_service.exceptions import ErrorCode, ProviderError
from gps_extra_service.lifecycle import BatteryMonitor, ServiceLifecycleController
from gps_extra_service.manager import ManagerState, SubscriptionManager


def _controller(provider: FakeProvider) -> ServiceLifecycleController:
    manager = SubscriptionManager(lambda: provider, FakeChannel(), clock=fixed_clock)
    return ServiceLifecycleController(manager)


def _battery(tmp_path: Path, capacity: int, status: str) -> None:
    (tmp_path / "capacity").write_text(f"{capacity}\n")
    (tmp_path / "status").write_text(f"{status}\n")


class TestController:
    """Tests for :class:`ServiceLifecycleController`."""

    @pytest.mark.asyncio
    async def test_create_and_terminate(self) -> None:
        provider = FakeProvider()
        controller = _controller(provider)

        assert await controller.on_create() is True
        assert controller.manager.state is ManagerState.RUNNING
        await controller.on_terminate()
        assert controller.manager.state is ManagerState.STOPPED
        assert provider.count("destroy") == 1

    @pytest.mark.asyncio
    async def test_low_battery_stops(self) -> None:
        provider = FakeProvider()
        controller = _controller(provider)

        await controller.on_create()
        await controller.on_low_battery()
        assert controller.manager.status.provider is None
        await controller.on_terminate()
        assert provider.count("destroy") == 1

    def test_ignored_events(self) -> None:
        """Low memory and locale changes leave the service untouched."""
        provider = FakeProvider()
        controller = _controller(provider)
        controller.on_low_memory()
        controller.on_language_changed()
        controller.on_region_changed()
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self) -> None:
        provider = FakeProvider()
        controller = _controller(provider)

        task = asyncio.create_task(controller.run())
        await asyncio.sleep(0.01)
        assert controller.manager.state is ManagerState.RUNNING
        controller.request_shutdown()
        assert await task is True
        assert provider.count("destroy") == 1

    @pytest.mark.asyncio
    async def test_run_fails_when_create_fails(self) -> None:
        def factory():
            raise ProviderError(ErrorCode.NOT_SUPPORTED)

        manager = SubscriptionManager(factory, FakeChannel(), clock=fixed_clock)
        controller = ServiceLifecycleController(manager)
        assert await controller.run() is False


class TestBatteryMonitor:
    """Tests for :class:`BatteryMonitor`."""

    def _monitor(self, tmp_path: Path, fired: list) -> BatteryMonitor:
        async def on_low() -> None:
            fired.append(True)

        cfg = PowerConfig(battery_path=str(tmp_path), low_battery_pct=5, poll_interval_s=0.01)
        return BatteryMonitor(cfg, on_low)

    @pytest.mark.asyncio
    async def test_fires_once_when_low(self, tmp_path) -> None:
        fired: list = []
        monitor = self._monitor(tmp_path, fired)
        _battery(tmp_path, 4, "Discharging")

        await monitor.poll()
        await monitor.poll()
        assert fired == [True]

    @pytest.mark.asyncio
    async def test_charging_is_not_low(self, tmp_path) -> None:
        fired: list = []
        monitor = self._monitor(tmp_path, fired)
        _battery(tmp_path, 3, "Charging")
        await monitor.poll()
        assert fired == []

    @pytest.mark.asyncio
    async def test_rearms_after_recovery(self, tmp_path) -> None:
        fired: list = []
        monitor = self._monitor(tmp_path, fired)

        _battery(tmp_path, 5, "Discharging")
        await monitor.poll()
        _battery(tmp_path, 40, "Charging")
        await monitor.poll()
        _battery(tmp_path, 5, "Discharging")
        await monitor.poll()
        assert fired == [True, True]

    @pytest.mark.asyncio
    async def test_no_battery(self, tmp_path) -> None:
        """Without battery files the monitor returns immediately."""
        fired: list = []
        monitor = self._monitor(tmp_path / "missing", fired)
        assert monitor.read() is None
        await asyncio.wait_for(monitor.run(), timeout=1.0)
        assert fired == []
