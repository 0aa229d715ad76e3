"""Shared fakes: an in-memory location provider and message-port channel."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from gps_extra_service.exceptions import ChannelError, ErrorCode, ProviderError, ResourceError
from gps_extra_service.models import (
    GpsStatus,
    PositionReading,
    ProviderState,
    SatelliteInfo,
    SatelliteReading,
)
from gps_extra_service.provider import LocationProvider

NOW = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def position(age_s: float = 1.0, **kwargs) -> PositionReading:
    """A position fix *age_s* seconds older than :data:`NOW`."""
    fields = {"latitude": 37.5, "longitude": 127.0, "altitude": 50.2}
    fields.update(kwargs)
    return PositionReading(timestamp=NOW - timedelta(seconds=age_s), **fields)


def satellites(active: int = 6, inview: int = 9, age_s: float = 1.0) -> SatelliteReading:
    return SatelliteReading(active=active, inview=inview, timestamp=NOW - timedelta(seconds=age_s))


class FakeProvider(LocationProvider):
    """Records every call; operations named in ``fail_on`` raise."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.location: Optional[PositionReading] = position()
        self.last_location: Optional[PositionReading] = position()
        self.sky: Optional[SatelliteReading] = satellites()
        self.last_sky: Optional[SatelliteReading] = satellites()
        self.in_view = [SatelliteInfo(azimuth=120, elevation=45, prn=7, snr=38, in_use=True)]
        self.gps = GpsStatus.CONNECTED
        self.nmea = "$GPGGA,120000.00,3730.000,N,12700.000,E,1,06,1.0,50.2,M,,M,,*5C"
        self.state_cb = None
        self.position_cb = None
        self.satellite_cb = None
        self.intervals: dict[str, int] = {}

    def _call(self, name: str, error: type = ProviderError) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise error(ErrorCode.NOT_SUPPORTED, f"{name} failed")

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def start(self) -> None:
        self._call("start")

    async def stop(self) -> None:
        self._call("stop")

    def destroy(self) -> None:
        self._call("destroy")

    def set_service_state_changed_cb(self, callback) -> None:
        self._call("set_service_state_changed_cb", ResourceError)
        self.state_cb = callback

    def unset_service_state_changed_cb(self) -> None:
        self._call("unset_service_state_changed_cb")
        self.state_cb = None

    def set_position_updated_cb(self, callback, interval: int) -> None:
        self._call("set_position_updated_cb", ResourceError)
        self.position_cb = callback
        self.intervals["position"] = interval

    def unset_position_updated_cb(self) -> None:
        self._call("unset_position_updated_cb")
        self.position_cb = None

    def set_satellite_updated_cb(self, callback, interval: int) -> None:
        self._call("set_satellite_updated_cb", ResourceError)
        self.satellite_cb = callback
        self.intervals["satellite"] = interval

    def unset_satellite_updated_cb(self) -> None:
        self._call("unset_satellite_updated_cb")
        self.satellite_cb = None

    def _value(self, name: str, value):
        self._call(name)
        if value is None:
            raise ProviderError(ErrorCode.SERVICE_NOT_AVAILABLE, f"{name}: no data")
        return value

    def get_location(self) -> PositionReading:
        return self._value("get_location", self.location)

    def get_last_location(self) -> PositionReading:
        return self._value("get_last_location", self.last_location)

    def get_satellite_status(self) -> SatelliteReading:
        return self._value("get_satellite_status", self.sky)

    def get_last_satellite_status(self) -> SatelliteReading:
        return self._value("get_last_satellite_status", self.last_sky)

    def foreach_satellite_in_view(self, callback) -> None:
        self._call("foreach_satellite_in_view")
        for sat in self.in_view:
            if not callback(sat):
                break

    def get_nmea(self) -> str:
        return self._value("get_nmea", self.nmea)

    def gps_status(self) -> GpsStatus:
        self._call("gps_status")
        return self.gps

    def emit_state(self, state: ProviderState) -> None:
        self.state_cb(state)


class FakeChannel:
    """Message-port channel that keeps sent payloads in memory."""

    def __init__(self, registered: bool = True) -> None:
        self.registered = registered
        self.fail = False
        self.probe_error = False
        self.sent: list[dict[str, str]] = []

    def check_remote_port(self, app_id: str, port_name: str) -> bool:
        if self.probe_error:
            raise ChannelError("port directory unreadable")
        return self.registered

    async def send_message(self, app_id: str, port_name: str, payload: dict[str, str]) -> None:
        if self.fail:
            raise ChannelError("peer went away")
        self.sent.append(dict(payload))

    def sent_types(self) -> list[str]:
        return [p["msg_type"] for p in self.sent]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()
