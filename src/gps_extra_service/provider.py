"""Abstract location provider.

A provider is the platform subsystem furnishing position fixes and
satellite telemetry.  Every operation raises
:class:`~gps_extra_service.exceptions.ProviderError` on failure; callbacks
are invoked on the event loop, never concurrently with each other.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from gps_extra_service.exceptions import ErrorCode, ProviderError
from gps_extra_service.models import (
    GpsStatus,
    PositionReading,
    ProviderState,
    SatelliteInfo,
    SatelliteReading,
)

StateChangedCallback = Callable[[ProviderState], None]
PositionUpdatedCallback = Callable[[float, float, float, datetime], None]
SatelliteUpdatedCallback = Callable[[int, int, datetime], None]
SatelliteInViewCallback = Callable[[SatelliteInfo], bool]


class LocationProvider(ABC):
    """Handle to a location provider session.

    Creating the object is "handle creation"; :meth:`destroy` releases it.
    """

    @abstractmethod
    async def start(self) -> None:
        """Begin delivering state changes and updates."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering updates; the handle stays valid."""

    @abstractmethod
    def destroy(self) -> None:
        """Release the handle and every registered callback."""

    @abstractmethod
    def set_service_state_changed_cb(self, callback: StateChangedCallback) -> None: ...

    @abstractmethod
    def unset_service_state_changed_cb(self) -> None: ...

    @abstractmethod
    def set_position_updated_cb(
        self, callback: PositionUpdatedCallback, interval: int
    ) -> None: ...

    @abstractmethod
    def unset_position_updated_cb(self) -> None: ...

    @abstractmethod
    def set_satellite_updated_cb(
        self, callback: SatelliteUpdatedCallback, interval: int
    ) -> None: ...

    @abstractmethod
    def unset_satellite_updated_cb(self) -> None: ...

    @abstractmethod
    def get_location(self) -> PositionReading:
        """Current position fix."""

    @abstractmethod
    def get_last_location(self) -> PositionReading:
        """Last known position fix, possibly old."""

    @abstractmethod
    def get_satellite_status(self) -> SatelliteReading: ...

    @abstractmethod
    def get_last_satellite_status(self) -> SatelliteReading: ...

    @abstractmethod
    def foreach_satellite_in_view(self, callback: SatelliteInViewCallback) -> None:
        """Call *callback* per satellite in view until it returns False."""

    @abstractmethod
    def gps_status(self) -> GpsStatus:
        """Runtime GPS hardware status."""

    def get_nmea(self) -> str:
        """Latest raw NMEA sentence, where the provider keeps one."""
        raise ProviderError(ErrorCode.NOT_SUPPORTED, "NMEA not available")
