"""Dataclass models for readings and service status.

Readings are plain mutable records; the only rule they carry is the
freshness check used before forwarding.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Readings older than this (seconds) are not forwarded as live data.
MAX_TIME_DIFF = 30

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class ProviderState(enum.Enum):
    """Location service state reported by the provider."""

    DISABLED = "DISABLED"
    ENABLED = "ENABLED"
    SEARCHING = "SEARCHING"


class GpsStatus(enum.Enum):
    """GPS hardware status as reported by runtime info."""

    DISABLED = "DISABLED"
    SEARCHING = "SEARCHING"
    CONNECTED = "CONNECTED"


class AccuracyLevel(enum.IntEnum):
    """Coarse accuracy level of a position fix."""

    NONE = 0
    COUNTRY = 1
    REGION = 2
    COUNTY = 3
    LOCALITY = 4
    POSTALCODE = 5
    STREET = 6
    DETAILED = 7


@dataclass
class PositionReading:
    """A single position fix."""

    altitude: float = 0.0
    latitude: float = 0.0
    longitude: float = 0.0
    climb: float = 0.0
    heading: float = 0.0
    speed: float = 0.0
    horizontal_accuracy: float = 0.0
    vertical_accuracy: float = 0.0
    accuracy_level: AccuracyLevel = AccuracyLevel.NONE
    timestamp: datetime = EPOCH

    def age(self, now: datetime) -> float:
        """Seconds between *now* and this reading's timestamp."""
        return (now - self.timestamp).total_seconds()

    def is_fresh(self, now: datetime) -> bool:
        return self.age(now) < MAX_TIME_DIFF


@dataclass
class SatelliteReading:
    """Satellite counts at a point in time."""

    active: int = 0
    inview: int = 0
    timestamp: datetime = EPOCH


@dataclass
class SatelliteInfo:
    """Per-satellite detail, used for diagnostics only."""

    azimuth: int = 0
    elevation: int = 0
    prn: int = 0
    snr: int = 0
    in_use: bool = False


@dataclass
class ServiceStatus:
    """Subscription flags and provider handle owned by the subscription manager."""

    gps_enabled: bool = False
    sat_enabled: bool = False
    provider: Optional[Any] = None
    state: ProviderState = ProviderState.DISABLED
    peer_connected: bool = False


# ── provider events ────────────────────────────────────────────────


@dataclass
class ServiceStateChanged:
    state: ProviderState


@dataclass
class PositionUpdated:
    latitude: float
    longitude: float
    altitude: float
    timestamp: datetime


@dataclass
class SatelliteUpdated:
    active: int
    inview: int
    timestamp: datetime
