"""Latest-reading cache shared between the subscription manager and the sender.

Holds one :class:`PositionReading`, one :class:`SatelliteReading` and the
``data_sent`` latch.  A reading older than the one already held is rejected
so timestamps never move backward.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from gps_extra_service.models import PositionReading, SatelliteReading

logger = logging.getLogger(__name__)


class ReadingStore:
    """Plain record of the latest readings."""

    def __init__(self) -> None:
        self.position = PositionReading()
        self.satellites = SatelliteReading()
        self._data_sent = False

    @property
    def data_sent(self) -> bool:
        """True once the warm-start data reached the consumer."""
        return self._data_sent

    def mark_data_sent(self) -> None:
        self._data_sent = True

    def update_position(self, reading: PositionReading) -> bool:
        """Replace the stored position unless *reading* is older."""
        if reading.timestamp < self.position.timestamp:
            logger.debug(
                "Ignoring position from %s (have %s)",
                reading.timestamp.isoformat(),
                self.position.timestamp.isoformat(),
            )
            return False
        self.position = replace(reading)
        return True

    def update_satellites(self, reading: SatelliteReading) -> bool:
        """Replace the stored satellite counts unless *reading* is older."""
        if reading.timestamp < self.satellites.timestamp:
            logger.debug(
                "Ignoring satellite status from %s (have %s)",
                reading.timestamp.isoformat(),
                self.satellites.timestamp.isoformat(),
            )
            return False
        self.satellites = replace(reading)
        return True
