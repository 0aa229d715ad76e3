"""On-demand connectivity checks: GPS sensor status and viewer port reachability."""

from __future__ import annotations

import logging
from typing import Optional

from gps_extra_service.channel import MessagePortChannel
from gps_extra_service.exceptions import ChannelError, ProviderError
from gps_extra_service.models import GpsStatus, ServiceStatus
from gps_extra_service.provider import LocationProvider

logger = logging.getLogger(__name__)

REMOTE_APP_ID = "org.gec.gpsViewer"
REMOTE_PORT = "gps.port"


class ConnectivityProbe:
    """Answers "is the sensor connected?" and "is the viewer listening?"."""

    def __init__(self, channel: MessagePortChannel, status: ServiceStatus) -> None:
        self._channel = channel
        self._status = status

    def is_sensor_connected(self, runtime_info: Optional[LocationProvider]) -> bool:
        """True iff the runtime reports the GPS as connected.

        A failed query is logged and counts as not connected.
        """
        if runtime_info is None:
            logger.debug("GPS status unknown: no provider handle")
            return False
        try:
            gps_status = runtime_info.gps_status()
        except ProviderError as exc:
            logger.error("GPS status error [%s,%s]", exc.code.value, exc.message)
            return False

        logger.debug(
            "Location service %s, GPS status %s",
            self._status.state.value,
            gps_status.value,
        )
        return gps_status is GpsStatus.CONNECTED

    def check_peer_reachable(self) -> bool:
        """Refresh ``peer_connected`` from the viewer's port registration."""
        try:
            self._status.peer_connected = self._channel.check_remote_port(
                REMOTE_APP_ID, REMOTE_PORT
            )
        except ChannelError as exc:
            logger.error("Remote port check error: %s", exc)
        else:
            logger.info(
                "Viewer port %s/%s %s",
                REMOTE_APP_ID,
                REMOTE_PORT,
                "registered" if self._status.peer_connected else "not registered",
            )
        return self._status.peer_connected
