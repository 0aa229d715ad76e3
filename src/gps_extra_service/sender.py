"""Serialize reading snapshots into keyed payloads and push them to the viewer.

Payloads are small ordered ``dict[str, str]`` objects::

    {"msg_type": "POSITION_UPDATE", "latitude": "37.500000",
     "longitude": "127.000000", "altitude": "50.200000"}

    {"msg_type": "SATELLITES_UPDATE", "active": "7", "inview": "11"}

Each value is limited to ``CHAR_BUFF_SIZE - 1`` characters.
"""

from __future__ import annotations

import logging

import orjson

from gps_extra_service.channel import MessagePortChannel
from gps_extra_service.exceptions import ChannelError
from gps_extra_service.models import PositionReading, SatelliteReading, ServiceStatus
from gps_extra_service.probe import REMOTE_APP_ID, REMOTE_PORT
from gps_extra_service.store import ReadingStore

logger = logging.getLogger(__name__)

CHAR_BUFF_SIZE = 20

MESSAGE_TYPE_POSITION_UPDATE = "POSITION_UPDATE"
MESSAGE_TYPE_SATELLITES_UPDATE = "SATELLITES_UPDATE"


def _fit(text: str) -> str:
    return text[: CHAR_BUFF_SIZE - 1]


def build_position_payload(position: PositionReading) -> dict[str, str]:
    return {
        "msg_type": MESSAGE_TYPE_POSITION_UPDATE,
        "latitude": _fit("%f" % position.latitude),
        "longitude": _fit("%f" % position.longitude),
        "altitude": _fit("%f" % position.altitude),
    }


def build_satellite_payload(satellites: SatelliteReading) -> dict[str, str]:
    return {
        "msg_type": MESSAGE_TYPE_SATELLITES_UPDATE,
        "active": _fit("%d" % satellites.active),
        "inview": _fit("%d" % satellites.inview),
    }


def parse_payload(raw: str | bytes | dict) -> dict:
    """Decode a payload as the viewer sees it, converting numeric fields back.

    Raises
    ------
    ValueError
        On an unknown ``msg_type`` or a non-numeric field.
    """
    msg = orjson.loads(raw) if isinstance(raw, (str, bytes)) else dict(raw)
    msg_type = msg.get("msg_type")
    if msg_type == MESSAGE_TYPE_POSITION_UPDATE:
        fields, conv = ("latitude", "longitude", "altitude"), float
    elif msg_type == MESSAGE_TYPE_SATELLITES_UPDATE:
        fields, conv = ("active", "inview"), int
    else:
        raise ValueError(f"unknown msg_type: {msg_type!r}")

    result: dict = {"msg_type": msg_type}
    for name in fields:
        result[name] = conv(msg[name])
    return result


class MessageSender:
    """Pushes the store's current readings to the viewer port."""

    def __init__(
        self,
        channel: MessagePortChannel,
        store: ReadingStore,
        status: ServiceStatus,
    ) -> None:
        self._channel = channel
        self._store = store
        self._status = status

    async def send_position(self) -> bool:
        return await self.send_message(build_position_payload(self._store.position))

    async def send_satellite(self) -> bool:
        return await self.send_message(build_satellite_payload(self._store.satellites))

    async def send_message(self, payload: dict[str, str]) -> bool:
        """Send *payload* to the viewer.

        Returns True without sending when no viewer port is registered, so
        an absent consumer is never treated as a failure.
        """
        if not self._status.peer_connected:
            return True

        try:
            await self._channel.send_message(REMOTE_APP_ID, REMOTE_PORT, payload)
        except ChannelError as exc:
            logger.error("Message send error: %s", exc)
            return False

        logger.debug("Message %s sent", payload.get("msg_type"))
        return True
