"""Tests for the message-port channel."""

import asyncio
import shutil
import tempfile
from pathlib import Path

import orjson
import pytest
import websockets

from gps_extra_service.channel import MessagePortChannel
from gps_extra_service.config import ChannelConfig
from gps_extra_service.exceptions import ChannelError
from gps_extra_service.probe import REMOTE_APP_ID, REMOTE_PORT


@pytest.fixture
def socket_dir():
    # Short path: AF_UNIX socket paths are limited to ~108 bytes.
    path = Path(tempfile.mkdtemp(prefix="gps"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def _channel(socket_dir: Path) -> MessagePortChannel:
    return MessagePortChannel(ChannelConfig(socket_dir=str(socket_dir), send_timeout_s=2.0))


def test_missing_port_not_registered(socket_dir) -> None:
    assert _channel(socket_dir).check_remote_port(REMOTE_APP_ID, REMOTE_PORT) is False


def test_regular_file_is_not_a_port(socket_dir) -> None:
    """Only a listening socket counts as a registered port."""
    port_dir = socket_dir / REMOTE_APP_ID
    port_dir.mkdir()
    (port_dir / f"{REMOTE_PORT}.sock").write_text("")
    assert _channel(socket_dir).check_remote_port(REMOTE_APP_ID, REMOTE_PORT) is False


@pytest.mark.asyncio
async def test_send_to_missing_port_raises(socket_dir) -> None:
    channel = _channel(socket_dir)
    with pytest.raises(ChannelError):
        await channel.send_message(REMOTE_APP_ID, REMOTE_PORT, {"msg_type": "X"})


@pytest.mark.asyncio
async def test_empty_payload_rejected(socket_dir) -> None:
    channel = _channel(socket_dir)
    with pytest.raises(ChannelError):
        await channel.send_message(REMOTE_APP_ID, REMOTE_PORT, {})


@pytest.mark.asyncio
async def test_send_over_unix_socket(socket_dir) -> None:
    """Payloads arrive at the viewer's port as JSON text frames, in order."""
    port_dir = socket_dir / REMOTE_APP_ID
    port_dir.mkdir()
    path = port_dir / f"{REMOTE_PORT}.sock"
    received: list[dict] = []

    async def viewer(ws) -> None:
        async for message in ws:
            received.append(orjson.loads(message))

    async with websockets.unix_serve(viewer, str(path)):
        channel = _channel(socket_dir)
        assert channel.check_remote_port(REMOTE_APP_ID, REMOTE_PORT) is True
        await channel.send_message(
            REMOTE_APP_ID, REMOTE_PORT,
            {"msg_type": "SATELLITES_UPDATE", "active": "6", "inview": "9"},
        )
        await channel.send_message(
            REMOTE_APP_ID, REMOTE_PORT,
            {"msg_type": "POSITION_UPDATE", "latitude": "37.500000",
             "longitude": "127.000000", "altitude": "50.200000"},
        )
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)
        await channel.close()

    assert [m["msg_type"] for m in received] == ["SATELLITES_UPDATE", "POSITION_UPDATE"]
    assert received[1]["altitude"] == "50.200000"
