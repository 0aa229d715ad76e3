"""Named message ports over WebSocket-on-Unix-socket.

A consumer application registers a port by listening on
``<socket_dir>/<app_id>/<port_name>.sock``.  Messages are JSON objects of
string values, one per WebSocket text frame.  The connection to a port is
opened lazily and reused until it fails.
"""

from __future__ import annotations

import asyncio
import logging
import stat
from pathlib import Path
from typing import Optional

import orjson
import websockets
import websockets.exceptions

from gps_extra_service.config import ChannelConfig
from gps_extra_service.exceptions import ChannelError

logger = logging.getLogger(__name__)


class MessagePortChannel:
    """Client side of the message-port IPC."""

    def __init__(self, config: ChannelConfig) -> None:
        self._socket_dir = Path(config.socket_dir)
        self._send_timeout = config.send_timeout_s
        self._connections: dict[Path, websockets.ClientConnection] = {}

    def port_path(self, app_id: str, port_name: str) -> Path:
        return self._socket_dir / app_id / f"{port_name}.sock"

    def check_remote_port(self, app_id: str, port_name: str) -> bool:
        """Return True if *app_id* has registered *port_name*.

        Raises
        ------
        ChannelError
            If the port directory cannot be inspected.
        """
        path = self.port_path(app_id, port_name)
        try:
            mode = path.stat().st_mode
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ChannelError(f"cannot inspect {path}: {exc}") from exc
        return stat.S_ISSOCK(mode)

    async def send_message(self, app_id: str, port_name: str, payload: dict[str, str]) -> None:
        """Deliver *payload* to the remote port.

        Raises
        ------
        ChannelError
            If the port is unreachable or the send fails.  The cached
            connection is dropped so the next send reconnects.
        """
        if not payload:
            raise ChannelError("invalid payload")

        path = self.port_path(app_id, port_name)
        try:
            ws = await self._connection(path)
            await asyncio.wait_for(
                ws.send(orjson.dumps(payload).decode()),
                timeout=self._send_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            await self._drop(path)
            raise ChannelError(f"send to {app_id}/{port_name} failed: {exc!r}") from exc

    async def close(self) -> None:
        """Close every cached port connection."""
        for path in list(self._connections):
            await self._drop(path)

    # ── internal ────────────────────────────────────────────────────

    async def _connection(self, path: Path) -> websockets.ClientConnection:
        ws = self._connections.get(path)
        if ws is not None:
            return ws
        ws = await asyncio.wait_for(
            websockets.unix_connect(str(path)),
            timeout=self._send_timeout,
        )
        self._connections[path] = ws
        logger.info("Connected to message port %s", path)
        return ws

    async def _drop(self, path: Path) -> None:
        ws: Optional[websockets.ClientConnection] = self._connections.pop(path, None)
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            logger.debug("Error closing %s: %s", path, exc)
