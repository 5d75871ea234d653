"""WebSocket signaling channel used by the peer client."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator
from urllib.parse import urlsplit, urlunsplit

import websockets
import websockets.exceptions

logger = logging.getLogger(__name__)

SIGNALING_PATH = "/signaling"


class SignalingError(RuntimeError):
    """Raised when the signaling channel is used before it is connected."""


def signaling_ws_url(base_url: str) -> str:
    """Turn the configured ``http(s)://`` server URL into its WebSocket endpoint."""

    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if not path.endswith(SIGNALING_PATH):
        path = f"{path}{SIGNALING_PATH}"
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class SignalingChannel:
    """JSON frames over a single WebSocket connection."""

    def __init__(self, url: str) -> None:
        self.url = signaling_ws_url(url)
        self._ws: Any = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> None:
        if self._closed:
            raise SignalingError("Signaling channel is closed")
        ws = await websockets.connect(self.url)
        if self._closed:
            await ws.close()
            raise SignalingError("Signaling channel closed while connecting")
        self._ws = ws
        logger.info("Connected to signaling server %s", self.url)

    async def send(self, message: dict) -> None:
        if not self.connected:
            raise SignalingError("Signaling channel is not connected")
        await self._ws.send(json.dumps(message))

    async def messages(self) -> AsyncIterator[dict]:
        """Yield decoded frames until the server closes the connection."""

        if self._ws is None:
            raise SignalingError("Signaling channel is not connected")
        try:
            async for raw in self._ws:
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON signaling frame: %s", str(raw)[:100])
                    continue
                if isinstance(payload, dict):
                    yield payload
        except websockets.exceptions.ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)

    async def close(self) -> None:
        """Close the socket; a channel closed before connecting never opens."""

        if self._closed:
            return
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
