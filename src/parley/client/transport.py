"""Realtime transports used by the messaging session."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

logger = logging.getLogger(__name__)

Frame = tuple[str, Any]


class TransportError(ConnectionError):
    """Raised when the realtime channel cannot be opened or written to."""


class Transport(Protocol):
    """Bidirectional event channel to the transport hub."""

    @property
    def connected(self) -> bool: ...

    async def connect(self) -> None:
        """Open the channel; raises TransportError on failure."""

    async def send(self, event: str, data: Any) -> None:
        """Send one event; raises TransportError when the channel is down."""

    async def receive(self) -> Frame | None:
        """Return the next inbound event, or None once the channel is closed."""

    async def close(self) -> None:
        """Close the channel."""


def websocket_url(base_url: str, path: str = "/api/v1/ws") -> str:
    """Translate an http(s) base URL to the ws(s) endpoint."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}{path}"


class WebSocketTransport:
    """Transport over the server's WebSocket endpoint using aiohttp."""

    def __init__(
        self,
        base_url: str,
        token: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = 20.0,
    ) -> None:
        self.url = websocket_url(base_url)
        self._token = token
        self._session = session
        self._owns_session = session is None
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                params={"token": self._token},
                heartbeat=self._heartbeat,
            )
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"Could not connect to {self.url}: {exc}") from exc

    async def send(self, event: str, data: Any) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send_json({"event": event, "data": data})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(f"Failed to send {event}: {exc}") from exc

    async def receive(self) -> Frame | None:
        if self._ws is None:
            return None
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON frame")
                    continue
                if isinstance(frame, dict) and isinstance(frame.get("event"), str):
                    return frame["event"], frame.get("data")
                continue
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
