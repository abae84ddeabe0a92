"""
core/transport.py — One message-oriented duplex connection to an OBS instance.

The transport knows nothing about the OBS protocol. It opens a WebSocket,
feeds every text frame (in arrival order) to `on_message`, and reports the end
of the connection exactly once through `on_closed(code, reason)`. It never
retries; reconnect policy lives in the registry and in startup restore.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import TransportError

log = logging.getLogger(__name__)

MessageCallback = Callable[[str], Awaitable[None]]
ClosedCallback = Callable[[Optional[int], str], None]


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        on_message: MessageCallback,
        on_closed: ClosedCallback,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.open_timeout = open_timeout
        self._on_message = on_message
        self._on_closed = on_closed
        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._closed_emitted = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed_emitted

    async def open(self) -> None:
        if self._ws is not None or self._closed_emitted:
            raise TransportError(f"Transport for {self.url} already used")
        try:
            self._ws = await connect(self.url, open_timeout=self.open_timeout, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._emit_closed(None, f"open failed: {e}")
            raise TransportError(f"Could not connect to {self.url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop(), name=f"obs-reader:{self.url}")

    async def send(self, frame: str) -> None:
        if not self.is_open:
            raise TransportError(f"Transport for {self.url} is not open")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise TransportError(f"Connection to {self.url} dropped: {e}") from e

    async def close(self) -> None:
        if self._ws is None:
            self._emit_closed(None, "closed before open")
            return
        try:
            await self._ws.close()
        except (OSError, WebSocketException) as e:
            log.debug(f"Error closing socket to {self.url}: {e}")
        reader = self._reader
        if reader and reader is not asyncio.current_task():
            await asyncio.gather(reader, return_exceptions=True)
        self._emit_closed(self._ws.close_code, self._ws.close_reason or "closed")

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                await self._on_message(raw)
        except ConnectionClosed as e:
            log.debug(f"Socket to {self.url} closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Reader for {self.url} failed: {e}")
            await self._ws.close()
        finally:
            self._emit_closed(self._ws.close_code, self._ws.close_reason or "connection closed")

    def _emit_closed(self, code: Optional[int], reason: str) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        try:
            self._on_closed(code, reason)
        except Exception as e:
            log.error(f"Transport close listener error: {e}")
