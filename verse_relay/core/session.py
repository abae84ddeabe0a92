"""
core/session.py — One authenticated connection to an OBS instance.

A session owns its transport, handshake and pending-request table. It is
created and owned by the ConnectionRegistry; callers only ever see its
session_id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, SecretStr

from . import protocol
from .errors import HandshakeTimeout, OBSError, SessionClosed
from .handshake import Handshake, SessionState
from .multiplexer import RequestMultiplexer
from .transport import WebSocketTransport

log = logging.getLogger(__name__)

EventCallback = Callable[["OBSSession", str, dict], Awaitable[None]]
CloseCallback = Callable[["OBSSession"], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionConfig(BaseModel):
    url: str = "ws://localhost:4455"
    password: SecretStr = Field(default=SecretStr(""), repr=False)
    source_name: str = "Bible Verse"
    owner_id: Optional[str] = None
    config_id: Optional[str] = None
    name: str = ""
    is_active: bool = True


class OBSSession:
    def __init__(
        self,
        config: ConnectionConfig,
        handshake_timeout: float = 10.0,
        request_timeout: float = 5.0,
        open_timeout: float = 10.0,
        transport_factory: Callable[..., Any] = WebSocketTransport,
    ):
        self.session_id = uuid.uuid4().hex
        self.config = config
        self.handshake_timeout = handshake_timeout
        self.created_at = utcnow()
        self.last_activity_at = self.created_at

        label = f"{self.session_id[:8]} {config.url}"
        self._label = label
        self._transport = transport_factory(
            config.url, self._on_frame, self._on_transport_closed, open_timeout=open_timeout
        )
        self._handshake = Handshake(config.password.get_secret_value(), self._transport.send, label=label)
        self._mux = RequestMultiplexer(self._send, default_timeout=request_timeout, label=label)
        self._closed = False
        self._close_reason = ""
        self._close_listeners: list[CloseCallback] = []
        self._event_listeners: list[EventCallback] = []
        self._event_tasks: set[asyncio.Task] = set()

    # ── Identity ──────────────────────────────────────────────────────

    @property
    def config_id(self) -> Optional[str]:
        return self.config.config_id

    @property
    def owner_id(self) -> Optional[str]:
        return self.config.owner_id

    @property
    def source_name(self) -> str:
        return self.config.source_name

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        return self._handshake.state

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def pending_count(self) -> int:
        return self._mux.pending_count

    def __repr__(self) -> str:
        return f"<OBSSession {self.session_id} {self.config.url} {self.state.value}>"

    # ── Listeners ─────────────────────────────────────────────────────

    def on_close(self, callback: CloseCallback) -> None:
        self._close_listeners.append(callback)

    def on_event(self, callback: EventCallback) -> None:
        self._event_listeners.append(callback)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def open(self) -> None:
        """Connect and authenticate. Raises TransportError, AuthenticationError or HandshakeTimeout."""
        await self._transport.open()
        log.debug(f"[{self._label}] Socket opened, waiting for Hello")
        try:
            await asyncio.wait_for(self._handshake.wait(), self.handshake_timeout)
        except asyncio.TimeoutError:
            await self.close("handshake timed out")
            raise HandshakeTimeout(
                f"OBS at {self.config.url} did not complete the handshake within {self.handshake_timeout}s"
            ) from None
        except OBSError as e:
            await self.close(f"handshake failed: {e}")
            raise
        self.touch()
        log.info(f"OBS authenticated: {self.session_id} ({self.config.url})")

    async def close(self, reason: str = "closed") -> None:
        """Close the socket. Idempotent; pending calls fail with SessionClosed."""
        if not self._closed:
            self._close_reason = reason
        await self._transport.close()

    def touch(self) -> None:
        self.last_activity_at = utcnow()

    # ── Requests ──────────────────────────────────────────────────────

    async def call(
        self,
        request_type: str,
        request_data: Optional[dict] = None,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        if not self.is_ready:
            raise SessionClosed(f"Session {self.session_id} is {self.state.value}")
        return await self._mux.call(request_type, request_data, timeout=timeout, request_id=request_id)

    async def _send(self, frame: str) -> None:
        await self._transport.send(frame)

    # ── Transport callbacks ───────────────────────────────────────────

    async def _on_frame(self, raw: str) -> None:
        try:
            op, data = protocol.decode(raw)
        except protocol.ProtocolError as e:
            log.warning(f"[{self._label}] {e}")
            return

        if await self._handshake.handle(op, data):
            return
        if op == protocol.OpCode.REQUEST_RESPONSE:
            if self._mux.dispatch(data):
                self.touch()
        elif op == protocol.OpCode.EVENT:
            self._emit_event(data.get("eventType", ""), data.get("eventData") or {})
        else:
            log.debug(f"[{self._label}] Ignoring frame op={op}")

    def _emit_event(self, event_type: str, event_data: dict) -> None:
        if not self._event_listeners:
            return
        loop = asyncio.get_running_loop()
        for cb in self._event_listeners:
            task = loop.create_task(cb(self, event_type, event_data))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_done)

    def _event_done(self, task: asyncio.Task) -> None:
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"[{self._label}] Event listener failed: {exc}")

    def _on_transport_closed(self, code: Optional[int], reason: str) -> None:
        self._closed = True
        reason = self._close_reason or reason
        log.info(f"OBS session closed: {self.session_id} ({reason})")
        self._handshake.on_transport_closed(code, reason)
        self._mux.fail_all(SessionClosed(f"Session {self.session_id} closed: {reason}"))
        for cb in self._close_listeners:
            try:
                cb(self)
            except Exception as e:
                log.error(f"Session close listener error: {e}")
