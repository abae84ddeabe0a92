"""
core/handshake.py — OBS WebSocket v5 Hello / Identify / Identified exchange.

    CONNECTING ──Hello──▶ AUTHENTICATING ──Identified──▶ READY
         │                      │
         └──── close / timeout ─┴──▶ (session closes, waiter fails)
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from . import protocol
from .errors import AuthenticationError, OBSError, TransportError

log = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"


class Handshake:
    """
    Drives one session from CONNECTING to READY. A connect can fail with
    TransportError (socket closed before Hello), AuthenticationError (4009 close
    or an unusable challenge) or HandshakeTimeout (no Identified before the
    session's deadline).
    """

    def __init__(self, password: str, send: Callable[[str], Awaitable[None]], label: str = ""):
        self._password = password
        self._send = send
        self._label = label
        self.state = SessionState.CONNECTING
        self.negotiated_rpc_version: Optional[int] = None
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()
        # a failure can land after the waiter has already given up
        self._done.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def complete(self) -> bool:
        return self.state == SessionState.READY

    async def wait(self) -> int:
        """Suspend until Identified arrives or the handshake fails."""
        return await self._done

    async def handle(self, op: int, data: dict) -> bool:
        """Consume a handshake frame. Returns False for frames that belong to later stages."""
        if op == protocol.OpCode.HELLO:
            await self._on_hello(data)
            return True
        if op == protocol.OpCode.IDENTIFIED:
            self._on_identified(data)
            return True
        return False

    async def _on_hello(self, data: dict) -> None:
        if self.state != SessionState.CONNECTING:
            log.warning(f"[{self._label}] Unexpected Hello in state {self.state.value}")
            return
        auth = data.get("authentication")
        token = None
        if auth is not None:
            challenge = auth.get("challenge") if isinstance(auth, dict) else None
            salt = auth.get("salt") if isinstance(auth, dict) else None
            if not isinstance(challenge, str) or not isinstance(salt, str):
                self.fail(AuthenticationError("Malformed authentication challenge from OBS"))
                return
            token = protocol.auth_token(self._password, salt, challenge)
        log.debug(
            f"[{self._label}] Hello from obs-websocket {data.get('obsWebSocketVersion', '?')}"
            f" (auth {'required' if token else 'disabled'})"
        )
        self.state = SessionState.AUTHENTICATING
        try:
            await self._send(protocol.identify(token))
        except TransportError as e:
            self.fail(e)

    def _on_identified(self, data: dict) -> None:
        if self.state != SessionState.AUTHENTICATING:
            log.warning(f"[{self._label}] Unexpected Identified in state {self.state.value}")
            return
        self.negotiated_rpc_version = data.get("negotiatedRpcVersion", protocol.RPC_VERSION)
        self.state = SessionState.READY
        if not self._done.done():
            self._done.set_result(self.negotiated_rpc_version)

    def on_transport_closed(self, code: Optional[int], reason: str) -> None:
        if self._done.done():
            return
        if code == protocol.CLOSE_AUTHENTICATION_FAILED or self.state == SessionState.AUTHENTICATING:
            self.fail(AuthenticationError(f"OBS rejected authentication ({code}: {reason})"))
        else:
            self.fail(TransportError(f"Connection closed before OBS greeting ({code}: {reason})"))

    def fail(self, exc: OBSError) -> None:
        if not self._done.done():
            self._done.set_exception(exc)
