"""
core/registry.py — Owner of every live OBS session.

Two indices are kept in lockstep:
    session_id → OBSSession
    config_id  → session_id      (stored connection record → its live session)

A stored record has at most one live session; connecting it again replaces
the older session. Removal happens on explicit close, on idle eviction, and
whenever a session's transport drops.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from verse_relay.verses.formatter import display_setup_settings

from .errors import OBSError, SessionClosed
from .handshake import SessionState
from .session import ConnectionConfig, OBSSession, utcnow

log = logging.getLogger(__name__)

RegistryEventCallback = Callable[[OBSSession, str, dict], Awaitable[None]]


@dataclass
class ConnectionStatus:
    connected: bool = False
    authenticated: bool = False
    last_activity_at: Optional[datetime] = None
    session_id: Optional[str] = None
    config_id: Optional[str] = None
    url: Optional[str] = None
    source_name: Optional[str] = None
    state: str = SessionState.CLOSED.value

    @classmethod
    def of(cls, session: OBSSession) -> "ConnectionStatus":
        ready = session.is_ready
        return cls(
            connected=ready,
            authenticated=ready,
            last_activity_at=session.last_activity_at,
            session_id=session.session_id,
            config_id=session.config_id,
            url=session.config.url,
            source_name=session.source_name,
            state=session.state.value,
        )

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "authenticated": self.authenticated,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "session_id": self.session_id,
            "config_id": self.config_id,
            "url": self.url,
            "source_name": self.source_name,
            "state": self.state,
        }


class ConnectionRegistry:
    """
    Usage:
        registry = ConnectionRegistry()
        sid = await registry.create(ConnectionConfig(url="ws://localhost:4455", password="..."))
        session = registry.lookup(sid)
        registry.start_eviction(interval=600, threshold=1800)
        ...
        await registry.shutdown()
    """

    def __init__(
        self,
        handshake_timeout: float = 10.0,
        request_timeout: float = 5.0,
        open_timeout: float = 10.0,
        display_setup: bool = True,
        session_factory: Callable[..., OBSSession] = OBSSession,
    ):
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.open_timeout = open_timeout
        self.display_setup = display_setup
        self._session_factory = session_factory
        self._sessions: dict[str, OBSSession] = {}
        self._by_config: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._event_listeners: list[RegistryEventCallback] = []
        self._background: set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Create / lookup ───────────────────────────────────────────────

    async def create(self, config: ConnectionConfig) -> str:
        """Connect and authenticate, then index the session. Returns its session_id."""
        session = self._session_factory(
            config,
            handshake_timeout=self.handshake_timeout,
            request_timeout=self.request_timeout,
            open_timeout=self.open_timeout,
        )
        session.on_close(self._unindex)
        for cb in self._event_listeners:
            session.on_event(cb)

        try:
            await session.open()
        except OBSError as e:
            log.warning(f"OBS connection to {config.url} failed: {e}")
            raise

        replaced: Optional[OBSSession] = None
        async with self._lock:
            if session.state != SessionState.READY:
                raise SessionClosed(f"Session to {config.url} closed before it could be registered")
            self._sessions[session.session_id] = session
            if config.config_id:
                previous_id = self._by_config.get(config.config_id)
                replaced = self._sessions.get(previous_id) if previous_id else None
                self._by_config[config.config_id] = session.session_id

        if replaced is not None:
            log.info(f"Replacing session {replaced.session_id} for connection {config.config_id}")
            self._unindex(replaced)
            await replaced.close("replaced by a new session")

        log.info(f"OBS session registered: {session.session_id} (connection {config.config_id or '-'})")
        if self.display_setup:
            self._spawn(self._setup_display(session))
        return session.session_id

    def lookup(self, key: str) -> Optional[OBSSession]:
        """Find a live session by session_id, then by stored connection id."""
        session = self._sessions.get(key)
        if session is None:
            session_id = self._by_config.get(key)
            session = self._sessions.get(session_id) if session_id else None
        return session

    def status(self, key: str) -> ConnectionStatus:
        session = self.lookup(key)
        if session is None:
            return ConnectionStatus()
        return ConnectionStatus.of(session)

    def list_for_owner(self, owner_id: Optional[str]) -> list[OBSSession]:
        return [s for s in self._sessions.values() if s.owner_id == owner_id]

    def sessions(self) -> list[OBSSession]:
        return list(self._sessions.values())

    # ── Close / evict ─────────────────────────────────────────────────

    async def close(self, key: str, reason: str = "closed by request") -> bool:
        """Close and unindex a session. Returns False when nothing matched."""
        async with self._lock:
            session = self.lookup(key)
            if session is None:
                return False
            self._unindex(session)
        await session.close(reason)
        return True

    async def close_owner(self, owner_id: str) -> int:
        sessions = self.list_for_owner(owner_id)
        for session in sessions:
            await self.close(session.session_id, reason=f"owner {owner_id} disconnected")
        return len(sessions)

    async def evict_idle(self, threshold: float, now: Optional[datetime] = None) -> list[str]:
        """Close every READY session idle for longer than `threshold` seconds."""
        cutoff = (now or utcnow()) - timedelta(seconds=threshold)
        async with self._lock:
            idle = [
                s for s in self._sessions.values()
                if s.is_ready and s.last_activity_at < cutoff
            ]
            for session in idle:
                self._unindex(session)
        for session in idle:
            log.info(f"Cleaning up inactive OBS session: {session.session_id} ({session.config.url})")
            await session.close("idle")
        return [s.session_id for s in idle]

    def start_eviction(self, interval: float = 600.0, threshold: float = 1800.0) -> asyncio.Task:
        if self._sweeper and not self._sweeper.done():
            return self._sweeper
        self._sweeper = asyncio.create_task(self._sweep_loop(interval, threshold), name="obs-idle-sweep")
        log.info(f"Idle sweep every {interval:.0f}s (threshold {threshold:.0f}s)")
        return self._sweeper

    async def _sweep_loop(self, interval: float, threshold: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                evicted = await self.evict_idle(threshold)
                if evicted:
                    log.info(f"Idle sweep closed {len(evicted)} session(s)")
            except Exception as e:
                log.error(f"Idle sweep error: {e}")

    async def shutdown(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        for session in self.sessions():
            await self.close(session.session_id, reason="shutdown")
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    def _unindex(self, session: OBSSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        cid = session.config_id
        if cid and self._by_config.get(cid) == session.session_id:
            del self._by_config[cid]

    # ── Events / background work ──────────────────────────────────────

    def add_event_listener(self, callback: RegistryEventCallback) -> None:
        """Receive OBS events (op 5) from every session created after this call."""
        self._event_listeners.append(callback)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _setup_display(self, session: OBSSession) -> None:
        try:
            await session.call(
                "SetInputSettings",
                {"inputName": session.source_name, "inputSettings": display_setup_settings()},
            )
            log.info(f"Set up 16:9 text source '{session.source_name}' on {session.session_id}")
        except OBSError as e:
            log.warning(f"Display setup for '{session.source_name}' on {session.session_id} failed: {e}")
