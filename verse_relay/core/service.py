"""
core/service.py — The operations the rest of the application calls.

Every method takes either a live session_id or a stored connection id and
resolves it through the registry. An id with no live, authenticated session
raises ServiceUnavailable so callers can tell "OBS is not running" apart
from a failed request.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from verse_relay.verses.formatter import Verse, format_verse

from .errors import ServiceUnavailable
from .registry import ConnectionRegistry, ConnectionStatus
from .restore import RestoreOutcome, restore_connections
from .session import ConnectionConfig, OBSSession

log = logging.getLogger(__name__)


class OBSService:
    def __init__(
        self,
        registry: ConnectionRegistry,
        restore_retries: int = 1,
        restore_retry_delay: float = 2.0,
    ):
        self.registry = registry
        self.restore_retries = restore_retries
        self.restore_retry_delay = restore_retry_delay

    def _session(self, connection_id: str) -> OBSSession:
        session = self.registry.lookup(connection_id)
        if session is None or not session.is_ready:
            raise ServiceUnavailable(connection_id)
        return session

    # ── Connections ───────────────────────────────────────────────────

    async def connect(self, config: ConnectionConfig) -> dict:
        session_id = await self.registry.create(config)
        log.info(f"Connected to OBS at {config.url} as {session_id}")
        return {"session_id": session_id, "status": self.registry.status(session_id).to_dict()}

    async def disconnect(self, connection_id: str) -> None:
        if await self.registry.close(connection_id):
            log.info(f"Disconnected OBS connection {connection_id}")

    def get_status(self, connection_id: str) -> ConnectionStatus:
        return self.registry.status(connection_id)

    def list_connections(self, owner_id: Optional[str]) -> list[ConnectionStatus]:
        return [ConnectionStatus.of(s) for s in self.registry.list_for_owner(owner_id)]

    async def restore_all(self, configs: Iterable[ConnectionConfig]) -> list[RestoreOutcome]:
        return await restore_connections(
            self.registry,
            configs,
            retries=self.restore_retries,
            retry_delay=self.restore_retry_delay,
        )

    # ── Verses ────────────────────────────────────────────────────────

    async def send_verse(self, connection_id: str, verse: Verse) -> dict:
        session = self._session(connection_id)
        settings = format_verse(verse.reference, verse.text, verse.version)
        await session.call(
            "SetInputSettings",
            {"inputName": session.source_name, "inputSettings": settings},
        )
        log.info(f"Verse {verse.reference} ({verse.version}) → '{session.source_name}'")
        return {
            "session_id": session.session_id,
            "source": session.source_name,
            "reference": verse.reference,
            "status": "ok",
        }

    # ── Scenes ────────────────────────────────────────────────────────

    async def list_scenes(self, connection_id: str) -> list[str]:
        result = await self._session(connection_id).call("GetSceneList")
        return [s.get("sceneName", "") for s in result.get("scenes", [])]

    async def get_current_scene(self, connection_id: str) -> str:
        result = await self._session(connection_id).call("GetCurrentProgramScene")
        return result.get("currentProgramSceneName") or result.get("sceneName", "")

    async def switch_scene(self, connection_id: str, scene_name: str) -> dict:
        await self._session(connection_id).call("SetCurrentProgramScene", {"sceneName": scene_name})
        log.info(f"Switched to scene: {scene_name}")
        return {"scene": scene_name, "status": "ok"}

    # ── System ────────────────────────────────────────────────────────

    async def get_version(self, connection_id: str) -> dict:
        d = await self._session(connection_id).call("GetVersion")
        return {
            "obs_version": d.get("obsVersion", ""),
            "obs_web_socket_version": d.get("obsWebSocketVersion", ""),
            "platform": d.get("platform", ""),
        }
