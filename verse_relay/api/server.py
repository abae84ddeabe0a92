"""
api/server.py — FastAPI REST API + WebSocket push channel.

REST routes mirror the browser UI's OBS page: save a connection and go live,
push a verse, list/switch scenes, inspect and drop live sessions. Connection
ids in paths and bodies may be either a stored connection id or a live
session id.

The /ws channel pushes verse_sent, scene_switched and scene_changed_external
events to the browsers in the owning user's room (`?user=` or a `join` command).
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from verse_relay import __version__
from verse_relay.config import get_settings
from verse_relay.core import (
    AuthenticationError,
    ConnectionStatus,
    OBSError,
    OBSService,
    OBSSession,
    RequestRejected,
    ServiceUnavailable,
    SessionClosed,
    TransportError,
    get_obs_service,
)
from verse_relay.store import ConnectionStore, StoredConnection
from verse_relay.verses import Verse

log = logging.getLogger(__name__)

WS_URL_PATTERN = re.compile(r"^wss?://.+")

_store: Optional[ConnectionStore] = None


def set_store(store: Optional[ConnectionStore]) -> None:
    global _store
    _store = store


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket connection pool
# ──────────────────────────────────────────────────────────────────────────────

class WSConnectionPool:
    """
    Browser clients grouped into per-owner rooms. Verse and scene events go to
    the owner's room only; messages without an owner reach every client.
    """

    def __init__(self):
        self._owners: dict[WebSocket, str] = {}

    async def connect(self, ws: WebSocket, owner: str) -> None:
        await ws.accept()
        self._owners[ws] = owner
        log.info(f"WS client joined room {owner!r}. Total: {len(self._owners)}")

    def join(self, ws: WebSocket, owner: str) -> None:
        if ws in self._owners:
            self._owners[ws] = owner

    def disconnect(self, ws: WebSocket) -> None:
        owner = self._owners.pop(ws, None)
        if owner is not None:
            log.info(f"WS client left room {owner!r}. Total: {len(self._owners)}")

    async def broadcast(self, message: dict, owner: Optional[str] = None) -> None:
        targets = [ws for ws, o in self._owners.items() if owner is None or o == owner]
        if not targets:
            return
        data = json.dumps(message, default=str)
        for ws in targets:
            try:
                await ws.send_text(data)
            except (RuntimeError, WebSocketDisconnect) as e:
                log.debug(f"Dropping WS client: {e}")
                self.disconnect(ws)

    def count(self, owner: Optional[str] = None) -> int:
        if owner is None:
            return len(self._owners)
        return sum(1 for o in self._owners.values() if o == owner)


ws_pool = WSConnectionPool()


# ──────────────────────────────────────────────────────────────────────────────
# Error mapping
# ──────────────────────────────────────────────────────────────────────────────

def http_error(e: OBSError, connection_name: Optional[str] = None) -> HTTPException:
    """Translate a core error into an HTTPException with a stable error code."""
    if isinstance(e, ServiceUnavailable):
        detail = {
            "error": "OBS Studio is not running or not accessible",
            "message": (
                "Please ensure OBS Studio is running with the WebSocket server enabled, "
                "then try reconnecting your OBS connection."
            ),
            "code": e.code,
        }
        if connection_name:
            detail["connection_name"] = connection_name
        return HTTPException(status_code=503, detail=detail)
    if isinstance(e, TimeoutError):
        status = 504
    elif isinstance(e, AuthenticationError):
        status = 401
    elif isinstance(e, SessionClosed):
        status = 503
    elif isinstance(e, (RequestRejected, TransportError)):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail={"error": str(e), "code": e.code})


def owns_connection(service: OBSService, connection_id: str, owner: str) -> bool:
    """True when the id names one of the owner's stored records or one of their live sessions."""
    if _store is not None and _store.get(connection_id, owner_id=owner) is not None:
        return True
    session = service.registry.lookup(connection_id)
    return session is not None and session.owner_id == owner


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    log.info(f"verse-relay API starting on {settings.api.host}:{settings.api.port}")

    try:
        service = get_obs_service()
    except RuntimeError:
        service = None

    if service is not None:
        async def on_obs_event(session: OBSSession, event_type: str, data: dict):
            if event_type == "CurrentProgramSceneChanged":
                await ws_pool.broadcast({
                    "event": "scene_changed_external",
                    "data": {"session_id": session.session_id, "scene": data.get("sceneName", "")},
                }, owner=session.owner_id)
        service.registry.add_event_listener(on_obs_event)
        log.info("OBS scene-change passthrough registered")

        if _store is not None:
            records = _store.active()
            if records:
                await service.restore_all([r.to_config() for r in records])
        service.registry.start_eviction(settings.obs.idle_sweep_interval, settings.obs.idle_threshold)

    yield

    if service is not None:
        await service.registry.shutdown()
    log.info("verse-relay API shutting down.")


class ConnectBody(BaseModel):
    name: str = Field(..., min_length=1)
    url: str
    password: str = ""
    source_name: str = "Bible Verse"

    @field_validator("url")
    @classmethod
    def _ws_url(cls, value: str) -> str:
        if not WS_URL_PATTERN.match(value):
            raise ValueError("Valid WebSocket URL is required (ws:// or wss://)")
        return value


class UpdateConnectionBody(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    password: Optional[str] = None
    source_name: Optional[str] = None
    is_active: Optional[bool] = None


class SendVerseBody(BaseModel):
    connection_id: str = Field(..., min_length=1)
    verse_ref: str = Field(..., min_length=1)
    verse_text: str = Field(..., min_length=1)
    version: str = "kjv"


class SwitchSceneBody(BaseModel):
    connection_id: str = Field(..., min_length=1)
    scene_name: str = Field(..., min_length=1)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="verse-relay",
        description="Push Bible verses into OBS Studio over obs-websocket v5",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if settings.api.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != settings.api.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    async def current_owner(x_user_id: Optional[str] = Header(None)) -> str:
        return x_user_id or "anonymous"

    def obs() -> OBSService:
        try:
            return get_obs_service()
        except RuntimeError:
            raise HTTPException(status_code=503, detail="OBS service not initialized")

    def store() -> ConnectionStore:
        if _store is None:
            raise HTTPException(status_code=503, detail="Connection store not initialized")
        return _store

    def record_or_404(record_id: str, owner: str) -> StoredConnection:
        record = store().get(record_id, owner_id=owner)
        if record is None:
            raise HTTPException(
                status_code=404,
                detail={"error": "Connection not found", "code": "CONNECTION_NOT_FOUND"},
            )
        return record

    def owned_or_404(connection_id: str, owner: str) -> Optional[StoredConnection]:
        """Stored record for the id, if any. 404 unless the owner holds the record or the live session."""
        if not owns_connection(obs(), connection_id, owner):
            raise HTTPException(
                status_code=404,
                detail={"error": "OBS connection not found", "code": "CONNECTION_NOT_FOUND"},
            )
        return store().get(connection_id, owner_id=owner)

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        service = obs()
        return {
            "status": "ok",
            "obs_sessions": len(service.registry),
            "ws_clients": ws_pool.count(),
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 when no OBS session is live."""
        if not len(obs().registry):
            raise HTTPException(
                status_code=503,
                detail={"status": "degraded", "reason": "No OBS session connected"},
            )
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # OBS — Connections
    # ─────────────────────────────────────────────────────────────────

    @app.post("/obs/connect", tags=["OBS"], dependencies=[auth])
    async def connect(body: ConnectBody, owner: str = Depends(current_owner)):
        """Save a connection, then try to bring it live. A failed live connect still saves it."""
        record = store().add(StoredConnection(
            name=body.name,
            url=body.url,
            password=body.password,
            source_name=body.source_name,
            owner_id=owner,
        ))
        session_id: Optional[str] = None
        status = ConnectionStatus(config_id=record.id).to_dict()
        try:
            result = await obs().connect(record.to_config())
            session_id, status = result["session_id"], result["status"]
        except OBSError as e:
            log.warning(f"Failed to create live OBS connection for {body.name}: {e}")

        return {
            "session_id": session_id,
            "connection": record.to_public_dict(),
            "status": status,
            "message": (
                "Connected to OBS successfully" if session_id
                else "OBS connection saved (OBS Studio not available)"
            ),
        }

    @app.post("/obs/reconnect/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def reconnect(connection_id: str, owner: str = Depends(current_owner)):
        record = record_or_404(connection_id, owner)
        try:
            result = await obs().connect(record.to_config())
        except OBSError as e:
            raise http_error(e, record.name)
        store().touch(record.id)
        return result

    @app.get("/obs/status/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def connection_status(connection_id: str, owner: str = Depends(current_owner)):
        service = obs()
        if not owns_connection(service, connection_id, owner):
            return ConnectionStatus().to_dict()
        return service.get_status(connection_id).to_dict()

    @app.get("/obs/connections", tags=["OBS"], dependencies=[auth])
    async def list_connections(owner: str = Depends(current_owner)):
        service = obs()
        stored = []
        for record in store().for_owner(owner):
            live = service.get_status(record.id)
            stored.append({**record.to_public_dict(), "connected": live.connected, "live_status": live.to_dict()})
        return {
            "connections": stored,
            "live": [s.to_dict() for s in service.list_connections(owner)],
        }

    @app.put("/obs/connections/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def update_connection(
        connection_id: str,
        body: UpdateConnectionBody,
        owner: str = Depends(current_owner),
    ):
        record_or_404(connection_id, owner)
        if body.url is not None and not WS_URL_PATTERN.match(body.url):
            raise HTTPException(
                status_code=400,
                detail={"error": "Valid WebSocket URL is required (ws:// or wss://)", "code": "VALIDATION_ERROR"},
            )
        updated = store().update(connection_id, **body.model_dump())
        if body.is_active is False:
            await obs().disconnect(connection_id)
        return {"connection": updated.to_public_dict(), "message": "Connection updated successfully"}

    @app.delete("/obs/connections/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def delete_connection(connection_id: str, owner: str = Depends(current_owner)):
        record_or_404(connection_id, owner)
        await obs().disconnect(connection_id)
        store().delete(connection_id)
        return {"status": "deleted", "id": connection_id}

    @app.post("/obs/disconnect/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def disconnect(connection_id: str, owner: str = Depends(current_owner)):
        owned_or_404(connection_id, owner)
        await obs().disconnect(connection_id)
        return {"status": "disconnected", "id": connection_id}

    # ─────────────────────────────────────────────────────────────────
    # OBS — Verses
    # ─────────────────────────────────────────────────────────────────

    @app.post("/obs/send-verse", tags=["Verses"], dependencies=[auth])
    async def send_verse(body: SendVerseBody, owner: str = Depends(current_owner)):
        service = obs()
        record = owned_or_404(body.connection_id, owner)
        verse = Verse(reference=body.verse_ref, text=body.verse_text, version=body.version)
        try:
            result = await service.send_verse(body.connection_id, verse)
        except OBSError as e:
            raise http_error(e, record.name if record else None)

        if record is not None:
            store().touch(record.id)
        log.info(f"verse_sent_to_obs owner={owner} ref={verse.reference} version={verse.version}")
        await ws_pool.broadcast({
            "event": "verse_sent",
            "data": {"connection_id": body.connection_id, "reference": verse.reference, "version": verse.version},
        }, owner=owner)
        return {**result, "message": "Verse sent to OBS successfully"}

    # ─────────────────────────────────────────────────────────────────
    # OBS — Scenes
    # ─────────────────────────────────────────────────────────────────

    @app.get("/obs/scenes/{connection_id}", tags=["OBS"], dependencies=[auth])
    async def list_scenes(connection_id: str, owner: str = Depends(current_owner)):
        owned_or_404(connection_id, owner)
        try:
            return {"scenes": await obs().list_scenes(connection_id)}
        except OBSError as e:
            raise http_error(e)

    @app.post("/obs/switch-scene", tags=["OBS"], dependencies=[auth])
    async def switch_scene(body: SwitchSceneBody, owner: str = Depends(current_owner)):
        owned_or_404(body.connection_id, owner)
        try:
            result = await obs().switch_scene(body.connection_id, body.scene_name)
        except OBSError as e:
            raise http_error(e)
        log.info(f"obs_scene_switched owner={owner} scene={body.scene_name}")
        await ws_pool.broadcast({"event": "scene_switched", "data": result}, owner=owner)
        return result

    # ─────────────────────────────────────────────────────────────────
    # WebSocket push channel — per-owner rooms
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
        user: Optional[str] = Query(None),
    ):
        if settings.api.api_key and token != settings.api.api_key:
            await websocket.close(code=4001, reason="Unauthorized")
            return

        owner = user or "anonymous"
        await ws_pool.connect(websocket, owner)
        try:
            await websocket.send_json({
                "event": "connected",
                "data": {"room": owner, "obs_sessions": len(obs().registry), "version": __version__},
            })
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                    if not isinstance(msg, dict) or not isinstance(msg.get("params", {}), dict):
                        response = {"error": "Command must be a JSON object with object params"}
                    elif msg.get("cmd") == "join":
                        owner = str(msg.get("params", {})["user_id"])
                        ws_pool.join(websocket, owner)
                        response = {"event": "joined", "data": {"room": owner}}
                    else:
                        response = await _handle_ws_command(msg, owner)
                except json.JSONDecodeError:
                    response = {"error": "Invalid JSON"}
                except (OBSError, KeyError, ValueError) as e:
                    response = {"error": str(e)}
                except Exception as e:
                    log.error(f"WS command failed for room {owner!r}: {e}")
                    response = {"error": str(e)}
                await websocket.send_text(json.dumps(response, default=str))
        except WebSocketDisconnect:
            log.debug(f"WS client in room {owner!r} went away")
        finally:
            ws_pool.disconnect(websocket)

    async def _handle_ws_command(msg: dict, owner: str) -> dict:
        cmd = msg.get("cmd", "")
        params = msg.get("params", {})
        service = obs()

        if cmd in ("get_status", "send_verse", "switch_scene"):
            connection_id = params["connection_id"]
            if not owns_connection(service, connection_id, owner):
                if cmd == "get_status":
                    return ConnectionStatus().to_dict()
                return {"error": "OBS connection not found", "code": "CONNECTION_NOT_FOUND"}

        match cmd:
            case "get_status":
                return service.get_status(connection_id).to_dict()
            case "send_verse":
                verse = Verse(
                    reference=params["verse_ref"],
                    text=params["verse_text"],
                    version=params.get("version", "kjv"),
                )
                result = await service.send_verse(connection_id, verse)
                await ws_pool.broadcast({
                    "event": "verse_sent",
                    "data": {"connection_id": connection_id, "reference": verse.reference, "version": verse.version},
                }, owner=owner)
                return result
            case "switch_scene":
                result = await service.switch_scene(connection_id, params["scene_name"])
                await ws_pool.broadcast({"event": "scene_switched", "data": result}, owner=owner)
                return result
            case _:
                return {"error": f"Unknown command: {cmd}"}

    return app
