"""
tests/ — REST + WebSocket surface: routing, owner scoping and error mapping.
Run with: pytest tests/ -v
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

import verse_relay.config.settings as settings_module
from verse_relay.api import create_app, http_error, set_store
from verse_relay.api.server import WSConnectionPool
from verse_relay.config import Settings
from verse_relay.core import (
    AuthenticationError,
    ConnectionRegistry,
    HandshakeTimeout,
    OBSService,
    RequestRejected,
    RequestTimeout,
    ServiceUnavailable,
    SessionClosed,
    TransportError,
    set_obs_service,
)
from verse_relay.store import ConnectionStore, StoredConnection

ALICE = {"X-User-Id": "alice"}


@pytest.fixture
def settings(tmp_path, monkeypatch):
    s = Settings.load(tmp_path / "config.yaml")
    monkeypatch.setattr(settings_module, "_settings", s)
    return s


@pytest.fixture
def service():
    svc = OBSService(ConnectionRegistry(open_timeout=1.0, handshake_timeout=1.0, display_setup=False))
    set_obs_service(svc)
    yield svc
    set_obs_service(None)


@pytest.fixture
def store(tmp_path):
    s = ConnectionStore(tmp_path / "connections.yaml")
    set_store(s)
    yield s
    set_store(None)


@pytest.fixture
def client(settings, service, store):
    return TestClient(create_app())


# ─── Error mapping ────────────────────────────────────────────────────────────

@pytest.mark.parametrize("error, status, code", [
    (RequestTimeout("GetSceneList", 5.0), 504, "OBS_TIMEOUT"),
    (HandshakeTimeout("no Hello"), 504, "OBS_TIMEOUT"),
    (AuthenticationError("bad password"), 401, "OBS_AUTH_FAILED"),
    (RequestRejected(600, "No source", "SetInputSettings"), 502, "OBS_REQUEST_FAILED"),
    (TransportError("refused"), 502, "OBS_TRANSPORT_ERROR"),
    (SessionClosed("dropped"), 503, "OBS_SESSION_CLOSED"),
    (ServiceUnavailable("cfg-1"), 503, "OBS_NOT_AVAILABLE"),
])
def test_http_error_mapping(error, status, code):
    exc = http_error(error)
    assert exc.status_code == status
    assert exc.detail["code"] == code


def test_service_unavailable_detail_names_connection():
    exc = http_error(ServiceUnavailable("cfg-1"), connection_name="Local OBS")
    assert exc.detail["error"] == "OBS Studio is not running or not accessible"
    assert exc.detail["connection_name"] == "Local OBS"


# ─── Health ───────────────────────────────────────────────────────────────────

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["obs_sessions"] == 0


def test_healthz_degraded_without_sessions(client):
    assert client.get("/healthz").status_code == 503


# ─── Connections ──────────────────────────────────────────────────────────────

def test_connect_rejects_non_websocket_url(client):
    r = client.post("/obs/connect", json={"name": "Local OBS", "url": "http://localhost:4455"}, headers=ALICE)
    assert r.status_code == 422


def test_connect_saves_record_when_obs_is_down(client, store):
    r = client.post(
        "/obs/connect",
        json={"name": "Local OBS", "url": "ws://127.0.0.1:1", "password": "s3cret"},
        headers=ALICE,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["session_id"] is None
    assert body["message"] == "OBS connection saved (OBS Studio not available)"
    assert "password" not in body["connection"]

    [record] = store.all()
    assert record.owner_id == "alice"
    assert record.password == "s3cret"


def test_list_connections_is_owner_scoped(client, store):
    store.add(StoredConnection(name="Alice OBS", url="ws://a:4455", password="x", owner_id="alice"))
    store.add(StoredConnection(name="Bob OBS", url="ws://b:4455", owner_id="bob"))

    r = client.get("/obs/connections", headers=ALICE)
    assert r.status_code == 200
    [conn] = r.json()["connections"]
    assert conn["name"] == "Alice OBS"
    assert conn["has_password"] is True
    assert conn["connected"] is False
    assert r.json()["live"] == []


def test_update_and_delete_connection(client, store):
    rec = store.add(StoredConnection(name="Local OBS", url="ws://a:4455", owner_id="alice"))

    r = client.put(f"/obs/connections/{rec.id}", json={"url": "localhost:4455"}, headers=ALICE)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "VALIDATION_ERROR"

    r = client.put(f"/obs/connections/{rec.id}", json={"name": "Stage OBS", "is_active": False}, headers=ALICE)
    assert r.status_code == 200
    assert r.json()["connection"]["name"] == "Stage OBS"
    assert store.get(rec.id).is_active is False

    assert client.delete(f"/obs/connections/{rec.id}", headers={"X-User-Id": "bob"}).status_code == 404
    assert client.delete(f"/obs/connections/{rec.id}", headers=ALICE).status_code == 200
    assert store.get(rec.id) is None


def test_reconnect_unknown_connection(client):
    r = client.post("/obs/reconnect/missing", headers=ALICE)
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "CONNECTION_NOT_FOUND"


def test_status_of_unknown_connection(client):
    r = client.get("/obs/status/missing")
    assert r.status_code == 200
    assert r.json()["connected"] is False
    assert r.json()["session_id"] is None


# ─── Verses / scenes ──────────────────────────────────────────────────────────

def test_send_verse_unknown_connection(client):
    r = client.post(
        "/obs/send-verse",
        json={"connection_id": "missing", "verse_ref": "John 3:16", "verse_text": "For God so loved"},
        headers=ALICE,
    )
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "CONNECTION_NOT_FOUND"


def test_send_verse_stored_but_offline(client, store):
    rec = store.add(StoredConnection(name="Local OBS", url="ws://a:4455", owner_id="alice"))
    r = client.post(
        "/obs/send-verse",
        json={"connection_id": rec.id, "verse_ref": "John 3:16", "verse_text": "For God so loved"},
        headers=ALICE,
    )
    assert r.status_code == 503
    detail = r.json()["detail"]
    assert detail["code"] == "OBS_NOT_AVAILABLE"
    assert detail["connection_name"] == "Local OBS"


def test_send_verse_requires_text(client):
    r = client.post("/obs/send-verse", json={"connection_id": "x", "verse_ref": "John 3:16", "verse_text": ""})
    assert r.status_code == 422


def test_switch_scene_rejected_maps_to_502(settings, store):
    mock_service = MagicMock()
    mock_service.registry.lookup.return_value = MagicMock(owner_id="anonymous")
    mock_service.switch_scene = AsyncMock(
        side_effect=RequestRejected(600, "No source was found", "SetCurrentProgramScene")
    )
    set_obs_service(mock_service)
    try:
        client = TestClient(create_app())
        r = client.post("/obs/switch-scene", json={"connection_id": "cfg-1", "scene_name": "Nope"})
        assert r.status_code == 502
        assert r.json()["detail"]["code"] == "OBS_REQUEST_FAILED"
        mock_service.switch_scene.assert_awaited_once_with("cfg-1", "Nope")
    finally:
        set_obs_service(None)


def test_list_scenes_timeout_maps_to_504(settings, store):
    mock_service = MagicMock()
    mock_service.registry.lookup.return_value = MagicMock(owner_id="anonymous")
    mock_service.list_scenes = AsyncMock(side_effect=RequestTimeout("GetSceneList", 5.0))
    set_obs_service(mock_service)
    try:
        r = TestClient(create_app()).get("/obs/scenes/cfg-1")
        assert r.status_code == 504
    finally:
        set_obs_service(None)


# ─── Auth ─────────────────────────────────────────────────────────────────────

def test_api_key_required_when_configured(tmp_path, monkeypatch, service, store):
    monkeypatch.setenv("API_API_KEY", "k3y")
    monkeypatch.setattr(settings_module, "_settings", Settings.load(tmp_path / "config.yaml"))
    client = TestClient(create_app())

    assert client.get("/obs/connections").status_code == 401
    assert client.get("/obs/connections", headers={"Authorization": "Bearer nope"}).status_code == 403
    assert client.get("/obs/connections", headers={"Authorization": "Bearer k3y"}).status_code == 200


# ─── WebSocket channel ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ws_pool_broadcast_is_room_scoped():
    pool = WSConnectionPool()
    alice, bob = AsyncMock(), AsyncMock()
    await pool.connect(alice, "alice")
    await pool.connect(bob, "bob")

    await pool.broadcast({"event": "verse_sent"}, owner="alice")
    alice.send_text.assert_awaited_once()
    bob.send_text.assert_not_awaited()

    await pool.broadcast({"event": "announcement"})
    assert bob.send_text.await_count == 1
    assert pool.count() == 2
    assert pool.count("alice") == 1


@pytest.mark.asyncio
async def test_ws_pool_drops_dead_clients():
    pool = WSConnectionPool()
    dead = AsyncMock()
    dead.send_text.side_effect = RuntimeError("socket closed")
    await pool.connect(dead, "alice")
    await pool.broadcast({"event": "verse_sent"}, owner="alice")
    assert pool.count() == 0


def test_ws_commands(client):
    with client.websocket_connect("/ws?user=alice") as ws:
        hello = ws.receive_json()
        assert hello["event"] == "connected"
        assert hello["data"]["room"] == "alice"

        ws.send_json({"cmd": "join", "params": {"user_id": "bob"}})
        assert ws.receive_json() == {"event": "joined", "data": {"room": "bob"}}

        ws.send_json({"cmd": "get_status", "params": {"connection_id": "missing"}})
        assert ws.receive_json()["connected"] is False

        ws.send_json({"cmd": "send_verse", "params": {"connection_id": "missing", "verse_ref": "John 3:16", "verse_text": "x"}})
        assert ws.receive_json()["code"] == "CONNECTION_NOT_FOUND"

        ws.send_json({"cmd": "dance"})
        assert ws.receive_json() == {"error": "Unknown command: dance"}


def test_ws_rejects_malformed_commands(client):
    with client.websocket_connect("/ws?user=alice") as ws:
        ws.receive_json()

        ws.send_text("[1, 2]")
        assert "error" in ws.receive_json()

        ws.send_text("42")
        assert "error" in ws.receive_json()

        ws.send_json({"cmd": "send_verse", "params": [1]})
        assert "error" in ws.receive_json()

        ws.send_json({"cmd": "join", "params": {}})
        assert "error" in ws.receive_json()

        ws.send_text("not json")
        assert ws.receive_json() == {"error": "Invalid JSON"}

        # still serving after the bad frames
        ws.send_json({"cmd": "get_status", "params": {"connection_id": "missing"}})
        assert ws.receive_json()["connected"] is False


# ─── End to end against a stub OBS ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_connect_and_send_verse_end_to_end(obs_stub, registry, settings, store):
    set_obs_service(OBSService(registry))
    try:
        transport = httpx.ASGITransport(app=create_app())
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            r = await http.post(
                "/obs/connect",
                json={"name": "Local OBS", "url": obs_stub.url, "password": "p"},
                headers=ALICE,
            )
            assert r.status_code == 200
            body = r.json()
            assert body["session_id"]
            assert body["status"]["connected"] is True
            record_id = body["connection"]["id"]

            r = await http.post(
                "/obs/send-verse",
                json={"connection_id": record_id, "verse_ref": "John 11:35", "verse_text": "Jesus wept."},
                headers=ALICE,
            )
            assert r.status_code == 200
            assert r.json()["status"] == "ok"
            sent = obs_stub.requests_of("SetInputSettings")[-1]["requestData"]
            assert sent["inputSettings"]["text"] == "John 11:35\n\nJesus wept."

            r = await http.get(f"/obs/scenes/{record_id}", headers=ALICE)
            assert r.json() == {"scenes": ["Worship", "Verses"]}

            r = await http.get(f"/obs/status/{record_id}", headers=ALICE)
            assert r.json()["connected"] is True

            r = await http.post(f"/obs/disconnect/{record_id}", headers=ALICE)
            assert r.status_code == 200
            assert registry.lookup(record_id) is None
    finally:
        set_obs_service(None)


@pytest.mark.asyncio
async def test_other_owner_cannot_drive_a_live_session(obs_stub, registry, settings, store):
    set_obs_service(OBSService(registry))
    mallory = {"X-User-Id": "mallory"}
    try:
        transport = httpx.ASGITransport(app=create_app())
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            r = await http.post(
                "/obs/connect",
                json={"name": "Local OBS", "url": obs_stub.url, "password": "p"},
                headers=ALICE,
            )
            record_id = r.json()["connection"]["id"]
            session_id = r.json()["session_id"]
            assert session_id

            for connection_id in (record_id, session_id):
                r = await http.post(
                    "/obs/send-verse",
                    json={"connection_id": connection_id, "verse_ref": "John 3:16", "verse_text": "For God so loved"},
                    headers=mallory,
                )
                assert r.status_code == 404
                assert r.json()["detail"]["code"] == "CONNECTION_NOT_FOUND"

                r = await http.get(f"/obs/scenes/{connection_id}", headers=mallory)
                assert r.status_code == 404

                r = await http.post(
                    "/obs/switch-scene",
                    json={"connection_id": connection_id, "scene_name": "Verses"},
                    headers=mallory,
                )
                assert r.status_code == 404

                r = await http.post(f"/obs/disconnect/{connection_id}", headers=mallory)
                assert r.status_code == 404

                r = await http.get(f"/obs/status/{connection_id}", headers=mallory)
                assert r.json()["connected"] is False

            assert obs_stub.requests_of("SetInputSettings") == []
            assert obs_stub.requests_of("SetCurrentProgramScene") == []
            session = registry.lookup(record_id)
            assert session is not None and session.is_ready

            r = await http.get(f"/obs/status/{record_id}", headers=ALICE)
            assert r.json()["connected"] is True
    finally:
        set_obs_service(None)
