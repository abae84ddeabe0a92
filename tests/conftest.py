"""
Shared fixtures: a stub obs-websocket v5 server and an isolated registry.
"""

import asyncio
import json

import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from verse_relay.core import ConnectionRegistry
from verse_relay.core.protocol import CLOSE_AUTHENTICATION_FAILED, auth_token


class StubOBS:
    """
    Minimal obs-websocket v5 server.

    Knobs:
      send_hello           False → never greet (handshake timeout)
      close_before_hello   True → hang up before greeting (transport error)
      require_auth         False → Hello without an authentication block
      hello_authentication override the authentication block verbatim
      expected_password    set → only accept the matching token
      reject_auth          True → always close with 4009 after Identify
      silent               request types that never get a response
      fail                 request type → (code, comment) failure status
      drop_on              request types that make the server hang up
      responses            request type → responseData
    """

    def __init__(self):
        self.url = ""
        self.challenge = "C1"
        self.salt = "S1"
        self.send_hello = True
        self.close_before_hello = False
        self.require_auth = True
        self.hello_authentication = None
        self.expected_password = None
        self.reject_auth = False
        self.silent: set[str] = set()
        self.fail: dict[str, tuple[int, str]] = {}
        self.drop_on: set[str] = set()
        self.responses: dict[str, dict] = {
            "GetSceneList": {
                "currentProgramSceneName": "Verses",
                "scenes": [
                    {"sceneName": "Worship", "sceneIndex": 0},
                    {"sceneName": "Verses", "sceneIndex": 1},
                ],
            },
            "GetCurrentProgramScene": {"currentProgramSceneName": "Verses"},
            "GetVersion": {"obsVersion": "30.1.2", "obsWebSocketVersion": "5.4.2", "platform": "linux"},
        }
        self.identify_frames: list[dict] = []
        self.requests: list[dict] = []
        self.connections: list = []

    def requests_of(self, request_type: str) -> list[dict]:
        return [r for r in self.requests if r["requestType"] == request_type]

    async def emit_event(self, event_type: str, event_data: dict) -> None:
        frame = json.dumps({"op": 5, "d": {"eventType": event_type, "eventIntent": 4, "eventData": event_data}})
        for ws in list(self.connections):
            try:
                await ws.send(frame)
            except ConnectionClosed:
                pass

    async def handler(self, ws):
        self.connections.append(ws)
        try:
            await self._serve(ws)
        except ConnectionClosed:
            pass
        finally:
            self.connections.remove(ws)

    async def _serve(self, ws):
        if self.close_before_hello:
            await ws.close(1011, "Shutting down")
            return
        if not self.send_hello:
            await ws.wait_closed()
            return

        hello = {"obsWebSocketVersion": "5.4.2", "rpcVersion": 1}
        if self.hello_authentication is not None:
            hello["authentication"] = self.hello_authentication
        elif self.require_auth:
            hello["authentication"] = {"challenge": self.challenge, "salt": self.salt}
        await ws.send(json.dumps({"op": 0, "d": hello}))

        identify = json.loads(await ws.recv())
        self.identify_frames.append(identify)
        token = identify["d"].get("authentication")
        wrong = (
            self.expected_password is not None
            and token != auth_token(self.expected_password, self.salt, self.challenge)
        )
        if self.reject_auth or wrong:
            await ws.close(CLOSE_AUTHENTICATION_FAILED, "Authentication failed.")
            return
        await ws.send(json.dumps({"op": 2, "d": {"negotiatedRpcVersion": 1}}))

        async for raw in ws:
            msg = json.loads(raw)
            if msg.get("op") != 6:
                continue
            d = msg["d"]
            self.requests.append(d)
            request_type = d["requestType"]
            if request_type in self.drop_on:
                await ws.close()
                return
            if request_type in self.silent:
                continue
            response = {"requestType": request_type, "requestId": d["requestId"]}
            if request_type in self.fail:
                code, comment = self.fail[request_type]
                response["requestStatus"] = {"result": False, "code": code, "comment": comment}
            else:
                response["requestStatus"] = {"result": True, "code": 100}
                if request_type in self.responses:
                    response["responseData"] = self.responses[request_type]
            await ws.send(json.dumps({"op": 7, "d": response}))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def obs_stub():
    stub = StubOBS()
    async with serve(stub.handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        stub.url = f"ws://127.0.0.1:{port}"
        yield stub


@pytest_asyncio.fixture
async def registry(obs_stub):
    reg = ConnectionRegistry(
        handshake_timeout=2.0,
        request_timeout=2.0,
        open_timeout=2.0,
        display_setup=False,
    )
    yield reg
    await reg.shutdown()
