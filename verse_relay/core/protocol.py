"""
core/protocol.py — OBS WebSocket v5 framing and authentication digest.

Every frame is a JSON object {"op": <int>, "d": {...}}. Requests carry a
caller-chosen requestId that the matching RequestResponse echoes back along
with requestStatus {result, code, comment}; code 100 means success.
"""

from __future__ import annotations

import base64
import hashlib
import json
from enum import IntEnum
from typing import Any, Optional

RPC_VERSION = 1
STATUS_SUCCESS = 100

# WebSocket close code OBS uses when Identify carries a bad token.
CLOSE_AUTHENTICATION_FAILED = 4009


class OpCode(IntEnum):
    HELLO = 0
    IDENTIFY = 1
    IDENTIFIED = 2
    REIDENTIFY = 3
    EVENT = 5
    REQUEST = 6
    REQUEST_RESPONSE = 7
    REQUEST_BATCH = 8
    REQUEST_BATCH_RESPONSE = 9


class ProtocolError(ValueError):
    """A frame that is not valid JSON or lacks the op/d envelope."""


def _digest(value: str) -> str:
    return base64.b64encode(hashlib.sha256(value.encode("utf-8")).digest()).decode("ascii")


def auth_token(password: str, salt: str, challenge: str) -> str:
    """
    Compute the Identify authentication string:
        secret = base64(sha256(password + salt))
        token  = base64(sha256(secret + challenge))
    """
    return _digest(_digest(password + salt) + challenge)


def encode(op: OpCode, data: dict) -> str:
    return json.dumps({"op": int(op), "d": data})


def decode(raw: str) -> tuple[int, dict]:
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(msg, dict) or "op" not in msg:
        raise ProtocolError(f"Frame missing op: {raw[:80]!r}")
    data = msg.get("d") or {}
    if not isinstance(data, dict):
        raise ProtocolError(f"Frame payload is not an object: {raw[:80]!r}")
    return int(msg["op"]), data


def identify(authentication: Optional[str] = None, event_subscriptions: Optional[int] = None) -> str:
    data: dict[str, Any] = {"rpcVersion": RPC_VERSION}
    if authentication is not None:
        data["authentication"] = authentication
    if event_subscriptions is not None:
        data["eventSubscriptions"] = event_subscriptions
    return encode(OpCode.IDENTIFY, data)


def request(request_type: str, request_id: str, request_data: Optional[dict] = None) -> str:
    data: dict[str, Any] = {"requestType": request_type, "requestId": request_id}
    if request_data is not None:
        data["requestData"] = request_data
    return encode(OpCode.REQUEST, data)
