"""
core/multiplexer.py — Tagged request/response matching over one OBS socket.

A single reader hands every RequestResponse frame to `dispatch()`, which
resolves the pending call carrying the same requestId. Calls on the same
session may complete in any order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from . import protocol
from .errors import OBSError, RequestRejected, RequestTimeout, SessionClosed

log = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    request_id: str
    request_type: str
    deadline: float
    future: asyncio.Future


class RequestMultiplexer:
    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        default_timeout: float = 5.0,
        label: str = "",
    ):
        self._send = send
        self.default_timeout = default_timeout
        self._label = label
        self._pending: dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)
        self._closed: Optional[OBSError] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_request_id(self, request_type: str) -> str:
        return f"{request_type}_{next(self._counter)}"

    async def call(
        self,
        request_type: str,
        request_data: Optional[dict] = None,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        """
        Send one request and wait for its response.

        Returns the response's responseData ({} when OBS sends none).
        Raises RequestRejected, RequestTimeout, SessionClosed or TransportError.
        """
        if self._closed is not None:
            raise SessionClosed(f"Session closed: {self._closed}")
        timeout = self.default_timeout if timeout is None else timeout
        rid = request_id or self.next_request_id(request_type)
        if rid in self._pending:
            raise ValueError(f"Request id {rid!r} is already pending")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending[rid] = PendingRequest(rid, request_type, loop.time() + timeout, future)
        try:
            await self._send(protocol.request(request_type, rid, request_data))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            log.warning(f"[{self._label}] {request_type} ({rid}) timed out after {timeout}s")
            raise RequestTimeout(request_type, timeout) from None
        finally:
            entry = self._pending.get(rid)
            if entry is not None and entry.future is future:
                del self._pending[rid]

    def dispatch(self, data: dict) -> bool:
        """
        Resolve the pending call matching a RequestResponse payload.
        Returns True when a call completed successfully.
        """
        rid = data.get("requestId")
        entry = self._pending.pop(rid, None) if rid is not None else None
        if entry is None or entry.future.done():
            log.warning(f"[{self._label}] Discarding response for unknown request id {rid!r}")
            return False

        status = data.get("requestStatus") or {}
        code = status.get("code")
        if code == protocol.STATUS_SUCCESS:
            entry.future.set_result(data.get("responseData") or {})
            return True

        comment = status.get("comment")
        log.error(f"[{self._label}] OBS request {entry.request_type} failed: {code} - {comment}")
        entry.future.set_exception(RequestRejected(code, comment, entry.request_type))
        return False

    def fail_all(self, exc: OBSError) -> None:
        """Fail every outstanding call and refuse new ones."""
        self._closed = exc
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(exc)
