"""
core/errors.py — Error taxonomy for OBS sessions.

Every error carries a machine-readable `code` that the API layer turns into a
JSON error body. `ServiceUnavailable` is kept distinct from the rest so the UI
can tell the user to start OBS and reconnect.
"""

from __future__ import annotations

from typing import Optional


class OBSError(Exception):
    code = "OBS_ERROR"


class TransportError(OBSError):
    """Socket-level failure: refused, reset, DNS, failed upgrade."""
    code = "OBS_TRANSPORT_ERROR"


class AuthenticationError(OBSError):
    """OBS rejected the password, or the challenge was malformed."""
    code = "OBS_AUTH_FAILED"


class HandshakeTimeout(OBSError, TimeoutError):
    code = "OBS_TIMEOUT"


class RequestTimeout(OBSError, TimeoutError):
    code = "OBS_TIMEOUT"

    def __init__(self, request_type: str, timeout: float):
        super().__init__(f"OBS request {request_type} timed out after {timeout}s")
        self.request_type = request_type
        self.timeout = timeout


class RequestRejected(OBSError):
    code = "OBS_REQUEST_FAILED"

    def __init__(self, status_code: int, comment: Optional[str] = None, request_type: str = ""):
        detail = comment or "no comment"
        super().__init__(f"OBS request {request_type} failed: {status_code} - {detail}")
        self.status_code = status_code
        self.comment = comment
        self.request_type = request_type


class SessionClosed(OBSError):
    code = "OBS_SESSION_CLOSED"


class ServiceUnavailable(OBSError):
    """No live session exists for the requested connection."""
    code = "OBS_NOT_AVAILABLE"

    def __init__(self, connection_id: str):
        super().__init__(f"OBS connection not available: {connection_id}")
        self.connection_id = connection_id
