"""core — OBS WebSocket sessions, registry and service."""
from .errors import (
    AuthenticationError,
    HandshakeTimeout,
    OBSError,
    RequestRejected,
    RequestTimeout,
    ServiceUnavailable,
    SessionClosed,
    TransportError,
)
from .handshake import SessionState
from .session import ConnectionConfig, OBSSession
from .registry import ConnectionRegistry, ConnectionStatus
from .restore import RestoreOutcome, restore_connections
from .service import OBSService
from .connection_manager import get_obs_service, init_obs_service, set_obs_service

__all__ = [
    "AuthenticationError",
    "ConnectionConfig",
    "ConnectionRegistry",
    "ConnectionStatus",
    "HandshakeTimeout",
    "OBSError",
    "OBSService",
    "OBSSession",
    "RequestRejected",
    "RequestTimeout",
    "RestoreOutcome",
    "ServiceUnavailable",
    "SessionClosed",
    "SessionState",
    "TransportError",
    "get_obs_service",
    "init_obs_service",
    "restore_connections",
    "set_obs_service",
]
