"""
core/connection_manager.py — Process-wide OBSService accessor for the API layer.

The registry itself is an ordinary object; this only remembers the one the
running server was started with.
"""

from __future__ import annotations

from typing import Optional

from .registry import ConnectionRegistry
from .service import OBSService

_obs_service: Optional[OBSService] = None


def init_obs_service(
    handshake_timeout: float = 10.0,
    request_timeout: float = 5.0,
    open_timeout: float = 10.0,
    display_setup: bool = True,
    restore_retries: int = 1,
    restore_retry_delay: float = 2.0,
) -> OBSService:
    global _obs_service
    registry = ConnectionRegistry(
        handshake_timeout=handshake_timeout,
        request_timeout=request_timeout,
        open_timeout=open_timeout,
        display_setup=display_setup,
    )
    _obs_service = OBSService(
        registry,
        restore_retries=restore_retries,
        restore_retry_delay=restore_retry_delay,
    )
    return _obs_service


def set_obs_service(service: Optional[OBSService]) -> None:
    global _obs_service
    _obs_service = service


def get_obs_service() -> OBSService:
    if _obs_service is None:
        raise RuntimeError("OBS service not initialized. Call init_obs_service() first.")
    return _obs_service
