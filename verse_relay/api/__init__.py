"""api — FastAPI REST + WebSocket surface."""
from .server import create_app, http_error, set_store, ws_pool

__all__ = ["create_app", "http_error", "set_store", "ws_pool"]
