"""store — Stored OBS connection records."""
from .connections import ConnectionStore, StoredConnection

__all__ = ["ConnectionStore", "StoredConnection"]
