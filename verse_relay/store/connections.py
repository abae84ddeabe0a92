"""
store/connections.py — Stored OBS connection records (connections.yaml).

This is the "configured" side of a connection: what the user saved, whether
it should be live, and the password needed to reconnect. The live side lives
in core.ConnectionRegistry and is keyed back to these records by `id`.

File format:
  connections:
    - id: 6f1c...
      name: Local OBS
      url: ws://localhost:4455
      password: secret
      source_name: Bible Verse
      owner_id: alice
      is_active: true
      last_used: 2025-01-01T12:00:00+00:00
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from verse_relay.core.session import ConnectionConfig

log = logging.getLogger(__name__)


class StoredConnection(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    url: str
    password: str = ""
    source_name: str = "Bible Verse"
    owner_id: Optional[str] = None
    is_active: bool = True
    last_used: Optional[datetime] = None

    def to_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            url=self.url,
            password=self.password,
            source_name=self.source_name,
            owner_id=self.owner_id,
            config_id=self.id,
            name=self.name,
            is_active=self.is_active,
        )

    def to_public_dict(self) -> dict:
        """Record without the password, for API responses."""
        data = self.model_dump(mode="json", exclude={"password"})
        data["has_password"] = bool(self.password)
        return data


class ConnectionStore:
    """
    YAML-backed store for connection records.

    Usage:
        store = ConnectionStore(Path("connections.yaml"))
        store.load()
        rec = store.add(StoredConnection(name="Local OBS", url="ws://localhost:4455"))
        for rec in store.active():
            ...
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: dict[str, StoredConnection] = {}

    def load(self) -> int:
        if not self.path.exists():
            self._records = {}
            return 0
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        records = [StoredConnection(**r) for r in data.get("connections", [])]
        self._records = {r.id: r for r in records}
        log.info(f"Loaded {len(self._records)} stored OBS connection(s) from {self.path}")
        return len(self._records)

    def save(self) -> None:
        data = {"connections": [r.model_dump(mode="json") for r in self._records.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        log.debug(f"Connection store saved → {self.path}")

    # ── Queries ───────────────────────────────────────────────────────

    def all(self) -> list[StoredConnection]:
        return list(self._records.values())

    def active(self) -> list[StoredConnection]:
        return [r for r in self._records.values() if r.is_active]

    def for_owner(self, owner_id: Optional[str]) -> list[StoredConnection]:
        records = [r for r in self._records.values() if r.owner_id == owner_id]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(records, key=lambda r: r.last_used or epoch, reverse=True)

    def get(self, record_id: str, owner_id: Optional[str] = None) -> Optional[StoredConnection]:
        record = self._records.get(record_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            return None
        return record

    # ── Mutations ─────────────────────────────────────────────────────

    def add(self, record: StoredConnection) -> StoredConnection:
        if record.last_used is None:
            record.last_used = datetime.now(timezone.utc)
        self._records[record.id] = record
        self.save()
        return record

    def update(self, record_id: str, **changes) -> Optional[StoredConnection]:
        record = self._records.get(record_id)
        if record is None:
            return None
        updated = record.model_copy(update={k: v for k, v in changes.items() if v is not None})
        self._records[record_id] = updated
        self.save()
        return updated

    def touch(self, record_id: str) -> None:
        record = self._records.get(record_id)
        if record is not None:
            record.last_used = datetime.now(timezone.utc)
            self.save()

    def delete(self, record_id: str) -> bool:
        if self._records.pop(record_id, None) is None:
            return False
        self.save()
        return True
