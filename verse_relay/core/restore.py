"""
core/restore.py — Re-establish stored OBS connections at process start.

Each connection is attempted on its own: one OBS instance that is not running
never stops the others from being restored, and nothing raises out of
restore_connections().
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import OBSError
from .registry import ConnectionRegistry
from .session import ConnectionConfig

log = logging.getLogger(__name__)


@dataclass
class RestoreOutcome:
    config_id: Optional[str]
    name: str
    status: str                     # "restored" | "failed" | "skipped"
    session_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "restored"

    def to_dict(self) -> dict:
        return {
            "config_id": self.config_id,
            "name": self.name,
            "status": self.status,
            "session_id": self.session_id,
            "error": self.error,
            "attempts": self.attempts,
        }


async def _restore_one(
    registry: ConnectionRegistry,
    config: ConnectionConfig,
    retries: int,
    retry_delay: float,
) -> RestoreOutcome:
    name = config.name or config.url
    outcome = RestoreOutcome(config_id=config.config_id, name=name, status="failed")
    if not config.is_active:
        outcome.status = "skipped"
        return outcome

    for attempt in range(1, retries + 2):
        outcome.attempts = attempt
        try:
            outcome.session_id = await registry.create(config)
            outcome.status = "restored"
            outcome.error = None
            log.info(f"Restored OBS connection: {name}")
            return outcome
        except OBSError as e:
            outcome.error = str(e)
            if attempt <= retries:
                log.debug(f"Restore of {name} failed (attempt {attempt}), retrying in {retry_delay}s")
                await asyncio.sleep(retry_delay)
        except Exception as e:
            outcome.error = f"{type(e).__name__}: {e}"
            break

    log.warning(f"Failed to restore OBS connection {name}: {outcome.error}")
    return outcome


async def restore_connections(
    registry: ConnectionRegistry,
    configs: Iterable[ConnectionConfig],
    retries: int = 1,
    retry_delay: float = 2.0,
) -> list[RestoreOutcome]:
    """Attempt every active config concurrently. Outcomes come back in input order."""
    configs = list(configs)
    log.info(f"Restoring {len(configs)} OBS connection(s)...")
    outcomes = await asyncio.gather(
        *(_restore_one(registry, c, retries, retry_delay) for c in configs)
    )
    restored = sum(1 for o in outcomes if o.ok)
    failed = sum(1 for o in outcomes if o.status == "failed")
    log.info(f"Restore complete: {restored} restored, {failed} failed")
    return list(outcomes)
