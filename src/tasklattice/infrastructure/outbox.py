"""Durable log of graph mutations that could not be mirrored immediately.

Entries are JSON lines. Any pending entry tells the sync engine that the graph
may be behind the record store, which it repairs with a full reconciliation.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from tasklattice.domain.models import utc_now
from tasklattice.infrastructure.logger import get_logger

logger = get_logger(__name__)

OutboxOperation = Literal["upsert", "delete"]


class OutboxEntry(BaseModel):
    """One graph mutation awaiting replay."""

    task_id: str
    operation: OutboxOperation
    error: str | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


class Outbox:
    """Append-only JSON-lines file of pending graph mutations."""

    def __init__(self, path: Path) -> None:
        self.path = path

    async def append(self, entry: OutboxEntry) -> None:
        await asyncio.to_thread(self._append_sync, entry)
        logger.warning(
            "outbox_entry_recorded", task_id=entry.task_id, operation=entry.operation
        )

    async def load(self) -> list[OutboxEntry]:
        """Read all pending entries. Corrupt lines are logged and skipped."""
        return await asyncio.to_thread(self._load_sync)

    async def pending(self) -> bool:
        return await asyncio.to_thread(self._pending_sync)

    async def clear(self) -> int:
        """Drop every entry.

        Returns:
            Number of entries removed
        """
        entries = await self.load()
        await asyncio.to_thread(self.path.unlink, missing_ok=True)
        if entries:
            logger.info("outbox_cleared", entries=len(entries))
        return len(entries)

    def _append_sync(self, entry: OutboxEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def _load_sync(self) -> list[OutboxEntry]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(OutboxEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("outbox_line_invalid", line=line_no, error=str(e))
        return entries

    def _pending_sync(self) -> bool:
        try:
            return self.path.stat().st_size > 0
        except FileNotFoundError:
            return False
