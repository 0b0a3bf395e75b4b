"""Process-wide map of running bot handles."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from trading.errors import DuplicateLaunchError

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    bot_id: str
    kind: str
    task: asyncio.Task | None = None
    loop: Any = None
    mode: str = "live"
    paused: bool = False
    finished: bool = False
    status: str = "running"
    registered_at: float = field(default_factory=time.time)

    @property
    def live(self) -> bool:
        return not self.finished


class ActiveStrategyRegistry:
    """Duplicate-launch guard plus pause/finish bookkeeping.

    A live entry can never be overwritten; finished entries stay visible until
    ``cleanup`` or a new registration replaces them.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}

    def register(self, bot_id: str, entry: RegistryEntry) -> RegistryEntry:
        current = self._entries.get(bot_id)
        if current is not None and current.live:
            raise DuplicateLaunchError(bot_id)
        self._entries[bot_id] = entry
        logger.info("REGISTRY_ADD bot=%s kind=%s mode=%s", bot_id, entry.kind, entry.mode)
        return entry

    def get(self, bot_id: str) -> RegistryEntry | None:
        return self._entries.get(bot_id)

    def unregister(self, bot_id: str) -> RegistryEntry | None:
        entry = self._entries.pop(bot_id, None)
        if entry is not None:
            logger.info("REGISTRY_REMOVE bot=%s", bot_id)
        return entry

    def is_running(self, bot_id: str) -> bool:
        entry = self._entries.get(bot_id)
        return entry is not None and entry.live

    def is_paused(self, bot_id: str) -> bool:
        entry = self._entries.get(bot_id)
        return bool(entry and entry.paused)

    def set_paused(self, bot_id: str, paused: bool) -> bool:
        entry = self._entries.get(bot_id)
        if entry is None or entry.finished:
            return False
        entry.paused = bool(paused)
        entry.status = "paused" if paused else "running"
        return True

    def mark_finished(self, bot_id: str, status: str) -> None:
        entry = self._entries.get(bot_id)
        if entry is None:
            return
        entry.finished = True
        entry.paused = False
        entry.status = status

    def cleanup(self) -> list[str]:
        removed = [bot_id for bot_id, entry in self._entries.items() if entry.finished]
        for bot_id in removed:
            self._entries.pop(bot_id, None)
        return removed

    def running_ids(self) -> list[str]:
        return [bot_id for bot_id, entry in self._entries.items() if entry.live]

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
