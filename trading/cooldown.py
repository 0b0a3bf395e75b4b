"""Per-key rolling cooldown windows."""

from __future__ import annotations

import time
from typing import Callable


class CooldownTracker:
    """Debounces repeated trades on the same key.

    ``hit`` opens a new window only when the previous one has fully elapsed and
    returns 0 in that case; otherwise it returns the remaining wait in seconds
    without touching the stored stamp. All access happens on the event loop
    thread, so check-and-stamp cannot interleave.
    """

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = max(0.0, float(window_seconds))
        self._clock = clock
        self._stamps: dict[str, float] = {}

    def _remaining(self, key: str, now: float) -> float:
        last = self._stamps.get(key)
        if last is None:
            return 0.0
        return max(0.0, (last + self.window_seconds) - now)

    def peek(self, key: str) -> float:
        return self._remaining(key, self._clock())

    def hit(self, key: str) -> float:
        now = self._clock()
        remaining = self._remaining(key, now)
        if remaining > 0:
            return remaining
        self._stamps[key] = now
        return 0.0

    def clear(self, key: str | None = None) -> None:
        if key is None:
            self._stamps.clear()
        else:
            self._stamps.pop(key, None)

    def __len__(self) -> int:
        return len(self._stamps)
