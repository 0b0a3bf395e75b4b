"""Mutable per-run bookkeeping owned by a single StrategyLoop."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

# Order in which counters are printed in summaries.
SUMMARY_ORDER = (
    ("scanned", "Scanned"),
    ("ageSkipped", "AgeSkipped"),
    ("filters", "Filters"),
    ("safety", "Safety"),
    ("buys", "Buys"),
    ("errors", "Errors"),
)

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_HALTED = "halted"
STATUS_COMPLETED = "completed"
STATUS_STOPPED = "stopped"
TERMINAL_STATUSES = (STATUS_HALTED, STATUS_COMPLETED, STATUS_STOPPED)


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class RunState:
    trades_made: int = 0
    consecutive_failures: int = 0
    counters: Counter = field(default_factory=Counter)
    last_tick_at: float | None = None
    spent_today: float = 0.0
    spent_day: date = field(default_factory=_today)
    total_spent: float = 0.0
    halted: bool = False
    halt_reason: str = ""
    status: str = STATUS_IDLE
    started_at: float = field(default_factory=time.time)
    ticks: int = 0
    summary_sent: bool = False

    def bump(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def spent_for(self, today: date | None = None) -> float:
        """Spent-today total, rolled over when the UTC day changes."""
        today = today or _today()
        if today != self.spent_day:
            self.spent_day = today
            self.spent_today = 0.0
        return self.spent_today

    def record_trade(self, amount: float, today: date | None = None) -> None:
        self.spent_for(today)
        self.spent_today += float(amount)
        self.total_spent += float(amount)
        self.trades_made += 1
        self.consecutive_failures = 0
        self.bump("buys")

    def record_failure(self) -> int:
        self.consecutive_failures += 1
        self.bump("errors")
        return self.consecutive_failures

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def uptime_seconds(self, now: float | None = None) -> float:
        return max(0.0, (now or time.time()) - self.started_at)

    def summary_lines(self) -> list[str]:
        lines = [f"{label}: {int(self.counters.get(key, 0))}" for key, label in SUMMARY_ORDER]
        extra = sorted(k for k in self.counters if k not in {key for key, _ in SUMMARY_ORDER})
        lines.extend(f"{k}: {int(self.counters[k])}" for k in extra)
        return lines

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "halt_reason": self.halt_reason,
            "trades_made": self.trades_made,
            "consecutive_failures": self.consecutive_failures,
            "spent_today": round(self.spent_today, 9),
            "total_spent": round(self.total_spent, 9),
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at,
            "uptime_seconds": round(self.uptime_seconds(), 1),
            "counters": dict(self.counters),
        }
