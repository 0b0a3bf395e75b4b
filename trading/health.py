"""In-process health sink and counters for running bots."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class HealthPayload:
    last_tick_at: float | None = None
    loop_duration_ms: float = 0.0
    restart_count: int = 0
    status: str = "running"
    notes: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        row = asdict(self)
        return {
            "lastTickAt": row["last_tick_at"],
            "loopDurationMs": row["loop_duration_ms"],
            "restartCount": row["restart_count"],
            "status": row["status"],
            "notes": row["notes"],
        }


class HealthRegistry:
    """Keeps the latest health payload per bot id."""

    def __init__(self) -> None:
        self._rows: dict[str, HealthPayload] = {}
        self._updated_at: dict[str, float] = {}

    def emit(self, bot_id: str, payload: HealthPayload) -> None:
        try:
            self._rows[str(bot_id)] = payload
            self._updated_at[str(bot_id)] = time.time()
            logger.debug(
                "HEALTH bot=%s status=%s loop_ms=%.1f restarts=%s",
                bot_id,
                payload.status,
                payload.loop_duration_ms,
                payload.restart_count,
            )
        except Exception as exc:
            logger.warning("HEALTH_EMIT_FAILED bot=%s err=%s", bot_id, exc)

    def get(self, bot_id: str) -> HealthPayload | None:
        return self._rows.get(str(bot_id))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {bot_id: row.as_dict() for bot_id, row in self._rows.items()}

    def forget(self, bot_id: str) -> None:
        self._rows.pop(str(bot_id), None)
        self._updated_at.pop(str(bot_id), None)


class Metrics:
    """Labelled counters and observation sums, safe to bump from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, tuple[tuple[str, str], ...]], float] = defaultdict(float)

    @staticmethod
    def _key(name: str, labels: dict[str, Any] | None) -> tuple[str, tuple[tuple[str, str], ...]]:
        return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))

    def inc(self, name: str, labels: dict[str, Any] | None = None, value: float = 1.0) -> None:
        with self._lock:
            self._counters[self._key(name, labels)] += float(value)

    def observe(self, name: str, value: float, labels: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._counters[self._key(f"{name}_sum", labels)] += float(value)
            self._counters[self._key(f"{name}_count", labels)] += 1.0

    def value(self, name: str, labels: dict[str, Any] | None = None) -> float:
        with self._lock:
            return float(self._counters.get(self._key(name, labels), 0.0))

    def total(self, name: str) -> float:
        with self._lock:
            return float(sum(v for (n, _), v in self._counters.items() if n == name))

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            out: dict[str, float] = {}
            for (name, labels), value in self._counters.items():
                label_text = ",".join(f"{k}={v}" for k, v in labels)
                out[f"{name}{{{label_text}}}" if label_text else name] = value
            return out


metrics = Metrics()
health_registry = HealthRegistry()
