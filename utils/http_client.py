"""Shared aiohttp client: retry/backoff, per-source concurrency and rate windows."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def observe(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)


class ResilientHttpClient:
    """One pooled session shared by every provider wrapper.

    Calls never raise for transport problems; they return ``HttpResult`` with
    ``ok=False`` and a short error tag so callers can decide how to degrade.
    """

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._rate_windows: dict[str, deque[float]] = {}
        self._rate_locks: dict[str, asyncio.Lock] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
            sem = asyncio.Semaphore(max(1, int(self._source_limits.get(key, default_limit))))
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        row = self._stats.get(key)
        if row is None:
            row = HttpSourceStats()
            self._stats[key] = row
        return row

    def _rate_limit_config(self, key: str) -> tuple[int, float] | None:
        limits = getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}
        row = limits.get(key)
        if isinstance(row, tuple) and len(row) == 2:
            return max(1, int(row[0])), max(1.0, float(row[1]))
        return None

    async def _wait_rate_slot(self, key: str, stats: HttpSourceStats) -> None:
        limit = self._rate_limit_config(key)
        if limit is None:
            return
        max_calls, window_seconds = limit
        lock = self._rate_locks.setdefault(key, asyncio.Lock())
        while True:
            async with lock:
                now = time.monotonic()
                window = self._rate_windows.setdefault(key, deque())
                while window and window[0] <= now - window_seconds:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait_for = max(0.01, (window[0] + window_seconds) - now)
            stats.limiter_waits += 1
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs max_calls=%s", key, wait_for, max_calls)
            await asyncio.sleep(wait_for)

    async def _wait_cooldown(self, key: str) -> None:
        until = float(self._cooldown_until.get(key, 0.0) or 0.0)
        wait_for = until - time.monotonic()
        if wait_for > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", key, wait_for)
            await asyncio.sleep(wait_for)

    def _apply_source_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        retry_after = 0.0
        raw = (response.headers or {}).get("Retry-After", "")
        if raw:
            try:
                retry_after = max(0.0, float(raw))
            except ValueError:
                retry_after = 0.0
        per_source = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        base = per_source.get(key, getattr(config, "HTTP_429_COOLDOWN_SECONDS", 30.0))
        cooldown = max(float(base or 0.0), retry_after)
        if cooldown > 0:
            until = time.monotonic() + cooldown
            self._cooldown_until[key] = max(float(self._cooldown_until.get(key, 0.0)), until)

    @staticmethod
    def _compute_delay(attempt: int, status: int) -> float:
        base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
        cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
        jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0))
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            delay = min(cap, delay + float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0) or 0.0))
        return max(0.01, delay + random.uniform(0.0, jitter))

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = int(row.ok + row.fail)
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "limiter_waits": int(row.limiter_waits),
                "retries": int(row.retries),
                "error_percent": round((float(row.fail) / total * 100.0) if total else 0.0, 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        if reset:
            self._stats = {}
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request("GET", url, source=source, params=params, headers=headers, max_attempts=max_attempts)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request("POST", url, source=source, json_body=payload, headers=headers, max_attempts=max_attempts)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        source: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3))
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)
        key = self._source_key(source)
        sem = self._get_semaphore(key)
        stats = self._stats_row(key)

        for attempt in range(1, attempts + 1):
            status = 0
            await self._wait_cooldown(key)
            await self._wait_rate_slot(key, stats)
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.request(
                        method, url, params=params, json=json_body, headers=req_headers
                    ) as response:
                        stats.observe(started)
                        status = int(response.status or 0)
                        if 200 <= status < 300:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)
                        retryable = status == 429 or 500 <= status <= 599
                        if status == 429:
                            stats.rate_limited += 1
                            self._apply_source_cooldown(key, response)
                        if not retryable or attempt >= attempts:
                            stats.fail += 1
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.observe(started)
                    if attempt >= attempts:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            stats.retries += 1
            delay = self._compute_delay(attempt=attempt, status=status)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                method,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
