"""Race a signed payload across several relay endpoints, first success wins."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import config
from trading.health import Metrics, metrics as default_metrics
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass
class RelayResult:
    skipped: bool = False
    endpoint: str = ""
    response: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.error


def _endpoint_label(url: str) -> str:
    parsed = urlparse(url)
    return parsed.netloc or url


class RelayClient:
    def __init__(
        self,
        http: ResilientHttpClient,
        *,
        enabled: bool | None = None,
        urls: list[str] | None = None,
        mode: str | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.http = http
        self.enabled = bool(getattr(config, "RELAY_ENABLED", False) if enabled is None else enabled)
        self.urls = list(getattr(config, "RELAY_URLS", []) if urls is None else urls)
        self.mode = str(mode or getattr(config, "RELAY_MODE", "turbo"))
        self.metrics = metrics or default_metrics

    async def _submit(self, url: str, payload: Any) -> tuple[str, HttpResult]:
        label = _endpoint_label(url)
        self.metrics.inc("relay_submit_total", {"endpoint": label})
        try:
            result = await self.http.post_json(
                url,
                {"mode": self.mode, "payload": payload},
                source="relay",
                max_attempts=1,
            )
        except Exception as exc:
            result = HttpResult(ok=False, status=0, data=None, error=f"relay_exception:{exc}")
        return url, result

    async def send(self, payload: Any) -> RelayResult:
        if not self.enabled or not self.urls:
            return RelayResult(skipped=True)

        tasks = [asyncio.ensure_future(self._submit(url, payload)) for url in self.urls]
        errors: list[str] = []
        for finished in asyncio.as_completed(tasks):
            url, result = await finished
            if result.ok:
                label = _endpoint_label(url)
                self.metrics.inc("relay_win_total", {"endpoint": label})
                logger.info("RELAY_WIN endpoint=%s mode=%s", label, self.mode)
                # Losers keep running; a signed transaction is safe to land twice.
                return RelayResult(endpoint=url, response=result.data)
            errors.append(f"{_endpoint_label(url)}:{result.error or result.status}")

        logger.warning("RELAY_ALL_FAILED endpoints=%s errors=%s", len(self.urls), ";".join(errors))
        return RelayResult(error="No relay reachable")
