"""Birdeye market data: token overview, price, creation time and feed lists."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import config
from utils.addressing import dedupe_mints
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

SOURCE = "birdeye"
WINDOW_ORDER = ("1m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "24h")

_FEED_ENDPOINTS: dict[str, tuple[str, dict[str, Any]]] = {
    "new": ("/defi/v2/tokens/new_listing", {}),
    "trending": ("/defi/token_trending", {"sort_by": "rank", "sort_type": "asc"}),
    "high-liquidity": ("/defi/tokenlist", {"sort_by": "liquidity", "sort_type": "desc"}),
    "mid-cap-growth": (
        "/defi/v3/token/list",
        {"sort_by": "price_change_24h_percent", "sort_type": "desc", "min_market_cap": 1_000_000, "max_market_cap": 100_000_000},
    ),
    "price-surge": ("/defi/v3/token/list", {"sort_by": "price_change_1h_percent", "sort_type": "desc"}),
    "volume-spike": ("/defi/v3/token/list", {"sort_by": "volume_1h_change_percent", "sort_type": "desc"}),
}


@dataclass
class MarketOverview:
    price: float = 0.0
    price_change: float = 0.0
    volume_usd: float = 0.0
    market_cap: float = 0.0
    symbol: str = ""
    vol_prev_avg_usd: float = 0.0
    changes_by_window: dict[str, float] = field(default_factory=dict)
    volumes_by_window: dict[str, float] = field(default_factory=dict)
    ok: bool = True

    @classmethod
    def empty(cls) -> "MarketOverview":
        return cls(ok=False)


def _num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _pick_window(values: dict[str, float], window: str) -> str | None:
    """Requested window, else the next larger one the provider returned."""
    if window in values:
        return window
    start = WINDOW_ORDER.index(window) + 1 if window in WINDOW_ORDER else 0
    for candidate in WINDOW_ORDER[start:]:
        if candidate in values:
            return candidate
    return None


def parse_overview(data: dict[str, Any], price_window: str, volume_window: str) -> MarketOverview:
    """Map a ``token_overview`` payload onto the fields the gates read."""
    changes: dict[str, float] = {}
    volumes: dict[str, float] = {}
    for key, value in data.items():
        if key.startswith("priceChange") and key.endswith("Percent"):
            window = key[len("priceChange"):-len("Percent")]
            number = _num(value)
            if window and number is not None:
                changes[window] = number / 100.0
        elif key.startswith("v") and key.endswith("USD") and not key.startswith("vHistory"):
            window = key[1:-len("USD")]
            number = _num(value)
            if window and window[0].isdigit() and number is not None:
                volumes[window] = number

    change_window = _pick_window(changes, price_window)
    used_window = _pick_window(volumes, volume_window)
    volume = volumes.get(used_window) if used_window else None

    return MarketOverview(
        price=_num(data.get("price")) or 0.0,
        price_change=changes.get(change_window, 0.0) if change_window else 0.0,
        volume_usd=volume or 0.0,
        market_cap=_num(data.get("marketCap")) or _num(data.get("mc")) or 0.0,
        symbol=str(data.get("symbol") or ""),
        vol_prev_avg_usd=_num(data.get(f"vHistory{used_window}USD")) or 0.0,
        changes_by_window=changes,
        volumes_by_window=volumes,
    )


class BirdeyeMarketData:
    def __init__(self, http: ResilientHttpClient, *, cache_ttl_seconds: float | None = None) -> None:
        self.http = http
        self.base_url = getattr(config, "BIRDEYE_API_URL", "https://public-api.birdeye.so")
        self.cache_ttl = float(
            getattr(config, "BIRDEYE_CACHE_TTL_SECONDS", 60.0) if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self._overview_cache: dict[tuple[str, str, str], tuple[float, MarketOverview]] = {}

    def _headers(self) -> dict[str, str]:
        return {
            "X-API-KEY": str(getattr(config, "BIRDEYE_API_KEY", "") or ""),
            "x-chain": str(getattr(config, "BIRDEYE_CHAIN", "solana")),
            "accept": "application/json",
        }

    async def _get(self, path: str, params: dict[str, Any]) -> Any | None:
        result = await self.http.get_json(
            f"{self.base_url}{path}",
            source=SOURCE,
            params=params,
            headers=self._headers(),
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("BIRDEYE_FAIL path=%s status=%s err=%s", path, result.status, result.error)
            return None
        if result.data.get("success") is False:
            return None
        return result.data.get("data")

    async def get_overview(self, mint: str, price_window: str = "5m", volume_window: str = "1h") -> MarketOverview:
        """Never raises; an unreachable provider yields a zeroed overview."""
        key = (mint, price_window, volume_window)
        cached = self._overview_cache.get(key)
        now = time.monotonic()
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]

        attempts = max(1, int(getattr(config, "BIRDEYE_OVERVIEW_ATTEMPTS", 2) or 2))
        for attempt in range(1, attempts + 1):
            data = await self._get("/defi/token_overview", {"address": mint})
            if isinstance(data, dict) and data:
                overview = parse_overview(data, price_window, volume_window)
                self._overview_cache[key] = (time.monotonic(), overview)
                return overview
            if attempt < attempts:
                await asyncio.sleep(0.25 * attempt)

        logger.warning("OVERVIEW_UNAVAILABLE mint=%s windows=%s/%s", mint, price_window, volume_window)
        return MarketOverview.empty()

    async def get_price(self, mint: str) -> float | None:
        if mint == config.USDC_MINT:
            return 1.0
        data = await self._get("/defi/price", {"address": mint})
        if not isinstance(data, dict):
            return None
        price = _num(data.get("value"))
        return price if price and price > 0 else None

    async def get_token_age_minutes(self, mint: str) -> float | None:
        data = await self._get("/defi/token_creation_info", {"address": mint})
        if not isinstance(data, dict):
            return None
        created = _num(data.get("blockUnixTime"))
        if not created:
            return None
        return max(0.0, (time.time() - created) / 60.0)

    async def get_feed(self, name: str, limit: int | None = None) -> list[str]:
        endpoint = _FEED_ENDPOINTS.get(name)
        if endpoint is None:
            logger.warning("FEED_UNKNOWN feed=%s", name)
            return []
        path, params = endpoint
        query = dict(params)
        query["limit"] = int(limit or getattr(config, "FEED_LIST_LIMIT", 20))
        data = await self._get(path, query)
        if isinstance(data, dict):
            rows = data.get("items") or data.get("tokens") or []
        elif isinstance(data, list):
            rows = data
        else:
            rows = []
        return dedupe_mints(row.get("address") for row in rows if isinstance(row, dict))

    async def get_liquidity(self, mint: str) -> float | None:
        data = await self._get("/defi/multi_price", {"list_address": mint, "include_liquidity": "true"})
        row = data.get(mint) if isinstance(data, dict) else None
        if not isinstance(row, dict):
            return None
        return _num(row.get("liquidity"))

    async def is_verified(self, mint: str) -> bool | None:
        data = await self._get("/defi/token_overview", {"address": mint})
        if not isinstance(data, dict):
            return None
        extensions = data.get("extensions") or {}
        return bool(extensions.get("coingeckoId") or data.get("verified"))
