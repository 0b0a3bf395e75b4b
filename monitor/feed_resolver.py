"""Turns a strategy's feed settings into a deduplicated candidate list."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from utils.addressing import dedupe_mints

if TYPE_CHECKING:
    from monitor.market_data import BirdeyeMarketData
    from trading.strategy_config import StrategyConfig

logger = logging.getLogger(__name__)

DEFAULT_FEED_BY_KIND = {
    "sniper": "new",
    "dipbuyer": "trending",
    "rotationbot": "all",
}
DEFAULT_FEED = "trending"
ALL_FEEDS = ("trending", "high-liquidity", "mid-cap-growth")
NO_FEED = ("none", "monitored", "")


class FeedResolver:
    def __init__(self, market_data: "BirdeyeMarketData") -> None:
        self.market_data = market_data

    def feed_name(self, cfg: "StrategyConfig") -> str:
        return cfg.token_feed or DEFAULT_FEED_BY_KIND.get(cfg.kind, DEFAULT_FEED)

    async def _fetch(self, name: str) -> list[str]:
        try:
            return await self.market_data.get_feed(name)
        except Exception as exc:
            logger.warning("FEED_FAIL feed=%s err=%s", name, exc)
            return []

    async def resolve(self, cfg: "StrategyConfig") -> list[str]:
        monitored = list(cfg.monitored_tokens)
        if cfg.override_monitored and monitored:
            return dedupe_mints(monitored)

        name = self.feed_name(cfg)
        if name in NO_FEED:
            return dedupe_mints(monitored)
        if name == "all":
            fetched: list[str] = []
            for sub in ALL_FEEDS:
                fetched.extend(await self._fetch(sub))
        else:
            fetched = await self._fetch(name)
        return dedupe_mints(fetched + monitored)
