"""Clock-driven strategies: scheduled buys (interval or limit ladder) and iceberg TWAP."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

import config
from trading.errors import HaltRequested, TransientDataError
from trading.policies import Candidate, StrategyPolicy

if TYPE_CHECKING:
    from monitor.market_data import BirdeyeMarketData
    from trading.executor import TradeReceipt
    from trading.run_state import RunState
    from trading.strategy_config import LimitTier, StrategyConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledBuyPolicy(StrategyPolicy):
    """Buys ``output_mint`` from ``start_time`` on.

    Interval mode spends an equal slice every tick. Limit mode keeps a ladder
    of USD price tiers; a tier fills once when the price trades at or below it.
    """

    kind = "scheduled"

    def __init__(
        self,
        cfg: "StrategyConfig",
        market_data: "BirdeyeMarketData",
        *,
        now: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(cfg)
        self.market_data = market_data
        self._now = now
        self._monotonic = monotonic
        self.started_at = cfg.start_time or now()
        self.filled: set[int] = set()
        self._last_exec: float | None = None

    @property
    def limit_mode(self) -> bool:
        return self.cfg.schedule_mode == "limit"

    def max_trades(self) -> int:
        if self.limit_mode:
            return len(self.cfg.limit_tiers)
        return int(self.cfg.max_trades)

    async def initial_delay(self) -> float:
        if self.cfg.start_time is None:
            return 0.0
        return max(0.0, (self.cfg.start_time - self._now()).total_seconds())

    def per_trade_amount(self) -> float:
        return self.cfg.amount_to_spend / max(1, int(self.cfg.max_trades))

    def tier_expired(self, tier: "LimitTier", now: datetime | None = None) -> bool:
        if not tier.expires_in_hours:
            return False
        deadline = self.started_at + timedelta(hours=float(tier.expires_in_hours))
        return (now or self._now()) >= deadline

    def price_floor(self) -> float | None:
        floors = [t.min_price_usd for t in self.cfg.limit_tiers if t.min_price_usd]
        return min(floors) if floors else None

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        if not self.limit_mode:
            amount = self.per_trade_amount()
            return [
                Candidate(
                    asset_id=self.cfg.output_mint,
                    input_mint=self.cfg.input_mint,
                    output_mint=self.cfg.output_mint,
                    amount_base=self.cfg.to_base_units(amount),
                    spend_value=amount,
                    gated=False,
                    safety=False,
                    cooldown=False,
                    meta={"mode": "interval", "slice": state.trades_made + 1},
                )
            ]

        price = await self.market_data.get_price(self.cfg.output_mint)
        if not price:
            raise TransientDataError(f"no USD price for {self.cfg.output_mint}")
        floor = self.price_floor()
        if floor is not None and price < floor:
            raise HaltRequested("price-floor", f"price {price:.8g} < floor {floor:.8g}")

        now = self._now()
        hits = []
        for idx, tier in enumerate(self.cfg.limit_tiers):
            if idx in self.filled or self.tier_expired(tier, now):
                continue
            if price <= tier.price:
                hits.append((idx, tier))
        hits.sort(key=lambda row: row[1].price, reverse=True)
        return [
            Candidate(
                asset_id=self.cfg.output_mint,
                input_mint=self.cfg.input_mint,
                output_mint=self.cfg.output_mint,
                amount_base=self.cfg.to_base_units(tier.amount),
                spend_value=tier.amount,
                priority=tier.price,
                gated=False,
                safety=False,
                cooldown=False,
                meta={"mode": "limit", "tier": idx, "tier_price": tier.price, "price": price},
            )
            for idx, tier in hits
        ]

    async def before_trade(self, candidate: Candidate) -> None:
        if not self.limit_mode or self._last_exec is None:
            return
        gap = float(getattr(config, "LIMIT_MIN_EXEC_GAP_SECONDS", 3))
        wait = gap - (self._monotonic() - self._last_exec)
        if wait > 0:
            await asyncio.sleep(wait)

    def on_trade(self, candidate: Candidate, receipt: "TradeReceipt") -> None:
        self._last_exec = self._monotonic()
        if "tier" in candidate.meta:
            self.filled.add(int(candidate.meta["tier"]))

    def is_complete(self, state: "RunState") -> bool:
        if not self.limit_mode:
            return False
        now = self._now()
        return all(
            idx in self.filled or self.tier_expired(tier, now)
            for idx, tier in enumerate(self.cfg.limit_tiers)
        )


def plan_clips(total: int, num_clips: int, min_pct: float, max_pct: float, rng: random.Random | None = None) -> list[int]:
    """Split ``total`` base units into jittered clips that sum exactly to it.

    Each clip but the last is the average size scaled by a factor drawn from
    ``[min_pct, max_pct]``, clamped so every later clip keeps at least one unit.
    """
    if num_clips < 1 or total < num_clips:
        raise ValueError("total must cover at least one unit per clip")
    rng = rng or random.Random()
    average = total / num_clips
    clips: list[int] = []
    remaining = total
    for idx in range(num_clips - 1):
        left = num_clips - idx - 1
        size = int(average * rng.uniform(min_pct, max_pct))
        size = max(1, min(size, remaining - left))
        clips.append(size)
        remaining -= size
    clips.append(remaining)
    return clips


class IcebergTwapPolicy(StrategyPolicy):
    kind = "icebergtwap"

    def __init__(self, cfg: "StrategyConfig", *, rng: random.Random | None = None) -> None:
        super().__init__(cfg)
        self.rng = rng or random.Random()
        self.clips = plan_clips(
            cfg.to_base_units(cfg.amount_to_spend),
            int(cfg.num_clips),
            cfg.min_clip_pct,
            cfg.max_clip_pct,
            self.rng,
        )
        self.next_clip = 0
        logger.info(
            "ICEBERG_PLAN bot=%s clips=%s total=%s",
            cfg.bot_id,
            len(self.clips),
            sum(self.clips),
        )

    def max_trades(self) -> int:
        return len(self.clips)

    def next_delay(self) -> float:
        lo, hi = self.cfg.min_spacing_seconds, self.cfg.max_spacing_seconds
        if lo is not None and hi is not None:
            return self.rng.uniform(float(lo), float(hi))
        if lo is not None or hi is not None:
            return float(lo if lo is not None else hi)
        return float(self.cfg.interval_seconds)

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        if self.next_clip >= len(self.clips):
            return []
        amount = self.clips[self.next_clip]
        return [
            Candidate(
                asset_id=self.cfg.output_mint,
                input_mint=self.cfg.input_mint,
                output_mint=self.cfg.output_mint,
                amount_base=amount,
                spend_value=amount / (10 ** self.cfg.input_decimals),
                gated=False,
                safety=False,
                cooldown=False,
                meta={"clip": self.next_clip + 1, "clips": len(self.clips)},
            )
        ]

    def on_trade(self, candidate: Candidate, receipt: "TradeReceipt") -> None:
        self.next_clip += 1

    def is_complete(self, state: "RunState") -> bool:
        return self.next_clip >= len(self.clips)
