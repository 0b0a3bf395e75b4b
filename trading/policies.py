"""Strategy policies: the per-kind hooks plugged into the shared StrategyLoop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from trading.executor import TradeMeta
from trading.gates import PASS, GateResult, evaluate_gates

if TYPE_CHECKING:
    from monitor.feed_resolver import FeedResolver
    from monitor.market_data import MarketOverview
    from trading.executor import TradeReceipt
    from trading.run_state import RunState
    from trading.strategy_config import StrategyConfig

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """One possible trade this tick.

    ``amount_base`` is in the input token's smallest unit. ``spend_value`` is
    what counts against the daily cap.
    """

    asset_id: str
    input_mint: str
    output_mint: str
    amount_base: int
    spend_value: float
    priority: float = 0.0
    symbol: str = ""
    gated: bool = True
    safety: bool = True
    cooldown: bool = True
    meta: dict[str, Any] = field(default_factory=dict)


class StrategyPolicy:
    """Default hooks; concrete strategies override what differs."""

    kind = "base"

    def __init__(self, cfg: "StrategyConfig") -> None:
        self.cfg = cfg

    @property
    def category(self) -> str:
        return self.kind

    @property
    def price_window(self) -> str:
        return self.cfg.pump_window

    @property
    def volume_window(self) -> str:
        return self.cfg.volume_window

    def max_trades(self) -> int:
        return int(self.cfg.max_trades)

    async def initial_delay(self) -> float:
        return 0.0

    def next_delay(self) -> float:
        return float(self.cfg.interval_seconds)

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        raise NotImplementedError

    def evaluate_gates(self, candidate: Candidate, overview: "MarketOverview") -> GateResult:
        return PASS

    def build_trade_meta(self, candidate: Candidate) -> TradeMeta:
        return TradeMeta(
            strategy=self.kind,
            category=self.category,
            bot_id=self.cfg.bot_id,
            owner_id=self.cfg.owner_id,
            wallet_id=self.cfg.wallet_id,
            take_profit=self.cfg.take_profit,
            stop_loss=self.cfg.stop_loss,
            extra=dict(candidate.meta),
        )

    async def before_trade(self, candidate: Candidate) -> None:
        return None

    def on_trade(self, candidate: Candidate, receipt: "TradeReceipt") -> None:
        return None

    def is_complete(self, state: "RunState") -> bool:
        return False


class ScanPolicy(StrategyPolicy):
    """Feed-driven buy strategies gated on market data."""

    def __init__(self, cfg: "StrategyConfig", feed_resolver: "FeedResolver") -> None:
        super().__init__(cfg)
        self.feed_resolver = feed_resolver

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        mints = await self.feed_resolver.resolve(self.cfg)
        amount = self.cfg.to_base_units(self.cfg.amount_to_spend)
        return [
            Candidate(
                asset_id=mint,
                input_mint=self.cfg.input_mint,
                output_mint=mint,
                amount_base=amount,
                spend_value=self.cfg.amount_to_spend,
            )
            for mint in mints
            if mint != self.cfg.input_mint
        ]

    def evaluate_gates(self, candidate: Candidate, overview: "MarketOverview") -> GateResult:
        return evaluate_gates(overview, self.cfg)


class SniperPolicy(ScanPolicy):
    kind = "sniper"


class DipBuyerPolicy(ScanPolicy):
    kind = "dipbuyer"

    @property
    def price_window(self) -> str:
        return self.cfg.recovery_window

