"""Holdings-driven strategies: target-weight rebalancing and momentum rotation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import config
from trading.errors import TransientDataError
from trading.policies import Candidate, StrategyPolicy

if TYPE_CHECKING:
    from monitor.market_data import BirdeyeMarketData
    from monitor.wallet_balances import TokenBalance, WalletBalanceReader
    from trading.run_state import RunState
    from trading.strategy_config import StrategyConfig

logger = logging.getLogger(__name__)

DEFAULT_REBALANCE_THRESHOLD = 0.05


@dataclass
class Holding:
    mint: str
    amount: float
    decimals: int
    price: float

    @property
    def value(self) -> float:
        return self.amount * self.price

    def base_units_for_usd(self, usd: float) -> int:
        if self.price <= 0:
            return 0
        amount = min(self.amount, usd / self.price)
        return int(amount * (10 ** self.decimals))


def _spendable(mint: str, balance: "TokenBalance | None") -> tuple[float, int]:
    if balance is None:
        return 0.0, 9 if mint == config.SOL_MINT else 6
    amount = balance.amount
    if mint == config.SOL_MINT:
        amount = max(0.0, amount - float(getattr(config, "SOL_GAS_BUFFER", 0.02)))
    return amount, balance.decimals


@dataclass
class Deviation:
    mint: str
    current: float
    target: float
    usd: float

    @property
    def delta(self) -> float:
        return self.current - self.target


def plan_rebalance(
    holdings: dict[str, Holding],
    targets: dict[str, float],
    *,
    threshold: float,
    min_trade_usd: float,
    max_moves: int,
) -> list[tuple[str, str, float]]:
    """Return ``(sell_mint, buy_mint, usd)`` moves, largest first.

    Assets without a price are left out of the plan entirely.
    """
    priced = {m: h for m, h in holdings.items() if m in targets and h.price > 0}
    total = sum(h.value for h in priced.values())
    if total <= 0:
        return []
    weight_sum = sum(targets[m] for m in priced) or 1.0
    deviations = [
        Deviation(m, h.value / total, targets[m] / weight_sum, h.value) for m, h in priced.items()
    ]
    over = sorted((d for d in deviations if d.delta > threshold), key=lambda d: d.delta, reverse=True)
    under = sorted((d for d in deviations if d.delta < -threshold), key=lambda d: d.delta)

    excess = {d.mint: d.delta * total for d in over}
    deficit = {d.mint: -d.delta * total for d in under}
    moves: list[tuple[str, str, float]] = []
    for seller in over:
        for buyer in under:
            if len(moves) >= max_moves:
                return moves
            move = min(excess[seller.mint], deficit[buyer.mint])
            if move < min_trade_usd:
                continue
            moves.append((seller.mint, buyer.mint, move))
            excess[seller.mint] -= move
            deficit[buyer.mint] -= move
    moves.sort(key=lambda row: row[2], reverse=True)
    return moves


class _HoldingsPolicy(StrategyPolicy):
    def __init__(
        self,
        cfg: "StrategyConfig",
        market_data: "BirdeyeMarketData",
        balances: "WalletBalanceReader",
        owner_pubkey: str,
    ) -> None:
        super().__init__(cfg)
        self.market_data = market_data
        self.balances = balances
        self.owner_pubkey = owner_pubkey

    async def _holdings(self, mints: list[str]) -> dict[str, Holding]:
        if not self.owner_pubkey:
            raise TransientDataError("no wallet public key for balance lookup")
        raw = await self.balances.get_balances(self.owner_pubkey)
        out: dict[str, Holding] = {}
        for mint in mints:
            amount, decimals = _spendable(mint, raw.get(mint))
            price = await self.market_data.get_price(mint)
            out[mint] = Holding(mint, amount, decimals, float(price or 0.0))
        return out


class RebalancerPolicy(_HoldingsPolicy):
    kind = "rebalancer"

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        targets = dict(self.cfg.target_weights)
        holdings = await self._holdings(list(targets))
        moves = plan_rebalance(
            holdings,
            targets,
            threshold=self.cfg.rebalance_threshold or DEFAULT_REBALANCE_THRESHOLD,
            min_trade_usd=self.cfg.min_trade_usd,
            max_moves=max(1, int(self.cfg.max_rebalances_per_tick)),
        )
        if not moves:
            state.bump("balanced")
        candidates = []
        for sell, buy, usd in moves:
            amount = holdings[sell].base_units_for_usd(usd)
            if amount <= 0:
                continue
            candidates.append(
                Candidate(
                    asset_id=f"{sell}->{buy}",
                    input_mint=sell,
                    output_mint=buy,
                    amount_base=amount,
                    spend_value=usd,
                    priority=usd,
                    gated=False,
                    safety=False,
                    cooldown=False,
                    meta={"usd": round(usd, 2)},
                )
            )
        return candidates


def pick_momentum_window(minutes: float) -> str:
    if minutes <= 15:
        return "5m"
    if minutes <= 30:
        return "15m"
    if minutes <= 60:
        return "30m"
    if minutes <= 240:
        return "1h"
    return "4h"


class RotationPolicy(_HoldingsPolicy):
    kind = "rotationbot"

    @property
    def price_window(self) -> str:
        minutes = self.cfg.rotation_interval_minutes or (self.cfg.interval_seconds / 60.0)
        return pick_momentum_window(minutes)

    async def _rank(self) -> list[tuple[str, float]]:
        ranked = []
        for mint in self.cfg.monitored_tokens:
            overview = await self.market_data.get_overview(mint, self.price_window, self.volume_window)
            if overview.ok and overview.price:
                ranked.append((mint, float(overview.price_change)))
        ranked.sort(key=lambda row: row[1], reverse=True)
        return ranked

    async def resolve_candidates(self, state: "RunState") -> list[Candidate]:
        ranked = await self._rank()
        minimum = self.cfg.min_momentum or 0.0
        if not ranked or ranked[0][1] < minimum:
            state.bump("noMomentum")
            return []
        best, momentum = ranked[0]

        holdings = await self._holdings(list(self.cfg.monitored_tokens))
        others = [
            h for m, h in holdings.items()
            if m != best and h.value >= self.cfg.min_trade_usd
        ]
        if not others:
            if holdings.get(best) and holdings[best].value > 0:
                state.bump("alreadyInBest")
                return []
            if self.cfg.amount_to_spend <= 0 or best == self.cfg.input_mint:
                return []
            return [
                Candidate(
                    asset_id=best,
                    input_mint=self.cfg.input_mint,
                    output_mint=best,
                    amount_base=self.cfg.to_base_units(self.cfg.amount_to_spend),
                    spend_value=self.cfg.amount_to_spend,
                    priority=momentum,
                    gated=False,
                    safety=False,
                    meta={"momentum": momentum, "window": self.price_window},
                )
            ]

        others.sort(key=lambda h: h.value, reverse=True)
        return [
            Candidate(
                asset_id=best,
                input_mint=h.mint,
                output_mint=best,
                amount_base=h.base_units_for_usd(h.value),
                spend_value=h.value,
                priority=h.value,
                gated=False,
                safety=False,
                cooldown=False,
                meta={"momentum": momentum, "window": self.price_window, "from": h.mint},
            )
            for h in others
        ]
