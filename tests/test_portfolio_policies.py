from __future__ import annotations

import unittest
from typing import Any

import config
from monitor.market_data import MarketOverview
from monitor.wallet_balances import TokenBalance
from trading.errors import TransientDataError
from trading.portfolio_policies import Holding, RebalancerPolicy, RotationPolicy, pick_momentum_window, plan_rebalance
from trading.run_state import RunState
from trading.strategy_config import StrategyConfig

SOL = config.SOL_MINT
USDC = config.USDC_MINT
USDT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
UXD = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"
WALLET = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class _StubBalances:
    def __init__(self, balances: dict[str, TokenBalance]) -> None:
        self.balances = balances

    async def get_balances(self, owner: str) -> dict[str, TokenBalance]:
        return dict(self.balances)


class _StubMarketData:
    def __init__(self, prices: dict[str, float], changes: dict[str, float] | None = None) -> None:
        self.prices = prices
        self.changes = changes or {}
        self.windows: list[str] = []

    async def get_price(self, mint: str) -> float | None:
        return self.prices.get(mint)

    async def get_overview(self, mint: str, price_window: str = "5m", volume_window: str = "1h") -> MarketOverview:
        self.windows.append(price_window)
        if mint not in self.changes:
            return MarketOverview.empty()
        return MarketOverview(price=self.prices.get(mint, 1.0), price_change=self.changes[mint])


class PlanRebalanceTests(unittest.TestCase):
    @staticmethod
    def _holdings(**values: float) -> dict[str, Holding]:
        mints = {"sol": SOL, "usdc": USDC, "usdt": USDT}
        return {mints[k]: Holding(mints[k], v, 6, 1.0) for k, v in values.items()}

    def test_largest_move_comes_first(self) -> None:
        holdings = self._holdings(sol=750, usdc=200, usdt=50)
        moves = plan_rebalance(
            holdings, {SOL: 0.5, USDC: 0.25, USDT: 0.25}, threshold=0.04, min_trade_usd=5, max_moves=5
        )
        self.assertEqual([(s, b) for s, b, _ in moves], [(SOL, USDT), (SOL, USDC)])
        self.assertAlmostEqual(moves[0][2], 200.0)
        self.assertAlmostEqual(moves[1][2], 50.0)

    def test_threshold_min_trade_and_move_cap(self) -> None:
        holdings = self._holdings(sol=800, usdc=100, usdt=100)
        targets = {SOL: 0.5, USDC: 0.25, USDT: 0.25}
        self.assertEqual(plan_rebalance(holdings, targets, threshold=0.5, min_trade_usd=5, max_moves=5), [])
        self.assertEqual(plan_rebalance(holdings, targets, threshold=0.05, min_trade_usd=200, max_moves=5), [])
        self.assertEqual(len(plan_rebalance(holdings, targets, threshold=0.05, min_trade_usd=5, max_moves=1)), 1)

    def test_unpriced_assets_are_left_out(self) -> None:
        holdings = self._holdings(sol=500, usdc=500)
        holdings[USDT] = Holding(USDT, 1000, 6, 0.0)
        moves = plan_rebalance(
            holdings, {SOL: 0.5, USDC: 0.5, USDT: 1.0}, threshold=0.05, min_trade_usd=5, max_moves=5
        )
        self.assertEqual(moves, [])

    def test_momentum_window_buckets(self) -> None:
        self.assertEqual(pick_momentum_window(10), "5m")
        self.assertEqual(pick_momentum_window(30), "15m")
        self.assertEqual(pick_momentum_window(45), "30m")
        self.assertEqual(pick_momentum_window(120), "1h")
        self.assertEqual(pick_momentum_window(600), "4h")


class RebalancerPolicyTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def _cfg(self) -> StrategyConfig:
        return StrategyConfig.from_dict(
            {"kind": "rebalancer", "botId": "rb", "targets": {SOL: 50, USDC: 50}, "rebalanceThreshold": 5}
        )

    async def test_overweight_sol_is_sold_into_usdc(self) -> None:
        self.patch_cfg(SOL_GAS_BUFFER=0.02)
        balances = _StubBalances({SOL: TokenBalance(10.02, 9), USDC: TokenBalance(0.0, 6)})
        policy = RebalancerPolicy(self._cfg(), _StubMarketData({SOL: 100.0, USDC: 1.0}), balances, WALLET)
        candidates = await policy.resolve_candidates(RunState())
        self.assertEqual(len(candidates), 1)
        move = candidates[0]
        self.assertEqual((move.input_mint, move.output_mint), (SOL, USDC))
        self.assertAlmostEqual(move.spend_value, 500.0, places=3)
        self.assertAlmostEqual(move.amount_base / 1e9, 5.0, places=6)
        self.assertFalse(move.gated or move.safety or move.cooldown)

    async def test_balanced_portfolio_yields_nothing(self) -> None:
        self.patch_cfg(SOL_GAS_BUFFER=0.0)
        balances = _StubBalances({SOL: TokenBalance(5.0, 9), USDC: TokenBalance(500.0, 6)})
        policy = RebalancerPolicy(self._cfg(), _StubMarketData({SOL: 100.0, USDC: 1.0}), balances, WALLET)
        state = RunState()
        self.assertEqual(await policy.resolve_candidates(state), [])
        self.assertEqual(state.counters["balanced"], 1)

    async def test_missing_wallet_is_transient(self) -> None:
        policy = RebalancerPolicy(self._cfg(), _StubMarketData({}), _StubBalances({}), "")
        with self.assertRaises(TransientDataError):
            await policy.resolve_candidates(RunState())


class RotationPolicyTests(unittest.IsolatedAsyncioTestCase):
    def _cfg(self, **data: Any) -> StrategyConfig:
        base = {
            "kind": "rotationbot",
            "botId": "rot",
            "monitoredTokens": [USDT, UXD],
            "rotationIntervalMinutes": 45,
            "amountToSpend": 0.5,
        }
        base.update(data)
        return StrategyConfig.from_dict(base)

    def _market(self) -> _StubMarketData:
        return _StubMarketData({USDT: 1.0, UXD: 1.0}, {USDT: 0.02, UXD: 0.08})

    async def test_rotates_holdings_into_the_strongest_token(self) -> None:
        market = self._market()
        policy = RotationPolicy(self._cfg(), market, _StubBalances({USDT: TokenBalance(100.0, 6)}), WALLET)
        candidates = await policy.resolve_candidates(RunState())
        self.assertEqual(len(candidates), 1)
        self.assertEqual((candidates[0].input_mint, candidates[0].output_mint), (USDT, UXD))
        self.assertAlmostEqual(candidates[0].spend_value, 100.0)
        self.assertEqual(set(market.windows), {"30m"})

    async def test_already_in_best(self) -> None:
        policy = RotationPolicy(self._cfg(), self._market(), _StubBalances({UXD: TokenBalance(50.0, 6)}), WALLET)
        state = RunState()
        self.assertEqual(await policy.resolve_candidates(state), [])
        self.assertEqual(state.counters["alreadyInBest"], 1)

    async def test_empty_wallet_buys_with_configured_amount(self) -> None:
        policy = RotationPolicy(self._cfg(), self._market(), _StubBalances({}), WALLET)
        candidates = await policy.resolve_candidates(RunState())
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].input_mint, SOL)
        self.assertEqual(candidates[0].amount_base, 500_000_000)

    async def test_weak_momentum_skips_the_tick(self) -> None:
        policy = RotationPolicy(self._cfg(minMomentum=10), self._market(), _StubBalances({}), WALLET)
        state = RunState()
        self.assertEqual(await policy.resolve_candidates(state), [])
        self.assertEqual(state.counters["noMomentum"], 1)


if __name__ == "__main__":
    unittest.main()
