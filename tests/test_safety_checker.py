from __future__ import annotations

import unittest
from typing import Any

import config
from monitor.safety_checker import SafetyChecker
from trading.errors import TransientDataError

MINT = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"


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


class _StubMarket:
    def __init__(self, liquidity: float | None = 50_000.0, verified: bool | None = True) -> None:
        self.liquidity = liquidity
        self.verified = verified
        self.calls = 0

    async def get_liquidity(self, mint: str) -> float | None:
        self.calls += 1
        return self.liquidity

    async def is_verified(self, mint: str) -> bool | None:
        return self.verified


class _StubJupiter:
    def __init__(self, quote: dict[str, Any] | None) -> None:
        self.quote_row = quote

    async def quote(self, **kwargs: Any) -> dict[str, Any] | None:
        return self.quote_row


class _StubRpc:
    def __init__(self, rows: dict[str, Any], fail: set[str] | None = None) -> None:
        self.rows = rows
        self.fail = fail or set()

    async def call(self, method: str, params: list[Any]) -> Any:
        if method in self.fail:
            raise TransientDataError(f"rpc {method} failed: timeout")
        return self.rows.get(method)


def _clean_rpc() -> _StubRpc:
    return _StubRpc(
        {
            "getAccountInfo": {"value": {"data": {"parsed": {"info": {"mintAuthority": None, "freezeAuthority": None}}}}},
            "getTokenSupply": {"value": {"uiAmount": 1_000_000}},
            "getTokenLargestAccounts": {"value": [{"uiAmount": 100_000}, {"uiAmount": 50_000}]},
        }
    )


GOOD_QUOTE = {"priceImpactPct": "0.01", "outAmount": "123456"}


class SafetyCheckerTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(SAFETY_CACHE_TTL_SECONDS=30.0, SAFETY_MIN_LIQUIDITY_USD=5_000.0, SAFETY_SIM_MAX_IMPACT_PCT=5.0)

    async def test_clean_token_passes(self) -> None:
        checker = SafetyChecker(_StubMarket(), _StubJupiter(GOOD_QUOTE), _clean_rpc())
        report = await checker.check(MINT)
        self.assertTrue(report.passed)
        self.assertEqual(report.summary(), "ok")
        self.assertEqual(report.checks["verified"].reason, "Skipped")

    async def test_all_checks_disabled_auto_passes(self) -> None:
        checker = SafetyChecker(_StubMarket(liquidity=0.0), _StubJupiter(None), _StubRpc({}))
        report = await checker.check(MINT, {"simulation": False, "liquidity": False, "authority": False, "topHolders": False})
        self.assertTrue(report.passed)
        self.assertEqual(report.checks, {})

    async def test_failures_are_aggregated_with_reasons(self) -> None:
        rpc = _clean_rpc()
        rpc.rows["getAccountInfo"] = {
            "value": {"data": {"parsed": {"info": {"mintAuthority": "abc", "freezeAuthority": "def"}}}}
        }
        checker = SafetyChecker(_StubMarket(liquidity=1_000.0), _StubJupiter({"priceImpactPct": "0.2", "outAmount": "5"}), rpc)
        report = await checker.check(MINT)
        self.assertFalse(report.passed)
        failed = report.failed_reasons()
        self.assertEqual(failed["simulation"], "High price impact")
        self.assertEqual(failed["liquidity"], "Low liquidity")
        self.assertEqual(failed["authority"], "Mint authority exists; Freeze authority exists")
        self.assertNotIn("topHolders", failed)

    async def test_whale_concentration_fails(self) -> None:
        rpc = _clean_rpc()
        rpc.rows["getTokenLargestAccounts"] = {"value": [{"uiAmount": 600_000}]}
        checker = SafetyChecker(_StubMarket(), _StubJupiter(GOOD_QUOTE), rpc)
        report = await checker.check(MINT)
        self.assertFalse(report.passed)
        self.assertIn("Top 1 holder", report.failed_reasons()["topHolders"])

    async def test_lookup_error_fails_the_check_instead_of_raising(self) -> None:
        rpc = _clean_rpc()
        rpc.fail.add("getAccountInfo")
        checker = SafetyChecker(_StubMarket(), _StubJupiter(GOOD_QUOTE), rpc)
        report = await checker.check(MINT)
        self.assertFalse(report.passed)
        self.assertEqual(report.checks["authority"].reason, "Lookup failed")

    async def test_no_route_fails_simulation(self) -> None:
        checker = SafetyChecker(_StubMarket(), _StubJupiter(None), _clean_rpc())
        report = await checker.check(MINT, {"simulation": True})
        self.assertEqual(report.failed_reasons(), {"simulation": "No route"})

    async def test_verified_check_can_be_enabled(self) -> None:
        checker = SafetyChecker(_StubMarket(verified=False), _StubJupiter(GOOD_QUOTE), _clean_rpc())
        report = await checker.check(MINT, {"verified": True})
        self.assertEqual(report.failed_reasons(), {"verified": "Not verified"})

    async def test_reports_are_cached_per_mint_and_checks(self) -> None:
        market = _StubMarket()
        checker = SafetyChecker(market, _StubJupiter(GOOD_QUOTE), _clean_rpc())
        await checker.check(MINT)
        await checker.check(MINT)
        self.assertEqual(market.calls, 1)
        await checker.check(MINT, {"simulation": False})
        self.assertEqual(market.calls, 2)


if __name__ == "__main__":
    unittest.main()
