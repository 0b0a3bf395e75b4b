"""Pre-trade token safety checks with a single pass/fail aggregate."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import config
from trading.errors import QuoteTransportError, TransientDataError

if TYPE_CHECKING:
    from monitor.market_data import BirdeyeMarketData
    from monitor.wallet_balances import WalletBalanceReader
    from trading.jupiter import JupiterClient

logger = logging.getLogger(__name__)

CHECK_LABELS = {
    "simulation": "Honeypot / Illiquidity",
    "liquidity": "Liquidity",
    "authority": "Mint / Freeze Authority",
    "topHolders": "Whale Concentration",
    "verified": "Verified Token",
}
DEFAULT_CHECKS = {"simulation": True, "liquidity": True, "authority": True, "topHolders": True, "verified": False}


@dataclass
class CheckResult:
    passed: bool
    label: str
    reason: str = ""
    detail: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "label": self.label, "reason": self.reason, "detail": self.detail}


@dataclass
class SafetyReport:
    passed: bool
    checks: dict[str, CheckResult] = field(default_factory=dict)

    def failed_reasons(self) -> dict[str, str]:
        return {name: row.reason or row.label for name, row in self.checks.items() if not row.passed}

    def summary(self) -> str:
        failed = self.failed_reasons()
        if not failed:
            return "ok"
        return "; ".join(f"{name}: {reason}" for name, reason in failed.items())

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {name: row.as_dict() for name, row in self.checks.items()}
        out["passed"] = self.passed
        return out


class SafetyChecker:
    def __init__(
        self,
        market_data: "BirdeyeMarketData",
        jupiter: "JupiterClient",
        rpc: "WalletBalanceReader",
    ) -> None:
        self.market_data = market_data
        self.jupiter = jupiter
        self.rpc = rpc
        self._cache: dict[tuple[str, tuple[str, ...]], tuple[float, SafetyReport]] = {}
        self._runners: dict[str, Callable[[str], Awaitable[CheckResult]]] = {
            "simulation": self._check_simulation,
            "liquidity": self._check_liquidity,
            "authority": self._check_authority,
            "topHolders": self._check_top_holders,
            "verified": self._check_verified,
        }

    async def check(self, mint: str, options: dict[str, bool] | None = None) -> SafetyReport:
        """Run the enabled checks; every flag explicitly off means auto-pass."""
        options = dict(options or {})
        if options and all(v is False for v in options.values()):
            return SafetyReport(passed=True)
        wanted = {**DEFAULT_CHECKS, **options}
        enabled = tuple(name for name in self._runners if wanted.get(name))

        key = (mint, enabled)
        ttl = float(getattr(config, "SAFETY_CACHE_TTL_SECONDS", 30.0) or 0.0)
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[0] < ttl:
            return cached[1]

        checks: dict[str, CheckResult] = {}
        for name, runner in self._runners.items():
            if name not in enabled:
                checks[name] = CheckResult(True, CHECK_LABELS[name], "Skipped")
                continue
            try:
                checks[name] = await runner(mint)
            except (TransientDataError, QuoteTransportError) as exc:
                checks[name] = CheckResult(False, CHECK_LABELS[name], "Lookup failed", str(exc))
        report = SafetyReport(passed=all(row.passed for row in checks.values()), checks=checks)
        self._cache[key] = (time.monotonic(), report)
        if not report.passed:
            logger.info("SAFETY_FAIL mint=%s reasons=%s", mint, report.summary())
        return report

    async def _check_simulation(self, mint: str) -> CheckResult:
        label = CHECK_LABELS["simulation"]
        max_impact = float(getattr(config, "SAFETY_SIM_MAX_IMPACT_PCT", 5.0))
        quote = await self.jupiter.quote(
            input_mint=config.SOL_MINT,
            output_mint=mint,
            amount=int(getattr(config, "SAFETY_SIM_AMOUNT_LAMPORTS", 5_000_000)),
            slippage=1.0,
        )
        if not quote:
            return CheckResult(False, label, "No route")
        try:
            impact = float(quote.get("priceImpactPct"))
            out_amount = float(quote.get("outAmount") or 0)
        except (TypeError, ValueError):
            return CheckResult(False, label, "Unreadable simulation")
        # Quote impact is a fraction; the limit is configured in percent.
        impact_pct = impact * 100.0
        if impact_pct > max_impact:
            return CheckResult(False, label, "High price impact", f"{impact_pct:.2f}% > {max_impact:.2f}%")
        if out_amount <= 0:
            return CheckResult(False, label, "Zero output")
        return CheckResult(True, label, "OK", f"impact {impact_pct:.2f}%")

    async def _check_liquidity(self, mint: str) -> CheckResult:
        label = CHECK_LABELS["liquidity"]
        floor = float(getattr(config, "SAFETY_MIN_LIQUIDITY_USD", 5_000.0))
        liquidity = await self.market_data.get_liquidity(mint)
        if liquidity is None:
            return CheckResult(False, label, "No liquidity data")
        if liquidity < floor:
            return CheckResult(False, label, "Low liquidity", f"${liquidity:,.2f} < ${floor:,.2f}")
        return CheckResult(True, label, "OK", f"${liquidity:,.2f}")

    async def _check_authority(self, mint: str) -> CheckResult:
        label = CHECK_LABELS["authority"]
        result = await self.rpc.call("getAccountInfo", [mint, {"encoding": "jsonParsed"}])
        try:
            info = result["value"]["data"]["parsed"]["info"]
        except (KeyError, TypeError):
            return CheckResult(False, label, "No mint account data")
        problems = []
        if info.get("mintAuthority"):
            problems.append("Mint authority exists")
        if info.get("freezeAuthority"):
            problems.append("Freeze authority exists")
        if problems:
            return CheckResult(False, label, "; ".join(problems))
        return CheckResult(True, label, "OK")

    async def _check_top_holders(self, mint: str) -> CheckResult:
        label = CHECK_LABELS["topHolders"]
        supply_row = await self.rpc.call("getTokenSupply", [mint])
        holders_row = await self.rpc.call("getTokenLargestAccounts", [mint])
        try:
            total = float(supply_row["value"]["uiAmount"] or 0.0)
        except (KeyError, TypeError, ValueError):
            total = 0.0
        holders = [float(h.get("uiAmount") or 0.0) for h in ((holders_row or {}).get("value") or [])]
        if total <= 0 or not holders:
            return CheckResult(True, label, "No top holder data")
        top1 = holders[0] / total * 100.0
        top5 = sum(holders[:5]) / total * 100.0
        top1_max = float(getattr(config, "SAFETY_TOP1_MAX_PCT", 50.0))
        top5_max = float(getattr(config, "SAFETY_TOP5_MAX_PCT", 75.0))
        if top1 > top1_max:
            return CheckResult(False, label, f"Top 1 holder exceeds {top1_max:g}%", f"{top1:.2f}%")
        if top5 > top5_max:
            return CheckResult(False, label, f"Top 5 holders exceed {top5_max:g}%", f"{top5:.2f}%")
        return CheckResult(True, label, "OK", f"top1 {top1:.2f}% top5 {top5:.2f}%")

    async def _check_verified(self, mint: str) -> CheckResult:
        label = CHECK_LABELS["verified"]
        verified = await self.market_data.is_verified(mint)
        if verified is None:
            return CheckResult(False, label, "No metadata")
        if not verified:
            return CheckResult(False, label, "Not verified")
        return CheckResult(True, label, "OK")
