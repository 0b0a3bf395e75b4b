"""Numeric gate evaluation shared by scan strategies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from monitor.market_data import MarketOverview
    from trading.strategy_config import StrategyConfig

GATE_ORDER = (
    "overview-fail",
    "pump-fail",
    "vol-fail",
    "volSpike",
    "dip-fail",
    "usd-limit",
    "mcap-min",
    "mcap-max",
)


@dataclass(frozen=True)
class GateResult:
    passed: bool
    reason: str = ""
    detail: str = ""

    @classmethod
    def ok(cls) -> "GateResult":
        return cls(True)

    @classmethod
    def fail(cls, reason: str, detail: str = "") -> "GateResult":
        return cls(False, reason, detail)


PASS = GateResult.ok()


def evaluate_gates(overview: "MarketOverview", cfg: "StrategyConfig") -> GateResult:
    """Apply the configured gates in fixed order, stopping at the first failure."""
    if overview is None or not overview.price:
        return GateResult.fail("overview-fail", "no price data")

    change = float(overview.price_change or 0.0)
    volume = float(overview.volume_usd or 0.0)

    if cfg.entry_threshold is not None and change < cfg.entry_threshold:
        return GateResult.fail("pump-fail", f"{change:.4f}<{cfg.entry_threshold:.4f}")

    if cfg.volume_threshold and volume < cfg.volume_threshold:
        return GateResult.fail("vol-fail", f"{volume:.0f}<{cfg.volume_threshold:.0f}")

    if cfg.volume_spike_multiplier:
        baseline = float(overview.vol_prev_avg_usd or 0.0)
        if baseline > 0 and volume < baseline * cfg.volume_spike_multiplier:
            return GateResult.fail(
                "volSpike", f"{volume:.0f}<{baseline:.0f}x{cfg.volume_spike_multiplier:g}"
            )

    if cfg.dip_threshold is not None and change > -abs(cfg.dip_threshold):
        return GateResult.fail("dip-fail", f"{change:.4f}>-{abs(cfg.dip_threshold):.4f}")

    if cfg.usd_limit and overview.price > cfg.usd_limit:
        return GateResult.fail("usd-limit", f"{overview.price:g}>{cfg.usd_limit:g}")

    mcap = float(overview.market_cap or 0.0)
    if cfg.min_market_cap and mcap < cfg.min_market_cap:
        return GateResult.fail("mcap-min", f"{mcap:.0f}<{cfg.min_market_cap:.0f}")
    if cfg.max_market_cap and mcap > cfg.max_market_cap:
        return GateResult.fail("mcap-max", f"{mcap:.0f}>{cfg.max_market_cap:.0f}")

    return PASS


def evaluate_age(age_minutes: float | None, cfg: "StrategyConfig") -> GateResult:
    if cfg.min_token_age_minutes is None and cfg.max_token_age_minutes is None:
        return PASS
    if age_minutes is None:
        return GateResult.fail("age-unknown", "creation time unavailable")
    if cfg.min_token_age_minutes is not None and age_minutes < cfg.min_token_age_minutes:
        return GateResult.fail("age-min", f"{age_minutes:.1f}<{cfg.min_token_age_minutes:g}")
    if cfg.max_token_age_minutes is not None and age_minutes > cfg.max_token_age_minutes:
        return GateResult.fail("age-max", f"{age_minutes:.1f}>{cfg.max_token_age_minutes:g}")
    return PASS


def explain_gate_fail(reason: str, overview: "MarketOverview | None", cfg: "StrategyConfig") -> str:
    """Operator-facing sentence for a gate rejection."""
    change = float(getattr(overview, "price_change", 0.0) or 0.0) * 100
    volume = float(getattr(overview, "volume_usd", 0.0) or 0.0)
    mcap = float(getattr(overview, "market_cap", 0.0) or 0.0)
    if reason == "overview-fail":
        return "Skipped, no price data"
    if reason == "pump-fail":
        return f"Skipped, {cfg.pump_window} change {change:.2f}% < {float(cfg.entry_threshold or 0) * 100:.2f}%"
    if reason == "vol-fail":
        return f"Skipped, {cfg.volume_window} volume ${volume:,.0f} < ${cfg.volume_threshold:,.0f}"
    if reason == "volSpike":
        baseline = float(getattr(overview, "vol_prev_avg_usd", 0.0) or 0.0)
        return f"Skipped, volume ${volume:,.0f} below {cfg.volume_spike_multiplier:g}x average ${baseline:,.0f}"
    if reason == "dip-fail":
        return f"Skipped, {cfg.recovery_window} change {change:.2f}% is not a {float(cfg.dip_threshold or 0) * 100:.2f}% dip"
    if reason == "usd-limit":
        return f"Skipped, price ${float(getattr(overview, 'price', 0.0) or 0.0):g} above limit ${float(cfg.usd_limit or 0):g}"
    if reason == "mcap-min":
        return f"Skipped, market cap ${mcap:,.0f} < ${float(cfg.min_market_cap or 0):,.0f}"
    if reason == "mcap-max":
        return f"Skipped, market cap ${mcap:,.0f} > ${float(cfg.max_market_cap or 0):,.0f}"
    if reason.startswith("age"):
        return f"Skipped, token age outside bounds ({reason})"
    return f"Skipped, {reason}"
