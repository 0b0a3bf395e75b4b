"""Per-bot strategy configuration and percentage normalization."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any

import config
from trading.errors import ConfigError
from utils.addressing import dedupe_mints, is_valid_mint, normalize_mint

KNOWN_KINDS = ("sniper", "dipbuyer", "rebalancer", "rotationbot", "scheduled", "icebergtwap")
SCAN_KINDS = ("sniper", "dipbuyer")
PERCENT_MODES = ("auto", "fraction", "percent")
WINDOWS = ("1m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "24h")

_PERCENT_FIELDS = (
    "entry_threshold",
    "dip_threshold",
    "max_impact",
    "take_profit",
    "stop_loss",
    "rebalance_threshold",
    "min_momentum",
)

# User-facing names that don't map 1:1 onto field names after camel->snake.
_ALIASES = {
    "strategy": "kind",
    "strategy_name": "kind",
    "interval": "interval_seconds",
    "price_window": "pump_window",
    "max_slippage": "max_impact",
    "max_price_impact": "max_impact",
    "cooldown": "cooldown_seconds",
    "position_size": "amount_to_spend",
    "snipe_amount": "amount_to_spend",
    "user_id": "owner_id",
    "wallet_label": "wallet_id",
    "safety_enabled": "_safety_enabled",
    "limit_price": "usd_limit",
    "min_balance": "min_balance_sol",
    "targets": "target_weights",
    "limit_configs": "limit_tiers",
    "max_rebalances": "max_rebalances_per_tick",
    "buy_mode": "schedule_mode",
    "total_amount": "amount_to_spend",
    "clips": "num_clips",
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", str(key)).lower()


def normalize_pct(value: Any, mode: str = "auto", name: str = "value") -> float | None:
    """Convert a user percentage to a 0..1 fraction.

    ``auto`` divides magnitudes above 1 by 100 and keeps smaller ones as
    fractions. Exactly 1 is rejected in ``auto`` mode since it reads as both
    1% and 100%; callers set ``percent_mode`` to disambiguate.
    """
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name}: not a number ({value!r})") from exc
    if mode == "fraction":
        return number
    if mode == "percent":
        return number / 100.0
    if mode != "auto":
        raise ConfigError(f"percent_mode must be one of {', '.join(PERCENT_MODES)}")
    if abs(number) == 1.0:
        raise ConfigError(f"{name}: value 1 is ambiguous (1% or 100%); set percent_mode to 'fraction' or 'percent'")
    if abs(number) > 1.0:
        return number / 100.0
    return number


def normalize_weights(targets: dict[str, Any]) -> dict[str, float]:
    """Allocation maps summing above 1.5 were entered as percentages."""
    clean = {normalize_mint(k): float(v) for k, v in (targets or {}).items() if normalize_mint(k)}
    total = sum(clean.values())
    if total > 1.5:
        return {k: v / 100.0 for k, v in clean.items()}
    return clean


def parse_time(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0 if float(value) > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ConfigError(f"start_time: unparseable ({value!r})") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class LimitTier:
    price: float
    amount: float
    expires_in_hours: float | None = None
    min_price_usd: float | None = None

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "LimitTier":
        def _opt(*keys: str) -> float | None:
            for key in keys:
                if row.get(key) not in (None, ""):
                    return float(row[key])
            return None

        return cls(
            price=float(row.get("price", 0) or 0),
            amount=float(row.get("amount", 0) or 0),
            expires_in_hours=_opt("expiresInHours", "expires_in_hours"),
            min_price_usd=_opt("minPriceUsd", "min_price_usd"),
        )


@dataclass(frozen=True)
class StrategyConfig:
    kind: str
    bot_id: str = ""
    owner_id: str = ""
    wallet_id: str = ""
    dry_run: bool = True

    # Timing
    interval_seconds: float = 30.0
    start_time: datetime | None = None
    is_restart: bool = False

    # Candidates
    monitored_tokens: tuple[str, ...] = ()
    override_monitored: bool = False
    token_feed: str | None = None

    # Gates (fractions after normalization)
    entry_threshold: float | None = None
    pump_window: str = "5m"
    volume_threshold: float = 0.0
    volume_window: str = "1h"
    volume_spike_multiplier: float | None = None
    dip_threshold: float | None = None
    recovery_window: str = "1h"
    min_market_cap: float | None = None
    max_market_cap: float | None = None
    min_token_age_minutes: float | None = None
    max_token_age_minutes: float | None = None
    usd_limit: float | None = None

    # Risk
    max_trades: int = 1
    max_daily_volume: float | None = None
    max_open_trades: int | None = None
    halt_on_failures: int = 3
    cooldown_seconds: float = 60.0
    min_balance_sol: float = 0.0

    # Execution
    input_mint: str = config.SOL_MINT
    output_mint: str = ""
    amount_to_spend: float = 0.0
    slippage: float = 1.0
    max_impact: float = 0.15
    take_profit: float | None = None
    stop_loss: float | None = None
    disable_safety: bool = False
    safety_checks: dict[str, bool] = field(default_factory=dict)

    # Rebalancer / rotation
    target_weights: dict[str, float] = field(default_factory=dict)
    rebalance_threshold: float | None = None
    min_trade_usd: float = 5.0
    max_rebalances_per_tick: int = 2
    rotation_interval_minutes: float | None = None
    min_momentum: float | None = None

    # Scheduled buys
    schedule_mode: str = "interval"
    limit_tiers: tuple[LimitTier, ...] = ()

    # Iceberg TWAP
    num_clips: int = 0
    min_clip_pct: float = 0.8
    max_clip_pct: float = 1.2
    min_spacing_seconds: float | None = None
    max_spacing_seconds: float | None = None

    # Loop behaviour
    percent_mode: str = "auto"
    reset_failures_on_clean_tick: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def input_decimals(self) -> int:
        return 6 if self.input_mint == config.USDC_MINT else 9

    def to_base_units(self, amount: float) -> int:
        return int(round(float(amount) * (10 ** self.input_decimals)))

    @property
    def interval_ms(self) -> int:
        return int(self.interval_seconds * 1000)

    def echo(self) -> dict[str, Any]:
        """JSON-safe view for status snapshots."""
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "raw":
                continue
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, tuple):
                value = [vars(v) if isinstance(v, LimitTier) else v for v in value]
            out[f.name] = value
        return out

    def with_overrides(self, **changes: Any) -> "StrategyConfig":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any], **overrides: Any) -> "StrategyConfig":
        merged: dict[str, Any] = {}
        for key, value in dict(data or {}).items():
            name = _snake(key)
            merged[_ALIASES.get(name, name)] = value
        for key, value in overrides.items():
            merged[_ALIASES.get(key, key)] = value

        if "cooldown_ms" in merged and "cooldown_seconds" not in merged:
            merged["cooldown_seconds"] = float(merged.pop("cooldown_ms") or 0) / 1000.0
        if "interval_ms" in merged and "interval_seconds" not in merged:
            merged["interval_seconds"] = float(merged.pop("interval_ms") or 0) / 1000.0
        if merged.pop("buy_with_usdc", False):
            merged.setdefault("input_mint", config.USDC_MINT)
        if merged.get("_safety_enabled") is False:
            merged["disable_safety"] = True

        kind = str(merged.get("kind") or "").strip().lower().replace("_", "").replace("-", "")
        mode = str(merged.get("percent_mode") or "auto").strip().lower()
        values: dict[str, Any] = {
            "kind": kind,
            "percent_mode": mode,
            "interval_seconds": float(config.DEFAULT_INTERVAL_SECONDS),
            "cooldown_seconds": float(config.DEFAULT_COOLDOWN_SECONDS),
            "halt_on_failures": int(config.DEFAULT_HALT_ON_FAILURES),
            "slippage": float(config.DEFAULT_SLIPPAGE_PERCENT),
            "max_impact": float(config.DEFAULT_MAX_IMPACT),
            "min_trade_usd": float(config.DEFAULT_MIN_TRADE_USD),
            "raw": dict(data or {}),
        }
        if kind == "dipbuyer":
            values["volume_threshold"] = float(config.DEFAULT_VOLUME_THRESHOLD_USD)

        known = {f.name for f in fields(cls)}
        problems: list[str] = []
        for name, value in merged.items():
            if name not in known or name in ("kind", "percent_mode", "raw"):
                continue
            try:
                values[name] = _coerce(name, value, mode)
            except ConfigError as exc:
                problems.extend(exc.problems)
            except (TypeError, ValueError) as exc:
                problems.append(f"{name}: {exc}")
        if problems:
            raise ConfigError(problems)
        return cls(**values)

    def validate(self, now: datetime | None = None) -> "StrategyConfig":
        """Raise ``ConfigError`` listing every fatal problem, else return self."""
        now = now or datetime.now(timezone.utc)
        problems: list[str] = []
        if self.kind not in KNOWN_KINDS:
            problems.append(f"kind: unknown strategy {self.kind!r}")
        if self.percent_mode not in PERCENT_MODES:
            problems.append(f"percent_mode: must be one of {', '.join(PERCENT_MODES)}")
        if self.interval_seconds <= 0:
            problems.append("interval_seconds: must be > 0")
        if self.max_trades < 1:
            problems.append("max_trades: must be >= 1")
        if self.halt_on_failures < 1:
            problems.append("halt_on_failures: must be >= 1")
        if self.cooldown_seconds < 0:
            problems.append("cooldown_seconds: must be >= 0")
        if self.max_impact is None or self.max_impact < 0:
            problems.append("max_impact: must be >= 0")
        for name in ("pump_window", "volume_window", "recovery_window"):
            if getattr(self, name) not in WINDOWS:
                problems.append(f"{name}: unsupported window {getattr(self, name)!r}")
        if self.min_market_cap and self.max_market_cap and self.min_market_cap > self.max_market_cap:
            problems.append("market cap bounds: min > max")
        if (
            self.min_token_age_minutes is not None
            and self.max_token_age_minutes is not None
            and self.min_token_age_minutes > self.max_token_age_minutes
        ):
            problems.append("token age bounds: min > max")
        if not is_valid_mint(self.input_mint):
            problems.append("input_mint: invalid address")
        for mint in self.monitored_tokens:
            if not is_valid_mint(mint):
                problems.append(f"monitored_tokens: invalid address {mint!r}")

        if self.kind in SCAN_KINDS:
            if self.amount_to_spend <= 0:
                problems.append("amount_to_spend: trade size must be > 0")
            if self.kind == "sniper" and self.entry_threshold is None:
                problems.append("entry_threshold: required for sniper")
            if self.kind == "dipbuyer" and not self.dip_threshold:
                problems.append("dip_threshold: required for dipbuyer")
        elif self.kind == "rebalancer":
            if len(self.target_weights) < 2:
                problems.append("target_weights: need at least two assets")
            for mint in self.target_weights:
                if not is_valid_mint(mint):
                    problems.append(f"target_weights: invalid address {mint!r}")
        elif self.kind == "rotationbot":
            if len(self.monitored_tokens) < 2:
                problems.append("monitored_tokens: rotation needs at least two tokens")
        elif self.kind == "scheduled":
            problems.extend(self._scheduled_problems(now))
        elif self.kind == "icebergtwap":
            problems.extend(self._iceberg_problems())

        if problems:
            raise ConfigError(problems)
        return self

    def _scheduled_problems(self, now: datetime) -> list[str]:
        problems: list[str] = []
        if not is_valid_mint(self.output_mint):
            problems.append("output_mint: invalid address")
        if self.schedule_mode not in ("interval", "limit"):
            problems.append("schedule_mode: must be 'interval' or 'limit'")
        if not self.is_restart:
            if self.start_time is None:
                problems.append("start_time: required")
            elif self.start_time <= now:
                problems.append("start_time: must be in the future")
        if self.schedule_mode == "limit":
            if not self.limit_tiers:
                problems.append("limit_tiers: required in limit mode")
            for idx, tier in enumerate(self.limit_tiers):
                if tier.price <= 0 or tier.amount <= 0:
                    problems.append(f"limit_tiers[{idx}]: price and amount must be > 0")
        else:
            per_trade = self.amount_to_spend / max(1, self.max_trades)
            if self.to_base_units(per_trade) < int(config.MIN_TRADE_LAMPORTS):
                problems.append(
                    f"amount_to_spend: per-trade amount {per_trade:.9f} is below the minimum trade size"
                )
        return problems

    def _iceberg_problems(self) -> list[str]:
        problems: list[str] = []
        if not is_valid_mint(self.output_mint):
            problems.append("output_mint: invalid address")
        if self.amount_to_spend <= 0:
            problems.append("amount_to_spend: total must be > 0")
        if self.num_clips < 1:
            problems.append("num_clips: must be >= 1")
        if not 0 < self.min_clip_pct <= self.max_clip_pct:
            problems.append("clip bounds: need 0 < min_clip_pct <= max_clip_pct")
        lo, hi = self.min_spacing_seconds, self.max_spacing_seconds
        if lo is not None and hi is not None and lo > hi:
            problems.append("spacing bounds: min > max")
        if self.num_clips >= 1 and self.to_base_units(self.amount_to_spend / self.num_clips) < int(config.MIN_TRADE_LAMPORTS):
            problems.append("num_clips: clip size below the minimum trade size")
        return problems


def _opt_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    return float(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_FLOAT_FIELDS = {
    "interval_seconds",
    "volume_threshold",
    "cooldown_seconds",
    "min_balance_sol",
    "amount_to_spend",
    "slippage",
    "min_trade_usd",
    "min_clip_pct",
    "max_clip_pct",
}
_OPT_FLOAT_FIELDS = {
    "volume_spike_multiplier",
    "min_market_cap",
    "max_market_cap",
    "min_token_age_minutes",
    "max_token_age_minutes",
    "usd_limit",
    "max_daily_volume",
    "rotation_interval_minutes",
    "min_spacing_seconds",
    "max_spacing_seconds",
}
_INT_FIELDS = {"max_trades", "halt_on_failures", "max_rebalances_per_tick", "num_clips"}
_BOOL_FIELDS = {"dry_run", "override_monitored", "disable_safety", "is_restart", "reset_failures_on_clean_tick"}


def _coerce(name: str, value: Any, mode: str) -> Any:
    if name in _PERCENT_FIELDS:
        return normalize_pct(value, mode, name)
    if name in _FLOAT_FIELDS:
        return float(value or 0)
    if name in _OPT_FLOAT_FIELDS:
        return _opt_float(value)
    if name in _INT_FIELDS:
        return int(value or 0)
    if name == "max_open_trades":
        return int(value) if value not in (None, "") else None
    if name in _BOOL_FIELDS:
        return _as_bool(value)
    if name == "start_time":
        return parse_time(value)
    if name == "monitored_tokens":
        if isinstance(value, str):
            value = value.split(",")
        return tuple(dedupe_mints(value))
    if name in ("input_mint", "output_mint"):
        return normalize_mint(value)
    if name == "target_weights":
        return normalize_weights(dict(value or {}))
    if name == "limit_tiers":
        return tuple(LimitTier.from_dict(row) for row in (value or []))
    if name == "safety_checks":
        return {str(k): bool(v) for k, v in dict(value or {}).items()}
    if name in ("pump_window", "volume_window", "recovery_window"):
        return str(value or "").strip().lower()
    if name == "schedule_mode":
        return str(value or "interval").strip().lower()
    if name == "token_feed":
        return str(value).strip().lower() if value not in (None, "") else None
    return str(value) if value is not None else ""
