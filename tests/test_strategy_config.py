from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest

import config
from trading.errors import ConfigError
from trading.strategy_config import StrategyConfig, normalize_pct, normalize_weights

USDT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
UXD = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"


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


class NormalizePctTests(unittest.TestCase):
    def test_auto_mode_treats_whole_numbers_as_percent(self) -> None:
        self.assertAlmostEqual(normalize_pct(5), 0.05)
        self.assertAlmostEqual(normalize_pct(0.05), 0.05)
        self.assertAlmostEqual(normalize_pct("-12.5"), -0.125)
        self.assertIsNone(normalize_pct(None))
        self.assertIsNone(normalize_pct(""))

    def test_exactly_one_is_ambiguous_unless_mode_is_explicit(self) -> None:
        with self.assertRaises(ConfigError):
            normalize_pct(1)
        with self.assertRaises(ConfigError):
            normalize_pct(-1.0)
        self.assertAlmostEqual(normalize_pct(1, "percent"), 0.01)
        self.assertAlmostEqual(normalize_pct(1, "fraction"), 1.0)

    def test_garbage_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            normalize_pct("lots")
        with self.assertRaises(ConfigError):
            normalize_pct(5, "basis-points")

    def test_weights_entered_as_percent_are_scaled(self) -> None:
        self.assertEqual(normalize_weights({config.SOL_MINT: 60, config.USDC_MINT: 40}), {config.SOL_MINT: 0.6, config.USDC_MINT: 0.4})
        self.assertEqual(normalize_weights({config.SOL_MINT: 0.5, config.USDC_MINT: 0.5}), {config.SOL_MINT: 0.5, config.USDC_MINT: 0.5})


class StrategyConfigTests(ConfigPatchMixin, unittest.TestCase):
    def test_camel_case_keys_and_aliases_are_mapped(self) -> None:
        cfg = StrategyConfig.from_dict(
            {
                "strategy": "Dip-Buyer",
                "dipThreshold": 10,
                "cooldownMs": 5000,
                "buyWithUsdc": True,
                "snipeAmount": 5,
                "monitoredTokens": f"{USDT}, {UXD},{USDT}",
            }
        )
        self.assertEqual(cfg.kind, "dipbuyer")
        self.assertAlmostEqual(cfg.dip_threshold, 0.10)
        self.assertEqual(cfg.cooldown_seconds, 5.0)
        self.assertEqual(cfg.input_mint, config.USDC_MINT)
        self.assertEqual(cfg.input_decimals, 6)
        self.assertEqual(cfg.to_base_units(cfg.amount_to_spend), 5_000_000)
        self.assertEqual(cfg.monitored_tokens, (USDT, UXD))
        self.assertEqual(cfg.volume_threshold, float(config.DEFAULT_VOLUME_THRESHOLD_USD))
        cfg.validate()

    def test_defaults_come_from_runtime_config(self) -> None:
        self.patch_cfg(DEFAULT_HALT_ON_FAILURES=7, DEFAULT_INTERVAL_SECONDS=12.0)
        cfg = StrategyConfig.from_dict({"kind": "sniper", "entryThreshold": 5, "amountToSpend": 0.1})
        self.assertEqual(cfg.halt_on_failures, 7)
        self.assertEqual(cfg.interval_seconds, 12.0)
        self.assertEqual(cfg.to_base_units(0.1), 100_000_000)

    def test_percent_fields_report_every_bad_value(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            StrategyConfig.from_dict({"kind": "sniper", "entryThreshold": 1, "maxImpact": 1})
        self.assertEqual(len(ctx.exception.problems), 2)
        cfg = StrategyConfig.from_dict({"kind": "sniper", "entryThreshold": 1, "percentMode": "percent"})
        self.assertAlmostEqual(cfg.entry_threshold, 0.01)

    def test_validate_collects_all_problems(self) -> None:
        cfg = StrategyConfig.from_dict({"kind": "sniper", "maxTrades": 0, "interval": 0})
        with self.assertRaises(ConfigError) as ctx:
            cfg.validate()
        text = str(ctx.exception)
        for fragment in ("max_trades", "interval_seconds", "amount_to_spend", "entry_threshold"):
            self.assertIn(fragment, text)

    def test_unknown_kind_and_bad_mint(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            StrategyConfig.from_dict({"kind": "martingale", "inputMint": "not-a-mint"}).validate()
        self.assertIn("unknown strategy", str(ctx.exception))
        self.assertIn("input_mint", str(ctx.exception))

    def test_scheduled_start_time_must_be_future_unless_restarting(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        base = {
            "kind": "scheduled",
            "outputMint": USDT,
            "amountToSpend": 1,
            "maxTrades": 4,
            "startTime": (now - timedelta(minutes=5)).isoformat(),
        }
        with self.assertRaises(ConfigError) as ctx:
            StrategyConfig.from_dict(base).validate(now)
        self.assertIn("start_time", str(ctx.exception))
        StrategyConfig.from_dict(base, is_restart=True).validate(now)

    def test_scheduled_interval_rejects_dust_per_trade_amounts(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cfg = StrategyConfig.from_dict(
            {
                "kind": "scheduled",
                "outputMint": USDT,
                "amountToSpend": 0.00001,
                "maxTrades": 10,
                "startTime": (now + timedelta(hours=1)).isoformat(),
            }
        )
        with self.assertRaises(ConfigError) as ctx:
            cfg.validate(now)
        self.assertIn("minimum trade size", str(ctx.exception))

    def test_limit_mode_tiers_are_parsed(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cfg = StrategyConfig.from_dict(
            {
                "kind": "scheduled",
                "buyMode": "limit",
                "outputMint": USDT,
                "startTime": "2026-01-02T00:00:00Z",
                "limitConfigs": [
                    {"price": 0.9, "amount": 0.5, "expiresInHours": 2},
                    {"price": 0.8, "amount": 0.25, "minPriceUsd": 0.5},
                ],
            }
        ).validate(now)
        self.assertEqual(cfg.schedule_mode, "limit")
        self.assertEqual(len(cfg.limit_tiers), 2)
        self.assertEqual(cfg.limit_tiers[0].expires_in_hours, 2.0)
        self.assertEqual(cfg.limit_tiers[1].min_price_usd, 0.5)

    def test_iceberg_clip_bounds(self) -> None:
        cfg = StrategyConfig.from_dict(
            {"kind": "icebergtwap", "outputMint": USDT, "totalAmount": 1, "clips": 4, "minClipPct": 1.5, "maxClipPct": 1.2}
        )
        with self.assertRaises(ConfigError) as ctx:
            cfg.validate()
        self.assertIn("clip bounds", str(ctx.exception))

    def test_rebalancer_needs_two_assets(self) -> None:
        with self.assertRaises(ConfigError):
            StrategyConfig.from_dict({"kind": "rebalancer", "targets": {config.SOL_MINT: 100}}).validate()
        cfg = StrategyConfig.from_dict(
            {"kind": "rebalancer", "targets": {config.SOL_MINT: 50, config.USDC_MINT: 50}, "rebalanceThreshold": 5}
        ).validate()
        self.assertAlmostEqual(cfg.rebalance_threshold, 0.05)

    def test_echo_is_json_safe(self) -> None:
        cfg = StrategyConfig.from_dict({"kind": "scheduled", "startTime": 1767225600})
        echo = cfg.echo()
        self.assertEqual(echo["start_time"], "2026-01-01T00:00:00+00:00")
        self.assertNotIn("raw", echo)


if __name__ == "__main__":
    unittest.main()
