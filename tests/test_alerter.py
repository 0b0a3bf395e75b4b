from __future__ import annotations

import unittest
from typing import Any

import config
from monitor.alerter import TelegramAlerter, format_error, format_summary, format_trade_executed

MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


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


class _StubBot:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def send_message(self, **kwargs: Any) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(kwargs)


class TelegramAlerterTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    async def test_numeric_owner_is_used_as_chat(self) -> None:
        self.patch_cfg(ALERTS_ENABLED=True)
        bot = _StubBot()
        alerter = TelegramAlerter(bot=bot, default_chat_id="-100")
        self.assertTrue(await alerter.send("42", "hello"))
        self.assertTrue(await alerter.send("wallet-owner", "fallback"))
        self.assertEqual([row["chat_id"] for row in bot.sent], [42, -100])
        self.assertEqual(bot.sent[0]["parse_mode"], "HTML")

    async def test_missing_chat_and_disabled_alerts_are_suppressed(self) -> None:
        self.patch_cfg(ALERTS_ENABLED=True)
        bot = _StubBot()
        self.assertFalse(await TelegramAlerter(bot=bot, default_chat_id="").send("someone", "x"))
        self.patch_cfg(ALERTS_ENABLED=False)
        self.assertFalse(await TelegramAlerter(bot=bot, default_chat_id="-100").send("42", "x"))
        self.assertEqual(bot.sent, [])

    async def test_send_failure_is_logged_not_raised(self) -> None:
        self.patch_cfg(ALERTS_ENABLED=True)
        alerter = TelegramAlerter(bot=_StubBot(RuntimeError("Forbidden: bot was blocked")), default_chat_id="-100")
        with self.assertLogs("monitor.alerter", level="WARNING"):
            self.assertFalse(await alerter.send("42", "x"))

    async def test_notify_is_fire_and_forget(self) -> None:
        self.patch_cfg(ALERTS_ENABLED=True)
        bot = _StubBot()
        alerter = TelegramAlerter(bot=bot, default_chat_id="-100")
        alerter.notify("42", "one")
        alerter.notify("42", "two")
        self.assertEqual(bot.sent, [])
        await alerter.drain()
        self.assertEqual([row["text"] for row in bot.sent], ["one", "two"])


class FormatTests(ConfigPatchMixin, unittest.TestCase):
    def test_trade_message_links_live_transactions(self) -> None:
        self.patch_cfg(EXPLORER_TX_URL_TEMPLATE="https://solscan.io/tx/{signature}")
        text = format_trade_executed(
            category="sniper",
            bot_id="sniper-1",
            mint=MINT,
            symbol="<USDT>",
            spent=0.1,
            input_symbol="SOL",
            out_amount=4_200_000,
            impact=0.0123,
            signature="5abc",
            simulated=False,
            take_profit=0.2,
            stop_loss=-0.1,
        )
        self.assertIn("SNIPER BUY", text)
        self.assertIn("&lt;USDT&gt;", text)
        self.assertIn("Spent: 0.1 SOL", text)
        self.assertIn("Impact: 1.23%", text)
        self.assertIn("TP / SL: +20.0% / -10.0%", text)
        self.assertIn("https://solscan.io/tx/5abc", text)

    def test_dry_run_message_has_no_link(self) -> None:
        text = format_trade_executed(
            category="icebergtwap",
            bot_id="ice",
            mint=MINT,
            symbol="",
            spent=5,
            input_symbol="USDC",
            out_amount=1,
            impact=None,
            signature="dryrun-1",
            simulated=True,
        )
        self.assertIn("Simulated (dry run)", text)
        self.assertNotIn("href", text)
        self.assertNotIn("Impact", text)

    def test_summary_and_error_messages(self) -> None:
        summary = format_summary(
            category="dipbuyer", bot_id="dip", status="halted", reason="errors", lines=["Scanned: 3", "Errors: 3"], trades=0
        )
        self.assertTrue(summary.startswith("⛔ HALTED"))
        self.assertIn("Reason: errors", summary)
        self.assertIn("Errors: 3", summary)
        error = format_error(category="dipbuyer", bot_id="dip", mint=MINT, error="x" * 400, failures=2, cap=3)
        self.assertIn("Consecutive failures: 2/3", error)
        self.assertNotIn("x" * 301, error)


if __name__ == "__main__":
    unittest.main()
