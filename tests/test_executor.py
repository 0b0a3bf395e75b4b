from __future__ import annotations

import base64
import unittest
from datetime import date
from typing import Any

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from trading.errors import InsufficientBalanceError
from trading.executor import DryRunExecutor, LiveExecutor, TradeMeta, load_signer
from trading.health import HealthPayload, HealthRegistry, Metrics
from trading.relay_client import RelayResult
from trading.run_state import STATUS_HALTED, RunState
from utils.http_client import HttpResult

USDT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
SOL = "So11111111111111111111111111111111111111112"

QUOTE = {"inputMint": SOL, "outputMint": USDT, "inAmount": "1000", "outAmount": "250", "priceImpactPct": "0.002"}


def _unsigned_tx(signer: Keypair) -> bytes:
    message = MessageV0.try_compile(signer.pubkey(), [], [], Hash.default())
    return bytes(VersionedTransaction(message, [signer]))


class _StubJupiter:
    def __init__(self, tx: bytes) -> None:
        self.tx = tx
        self.calls: list[str] = []

    async def swap_transaction(self, quote: dict[str, Any], user_public_key: str) -> bytes:
        self.calls.append(user_public_key)
        return self.tx


class _StubRelay:
    def __init__(self, result: RelayResult) -> None:
        self.result = result
        self.payloads: list[str] = []

    async def send(self, payload: Any) -> RelayResult:
        self.payloads.append(payload)
        return self.result


class _StubHttp:
    def __init__(self, result: HttpResult) -> None:
        self.result = result
        self.payloads: list[dict[str, Any]] = []

    async def post_json(self, url: str, payload: Any, *, source: str, **kwargs: Any) -> HttpResult:
        self.payloads.append(payload)
        return self.result


def _meta() -> TradeMeta:
    return TradeMeta(strategy="sniper", category="scan", bot_id="bot-1")


class SignerTests(unittest.TestCase):
    def test_load_signer_from_base58_secret(self) -> None:
        keypair = Keypair()
        secret = base58.b58encode(bytes(keypair)).decode("ascii")
        self.assertEqual(load_signer(secret).pubkey(), keypair.pubkey())

    def test_empty_secret_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            load_signer("  ")


class ExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def test_dry_run_receipt(self) -> None:
        receipt = await DryRunExecutor().execute(quote=QUOTE, signer=None, asset_id=USDT, meta=_meta())
        self.assertTrue(receipt.simulated)
        self.assertTrue(receipt.signature.startswith("dryrun-"))
        self.assertEqual((receipt.in_amount, receipt.out_amount), (1000, 250))
        self.assertAlmostEqual(receipt.price_impact, 0.002)

    async def test_live_requires_signer(self) -> None:
        executor = LiveExecutor(_StubHttp(HttpResult(True, 200, {})), _StubJupiter(b""), _StubRelay(RelayResult(skipped=True)))
        with self.assertRaises(ValueError):
            await executor.execute(quote=QUOTE, signer=None, asset_id=USDT, meta=_meta())

    async def test_live_submits_through_relay(self) -> None:
        signer = Keypair()
        relay = _StubRelay(RelayResult(endpoint="https://fast.example/tx"))
        http = _StubHttp(HttpResult(True, 200, {"result": "unused"}))
        executor = LiveExecutor(http, _StubJupiter(_unsigned_tx(signer)), relay)
        receipt = await executor.execute(quote=QUOTE, signer=signer, asset_id=USDT, meta=_meta())
        self.assertFalse(receipt.simulated)
        self.assertEqual(receipt.via, "relay:https://fast.example/tx")
        self.assertEqual(http.payloads, [])
        signed = VersionedTransaction.from_bytes(base64.b64decode(relay.payloads[0]))
        self.assertEqual(str(signed.signatures[0]), receipt.signature)

    async def test_live_falls_back_to_rpc(self) -> None:
        signer = Keypair()
        http = _StubHttp(HttpResult(True, 200, {"result": "rpc-signature"}))
        executor = LiveExecutor(http, _StubJupiter(_unsigned_tx(signer)), _StubRelay(RelayResult(skipped=True)))
        receipt = await executor.execute(quote=QUOTE, signer=signer, asset_id=USDT, meta=_meta())
        self.assertEqual(receipt.signature, "rpc-signature")
        self.assertEqual(receipt.via, "rpc")
        self.assertEqual(http.payloads[0]["method"], "sendTransaction")

    async def test_rpc_insufficient_funds_is_typed(self) -> None:
        signer = Keypair()
        http = _StubHttp(HttpResult(True, 200, {"error": {"message": "Transfer: insufficient lamports 10, need 20"}}))
        executor = LiveExecutor(http, _StubJupiter(_unsigned_tx(signer)), _StubRelay(RelayResult(error="No relay reachable")))
        with self.assertRaises(InsufficientBalanceError):
            await executor.execute(quote=QUOTE, signer=signer, asset_id=USDT, meta=_meta())

    async def test_rpc_rejection_is_runtime_error(self) -> None:
        signer = Keypair()
        http = _StubHttp(HttpResult(True, 200, {"error": {"message": "Blockhash not found"}}))
        executor = LiveExecutor(http, _StubJupiter(_unsigned_tx(signer)), _StubRelay(RelayResult(skipped=True)))
        with self.assertRaisesRegex(RuntimeError, "Blockhash not found"):
            await executor.execute(quote=QUOTE, signer=signer, asset_id=USDT, meta=_meta())


class RunStateTests(unittest.TestCase):
    def test_trade_resets_streak_and_tracks_spend(self) -> None:
        state = RunState(spent_day=date(2026, 1, 1))
        self.assertEqual(state.record_failure(), 1)
        self.assertEqual(state.record_failure(), 2)
        state.record_trade(0.5, today=date(2026, 1, 1))
        self.assertEqual(state.consecutive_failures, 0)
        self.assertEqual(state.spent_for(date(2026, 1, 1)), 0.5)
        self.assertEqual(state.counters["buys"], 1)
        self.assertEqual(state.counters["errors"], 2)

    def test_daily_spend_rolls_over(self) -> None:
        state = RunState(spent_day=date(2026, 1, 1))
        state.record_trade(0.7, today=date(2026, 1, 1))
        self.assertEqual(state.spent_for(date(2026, 1, 2)), 0.0)
        self.assertEqual(state.total_spent, 0.7)

    def test_summary_lines_keep_fixed_order_then_extras(self) -> None:
        state = RunState()
        state.bump("scanned", 4)
        state.bump("quoteImpact")
        lines = state.summary_lines()
        self.assertEqual(lines[:6], ["Scanned: 4", "AgeSkipped: 0", "Filters: 0", "Safety: 0", "Buys: 0", "Errors: 0"])
        self.assertEqual(lines[6:], ["quoteImpact: 1"])

    def test_terminal_status(self) -> None:
        state = RunState()
        self.assertFalse(state.terminal)
        state.status = STATUS_HALTED
        self.assertTrue(state.terminal)


class HealthTests(unittest.TestCase):
    def test_registry_keeps_latest_payload(self) -> None:
        registry = HealthRegistry()
        registry.emit("bot-1", HealthPayload(last_tick_at=1.0, loop_duration_ms=12.0))
        registry.emit("bot-1", HealthPayload(last_tick_at=2.0, loop_duration_ms=8.0, restart_count=1))
        row = registry.snapshot()["bot-1"]
        self.assertEqual(row["lastTickAt"], 2.0)
        self.assertEqual(row["restartCount"], 1)
        registry.forget("bot-1")
        self.assertIsNone(registry.get("bot-1"))

    def test_metrics_labels_and_totals(self) -> None:
        metrics = Metrics()
        metrics.inc("relay_win_total", {"endpoint": "a"})
        metrics.inc("relay_win_total", {"endpoint": "b"}, value=2)
        metrics.observe("strategy_loop_seconds", 0.25, {"kind": "sniper"})
        self.assertEqual(metrics.value("relay_win_total", {"endpoint": "b"}), 2.0)
        self.assertEqual(metrics.total("relay_win_total"), 3.0)
        snap = metrics.snapshot()
        self.assertEqual(snap["strategy_loop_seconds_count{kind=sniper}"], 1.0)
        self.assertEqual(snap["strategy_loop_seconds_sum{kind=sniper}"], 0.25)


if __name__ == "__main__":
    unittest.main()
