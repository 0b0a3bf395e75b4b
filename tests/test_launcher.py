from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from types import SimpleNamespace
from typing import Any

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

import config
from database import db
from trading.errors import ConfigError, DuplicateLaunchError
from trading.executor import TradeMeta
from trading.health import HealthRegistry, Metrics
from trading.launcher import StrategyLauncher, StrategyServices, build_policy
from trading.policies import DipBuyerPolicy, SniperPolicy
from trading.portfolio_policies import RebalancerPolicy, RotationPolicy
from trading.registry import ActiveStrategyRegistry
from trading.relay_client import RelayResult
from trading.strategy_config import StrategyConfig
from trading.timed_policies import IcebergTwapPolicy, ScheduledBuyPolicy
from utils.status_file import StatusSnapshotWriter

USDT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
UXD = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"

SNIPER = {"kind": "sniper", "entryThreshold": 5, "amountToSpend": 0.1, "dryRun": True, "interval": 60}


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


class _StubHttp:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    def snapshot_stats(self, reset: bool = False) -> dict[str, Any]:
        return {}


class _StubFeeds:
    async def resolve(self, cfg: StrategyConfig) -> list[str]:
        return []


class _StubAlerter:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def notify(self, owner_key: Any, message: str) -> None:
        self.messages.append(message)

    async def drain(self) -> None:
        return None


class _SlowJupiter:
    """Builds a real unsigned swap and tracks how many builds overlap."""

    def __init__(self, signer: Keypair) -> None:
        message = MessageV0.try_compile(signer.pubkey(), [], [], Hash.default())
        self.tx = bytes(VersionedTransaction(message, [signer]))
        self.in_flight = 0
        self.peak = 0

    async def swap_transaction(self, quote: dict[str, Any], user_public_key: str) -> bytes:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.05)
            return self.tx
        finally:
            self.in_flight -= 1


class _StubRelay:
    async def send(self, payload: Any) -> RelayResult:
        return RelayResult(endpoint="https://fast.example/tx")


class _FailingRunStore:
    """Database store whose run-status write fails."""

    def __getattr__(self, name: str) -> Any:
        return getattr(db, name)

    def upsert_run_status(self, *args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("database is locked")


def _services(status_path: str) -> StrategyServices:
    unused = SimpleNamespace()
    return StrategyServices(
        http=_StubHttp(),
        market_data=unused,
        jupiter=unused,
        safe_quoter=unused,
        safety_checker=unused,
        balances=unused,
        relay=unused,
        feed_resolver=_StubFeeds(),
        alerter=_StubAlerter(),
        registry=ActiveStrategyRegistry(),
        health=HealthRegistry(),
        metrics=Metrics(),
        status_writer=StatusSnapshotWriter(status_path),
        store=db,
    )


class BuildPolicyTests(unittest.TestCase):
    def test_every_kind_maps_to_its_policy(self) -> None:
        services = _services("")
        rows = [
            ({"kind": "sniper"}, SniperPolicy),
            ({"kind": "dipbuyer"}, DipBuyerPolicy),
            ({"kind": "rebalancer"}, RebalancerPolicy),
            ({"kind": "rotationbot"}, RotationPolicy),
            ({"kind": "scheduled"}, ScheduledBuyPolicy),
            ({"kind": "icebergtwap", "outputMint": USDT, "totalAmount": 1, "clips": 2}, IcebergTwapPolicy),
        ]
        for data, expected in rows:
            self.assertIsInstance(build_policy(StrategyConfig.from_dict(data), services), expected)
        with self.assertRaises(ConfigError):
            build_policy(StrategyConfig.from_dict({"kind": "grid"}), services)


class StrategyLauncherTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(WALLET_PRIVATE_KEY="")
        db.configure("sqlite://")
        self._tmp = tempfile.TemporaryDirectory()
        self.services = _services(os.path.join(self._tmp.name, "status.json"))
        self.launcher = StrategyLauncher(self.services)

    async def asyncTearDown(self) -> None:
        await self.launcher.shutdown()

    def tearDown(self) -> None:
        self._tmp.cleanup()
        super().tearDown()

    async def test_dry_run_start_registers_and_persists(self) -> None:
        loop = await self.launcher.start(dict(SNIPER, botId="sniper-a", ownerId="42"))
        await asyncio.sleep(0.05)
        self.assertTrue(self.launcher.registry.is_running("sniper-a"))
        row = db.list_runs("running")[0]
        self.assertEqual((row.bot_id, row.kind, row.owner_id), ("sniper-a", "sniper", "42"))
        self.assertTrue(row.config["dry_run"])
        self.assertIn("sniper-a", self.services.status_writer.read())
        self.assertGreaterEqual(loop.state.ticks, 1)

        with self.assertRaises(DuplicateLaunchError):
            await self.launcher.start(dict(SNIPER, botId="sniper-a"))

    async def test_generated_bot_id(self) -> None:
        loop = await self.launcher.start(dict(SNIPER))
        self.assertTrue(loop.bot_id.startswith("sniper-"))

    async def test_live_mode_without_key_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            await self.launcher.start(dict(SNIPER, botId="live", dryRun=False))
        self.assertNotIn("live", self.launcher.registry)
        with self.assertRaises(ConfigError):
            await self.launcher.start({"kind": "sniper", "botId": "bad"})

    async def test_stop_and_pause_update_the_run_row(self) -> None:
        await self.launcher.start(dict(SNIPER, botId="sniper-b"))
        self.assertTrue(await self.launcher.pause("sniper-b"))
        self.assertEqual(db.list_runs("paused")[0].bot_id, "sniper-b")
        self.assertTrue(await self.launcher.resume("sniper-b"))
        self.assertTrue(await self.launcher.stop("sniper-b", "manual"))
        row = db.list_runs("stopped")[0]
        self.assertEqual(row.reason, "manual")
        self.assertFalse(await self.launcher.stop("sniper-b"))
        self.assertEqual(self.launcher.cleanup_finished(), ["sniper-b"])

    async def test_restore_relaunches_running_rows(self) -> None:
        db.upsert_run_status("sniper-r", kind="sniper", owner_id="42", config=dict(SNIPER), status="running")
        db.upsert_run_status("broken", kind="sniper", owner_id="42", config={"kind": "sniper"}, status="running")
        restored = await self.launcher.restore()
        self.assertEqual(restored, ["sniper-r"])
        loop = self.launcher.loops["sniper-r"]
        self.assertTrue(loop.cfg.is_restart)
        self.assertEqual(loop.restart_count, 1)
        self.assertEqual(db.list_runs("stopped")[0].bot_id, "broken")

    async def test_live_bots_share_one_executor_and_submit_one_at_a_time(self) -> None:
        signer = Keypair()
        self.patch_cfg(WALLET_PRIVATE_KEY=base58.b58encode(bytes(signer)).decode("ascii"))
        jupiter = _SlowJupiter(signer)
        self.services.jupiter = jupiter
        self.services.relay = _StubRelay()
        a = await self.launcher.start(dict(SNIPER, botId="live-a", dryRun=False))
        b = await self.launcher.start(dict(SNIPER, botId="live-b", dryRun=False))
        self.assertIs(a.executor, b.executor)

        quote = {"inAmount": "1000", "outAmount": "250", "priceImpactPct": "0.001"}
        receipts = await asyncio.gather(
            a.executor.execute(quote=quote, signer=a.signer, asset_id=USDT, meta=TradeMeta("sniper", "scan", bot_id="live-a")),
            b.executor.execute(quote=quote, signer=b.signer, asset_id=UXD, meta=TradeMeta("sniper", "scan", bot_id="live-b")),
        )
        self.assertEqual(jupiter.peak, 1)
        self.assertEqual([r.via for r in receipts], ["relay:https://fast.example/tx"] * 2)

    async def test_failed_run_row_write_leaves_nothing_running(self) -> None:
        self.services.store = _FailingRunStore()
        with self.assertRaises(RuntimeError):
            await self.launcher.start(dict(SNIPER, botId="sniper-f"))
        self.assertNotIn("sniper-f", self.launcher.registry)
        self.assertNotIn("sniper-f", self.launcher.loops)
        self.assertEqual(db.list_runs("running"), [])

    async def test_shutdown_keeps_rows_running(self) -> None:
        await self.launcher.start(dict(SNIPER, botId="sniper-s"))
        await self.launcher.shutdown()
        self.assertEqual([row.bot_id for row in db.list_runs("running")], ["sniper-s"])
        self.assertTrue(self.services.http.closed)


if __name__ == "__main__":
    unittest.main()
