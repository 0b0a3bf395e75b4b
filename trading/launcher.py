"""Bot lifecycle: build collaborators, start/stop/pause loops, replay persisted runs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import config
from database import db
from monitor.alerter import TelegramAlerter
from monitor.feed_resolver import FeedResolver
from monitor.market_data import BirdeyeMarketData
from monitor.safety_checker import SafetyChecker
from monitor.wallet_balances import WalletBalanceReader
from trading.errors import ConfigError, DuplicateLaunchError
from trading.executor import DryRunExecutor, LiveExecutor, load_signer
from trading.health import HealthRegistry, Metrics, health_registry, metrics
from trading.jupiter import JupiterClient
from trading.policies import DipBuyerPolicy, SniperPolicy, StrategyPolicy
from trading.portfolio_policies import RebalancerPolicy, RotationPolicy
from trading.registry import ActiveStrategyRegistry
from trading.relay_client import RelayClient
from trading.run_state import STATUS_RUNNING
from trading.safe_quote import SafeQuoter
from trading.strategy_config import StrategyConfig
from trading.strategy_loop import StrategyLoop
from trading.timed_policies import IcebergTwapPolicy, ScheduledBuyPolicy
from utils.http_client import ResilientHttpClient
from utils.status_file import StatusSnapshotWriter

logger = logging.getLogger(__name__)

STATUS_PAUSED = "paused"


@dataclass
class StrategyServices:
    """Shared collaborators; one instance per process."""

    http: ResilientHttpClient
    market_data: BirdeyeMarketData
    jupiter: JupiterClient
    safe_quoter: SafeQuoter
    safety_checker: SafetyChecker
    balances: WalletBalanceReader
    relay: RelayClient
    feed_resolver: FeedResolver
    alerter: TelegramAlerter
    registry: ActiveStrategyRegistry
    health: HealthRegistry
    metrics: Metrics
    status_writer: StatusSnapshotWriter
    store: Any = db
    _live_executor: LiveExecutor | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, *, alerter: TelegramAlerter | None = None) -> "StrategyServices":
        http = ResilientHttpClient(
            timeout_seconds=float(config.DATA_FETCH_TIMEOUT_SECONDS),
            source_limits={"birdeye": int(config.HTTP_DEFAULT_CONCURRENCY)},
        )
        market_data = BirdeyeMarketData(http)
        jupiter = JupiterClient(http)
        balances = WalletBalanceReader(http)
        return cls(
            http=http,
            market_data=market_data,
            jupiter=jupiter,
            safe_quoter=SafeQuoter(jupiter),
            safety_checker=SafetyChecker(market_data, jupiter, balances),
            balances=balances,
            relay=RelayClient(http, metrics=metrics),
            feed_resolver=FeedResolver(market_data),
            alerter=alerter or TelegramAlerter(),
            registry=ActiveStrategyRegistry(),
            health=health_registry,
            metrics=metrics,
            status_writer=StatusSnapshotWriter(),
        )

    def live_executor(self) -> LiveExecutor:
        """One executor per process, so every bot signing with a wallet shares its submit lock."""
        if self._live_executor is None:
            self._live_executor = LiveExecutor(self.http, self.jupiter, self.relay)
        return self._live_executor

    async def close(self) -> None:
        await self.alerter.drain()
        await self.http.close()


def build_policy(cfg: StrategyConfig, services: StrategyServices, *, wallet_pubkey: str = "") -> StrategyPolicy:
    kind = cfg.kind
    if kind == "sniper":
        return SniperPolicy(cfg, services.feed_resolver)
    if kind == "dipbuyer":
        return DipBuyerPolicy(cfg, services.feed_resolver)
    if kind == "rebalancer":
        return RebalancerPolicy(cfg, services.market_data, services.balances, wallet_pubkey)
    if kind == "rotationbot":
        return RotationPolicy(cfg, services.market_data, services.balances, wallet_pubkey)
    if kind == "scheduled":
        return ScheduledBuyPolicy(cfg, services.market_data)
    if kind == "icebergtwap":
        return IcebergTwapPolicy(cfg)
    raise ConfigError(f"kind: unknown strategy {kind!r}")


def _persisted_config(cfg: StrategyConfig) -> dict[str, Any]:
    row = {k: v for k, v in cfg.raw.items() if not isinstance(v, datetime)}
    row.update(kind=cfg.kind, bot_id=cfg.bot_id, owner_id=cfg.owner_id, wallet_id=cfg.wallet_id, dry_run=cfg.dry_run)
    if cfg.start_time is not None:
        row["start_time"] = cfg.start_time.isoformat()
    return row


class StrategyLauncher:
    def __init__(self, services: StrategyServices) -> None:
        self.services = services
        self.loops: dict[str, StrategyLoop] = {}
        self._shutting_down = False

    @property
    def registry(self) -> ActiveStrategyRegistry:
        return self.services.registry

    async def start(
        self,
        data: dict[str, Any] | StrategyConfig,
        *,
        now: datetime | None = None,
        restart_count: int = 0,
    ) -> StrategyLoop:
        """Validate, build and launch a bot. Fatal config errors raise before registration."""
        cfg = data if isinstance(data, StrategyConfig) else StrategyConfig.from_dict(data)
        if not cfg.bot_id:
            cfg = cfg.with_overrides(bot_id=f"{cfg.kind}-{uuid.uuid4().hex[:8]}")
        cfg.validate(now)

        signer = load_signer() if getattr(config, "WALLET_PRIVATE_KEY", "") else None
        if not cfg.dry_run and signer is None:
            raise ConfigError("WALLET_PRIVATE_KEY: required for live trading")
        wallet_pubkey = str(signer.pubkey()) if signer is not None else ""

        services = self.services
        policy = build_policy(cfg, services, wallet_pubkey=wallet_pubkey)
        executor = DryRunExecutor() if cfg.dry_run else services.live_executor()
        loop = StrategyLoop(
            policy,
            safe_quoter=services.safe_quoter,
            executor=executor,
            market_data=services.market_data,
            safety_checker=services.safety_checker,
            store=services.store,
            alerter=services.alerter,
            registry=services.registry,
            health=services.health,
            metrics_sink=services.metrics,
            balances=services.balances,
            status_writer=services.status_writer,
            signer=signer,
            wallet_pubkey=wallet_pubkey,
            restart_count=restart_count,
        )
        if self.registry.is_running(cfg.bot_id):
            raise DuplicateLaunchError(cfg.bot_id)
        # Persist first so a failed write leaves no timer behind.
        row = await asyncio.to_thread(
            services.store.upsert_run_status,
            cfg.bot_id,
            kind=cfg.kind,
            owner_id=cfg.owner_id,
            config=_persisted_config(cfg),
            status=STATUS_RUNNING,
        )
        loop.restart_count = max(restart_count, int(getattr(row, "restart_count", 0) or 0))
        loop.add_finish_callback(self._on_finish)
        loop.start()
        self.loops[cfg.bot_id] = loop
        return loop

    async def _on_finish(self, loop: StrategyLoop, status: str, reason: str) -> None:
        if self._shutting_down:
            return
        await asyncio.to_thread(self.services.store.set_run_status, loop.bot_id, status, reason)

    async def stop(self, bot_id: str, reason: str = "stopped") -> bool:
        loop = self.loops.get(bot_id)
        if loop is None or not self.registry.is_running(bot_id):
            return False
        await loop.stop(reason)
        return True

    async def _set_paused(self, bot_id: str, paused: bool) -> bool:
        if not self.registry.set_paused(bot_id, paused):
            return False
        status = STATUS_PAUSED if paused else STATUS_RUNNING
        await asyncio.to_thread(self.services.store.set_run_status, bot_id, status)
        logger.info("BOT_%s bot=%s", "PAUSED" if paused else "RESUMED", bot_id)
        return True

    async def pause(self, bot_id: str) -> bool:
        return await self._set_paused(bot_id, True)

    async def resume(self, bot_id: str) -> bool:
        return await self._set_paused(bot_id, False)

    def cleanup_finished(self) -> list[str]:
        removed = self.registry.cleanup()
        for bot_id in removed:
            self.loops.pop(bot_id, None)
            self.services.health.forget(bot_id)
        return removed

    async def restore(self) -> list[str]:
        """Relaunch bots whose persisted status says they should be running."""
        rows = await asyncio.to_thread(self.services.store.list_runs, STATUS_RUNNING)
        rows += await asyncio.to_thread(self.services.store.list_runs, STATUS_PAUSED)
        restored: list[str] = []
        for row in rows:
            if self.registry.is_running(row.bot_id):
                continue
            try:
                cfg = StrategyConfig.from_dict(
                    dict(row.config or {}),
                    bot_id=row.bot_id,
                    owner_id=row.owner_id,
                    is_restart=True,
                )
                loop = await self.start(cfg, restart_count=int(row.restart_count or 0) + 1)
            except ConfigError as exc:
                logger.error("RESTORE_FAILED bot=%s err=%s", row.bot_id, exc)
                await asyncio.to_thread(self.services.store.set_run_status, row.bot_id, "stopped", str(exc)[:500])
                continue
            if row.status == STATUS_PAUSED:
                await self.pause(loop.bot_id)
            restored.append(loop.bot_id)
        logger.info("RESTORE_DONE count=%s", len(restored))
        return restored

    async def shutdown(self) -> None:
        """Cancel every running loop but keep their rows 'running' for restore."""
        self._shutting_down = True
        for bot_id in self.registry.running_ids():
            loop = self.loops.get(bot_id)
            if loop is not None:
                await loop.stop("shutdown")
        await self.services.close()
