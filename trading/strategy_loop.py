"""Generic per-bot tick loop shared by every strategy kind.

One ``StrategyLoop`` owns one ``RunState``. A tick resolves candidates from
the policy and walks them sequentially through cooldown, gates, safety, caps,
quote and execution. Policy rejections only bump counters; transient failures
advance the failure streak and halt the bot once it reaches the configured cap.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

import config
from monitor.alerter import format_error, format_summary, format_trade_executed
from trading.cooldown import CooldownTracker
from trading.errors import (
    CapExceeded,
    HaltRequested,
    InsufficientBalanceError,
    QuoteTransportError,
    is_insufficient_balance,
)
from trading.gates import evaluate_age, explain_gate_fail
from trading.health import HealthPayload, health_registry, metrics
from trading.registry import RegistryEntry
from trading.run_state import (
    STATUS_COMPLETED,
    STATUS_HALTED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    RunState,
)
from trading.trade_guards import assert_daily_limit, assert_open_trade_cap, assert_trade_cap
from utils.addressing import short_mint
from utils.log_contracts import candidate_decision_event, trade_decision_event

if TYPE_CHECKING:
    from solders.keypair import Keypair

    from monitor.alerter import TelegramAlerter
    from monitor.market_data import BirdeyeMarketData
    from monitor.safety_checker import SafetyChecker
    from monitor.wallet_balances import WalletBalanceReader
    from trading.executor import TradeExecutor, TradeMeta, TradeReceipt
    from trading.health import HealthRegistry, Metrics
    from trading.policies import Candidate, StrategyPolicy
    from trading.registry import ActiveStrategyRegistry
    from trading.safe_quote import SafeQuoter
    from utils.status_file import StatusSnapshotWriter

logger = logging.getLogger(__name__)

FinishCallback = Callable[["StrategyLoop", str, str], Any]

_CONTINUE = "continue"
_END_TICK = "end-tick"


def _spent_display(candidate: "Candidate") -> tuple[float, str]:
    if candidate.input_mint == config.SOL_MINT:
        return candidate.amount_base / config.LAMPORTS_PER_SOL, "SOL"
    if candidate.input_mint == config.USDC_MINT:
        return candidate.amount_base / 1_000_000, "USDC"
    return candidate.spend_value, "USD"


class StrategyLoop:
    def __init__(
        self,
        policy: "StrategyPolicy",
        *,
        safe_quoter: "SafeQuoter",
        executor: "TradeExecutor",
        market_data: "BirdeyeMarketData | None" = None,
        safety_checker: "SafetyChecker | None" = None,
        store: Any = None,
        alerter: "TelegramAlerter | None" = None,
        registry: "ActiveStrategyRegistry | None" = None,
        health: "HealthRegistry | None" = None,
        metrics_sink: "Metrics | None" = None,
        balances: "WalletBalanceReader | None" = None,
        status_writer: "StatusSnapshotWriter | None" = None,
        signer: "Keypair | None" = None,
        wallet_pubkey: str = "",
        cooldown: CooldownTracker | None = None,
        restart_count: int = 0,
    ) -> None:
        self.policy = policy
        self.cfg = policy.cfg
        self.bot_id = self.cfg.bot_id
        self.safe_quoter = safe_quoter
        self.executor = executor
        self.market_data = market_data
        self.safety_checker = safety_checker
        self.store = store
        self.alerter = alerter
        self.registry = registry
        self.health = health or health_registry
        self.metrics = metrics_sink or metrics
        self.balances = balances
        self.status_writer = status_writer
        self.signer = signer
        self.wallet_pubkey = wallet_pubkey or (str(signer.pubkey()) if signer is not None else "")
        self.cooldown = cooldown or CooldownTracker(self.cfg.cooldown_seconds)
        self.restart_count = int(restart_count)
        self.state = RunState()
        self.task: asyncio.Task | None = None
        self._finish_callbacks: list[FinishCallback] = []
        self._stop_requested = False
        self._stop_reason = "stopped"
        self._trading = False
        self._last_duration_ms = 0.0

    # Lifecycle

    def add_finish_callback(self, callback: FinishCallback) -> None:
        self._finish_callbacks.append(callback)

    def start(self) -> asyncio.Task:
        """Register the bot and spawn its timer task.

        Registration happens first so a duplicate launch raises before any
        task exists.
        """
        entry = RegistryEntry(
            bot_id=self.bot_id,
            kind=self.policy.kind,
            loop=self,
            mode="dry-run" if self.cfg.dry_run else "live",
        )
        if self.registry is not None:
            self.registry.register(self.bot_id, entry)
        self.state.status = STATUS_RUNNING
        self.task = asyncio.get_running_loop().create_task(self.run(), name=f"strategy:{self.bot_id}")
        entry.task = self.task
        logger.info(
            "BOT_START bot=%s kind=%s mode=%s interval=%.1fs max_trades=%s",
            self.bot_id,
            self.policy.kind,
            entry.mode,
            self.cfg.interval_seconds,
            self.policy.max_trades(),
        )
        return self.task

    async def stop(self, reason: str = "stopped") -> None:
        """Stop the timer. A submission already in flight is allowed to land."""
        self._stop_requested = True
        self._stop_reason = reason
        task = self.task
        if task is not None and not task.done() and not self._trading:
            task.cancel()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._finish(STATUS_STOPPED, reason)

    async def run(self) -> None:
        self.state.status = STATUS_RUNNING
        try:
            delay = await self.policy.initial_delay()
            if delay > 0:
                logger.info("BOT_WAIT bot=%s seconds=%.1f", self.bot_id, delay)
                await asyncio.sleep(delay)
            while not self.state.terminal and not self._stop_requested:
                started = time.monotonic()
                if self.registry is not None and self.registry.is_paused(self.bot_id):
                    logger.debug("TICK_PAUSED bot=%s", self.bot_id)
                else:
                    await self.tick()
                if self.state.terminal or self._stop_requested:
                    break
                # Overrunning ticks are not queued; the next one starts right away.
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(0.0, self.policy.next_delay() - elapsed))
        except asyncio.CancelledError:
            await self._finish(STATUS_STOPPED, self._stop_reason)
            raise
        if self._stop_requested:
            await self._finish(STATUS_STOPPED, self._stop_reason)

    # Tick

    async def tick(self) -> None:
        state = self.state
        if state.terminal:
            return
        started = time.monotonic()
        state.ticks += 1
        state.last_tick_at = time.time()
        try:
            if self._is_done():
                await self._finish(STATUS_COMPLETED, self._completion_reason())
                return
            if state.consecutive_failures >= self.cfg.halt_on_failures:
                await self._finish(STATUS_HALTED, "errors")
                return

            clean = await self._run_tick()
            if clean and self.cfg.reset_failures_on_clean_tick:
                state.consecutive_failures = 0

            if not state.terminal and self._is_done():
                await self._finish(STATUS_COMPLETED, self._completion_reason())
        finally:
            self._last_duration_ms = (time.monotonic() - started) * 1000.0
            self.metrics.observe("strategy_loop_seconds", self._last_duration_ms / 1000.0, {"strategy": self.policy.kind})
            self._emit_health()
            self._write_snapshot()

    def _is_done(self) -> bool:
        return self.state.trades_made >= self.policy.max_trades() or self.policy.is_complete(self.state)

    def _completion_reason(self) -> str:
        return "max-trades" if self.state.trades_made >= self.policy.max_trades() else "complete"

    async def _run_tick(self) -> bool:
        """Returns True when the tick finished without a transient failure."""
        candidate: "Candidate | None" = None
        try:
            if not await self._balance_ok():
                return True
            candidates = await self._fetch(self.policy.resolve_candidates(self.state))
            candidates = sorted(candidates, key=lambda c: c.priority, reverse=True)
            logger.info("TICK bot=%s n=%s candidates=%s", self.bot_id, self.state.ticks, len(candidates))
            for candidate in candidates:
                if self._stop_requested or self.state.terminal:
                    break
                if await self._process(candidate) == _END_TICK:
                    break
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._handle_failure(exc, candidate)
            return False

    async def _balance_ok(self) -> bool:
        minimum = float(self.cfg.min_balance_sol or 0.0)
        if minimum <= 0 or self.balances is None or not self.wallet_pubkey:
            return True
        balance = await self._fetch(self.balances.get_sol_balance(self.wallet_pubkey))
        if balance >= minimum:
            return True
        self.state.bump("lowBalance")
        logger.warning("LOW_BALANCE bot=%s balance=%.6f min=%.6f", self.bot_id, balance, minimum)
        self._decision("", "cooldown", "skip", "low_balance", balance=balance)
        return False

    async def _process(self, candidate: "Candidate") -> str:
        cfg = self.cfg
        state = self.state
        mint = candidate.asset_id
        state.bump("scanned")

        if candidate.cooldown:
            remaining = self.cooldown.peek(mint)
            if remaining > 0:
                state.bump("cooldown")
                logger.debug("COOLDOWN_SKIP bot=%s mint=%s remaining=%.1fs", self.bot_id, mint, remaining)
                return _CONTINUE

        if candidate.gated and self.market_data is not None:
            if cfg.min_token_age_minutes is not None or cfg.max_token_age_minutes is not None:
                age = await self._fetch(self.market_data.get_token_age_minutes(candidate.output_mint))
                verdict = evaluate_age(age, cfg)
                if not verdict.passed:
                    state.bump("ageSkipped")
                    self._decision(mint, "age_gate", "skip", verdict.reason, detail=verdict.detail)
                    return _CONTINUE
            overview = await self._fetch(
                self.market_data.get_overview(candidate.output_mint, self.policy.price_window, self.policy.volume_window)
            )
            if overview.symbol and not candidate.symbol:
                candidate.symbol = overview.symbol
            verdict = self.policy.evaluate_gates(candidate, overview)
            if not verdict.passed:
                state.bump("filters")
                state.bump(verdict.reason)
                logger.info(
                    "GATE_SKIP bot=%s mint=%s reason=%s text=%s",
                    self.bot_id,
                    short_mint(mint),
                    verdict.reason,
                    explain_gate_fail(verdict.reason, overview, cfg),
                )
                self._decision(mint, "gate", "skip", verdict.reason, detail=verdict.detail, symbol=candidate.symbol)
                return _CONTINUE

        if candidate.safety and not cfg.disable_safety and self.safety_checker is not None:
            report = await self._fetch(self.safety_checker.check(candidate.output_mint, cfg.safety_checks or None))
            state.bump("safety")
            if not report.passed:
                state.bump("safetyFail")
                self._decision(mint, "safety", "skip", "safety_fail", detail=report.summary())
                return _CONTINUE

        try:
            await self._check_caps(candidate)
        except CapExceeded as exc:
            state.bump(f"cap:{exc.kind}")
            logger.info("CAP_SKIP bot=%s mint=%s cap=%s detail=%s", self.bot_id, short_mint(mint), exc.kind, exc.detail)
            self._decision(mint, "guard", "skip", exc.kind, detail=exc.detail)
            return _END_TICK if exc.ends_tick else _CONTINUE

        quote = await asyncio.wait_for(
            self.safe_quoter.get_safe_quote(
                input_mint=candidate.input_mint,
                output_mint=candidate.output_mint,
                amount=candidate.amount_base,
                slippage=cfg.slippage,
                max_impact=cfg.max_impact,
            ),
            timeout=float(config.DATA_FETCH_TIMEOUT_SECONDS),
        )
        if not quote.ok:
            state.bump(quote.reason)
            self._decision(mint, "quote", "skip", quote.reason, detail=quote.message)
            if quote.reason == "quoteError":
                raise QuoteTransportError(quote.message)
            return _CONTINUE

        await self.policy.before_trade(candidate)
        if self._stop_requested:
            return _END_TICK
        meta = self.policy.build_trade_meta(candidate)
        receipt = await self._submit(candidate, quote.quote, meta)
        await self._record(candidate, receipt, meta)
        return _CONTINUE

    async def _check_caps(self, candidate: "Candidate") -> None:
        assert_trade_cap(self.state.trades_made, self.policy.max_trades())
        assert_daily_limit(candidate.spend_value, self.state.spent_for(), self.cfg.max_daily_volume)
        if self.cfg.max_open_trades and self.store is not None:
            current = await asyncio.to_thread(self.store.count_open_trades, self.policy.kind, self.cfg.owner_id)
            assert_open_trade_cap(self.policy.kind, self.cfg.owner_id, current, self.cfg.max_open_trades)

    async def _submit(self, candidate: "Candidate", quote: dict[str, Any], meta: "TradeMeta") -> "TradeReceipt":
        self._trading = True
        try:
            # Shielded: a stop signal must not abandon a transaction mid-submit.
            return await asyncio.shield(
                asyncio.wait_for(
                    self.executor.execute(quote=quote, signer=self.signer, asset_id=candidate.asset_id, meta=meta),
                    timeout=float(config.TRADE_SUBMIT_TIMEOUT_SECONDS),
                )
            )
        finally:
            self._trading = False

    async def _record(self, candidate: "Candidate", receipt: "TradeReceipt", meta: "TradeMeta") -> None:
        cfg = self.cfg
        self.state.record_trade(candidate.spend_value)
        self.cooldown.hit(candidate.asset_id)
        self.policy.on_trade(candidate, receipt)
        self.metrics.inc("strategy_trades_total", {"strategy": self.policy.kind, "simulated": receipt.simulated})

        logger.info(
            "TRADE_EXECUTED bot=%s mint=%s in=%s out=%s impact=%s sig=%s via=%s trades=%s/%s",
            self.bot_id,
            short_mint(candidate.output_mint),
            receipt.in_amount,
            receipt.out_amount,
            receipt.price_impact,
            receipt.signature,
            receipt.via,
            self.state.trades_made,
            self.policy.max_trades(),
        )
        event = trade_decision_event(
            {
                "bot_id": self.bot_id,
                "mint": candidate.output_mint,
                "symbol": candidate.symbol,
                "decision_stage": "trade",
                "decision": "open",
                "reason": "buy_dry_run" if receipt.simulated else "buy_live",
                "spent": candidate.spend_value,
                "signature": receipt.signature,
            },
            run_tag=str(getattr(config, "RUN_TAG", "")),
        )
        logger.debug("TRADE_DECISION %s", event)

        if self.store is not None:
            try:
                await asyncio.to_thread(self._persist, candidate, receipt, meta)
            except Exception as exc:
                # The transaction is already on its way; bookkeeping must not re-trigger it.
                self.state.bump("persistErrors")
                logger.error("TRADE_PERSIST_FAILED bot=%s sig=%s err=%s", self.bot_id, receipt.signature, exc)

        if self.alerter is not None:
            spent, unit = _spent_display(candidate)
            self.alerter.notify(
                cfg.owner_id,
                format_trade_executed(
                    category=self.policy.category,
                    bot_id=self.bot_id,
                    mint=candidate.output_mint,
                    symbol=candidate.symbol,
                    spent=spent,
                    input_symbol=unit,
                    out_amount=receipt.out_amount,
                    impact=receipt.price_impact,
                    signature=receipt.signature,
                    simulated=receipt.simulated,
                    wallet_id=cfg.wallet_id,
                    take_profit=cfg.take_profit,
                    stop_loss=cfg.stop_loss,
                ),
            )

    def _persist(self, candidate: "Candidate", receipt: "TradeReceipt", meta: "TradeMeta") -> None:
        row = self.store.append_trade(
            bot_id=self.bot_id,
            strategy=meta.strategy,
            owner_id=meta.owner_id,
            wallet_id=meta.wallet_id,
            category=meta.category,
            input_mint=receipt.input_mint or candidate.input_mint,
            output_mint=receipt.output_mint or candidate.output_mint,
            in_amount=receipt.in_amount or candidate.amount_base,
            out_amount=receipt.out_amount,
            spent=candidate.spend_value,
            price_impact=receipt.price_impact,
            signature=receipt.signature,
            simulated=receipt.simulated,
        )
        if meta.take_profit or meta.stop_loss:
            self.store.create_tpsl_rule(
                trade_id=getattr(row, "id", None),
                owner_id=meta.owner_id,
                wallet_id=meta.wallet_id,
                mint=candidate.output_mint,
                strategy=meta.strategy,
                amount=receipt.out_amount,
                take_profit=meta.take_profit,
                stop_loss=meta.stop_loss,
            )

    async def _fetch(self, awaitable: Any) -> Any:
        return await asyncio.wait_for(awaitable, timeout=float(config.DATA_FETCH_TIMEOUT_SECONDS))

    # Failures and termination

    async def _handle_failure(self, exc: Exception, candidate: "Candidate | None") -> None:
        mint = candidate.asset_id if candidate is not None else ""
        if isinstance(exc, HaltRequested):
            logger.warning("HALT_REQUESTED bot=%s reason=%s detail=%s", self.bot_id, exc.reason, exc.detail)
            await self._finish(STATUS_HALTED, exc.reason)
            return
        if isinstance(exc, InsufficientBalanceError) or is_insufficient_balance(exc):
            logger.error("INSUFFICIENT_BALANCE bot=%s mint=%s err=%s", self.bot_id, mint, exc)
            await self._finish(STATUS_HALTED, "insufficient-balance")
            return

        failures = self.state.record_failure()
        cap = int(self.cfg.halt_on_failures)
        error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        self.metrics.inc("strategy_failures_total", {"strategy": self.policy.kind})
        logger.error(
            "TICK_FAILURE bot=%s mint=%s failures=%s/%s err=%s",
            self.bot_id,
            short_mint(mint) or "-",
            failures,
            cap,
            error,
        )
        self._decision(mint, "trade", "error", "trade_error", detail=error)
        if self.alerter is not None:
            self.alerter.notify(
                self.cfg.owner_id,
                format_error(
                    category=self.policy.category,
                    bot_id=self.bot_id,
                    mint=mint,
                    error=error,
                    failures=failures,
                    cap=cap,
                ),
            )
        if failures >= cap:
            await self._finish(STATUS_HALTED, "errors")

    async def _finish(self, status: str, reason: str) -> None:
        """Move to a terminal state. Only the first call has any effect."""
        state = self.state
        if state.summary_sent:
            return
        state.summary_sent = True
        state.status = status
        state.halted = status == STATUS_HALTED
        state.halt_reason = reason
        lines = state.summary_lines()

        log = logger.warning if status == STATUS_HALTED else logger.info
        log(
            "BOT_%s bot=%s reason=%s trades=%s failures=%s summary=%s",
            status.upper(),
            self.bot_id,
            reason,
            state.trades_made,
            state.consecutive_failures,
            " | ".join(lines),
        )
        if status == STATUS_HALTED:
            self._decision("", "halt", status, reason)
        if self.alerter is not None:
            self.alerter.notify(
                self.cfg.owner_id,
                format_summary(
                    category=self.policy.category,
                    bot_id=self.bot_id,
                    status=status,
                    reason=reason,
                    lines=lines,
                    trades=state.trades_made,
                ),
            )
        if self.registry is not None:
            self.registry.mark_finished(self.bot_id, status)
        self._emit_health()
        self._write_snapshot()

        for callback in list(self._finish_callbacks):
            try:
                result = callback(self, status, reason)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("FINISH_CALLBACK_FAILED bot=%s err=%s", self.bot_id, exc)

    # Telemetry

    def _decision(self, mint: str, stage: str, decision: str, reason: str, **extra: Any) -> None:
        event = candidate_decision_event(
            {
                "bot_id": self.bot_id,
                "mint": mint,
                "decision_stage": stage,
                "decision": decision,
                "reason": reason,
                **extra,
            },
            run_tag=str(getattr(config, "RUN_TAG", "")),
        )
        logger.debug("CANDIDATE_DECISION bot=%s code=%s mint=%s", self.bot_id, event["reason_code"], short_mint(mint))

    def _emit_health(self) -> None:
        state = self.state
        self.health.emit(
            self.bot_id,
            HealthPayload(
                last_tick_at=state.last_tick_at,
                loop_duration_ms=round(self._last_duration_ms, 1),
                restart_count=self.restart_count,
                status=state.status,
                notes={
                    "trades": state.trades_made,
                    "failures": state.consecutive_failures,
                    "reason": state.halt_reason,
                },
            ),
        )

    def snapshot(self) -> dict[str, Any]:
        row = self.state.snapshot()
        row["kind"] = self.policy.kind
        row["config"] = self.cfg.echo()
        row["restart_count"] = self.restart_count
        return row

    def _write_snapshot(self) -> None:
        if self.status_writer is None:
            return
        try:
            self.status_writer.update(self.bot_id, self.snapshot())
        except (OSError, RuntimeError) as exc:
            logger.warning("STATUS_SNAPSHOT_FAILED bot=%s err=%s", self.bot_id, exc)
