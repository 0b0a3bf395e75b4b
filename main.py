"""Process entry point: logging, service wiring and the run/schedule/restore commands."""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import init_db
from trading.errors import ConfigError, DuplicateLaunchError
from trading.launcher import StrategyLauncher, StrategyServices
from trading.scheduler import StrategyScheduler


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 60.0
IDLE_POLL_SECONDS = 5.0


def load_configs(paths: list[str]) -> list[dict[str, Any]]:
    """Each file holds one strategy config object or a list of them."""
    rows: list[dict[str, Any]] = []
    for path in paths:
        with open(path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
        if isinstance(data, dict):
            rows.append(data)
        elif isinstance(data, list):
            rows.extend(row for row in data if isinstance(row, dict))
        else:
            raise ConfigError(f"{path}: expected an object or a list of objects")
    return rows


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            pass


async def serve(launcher: StrategyLauncher, scheduler: StrategyScheduler, *, stay_alive: bool) -> None:
    """Block until every bot and armed schedule is done, or until a stop signal."""
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    services = launcher.services
    last_heartbeat = 0.0
    loop = asyncio.get_running_loop()
    try:
        while not stop_event.is_set():
            running = launcher.registry.running_ids()
            if not running and not scheduler.jobs and not stay_alive:
                logger.info("RUNTIME_IDLE no running bots or armed schedules; exiting")
                break
            now = loop.time()
            if now - last_heartbeat >= HEARTBEAT_SECONDS:
                last_heartbeat = now
                logger.info(
                    "RUNTIME bots=%s scheduled=%s health=%s http=%s",
                    len(running),
                    len(scheduler.jobs),
                    services.health.snapshot(),
                    services.http.snapshot_stats(),
                )
                launcher.cleanup_finished()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=IDLE_POLL_SECONDS)
            except asyncio.TimeoutError:
                pass
    finally:
        logger.info("RUNTIME_SHUTDOWN metrics=%s", services.metrics.snapshot())
        await scheduler.shutdown()
        await launcher.shutdown()


async def cmd_run(args: argparse.Namespace) -> int:
    services = StrategyServices.from_config()
    launcher = StrategyLauncher(services)
    scheduler = StrategyScheduler(launcher)
    started = 0
    for row in load_configs(args.config):
        if args.dry_run:
            row["dryRun"] = True
        try:
            loop = await launcher.start(row)
        except (ConfigError, DuplicateLaunchError) as exc:
            logger.error("START_REJECTED kind=%s err=%s", row.get("kind") or row.get("strategy"), exc)
            continue
        started += 1
        logger.info("STARTED bot=%s", loop.bot_id)
    if not started:
        await services.close()
        return 2
    await serve(launcher, scheduler, stay_alive=False)
    return 0


async def cmd_schedule(args: argparse.Namespace) -> int:
    services = StrategyServices.from_config()
    launcher = StrategyLauncher(services)
    scheduler = StrategyScheduler(launcher)
    rows = load_configs([args.config])
    if len(rows) != 1:
        raise ConfigError("schedule expects exactly one strategy config")
    try:
        job_id = await scheduler.schedule_strategy(
            launch_at=args.at,
            config_data=rows[0],
            owner_id=args.owner or str(getattr(config, "TELEGRAM_DEFAULT_CHAT_ID", "")),
            wallet_id=args.wallet or str(getattr(config, "WALLET_LABEL", "default")),
        )
    except ConfigError as exc:
        logger.error("SCHEDULE_REJECTED err=%s", exc)
        await services.close()
        return 2
    print(job_id)
    if args.wait:
        await serve(launcher, scheduler, stay_alive=False)
    else:
        # The row stays pending; `restore` re-arms it in a long-running process.
        await scheduler.shutdown()
        await services.close()
    return 0


async def cmd_restore(args: argparse.Namespace) -> int:
    services = StrategyServices.from_config()
    launcher = StrategyLauncher(services)
    scheduler = StrategyScheduler(launcher)
    restored = await launcher.restore()
    armed = await scheduler.restore()
    logger.info("RESTORE bots=%s schedules=%s", len(restored), armed)
    await serve(launcher, scheduler, stay_alive=args.stay_alive)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-strategy Solana trading bot runtime")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="start bots from JSON config files and run until they finish")
    run.add_argument("--config", action="append", required=True, help="path to a strategy config JSON file")
    run.add_argument("--dry-run", action="store_true", help="force dry-run execution for every bot")
    run.set_defaults(handler=cmd_run)

    schedule = sub.add_parser("schedule", help="persist a future-dated strategy launch")
    schedule.add_argument("--config", required=True, help="path to a strategy config JSON file")
    schedule.add_argument("--at", required=True, help="launch time, ISO-8601 (UTC when no offset)")
    schedule.add_argument("--owner", default="", help="owner id / Telegram chat id for alerts")
    schedule.add_argument("--wallet", default="", help="wallet label")
    schedule.add_argument("--wait", action="store_true", help="stay in the foreground until the job finishes")
    schedule.set_defaults(handler=cmd_schedule)

    restore = sub.add_parser("restore", help="relaunch persisted bots and re-arm pending schedules")
    restore.add_argument("--stay-alive", action="store_true", help="keep serving when nothing is running")
    restore.set_defaults(handler=cmd_restore)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    init_db()
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    sys.exit(main())
