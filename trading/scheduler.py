"""Future-dated strategy launches.

Jobs are persisted as ``pending`` rows and armed as asyncio timers that fire
``SCHEDULER_PRELAUNCH_MINUTES`` before the launch time, so the bot is warm
when its start time arrives. Row lifecycle: pending -> running -> completed
or stopped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

import config
from database.models import JOB_COMPLETED, JOB_RUNNING, JOB_STOPPED
from trading.errors import ConfigError, DuplicateLaunchError
from trading.run_state import STATUS_COMPLETED
from trading.strategy_config import StrategyConfig, parse_time

if TYPE_CHECKING:
    from trading.launcher import StrategyLauncher
    from trading.strategy_loop import StrategyLoop

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    # SQLite DateTime columns drop tzinfo; rows are stored as naive UTC.
    return _as_utc(value).replace(tzinfo=None)


def scheduled_bot_id(job_id: str) -> str:
    return f"scheduled-{job_id}"


class StrategyScheduler:
    def __init__(
        self,
        launcher: "StrategyLauncher",
        *,
        store: Any = None,
        prelaunch_minutes: float | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.launcher = launcher
        self.store = store if store is not None else launcher.services.store
        self.alerter = launcher.services.alerter
        self.prelaunch = timedelta(
            minutes=float(
                prelaunch_minutes
                if prelaunch_minutes is not None
                else getattr(config, "SCHEDULER_PRELAUNCH_MINUTES", 5)
            )
        )
        self._now = now
        self.jobs: dict[str, asyncio.Task] = {}

    def _job_config(self, *, job_id: str, owner_id: str, wallet_id: str, launch_at: datetime, data: dict[str, Any]) -> dict[str, Any]:
        enriched = dict(data or {})
        enriched.setdefault("kind", "scheduled")
        enriched.update(
            bot_id=scheduled_bot_id(job_id),
            owner_id=owner_id,
            wallet_id=wallet_id,
            start_time=_as_utc(launch_at).isoformat(),
        )
        return enriched

    async def restore(self) -> int:
        """Re-arm pending jobs still ahead; launch the ones that came due while down.

        Overdue jobs go through ``launch`` and so start with ``is_restart`` set.
        """
        rows = await asyncio.to_thread(self.store.list_pending_jobs)
        now = self._now()
        armed = overdue = 0
        for row in rows:
            launch_at = _as_utc(row.launch_at)
            if launch_at > now:
                self._arm(row.id, launch_at)
                armed += 1
                continue
            logger.warning("SCHEDULE_OVERDUE job=%s launch_at=%s", row.id, launch_at.isoformat())
            await self.launch(row.id)
            overdue += 1
        logger.info("SCHEDULER_RESTORED armed=%s overdue=%s", armed, overdue)
        return armed + overdue

    async def schedule_strategy(
        self,
        *,
        launch_at: Any,
        config_data: dict[str, Any],
        owner_id: str = "",
        wallet_id: str = "",
        kind: str = "scheduled",
        job_id: str | None = None,
    ) -> str:
        """Validate and persist a job, then arm its timer. Returns the job id."""
        if not kind or launch_at in (None, ""):
            raise ConfigError("kind and launch time are required")
        launch = parse_time(launch_at)
        now = self._now()
        if launch is None or launch <= now:
            raise ConfigError("launch time must be in the future")

        job_id = job_id or uuid.uuid4().hex[:12]
        data = {**dict(config_data or {}), "kind": (config_data or {}).get("kind", kind)}
        enriched = self._job_config(job_id=job_id, owner_id=owner_id, wallet_id=wallet_id, launch_at=launch, data=data)
        StrategyConfig.from_dict(enriched).validate(now)

        await asyncio.to_thread(
            self.store.create_scheduled_job,
            job_id=job_id,
            owner_id=owner_id,
            wallet_id=wallet_id,
            kind=data["kind"],
            launch_at=_naive_utc(launch),
            config=data,
        )
        self._arm(job_id, launch)
        logger.info("SCHEDULE_CREATED job=%s kind=%s launch_at=%s", job_id, data["kind"], launch.isoformat())
        return job_id

    async def cancel_schedule(self, job_id: str) -> bool:
        self._disarm(job_id)
        deleted = await asyncio.to_thread(self.store.delete_scheduled_job, job_id)
        logger.info("SCHEDULE_CANCELLED job=%s deleted=%s", job_id, deleted)
        return deleted

    async def update_schedule(self, job_id: str, *, launch_at: Any = None, config_data: dict[str, Any] | None = None) -> str:
        if job_id not in self.jobs:
            raise KeyError(f"job {job_id} is not armed")
        changes: dict[str, Any] = {}
        launch: datetime | None = None
        if launch_at not in (None, ""):
            launch = parse_time(launch_at)
            if launch is None or launch <= self._now():
                raise ConfigError("launch time must be in the future")
            changes["launch_at"] = _naive_utc(launch)
        if config_data is not None:
            changes["config"] = dict(config_data)
        row = await asyncio.to_thread(self.store.update_scheduled_job, job_id, **changes)
        if row is None:
            raise KeyError(f"job {job_id} not found")
        self._disarm(job_id)
        self._arm(job_id, launch or _as_utc(row.launch_at))
        logger.info("SCHEDULE_UPDATED job=%s launch_at=%s", job_id, row.launch_at)
        return job_id

    def trigger_time(self, launch_at: datetime) -> datetime:
        return _as_utc(launch_at) - self.prelaunch

    def _arm(self, job_id: str, launch_at: datetime) -> None:
        delay = max(0.0, (self.trigger_time(launch_at) - self._now()).total_seconds())
        task = asyncio.get_running_loop().create_task(self._fire_after(job_id, delay), name=f"schedule:{job_id}")
        self.jobs[job_id] = task

    def _disarm(self, job_id: str) -> None:
        task = self.jobs.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _fire_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self.jobs.pop(job_id, None)
        await self.launch(job_id)

    async def launch(self, job_id: str) -> "StrategyLoop | None":
        row = await asyncio.to_thread(self.store.get_scheduled_job, job_id)
        if row is None:
            logger.warning("SCHEDULE_MISSING job=%s", job_id)
            return None
        bot_id = scheduled_bot_id(job_id)
        logger.info("SCHEDULE_PRELAUNCH job=%s bot=%s", job_id, bot_id)
        if self.launcher.registry.is_running(bot_id):
            logger.warning("SCHEDULE_DUPLICATE job=%s bot=%s", job_id, bot_id)
            await asyncio.to_thread(self.store.set_job_status, job_id, JOB_STOPPED, "duplicate launch blocked")
            return None

        await asyncio.to_thread(self.store.set_job_status, job_id, JOB_RUNNING)
        enriched = self._job_config(
            job_id=job_id,
            owner_id=row.owner_id,
            wallet_id=row.wallet_id,
            launch_at=_as_utc(row.launch_at),
            data=dict(row.config or {}),
        )
        if _as_utc(row.launch_at) <= self._now():
            enriched["is_restart"] = True
        try:
            loop = await self.launcher.start(enriched, now=self._now())
        except (ConfigError, DuplicateLaunchError, ValueError) as exc:
            logger.error("SCHEDULE_LAUNCH_FAILED job=%s err=%s", job_id, exc)
            await asyncio.to_thread(self.store.set_job_status, job_id, JOB_STOPPED, str(exc))
            self.alerter.notify(row.owner_id, f"⚠️ Scheduled strategy {job_id} failed to launch:\n{exc}")
            return None

        async def _mark_done(_loop: "StrategyLoop", status: str, reason: str) -> None:
            final = JOB_COMPLETED if status == STATUS_COMPLETED else JOB_STOPPED
            await asyncio.to_thread(self.store.set_job_status, job_id, final, None if final == JOB_COMPLETED else reason)

        loop.add_finish_callback(_mark_done)
        logger.info("SCHEDULE_LAUNCHED job=%s bot=%s", job_id, bot_id)
        return loop

    async def shutdown(self) -> None:
        for job_id in list(self.jobs):
            self._disarm(job_id)
