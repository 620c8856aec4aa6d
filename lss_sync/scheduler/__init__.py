# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Scheduler module - Automated mission and alliance sync.

Provides near real-time synchronization using APScheduler:
- Mission cycle every few seconds
- Alliance stats every few minutes
- Member list every minute
- Retention sweep once a day at a fixed hour
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from rich.console import Console
from rich.panel import Panel

from lss_sync.config import settings
from lss_sync.exceptions import AllianceInfoError, LoginExhaustedError, SessionExpiredError
from lss_sync.metrics import metrics
from lss_sync.retention import next_run_at
from lss_sync.sync.orchestrator import CycleResult, SyncOrchestrator

logger = logging.getLogger(__name__)
console = Console()

TRANSIENT_ERRORS = (httpx.HTTPError, SessionExpiredError, AllianceInfoError)


class SyncScheduler:
    """
    Scheduler for automated synchronization.

    Runs:
    - Mission cycles every N seconds (default: 10)
    - Alliance stat syncs every N seconds (default: 300)
    - Member syncs every N seconds (default: 60)
    - Retention sweep daily (default: 4 AM local time)

    A failed login streak stops everything; ``run_forever`` then raises.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        mission_interval: int | None = None,
        stats_interval: int | None = None,
        members_interval: int | None = None,
        retention_hour: int | None = None,
    ) -> None:
        """
        Initialize the sync scheduler.

        Args:
            orchestrator: Entered orchestrator providing the pipeline
            mission_interval: Seconds between mission cycles.
            stats_interval: Seconds between alliance stat syncs.
            members_interval: Seconds between member syncs.
            retention_hour: Local hour of the daily retention sweep.
        """
        self.orchestrator = orchestrator
        self.mission_interval = (
            settings.mission_list_interval_seconds
            if mission_interval is None
            else mission_interval
        )
        self.stats_interval = (
            settings.alliance_stats_interval_seconds if stats_interval is None else stats_interval
        )
        self.members_interval = (
            settings.member_sync_interval_seconds if members_interval is None else members_interval
        )
        self.retention_hour = (
            settings.retention_hour if retention_hour is None else retention_hour
        )

        self.scheduler = AsyncIOScheduler()
        self.fatal_error: BaseException | None = None
        self._is_running = False
        self._stopped = asyncio.Event()
        self._last_cycle: CycleResult | None = None
        self._last_cycle_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        """Whether a mission cycle is in progress."""
        return self._is_running

    async def start(self) -> None:
        """
        Log in and register all jobs.

        Every interval job runs once immediately.

        Raises:
            LoginExhaustedError: if the initial login fails
        """
        console.print(Panel.fit(
            "[bold green]Starting Sync Scheduler[/bold green]\n"
            f"[dim]Missions: every {self.mission_interval}s[/dim]\n"
            f"[dim]Alliance stats: every {self.stats_interval}s[/dim]\n"
            f"[dim]Members: every {self.members_interval}s[/dim]\n"
            f"[dim]Retention: daily at {self.retention_hour:02d}:00[/dim]",
            border_style="green",
        ))

        await self.orchestrator.start_browser()
        if not await self.orchestrator.session.ensure_authenticated():
            raise RuntimeError("Browser session closed during startup")

        now = datetime.now(timezone.utc)
        jobs = (
            (self._run_mission_cycle, self.mission_interval, "mission_cycle", "Mission Cycle"),
            (self._run_stats_sync, self.stats_interval, "alliance_stats", "Alliance Stats"),
            (self._run_member_sync, self.members_interval, "member_sync", "Member Sync"),
        )
        for func, seconds, job_id, name in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=now,
            )

        self.scheduler.start()
        self._schedule_retention()
        console.print("[green]Scheduler started successfully[/green]")

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self.scheduler.running:
            console.print("[yellow]Stopping scheduler...[/yellow]")
            self.scheduler.shutdown(wait=False)
            console.print("[green]Scheduler stopped[/green]")
        self._stopped.set()

    async def run_forever(self) -> None:
        """
        Start and block until stopped.

        Raises:
            LoginExhaustedError: if the session could not be restored
        """
        try:
            await self.start()
            await self._stopped.wait()
        finally:
            await self.stop()

        if self.fatal_error is not None:
            raise self.fatal_error

    def _fail(self, error: BaseException) -> None:
        self.fatal_error = error
        self._stopped.set()

    # ========== Jobs ==========

    async def _run_mission_cycle(self) -> CycleResult | None:
        """Run a mission cycle unless one is still in progress."""
        if self._is_running:
            logger.debug("Mission cycle still running, skipping tick")
            metrics.record_skipped_tick("missions")
            return None

        self._is_running = True
        try:
            result = await self.orchestrator.run_mission_cycle()
            self._last_cycle = result
            self._last_cycle_at = datetime.now(timezone.utc)
            if result.success:
                logger.debug(
                    "Mission cycle: %d created, %d updated, %d deleted in %.1fs",
                    result.created,
                    result.updated,
                    result.deleted,
                    result.duration_seconds,
                )
            return result
        except LoginExhaustedError as e:
            logger.critical("Stopping scheduler: %s", e)
            self._fail(e)
            return None
        finally:
            self._is_running = False

    async def _run_stats_sync(self) -> None:
        """Record an alliance stat point."""
        try:
            async with metrics.track_cycle("alliance_stats"):
                await self.orchestrator.alliance.sync_stats()
        except TRANSIENT_ERRORS as e:
            logger.warning("Alliance stat sync failed: %s", e)
        except Exception:
            logger.exception("Alliance stat sync failed")

    async def _run_member_sync(self) -> None:
        """Reconcile the alliance member list."""
        try:
            async with metrics.track_cycle("members"):
                await self.orchestrator.alliance.sync_members()
        except TRANSIENT_ERRORS as e:
            logger.warning("Member sync failed: %s", e)
        except Exception:
            logger.exception("Member sync failed")

    def _schedule_retention(self) -> None:
        run_at = next_run_at(datetime.now().astimezone(), self.retention_hour)
        self.scheduler.add_job(
            self._run_retention,
            trigger=DateTrigger(run_date=run_at),
            id="retention",
            name="Retention Sweep",
            replace_existing=True,
        )
        logger.info("Next retention sweep at %s", run_at.isoformat())

    async def _run_retention(self) -> None:
        """Run the retention sweep and schedule the next one."""
        try:
            async with metrics.track_cycle("retention"):
                await self.orchestrator.retention.run()
        except Exception:
            logger.exception("Retention sweep failed")
        finally:
            if self.scheduler.running:
                self._schedule_retention()

    def get_status(self) -> dict[str, Any]:
        """Get current scheduler status."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time) if job.next_run_time else None,
            })

        last = self._last_cycle
        return {
            "running": self.scheduler.running,
            "is_syncing": self._is_running,
            "last_cycle": str(self._last_cycle_at) if self._last_cycle_at else None,
            "last_cycle_success": last.success if last else None,
            "jobs": jobs,
        }


async def run_scheduler(
    orchestrator: SyncOrchestrator,
    metrics_port: int | None = None,
) -> None:
    """
    Run the sync scheduler until interrupted or a fatal error occurs.

    Args:
        orchestrator: Entered orchestrator
        metrics_port: Port for Prometheus metrics server.
    """
    scheduler = SyncScheduler(orchestrator)

    await metrics.start_server(port=metrics_port or settings.metrics_port)
    try:
        await scheduler.run_forever()
    finally:
        await metrics.stop_server()
