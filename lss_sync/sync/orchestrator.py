# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Sync Orchestrator

Wires the pipeline together and runs single cycles:
- Mission cycle: authenticate, extract, upsert, details, delete
- Alliance stat and member syncs
- Retention sweep
- Live updates via the broadcaster and the Redis relay
- Prometheus metrics
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console

from lss_sync.broadcast import Broadcaster
from lss_sync.browser.session import SessionManager
from lss_sync.client.alliance_client import AllianceClient
from lss_sync.config import settings
from lss_sync.events import RedisRelay
from lss_sync.exceptions import ExtractionError, LoginExhaustedError
from lss_sync.extraction.extractor import MissionExtractor
from lss_sync.extraction.mission_lists import ExtractionStats
from lss_sync.metrics import metrics
from lss_sync.retention import RetentionSweep
from lss_sync.schemas import DETAIL_CATEGORIES
from lss_sync.storage.database import DatabaseStorage
from lss_sync.storage.models import utcnow
from lss_sync.sync.alliance import AllianceSync
from lss_sync.sync.reconciler import Reconciler

logger = logging.getLogger(__name__)
console = Console()


@dataclass
class CycleResult:
    """Result of one mission cycle."""

    success: bool = False
    stats: ExtractionStats | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    details_fetched: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class SyncOrchestrator:
    """
    Orchestrates the mission synchronization pipeline.

    Features:
    - Owns storage, browser session, broadcaster and HTTP client
    - One mission cycle per call, safe to interrupt at any point
    - Detail pages fetched on their own cadence
    - Page reload after a failed cycle
    - Redis relay for live events
    """

    def __init__(
        self,
        database_url: str | None = None,
        storage: DatabaseStorage | None = None,
        broadcaster: Broadcaster | None = None,
        session: SessionManager | None = None,
        alliance_client: AllianceClient | None = None,
        relay: RedisRelay | None = None,
        details_interval: float | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            database_url: Database connection URL
            storage: Pre-built storage (overrides database_url)
            broadcaster: Live update hub shared with the API
            session: Browser session manager
            alliance_client: Client for the alliance info endpoint
            relay: Redis relay for live events
            details_interval: Seconds between detail passes (0 = every cycle)
        """
        self.storage = storage or DatabaseStorage(database_url)
        self.broadcaster = broadcaster or Broadcaster()
        self.session = session or SessionManager()
        self.relay = relay or RedisRelay()
        self.extractor = MissionExtractor(self.session)
        self.reconciler = Reconciler(self.storage, self.broadcaster)
        self.alliance_client = alliance_client or AllianceClient(
            cookie_provider=self.session.cookie_header,
            base_url=self.session.base_url,
        )
        self.alliance = AllianceSync(
            self.storage, self.reconciler, self.alliance_client, self.broadcaster
        )
        self.retention = RetentionSweep(self.storage)
        self.details_interval = (
            settings.mission_details_interval_seconds
            if details_interval is None
            else details_interval
        )
        self._last_details_at: float | None = None
        self._browser_started = False

    async def __aenter__(self) -> "SyncOrchestrator":
        """Async context manager entry."""
        await self.storage.initialize()
        await self.relay.__aenter__()
        self.broadcaster.attach(self.relay)
        await self.broadcaster.start()
        await self.alliance_client.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._browser_started:
            await self.session.close()
        await self.alliance_client.__aexit__(exc_type, exc_val, exc_tb)
        await self.broadcaster.stop()
        self.broadcaster.detach(self.relay)
        await self.relay.__aexit__(exc_type, exc_val, exc_tb)
        await self.storage.close()

    async def start_browser(self) -> None:
        """Launch the browser session."""
        await self.session.start()
        self._browser_started = True

    # ========== Mission Cycle ==========

    def _details_due(self) -> bool:
        if not self.details_interval or self._last_details_at is None:
            return True
        return time.monotonic() - self._last_details_at >= self.details_interval

    async def run_mission_cycle(self) -> CycleResult:
        """
        Run one mission cycle.

        Upserts are committed before detail pages are visited; deletion runs
        last. Any failure reloads the page once and ends the cycle.

        Raises:
            LoginExhaustedError: when the session cannot be restored
        """
        start = time.time()
        result = CycleResult()

        try:
            if not await self.session.ensure_authenticated():
                result.errors.append("Browser session closed")
                return result

            snapshot = await self.extractor.extract_snapshot()
            if not snapshot.authoritative:
                raise ExtractionError("Mission lists not found on page")
            result.stats = snapshot.stats

            changes = await self.reconciler.upsert_records(snapshot.records, utcnow())
            result.created = len(changes.created)
            result.updated = len(changes.updated)
            result.unchanged = changes.unchanged

            if self._details_due():
                detail_records = [
                    record for record in snapshot.records
                    if record.category in DETAIL_CATEGORIES
                ]
                result.details_fetched = await self.extractor.extract_details(detail_records)
                await self.reconciler.apply_details(detail_records)
                self._last_details_at = time.monotonic()

            deleted = await self.reconciler.delete_missing(snapshot)
            result.deleted = len(deleted)
            result.success = True

        except LoginExhaustedError:
            raise
        except Exception as e:
            result.errors.append(str(e))
            if self.session.closed:
                logger.debug("Mission cycle interrupted by shutdown: %s", e)
            else:
                logger.exception("Mission cycle failed")
                await self.session.reload()
        finally:
            result.duration_seconds = time.time() - start
            metrics.record_cycle("missions", result.success, result.duration_seconds)

        return result

    # ========== Status & Statistics ==========

    async def get_status(self) -> dict[str, Any]:
        """Get current database statistics and live subscriber count."""
        stats = await self.storage.get_stats()

        return {
            "database_stats": stats,
            "subscribers": self.broadcaster.subscriber_count,
        }

    def print_result(self, result: CycleResult) -> None:
        """Print a cycle result summary."""
        console.print("\n[bold]" + "=" * 60 + "[/bold]")
        console.print("[bold]Mission Cycle Result[/bold]")
        console.print("[bold]" + "=" * 60 + "[/bold]")

        status = "[green]SUCCESS[/green]" if result.success else "[red]FAILED[/red]"
        console.print(f"Status: {status}")
        console.print(f"Duration: {result.duration_seconds:.1f}s")

        if result.stats:
            console.print("\n[bold]Snapshot:[/bold]")
            console.print(f"  Emergency:   {result.stats.emergency_own:,} own / "
                          f"{result.stats.emergency_alliance:,} alliance")
            console.print(f"  Planned:     {result.stats.planned_own:,} own / "
                          f"{result.stats.planned_alliance:,} alliance")
            console.print(f"  Events:      {result.stats.events:,}")
            console.print(f"  Skipped:     {result.stats.skipped:,}")

        console.print("\n[bold]Changes:[/bold]")
        console.print(f"  Created:     {result.created:,}")
        console.print(f"  Updated:     {result.updated:,}")
        console.print(f"  Unchanged:   {result.unchanged:,}")
        console.print(f"  Deleted:     {result.deleted:,}")
        console.print(f"  Details:     {result.details_fetched:,}")

        if result.errors:
            console.print(f"\n[red]Errors ({len(result.errors)}):[/red]")
            for error in result.errors[:10]:
                console.print(f"  - {error}")
