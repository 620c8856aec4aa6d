# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Prometheus Metrics Module

Exposes metrics for monitoring the mission sync service.

Metrics:
- Counters: cycles, incident changes, logins, detail fetches, published events
- Histograms: cycle duration
- Gauges: live subscribers, extracted missions

Usage:
    from lss_sync.metrics import metrics

    # Track a poll cycle
    async with metrics.track_cycle("missions"):
        await run_cycle()

    # Start metrics server
    await metrics.start_server(port=9090)
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiohttp.web as web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from rich.console import Console

from lss_sync.config import settings

console = Console()


class MetricsCollector:
    """Prometheus metrics collector for the sync service."""

    def __init__(self, enabled: bool = True) -> None:
        """
        Initialize metrics collector.

        Args:
            enabled: Whether to collect metrics
        """
        self.enabled = enabled
        self._runner: web.AppRunner | None = None
        self.registry = CollectorRegistry()

        # Poll cycle metrics
        self.cycles_total = Counter(
            "lss_sync_cycles_total",
            "Total poll cycles",
            ["loop", "status"],
            registry=self.registry,
        )

        self.cycle_duration = Histogram(
            "lss_sync_cycle_duration_seconds",
            "Poll cycle duration in seconds",
            ["loop"],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self.registry,
        )

        self.ticks_skipped_total = Counter(
            "lss_sync_ticks_skipped_total",
            "Ticks dropped because the previous cycle was still running",
            ["loop"],
            registry=self.registry,
        )

        # Incident metrics
        self.incident_changes_total = Counter(
            "lss_sync_incident_changes_total",
            "Incident changes written by the reconciler",
            ["action"],
            registry=self.registry,
        )

        self.missions_extracted = Gauge(
            "lss_sync_missions_extracted",
            "Missions in the latest snapshot",
            ["category", "source"],
            registry=self.registry,
        )

        self.detail_fetches_total = Counter(
            "lss_sync_detail_fetches_total",
            "Mission detail page fetches",
            ["status"],
            registry=self.registry,
        )

        # Session metrics
        self.login_attempts_total = Counter(
            "lss_sync_login_attempts_total",
            "Login attempts",
            ["result"],
            registry=self.registry,
        )

        # Live update metrics
        self.subscribers = Gauge(
            "lss_sync_subscribers",
            "Connected live-update subscribers",
            registry=self.registry,
        )

        self.events_published_total = Counter(
            "lss_sync_events_published_total",
            "Live events published",
            ["event"],
            registry=self.registry,
        )

        self.sinks_dropped_total = Counter(
            "lss_sync_sinks_dropped_total",
            "Subscribers removed after a failed write",
            registry=self.registry,
        )

        # Retention metrics
        self.retention_deleted_total = Counter(
            "lss_sync_retention_deleted_total",
            "Rows removed by the retention sweep",
            ["table"],
            registry=self.registry,
        )

    # ========== Cycle Metrics ==========

    @asynccontextmanager
    async def track_cycle(self, loop: str) -> AsyncIterator[None]:
        """
        Context manager to track cycle duration and status.

        Usage:
            async with metrics.track_cycle("members"):
                await sync_members()
        """
        start_time = time.time()
        success = False
        try:
            yield
            success = True
        finally:
            self.record_cycle(loop, success, time.time() - start_time)

    def record_cycle(self, loop: str, success: bool, duration: float) -> None:
        """Record a finished poll cycle."""
        if not self.enabled:
            return

        self.cycle_duration.labels(loop=loop).observe(duration)
        self.cycles_total.labels(loop=loop, status="success" if success else "error").inc()

    def record_skipped_tick(self, loop: str) -> None:
        """Record a tick dropped by the overlap guard."""
        if self.enabled:
            self.ticks_skipped_total.labels(loop=loop).inc()

    # ========== Incident Metrics ==========

    def record_incident_changes(
        self,
        created: int = 0,
        updated: int = 0,
        deleted: int = 0,
        unchanged: int = 0,
    ) -> None:
        """Record the outcome of a reconciliation."""
        if not self.enabled:
            return

        for action, count in (
            ("created", created),
            ("updated", updated),
            ("deleted", deleted),
            ("unchanged", unchanged),
        ):
            if count:
                self.incident_changes_total.labels(action=action).inc(count)

    def record_snapshot(self, counts: dict[tuple[str, str], int]) -> None:
        """Record mission counts per (category, source) of the latest snapshot."""
        if not self.enabled:
            return

        self.missions_extracted.clear()
        for (category, source), count in counts.items():
            self.missions_extracted.labels(category=category, source=source).set(count)

    def record_detail_fetch(self, success: bool) -> None:
        """Record a mission detail page fetch."""
        if self.enabled:
            self.detail_fetches_total.labels(status="success" if success else "error").inc()

    # ========== Session Metrics ==========

    def record_login(self, result: str) -> None:
        """Record a login attempt."""
        if self.enabled:
            self.login_attempts_total.labels(result=result).inc()

    # ========== Live Update Metrics ==========

    def record_event(self, event: str) -> None:
        """Record a published live event."""
        if self.enabled:
            self.events_published_total.labels(event=event).inc()

    def record_sink_dropped(self) -> None:
        """Record a subscriber removed after a failed write."""
        if self.enabled:
            self.sinks_dropped_total.inc()

    def set_subscribers(self, count: int) -> None:
        """Set the number of connected subscribers."""
        if self.enabled:
            self.subscribers.set(count)

    # ========== Retention Metrics ==========

    def record_retention(self, table: str, deleted: int) -> None:
        """Record rows removed by the retention sweep."""
        if self.enabled and deleted:
            self.retention_deleted_total.labels(table=table).inc(deleted)

    # ========== Metrics Server ==========

    async def start_server(self, port: int = 9090) -> None:
        """
        Start HTTP server to expose metrics.

        Args:
            port: Port to listen on (default 9090)
        """
        if not self.enabled:
            console.print("[yellow]Metrics disabled, metrics server not started[/yellow]")
            return

        async def metrics_handler(request: web.Request) -> web.Response:
            """Handle /metrics endpoint."""
            output = generate_latest(self.registry)
            return web.Response(
                body=output,
                headers={"Content-Type": CONTENT_TYPE_LATEST},
            )

        async def health_handler(request: web.Request) -> web.Response:
            """Handle /health endpoint."""
            return web.Response(text="OK")

        app = web.Application()
        app.router.add_get("/metrics", metrics_handler)
        app.router.add_get("/health", health_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()

        console.print(f"[green]Metrics server started on port {port}[/green]")

    async def stop_server(self) -> None:
        """Stop the metrics HTTP server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def render(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        return generate_latest(self.registry)


# Global metrics instance
metrics = MetricsCollector(enabled=settings.metrics_enabled)
