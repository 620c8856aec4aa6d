# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Retention and Aggregation Sweep

Runs once a day at a fixed local hour:
- incidents not seen for N days are deleted
- member activity older than N days is deleted
- alliance stat points older than N days are reduced to one per day
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from lss_sync.config import settings
from lss_sync.metrics import metrics
from lss_sync.storage.database import DatabaseStorage
from lss_sync.storage.models import utcnow

logger = logging.getLogger(__name__)


def next_run_at(now: datetime, hour: int) -> datetime:
    """
    Next occurrence of ``hour``:00 on the wall clock of ``now``.

    Today's slot if it is still ahead, tomorrow's otherwise.
    """
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


@dataclass
class RetentionResult:
    """Rows removed by one sweep."""

    incidents_deleted: int = 0
    activity_deleted: int = 0
    stats_aggregated: int = 0

    def __str__(self) -> str:
        return (
            f"{self.incidents_deleted} incidents, {self.activity_deleted} activity entries, "
            f"{self.stats_aggregated} stat points"
        )


class RetentionSweep:
    """Deletes and downsamples old data."""

    def __init__(
        self,
        storage: DatabaseStorage,
        incidents_days: int | None = None,
        activity_days: int | None = None,
        stats_aggregate_days: int | None = None,
    ) -> None:
        self.storage = storage
        self.incidents_days = (
            settings.data_retention_incidents_days if incidents_days is None else incidents_days
        )
        self.activity_days = (
            settings.data_retention_activity_days if activity_days is None else activity_days
        )
        self.stats_aggregate_days = (
            settings.data_retention_stats_aggregate_days
            if stats_aggregate_days is None
            else stats_aggregate_days
        )

    async def run(self, now: datetime | None = None) -> RetentionResult:
        """Run all three cleanups."""
        now = now or utcnow()
        result = RetentionResult()

        result.incidents_deleted = await self.storage.delete_incidents_last_seen_before(
            now - timedelta(days=self.incidents_days)
        )
        result.activity_deleted = await self.storage.delete_activity_before(
            now - timedelta(days=self.activity_days)
        )
        result.stats_aggregated = await self.storage.aggregate_stats_before(
            now - timedelta(days=self.stats_aggregate_days)
        )

        metrics.record_retention("incidents", result.incidents_deleted)
        metrics.record_retention("member_activity_log", result.activity_deleted)
        metrics.record_retention("alliance_stats", result.stats_aggregated)
        logger.info("Retention sweep removed %s", result)
        return result
