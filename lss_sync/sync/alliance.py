# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Alliance Stat and Member Sync

Both pollers read the same alliance info endpoint: the stat poller appends
a stat point, the member poller reconciles the member list.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from lss_sync.broadcast import Broadcaster
from lss_sync.client.alliance_client import AllianceClient
from lss_sync.events import EventType
from lss_sync.schemas import (
    AllianceStatRead,
    MemberCounts,
    MemberRead,
    StatChange,
)
from lss_sync.storage.database import DatabaseStorage
from lss_sync.storage.models import AllianceStat, utcnow
from lss_sync.sync.reconciler import MemberSyncResult, Reconciler

logger = logging.getLogger(__name__)


@dataclass
class StatSyncResult:
    """A freshly recorded stat point and its change over the last day."""

    stat: AllianceStat
    change: StatChange | None


class AllianceSync:
    """Polls alliance info and records stats and members."""

    def __init__(
        self,
        storage: DatabaseStorage,
        reconciler: Reconciler,
        client: AllianceClient,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self.storage = storage
        self.reconciler = reconciler
        self.client = client
        self.broadcaster = broadcaster

    async def sync_stats(self, now: datetime | None = None) -> StatSyncResult:
        """Append a stat point and broadcast it with its 24h change."""
        info = await self.client.fetch_alliance_info()
        stat = await self.storage.insert_alliance_stat(info, recorded_at=now or utcnow())
        change = await self.storage.get_stat_change(stat)

        logger.info(
            "Alliance stats: %s rank %s, %s credits",
            stat.alliance_name,
            stat.rank,
            f"{stat.credits_total:,}",
        )

        if self.broadcaster is not None:
            self.broadcaster.publish(
                EventType.ALLIANCE_STATS,
                {
                    "stats": AllianceStatRead.model_validate(stat).model_dump(mode="json"),
                    "change_24h": change.model_dump(mode="json") if change else None,
                },
            )
        return StatSyncResult(stat=stat, change=change)

    async def sync_members(self, now: datetime | None = None) -> MemberSyncResult:
        """Reconcile the member list and broadcast the visible members."""
        info = await self.client.fetch_alliance_info()
        result = await self.reconciler.reconcile_members(info.id, info.users, now=now or utcnow())

        if self.broadcaster is not None:
            members = await self.storage.list_members(self.reconciler.excluded_members)
            counts = MemberCounts(
                total=len(members),
                online=sum(1 for member in members if member.is_online),
            )
            self.broadcaster.publish(
                EventType.MEMBERS,
                {
                    "members": [
                        MemberRead.model_validate(member).model_dump(mode="json")
                        for member in members
                    ],
                    "counts": counts.model_dump(),
                },
            )
        return result
