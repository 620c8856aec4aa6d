# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Async Storage for Missions and Alliance Data

Owns the SQLAlchemy engine and the read/append queries the pollers and
the retention sweep need. Incident and member writes go through the
reconciler, which opens its own transactions via ``get_session()``.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lss_sync.config import settings
from lss_sync.schemas import (
    AllianceInfo,
    MemberCounts,
    StatChange,
    is_member_excluded,
)
from lss_sync.storage.models import (
    AllianceMember,
    AllianceStat,
    Base,
    Incident,
    MemberActivity,
    utcnow,
)


class DatabaseStorage:
    """
    Async storage for the sync service.

    Features:
    - Async SQLAlchemy with asyncpg driver (aiosqlite for tests)
    - Creates missing tables on startup
    - Append-only alliance stat history with 24h change lookup
    - Retention deletes and daily stat downsampling
    """

    def __init__(self, database_url: str | None = None) -> None:
        """
        Initialize database storage.

        Args:
            database_url: Database connection URL. Defaults to settings.
        """
        self.database_url = database_url or settings.database_url
        engine_options: dict[str, Any] = {"echo": False}
        if not self.database_url.startswith("sqlite"):
            engine_options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
        self._engine = create_async_engine(self.database_url, **engine_options)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def initialize(self) -> None:
        """Create missing tables and indexes."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close the database connection."""
        await self._engine.dispose()

    async def __aenter__(self) -> "DatabaseStorage":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def get_session(self) -> AsyncSession:
        """Get a new database session."""
        return self._session_factory()

    # ========== Incident Queries ==========

    async def list_incidents(self) -> list[Incident]:
        """All stored incidents, newest first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Incident).order_by(Incident.created_at.desc(), Incident.id.desc())
            )
            return list(result.scalars().all())

    async def get_incident(self, external_id: str) -> Incident | None:
        """Get an incident by its mission id."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Incident).where(Incident.external_id == external_id)
            )
            return result.scalar_one_or_none()

    # ========== Alliance Stat Operations ==========

    async def insert_alliance_stat(
        self,
        info: AllianceInfo,
        recorded_at: datetime | None = None,
    ) -> AllianceStat:
        """Append a stat point for the alliance."""
        stat = AllianceStat(
            alliance_id=info.id,
            alliance_name=info.name,
            credits_total=info.credits_total,
            rank=info.rank,
            user_count=info.user_count,
            user_online_count=info.user_online_count,
            recorded_at=recorded_at or utcnow(),
        )
        async with self.get_session() as session:
            session.add(stat)
            await session.commit()
        return stat

    async def get_latest_stat(self, alliance_id: int | None = None) -> AllianceStat | None:
        """Most recent stat point, optionally for one alliance."""
        query = select(AllianceStat)
        if alliance_id is not None:
            query = query.where(AllianceStat.alliance_id == alliance_id)
        query = query.order_by(AllianceStat.recorded_at.desc(), AllianceStat.id.desc()).limit(1)

        async with self.get_session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_stat_at_or_before(
        self,
        alliance_id: int,
        before: datetime,
    ) -> AllianceStat | None:
        """Latest stat point recorded at or before ``before``."""
        async with self.get_session() as session:
            result = await session.execute(
                select(AllianceStat)
                .where(
                    AllianceStat.alliance_id == alliance_id,
                    AllianceStat.recorded_at <= before,
                )
                .order_by(AllianceStat.recorded_at.desc(), AllianceStat.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_stat_change(
        self,
        latest: AllianceStat,
        window: timedelta = timedelta(hours=24),
    ) -> StatChange | None:
        """
        Compare a stat point with the newest one at least ``window`` older.

        Rank change is positive when the alliance moved up.
        """
        previous = await self.get_stat_at_or_before(
            latest.alliance_id, latest.recorded_at - window
        )
        if previous is None:
            return None

        rank_change = None
        if previous.rank is not None and latest.rank is not None:
            rank_change = previous.rank - latest.rank

        return StatChange(
            credits_change=latest.credits_total - previous.credits_total,
            rank_change=rank_change,
            since=previous.recorded_at,
        )

    async def get_stat_history(
        self,
        alliance_id: int,
        since: datetime,
    ) -> list[AllianceStat]:
        """Stat points of an alliance since a point in time, oldest first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(AllianceStat)
                .where(
                    AllianceStat.alliance_id == alliance_id,
                    AllianceStat.recorded_at >= since,
                )
                .order_by(AllianceStat.recorded_at.asc())
            )
            return list(result.scalars().all())

    # ========== Member Queries ==========

    async def list_members(
        self,
        excluded: set[str] | None = None,
    ) -> list[AllianceMember]:
        """Members ordered by last time online, excluded members removed."""
        excluded = excluded if excluded is not None else settings.excluded_members
        async with self.get_session() as session:
            result = await session.execute(
                select(AllianceMember).order_by(
                    AllianceMember.last_online_at.desc().nulls_last(),
                    AllianceMember.name.asc(),
                )
            )
            members = result.scalars().all()
        return [
            member for member in members
            if not is_member_excluded(member.member_id, member.name, excluded)
        ]

    async def count_members(self, excluded: set[str] | None = None) -> MemberCounts:
        """Total and online member counts after exclusions."""
        members = await self.list_members(excluded)
        return MemberCounts(
            total=len(members),
            online=sum(1 for member in members if member.is_online),
        )

    async def get_member_activity(
        self,
        member_id: int,
        since: datetime | None = None,
    ) -> list[MemberActivity]:
        """Online transitions of one member, oldest first."""
        query = select(MemberActivity).where(MemberActivity.member_id == member_id)
        if since is not None:
            query = query.where(MemberActivity.recorded_at >= since)
        query = query.order_by(MemberActivity.recorded_at.asc(), MemberActivity.id.asc())

        async with self.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ========== Retention ==========

    async def delete_incidents_last_seen_before(self, cutoff: datetime) -> int:
        """Delete incidents that were not reported since ``cutoff``."""
        async with self.get_session() as session:
            result = await session.execute(
                delete(Incident).where(Incident.last_seen_at < cutoff)
            )
            await session.commit()
            return result.rowcount or 0

    async def delete_activity_before(self, cutoff: datetime) -> int:
        """Delete member activity entries older than ``cutoff``."""
        async with self.get_session() as session:
            result = await session.execute(
                delete(MemberActivity).where(MemberActivity.recorded_at < cutoff)
            )
            await session.commit()
            return result.rowcount or 0

    async def aggregate_stats_before(self, cutoff: datetime) -> int:
        """
        Downsample stat points older than ``cutoff`` to one per alliance and day.

        The latest point of each (alliance, calendar day) survives.

        Returns:
            Number of deleted stat points
        """
        day = func.date(AllianceStat.recorded_at)
        ranked = (
            select(
                AllianceStat.id.label("id"),
                func.row_number()
                .over(
                    partition_by=(AllianceStat.alliance_id, day),
                    order_by=(AllianceStat.recorded_at.desc(), AllianceStat.id.desc()),
                )
                .label("rn"),
            )
            .where(AllianceStat.recorded_at < cutoff)
            .subquery()
        )
        superseded = select(ranked.c.id).where(ranked.c.rn > 1)

        async with self.get_session() as session:
            result = await session.execute(
                delete(AllianceStat).where(AllianceStat.id.in_(superseded))
            )
            await session.commit()
            return result.rowcount or 0

    # ========== Statistics ==========

    async def get_stats(self) -> dict[str, int]:
        """Get row counts per table."""
        stats: dict[str, int] = {}
        async with self.get_session() as session:
            for name, model in (
                ("incidents", Incident),
                ("alliance_stats", AllianceStat),
                ("alliance_members", AllianceMember),
                ("member_activity_log", MemberActivity),
            ):
                result = await session.execute(select(func.count()).select_from(model))
                stats[name] = result.scalar() or 0
        return stats
