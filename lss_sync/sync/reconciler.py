# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Incident and Member Reconciliation

Diffs observed missions and alliance members against the store, writes the
differences and announces them on the broadcaster.

Rules:
- ``updated_at`` only moves when a comparable field changed value
- ``last_seen_at`` moves on every observation
- Deletion runs only after the upserts of the same snapshot committed and
  never for a non-authoritative snapshot
- Detail payloads have their own write path that leaves ``updated_at`` alone
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select

from lss_sync.broadcast import Broadcaster
from lss_sync.config import settings
from lss_sync.events import EventType
from lss_sync.extraction.mission_lists import Snapshot
from lss_sync.metrics import metrics
from lss_sync.schemas import (
    AllianceUser,
    IncidentRead,
    MissionRecord,
    is_member_excluded,
)
from lss_sync.storage.database import DatabaseStorage
from lss_sync.storage.models import AllianceMember, Incident, MemberActivity, utcnow

logger = logging.getLogger(__name__)


def _record_values(record: MissionRecord, only_set: bool = False) -> dict[str, Any]:
    """
    Fields whose change advances ``updated_at``.

    With ``only_set`` the fields the record was built without are left out,
    so the stored values stay in place.
    """
    values = {
        "title": record.title,
        "type": record.type,
        "status": record.status.value,
        "source": record.source.value,
        "category": record.category.value,
        "lat": record.lat,
        "lon": record.lon,
        "address": record.address,
    }
    if only_set:
        return {name: value for name, value in values.items() if name in record.model_fields_set}
    return values


def serialize_incident(incident: Incident) -> dict[str, Any]:
    """Incident as a JSON-ready dict for live events and API responses."""
    return IncidentRead.model_validate(incident).model_dump(mode="json")


@dataclass
class ChangeSet:
    """Result of reconciling a snapshot."""

    created: list[Incident] = field(default_factory=list)
    updated: list[Incident] = field(default_factory=list)
    deleted: list[Incident] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> list[Incident]:
        return self.created + self.updated

    def __str__(self) -> str:
        return (
            f"{len(self.created)} created, {len(self.updated)} updated, "
            f"{len(self.deleted)} deleted, {self.unchanged} unchanged"
        )


@dataclass
class MemberSyncResult:
    """Result of reconciling the alliance member list."""

    created: int = 0
    updated: int = 0
    excluded: int = 0
    activity_logged: int = 0


class Reconciler:
    """Writes observed state into the store and publishes the changes."""

    def __init__(
        self,
        storage: DatabaseStorage,
        broadcaster: Broadcaster | None = None,
        excluded_members: set[str] | None = None,
    ) -> None:
        self.storage = storage
        self.broadcaster = broadcaster
        self.excluded_members = (
            excluded_members if excluded_members is not None else settings.excluded_members
        )

    # ========== Incidents ==========

    async def reconcile(self, snapshot: Snapshot, now: datetime | None = None) -> ChangeSet:
        """
        Upsert every record of the snapshot, then delete what it no longer contains.

        Args:
            snapshot: Complete set of missions observed in one cycle
            now: Observation time. Defaults to now.
        """
        now = now or utcnow()
        changes = await self.upsert_records(snapshot.records, now)
        changes.deleted = await self.delete_missing(snapshot)
        return changes

    async def upsert_records(
        self,
        records: Sequence[MissionRecord],
        now: datetime | None = None,
        publish: bool = True,
        partial: bool = False,
    ) -> ChangeSet:
        """
        Insert new and update changed missions in one transaction.

        Args:
            records: Observed missions
            now: Observation time. Defaults to now.
            publish: Announce created/updated missions on the broadcaster
            partial: Keep the stored value of every field a record omits
        """
        now = now or utcnow()
        changes = ChangeSet()
        if not records:
            return changes

        by_id: dict[str, MissionRecord] = {}
        for record in records:
            by_id.setdefault(record.external_id, record)

        async with self.storage.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Incident).where(Incident.external_id.in_(list(by_id)))
                )
                existing = {incident.external_id: incident for incident in result.scalars()}

                for external_id, record in by_id.items():
                    context = record.context.model_dump(mode="json") if record.context else None
                    incident = existing.get(external_id)

                    if incident is None:
                        values = _record_values(record)
                        incident = Incident(
                            external_id=external_id,
                            context=context,
                            details=(
                                record.details.model_dump(mode="json") if record.details else None
                            ),
                            created_at=now,
                            updated_at=now,
                            last_seen_at=now,
                            **values,
                        )
                        session.add(incident)
                        changes.created.append(incident)
                        continue

                    values = _record_values(record, only_set=partial)
                    if any(getattr(incident, name) != value for name, value in values.items()):
                        for name, value in values.items():
                            setattr(incident, name, value)
                        incident.updated_at = now
                        changes.updated.append(incident)
                    else:
                        changes.unchanged += 1

                    incident.last_seen_at = now
                    if context is not None:
                        incident.context = context

        metrics.record_incident_changes(
            created=len(changes.created),
            updated=len(changes.updated),
            unchanged=changes.unchanged,
        )
        if changes.created:
            logger.info("New missions: %d", len(changes.created))
        logger.debug("Upserted %d missions: %s", len(by_id), changes)

        if publish:
            self._publish_upserts(changes)
        return changes

    async def delete_missing(self, snapshot: Snapshot, publish: bool = True) -> list[Incident]:
        """
        Delete every stored mission that is not part of the snapshot.

        A snapshot without the mission list container deletes nothing. An
        authoritative snapshot with no records deletes everything.

        Returns:
            The deleted incidents
        """
        if not snapshot.authoritative:
            logger.warning("Snapshot is not authoritative, skipping deletion")
            return []

        keep = snapshot.external_ids
        async with self.storage.get_session() as session:
            async with session.begin():
                result = await session.execute(select(Incident.id, Incident.external_id))
                stale_ids = [row.id for row in result if row.external_id not in keep]
                stale: list[Incident] = []
                if stale_ids:
                    result = await session.execute(
                        select(Incident).where(Incident.id.in_(stale_ids))
                    )
                    stale = list(result.scalars())
                    await session.execute(
                        delete(Incident)
                        .where(Incident.id.in_(stale_ids))
                        .execution_options(synchronize_session=False)
                    )

        if stale:
            logger.info("Removed missions: %d", len(stale))
            metrics.record_incident_changes(deleted=len(stale))
            if publish:
                self._publish_deleted(stale)
        return stale

    async def apply_details(self, records: Iterable[MissionRecord]) -> int:
        """
        Store detail payloads without touching ``updated_at``.

        Returns:
            Number of incidents whose details were written
        """
        details = {
            record.external_id: record.details.model_dump(mode="json")
            for record in records
            if record.details is not None
        }
        if not details:
            return 0

        written = 0
        async with self.storage.get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(Incident).where(Incident.external_id.in_(list(details)))
                )
                for incident in result.scalars():
                    incident.details = details[incident.external_id]
                    written += 1
        return written

    def _publish_upserts(self, changes: ChangeSet) -> None:
        if self.broadcaster is None:
            return

        if len(changes.changed) == 1:
            action = "created" if changes.created else "updated"
            self.broadcaster.publish(
                EventType.INCIDENT,
                {"type": action, "incident": serialize_incident(changes.changed[0])},
            )
        elif len(changes.changed) > 1:
            self.broadcaster.publish(
                EventType.BATCH,
                {
                    "type": "batch_upsert",
                    "incidents": [serialize_incident(incident) for incident in changes.changed],
                    "count": len(changes.changed),
                },
            )

    def _publish_deleted(self, deleted: list[Incident]) -> None:
        if self.broadcaster is None:
            return

        self.broadcaster.publish(
            EventType.DELETED,
            {
                "type": "deleted",
                "incidents": [serialize_incident(incident) for incident in deleted],
                "deleted_ids": [incident.external_id for incident in deleted],
                "count": len(deleted),
            },
        )

    # ========== Members ==========

    async def reconcile_members(
        self,
        alliance_id: int,
        users: Iterable[AllianceUser],
        now: datetime | None = None,
    ) -> MemberSyncResult:
        """
        Upsert alliance members and log online transitions.

        The member rows and their activity entries commit together. An entry
        is written for a member's first observation and whenever its online
        flag flips.
        """
        now = now or utcnow()
        result = MemberSyncResult()

        members: dict[int, AllianceUser] = {}
        for user in users:
            if is_member_excluded(user.id, user.name, self.excluded_members):
                result.excluded += 1
                continue
            members[user.id] = user

        if not members:
            return result

        async with self.storage.get_session() as session:
            async with session.begin():
                rows = await session.execute(
                    select(AllianceMember).where(AllianceMember.member_id.in_(list(members)))
                )
                existing = {member.member_id: member for member in rows.scalars()}

                for member_id, user in members.items():
                    member = existing.get(member_id)
                    if member is None:
                        session.add(AllianceMember(
                            member_id=member_id,
                            alliance_id=alliance_id,
                            name=user.name,
                            roles=list(user.roles),
                            caption=user.caption,
                            is_online=user.online,
                            role_flags=dict(user.role_flags),
                            first_seen_at=now,
                            last_seen_at=now,
                            last_online_at=now if user.online else None,
                        ))
                        session.add(MemberActivity(
                            member_id=member_id, is_online=user.online, recorded_at=now,
                        ))
                        result.created += 1
                        result.activity_logged += 1
                        continue

                    if member.is_online != user.online:
                        session.add(MemberActivity(
                            member_id=member_id, is_online=user.online, recorded_at=now,
                        ))
                        result.activity_logged += 1

                    member.alliance_id = alliance_id
                    member.name = user.name
                    member.roles = list(user.roles)
                    member.caption = user.caption
                    member.is_online = user.online
                    member.role_flags = dict(user.role_flags)
                    member.last_seen_at = now
                    if user.online:
                        member.last_online_at = now
                    result.updated += 1

        logger.debug(
            "Members synced: %d new, %d updated, %d excluded, %d transitions",
            result.created,
            result.updated,
            result.excluded,
            result.activity_logged,
        )
        return result
