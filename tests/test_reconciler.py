"""
Tests for incident reconciliation.
"""

import random
from datetime import datetime, timedelta

import pytest

from conftest import drain, make_record
from lss_sync.broadcast import Broadcaster
from lss_sync.extraction.mission_lists import Snapshot
from lss_sync.schemas import ListContext, MissionDetails, MissionStatus
from lss_sync.storage.database import DatabaseStorage
from lss_sync.sync.reconciler import Reconciler


def snapshot_of(*external_ids: str, authoritative: bool = True) -> Snapshot:
    return Snapshot(
        records=[make_record(external_id) for external_id in external_ids],
        authoritative=authoritative,
    )


async def stored_ids(storage: DatabaseStorage) -> set[str]:
    return {incident.external_id for incident in await storage.list_incidents()}


class TestUpsert:
    """Tests for creating and updating incidents."""

    @pytest.mark.asyncio
    async def test_creates_new_incidents(self, storage: DatabaseStorage, now: datetime) -> None:
        """Test unknown missions are inserted with all timestamps set."""
        reconciler = Reconciler(storage)

        changes = await reconciler.upsert_records([make_record("1"), make_record("2")], now)

        assert len(changes.created) == 2
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.created_at == now
        assert incident.updated_at == now
        assert incident.last_seen_at == now
        assert incident.status == "red"

    @pytest.mark.asyncio
    async def test_unchanged_record_only_touches_last_seen(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test re-observing a mission moves last_seen_at but not updated_at."""
        reconciler = Reconciler(storage)
        later = now + timedelta(seconds=10)

        await reconciler.upsert_records([make_record("1")], now)
        changes = await reconciler.upsert_records([make_record("1")], later)

        assert changes.created == []
        assert changes.updated == []
        assert changes.unchanged == 1
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.updated_at == now
        assert incident.last_seen_at == later

    @pytest.mark.asyncio
    async def test_status_change_updates(self, storage: DatabaseStorage, now: datetime) -> None:
        """Test a mission turning green is one update with a new updated_at."""
        reconciler = Reconciler(storage)
        later = now + timedelta(seconds=10)

        await reconciler.upsert_records([make_record("1", status=MissionStatus.RED)], now)
        changes = await reconciler.upsert_records(
            [make_record("1", status=MissionStatus.GREEN)], later
        )

        assert [incident.external_id for incident in changes.updated] == ["1"]
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.status == "green"
        assert incident.created_at == now
        assert incident.updated_at == later

    @pytest.mark.asyncio
    async def test_context_change_is_not_an_update(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test list context is refreshed without counting as a change."""
        reconciler = Reconciler(storage)
        await reconciler.upsert_records(
            [make_record("1", context=ListContext(progress_percent=10))], now
        )
        changes = await reconciler.upsert_records(
            [make_record("1", context=ListContext(progress_percent=80))],
            now + timedelta(seconds=10),
        )

        assert changes.unchanged == 1
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.context is not None
        assert incident.context["progress_percent"] == 80
        assert incident.updated_at == now

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_batch(self, storage: DatabaseStorage, now: datetime) -> None:
        """Test the first record wins when a batch repeats a mission id."""
        reconciler = Reconciler(storage)

        changes = await reconciler.upsert_records(
            [make_record("1", title="Erster"), make_record("1", title="Zweiter")], now
        )

        assert len(changes.created) == 1
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.title == "Erster"


class TestDeleteMissing:
    """Tests for snapshot-driven deletion."""

    @pytest.mark.asyncio
    async def test_store_equals_snapshot_after_cycle(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test the store holds exactly the snapshot's missions after every cycle."""
        reconciler = Reconciler(storage)
        universe = [str(i) for i in range(1, 16)]
        rng = random.Random(1234)

        for cycle in range(8):
            visible = rng.sample(universe, rng.randint(0, len(universe)))
            await reconciler.reconcile(snapshot_of(*visible), now + timedelta(seconds=cycle))

            assert await stored_ids(storage) == set(visible)

    @pytest.mark.asyncio
    async def test_identical_snapshot_is_idempotent(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test reconciling the same snapshot twice changes nothing the second time."""
        reconciler = Reconciler(storage)
        snapshot = snapshot_of("1", "2", "3")

        await reconciler.reconcile(snapshot, now)
        before = {i.external_id: i.updated_at for i in await storage.list_incidents()}
        changes = await reconciler.reconcile(snapshot, now + timedelta(seconds=10))
        after = {i.external_id: i.updated_at for i in await storage.list_incidents()}

        assert changes.created == []
        assert changes.updated == []
        assert changes.deleted == []
        assert changes.unchanged == 3
        assert before == after

    @pytest.mark.asyncio
    async def test_mission_disappears(self, storage: DatabaseStorage, now: datetime) -> None:
        """Test a mission missing from the next snapshot is deleted."""
        reconciler = Reconciler(storage)

        await reconciler.reconcile(snapshot_of("1", "2", "3"), now)
        changes = await reconciler.reconcile(snapshot_of("1", "3"), now + timedelta(seconds=10))

        assert [incident.external_id for incident in changes.deleted] == ["2"]
        assert await stored_ids(storage) == {"1", "3"}

    @pytest.mark.asyncio
    async def test_empty_authoritative_snapshot_deletes_all(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test an empty mission list clears the store."""
        reconciler = Reconciler(storage)

        await reconciler.reconcile(snapshot_of("1", "2"), now)
        changes = await reconciler.reconcile(snapshot_of(), now + timedelta(seconds=10))

        assert len(changes.deleted) == 2
        assert await stored_ids(storage) == set()

    @pytest.mark.asyncio
    async def test_non_authoritative_snapshot_deletes_nothing(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test a page without the mission lists never removes missions."""
        reconciler = Reconciler(storage)

        await reconciler.reconcile(snapshot_of("1", "2"), now)
        deleted = await reconciler.delete_missing(snapshot_of(authoritative=False))

        assert deleted == []
        assert await stored_ids(storage) == {"1", "2"}

    @pytest.mark.asyncio
    async def test_deleted_rows_fully_loaded(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test only the stale missions are returned, with all their columns."""
        reconciler = Reconciler(storage)
        await reconciler.upsert_records(
            [make_record("1"), make_record("2", title="Verkehrsunfall", address="Marienplatz")],
            now,
        )

        deleted = await reconciler.delete_missing(snapshot_of("1"))

        [incident] = deleted
        assert incident.external_id == "2"
        assert incident.title == "Verkehrsunfall"
        assert incident.address == "Marienplatz"
        assert incident.created_at == now
        assert await stored_ids(storage) == {"1"}

    @pytest.mark.asyncio
    async def test_upsert_alone_never_deletes(self, storage: DatabaseStorage, now: datetime) -> None:
        """Test an interrupted cycle (upsert without delete) only adds missions."""
        reconciler = Reconciler(storage)

        await reconciler.reconcile(snapshot_of("1", "2"), now)
        await reconciler.upsert_records([make_record("3")], now + timedelta(seconds=10))

        assert await stored_ids(storage) == {"1", "2", "3"}


class TestApplyDetails:
    """Tests for the detail write path."""

    @pytest.mark.asyncio
    async def test_details_do_not_advance_updated_at(
        self, storage: DatabaseStorage, now: datetime
    ) -> None:
        """Test writing details leaves updated_at and the comparable fields alone."""
        reconciler = Reconciler(storage)
        record = make_record("1")
        await reconciler.upsert_records([record], now)

        record.details = MissionDetails(
            remaining_seconds=120,
            remaining_at=now,
            players_driving=["Alice"],
            exact_earnings=900,
        )
        written = await reconciler.apply_details([record, make_record("unknown")])

        assert written == 1
        incident = await storage.get_incident("1")
        assert incident is not None
        assert incident.updated_at == now
        assert incident.details is not None
        assert incident.details["players_driving"] == ["Alice"]
        assert incident.details["exact_earnings"] == 900

    @pytest.mark.asyncio
    async def test_nothing_to_write(self, storage: DatabaseStorage) -> None:
        """Test records without details are ignored."""
        reconciler = Reconciler(storage)

        assert await reconciler.apply_details([make_record("1")]) == 0


class TestPublishing:
    """Tests for the live events produced by reconciliation."""

    @pytest.mark.asyncio
    async def test_single_change_is_incident_event(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test one created mission produces one incident event."""
        reconciler = Reconciler(storage, broadcaster)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.upsert_records([make_record("1")], now)

        events = drain(sink)
        assert [event.event for event in events] == ["incident"]
        assert events[0].data["type"] == "created"
        assert events[0].data["incident"]["external_id"] == "1"
        assert "timestamp" in events[0].data

    @pytest.mark.asyncio
    async def test_single_update_event(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test a red to green transition is announced as an update."""
        reconciler = Reconciler(storage, broadcaster)
        await reconciler.upsert_records([make_record("1")], now)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.upsert_records(
            [make_record("1", status=MissionStatus.GREEN)], now + timedelta(seconds=10)
        )

        events = drain(sink)
        assert [event.event for event in events] == ["incident"]
        assert events[0].data["type"] == "updated"
        assert events[0].data["incident"]["status"] == "green"

    @pytest.mark.asyncio
    async def test_several_changes_are_one_batch(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test several changed missions are sent as one batch event."""
        reconciler = Reconciler(storage, broadcaster)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.upsert_records([make_record("1"), make_record("2"), make_record("3")], now)

        events = drain(sink)
        assert [event.event for event in events] == ["batch"]
        assert events[0].data["type"] == "batch_upsert"
        assert events[0].data["count"] == 3

    @pytest.mark.asyncio
    async def test_unchanged_cycle_is_silent(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test nothing is published when nothing changed."""
        reconciler = Reconciler(storage, broadcaster)
        await reconciler.reconcile(snapshot_of("1", "2"), now)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.reconcile(snapshot_of("1", "2"), now + timedelta(seconds=10))

        assert drain(sink) == []

    @pytest.mark.asyncio
    async def test_deleted_event(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test deletions are announced with their mission ids."""
        reconciler = Reconciler(storage, broadcaster)
        await reconciler.reconcile(snapshot_of("1", "2", "3"), now)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.reconcile(snapshot_of("1"), now + timedelta(seconds=10))

        events = drain(sink)
        assert [event.event for event in events] == ["deleted"]
        assert sorted(events[0].data["deleted_ids"]) == ["2", "3"]
        assert events[0].data["count"] == 2

    @pytest.mark.asyncio
    async def test_upsert_published_before_delete(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test a cycle with both kinds of change emits upserts first."""
        reconciler = Reconciler(storage, broadcaster)
        await reconciler.reconcile(snapshot_of("1"), now)
        sink = broadcaster.subscribe()
        drain(sink)

        await reconciler.reconcile(snapshot_of("2"), now + timedelta(seconds=10))

        assert [event.event for event in drain(sink)] == ["incident", "deleted"]
