"""
Tests for the alliance API client and the stat/member sync.
"""

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import BASE_URL, drain
from lss_sync.broadcast import Broadcaster
from lss_sync.client.alliance_client import ALLIANCE_INFO_PATH, AllianceClient
from lss_sync.exceptions import AllianceInfoError, SessionExpiredError
from lss_sync.schemas import AllianceInfo, AllianceUser
from lss_sync.storage.database import DatabaseStorage
from lss_sync.sync.alliance import AllianceSync
from lss_sync.sync.reconciler import Reconciler

ALLIANCE_PAYLOAD: dict[str, Any] = {
    "id": 4242,
    "name": "Feuerwehr Verbund",
    "credits_total": 123456789,
    "rank": 17,
    "finance_active": True,
    "user_count": 3,
    "user_online_count": 2,
    "users": [
        {"id": 1, "name": "Alice", "roles": ["Admin"], "online": True, "caption": "Leitung"},
        {"id": 2, "name": "Bob", "roles": [], "online": True},
        {"id": 3, "name": "StatsBot", "roles": [], "online": False},
    ],
}


async def cookie_provider() -> str:
    return "_session_id=abc123"


def make_client(handler: Any) -> AllianceClient:
    return AllianceClient(
        cookie_provider=cookie_provider,
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )


class TestAllianceClient:
    """Tests for AllianceClient."""

    @pytest.mark.asyncio
    async def test_fetch_alliance_info(self) -> None:
        """Test a JSON answer is parsed and the session cookie is sent."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=ALLIANCE_PAYLOAD)

        async with make_client(handler) as client:
            info = await client.fetch_alliance_info()

        assert info.id == 4242
        assert info.rank == 17
        assert [user.name for user in info.users] == ["Alice", "Bob", "StatsBot"]
        assert seen[0].url.path == ALLIANCE_INFO_PATH
        assert seen[0].headers["Cookie"] == "_session_id=abc123"

    @pytest.mark.asyncio
    async def test_redirect_means_session_expired(self) -> None:
        """Test a redirect to the login page raises SessionExpiredError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"Location": f"{BASE_URL}/users/sign_in"})

        async with make_client(handler) as client:
            with pytest.raises(SessionExpiredError):
                await client.fetch_alliance_info()

    @pytest.mark.asyncio
    async def test_html_answer_means_session_expired(self) -> None:
        """Test an HTML login page instead of JSON raises SessionExpiredError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, html="<form id='new_user'></form>")

        async with make_client(handler) as client:
            with pytest.raises(SessionExpiredError):
                await client.fetch_alliance_info()

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        """Test other error statuses surface as HTTP errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "maintenance"})

        async with make_client(handler) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.fetch_alliance_info()

    @pytest.mark.asyncio
    async def test_invalid_payload(self) -> None:
        """Test JSON without alliance fields raises AllianceInfoError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "nope"})

        async with make_client(handler) as client:
            with pytest.raises(AllianceInfoError):
                await client.fetch_alliance_info()

    @pytest.mark.asyncio
    async def test_requires_context_manager(self) -> None:
        """Test the client refuses requests outside its context."""
        client = make_client(lambda request: httpx.Response(200))

        with pytest.raises(RuntimeError):
            await client.fetch_alliance_info()


def alliance_info(
    credits_total: int,
    rank: int | None,
    users: list[AllianceUser] | None = None,
) -> AllianceInfo:
    return AllianceInfo(
        id=4242,
        name="Feuerwehr Verbund",
        credits_total=credits_total,
        rank=rank,
        user_count=len(users or []),
        user_online_count=sum(1 for user in users or [] if user.online),
        users=users or [],
    )


class TestAllianceSync:
    """Tests for AllianceSync."""

    @pytest.mark.asyncio
    async def test_first_stat_has_no_change(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test the first stat point is published without a 24h change."""
        client = MagicMock()
        client.fetch_alliance_info = AsyncMock(return_value=alliance_info(1000, 20))
        sync = AllianceSync(storage, Reconciler(storage, broadcaster), client, broadcaster)
        sink = broadcaster.subscribe()
        drain(sink)

        result = await sync.sync_stats(now)

        assert result.change is None
        [event] = drain(sink)
        assert event.event == "alliance_stats"
        assert event.data["stats"]["credits_total"] == 1000
        assert event.data["change_24h"] is None

    @pytest.mark.asyncio
    async def test_change_against_day_old_point(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test the change compares with the newest point at least a day old."""
        await storage.insert_alliance_stat(alliance_info(1000, 20), now - timedelta(hours=30))
        await storage.insert_alliance_stat(alliance_info(1500, 19), now - timedelta(hours=25))
        await storage.insert_alliance_stat(alliance_info(1900, 18), now - timedelta(hours=2))

        client = MagicMock()
        client.fetch_alliance_info = AsyncMock(return_value=alliance_info(2500, 15))
        sync = AllianceSync(storage, Reconciler(storage, broadcaster), client, broadcaster)
        sink = broadcaster.subscribe()
        drain(sink)

        result = await sync.sync_stats(now)

        assert result.change is not None
        assert result.change.credits_change == 1000
        assert result.change.rank_change == 4
        assert result.change.since == now - timedelta(hours=25)
        [event] = drain(sink)
        assert event.data["change_24h"]["credits_change"] == 1000

    @pytest.mark.asyncio
    async def test_sync_members_publishes_visible_members(
        self, storage: DatabaseStorage, broadcaster: Broadcaster, now: datetime
    ) -> None:
        """Test the members event lists members after exclusions with counts."""
        users = [AllianceUser.model_validate(user) for user in ALLIANCE_PAYLOAD["users"]]
        client = MagicMock()
        client.fetch_alliance_info = AsyncMock(return_value=alliance_info(1, 1, users))
        reconciler = Reconciler(storage, broadcaster, excluded_members={"statsbot"})
        sync = AllianceSync(storage, reconciler, client, broadcaster)
        sink = broadcaster.subscribe()
        drain(sink)

        result = await sync.sync_members(now)

        assert result.created == 2
        assert result.excluded == 1
        [event] = drain(sink)
        assert event.event == "members"
        assert event.data["counts"] == {"total": 2, "online": 2}
        assert {member["name"] for member in event.data["members"]} == {"Alice", "Bob"}
