"""
Pytest configuration and fixtures.
"""

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from lss_sync.broadcast import Broadcaster
from lss_sync.schemas import (
    ListContext,
    MissionCategory,
    MissionRecord,
    MissionSource,
    MissionStatus,
)
from lss_sync.storage.database import DatabaseStorage

FIXTURES_PATH = Path(__file__).parent / "fixtures"

BASE_URL = "https://www.leitstellenspiel.de"

LOGIN_PAGE = """
<html><body>
<form id="new_user">
  <input id="user_email"><input id="user_password" type="password">
  <input id="user_remember_me" type="checkbox">
  <input type="submit" value="Einloggen">
</form>
</body></html>
"""


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture(scope="session")
def main_page_html() -> str:
    """Rendered game page with every mission list."""
    return (FIXTURES_PATH / "main_page.html").read_text(encoding="utf-8")


@pytest.fixture(scope="session")
def detail_page_html() -> str:
    """Detail page of mission 1001."""
    return (FIXTURES_PATH / "mission_detail.html").read_text(encoding="utf-8")


@pytest.fixture
def now() -> datetime:
    """Fixed observation time."""
    return datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def storage(tmp_path: Path) -> AsyncIterator[DatabaseStorage]:
    """Initialized SQLite storage."""
    db = DatabaseStorage(f"sqlite+aiosqlite:///{tmp_path / 'lss.db'}")
    await db.initialize()
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def broadcaster() -> Broadcaster:
    """Broadcaster without a running heartbeat."""
    return Broadcaster(heartbeat_interval=3600, queue_size=100)


def make_record(
    external_id: str,
    title: str = "Wohnungsbrand",
    status: MissionStatus = MissionStatus.RED,
    source: MissionSource = MissionSource.ALLIANCE,
    category: MissionCategory = MissionCategory.EMERGENCY,
    **kwargs: Any,
) -> MissionRecord:
    """Build a mission record with sensible defaults."""
    return MissionRecord(
        external_id=external_id,
        title=title,
        status=status,
        source=source,
        category=category,
        **kwargs,
    )


def drain(sink: Any) -> list[Any]:
    """Take every queued event out of a QueueSink without waiting."""
    events = []
    while sink.pending:
        events.append(sink._queue.get_nowait())
    return events


# ========== Fake Playwright Page ==========

class FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status


class FakeElement:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.checked = False

    async def text_content(self) -> str:
        return self.text

    async def check(self) -> None:
        self.checked = True


class FakeContext:
    def __init__(self, cookies: list[dict[str, Any]]) -> None:
        self._cookies = cookies

    async def cookies(self, url: str | None = None) -> list[dict[str, Any]]:
        return list(self._cookies)


class FakePage:
    """
    Minimal stand-in for a Playwright page.

    Logged-in pages render ``main_html``; detail URLs render ``detail_html``
    unless listed in ``detail_status``. Without a session every URL shows
    the login form.
    """

    def __init__(
        self,
        main_html: str = "",
        detail_html: str = "",
        authenticated: bool = False,
        login_succeeds: bool = True,
        detail_status: dict[str, int] | None = None,
    ) -> None:
        self.main_html = main_html
        self.detail_html = detail_html
        self.authenticated = authenticated
        self.login_succeeds = login_succeeds
        self.detail_status = detail_status or {}
        self.url = BASE_URL
        self.calls: list[tuple[str, Any]] = []
        self.context = FakeContext([
            {"name": "_session_id", "value": "abc123"},
            {"name": "remember_user_token", "value": "xyz"},
        ])

    @property
    def login_submits(self) -> int:
        return sum(1 for name, _ in self.calls if name == "click")

    def _on_game_page(self) -> bool:
        return self.authenticated and "/missions/" not in self.url and "sign_in" not in self.url

    async def goto(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(("goto", url))
        self.url = url
        for mission_id, status in self.detail_status.items():
            if url.endswith(f"/missions/{mission_id}"):
                return FakeResponse(status)
        return FakeResponse(200)

    async def reload(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(("reload", self.url))
        return FakeResponse(200)

    async def content(self) -> str:
        if not self.authenticated or "sign_in" in self.url:
            return LOGIN_PAGE
        if "/missions/" in self.url:
            return self.detail_html
        return self.main_html

    async def query_selector(self, selector: str) -> FakeElement | None:
        if selector == "#mission_list":
            return FakeElement() if self._on_game_page() else None
        if selector == "#user_remember_me":
            return FakeElement()
        if selector == ".alert-danger" and not self.authenticated:
            return FakeElement(" Ungültige E-Mail oder Passwort. ")
        return None

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> FakeElement:
        return FakeElement()

    async def fill(self, selector: str, value: str) -> None:
        self.calls.append(("fill", (selector, value)))

    async def click(self, selector: str) -> None:
        self.calls.append(("click", selector))
        if self.login_succeeds:
            self.authenticated = True
            self.url = BASE_URL

    async def wait_for_load_state(self, state: str = "load", **kwargs: Any) -> None:
        return None
