# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Alliance API Client

Fetches ``/api/allianceinfo`` with the cookies of the logged-in browser
session. The endpoint returns JSON for authenticated requests and
redirects to the login page otherwise.

Usage:
    async with AllianceClient(cookie_provider=session.cookie_header) as client:
        info = await client.fetch_alliance_info()
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import ValidationError

from lss_sync.browser.session import USER_AGENT
from lss_sync.config import settings
from lss_sync.exceptions import AllianceInfoError, SessionExpiredError
from lss_sync.schemas import AllianceInfo

logger = logging.getLogger(__name__)

ALLIANCE_INFO_PATH = "/api/allianceinfo"


class AllianceClient:
    """
    Async HTTP client for the alliance info endpoint.

    Features:
    - Connection pooling via httpx.AsyncClient
    - Cookies taken from the browser session on every request
    - Login redirects reported as ``SessionExpiredError``
    """

    def __init__(
        self,
        cookie_provider: Callable[[], Awaitable[str]],
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            cookie_provider: Coroutine function returning the ``Cookie`` header
            base_url: Game base URL. Defaults to settings.
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.cookie_provider = cookie_provider
        self.base_url = (base_url or settings.lss_base_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AllianceClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
                "X-Requested-With": "XMLHttpRequest",
            },
            follow_redirects=False,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_alliance_info(self) -> AllianceInfo:
        """
        Fetch the alliance overview including the member list.

        Raises:
            SessionExpiredError: if the game answered with the login page
            AllianceInfoError: if the payload does not look like alliance info
            httpx.HTTPError: on transport errors and other error statuses
        """
        if self._client is None:
            raise RuntimeError("AllianceClient must be used as an async context manager")

        cookie = await self.cookie_provider()
        start = time.time()
        response = await self._client.get(ALLIANCE_INFO_PATH, headers={"Cookie": cookie})
        logger.debug(
            "GET %s -> %d in %.2fs",
            ALLIANCE_INFO_PATH,
            response.status_code,
            time.time() - start,
        )

        if response.is_redirect or response.status_code in (401, 403):
            raise SessionExpiredError(
                f"{ALLIANCE_INFO_PATH} answered {response.status_code}, session expired"
            )

        response.raise_for_status()

        if "json" not in response.headers.get("content-type", ""):
            raise SessionExpiredError(f"{ALLIANCE_INFO_PATH} did not return JSON")

        try:
            return AllianceInfo.model_validate(response.json())
        except (ValidationError, ValueError) as e:
            raise AllianceInfoError(f"Unexpected alliance info payload: {e}") from e
