# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Mission Extraction

Reads the rendered game page through the session's page queue and turns it
into snapshots and detail payloads.

Usage:
    extractor = MissionExtractor(session)
    snapshot = await extractor.extract_snapshot()
    await extractor.extract_details(snapshot.records)
"""

import logging
from collections.abc import Iterable
from typing import Any

from lss_sync.browser.session import SessionManager
from lss_sync.config import settings
from lss_sync.exceptions import DetailFetchError
from lss_sync.extraction.details import parse_mission_details
from lss_sync.extraction.mission_lists import Snapshot, parse_mission_lists
from lss_sync.metrics import metrics
from lss_sync.schemas import DETAIL_CATEGORIES, MissionRecord
from lss_sync.storage.models import utcnow

logger = logging.getLogger(__name__)


class MissionExtractor:
    """Extracts mission snapshots and detail payloads from the game page."""

    def __init__(
        self,
        session: SessionManager,
        detail_timeout_ms: int | None = None,
    ) -> None:
        self.session = session
        self.detail_timeout_ms = detail_timeout_ms or settings.lss_detail_timeout_ms

    async def extract_snapshot(self) -> Snapshot:
        """Parse all mission lists of the currently rendered page."""

        async def read_content(page: Any) -> str:
            return await page.content()

        html = await self.session.queue.run(read_content)
        snapshot = parse_mission_lists(html, utcnow())

        logger.debug("Extracted snapshot: %s", snapshot.stats)
        metrics.record_snapshot(snapshot.counts_by_category_source())
        return snapshot

    async def fetch_detail_html(self, mission_id: str) -> str:
        """
        Load ``/missions/<id>`` and return its HTML.

        Raises:
            DetailFetchError: when the page answered with an error status
        """
        url = f"{self.session.base_url}/missions/{mission_id}"

        async def load(page: Any) -> str:
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.detail_timeout_ms,
            )
            if response is not None:
                status = response.status
                if status != 304 and not 200 <= status < 400:
                    raise DetailFetchError(mission_id, status)
            return await page.content()

        return await self.session.queue.run(load)

    async def extract_details(self, records: Iterable[MissionRecord]) -> int:
        """
        Fetch detail pages one after another and attach them to the records.

        Only emergency and planned missions have useful detail pages. A failing
        page is logged and skipped. The start page is restored afterwards.

        Returns:
            Number of records that received details
        """
        fetched = 0
        visited = False

        for record in records:
            if record.category not in DETAIL_CATEGORIES:
                continue
            visited = True
            try:
                html = await self.fetch_detail_html(record.external_id)
            except Exception as e:
                logger.warning("Skipping details for mission %s: %s", record.external_id, e)
                metrics.record_detail_fetch(success=False)
                if self.session.closed:
                    break
                continue

            record.details = parse_mission_details(html, record.external_id, utcnow())
            metrics.record_detail_fetch(success=True)
            fetched += 1

        if visited and not self.session.closed:
            try:
                await self.session.navigate_home()
            except Exception as e:
                logger.warning("Could not return to start page: %s", e)

        logger.debug("Fetched details for %d missions", fetched)
        return fetched
