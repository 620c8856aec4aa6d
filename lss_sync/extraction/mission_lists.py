# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Mission list parsing.

Turns the rendered main page of the game into mission records. Each
sidebar list maps to a fixed (source, category) pair; own lists only
count missions that were shared with the alliance.
"""

import copy
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from bs4 import BeautifulSoup, Tag

from lss_sync.schemas import (
    ListContext,
    MissionCategory,
    MissionRecord,
    MissionSource,
    MissionStatus,
)
from lss_sync.storage.models import utcnow

DEFAULT_TITLE = "Unbekannter Einsatz"

# Present whenever the logged-in game page is rendered, even with no missions
AUTHORITATIVE_CONTAINER = "mission_list"

_WIDTH_RE = re.compile(r"width:\s*(\d+)%")


@dataclass(frozen=True)
class MissionList:
    """A sidebar list of the game page."""

    list_id: str
    source: MissionSource
    category: MissionCategory
    requires_shared: bool


MISSION_LISTS: tuple[MissionList, ...] = (
    MissionList("mission_list", MissionSource.OWN, MissionCategory.EMERGENCY, True),
    MissionList("mission_list_krankentransporte", MissionSource.OWN, MissionCategory.EMERGENCY, True),
    MissionList("mission_list_alliance", MissionSource.ALLIANCE, MissionCategory.EMERGENCY, False),
    MissionList(
        "mission_list_krankentransporte_alliance",
        MissionSource.ALLIANCE,
        MissionCategory.EMERGENCY,
        False,
    ),
    MissionList("mission_list_sicherheitswache", MissionSource.OWN, MissionCategory.PLANNED, True),
    MissionList(
        "mission_list_sicherheitswache_alliance",
        MissionSource.ALLIANCE,
        MissionCategory.PLANNED,
        False,
    ),
    MissionList(
        "mission_list_alliance_event",
        MissionSource.ALLIANCE_EVENT,
        MissionCategory.EVENT,
        False,
    ),
)


@dataclass
class ExtractionStats:
    """Mission counts of one snapshot."""

    emergency_own: int = 0
    emergency_alliance: int = 0
    planned_own: int = 0
    planned_alliance: int = 0
    events: int = 0
    total: int = 0
    skipped: int = 0

    def count(self, record: MissionRecord) -> None:
        own = record.source in (MissionSource.OWN, MissionSource.OWN_SHARED)
        if record.category == MissionCategory.EMERGENCY:
            if own:
                self.emergency_own += 1
            else:
                self.emergency_alliance += 1
        elif record.category == MissionCategory.PLANNED:
            if own:
                self.planned_own += 1
            else:
                self.planned_alliance += 1
        else:
            self.events += 1
        self.total += 1

    def __str__(self) -> str:
        return (
            f"emergency {self.emergency_own} own / {self.emergency_alliance} alliance, "
            f"planned {self.planned_own} own / {self.planned_alliance} alliance, "
            f"events {self.events}, total {self.total}, skipped {self.skipped}"
        )


@dataclass
class Snapshot:
    """
    Complete set of missions visible at one instant.

    ``authoritative`` is False when the page did not contain the mission
    lists at all; such a snapshot must never be used to delete missions.
    """

    records: list[MissionRecord] = field(default_factory=list)
    stats: ExtractionStats = field(default_factory=ExtractionStats)
    authoritative: bool = True
    extracted_at: datetime = field(default_factory=utcnow)

    @property
    def external_ids(self) -> set[str]:
        return {record.external_id for record in self.records}

    def counts_by_category_source(self) -> dict[tuple[str, str], int]:
        return dict(Counter(
            (record.category.value, record.source.value) for record in self.records
        ))


def _text(tag: Tag | None) -> str | None:
    if tag is None:
        return None
    text = tag.get_text(" ", strip=True)
    return text or None


def _coordinate(value: str | list[str] | None) -> float | None:
    if not value or isinstance(value, list):
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    # The game renders 0 for missions without a position
    return number or None


def _int_attr(value: str | list[str] | None) -> int | None:
    if not value or isinstance(value, list):
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _status_from_classes(classes: str) -> tuple[MissionStatus, str]:
    for color in ("green", "yellow", "red"):
        if f"mission_panel_{color}" in classes:
            return MissionStatus(color), color
    return MissionStatus.ACTIVE, "unknown"


def _title(soup: BeautifulSoup, mission_id: str) -> str:
    caption = soup.find(id=f"mission_caption_{mission_id}")
    if caption is None:
        return DEFAULT_TITLE

    caption = copy.copy(caption)
    for fragment_id in (f"mission_address_{mission_id}", f"mission_old_caption_{mission_id}"):
        fragment = caption.find(id=fragment_id)
        if fragment is not None:
            fragment.decompose()

    title = caption.get_text(" ", strip=True)
    title = re.sub(r"\s+", " ", title).strip().rstrip(",").strip()
    return title[:500] or DEFAULT_TITLE


def _parse_entry(
    soup: BeautifulSoup,
    entry: Tag,
    mission_list: MissionList,
    extracted_at: datetime,
) -> MissionRecord | None:
    mission_id = entry.get("mission_id")
    if not mission_id or isinstance(mission_id, list):
        return None

    panel = soup.find(id=f"mission_panel_{mission_id}")
    panel_classes = " ".join(panel.get("class", [])) if panel is not None else ""
    is_shared = "panel-success" in panel_classes.split()

    if mission_list.requires_shared and not is_shared:
        return None

    status, panel_color = _status_from_classes(panel_classes)

    source = mission_list.source
    if source == MissionSource.OWN and is_shared:
        source = MissionSource.OWN_SHARED

    patients = soup.find(id=f"mission_patients_{mission_id}")
    patient_count = len(patients.select('[id^="patient_"]')) if patients is not None else 0

    countdown = soup.find(id=f"mission_overview_countdown_{mission_id}")
    timeleft = _int_attr(countdown.get("timeleft")) if countdown is not None else None

    progress_percent = None
    bar = soup.find(id=f"mission_bar_{mission_id}")
    if bar is not None:
        match = _WIDTH_RE.search(str(bar.get("style", "")))
        if match:
            progress_percent = int(match.group(1))

    mission_type_id = entry.get("mission_type_id")
    mission_type = mission_type_id if isinstance(mission_type_id, str) and mission_type_id else None

    return MissionRecord(
        external_id=mission_id,
        title=_title(soup, mission_id),
        type=mission_type,
        status=status,
        source=source,
        category=mission_list.category,
        lat=_coordinate(entry.get("latitude")),
        lon=_coordinate(entry.get("longitude")),
        address=_text(soup.find(id=f"mission_address_{mission_id}")),
        context=ListContext(
            mission_type_id=mission_type,
            panel_color=panel_color,
            is_shared=is_shared,
            list_id=mission_list.list_id,
            missing_text=_text(soup.find(id=f"mission_missing_{mission_id}")),
            patient_count=patient_count,
            timeleft=timeleft,
            progress_percent=progress_percent,
            extracted_at=extracted_at,
        ),
    )


def parse_mission_lists(html: str, extracted_at: datetime | None = None) -> Snapshot:
    """
    Parse all mission lists of the rendered game page.

    Args:
        html: Page HTML (``page.content()``)
        extracted_at: Timestamp stored in each record's list context

    Returns:
        Snapshot with one record per mission id (first list wins)
    """
    extracted_at = extracted_at or utcnow()
    soup = BeautifulSoup(html, "html.parser")
    snapshot = Snapshot(
        authoritative=soup.find(id=AUTHORITATIVE_CONTAINER) is not None,
        extracted_at=extracted_at,
    )

    seen: set[str] = set()
    for mission_list in MISSION_LISTS:
        container = soup.find(id=mission_list.list_id)
        if container is None:
            continue

        for entry in container.select(".missionSideBarEntry"):
            record = _parse_entry(soup, entry, mission_list, extracted_at)
            if record is None:
                snapshot.stats.skipped += 1
                continue
            if record.external_id in seen:
                continue
            seen.add(record.external_id)
            snapshot.records.append(record)
            snapshot.stats.count(record)

    return snapshot
