# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Mission detail page parsing.

Reads countdown, duration, participating players and exact earnings from
``/missions/<id>``.
"""

import re
from datetime import datetime

from bs4 import BeautifulSoup

from lss_sync.schemas import MissionDetails
from lss_sync.storage.models import utcnow

_DURATION_RE = re.compile(r"Dauer:\s*(?:(\d+)\s*Stunden?)?\s*(?:(\d+)\s*Minuten?)?")
_EARNINGS_RE = re.compile(r"Verdienst:\s*([\d.]+)\s*Credits")


def parse_countdown(text: str | None) -> int | None:
    """Convert ``HH:MM:SS`` or ``MM:SS`` to seconds."""
    if not text:
        return None
    parts = text.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return None
    if len(numbers) == 2:
        minutes, seconds = numbers
        return minutes * 60 + seconds
    hours, minutes, seconds = numbers
    return hours * 3600 + minutes * 60 + seconds


def parse_duration(text: str) -> int | None:
    """Extract ``Dauer: 2 Stunden 30 Minuten`` as seconds."""
    match = _DURATION_RE.search(text)
    if not match or not (match.group(1) or match.group(2)):
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2) or 0)
    return hours * 3600 + minutes * 60


def parse_earnings(text: str) -> int | None:
    """Extract ``Verdienst: 14.500 Credits`` as an integer."""
    match = _EARNINGS_RE.search(text)
    if not match:
        return None
    digits = match.group(1).replace(".", "")
    return int(digits) if digits else None


def _players(soup: BeautifulSoup, table_id: str) -> list[str]:
    table = soup.find(id=table_id)
    if table is None:
        return []
    names: list[str] = []
    for link in table.select('a[href^="/profile/"]'):
        name = link.get_text(strip=True)
        if name and name not in names:
            names.append(name)
    return names


def parse_mission_details(
    html: str,
    mission_id: str,
    read_at: datetime | None = None,
) -> MissionDetails:
    """
    Parse a mission detail page.

    Args:
        html: Detail page HTML
        mission_id: Mission the page belongs to
        read_at: When the countdown was read. Defaults to now.
    """
    soup = BeautifulSoup(html, "html.parser")
    body = soup.body or soup
    page_text = body.get_text(" ")

    details = MissionDetails(
        duration_seconds=parse_duration(page_text),
        players_driving=_players(soup, "mission_vehicle_driving"),
        players_at_mission=_players(soup, "mission_vehicle_at_mission"),
        exact_earnings=parse_earnings(page_text),
    )

    countdown = soup.find(id=f"mission_countdown_{mission_id}")
    if countdown is not None:
        remaining = parse_countdown(countdown.get_text(strip=True))
        if remaining is not None:
            details.remaining_seconds = remaining
            details.remaining_at = read_at or utcnow()

    return details
