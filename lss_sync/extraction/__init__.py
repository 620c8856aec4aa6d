# SPDX-License-Identifier: AGPL-3.0-or-later
"""Extraction module - Mission lists and detail pages."""

from lss_sync.extraction.details import parse_mission_details
from lss_sync.extraction.extractor import MissionExtractor
from lss_sync.extraction.mission_lists import (
    MISSION_LISTS,
    ExtractionStats,
    MissionList,
    Snapshot,
    parse_mission_lists,
)

__all__ = [
    "MISSION_LISTS",
    "ExtractionStats",
    "MissionExtractor",
    "MissionList",
    "Snapshot",
    "parse_mission_details",
    "parse_mission_lists",
]
