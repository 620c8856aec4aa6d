# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Mission and Alliance Schemas

Pydantic models shared by the extractor, the reconciler, the ingest
endpoint and the live event payloads.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MissionSource(str, Enum):
    """Whose mission list a mission was found in."""

    OWN = "own"
    OWN_SHARED = "own_shared"
    ALLIANCE = "alliance"
    ALLIANCE_EVENT = "alliance_event"
    UNKNOWN = "unknown"


class MissionCategory(str, Enum):
    """Mission categories."""

    EMERGENCY = "emergency"
    PLANNED = "planned"
    EVENT = "event"


class MissionStatus(str, Enum):
    """Mission state derived from the panel colour."""

    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"
    ACTIVE = "active"


# Categories whose detail pages are visited after each list extraction
DETAIL_CATEGORIES = frozenset({MissionCategory.EMERGENCY, MissionCategory.PLANNED})


class ListContext(BaseModel):
    """Values read from the mission sidebar entry besides the comparable fields."""

    mission_type_id: str | None = None
    panel_color: str | None = None
    is_shared: bool = False
    list_id: str | None = None
    missing_text: str | None = None
    patient_count: int = 0
    timeleft: int | None = None
    progress_percent: int | None = None
    extracted_at: datetime | None = None


class MissionDetails(BaseModel):
    """Values read from a mission's detail page."""

    remaining_seconds: int | None = None
    remaining_at: datetime | None = None
    duration_seconds: int | None = None
    players_driving: list[str] = Field(default_factory=list)
    players_at_mission: list[str] = Field(default_factory=list)
    exact_earnings: int | None = None


class MissionRecord(BaseModel):
    """
    One mission as observed by the extractor or posted to the ingest endpoint.

    Accepts ``ls_id`` as an alias for ``external_id``.
    """

    external_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("external_id", "ls_id"),
    )
    title: str = Field(min_length=1, max_length=500)
    type: str | None = Field(default=None, max_length=100)
    status: MissionStatus = MissionStatus.ACTIVE
    source: MissionSource = MissionSource.UNKNOWN
    category: MissionCategory = MissionCategory.EMERGENCY
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = None
    context: ListContext | None = None
    details: MissionDetails | None = None


class IncidentRead(BaseModel):
    """Persisted incident as sent to live subscribers and API clients."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    title: str
    type: str | None = None
    status: MissionStatus
    source: MissionSource
    category: MissionCategory
    lat: float | None = None
    lon: float | None = None
    address: str | None = None
    context: ListContext | None = None
    details: MissionDetails | None = None
    created_at: datetime
    updated_at: datetime
    last_seen_at: datetime


class AllianceUser(BaseModel):
    """A member entry of the alliance info endpoint."""

    id: int
    name: str
    roles: list[str] = Field(default_factory=list)
    caption: str | None = None
    online: bool = False
    role_flags: dict[str, Any] = Field(default_factory=dict)


class AllianceInfo(BaseModel):
    """Response of ``/api/allianceinfo``."""

    id: int
    name: str
    credits_total: int = 0
    credits_current: int | None = None
    rank: int | None = None
    finance_active: bool | None = None
    user_count: int = 0
    user_online_count: int = 0
    users: list[AllianceUser] = Field(default_factory=list)


class AllianceStatRead(BaseModel):
    """A stored alliance stat point."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    alliance_id: int
    alliance_name: str
    credits_total: int
    rank: int | None = None
    user_count: int
    user_online_count: int
    recorded_at: datetime


class StatChange(BaseModel):
    """Change of the latest stat point against the one from a day earlier."""

    credits_change: int
    rank_change: int | None = None
    since: datetime


class MemberRead(BaseModel):
    """A stored alliance member."""

    model_config = ConfigDict(from_attributes=True)

    member_id: int
    alliance_id: int
    name: str
    roles: list[str] = Field(default_factory=list)
    caption: str | None = None
    is_online: bool
    role_flags: dict[str, Any] = Field(default_factory=dict)
    first_seen_at: datetime
    last_seen_at: datetime
    last_online_at: datetime | None = None


class MemberCounts(BaseModel):
    """Member totals after exclusions."""

    total: int
    online: int


def is_member_excluded(member_id: int, name: str, excluded: set[str]) -> bool:
    """Match a member against an exclusion set by exact id or case-insensitive name."""
    if not excluded:
        return False
    return str(member_id) in excluded or name.lower() in excluded
