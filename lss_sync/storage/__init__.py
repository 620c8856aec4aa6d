# SPDX-License-Identifier: AGPL-3.0-or-later
"""Storage module - Data persistence."""

from lss_sync.storage.database import DatabaseStorage
from lss_sync.storage.models import (
    AllianceMember,
    AllianceStat,
    Base,
    Incident,
    MemberActivity,
    utcnow,
)

__all__ = [
    "AllianceMember",
    "AllianceStat",
    "Base",
    "DatabaseStorage",
    "Incident",
    "MemberActivity",
    "utcnow",
]
