# SPDX-License-Identifier: AGPL-3.0-or-later
"""Client module - Direct HTTP access to the game API."""

from lss_sync.client.alliance_client import AllianceClient

__all__ = ["AllianceClient"]
