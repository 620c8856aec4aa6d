# SPDX-License-Identifier: AGPL-3.0-or-later
"""LSS Sync - live mission synchronization for Leitstellenspiel alliances."""

__version__ = "0.1.0"
