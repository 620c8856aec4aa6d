# SPDX-License-Identifier: AGPL-3.0-or-later
"""Browser module - Playwright session and serialized page access."""

from lss_sync.browser.page_queue import PageOperationQueue
from lss_sync.browser.session import SessionManager

__all__ = ["PageOperationQueue", "SessionManager"]
