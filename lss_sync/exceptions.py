# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Error taxonomy for the sync pipeline.

- Transient errors (detail pages, alliance endpoint) are logged and skipped.
- Session loss triggers a bounded re-login.
- Login exhaustion is fatal and stops the scheduler.
"""


class LssSyncError(Exception):
    """Base class for all pipeline errors."""


class PageQueueClosedError(LssSyncError):
    """Raised for page operations submitted to or pending on a closed queue."""


class SessionExpiredError(LssSyncError):
    """Raised when a request is answered with the login page instead of data."""


class LoginExhaustedError(LssSyncError):
    """Raised when the consecutive login attempts reached the configured ceiling."""

    def __init__(self, attempts: int, reason: str | None = None):
        self.attempts = attempts
        self.reason = reason
        message = f"Login failed {attempts} times in a row"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ExtractionError(LssSyncError):
    """Raised when the rendered page does not contain the mission lists."""


class DetailFetchError(LssSyncError):
    """Raised when a mission detail page could not be loaded."""

    def __init__(self, mission_id: str, status: int | None = None):
        self.mission_id = mission_id
        self.status = status
        super().__init__(
            f"Detail page for mission {mission_id} failed"
            + (f" with HTTP {status}" if status is not None else "")
        )


class AllianceInfoError(LssSyncError):
    """Raised when the alliance info endpoint returns unusable data."""
