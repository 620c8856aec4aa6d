# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Browser Session Manager

Keeps one logged-in Chromium page (Playwright) alive for the whole process.

Features:
- Headless Chromium with images, stylesheets, fonts and media blocked
- Probe for the logged-in mission list before every cycle
- Bounded re-login with a consecutive-failure ceiling
- Cookie export for direct HTTP requests against the game API
"""

import logging
from typing import Any

from playwright.async_api import async_playwright

from lss_sync.browser.page_queue import PageOperationQueue
from lss_sync.config import settings
from lss_sync.exceptions import LoginExhaustedError
from lss_sync.metrics import metrics

logger = logging.getLogger(__name__)

# Only present on the game page when logged in
AUTHENTICATED_PROBE = "#mission_list"

BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1920,1080",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class SessionManager:
    """
    Owns the browser and the authenticated game session.

    All page access goes through ``self.queue``; the manager itself only
    submits operations to it.
    """

    def __init__(
        self,
        email: str | None = None,
        password: str | None = None,
        base_url: str | None = None,
        max_login_attempts: int | None = None,
        headless: bool | None = None,
        navigation_timeout_ms: int | None = None,
        queue: PageOperationQueue | None = None,
    ) -> None:
        """
        Initialize the session manager.

        Args:
            email: Game account email. Defaults to settings.
            password: Game account password. Defaults to settings.
            base_url: Game base URL. Defaults to settings.
            max_login_attempts: Consecutive failed logins before giving up.
            headless: Run Chromium without a window.
            navigation_timeout_ms: Timeout for page navigations.
            queue: Pre-built page queue (skips launching a browser).
        """
        self.email = email if email is not None else settings.lss_email
        self.password = password if password is not None else settings.lss_password
        self.base_url = (base_url or settings.lss_base_url).rstrip("/")
        self.max_login_attempts = max_login_attempts or settings.lss_max_login_attempts
        self.headless = settings.lss_headless if headless is None else headless
        self.navigation_timeout_ms = navigation_timeout_ms or settings.lss_navigation_timeout_ms

        self.queue = queue or PageOperationQueue()
        self.login_attempts = 0
        self.last_login_error: str | None = None

        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None

    @property
    def closed(self) -> bool:
        return self.queue.closed

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ========== Browser Lifecycle ==========

    async def start(self) -> None:
        """Launch Chromium unless the queue already has a page."""
        if self.queue.page is None:
            logger.info("Launching browser (headless=%s)", self.headless)
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=BROWSER_ARGS,
                executable_path=settings.lss_executable_path or None,
            )
            self._context = await self._browser.new_context(
                viewport={"width": 1920, "height": 1080},
                user_agent=USER_AGENT,
            )
            page = await self._context.new_page()
            page.set_default_navigation_timeout(self.navigation_timeout_ms)
            await page.route("**/*", self._block_heavy_resources)
            self.queue.page = page

        self.queue.start()

    @staticmethod
    async def _block_heavy_resources(route: Any) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    async def close(self) -> None:
        """Close the page queue and the browser."""
        await self.queue.close()
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning("Error closing browser: %s", e)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser session closed")

    # ========== Authentication ==========

    async def is_authenticated(self) -> bool:
        """Probe the current page for the logged-in mission list."""

        async def probe(page: Any) -> bool:
            return await page.query_selector(AUTHENTICATED_PROBE) is not None

        return await self.queue.run(probe)

    async def ensure_authenticated(self) -> bool:
        """
        Make sure the page shows the logged-in game.

        Returns:
            True once authenticated, False if the session is already closed

        Raises:
            LoginExhaustedError: after ``max_login_attempts`` failed logins in a row
        """
        if self.closed:
            return False

        if await self.is_authenticated():
            self.login_attempts = 0
            return True

        # The page may just be somewhere else (detail page, error page)
        try:
            await self.navigate_home()
            if await self.is_authenticated():
                self.login_attempts = 0
                return True
        except Exception as e:
            logger.warning("Could not load start page: %s", e)

        logger.warning("Session lost, logging in again")
        while True:
            if self.closed:
                return False
            if self.login_attempts >= self.max_login_attempts:
                logger.critical(
                    "Giving up after %d failed login attempts", self.login_attempts
                )
                raise LoginExhaustedError(self.login_attempts, self.last_login_error)
            if await self.login():
                return True

    async def login(self) -> bool:
        """
        Run the login form once.

        Returns:
            True if the mission list is visible afterwards
        """
        self.login_attempts += 1
        logger.info(
            "Logging in as %s (attempt %d/%d)",
            self.email,
            self.login_attempts,
            self.max_login_attempts,
        )

        async def submit_login(page: Any) -> tuple[bool, str | None]:
            await page.goto(
                f"{self.base_url}/users/sign_in",
                wait_until="networkidle",
                timeout=self.navigation_timeout_ms,
            )
            await page.wait_for_selector("#user_email", timeout=10000)
            await page.fill("#user_email", self.email)
            await page.fill("#user_password", self.password)

            remember = await page.query_selector("#user_remember_me")
            if remember is not None:
                await remember.check()

            await page.click('input[type="submit"]')
            await page.wait_for_load_state("networkidle", timeout=self.navigation_timeout_ms)

            if await page.query_selector(AUTHENTICATED_PROBE) is not None:
                return True, None

            alert = await page.query_selector(".alert-danger")
            reason = (await alert.text_content() or "").strip() if alert is not None else None
            return False, reason or "mission list not visible after login"

        try:
            success, reason = await self.queue.run(submit_login)
        except Exception as e:
            success, reason = False, str(e)

        if success:
            logger.info("Login successful")
            self.login_attempts = 0
            self.last_login_error = None
            metrics.record_login("success")
            return True

        logger.error("Login failed: %s", reason)
        self.last_login_error = reason
        metrics.record_login("failure")
        return False

    # ========== Page Helpers ==========

    async def navigate_home(self) -> None:
        """Load the game start page."""

        async def goto_home(page: Any) -> None:
            await page.goto(
                self.base_url,
                wait_until="networkidle",
                timeout=self.navigation_timeout_ms,
            )

        await self.queue.run(goto_home)

    async def reload(self) -> bool:
        """
        Reload the page after a failed cycle.

        Errors are logged and swallowed; the next cycle probes again anyway.
        """

        async def reload_page(page: Any) -> None:
            await page.reload(wait_until="networkidle", timeout=self.navigation_timeout_ms)

        try:
            await self.queue.run(reload_page)
            return True
        except Exception as e:
            logger.warning("Page reload failed: %s", e)
            return False

    async def cookie_header(self) -> str:
        """Cookies of the game domain formatted as a ``Cookie`` header."""

        async def read_cookies(page: Any) -> list[dict[str, Any]]:
            return await page.context.cookies(self.base_url)

        cookies = await self.queue.run(read_cookies)
        return "; ".join(f"{cookie['name']}={cookie['value']}" for cookie in cookies)
