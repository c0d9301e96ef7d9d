"""Remote browser session contract, its Playwright adapter, and session lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, runtime_checkable

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from visreg.errors import CredentialsMissing, SessionFault
from visreg.models.capture import ScrollMeasurement
from visreg.models.config import EnvironmentConfig, HeadlessConfig
from visreg.utils.browser import (
    connect_remote_browser,
    create_capture_context,
    grid_credentials,
    launch_local_browser,
    remote_capabilities,
)

from .tunnel import TunnelManager

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 100000

# Scrolls one viewport and reports the geometry seen before the move
SCROLL_SCRIPT = """() => {
    const viewportHeight = document.documentElement.clientHeight;
    const offsetBefore = window.pageYOffset;
    const scrollHeight = document.body.clientHeight;
    window.scrollBy(0, viewportHeight);
    return {viewportHeight, offsetBefore, scrollHeight};
}"""


@runtime_checkable
class RemoteSession(Protocol):
    """What the capture pipeline needs from a live browser."""

    label: str

    async def navigate(self, url: str) -> None: ...

    async def get_ready_state(self) -> str: ...

    async def get_title(self) -> str: ...

    async def screenshot(self, full_page: bool = False) -> bytes: ...

    async def execute_script(self, source: str) -> Any: ...

    async def scroll_by_viewport_height(self, wait_after_scroll_ms: int = 0) -> ScrollMeasurement: ...

    async def close(self) -> None: ...


class PlaywrightSession:
    """RemoteSession backed by a Playwright page.

    Playwright errors are re-raised as SessionFault so the retry layer can
    classify them by message.
    """

    def __init__(
        self,
        label: str,
        browser: Browser,
        context: BrowserContext,
        page: Page,
    ):
        self.label = label
        self.browser = browser
        self.context = context
        self.page = page
        self.closed = False

    async def navigate(self, url: str) -> None:
        logger.debug("[%s] Navigating to %s", self.label, url)
        try:
            await self.page.goto(url, wait_until="commit", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightError as e:
            raise SessionFault(e.message) from e

    async def get_ready_state(self) -> str:
        return await self._evaluate("document.readyState")

    async def get_title(self) -> str:
        try:
            return await self.page.title()
        except PlaywrightError as e:
            raise SessionFault(e.message) from e

    async def screenshot(self, full_page: bool = False) -> bytes:
        try:
            return await self.page.screenshot(full_page=full_page, type="png")
        except PlaywrightError as e:
            raise SessionFault(e.message) from e

    async def execute_script(self, source: str) -> Any:
        return await self._evaluate(f"() => {{\n{source}\n}}")

    async def scroll_by_viewport_height(self, wait_after_scroll_ms: int = 0) -> ScrollMeasurement:
        data = await self._evaluate(SCROLL_SCRIPT)
        if wait_after_scroll_ms:
            await asyncio.sleep(wait_after_scroll_ms / 1000)
        offset_after = await self._evaluate("window.pageYOffset")
        return ScrollMeasurement(
            scroll_height=int(data["scrollHeight"]),
            viewport_height=int(data["viewportHeight"]),
            offset_before=int(data["offsetBefore"]),
            offset_after=int(offset_after),
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.context.close()
            await self.browser.close()
        except PlaywrightError as e:
            logger.debug("[%s] Error while closing session: %s", self.label, e)

    async def _evaluate(self, expression: str) -> Any:
        try:
            return await self.page.evaluate(expression)
        except PlaywrightError as e:
            raise SessionFault(e.message) from e


class SessionLifecycle:
    """Opens, reuses and tears down the single live browser session.

    Tests for the same environment share one session; moving to another
    environment (or another headless viewport) closes it first.
    """

    def __init__(
        self,
        headless: Optional[HeadlessConfig] = None,
        tunnel: Optional[TunnelManager] = None,
    ):
        self.headless = headless
        self.tunnel = tunnel
        self.session: Optional[RemoteSession] = None
        self.environment: Optional[EnvironmentConfig] = None
        self.use_tunnel = False
        self._headless_layer: Optional[HeadlessConfig] = None
        self._playwright: Optional[Playwright] = None
        self._playwright_cm = None

    async def ensure(
        self,
        environment: EnvironmentConfig,
        use_tunnel: bool = False,
        headless: Optional[HeadlessConfig] = None,
    ) -> RemoteSession:
        """Reuse the open session when it serves the same environment."""
        if (
            self.session is not None
            and self.environment is not None
            and self.environment.label == environment.label
            and self._headless_layer == headless
        ):
            logger.debug("Reusing session for %s", environment.label)
            return self.session
        await self.release()
        return await self.acquire(environment, use_tunnel, headless)

    async def acquire(
        self,
        environment: EnvironmentConfig,
        use_tunnel: bool = False,
        headless: Optional[HeadlessConfig] = None,
    ) -> RemoteSession:
        if environment.headless:
            session = await self._open_local(environment, headless or self.headless)
        else:
            credentials = grid_credentials()
            if credentials is None:
                raise CredentialsMissing(
                    "BROWSERSTACK_USERNAME and BROWSERSTACK_KEY must be set for remote environments"
                )
            session = await self._open_remote(environment, credentials, use_tunnel)

        self.session = session
        self.environment = environment
        self.use_tunnel = use_tunnel
        self._headless_layer = headless
        logger.info("Session ready for %s", environment.label)
        return session

    async def release(self, session: Optional[RemoteSession] = None) -> None:
        """Close the open session. Safe to call when nothing is open."""
        target = session or self.session
        if target is None:
            return
        if target is self.session:
            self.session = None
            self.environment = None
            self._headless_layer = None
        logger.debug("Closing session %s", target.label)
        await target.close()

    async def refresh(self, session: Optional[RemoteSession] = None) -> RemoteSession:
        """Discard the session and open a new one for the same environment."""
        environment = self.environment
        headless = self._headless_layer
        if environment is None:
            raise SessionFault("No session to refresh")
        await self.release(session)
        return await self.acquire(environment, self.use_tunnel, headless)

    async def shutdown(self) -> None:
        await self.release()
        if self._playwright_cm is not None:
            await self._playwright_cm.__aexit__(None, None, None)
            self._playwright_cm = None
            self._playwright = None

    async def _ensure_playwright(self) -> Playwright:
        if self._playwright is None:
            self._playwright_cm = async_playwright()
            self._playwright = await self._playwright_cm.__aenter__()
        return self._playwright

    async def _open_local(
        self, environment: EnvironmentConfig, headless: Optional[HeadlessConfig],
    ) -> PlaywrightSession:
        p = await self._ensure_playwright()
        logger.debug("Launching headless Chromium for %s", environment.label)
        browser = await launch_local_browser(p)
        context = await create_capture_context(browser, p, headless)
        page = await context.new_page()
        return PlaywrightSession(environment.label, browser, context, page)

    async def _open_remote(
        self,
        environment: EnvironmentConfig,
        credentials: tuple[str, str],
        use_tunnel: bool,
    ) -> PlaywrightSession:
        p = await self._ensure_playwright()
        local_identifier = self.tunnel.local_identifier if self.tunnel else None
        caps = remote_capabilities(environment, credentials, use_tunnel, local_identifier)
        logger.debug("Connecting to remote grid for %s", environment.label)
        try:
            browser = await connect_remote_browser(p, environment, caps)
            context = await browser.new_context()
            page = await context.new_page()
        except PlaywrightError as e:
            raise SessionFault(e.message) from e
        return PlaywrightSession(environment.label, browser, context, page)
