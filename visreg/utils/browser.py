"""Browser launch helpers — local headless Chromium and remote grid connections."""

from __future__ import annotations

import json
import os
from typing import Optional
from urllib.parse import quote

from playwright.async_api import Browser, BrowserContext, BrowserType, Playwright

from visreg.models.config import EnvironmentConfig, HeadlessConfig

DEFAULT_GRID_ENDPOINT = "wss://cdp.browserstack.com/playwright"
TUNNEL_STATUS_URL = "https://www.browserstack.com/local/v1/list?auth_token={key}&last=5&state=running"

DEFAULT_VIEWPORT = {"width": 1280, "height": 900}


def grid_endpoint() -> str:
    return os.environ.get("VISREG_GRID_ENDPOINT", DEFAULT_GRID_ENDPOINT)


def grid_credentials() -> tuple[str, str] | None:
    """Remote grid (username, key) from the environment, or None if unset."""
    username = os.environ.get("BROWSERSTACK_USERNAME")
    key = os.environ.get("BROWSERSTACK_KEY")
    if not username or not key:
        return None
    return username, key


async def launch_local_browser(playwright: Playwright, headless: bool = True) -> Browser:
    """Launch Chromium for headless captures."""
    return await playwright.chromium.launch(
        headless=headless,
        args=["--no-sandbox", "--disable-dev-shm-usage"],
    )


async def create_capture_context(
    browser: Browser,
    playwright: Playwright,
    headless: Optional[HeadlessConfig] = None,
) -> BrowserContext:
    """Create a context sized for capture.

    A named device takes precedence over an explicit viewport width, unless
    only a width is given.
    """
    context_kwargs: dict = {"viewport": dict(DEFAULT_VIEWPORT)}
    if headless is not None:
        if headless.emulate_device:
            context_kwargs = dict(playwright.devices[headless.emulate_device])
        elif headless.viewport_width:
            context_kwargs["viewport"] = {
                "width": headless.viewport_width,
                "height": headless.viewport_height,
            }
    return await browser.new_context(**context_kwargs)


def remote_capabilities(
    env: EnvironmentConfig,
    credentials: tuple[str, str],
    use_tunnel: bool = False,
    local_identifier: str | None = None,
) -> dict:
    """Capabilities payload for the remote grid session."""
    username, key = credentials
    caps: dict = {
        "browser": env.browser_name,
        "browserstack.username": username,
        "browserstack.accessKey": key,
        "name": env.label,
    }
    for field, cap in (
        ("browser_version", "browser_version"),
        ("os", "os"),
        ("os_version", "os_version"),
        ("device", "device"),
        ("resolution", "resolution"),
    ):
        value = getattr(env, field)
        if value:
            caps[cap] = value
    if env.real_mobile:
        caps["realMobile"] = "true"
    local = use_tunnel or env.local
    caps["browserstack.local"] = "true" if local else "false"
    if local and local_identifier:
        caps["browserstack.localIdentifier"] = local_identifier
    caps.update(env.capabilities)
    return caps


def remote_endpoint(caps: dict, base: str | None = None) -> str:
    return f"{base or grid_endpoint()}?caps={quote(json.dumps(caps))}"


def browser_type_for(playwright: Playwright, env: EnvironmentConfig) -> BrowserType:
    name = (env.browser_name or "").lower()
    if "firefox" in name:
        return playwright.firefox
    if name in ("safari", "webkit", "playwright-webkit"):
        return playwright.webkit
    return playwright.chromium


async def connect_remote_browser(
    playwright: Playwright,
    env: EnvironmentConfig,
    caps: dict,
    timeout_ms: float = 100000,
) -> Browser:
    return await browser_type_for(playwright, env).connect(
        remote_endpoint(caps), timeout=timeout_ms,
    )
