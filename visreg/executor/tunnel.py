"""Readiness tracking for the local tunnel used by remote environments."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from playwright.async_api import async_playwright

from visreg.errors import TunnelTimeout
from visreg.utils.browser import TUNNEL_STATUS_URL

logger = logging.getLogger(__name__)

TunnelProbe = Callable[[], Awaitable[bool]]


class TunnelManager:
    """Owns the "tunnel is ready" state for one run.

    The tunnel process itself is started outside the runner; this class only
    waits for it to come up. With a local identifier, only the tunnel started
    with that identifier counts. Without one, any running tunnel on the
    account does, and sessions are opened without an identifier.
    """

    def __init__(
        self,
        probe: Optional[TunnelProbe] = None,
        local_identifier: str | None = None,
        max_attempts: int = 30,
        delay_seconds: float = 1.0,
    ):
        self.local_identifier = local_identifier
        self.probe = probe
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self.ready = False

    @property
    def description(self) -> str:
        if self.local_identifier:
            return f"Tunnel {self.local_identifier}"
        return "Tunnel"

    async def wait_until_ready(self) -> None:
        if self.ready:
            return
        if self.probe is None:
            logger.debug("No tunnel probe configured; assuming tunnel is up")
            self.ready = True
            return

        for attempt in range(1, self.max_attempts + 1):
            try:
                if await self.probe():
                    self.ready = True
                    logger.info("%s is ready", self.description)
                    return
            except Exception as e:
                logger.debug("Tunnel probe failed: %s", e)
            logger.debug("Waiting for tunnel (%d/%d)", attempt, self.max_attempts)
            await asyncio.sleep(self.delay_seconds)

        raise TunnelTimeout(
            f"{self.description} not ready after {self.max_attempts} attempts"
        )


def tunnel_is_running(instances: list[dict], local_identifier: str | None = None) -> bool:
    """True when a running tunnel instance matches the identifier (or any, without one)."""
    for inst in instances:
        if not isinstance(inst, dict):
            continue
        if local_identifier is None or inst.get("localIdentifier") == local_identifier:
            return True
    return False


def grid_tunnel_probe(key: str, local_identifier: str | None = None) -> TunnelProbe:
    """Probe that asks the grid's status API whether our tunnel is running."""

    async def probe() -> bool:
        async with async_playwright() as p:
            request = await p.request.new_context()
            try:
                response = await request.get(TUNNEL_STATUS_URL.format(key=key))
                if not response.ok:
                    return False
                data = await response.json()
            finally:
                await request.dispose()
        instances = data.get("instances", []) if isinstance(data, dict) else data
        return tunnel_is_running(instances or [], local_identifier)

    return probe
