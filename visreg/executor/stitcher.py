"""Capture stitcher — builds a full-page image from viewport-sized chunks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from PIL import Image

from visreg.imaging.image_store import (
    crop_image,
    load_image,
    merge_vertical,
    optimize_image,
    save_image,
)
from visreg.models.capture import CaptureSession, ScrollMeasurement

from .retry import retry_async
from .session import RemoteSession

logger = logging.getLogger(__name__)

CAPTURE_RETRIES = 5


def should_continue(
    scroll: ScrollMeasurement,
    chunks_taken: int,
    max_scroll: int,
    ignore_last_screenshot: bool = False,
) -> bool:
    """Whether another chunk is needed after the latest scroll."""
    if not scroll.moved:
        return False
    if scroll.scroll_height <= scroll.viewport_height:
        return False
    if scroll.offset_before + scroll.viewport_height >= scroll.scroll_height:
        return False
    if chunks_taken >= max_scroll:
        return False
    if ignore_last_screenshot and scroll.offset_before + scroll.viewport_height != scroll.offset_after:
        # Partial last step: the remainder is already visible in this chunk
        return False
    return True


class CaptureStitcher:
    """Runs the scroll-capture loop for one CaptureSession."""

    def __init__(self, capture_retries: int = CAPTURE_RETRIES, retry_delay: float = 1.0):
        self.capture_retries = capture_retries
        self.retry_delay = retry_delay

    async def capture(self, session: CaptureSession) -> Path:
        """Capture the page into the session's output path and return it."""
        browser: RemoteSession = session.browser
        output = session.output_path
        ignore_last = session.environment.ignore_last_screenshot
        session.chunk_paths = []
        session.last_scroll = None

        if session.screenshot_delay:
            logger.debug("Waiting %.1fs before first screenshot", session.screenshot_delay)
            await asyncio.sleep(session.screenshot_delay)

        accumulator: Image.Image | None = None
        chunk_index = 0
        try:
            while True:
                chunk_path = output.with_name(f"{output.stem}.chunk{chunk_index}.png")
                chunk = await self._capture_chunk(
                    browser, chunk_path, full_page=not session.require_scroll,
                )
                session.chunk_paths.append(chunk_path)
                if session.optimize:
                    optimize_image(chunk_path)
                    chunk = load_image(chunk_path).convert("RGB")

                chunk = crop_image(chunk, session.crop_top, session.crop_bottom)
                accumulator = chunk if accumulator is None else merge_vertical(accumulator, chunk)
                chunk_index += 1
                logger.debug("[%s] Chunk %d merged (%dx%d so far)", session.test_id,
                             chunk_index, accumulator.width, accumulator.height)

                if not session.require_scroll:
                    break
                scroll = await browser.scroll_by_viewport_height(session.wait_after_scroll_ms)
                session.last_scroll = scroll
                if not should_continue(scroll, chunk_index, session.max_scroll, ignore_last):
                    break

            save_image(accumulator, output)
        finally:
            self._remove_chunks(session.chunk_paths)

        logger.info("[%s] Captured %d chunk(s) -> %s", session.test_id, chunk_index, output)
        return output

    async def _capture_chunk(
        self, browser: RemoteSession, path: Path, full_page: bool,
    ) -> Image.Image:
        async def attempt() -> Image.Image:
            data = await browser.screenshot(full_page=full_page)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
            # Validate the bytes decode before they are merged
            return load_image(path).convert("RGB")

        async def pause(_: BaseException) -> None:
            if self.retry_delay:
                await asyncio.sleep(self.retry_delay)

        return await retry_async(
            attempt,
            retries=self.capture_retries,
            should_retry=lambda e: True,
            on_retry=pause,
            description=f"Screenshot {path.name}",
        )

    @staticmethod
    def _remove_chunks(paths: list[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.debug("Could not remove chunk %s: %s", path, e)
