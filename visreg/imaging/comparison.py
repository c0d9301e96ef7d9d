"""Comparison engine — pixel-diffs a capture against its baseline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageChops

from visreg.models.capture import CaptureMode, CaptureSession, Outcome

from .image_store import load_image, save_image

logger = logging.getLogger(__name__)

# A pixel differs when any RGB channel moves by more than this much. Absorbs
# anti-aliasing and font rendering noise between otherwise identical captures.
DEFAULT_PIXEL_THRESHOLD = 16
DIFF_HIGHLIGHT = (255, 0, 255)
DIFF_JPEG_QUALITY = 20


@dataclass
class ComparisonResult:
    mismatch_percentage: float
    outcome: Outcome
    diff_path: Path | None = None
    same_dimensions: bool = True


def measure_mismatch(
    baseline: Image.Image,
    current: Image.Image,
    pixel_threshold: int = DEFAULT_PIXEL_THRESHOLD,
) -> tuple[float, Image.Image, Image.Image]:
    """Percentage of differing pixels over the padded canvas.

    Both images are placed top-left on a canvas of the larger width and
    height. Pixels outside the region the two images share always count as
    differing, so a page that grew or shrank is a mismatch.

    Returns (percentage, mask, baseline_canvas). The mask is an "L" image with
    255 wherever the two images differ.
    """
    width = max(baseline.width, current.width)
    height = max(baseline.height, current.height)
    overlap = (0, 0, min(baseline.width, current.width), min(baseline.height, current.height))

    canvas = Image.new("RGB", (width, height), (255, 255, 255))
    canvas.paste(baseline.convert("RGB"), (0, 0))

    a = baseline.convert("RGB").crop(overlap)
    b = current.convert("RGB").crop(overlap)
    delta = ImageChops.difference(a, b)
    red, green, blue = delta.split()
    strongest = ImageChops.lighter(ImageChops.lighter(red, green), blue)

    mask = Image.new("L", (width, height), 255)
    mask.paste(strongest.point(lambda v: 255 if v > pixel_threshold else 0), (0, 0))

    total = width * height
    if total == 0:
        return 0.0, mask, canvas
    differing = mask.histogram()[255]
    return round(differing / total * 100, 2), mask, canvas


def render_diff(baseline_region: Image.Image, mask: Image.Image) -> Image.Image:
    """Faded baseline with differing pixels painted in the highlight colour."""
    faded = Image.blend(
        baseline_region, Image.new("RGB", baseline_region.size, (255, 255, 255)), 0.7,
    )
    highlight = Image.new("RGB", baseline_region.size, DIFF_HIGHLIGHT)
    return Image.composite(highlight, faded, mask)


class ComparisonEngine:
    """Decides MATCHED vs MISMATCHED against a tolerance band."""

    def __init__(self, pixel_threshold: int = DEFAULT_PIXEL_THRESHOLD):
        self.pixel_threshold = pixel_threshold

    def compare(
        self,
        working_path: Path,
        baseline_path: Path,
        tolerance: float,
        diff_path: Path,
    ) -> ComparisonResult:
        current = load_image(working_path)
        baseline = load_image(baseline_path)
        same_dimensions = current.size == baseline.size
        if not same_dimensions:
            logger.debug("Dimension mismatch: capture %s vs baseline %s",
                         current.size, baseline.size)

        mismatch, mask, region = measure_mismatch(baseline, current, self.pixel_threshold)
        logger.info("Mismatch: %.2f%% (tolerance: %.2f%%)", mismatch, tolerance)

        if mismatch <= tolerance:
            return ComparisonResult(mismatch, Outcome.MATCHED, same_dimensions=same_dimensions)

        save_image(render_diff(region, mask), diff_path, quality=DIFF_JPEG_QUALITY)
        logger.info("Created diff: %s", diff_path)
        return ComparisonResult(mismatch, Outcome.MISMATCHED, diff_path, same_dimensions)

    def run(self, session: CaptureSession) -> CaptureSession:
        """Compare the session's capture; a no-op unless it is in compare mode."""
        if session.mode != CaptureMode.COMPARE:
            return session
        result = self.compare(
            session.paths.working, session.paths.baseline,
            session.tolerance, session.paths.diff,
        )
        session.mismatch_percentage = result.mismatch_percentage
        session.outcome = result.outcome
        return session
