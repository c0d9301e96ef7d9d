"""Image buffer operations used by the stitcher: load, crop, merge, save."""

from __future__ import annotations

import logging
from pathlib import Path

from PIL import Image

from visreg.errors import ImageNotFound, InvalidCrop, WidthMismatch

logger = logging.getLogger(__name__)

# Stitched pages can be very tall; Pillow's decompression-bomb guard would
# otherwise reject them when they are loaded back for comparison.
Image.MAX_IMAGE_PIXELS = 10000 * 1000000


def load_image(path: str | Path) -> Image.Image:
    """Load an image fully into memory."""
    path = Path(path)
    if not path.exists():
        raise ImageNotFound(f"Image does not exist: {path}")
    with Image.open(path) as img:
        img.load()
        return img.copy()


def crop_image(image: Image.Image, top: int, bottom: int) -> Image.Image:
    """Remove `top` rows from the start and `bottom` rows from the end."""
    if top < 0 or bottom < 0:
        raise InvalidCrop(f"Crop values must be non-negative (top={top}, bottom={bottom})")
    width, height = image.size
    new_height = height - top - bottom
    if new_height <= 0:
        raise InvalidCrop(
            f"Crop top={top} bottom={bottom} leaves no rows of a {height}px image"
        )
    if top == 0 and bottom == 0:
        return image.copy()
    return image.crop((0, top, width, top + new_height))


def merge_vertical(base: Image.Image, addition: Image.Image) -> Image.Image:
    """Return a new image with `addition` drawn directly below `base`."""
    if base.width != addition.width:
        raise WidthMismatch(
            f"Cannot merge images of width {base.width} and {addition.width}"
        )
    if addition.mode != base.mode:
        addition = addition.convert(base.mode)
    merged = Image.new(base.mode, (base.width, base.height + addition.height))
    merged.paste(base, (0, 0))
    merged.paste(addition, (0, base.height))
    return merged


def save_image(image: Image.Image, path: str | Path, **params) -> Path:
    """Write an image, replacing any existing file at `path`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fmt = Image.registered_extensions().get(path.suffix.lower(), "PNG")
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    with open(path, "wb") as f:
        image.save(f, format=fmt, **params)
    return path


def optimize_image(path: str | Path, colors: int = 256) -> bool:
    """Lossy palette reduction of a PNG in place. Best-effort only."""
    path = Path(path)
    try:
        img = load_image(path)
        quantized = img.convert("RGB").quantize(colors=colors)
        save_image(quantized, path, optimize=True)
        logger.debug("Optimized screenshot: %s", path)
        return True
    except Exception as e:
        logger.warning("Failed to optimize screenshot %s: %s", path, e)
        return False
