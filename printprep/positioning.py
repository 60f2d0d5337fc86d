import logging

import numpy as np
from PIL import Image

from printprep.canvas import RasterBuffer
from printprep.models import Placement, Rect

logger = logging.getLogger(__name__)


def calculate_fit(
    source_width: int,
    source_height: int,
    final_width: int,
    final_height: int
) -> tuple[int, int, float]:
    """Scaled size and factor that fit the source inside the final area."""
    scale = min(final_width / source_width, final_height / source_height)
    scaled_width = min(final_width, max(1, round(source_width * scale)))
    scaled_height = min(final_height, max(1, round(source_height * scale)))
    return scaled_width, scaled_height, scale


def position_content(
    buffer: RasterBuffer,
    source: Image.Image,
    final_width: int,
    final_height: int,
    bleed_px: int
) -> Placement:
    """
    Scale the source uniformly to fit the final area and centre it there.

    The content never reaches into the bleed ring: the placement rect always
    lies inside the final rect offset by `bleed_px` on each side. Transparent
    source pixels are composited over the white canvas.
    """
    src_w, src_h = source.size
    if src_w <= 0 or src_h <= 0:
        raise ValueError(f"Source image has no pixels: {src_w}x{src_h}")

    scaled_w, scaled_h, scale = calculate_fit(src_w, src_h,
                                              final_width, final_height)
    x = bleed_px + (final_width - scaled_w) // 2
    y = bleed_px + (final_height - scaled_h) // 2
    rect = Rect(x, y, scaled_w, scaled_h)

    logger.info(
        f"Positioning {src_w}x{src_h}px source: scale={scale:.4f}, "
        f"scaled={scaled_w}x{scaled_h}px, offset=({x}, {y})"
    )

    resized = source.convert("RGBA")
    if resized.size != (scaled_w, scaled_h):
        resized = resized.resize((scaled_w, scaled_h), Image.LANCZOS)

    background = buffer.read_region(rect)
    composited = Image.alpha_composite(background, resized)
    buffer.pixels[rect.y:rect.bottom, rect.x:rect.right] = np.asarray(
        composited, dtype=np.uint8
    )
    return Placement(rect=rect, scale=scale)
