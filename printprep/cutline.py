import logging

import numpy as np
from PIL import Image, ImageDraw

from printprep.canvas import RasterBuffer
from printprep.models import Rect

logger = logging.getLogger(__name__)

# Pure magenta, solid 1px stroke.
CUT_LINE_COLOR = (255, 0, 255, 255)
CUT_LINE_TYPES = ("rectangle", "circle")


def cut_line_mask(
    size: tuple[int, int],
    cut_line_type: str,
    final_rect: Rect
) -> np.ndarray:
    """
    Boolean mask of the 1px stroke for the given cut line shape.

    The circle bounding box sits on whole pixels, so when the final rect
    width and height differ by an odd amount the circle is offset by half a
    pixel towards the top left.
    """
    mask = Image.new("L", size, 0)
    draw = ImageDraw.Draw(mask)

    if cut_line_type == "rectangle":
        draw.rectangle(
            [(final_rect.x, final_rect.y),
             (final_rect.right - 1, final_rect.bottom - 1)],
            outline=255,
            width=1,
        )
    elif cut_line_type == "circle":
        diameter = min(final_rect.width, final_rect.height)
        x0 = final_rect.x + (final_rect.width - diameter) // 2
        y0 = final_rect.y + (final_rect.height - diameter) // 2
        draw.ellipse(
            [(x0, y0), (x0 + diameter - 1, y0 + diameter - 1)],
            outline=255,
            width=1,
        )
    else:
        raise ValueError(f"Unknown cut line type: {cut_line_type}")

    return np.asarray(mask) > 0


def render_cut_line(
    buffer: RasterBuffer,
    cut_line_type: str,
    final_rect: Rect
) -> int:
    """Stroke the cut guide on the final rect boundary. Returns stroked pixels."""
    if final_rect.is_empty():
        logger.warning("Cut line skipped: final rect is empty")
        return 0
    stroke = cut_line_mask(buffer.size, cut_line_type, final_rect)
    buffer.pixels[stroke] = CUT_LINE_COLOR
    stroked = int(stroke.sum())
    logger.info(
        f"Cut line ({cut_line_type}) drawn at "
        f"({final_rect.x},{final_rect.y})-({final_rect.right},{final_rect.bottom}), "
        f"{stroked}px"
    )
    return stroked
