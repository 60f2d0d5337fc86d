"""Geometry of the four bleed-ring regions and their context slices."""
from printprep.models import MarginArea, Rect

MIN_CONTEXT_SLICE_PIXELS = 120


def default_context_slice(final_width: int, final_height: int) -> int:
    """Context strip thickness: a third of the short side, at least 120px."""
    return max(MIN_CONTEXT_SLICE_PIXELS, min(final_width, final_height) // 3)


def extract_margin_areas(
    bleed_px: int,
    final_width: int,
    final_height: int,
    context_slice_px: int | None = None
) -> list[MarginArea]:
    """
    Split the bleed ring into top, bottom, left and right areas.

    Top and bottom span the full canvas width and own the corners; left and
    right only cover the final-height band, so the four target rects tile
    the ring exactly once. Each context rect is a strip of the final area
    adjacent to its side.
    """
    if context_slice_px is None:
        context_slice_px = default_context_slice(final_width, final_height)
    canvas_width = final_width + 2 * bleed_px
    slice_y = max(0, min(context_slice_px, final_height))
    slice_x = max(0, min(context_slice_px, final_width))

    return [
        MarginArea(
            side="top",
            target_rect=Rect(0, 0, canvas_width, bleed_px),
            context_rect=Rect(bleed_px, bleed_px, final_width, slice_y),
        ),
        MarginArea(
            side="bottom",
            target_rect=Rect(0, bleed_px + final_height, canvas_width, bleed_px),
            context_rect=Rect(bleed_px, bleed_px + final_height - slice_y,
                              final_width, slice_y),
        ),
        MarginArea(
            side="left",
            target_rect=Rect(0, bleed_px, bleed_px, final_height),
            context_rect=Rect(bleed_px, bleed_px, slice_x, final_height),
        ),
        MarginArea(
            side="right",
            target_rect=Rect(bleed_px + final_width, bleed_px,
                             bleed_px, final_height),
            context_rect=Rect(bleed_px + final_width - slice_x, bleed_px,
                              slice_x, final_height),
        ),
    ]
