"""Helper functions for building AI fill requests and mask previews."""
from dataclasses import dataclass

from PIL import Image, ImageDraw

from printprep.canvas import RasterBuffer
from printprep.models import MarginArea, Rect

MAX_REQUEST_DIMENSION = 512


@dataclass(frozen=True)
class AreaRequest:
    """Context image and mask sent to a provider for one margin area."""

    area: MarginArea
    image: Image.Image
    mask: Image.Image
    # Target rect expressed in request image coordinates.
    fill_box: tuple[int, int, int, int]
    scale: float


def prepare_area_image_and_mask(
    buffer: RasterBuffer,
    area: MarginArea,
    max_dimension: int = MAX_REQUEST_DIMENSION
) -> AreaRequest:
    """
    Crop the area plus its context slice and build the matching mask.

    Mask convention: black (0) = preserve, white (255) = region to fill.
    The request is downscaled so its longest side fits `max_dimension`.
    """
    source_rect = area.source_rect
    scale = min(max_dimension / max(source_rect.width, source_rect.height), 1.0)
    width = max(1, round(source_rect.width * scale))
    height = max(1, round(source_rect.height * scale))

    image = buffer.read_region(source_rect).convert("RGB")
    if image.size != (width, height):
        image = image.resize((width, height), Image.LANCZOS)

    target = area.target_rect
    left = round((target.x - source_rect.x) * scale)
    top = round((target.y - source_rect.y) * scale)
    right = min(width, left + max(1, round(target.width * scale)))
    bottom = min(height, top + max(1, round(target.height * scale)))

    mask = Image.new("L", (width, height), 0)
    ImageDraw.Draw(mask).rectangle([(left, top), (right - 1, bottom - 1)],
                                   fill=255)
    return AreaRequest(area=area, image=image, mask=mask,
                       fill_box=(left, top, right, bottom), scale=scale)


def apply_filled_area(
    buffer: RasterBuffer,
    filled: Image.Image,
    request: AreaRequest
) -> Rect:
    """Copy the provider's fill for the masked region back onto the canvas."""
    if filled.size != request.image.size:
        filled = filled.resize(request.image.size, Image.LANCZOS)
    patch = filled.convert("RGBA").crop(request.fill_box)
    target = request.area.target_rect
    buffer.write_region(target, patch)
    return target


def preview_image_and_mask(image: Image.Image, mask: Image.Image) -> Image.Image:
    """Create preview image showing the mask overlay."""
    preview = image.convert("RGBA")

    # Create a semi-transparent red overlay (25% opacity)
    red_overlay = Image.new("RGBA", preview.size, (255, 0, 0, 64))

    # Paint the overlay only where the mask asks for a fill
    red_mask = Image.new("RGBA", preview.size, (0, 0, 0, 0))
    red_mask.paste(red_overlay, (0, 0), mask.convert("L"))

    return Image.alpha_composite(preview, red_mask)
