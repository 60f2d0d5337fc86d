"""Deterministic nearest-content fill for the bleed ring."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy import ndimage
from scipy.spatial import cKDTree

from printprep.canvas import RasterBuffer
from printprep.cancellation import CancellationToken, Checkpoint
from printprep.margins import extract_margin_areas
from printprep.models import CanvasGeometry

logger = logging.getLogger(__name__)

# A channel strictly above this value counts as white.
NEAR_WHITE_THRESHOLD = 235
# Pixels at or below this alpha are treated as empty.
ALPHA_THRESHOLD = 24
DEFAULT_CHUNK_PIXELS = 65536

ChunkCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class FillReport:
    candidates: int
    copied: int
    cancelled: bool = False


def near_white_mask(pixels: np.ndarray) -> np.ndarray:
    return np.all(pixels[..., :3] > NEAR_WHITE_THRESHOLD, axis=-1)


def unfilled_mask(pixels: np.ndarray) -> np.ndarray:
    """Pixels that still look like empty paper: near-white or transparent."""
    return near_white_mask(pixels) | (pixels[..., 3] <= ALPHA_THRESHOLD)


def ring_mask(geometry: CanvasGeometry) -> np.ndarray:
    mask = np.ones((geometry.height, geometry.width), dtype=bool)
    final = geometry.final_rect
    mask[final.y:final.bottom, final.x:final.right] = False
    return mask


def content_mask(pixels: np.ndarray, geometry: CanvasGeometry) -> np.ndarray:
    """Opaque, non-white pixels inside the final rect."""
    final = geometry.final_rect
    mask = np.zeros(pixels.shape[:2], dtype=bool)
    inner = pixels[final.y:final.bottom, final.x:final.right]
    mask[final.y:final.bottom, final.x:final.right] = ~unfilled_mask(inner)
    return mask


def count_unfilled_bleed_pixels(
    buffer: RasterBuffer,
    geometry: CanvasGeometry
) -> dict[str, int]:
    """Number of still-empty pixels per side of the bleed ring."""
    empty = unfilled_mask(buffer.pixels)
    counts = {}
    for area in extract_margin_areas(geometry.bleed_px,
                                     geometry.final_width_px,
                                     geometry.final_height_px):
        rect = area.target_rect
        counts[area.side] = int(empty[rect.y:rect.bottom, rect.x:rect.right].sum())
    return counts


class BleedFallbackFiller:
    """
    Copy the nearest content pixel into every empty bleed-ring pixel.

    Nearest means smallest Euclidean distance. The search runs over a k-d
    tree of content boundary pixels only: for any pixel outside a pixel
    set, the closest member of the set lies on its 4-connected boundary.
    Ring pixels are handled in chunks; between chunks the filler yields to
    the event loop, polls the token and reports progress.
    """

    def __init__(self, chunk_pixels: int = DEFAULT_CHUNK_PIXELS):
        if chunk_pixels <= 0:
            raise ValueError("chunk_pixels must be positive")
        self.chunk_pixels = chunk_pixels

    async def fill(
        self,
        buffer: RasterBuffer,
        geometry: CanvasGeometry,
        token: CancellationToken | None = None,
        on_chunk: ChunkCallback | None = None
    ) -> FillReport:
        pixels = buffer.pixels
        if pixels.shape[:2] != (geometry.height, geometry.width):
            raise ValueError(
                f"Canvas is {buffer.width}x{buffer.height}px, geometry expects "
                f"{geometry.width}x{geometry.height}px"
            )

        ys, xs = np.nonzero(ring_mask(geometry) & unfilled_mask(pixels))
        candidates = len(ys)
        if candidates == 0:
            logger.info("Fallback fill: no bleed pixels need filling")
            return FillReport(candidates=0, copied=0)

        content = content_mask(pixels, geometry)
        if not content.any():
            logger.warning(
                f"Fallback fill: no content pixels found, "
                f"{candidates} bleed pixels left unfilled"
            )
            return FillReport(candidates=candidates, copied=0)

        boundary = content & ~ndimage.binary_erosion(content)
        by, bx = np.nonzero(boundary)
        tree = cKDTree(np.column_stack((bx, by)))
        logger.info(
            f"Fallback fill: {candidates} bleed pixels, "
            f"{len(bx)} content boundary pixels"
        )

        copied = 0
        for start in range(0, candidates, self.chunk_pixels):
            if token is not None and token.check() is Checkpoint.CANCELLED:
                logger.info(f"Fallback fill cancelled after {copied} copies")
                return FillReport(candidates, copied, cancelled=True)

            end = min(start + self.chunk_pixels, candidates)
            cx, cy = xs[start:end], ys[start:end]
            _, nearest = tree.query(np.column_stack((cx, cy)))
            pixels[cy, cx] = pixels[by[nearest], bx[nearest]]
            copied += end - start

            if on_chunk is not None:
                on_chunk(end, candidates)
            await asyncio.sleep(0)

        logger.info(f"Fallback fill: copied {copied} pixels from nearest content")
        return FillReport(candidates, copied)
