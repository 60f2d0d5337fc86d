"""Mutable RGBA pixel buffer owned by a single processing run."""
import logging

import numpy as np
from PIL import Image

from printprep.errors import OutOfMemoryError
from printprep.models import Rect
from printprep.utils import encode_image

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255, 255)


class RasterBuffer:
    """
    RGBA canvas backed by a (height, width, 4) uint8 array.

    The buffer is handed to each stage explicitly and released by the
    workflow when the run ends; any access after `release()` raises.
    """

    def __init__(self, pixels: np.ndarray):
        if pixels.ndim != 3 or pixels.shape[2] != 4 or pixels.dtype != np.uint8:
            raise ValueError("RasterBuffer expects a (height, width, 4) uint8 array")
        self._pixels: np.ndarray | None = pixels

    @classmethod
    def allocate(cls, width: int, height: int) -> "RasterBuffer":
        """Allocate an opaque white canvas; failure to allocate is fatal."""
        if width <= 0 or height <= 0:
            raise OutOfMemoryError(
                f"Cannot allocate a {width}x{height}px canvas",
                remediation="Final dimensions must be at least one pixel.",
            )
        try:
            pixels = np.full((height, width, 4), 255, dtype=np.uint8)
        except (MemoryError, ValueError) as exc:
            raise OutOfMemoryError(
                f"Cannot allocate a {width}x{height}px canvas: {exc}"
            ) from exc
        logger.info(f"Canvas allocated: {width}x{height}px")
        return cls(pixels)

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise RuntimeError("RasterBuffer has been released")
        return self._pixels

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def released(self) -> bool:
        return self._pixels is None

    def get_pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        return tuple(int(v) for v in self.pixels[y, x])

    def set_pixel(self, x: int, y: int, rgba: tuple[int, int, int, int]) -> None:
        self.pixels[y, x] = rgba

    def read_region(self, rect: Rect) -> Image.Image:
        """Copy a region of the canvas out as an RGBA image."""
        region = self.pixels[rect.y:rect.bottom, rect.x:rect.right]
        return Image.fromarray(np.ascontiguousarray(region), "RGBA")

    def write_region(self, rect: Rect, image: Image.Image) -> None:
        """Overwrite `rect` with `image`, resized to fit when needed."""
        if rect.is_empty():
            return
        if image.size != (rect.width, rect.height):
            image = image.resize((rect.width, rect.height), Image.LANCZOS)
        self.pixels[rect.y:rect.bottom, rect.x:rect.right] = np.asarray(
            image.convert("RGBA"), dtype=np.uint8
        )

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels.copy(), "RGBA")

    def encode(self, format: str = "PNG", **options) -> bytes:
        """Encode the whole canvas in the given image format."""
        return encode_image(self.to_image(), format, **options)

    def release(self) -> None:
        if self._pixels is not None:
            logger.debug(f"Canvas released: {self.width}x{self.height}px")
        self._pixels = None
