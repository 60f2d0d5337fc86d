from __future__ import annotations

from io import BytesIO

import fitz
import pytest
from PIL import Image

from printprep.config import Settings
from printprep.models import ProcessingParameters

RED = (255, 0, 0, 255)
MAGENTA = (255, 0, 255, 255)


def png_bytes(image: Image.Image) -> bytes:
    with BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def solid_png(color=RED, size=(300, 200)) -> bytes:
    return png_bytes(Image.new("RGBA", size, color))


def make_pdf(pages: int = 1, size=(200, 100)) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page(width=size[0], height=size[1])
        page.draw_rect(page.rect, color=(1, 0, 0), fill=(1, 0, 0))
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def settings() -> Settings:
    """No AI providers, lossless raster so tests can read pixels back."""
    return Settings(export_format="PNG", chunk_pixels=4096)


@pytest.fixture
def scenario_a_params() -> ProcessingParameters:
    return ProcessingParameters(
        final_width_mm=85,
        final_height_mm=55,
        bleed_margin_mm=2,
        dpi=300,
        cut_line_type="rectangle",
    )


@pytest.fixture
def small_params() -> ProcessingParameters:
    # 118x59px final area with a 12px bleed at 150 DPI
    return ProcessingParameters(
        final_width_mm=20,
        final_height_mm=10,
        bleed_margin_mm=2,
        dpi=150,
    )
