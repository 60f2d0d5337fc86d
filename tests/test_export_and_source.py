import logging

import numpy as np
import pytest
from PIL import Image

from conftest import make_pdf, png_bytes, solid_png
from printprep.errors import ExportError, SourceConversionError
from printprep.exporter import (
    MIN_DOCUMENT_BYTES,
    DocumentExporter,
    aspect_tolerance,
    page_size_points,
)
from printprep.metadata_reader import read_document_info
from printprep.models import CanvasGeometry
from printprep.source import SourceFile, convert_source
from printprep.utils import POINTS_PER_MM


def noise_raster(width: int, height: int) -> bytes:
    rng = np.random.default_rng(0)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    return png_bytes(Image.fromarray(pixels, "RGB"))


def test_export_builds_single_page_with_print_boxes(scenario_a_params):
    geometry = CanvasGeometry.from_parameters(scenario_a_params)
    size = (geometry.width, geometry.height)

    pdf = DocumentExporter().export(noise_raster(*size), size, scenario_a_params)
    info = read_document_info(pdf)

    assert len(pdf) > MIN_DOCUMENT_BYTES
    assert info["page_count"] == 1
    assert info["page_size_mm"] == pytest.approx([89, 59], abs=0.01)
    assert info["image_count"] == 1
    assert info["drawing_count"] == 0
    bleed = 2 * POINTS_PER_MM
    width_pts, height_pts = page_size_points(scenario_a_params)
    assert info["bleedbox"] == pytest.approx([0, 0, width_pts, height_pts], abs=0.01)
    assert info["trimbox"] == pytest.approx(
        [bleed, bleed, width_pts - bleed, height_pts - bleed], abs=0.01
    )
    assert info["metadata"]["creator"] == "print-prep"


def test_export_rejects_aspect_mismatch(scenario_a_params):
    raster = noise_raster(400, 100)

    with pytest.raises(ExportError, match="aspect"):
        DocumentExporter().export(raster, (400, 100), scenario_a_params)


def test_verify_rejects_tiny_documents():
    with pytest.raises(ExportError, match="bytes"):
        DocumentExporter().verify(b"%PDF-1.7\n%%EOF", (100, 100))


def test_aspect_tolerance_covers_rounding():
    # 85mm at 300 DPI rounds by 0.063px; well inside the tolerance
    assert aspect_tolerance(1052, 698) > abs(1052 / 698 - (89 / 59))


def test_convert_image_source_to_rgba():
    image = convert_source(SourceFile(solid_png(size=(30, 20)), "a.png",
                                      "image/png"))

    assert image.mode == "RGBA"
    assert image.size == (30, 20)


def test_convert_pdf_source_renders_first_page(caplog):
    source = SourceFile(make_pdf(pages=2), "doc.pdf", "application/pdf")

    with caplog.at_level(logging.WARNING):
        image = convert_source(source, render_scale=2.0)

    assert source.kind == "pdf"
    assert image.size == (400, 200)
    assert image.getpixel((100, 100))[:3] == (255, 0, 0)
    assert "2 pages" in caplog.text


def test_pdf_detected_by_magic_bytes():
    assert SourceFile(make_pdf(), None, "application/octet-stream").kind == "pdf"
    assert SourceFile(solid_png(), "x.png", None).kind == "image"


@pytest.mark.parametrize("source", [
    SourceFile(b"", "empty.png", "image/png"),
    SourceFile(b"garbage", "broken.png", "image/png"),
    SourceFile(b"%PDF-1.4 broken", "broken.pdf", "application/pdf"),
])
def test_unreadable_sources_raise_conversion_error(source):
    with pytest.raises(SourceConversionError):
        convert_source(source)
