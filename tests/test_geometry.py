import numpy as np
import pytest
from PIL import Image

from printprep.canvas import RasterBuffer
from printprep.errors import OutOfMemoryError
from printprep.margins import default_context_slice, extract_margin_areas
from printprep.models import CanvasGeometry, ProcessingParameters, Rect
from printprep.positioning import calculate_fit, position_content
from printprep.utils import mm_to_pixels


def test_scenario_a_canvas_dimensions(scenario_a_params):
    geometry = CanvasGeometry.from_parameters(scenario_a_params)

    assert geometry.final_width_px == 1004
    assert geometry.final_height_px == 650
    assert geometry.bleed_px == 24
    assert (geometry.width, geometry.height) == (1052, 698)
    assert geometry.final_rect == Rect(24, 24, 1004, 650)


@pytest.mark.parametrize("width_mm,height_mm,bleed_mm,dpi", [
    (85, 55, 3, 150),
    (210, 297, 3, 300),
    (50, 50, 0, 300),
    (90.5, 40.2, 1.7, 150),
])
def test_canvas_is_final_plus_two_bleeds(width_mm, height_mm, bleed_mm, dpi):
    params = ProcessingParameters(final_width_mm=width_mm,
                                  final_height_mm=height_mm,
                                  bleed_margin_mm=bleed_mm, dpi=dpi)
    geometry = CanvasGeometry.from_parameters(params)
    bleed = mm_to_pixels(bleed_mm, dpi)

    assert geometry.width == mm_to_pixels(width_mm, dpi) + 2 * bleed
    assert geometry.height == mm_to_pixels(height_mm, dpi) + 2 * bleed


def test_parameters_reject_unsupported_values():
    with pytest.raises(ValueError):
        ProcessingParameters(final_width_mm=10, final_height_mm=10, dpi=200)
    with pytest.raises(ValueError):
        ProcessingParameters(final_width_mm=0, final_height_mm=10)
    with pytest.raises(ValueError):
        ProcessingParameters(final_width_mm=10, final_height_mm=10,
                             cut_line_type="star")
    with pytest.raises(ValueError):
        ProcessingParameters(final_width_mm=10, final_height_mm=10,
                             fill_prompt="x" * 401)


@pytest.mark.parametrize("bleed,width,height", [
    (24, 1004, 650),
    (12, 118, 59),
    (3, 40, 300),
    (0, 100, 80),
    (5, 1, 1),
])
def test_margin_areas_tile_the_ring(bleed, width, height):
    areas = extract_margin_areas(bleed, width, height)
    canvas = np.zeros((height + 2 * bleed, width + 2 * bleed), dtype=int)
    for area in areas:
        rect = area.target_rect
        canvas[rect.y:rect.bottom, rect.x:rect.right] += 1

    final = np.zeros_like(canvas, dtype=bool)
    final[bleed:bleed + height, bleed:bleed + width] = True

    assert [a.side for a in areas] == ["top", "bottom", "left", "right"]
    assert np.all(canvas[~final] == 1)
    assert np.all(canvas[final] == 0)


@pytest.mark.parametrize("bleed,width,height", [
    (24, 1004, 650),
    (12, 118, 59),
    (3, 40, 300),
])
def test_context_rects_lie_inside_final_rect(bleed, width, height):
    final_rect = Rect(bleed, bleed, width, height)
    for area in extract_margin_areas(bleed, width, height):
        assert final_rect.contains(area.context_rect)
        assert not area.context_rect.is_empty()


def test_context_slice_defaults():
    assert default_context_slice(1004, 650) == 216
    assert default_context_slice(200, 100) == 120

    top = extract_margin_areas(10, 200, 50)[0]
    # The slice never exceeds the content extent.
    assert top.context_rect.height == 50


def test_calculate_fit_preserves_aspect():
    width, height, scale = calculate_fit(400, 100, 200, 200)

    assert (width, height) == (200, 50)
    assert scale == pytest.approx(0.5)


def test_position_content_centres_inside_final_rect():
    buffer = RasterBuffer.allocate(220, 220)
    source = Image.new("RGBA", (400, 100), (0, 0, 255, 255))

    placement = position_content(buffer, source, 200, 200, 10)

    assert placement.rect == Rect(10, 85, 200, 50)
    assert buffer.get_pixel(110, 110) == (0, 0, 255, 255)
    assert buffer.get_pixel(110, 20) == (255, 255, 255, 255)
    assert buffer.get_pixel(5, 110) == (255, 255, 255, 255)


def test_position_content_composites_transparency_over_white():
    buffer = RasterBuffer.allocate(20, 20)
    source = Image.new("RGBA", (10, 10), (0, 0, 0, 0))

    position_content(buffer, source, 10, 10, 5)

    assert buffer.get_pixel(10, 10) == (255, 255, 255, 255)


def test_raster_buffer_lifecycle():
    buffer = RasterBuffer.allocate(4, 3)

    assert buffer.size == (4, 3)
    assert buffer.get_pixel(0, 0) == (255, 255, 255, 255)

    buffer.set_pixel(1, 1, (1, 2, 3, 4))
    assert buffer.get_pixel(1, 1) == (1, 2, 3, 4)
    assert buffer.encode("PNG").startswith(b"\x89PNG")

    buffer.release()
    assert buffer.released
    with pytest.raises(RuntimeError):
        buffer.pixels


def test_raster_buffer_write_region_resizes():
    buffer = RasterBuffer.allocate(10, 10)
    buffer.write_region(Rect(2, 2, 4, 4), Image.new("RGBA", (8, 8), (9, 9, 9, 255)))

    assert buffer.get_pixel(3, 3) == (9, 9, 9, 255)
    assert buffer.get_pixel(6, 6) == (255, 255, 255, 255)


def test_allocation_of_empty_canvas_fails():
    with pytest.raises(OutOfMemoryError):
        RasterBuffer.allocate(0, 10)
