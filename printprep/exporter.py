"""Single-page print PDF export with PyMuPDF, verified with pypdf."""
import logging
from io import BytesIO

import fitz
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from printprep.errors import ExportError
from printprep.models import ProcessingParameters
from printprep.utils import mm_to_points

logger = logging.getLogger(__name__)

# Anything smaller cannot hold a page with an embedded raster.
MIN_DOCUMENT_BYTES = 1024
# Each canvas axis is built from up to three rounded mm lengths.
ROUNDING_PIXELS_PER_AXIS = 1.5


def page_size_points(params: ProcessingParameters) -> tuple[float, float]:
    """Page size including bleed, in PDF points."""
    width = mm_to_points(params.final_width_mm + 2 * params.bleed_margin_mm)
    height = mm_to_points(params.final_height_mm + 2 * params.bleed_margin_mm)
    return width, height


def aspect_tolerance(pixel_width: int, pixel_height: int) -> float:
    """Largest page/raster aspect difference explained by mm to px rounding."""
    ratio = pixel_width / pixel_height
    return ratio * (ROUNDING_PIXELS_PER_AXIS / pixel_width
                    + ROUNDING_PIXELS_PER_AXIS / pixel_height)


class DocumentExporter:
    """Wraps a finished raster into a print PDF page covering the bleed."""

    def __init__(self, title: str = "Print ready artwork",
                 creator: str = "print-prep"):
        self.title = title
        self.creator = creator

    def export(
        self,
        raster: bytes,
        pixel_size: tuple[int, int],
        params: ProcessingParameters
    ) -> bytes:
        width_pts, height_pts = page_size_points(params)
        bleed_pts = mm_to_points(params.bleed_margin_mm)
        logger.info(
            f"Exporting {pixel_size[0]}x{pixel_size[1]}px raster to a "
            f"{width_pts:.2f}x{height_pts:.2f}pt page (bleed {bleed_pts:.2f}pt)"
        )

        pdf_doc = fitz.open()
        try:
            page = pdf_doc.new_page(width=width_pts, height=height_pts)
            page.insert_image(fitz.Rect(0, 0, width_pts, height_pts),
                              stream=raster)
            page.set_bleedbox(page.rect)
            if bleed_pts > 0:
                page.set_trimbox(fitz.Rect(bleed_pts, bleed_pts,
                                           width_pts - bleed_pts,
                                           height_pts - bleed_pts))
            pdf_doc.set_metadata({
                "title": self.title,
                "creator": self.creator,
                "producer": self.creator,
                "subject": (
                    f"{params.final_width_mm}x{params.final_height_mm}mm, "
                    f"bleed {params.bleed_margin_mm}mm, {params.dpi} DPI"
                ),
            })
            pdf_bytes = pdf_doc.tobytes(garbage=3, deflate=True)
        except (RuntimeError, ValueError) as exc:
            raise ExportError(f"Could not build the PDF: {exc}") from exc
        finally:
            pdf_doc.close()

        self.verify(pdf_bytes, pixel_size)
        logger.info(f"Export complete: {len(pdf_bytes)} bytes")
        return pdf_bytes

    def verify(self, pdf_bytes: bytes, pixel_size: tuple[int, int]) -> None:
        """Reject documents that are too small, unreadable or mis-proportioned."""
        if len(pdf_bytes) <= MIN_DOCUMENT_BYTES:
            raise ExportError(
                f"Generated document is only {len(pdf_bytes)} bytes"
            )

        try:
            reader = PdfReader(BytesIO(pdf_bytes))
            pages = reader.pages
            page_count = len(pages)
            if page_count != 1:
                raise ExportError(
                    f"Generated document has {page_count} pages, expected 1"
                )
            page_width = float(pages[0].mediabox.width)
            page_height = float(pages[0].mediabox.height)
        except PdfReadError as exc:
            raise ExportError(f"Generated document is unreadable: {exc}") from exc

        pixel_width, pixel_height = pixel_size
        page_ratio = page_width / page_height
        raster_ratio = pixel_width / pixel_height
        tolerance = aspect_tolerance(pixel_width, pixel_height)
        if abs(page_ratio - raster_ratio) > tolerance:
            raise ExportError(
                f"Page aspect {page_ratio:.5f} does not match raster aspect "
                f"{raster_ratio:.5f} (tolerance {tolerance:.5f})"
            )
