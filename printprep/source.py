"""Turn uploaded files (images or PDFs) into a source raster."""
import logging
from dataclasses import dataclass
from io import BytesIO

import fitz
from PIL import Image, ImageOps, UnidentifiedImageError

from printprep.errors import SourceConversionError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf")
IMAGE_CONTENT_TYPES = ("image/jpeg", "image/png", "image/jpg", "image/webp")


@dataclass(frozen=True)
class SourceFile:
    data: bytes
    filename: str | None = None
    content_type: str | None = None

    @property
    def kind(self) -> str:
        """`pdf` or `image`, from the content type, extension or magic bytes."""
        if self.content_type in PDF_CONTENT_TYPES:
            return "pdf"
        if self.filename and self.filename.lower().endswith(".pdf"):
            return "pdf"
        if self.data[:5] == b"%PDF-":
            return "pdf"
        return "image"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


def render_pdf_page(data: bytes, render_scale: float = 2.0,
                    page_number: int = 0) -> Image.Image:
    """Rasterize one PDF page with PyMuPDF at `render_scale` zoom."""
    pdf_doc = fitz.open(stream=data, filetype="pdf")
    try:
        if pdf_doc.page_count == 0:
            raise SourceConversionError("The PDF has no pages")
        if pdf_doc.page_count > 1:
            logger.warning(
                f"PDF has {pdf_doc.page_count} pages; only page "
                f"{page_number + 1} is used"
            )
        page = pdf_doc.load_page(page_number)
        mat = fitz.Matrix(render_scale, render_scale)
        pix = page.get_pixmap(matrix=mat, alpha=False)
        mode = "RGB" if pix.n < 4 else "RGBA"
        pil_image = Image.frombytes(mode, (pix.width, pix.height), pix.samples)
        logger.info(
            f"PDF page {page_number + 1} rendered at zoom {render_scale}: "
            f"{pix.width}x{pix.height}px"
        )
        return pil_image
    finally:
        pdf_doc.close()


def decode_source_image(data: bytes) -> Image.Image:
    """Decode an image upload, honouring its EXIF orientation."""
    with Image.open(BytesIO(data)) as opened:
        image = ImageOps.exif_transpose(opened)
        image.load()
    return image


def convert_source(source: SourceFile, render_scale: float = 2.0) -> Image.Image:
    """
    Produce the RGBA raster the pipeline works on.

    Any decoding or rasterizing failure is reported as a
    `SourceConversionError`.
    """
    if not source.data:
        raise SourceConversionError("The uploaded file is empty")

    kind = source.kind
    try:
        if kind == "pdf":
            image = render_pdf_page(source.data, render_scale)
        else:
            image = decode_source_image(source.data)
    except SourceConversionError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, RuntimeError) as exc:
        raise SourceConversionError(
            f"Could not read {source.filename or 'the upload'} as {kind}: {exc}"
        ) from exc

    if image.width <= 0 or image.height <= 0:
        raise SourceConversionError("The source has no pixels")
    logger.info(
        f"Source converted: kind={kind}, {image.width}x{image.height}px, "
        f"mode={image.mode}"
    )
    return image.convert("RGBA")
