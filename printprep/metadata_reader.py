import fitz

from printprep.utils import POINTS_PER_MM


def _rect_to_list(rect: fitz.Rect) -> list[float]:
    return [round(rect.x0, 2), round(rect.y0, 2),
            round(rect.x1, 2), round(rect.y1, 2)]


def read_document_info(pdf_bytes: bytes) -> dict:
    """
    Inspect an exported print PDF.

    Reports the page count, the first page's size in points and mm, its
    media/trim/bleed boxes, the number of embedded images and vector
    drawings, and the document metadata.
    """
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        info = {
            "page_count": doc.page_count,
            "metadata": {k: v for k, v in (doc.metadata or {}).items() if v},
        }
        if doc.page_count == 0:
            return info

        page = doc[0]
        width_pts, height_pts = page.rect.width, page.rect.height
        info.update({
            "page_size_pts": [round(width_pts, 2), round(height_pts, 2)],
            "page_size_mm": [round(width_pts / POINTS_PER_MM, 2),
                             round(height_pts / POINTS_PER_MM, 2)],
            "mediabox": _rect_to_list(page.mediabox),
            "trimbox": _rect_to_list(page.trimbox),
            "bleedbox": _rect_to_list(page.bleedbox),
            "image_count": len(page.get_images(full=True)),
            "drawing_count": len(page.get_drawings()),
        })
        return info
    finally:
        doc.close()
