from io import BytesIO
import base64

from PIL import Image

MM_PER_INCH = 25.4
POINTS_PER_MM = 2.83465


def mm_to_pixels(mm: float, dpi: int) -> int:
    """Convert a physical length in millimeters to whole pixels at `dpi`."""
    return round(mm * dpi / MM_PER_INCH)


def mm_to_points(mm: float) -> float:
    """Convert millimeters to PDF points."""
    return mm * POINTS_PER_MM


def calculate_constrained_dimensions(
    desired_ratio: float,
    min_dimension: int = 720,
    max_dimension: int = 1536,
    tolerance: float = 0.01
) -> tuple[int, int]:
    """
    Calculate dimensions matching desired ratio within tool constraints.
    Favors dimensions near the middle of the range for balanced resolution.

    Args:
        desired_ratio: Target aspect ratio (width/height)
        min_dimension: Minimum allowed dimension (default: 720)
        max_dimension: Maximum allowed dimension (default: 1536)
        tolerance: Acceptable ratio deviation (default: 0.01)

    Returns:
        Tuple of (width, height) in pixels

    Raises:
        ValueError: If no valid dimensions found within constraints
    """
    best_match = None
    best_error = float('inf')
    target_dimension = (min_dimension + max_dimension) / 2
    best_distance_from_target = float('inf')

    for width in range(min_dimension, max_dimension + 1):
        ideal_height = width / desired_ratio

        for height in [int(ideal_height), int(ideal_height) + 1]:
            if not min_dimension <= height <= max_dimension:
                continue
            error = abs(width / height - desired_ratio)
            if error > tolerance:
                continue
            distance_from_target = abs((width + height) / 2 -
                                       target_dimension)
            if distance_from_target < best_distance_from_target or \
               (distance_from_target == best_distance_from_target
                    and error < best_error):
                best_error = error
                best_match = (width, height)
                best_distance_from_target = distance_from_target

    if best_match is None:
        raise ValueError(
            f"Cannot achieve ratio {desired_ratio:.3f} within tolerance "
            f"{tolerance} and constraints [{min_dimension}, {max_dimension}]"
        )
    return best_match


def encode_image(image: Image.Image, format: str = "PNG", **options) -> bytes:
    """Encode a PIL image into bytes of the given format."""
    if format.upper() in ("JPEG", "JPG") and image.mode != "RGB":
        image = flatten_to_rgb(image)
    with BytesIO() as buffer:
        image.save(buffer, format=format, **options)
        return buffer.getvalue()


def flatten_to_rgb(image: Image.Image) -> Image.Image:
    """Composite an image over white and drop the alpha channel."""
    if image.mode == "RGB":
        return image
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, (0, 0), rgba)
    return background


def image_to_data_uri(image: Image.Image) -> str:
    """Encode a PIL image as a base64 PNG data URI."""
    b64 = base64.b64encode(encode_image(image, "PNG")).decode("utf-8")
    return f"data:image/png;base64,{b64}"


def decode_image(payload: bytes | str) -> Image.Image:
    """Decode raw bytes, base64 or a data URI into a loaded PIL image."""
    if isinstance(payload, str):
        if payload.startswith("data:"):
            payload = payload.split(",", 1)[1]
        payload = base64.b64decode(payload)
    image = Image.open(BytesIO(payload))
    image.load()
    return image
