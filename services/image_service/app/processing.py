# services/image_service/app/processing.py
"""
Pillow helpers for the image service: upload validation, dimension probing and
fixed-size rendition encoding. Everything here is synchronous and CPU-bound;
callers run it off the event loop.
"""

import io
import logging
from typing import Iterable, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from core.errors import ImageValidationError
from core.models import VariantPreset

logger = logging.getLogger("WFG_Core").getChild("ImageService").getChild("Processing")

VECTOR_MIME_TYPES = {"image/svg+xml"}
VARIANT_MIME_TYPE = "image/jpeg"
MAX_JPEG_QUALITY = 95


def is_vector(mime_type: str) -> bool:
    return (mime_type or "").lower() in VECTOR_MIME_TYPES


def validate_upload(payload: bytes, mime_type: str, max_bytes: int, allowed_mime_types: Iterable[str]) -> None:
    """Rejects disallowed, oversized or empty uploads. Runs before any storage I/O."""
    allowed = [m.lower() for m in allowed_mime_types]
    if (mime_type or "").lower() not in allowed:
        raise ImageValidationError(f"Unsupported file type: {mime_type}. Allowed: {', '.join(allowed)}")
    size = len(payload) if payload is not None else 0
    if size == 0:
        raise ImageValidationError("Image file is empty or corrupted")
    if size > max_bytes:
        raise ImageValidationError(
            f"File size exceeds limit ({size / 1024 / 1024:.2f}MB > {max_bytes / 1024 / 1024:.0f}MB)"
        )


def probe_dimensions(payload: bytes, mime_type: str) -> Tuple[Optional[int], Optional[int]]:
    """Returns (width, height). Vector images have no intrinsic pixel size."""
    if is_vector(mime_type):
        return None, None
    try:
        with Image.open(io.BytesIO(payload)) as img:
            return img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ImageValidationError(f"Payload is not a readable {mime_type} image: {e}") from e


def clamp_quality(quality: int) -> int:
    return max(1, min(int(quality), MAX_JPEG_QUALITY))


def render_variant(payload: bytes, mime_type: str, preset: VariantPreset) -> Tuple[bytes, str]:
    """
    Renders one variant and returns (bytes, mime_type).

    Vector images are passed through untouched. Raster images are cropped to fill
    the preset box around the center and re-encoded as JPEG.
    """
    if is_vector(mime_type):
        logger.debug(f"Vector source ({mime_type}), storing variant unchanged.")
        return payload, mime_type

    with Image.open(io.BytesIO(payload)) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode != "RGB":
            img = img.convert("RGB") # JPEG has no alpha or palette
        fitted = ImageOps.fit(img, (preset.width, preset.height), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
        buffer = io.BytesIO()
        fitted.save(buffer, format="JPEG", quality=clamp_quality(preset.quality), optimize=True)
    return buffer.getvalue(), VARIANT_MIME_TYPE
