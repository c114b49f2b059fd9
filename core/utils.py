# core/utils.py
"""
Core Utility Functions.

Small helpers shared by the image store components: ids, timestamps and
file name handling.
"""
import datetime
import mimetypes
import os
import uuid
from typing import Optional, Tuple


def generate_image_id() -> str:
    """Generates a fresh blob id."""
    return str(uuid.uuid4())


def utc_now() -> datetime.datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Normalize a timestamp to timezone-aware UTC. SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


# mimetypes may list .jpe or .svgz first depending on the platform tables
_PREFERRED_EXTENSIONS = {"image/jpeg": "jpg", "image/svg+xml": "svg"}


def extension_for_mime(mime_type: Optional[str]) -> str:
    """'image/png' -> 'png'. Unknown types fall back to 'jpg'."""
    if (mime_type or "").lower() in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[mime_type.lower()]
    guessed = mimetypes.guess_extension(mime_type or "") or ".jpg"
    return guessed[1:].lower()


def split_file_name(file_name: str, mime_type: Optional[str] = None) -> Tuple[str, str]:
    """Returns (stem, file_type) where file_type is the lowercase extension without the dot."""
    stem, ext = os.path.splitext(file_name)
    if ext:
        return stem, ext[1:].lower()
    return stem, extension_for_mime(mime_type)


def suffixed_file_name(file_name: str, counter: int) -> str:
    """'logo.png', 2 -> 'logo_2.png'. Used to resolve filename collisions."""
    stem, ext = os.path.splitext(file_name)
    return f"{stem}_{counter}{ext}"
