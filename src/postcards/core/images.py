"""Helpers for decoding and validating uploaded images.

Person photos reach the API either as multipart uploads or as ``data:``
URLs captured by the browser.  Before anything is sent to a provider the
bytes are checked for a sensible size and opened with Pillow, so corrupt or
non-image payloads are rejected with a 400 instead of failing deep inside the
generation chain.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.DOTALL)


class ImageValidationError(ValueError):
    """The uploaded image is malformed, too small or too large."""


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a ``data:`` URL into its MIME type and decoded bytes.

    A bare base64 string (no ``data:`` prefix) is also accepted and treated
    as ``image/jpeg``, which is what the camera capture produces.

    Args:
        data_url: ``data:<mime>;base64,<payload>`` string

    Returns:
        Tuple of (mime type, raw bytes)

    Raises:
        ImageValidationError: If the payload is not valid base64
    """
    if not data_url or not data_url.strip():
        raise ImageValidationError("Image data is empty")

    match = _DATA_URL_RE.match(data_url.strip())
    if match:
        mime = match.group(1) or "application/octet-stream"
        payload = match.group(3)
        if not match.group(2):
            raise ImageValidationError("Only base64 data URLs are supported")
    else:
        mime = "image/jpeg"
        payload = data_url.strip()

    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageValidationError(f"Invalid base64 image data: {e}") from e

    return mime, data


def validate_image_bytes(data: bytes, min_bytes: int = 1000, max_bytes: int = 10 * 1024 * 1024) -> str:
    """Check that *data* is a readable image of acceptable size.

    Args:
        data: Raw image bytes
        min_bytes: Smallest accepted payload
        max_bytes: Largest accepted payload

    Returns:
        The image format reported by Pillow (e.g. ``"JPEG"``)

    Raises:
        ImageValidationError: If the size is out of range or Pillow cannot read it
    """
    size = len(data)
    if size < min_bytes:
        raise ImageValidationError(
            f"Image data too small ({size} bytes); the image may be corrupted"
        )
    if size > max_bytes:
        raise ImageValidationError(
            f"Image too large ({size} bytes); maximum is {max_bytes} bytes"
        )

    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ImageValidationError(f"Uploaded file is not a valid image: {e}") from e

    logger.debug(f"Validated {image_format} image ({size} bytes)")
    return image_format or "UNKNOWN"


def extension_for(mime: str) -> str:
    """Return a file extension for an image MIME type."""
    subtype = mime.split("/")[-1].lower() if mime else ""
    if subtype in ("jpeg", "jpg", "pjpeg"):
        return "jpg"
    return subtype or "bin"
