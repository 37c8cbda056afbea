"""RGBA pixel transforms and the image codec.

Buffers are interleaved RGBA, 4 bytes per pixel, row-major, origin top-left.
The transform functions never raise on bad input: a buffer whose length is not
``width * height * 4``, or a crop that collapses to nothing, yields ``b""``,
which callers must treat as a validation failure.
"""
from __future__ import annotations

import io
import logging
import math

from PIL import Image, UnidentifiedImageError

from .tools.errors import DecodeError, ValidationError

BYTES_PER_PIXEL = 4

log = logging.getLogger("imgedit.imaging")

# Angle (clockwise degrees) -> Pillow transpose. Pillow's ROTATE_* are counter-clockwise.
_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    -90: Image.Transpose.ROTATE_90,
    180: Image.Transpose.ROTATE_180,
}

_MIME_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/gif": "GIF",
    "image/webp": "WEBP",
    "image/bmp": "BMP",
}


def _expected_len(width: int, height: int) -> int:
    return max(width, 0) * max(height, 0) * BYTES_PER_PIXEL


def _round(value: float) -> int:
    # Half away from zero; the inputs here are never negative.
    return int(math.floor(value + 0.5))


def _as_image(pixels: bytes, width: int, height: int) -> Image.Image:
    return Image.frombytes("RGBA", (width, height), bytes(pixels))


# ---------------------------------------------------------------------------
# Rotate
# ---------------------------------------------------------------------------

def rotated_dimensions(width: int, height: int, angle: int) -> tuple[int, int]:
    if angle in (90, -90):
        return height, width
    return width, height


def rotate_pixels(pixels: bytes, width: int, height: int, angle: int) -> bytes:
    """Rotate clockwise by 90, -90 or 180 degrees.

    Any other angle passes the buffer through unchanged.
    """
    if len(pixels) != _expected_len(width, height):
        return b""
    transpose = _TRANSPOSE.get(angle)
    if transpose is None:
        log.warning("unsupported rotation angle %r, returning input unchanged", angle)
        return bytes(pixels)
    if width <= 0 or height <= 0:
        return b""
    return _as_image(pixels, width, height).transpose(transpose).tobytes()


# ---------------------------------------------------------------------------
# Crop
# ---------------------------------------------------------------------------

def _clamp(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def _crop_box(
    width: int, height: int, left: float, top: float, right: float, bottom: float
) -> tuple[int, int, int, int] | None:
    left, top, right, bottom = _clamp(left), _clamp(top), _clamp(right), _clamp(bottom)
    if left >= right or top >= bottom:
        return None
    return (
        _round(width * left),
        _round(height * top),
        _round(width * right),
        _round(height * bottom),
    )


def cropped_dimensions(
    width: int, height: int, left: float, top: float, right: float, bottom: float
) -> tuple[int, int]:
    box = _crop_box(width, height, left, top, right, bottom)
    if box is None:
        return 0, 0
    start_x, start_y, end_x, end_y = box
    return max(end_x - start_x, 0), max(end_y - start_y, 0)


def crop_pixels(
    pixels: bytes,
    width: int,
    height: int,
    left: float,
    top: float,
    right: float,
    bottom: float,
) -> bytes:
    """Crop by ratio bounds, each clamped to [0, 1]."""
    if len(pixels) != _expected_len(width, height):
        return b""
    box = _crop_box(width, height, left, top, right, bottom)
    if box is None:
        return b""
    start_x, start_y, end_x, end_y = box
    if end_x - start_x <= 0 or end_y - start_y <= 0:
        return b""
    return _as_image(pixels, width, height).crop(box).tobytes()


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def detect_mime_type(data: bytes) -> str | None:
    """Sniff the image MIME type from its leading bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(data) >= 12 and data[0:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"BM"):
        return "image/bmp"
    return None


def mime_to_format(mime_type: str) -> str:
    fmt = _MIME_FORMATS.get(mime_type.strip().lower())
    if fmt is None:
        raise DecodeError(f"unsupported mime type: {mime_type}")
    return fmt


def _open(data: bytes, mime_type: str) -> Image.Image:
    fmt = mime_to_format(mime_type)
    try:
        img = Image.open(io.BytesIO(data), formats=[fmt])
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"decode image failed: {exc}") from exc
    return img


def decode_image(data: bytes, mime_type: str) -> tuple[bytes, int, int]:
    """Decode *data* to ``(rgba_pixels, width, height)``."""
    with _open(data, mime_type) as img:
        rgba = img.convert("RGBA")
        width, height = rgba.size
        return rgba.tobytes(), width, height


def get_dimensions(data: bytes, mime_type: str) -> tuple[int, int]:
    with _open(data, mime_type) as img:
        return img.size


def encode_png(pixels: bytes, width: int, height: int) -> bytes:
    if width <= 0 or height <= 0 or len(pixels) != _expected_len(width, height):
        raise ValidationError(
            f"invalid rgba buffer: {len(pixels)} bytes for {width}x{height}"
        )
    buf = io.BytesIO()
    _as_image(pixels, width, height).save(buf, format="PNG")
    return buf.getvalue()
