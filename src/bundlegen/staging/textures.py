"""Texture re-encoding and size clamping (Pillow)."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..logging import get_logger

__all__ = ["encode_png", "decode_image", "downsized_dimensions", "downsize_if_needed"]


def decode_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def _readback_rgba(img: Image.Image) -> Image.Image:
    # Pixel readback into a fresh RGBA buffer for modes PNG cannot store
    pixels = np.asarray(img.convert("RGBA"), dtype=np.uint8)
    return Image.fromarray(np.ascontiguousarray(pixels))


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    try:
        img.save(buf, format="PNG")
    except (OSError, ValueError, KeyError):
        get_logger("staging").debug(
            "direct PNG encode failed for mode %s; using RGBA readback", img.mode
        )
        buf = io.BytesIO()
        _readback_rgba(img).save(buf, format="PNG")
    return buf.getvalue()


def downsized_dimensions(width: int, height: int, ceiling: int) -> Tuple[int, int]:
    """Target size for ``width``x``height`` under ``ceiling`` (aspect kept)."""
    largest = max(width, height)
    if largest <= ceiling:
        return width, height
    # Integer floor of side * ceiling / largest
    return max(1, width * ceiling // largest), max(1, height * ceiling // largest)


def downsize_if_needed(path: Path, ceiling: int) -> bool:
    """Clamp the texture at ``path`` to ``ceiling``; True when it was rewritten."""
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        return False
    try:
        img = Image.open(path)
        img.load()
    except (UnidentifiedImageError, OSError):
        # Formats Pillow cannot decode keep their original size
        get_logger("staging").debug("cannot decode %s; size left as is", path)
        return False
    w, h = img.size
    new_size = downsized_dimensions(w, h, ceiling)
    if new_size == (w, h):
        return False
    fmt = img.format or "PNG"
    resized = img.resize(new_size, Image.Resampling.BILINEAR)
    buf = io.BytesIO()
    try:
        resized.save(buf, format=fmt)
        data = buf.getvalue()
    except (OSError, ValueError, KeyError):
        data = encode_png(resized)
    path.write_bytes(data)
    get_logger("staging").debug(
        "downsized %s from %dx%d to %dx%d", path.name, w, h, *new_size
    )
    return True
