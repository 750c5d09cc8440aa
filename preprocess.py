from __future__ import annotations

import io
from typing import Tuple

from PIL import Image, ImageOps

try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
except Exception:
    pass


# inline request payloads to the API are capped at 20MB; stay well clear of it
MAX_UPLOAD_BYTES = 7_000_000
PASSTHROUGH_MIME = {"image/png", "image/jpeg", "image/webp"}


def fix_orientation(pil_image: Image.Image) -> Image.Image:
    """Correct EXIF-based orientation; return image unchanged on failure."""
    try:
        return ImageOps.exif_transpose(pil_image)
    except Exception:
        return pil_image


def _needs_transpose(pil_image: Image.Image) -> bool:
    try:
        return pil_image.getexif().get(0x0112, 1) not in (0, 1)
    except Exception:
        return False


def compress_to_target(pil_image: Image.Image, *, max_bytes: int = MAX_UPLOAD_BYTES, prefer_webp: bool = True) -> Tuple[bytes, str]:
    # Try WEBP first (lossy) with quality sweep, then JPEG if not small enough
    rgb = pil_image.convert("RGB")
    if prefer_webp:
        for q in [90, 85, 80, 75, 70, 65, 60]:
            buf = _encode_image(rgb, format="WEBP", quality=q)
            if len(buf) <= max_bytes:
                return buf, "image/webp"
    # JPEG fallback
    for q in [90, 85, 80, 75, 70, 65, 60]:
        buf = _encode_image(rgb, format="JPEG", quality=q)
        if len(buf) <= max_bytes:
            return buf, "image/jpeg"
    # Last resort: downscale by half and try again once
    downsized = rgb.resize(
        (max(1, rgb.width // 2), max(1, rgb.height // 2)), Image.LANCZOS
    )
    return _encode_image(downsized, format="JPEG", quality=75), "image/jpeg"


def _encode_image(pil_image: Image.Image, *, format: str, quality: int = 85) -> bytes:
    buf = io.BytesIO()
    save_params = {}
    if format.upper() in {"JPEG", "JPG"}:
        save_params = {"quality": quality, "optimize": True}
    elif format.upper() == "WEBP":
        save_params = {"quality": quality, "method": 6}
    pil_image.save(buf, format=format, **save_params)
    return buf.getvalue()


def prepare_upload(raw: bytes, mime_type: str, *, max_bytes: int = MAX_UPLOAD_BYTES) -> Tuple[bytes, str]:
    """Return bytes and mime type ready to send as the source image.

    Supported, upright, small-enough files pass through untouched. Anything
    else (HEIC, EXIF-rotated, oversized) is re-encoded. Raises ValueError when
    the bytes cannot be opened as an image.
    """
    try:
        pil = Image.open(io.BytesIO(raw))
        pil.load()
    except Exception as e:
        raise ValueError(f"unreadable image: {e}") from e
    rotated = _needs_transpose(pil)
    if mime_type in PASSTHROUGH_MIME and not rotated and len(raw) <= max_bytes:
        return raw, mime_type
    upright = fix_orientation(pil)
    if len(raw) <= max_bytes:
        buf = io.BytesIO()
        upright.convert("RGB").save(buf, format="JPEG", quality=95)
        if len(buf.getvalue()) <= max_bytes:
            return buf.getvalue(), "image/jpeg"
    return compress_to_target(upright, max_bytes=max_bytes)
