from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from PIL import Image


MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}

EXT_BY_MIME = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
}


@dataclass(frozen=True)
class UploadedImage:
    data_uri: str
    mime_type: str
    name: str = "upload"


def wrap_data_uri(payload: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{payload}"


def encode_data_uri(raw: bytes, mime_type: str) -> str:
    return wrap_data_uri(base64.b64encode(raw).decode("utf-8"), mime_type)


def split_data_uri(data_uri: str) -> Tuple[str, str]:
    """Return (mime_type, base64 payload) of a data URI."""
    header, sep, payload = data_uri.partition(",")
    if not sep or not header.startswith("data:"):
        raise ValueError("not a data URI")
    mime_type = header[len("data:"):].split(";", 1)[0]
    return mime_type, payload


def parse_data_uri(data_uri: str) -> Tuple[bytes, str]:
    mime_type, payload = split_data_uri(data_uri)
    try:
        raw = base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 payload: {e}") from e
    return raw, mime_type


def to_inline_part(image: UploadedImage) -> Dict:
    # payload travels as-is; the declared mime type wins over the URI header
    _, payload = split_data_uri(image.data_uri)
    return {"inlineData": {"mimeType": image.mime_type, "data": payload}}


def guess_mime(name: str, default: str = "image/jpeg") -> str:
    return MIME_BY_EXT.get(Path(name).suffix.lower(), default)


def extension_for(mime_type: str) -> str:
    return EXT_BY_MIME.get(mime_type.lower(), "png")


def decode_image(data_uri: str) -> Image.Image:
    raw, _ = parse_data_uri(data_uri)
    return Image.open(io.BytesIO(raw))


def image_from_upload(raw: bytes, name: str, mime_type: Optional[str] = None) -> UploadedImage:
    """Build an UploadedImage from uploaded file bytes.

    Raises ValueError when the bytes are empty or not a readable image.
    """
    if not raw:
        raise ValueError("empty upload")
    try:
        with Image.open(io.BytesIO(raw)) as probe:
            probe.verify()
    except Exception as e:
        raise ValueError(f"unreadable image: {e}") from e
    mime = mime_type or guess_mime(name)
    return UploadedImage(data_uri=encode_data_uri(raw, mime), mime_type=mime, name=name)
