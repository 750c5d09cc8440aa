import io

import pytest
from PIL import Image

from preprocess import prepare_upload


def test_small_png_passes_through(png_bytes):
    data, mime = prepare_upload(png_bytes, "image/png")
    assert data == png_bytes
    assert mime == "image/png"


def test_oversized_image_is_compressed():
    noisy = Image.effect_noise((256, 256), 100).convert("RGB")
    buf = io.BytesIO()
    noisy.save(buf, format="PNG")
    raw = buf.getvalue()

    data, mime = prepare_upload(raw, "image/png", max_bytes=len(raw) // 2)
    assert len(data) <= len(raw) // 2
    assert mime in {"image/webp", "image/jpeg"}
    Image.open(io.BytesIO(data)).verify()


def test_rotated_jpeg_is_reencoded_upright():
    img = Image.new("RGB", (40, 20), color=(10, 20, 30))
    exif = img.getexif()
    exif[0x0112] = 6
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif)

    data, mime = prepare_upload(buf.getvalue(), "image/jpeg")
    assert mime == "image/jpeg"
    assert Image.open(io.BytesIO(data)).size == (20, 40)


def test_unreadable_bytes_raise():
    with pytest.raises(ValueError):
        prepare_upload(b"\x00\x01", "image/png")
