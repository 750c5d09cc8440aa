import base64
import io
import sys
import threading
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest
from PIL import Image

from client import GeneratedImage, ImageResult, error_for
from codec import UploadedImage, encode_data_uri


def make_png(size=(8, 8), color=(200, 30, 90)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="PNG")
    return buf.getvalue()


class FakeClient:
    """Stands in for GeminiImageClient; ``outcome(spec_id)`` decides each call.

    ``outcome`` returns a failure kind string to fail, or None to succeed.
    """

    def __init__(self, outcome=None, raise_for=None):
        self.outcome = outcome or (lambda spec_id: None)
        self.raise_for = raise_for or set()
        self.calls = []
        self._lock = threading.Lock()

    def generate_one(self, source, prompt, spec_id=""):
        with self._lock:
            self.calls.append((spec_id, prompt))
        if spec_id in self.raise_for:
            raise RuntimeError("boom")
        kind = self.outcome(spec_id)
        if kind is not None:
            return ImageResult(spec_id=spec_id, error=error_for(kind))
        png = make_png(color=(len(self.calls) % 255, 0, 0))
        return ImageResult(
            spec_id=spec_id,
            image=GeneratedImage(spec_id=spec_id, data_uri=encode_data_uri(png, "image/png")),
        )


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def uploaded(png_bytes):
    return UploadedImage(data_uri=encode_data_uri(png_bytes, "image/png"), mime_type="image/png", name="bottle.png")


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def b64_png(png_bytes):
    return base64.b64encode(png_bytes).decode()
