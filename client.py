from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import requests

from codec import UploadedImage, to_inline_part, wrap_data_uri


API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash-image"
DEFAULT_TIMEOUT = 120

NO_IMAGE_MESSAGE = "No image was generated in the response."
GENERIC_MESSAGE = "Failed to generate image. Please try again later."
QUOTA_MESSAGE = (
    "You exceeded your current quota. Please check your plan and billing details. "
    "For more information on this error, head to: https://ai.google.dev/gemini-api/docs/rate-limits. "
    "To monitor your current usage, head to: https://ai.dev/usage?tab=rate-limit."
)

# failure kinds
NO_IMAGE = "no_image"
QUOTA = "quota"
REMOTE = "remote"

_QUOTA_TEXT_RE = re.compile(r"RESOURCE_EXHAUSTED|\b429\b")
# object reprs in transport errors carry memory addresses like 0x7f3c8b429d50
_HEX_ADDR_RE = re.compile(r"0x[0-9a-fA-F]+")


def load_api_key() -> str:
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
    if not api_key:
        raise RuntimeError(
            "GEMINI_API_KEY is not set. Create env.local and set GEMINI_API_KEY."
        )
    return api_key


class GenerationError(Exception):
    kind = REMOTE

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail


class NoImageError(GenerationError):
    kind = NO_IMAGE


class QuotaExceededError(GenerationError):
    kind = QUOTA


class RemoteError(GenerationError):
    kind = REMOTE


@dataclass(frozen=True)
class GeneratedImage:
    spec_id: str
    data_uri: str


@dataclass
class ImageResult:
    spec_id: str
    image: Optional[GeneratedImage] = None
    error: Optional[GenerationError] = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def classify_failure(
    status_code: Optional[int],
    payload: Optional[object] = None,
    text: str = "",
) -> str:
    """Map a failed remote call to QUOTA or REMOTE.

    Structured signals (HTTP status, error.code, error.status) decide when
    present; the raw text is only searched when none of them is available.
    """
    if status_code == 429:
        return QUOTA
    err = _error_object(payload)
    if err:
        if err.get("code") == 429 or err.get("status") == "RESOURCE_EXHAUSTED":
            return QUOTA
        if err.get("code") is not None or err.get("status"):
            return REMOTE
    if status_code is not None:
        return REMOTE
    if _QUOTA_TEXT_RE.search(_HEX_ADDR_RE.sub("", text or "")):
        return QUOTA
    return REMOTE


def _error_object(payload: Optional[object]) -> Optional[Dict]:
    # the API sometimes wraps the error body in a one-element list
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return None


def error_for(kind: str, detail: str = "") -> GenerationError:
    if kind == QUOTA:
        return QuotaExceededError(QUOTA_MESSAGE, detail)
    if kind == NO_IMAGE:
        message = NO_IMAGE_MESSAGE
        if detail:
            message = f"{NO_IMAGE_MESSAGE} ({detail})"
        return NoImageError(message, detail)
    return RemoteError(GENERIC_MESSAGE, detail)


def build_request(source: UploadedImage, prompt: str) -> Dict:
    return {
        "contents": [{"parts": [to_inline_part(source), {"text": prompt}]}],
        "generationConfig": {"responseModalities": ["IMAGE"]},
    }


def extract_image(data: Dict) -> Optional[Tuple[str, str]]:
    """Return (mime_type, base64 payload) of the first inline image part."""
    candidates: List[Dict] = data.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return mime, inline["data"]
    return None


def _no_image_reason(data: Dict) -> str:
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        return f"blocked: {feedback['blockReason']}"
    candidates = data.get("candidates") or []
    if candidates and candidates[0].get("finishReason"):
        return f"finish reason: {candidates[0]['finishReason']}"
    return ""


def _safe_json(resp: requests.Response) -> Optional[object]:
    try:
        return resp.json()
    except ValueError:
        return None


class GeminiImageClient:
    """One image-to-image call per request against the Gemini REST API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        api_base: str = API_BASE,
        session: Optional[requests.Session] = None,
        logger: Optional[Callable[[str], None]] = None,
    ):
        if not api_key:
            raise RuntimeError("An API key is required to create the generation client.")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")
        # one requests.post per call unless a session is injected
        self.session = session
        self.logger = logger

    @classmethod
    def from_env(
        cls,
        logger: Optional[Callable[[str], None]] = None,
        model: Optional[str] = None,
    ) -> "GeminiImageClient":
        raw_timeout = os.getenv("GEMINI_TIMEOUT", str(DEFAULT_TIMEOUT))
        try:
            timeout = float(raw_timeout)
        except ValueError:
            raise RuntimeError(f"GEMINI_TIMEOUT must be a number of seconds, got {raw_timeout!r}.") from None
        if timeout <= 0:
            raise RuntimeError(f"GEMINI_TIMEOUT must be positive, got {raw_timeout!r}.")
        return cls(
            load_api_key(),
            model=model or os.getenv("GEMINI_MODEL_ID", DEFAULT_MODEL),
            timeout=timeout,
            logger=logger,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def _log(self, msg: str) -> None:
        if self.logger is not None:
            try:
                self.logger(msg)
            except Exception:
                pass

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

    def _failure(self, spec_id: str, kind: str, detail: str = "") -> ImageResult:
        error = error_for(kind, detail)
        self._log(f"generate failed | spec={spec_id} kind={kind} detail={detail[:300]}")
        return ImageResult(spec_id=spec_id, error=error)

    def generate_one(self, source: UploadedImage, prompt: str, spec_id: str = "") -> ImageResult:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        payload = build_request(source, prompt)
        self._log(f"POST {self.endpoint} | spec={spec_id}")
        t0 = time.time()
        try:
            post = self.session.post if self.session is not None else requests.post
            resp = post(
                self.endpoint, headers=self._headers(), json=payload, timeout=self.timeout
            )
        except requests.RequestException as e:
            status = e.response.status_code if e.response is not None else None
            return self._failure(spec_id, classify_failure(status, None, str(e)), str(e))
        dt = (time.time() - t0) * 1000
        self._log(f"spec={spec_id} -> status={resp.status_code} t={dt:.0f}ms")

        if resp.status_code >= 400:
            kind = classify_failure(resp.status_code, _safe_json(resp), resp.text)
            return self._failure(spec_id, kind, f"API error {resp.status_code}: {resp.text}")

        data = _safe_json(resp)
        if not isinstance(data, dict):
            return self._failure(spec_id, REMOTE, "response was not a JSON object")
        found = extract_image(data)
        if found is None:
            return self._failure(spec_id, NO_IMAGE, _no_image_reason(data))
        mime, b64 = found
        image = GeneratedImage(spec_id=spec_id, data_uri=wrap_data_uri(b64, mime))
        return ImageResult(spec_id=spec_id, image=image)

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
