from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Callable, List, MutableMapping, Optional

from batch import BatchFailedError, GeneratedImageBatch, ImageClient, OutputSpec, generate_batch
from client import ImageResult
from codec import UploadedImage, guess_mime, image_from_upload
from preprocess import prepare_upload
from presets import OUTPUT_SPECS
from utils import SaveResult, save_batch


READ_FAILED_MESSAGE = "Failed to read the image file."
UNKNOWN_ERROR_MESSAGE = "An unknown error occurred during image generation."

STATE_DEFAULTS = {
    "uploaded_image": None,
    "generated": None,
    "is_loading": False,
    "error": None,
}


class Phase(str, Enum):
    IDLE = "idle"
    READY = "ready"
    GENERATING = "generating"
    RESULTS = "results"


class StudioController:
    """Drives upload / generate / regenerate / download over a session mapping.

    The mapping is ``st.session_state`` in the app and a plain dict in tests.
    A generate request while a batch is in flight is rejected, not queued.
    """

    def __init__(
        self,
        state: MutableMapping,
        specs: Optional[List[OutputSpec]] = None,
        logger: Optional[Callable[[str], None]] = None,
    ):
        self.state = state
        self.specs = list(specs) if specs is not None else list(OUTPUT_SPECS)
        self.logger = logger
        for key, value in STATE_DEFAULTS.items():
            if key not in self.state:
                self.state[key] = value

    def _log(self, msg: str) -> None:
        if self.logger is not None:
            try:
                self.logger(msg)
            except Exception:
                pass

    @property
    def uploaded_image(self) -> Optional[UploadedImage]:
        return self.state["uploaded_image"]

    @property
    def generated(self) -> Optional[GeneratedImageBatch]:
        return self.state["generated"]

    @property
    def error(self) -> Optional[str]:
        return self.state["error"]

    @property
    def phase(self) -> Phase:
        if self.state["is_loading"]:
            return Phase.GENERATING
        if self.state["uploaded_image"] is None:
            return Phase.IDLE
        if self.state["generated"] is not None:
            return Phase.RESULTS
        return Phase.READY

    def upload(self, raw: bytes, name: str, mime_type: Optional[str] = None) -> bool:
        mime = mime_type or guess_mime(name)
        try:
            data, mime = prepare_upload(raw, mime)
            image = image_from_upload(data, name, mime)
        except ValueError as e:
            self._log(f"upload error | {name}: {e}")
            self.state["error"] = READ_FAILED_MESSAGE
            return False
        self.state["uploaded_image"] = image
        self.state["generated"] = None
        self.state["error"] = None
        self._log(f"upload ok | {name} mime={mime} bytes={len(data)}")
        return True

    def generate(
        self,
        client: ImageClient,
        on_settled: Optional[Callable[[int, int, ImageResult], None]] = None,
    ) -> bool:
        image = self.state["uploaded_image"]
        if image is None:
            self._log("generate ignored | no image uploaded")
            return False
        if self.state["is_loading"]:
            self._log("generate ignored | a batch is already running")
            return False

        self.state["is_loading"] = True
        self.state["error"] = None
        self.state["generated"] = None
        try:
            self.state["generated"] = generate_batch(
                client, image, self.specs, logger=self.logger, on_settled=on_settled
            )
        except BatchFailedError as e:
            self.state["error"] = e.message
            self._log(f"batch failed | {e.message}")
        except Exception as e:
            self.state["error"] = UNKNOWN_ERROR_MESSAGE
            self._log(f"batch error | {e!r}")
        finally:
            self.state["is_loading"] = False
        return self.state["generated"] is not None

    def regenerate(
        self,
        client: ImageClient,
        on_settled: Optional[Callable[[int, int, ImageResult], None]] = None,
    ) -> bool:
        if self.phase is not Phase.RESULTS:
            return False
        return self.generate(client, on_settled=on_settled)

    def clear(self) -> None:
        """Drop the image and any results, back to IDLE."""
        self.state["uploaded_image"] = None
        self.state["generated"] = None
        self.state["error"] = None

    def download_all(self, output_dir: Path, model: str = "", suffix: Optional[str] = None) -> Optional[SaveResult]:
        if self.phase is not Phase.RESULTS:
            return None
        saved = save_batch(
            batch=self.state["generated"],
            specs=self.specs,
            output_base=output_dir,
            model=model,
            source=self.state["uploaded_image"],
            suffix=suffix,
        )
        self._log(f"saved {len(saved.image_paths)} image(s) to {saved.folder}")
        return saved
