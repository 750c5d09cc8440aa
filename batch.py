from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from client import REMOTE, GeneratedImage, ImageResult, error_for
from codec import UploadedImage


ALL_FAILED_MESSAGE = "All image generation requests failed."

GeneratedImageBatch = Dict[str, List[GeneratedImage]]


@dataclass(frozen=True)
class OutputSpec:
    id: str
    count: int
    title: str
    prompt: str

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("OutputSpec.id must not be empty")
        if self.count < 1:
            raise ValueError(f"OutputSpec {self.id!r}: count must be >= 1, got {self.count}")


@dataclass(frozen=True)
class GenerationTask:
    spec_id: str
    prompt: str
    index: int


class ImageClient(Protocol):
    def generate_one(self, source: UploadedImage, prompt: str, spec_id: str = "") -> ImageResult:
        ...


class BatchFailedError(Exception):
    """Raised when not a single task of a batch produced an image."""

    def __init__(self, message: str, failures: Optional[List[ImageResult]] = None):
        super().__init__(message)
        self.message = message
        self.failures = failures or []


def validate_specs(specs: Iterable[OutputSpec]) -> None:
    seen = set()
    for spec in specs:
        if spec.id in seen:
            raise ValueError(f"duplicate OutputSpec id: {spec.id}")
        seen.add(spec.id)


def total_images(specs: Iterable[OutputSpec]) -> int:
    return sum(spec.count for spec in specs)


def expand_tasks(specs: Iterable[OutputSpec]) -> List[GenerationTask]:
    tasks: List[GenerationTask] = []
    for spec in specs:
        for i in range(spec.count):
            tasks.append(GenerationTask(spec_id=spec.id, prompt=spec.prompt, index=i))
    return tasks


def group_results(images: Iterable[GeneratedImage]) -> GeneratedImageBatch:
    """Group images by spec id, keeping the order they arrive in."""
    grouped: GeneratedImageBatch = {}
    for image in images:
        grouped.setdefault(image.spec_id, []).append(image)
    return grouped


def _run_task(client: ImageClient, source: UploadedImage, task: GenerationTask) -> ImageResult:
    try:
        return client.generate_one(source, task.prompt, task.spec_id)
    except Exception as e:
        # a crashing call is just another failed task
        return ImageResult(spec_id=task.spec_id, error=error_for(REMOTE, repr(e)))


def generate_batch(
    client: ImageClient,
    source: UploadedImage,
    specs: List[OutputSpec],
    *,
    logger: Optional[Callable[[str], None]] = None,
    on_settled: Optional[Callable[[int, int, ImageResult], None]] = None,
) -> GeneratedImageBatch:
    """Fan out one call per requested image and regroup the successes by spec.

    Every task is submitted at once and the call returns only after all of them
    have settled. Raises BatchFailedError when nothing succeeded.
    """
    def _log(msg: str) -> None:
        if logger is not None:
            try:
                logger(msg)
            except Exception:
                pass

    validate_specs(specs)
    tasks = expand_tasks(specs)
    total = len(tasks)
    _log(f"batch start | specs={len(specs)} tasks={total}")
    if not tasks:
        raise BatchFailedError(ALL_FAILED_MESSAGE)

    successes: List[GeneratedImage] = []
    failures: List[ImageResult] = []
    with ThreadPoolExecutor(max_workers=total) as ex:
        futures = [ex.submit(_run_task, client, source, task) for task in tasks]
        for done, fut in enumerate(as_completed(futures), start=1):
            result = fut.result()
            if result.ok:
                successes.append(result.image)
            else:
                failures.append(result)
            if on_settled is not None:
                try:
                    on_settled(done, total, result)
                except Exception as e:
                    _log(f"progress callback error | {e}")

    _log(f"batch settled | ok={len(successes)} failed={len(failures)}")
    if not successes:
        first = failures[0].error if failures else None
        message = first.message if first is not None and first.message else ALL_FAILED_MESSAGE
        raise BatchFailedError(message, failures)
    return group_results(successes)
