from __future__ import annotations

import hashlib
import io
import json
import re
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from batch import GeneratedImageBatch, OutputSpec
from client import GeneratedImage
from codec import UploadedImage, extension_for, parse_data_uri, split_data_uri


SANITIZE_RE = re.compile(r"[^A-Za-z0-9._\- ]+")
URL_RE = re.compile(r"(https?://[^\s]+)")
DOWNLOAD_PREFIX = "perfume_creative"


def sanitize_for_fs(name: str, max_len: int = 80) -> str:
    clean = SANITIZE_RE.sub("_", name).strip().replace(" ", "_")
    return clean[:max_len] if clean else "untitled"


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def upload_token(raw: bytes, file_id: Optional[str] = None) -> str:
    """Identity of an uploaded file, used to detect a replaced upload."""
    if file_id:
        return f"id:{file_id}"
    return "sha1:" + hashlib.sha1(raw).hexdigest()


def linkify(message: str) -> str:
    """Turn bare URLs in an error message into markdown links."""
    def _sub(m: re.Match) -> str:
        url = m.group(1)
        trail = ""
        # sentence punctuation right after a URL is not part of it
        while url and url[-1] in ".,;:)":
            trail = url[-1] + trail
            url = url[:-1]
        return f"[{url}]({url}){trail}"
    return URL_RE.sub(_sub, message)


def download_filename(image: GeneratedImage, position: int) -> str:
    mime, _ = split_data_uri(image.data_uri)
    return f"{DOWNLOAD_PREFIX}_{sanitize_for_fs(image.spec_id)}_{position}.{extension_for(mime)}"


def iter_downloads(batch: GeneratedImageBatch, specs: Iterable[OutputSpec]) -> List[Tuple[str, GeneratedImage]]:
    """Flatten a batch in spec order and pair every image with its file name.

    Positions are 1-based and run across all groups.
    """
    items: List[Tuple[str, GeneratedImage]] = []
    for spec in specs:
        for image in batch.get(spec.id, []):
            items.append((download_filename(image, len(items) + 1), image))
    return items


@dataclass
class SaveResult:
    folder: Path
    image_paths: List[Path]
    meta_path: Path


def save_batch(
    *,
    batch: GeneratedImageBatch,
    specs: List[OutputSpec],
    output_base: Path,
    model: str,
    source: Optional[UploadedImage] = None,
    suffix: Optional[str] = None,
) -> SaveResult:
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    suffix_clean = sanitize_for_fs(suffix) if suffix else None
    folder_name = "_".join(filter(None, [timestamp, DOWNLOAD_PREFIX, suffix_clean]))
    folder = output_base / folder_name
    ensure_dir(folder)

    if source is not None:
        refs_dir = folder / "references"
        ensure_dir(refs_dir)
        raw, mime = parse_data_uri(source.data_uri)
        ref_name = f"{sanitize_for_fs(Path(source.name).stem) or 'ref'}.{extension_for(mime)}"
        (refs_dir / ref_name).write_bytes(raw)

    image_paths: List[Path] = []
    items = []
    for filename, image in iter_downloads(batch, specs):
        raw, _ = parse_data_uri(image.data_uri)
        path = folder / filename
        path.write_bytes(raw)
        image_paths.append(path)
        items.append({"file": filename, "spec_id": image.spec_id})

    meta = {
        "model": model,
        "created": timestamp,
        "num_images": len(image_paths),
        "requested": {spec.id: spec.count for spec in specs},
        "received": {spec.id: len(batch.get(spec.id, [])) for spec in specs},
        "items": items,
    }
    meta_path = folder / "metadata.json"
    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(meta, f, ensure_ascii=False, indent=2)

    return SaveResult(folder=folder, image_paths=image_paths, meta_path=meta_path)


def zip_batch(batch: GeneratedImageBatch, specs: Iterable[OutputSpec]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for filename, image in iter_downloads(batch, specs):
            raw, _ = parse_data_uri(image.data_uri)
            zf.writestr(filename, raw)
    return buf.getvalue()
