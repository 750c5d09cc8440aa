from __future__ import annotations

import os
import time
from collections import deque
from pathlib import Path
from typing import Deque, Optional

import streamlit as st
from dotenv import load_dotenv

from batch import total_images
from client import DEFAULT_MODEL, GeminiImageClient, ImageResult, load_api_key
from codec import decode_image, parse_data_uri, split_data_uri
from controller import Phase, StudioController
from presets import OUTPUT_SPECS
from utils import ensure_dir, iter_downloads, linkify, upload_token, zip_batch


load_dotenv("env.local", override=False)
load_dotenv(override=False)  # allow standard .env too


st.set_page_config(page_title="Perfume Creative Studio", layout="wide")

GRID_COLUMNS = 4
UPLOAD_TYPES = ["png", "jpg", "jpeg", "webp", "heic", "heif"]


def get_default_output_dir() -> Path:
    base = os.getenv("OUTPUT_BASE_DIR", "outputs")
    return Path(base)


def sidebar() -> Path:
    st.sidebar.header("Settings")
    base_dir = st.sidebar.text_input(
        "Output base folder",
        value=str(get_default_output_dir()),
        help="Where 'Save all to folder' writes generated images and metadata.",
    )
    output_dir = Path(base_dir)

    model = st.sidebar.text_input(
        "Model ID",
        value=os.getenv("GEMINI_MODEL_ID", DEFAULT_MODEL),
        help="Gemini image model used for every request of a batch.",
    )
    st.session_state["model"] = model

    st.sidebar.subheader("Progress")
    # Always recreate progress widgets each run to keep UI stable across reruns
    try:
        current_ratio = 0.0
        if "p_total" in st.session_state:
            total = max(1, int(st.session_state.get("p_total", 1)))
            current_ratio = float(st.session_state.get("p_current", 0)) / float(total)
        st.session_state["progress_bar"] = st.sidebar.progress(current_ratio)
    except Exception:
        st.session_state["progress_bar"] = None
    st.session_state["progress_text"] = st.sidebar.empty()
    if "p_total" in st.session_state:
        st.session_state["progress_text"].write(
            f"{st.session_state.get('p_name','Progress')}: {st.session_state.get('p_current',0)}/{st.session_state.get('p_total',0)}"
        )

    st.sidebar.subheader("Live Logs")
    # Recreate placeholder every run to avoid stale widget references
    st.session_state["log_placeholder"] = st.sidebar.empty()
    if "log_messages" not in st.session_state:
        st.session_state["log_messages"] = []
    _render_logs()
    return output_dir


def log(message: str) -> None:
    ts = time.strftime("%H:%M:%S")
    st.session_state["log_messages"].append(f"[{ts}] {message}")
    _render_logs()


def _render_logs() -> None:
    if "log_placeholder" in st.session_state:
        content = "\n".join(st.session_state.get("log_messages", [])[-200:])
        st.session_state["log_placeholder"].code(content or "(no logs yet)")


def progress_start(name: str, total: int) -> None:
    st.session_state["p_name"] = name
    st.session_state["p_total"] = max(1, int(total))
    st.session_state["p_current"] = 0
    if st.session_state.get("progress_bar") is not None:
        st.session_state["progress_bar"].progress(0.0)
    st.session_state["progress_text"].write(f"{name}: 0/{st.session_state['p_total']}")


def progress_set(current: int) -> None:
    if "p_total" not in st.session_state:
        return
    st.session_state["p_current"] = min(st.session_state["p_total"], int(current))
    ratio = st.session_state["p_current"] / st.session_state["p_total"]
    if st.session_state.get("progress_bar") is not None:
        st.session_state["progress_bar"].progress(ratio)
    st.session_state["progress_text"].write(
        f"{st.session_state.get('p_name','Progress')}: {st.session_state['p_current']}/{st.session_state['p_total']}"
    )


def progress_done() -> None:
    if "p_total" in st.session_state:
        progress_set(st.session_state["p_total"])
        st.session_state["progress_text"].write(
            f"{st.session_state.get('p_name','Progress')}: done ({st.session_state['p_total']}/{st.session_state['p_total']})"
        )


def get_client(pending_logs: Deque[str]) -> GeminiImageClient:
    # worker threads only append to the deque; the script thread renders it
    def _thread_log(msg: str) -> None:
        pending_logs.append(msg)

    return GeminiImageClient.from_env(logger=_thread_log, model=st.session_state.get("model") or None)


def run_batch(controller: StudioController, *, regenerate: bool = False) -> None:
    pending: Deque[str] = deque()
    try:
        client = get_client(pending)
    except RuntimeError as e:
        st.error(str(e))
        st.stop()

    def _flush() -> None:
        while pending:
            log(pending.popleft())

    def _on_settled(done: int, total: int, result: ImageResult) -> None:
        _flush()
        progress_set(done)

    progress_start("Batch", total_images(controller.specs))
    log(f"{'regenerate' if regenerate else 'generate'} start | model={client.model}")
    try:
        with st.spinner("Generating your creatives..."):
            if regenerate:
                controller.regenerate(client, on_settled=_on_settled)
            else:
                controller.generate(client, on_settled=_on_settled)
    finally:
        client.close()
        _flush()
        progress_done()
    st.rerun()


def render_error(message: Optional[str]) -> None:
    if message:
        st.error(f"**Error:** {linkify(message)}")


def render_uploader(controller: StudioController) -> None:
    uploaded = st.file_uploader(
        "Upload a product photo (drag & drop)",
        type=UPLOAD_TYPES,
        accept_multiple_files=False,
        key="product_upload",
    )
    if uploaded is not None:
        raw = uploaded.getvalue()
        token = upload_token(raw, getattr(uploaded, "file_id", None))
        if st.session_state.get("upload_token") != token:
            st.session_state["upload_token"] = token
            controller.upload(raw, uploaded.name, getattr(uploaded, "type", None) or None)
            st.rerun()

    image = controller.uploaded_image
    if image is not None:
        st.image(decode_image(image.data_uri), caption=image.name, width=320)
        if st.button("Generate", type="primary"):
            run_batch(controller)
    else:
        st.info(f"Upload one photo to get {total_images(controller.specs)} marketing images across {len(controller.specs)} categories.")


def render_results(controller: StudioController, output_dir: Path) -> None:
    batch = controller.generated or {}
    image = controller.uploaded_image

    head_l, head_r = st.columns([3, 2])
    with head_l:
        st.subheader("Your Creatives are Ready")
        if image is not None:
            st.image(decode_image(image.data_uri), width=64)
    with head_r:
        c1, c2, c3, c4 = st.columns(4)
        with c1:
            if st.button("Regenerate"):
                run_batch(controller, regenerate=True)
        with c2:
            if st.button("Save all to folder"):
                ensure_dir(output_dir)
                saved = controller.download_all(output_dir, model=st.session_state.get("model", ""))
                if saved is not None:
                    st.success(f"Saved {len(saved.image_paths)} image(s) to {saved.folder}")
        with c3:
            st.download_button(
                "Download all (.zip)",
                data=zip_batch(batch, controller.specs),
                file_name="perfume_creatives.zip",
                mime="application/zip",
            )
        with c4:
            if st.button("New image"):
                controller.clear()
                st.session_state.pop("upload_token", None)
                st.rerun()

    downloads = {id(img): name for name, img in iter_downloads(batch, controller.specs)}
    for spec in controller.specs:
        images = batch.get(spec.id, [])
        if not images:
            continue
        st.markdown(f"### {spec.title} ({len(images)}/{spec.count})")
        cols = st.columns(GRID_COLUMNS)
        for idx, gen in enumerate(images):
            filename = downloads[id(gen)]
            with cols[idx % GRID_COLUMNS]:
                st.image(decode_image(gen.data_uri))
                st.download_button(
                    "Download",
                    data=parse_data_uri(gen.data_uri)[0],
                    file_name=filename,
                    mime=split_data_uri(gen.data_uri)[0],
                    key=f"dl_{filename}",
                )


def main():
    output_dir = sidebar()
    st.title("Perfume Creative Studio")
    st.caption("One product photo in, a full set of AI marketing creatives out.")
    try:
        load_api_key()
    except RuntimeError as e:
        st.error(str(e))
        st.stop()

    controller = StudioController(st.session_state, specs=OUTPUT_SPECS, logger=log)
    render_error(controller.error)
    if controller.phase is Phase.RESULTS:
        render_results(controller, output_dir)
    else:
        render_uploader(controller)


if __name__ == "__main__":
    main()
