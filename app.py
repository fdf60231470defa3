"""Streamlit UI for live stacking of hand-held astrophotography exposures."""

from __future__ import annotations

import logging
import textwrap
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import imageio.v3 as iio
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import streamlit as st
import tifffile

from starstack import io as frame_io
from starstack import preview
from starstack.config import DetectionSettings, MaskSettings, MatchingSettings, StackSettings
from starstack.errors import InitializationError
from starstack.stack import StackSession

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")


@dataclass
class PipelineSettings:
    """User-configurable session settings."""

    matcher_strategy: str
    initial_threshold: float
    min_area: float
    max_area: float
    min_roundness: float
    min_stars_per_image: int
    min_matches: int
    sky_labels: Optional[tuple[int, ...]]
    visualize_tracking: bool

    def to_stack_settings(self) -> StackSettings:
        return StackSettings(
            detection=DetectionSettings(
                initial_threshold=self.initial_threshold,
                min_area=self.min_area,
                max_area=self.max_area,
                min_roundness=self.min_roundness,
            ),
            matching=MatchingSettings(strategy=self.matcher_strategy),
            mask=MaskSettings(sky_labels=self.sky_labels),
            min_stars_per_image=self.min_stars_per_image,
            min_matches=self.min_matches,
            visualize_tracking=self.visualize_tracking,
        )


st.set_page_config(page_title="StarStack (Offline)", layout="wide")


def log_message(logs: list[str], message: str) -> None:
    ts = datetime.now().strftime("%H:%M:%S")
    logs.append(f"[{ts}] {message}")


def parse_labels(text: str) -> Optional[tuple[int, ...]]:
    tokens = [t.strip() for t in text.replace(";", ",").split(",") if t.strip()]
    if not tokens:
        return None
    return tuple(int(t) for t in tokens)


def load_frames_from_uploads(uploaded_files) -> tuple[list[tuple[str, np.ndarray]], list[str]]:
    frames: list[tuple[str, np.ndarray]] = []
    errors: list[str] = []
    for up in sorted(uploaded_files, key=lambda f: f.name):
        if not up.name.lower().endswith(frame_io.IMAGE_EXTENSIONS):
            errors.append(f"Skipped unsupported file: {up.name}")
            continue
        try:
            frames.append((up.name, frame_io.load_frame_from_bytes(up.name, up.getvalue())))
        except (OSError, ValueError) as exc:
            errors.append(f"Failed to load {up.name}: {exc}")
    return frames, errors


def load_frames_from_folder(folder: str) -> tuple[list[tuple[str, np.ndarray]], list[str]]:
    frames: list[tuple[str, np.ndarray]] = []
    errors: list[str] = []

    if not folder.strip():
        return frames, ["Folder path is empty."]
    try:
        files = frame_io.scan_folder_for_images(folder)
    except FileNotFoundError as exc:
        return frames, [str(exc)]
    if not files:
        return frames, ["No image files found in folder."]

    for path in files:
        try:
            frames.append((path.name, frame_io.load_frame_from_path(path)))
        except (OSError, ValueError) as exc:
            errors.append(f"Failed to load {path.name}: {exc}")
    return frames, errors


def run_session(
    frames: list[tuple[str, np.ndarray]],
    segmentation: Optional[np.ndarray],
    settings: PipelineSettings,
) -> dict:
    logs: list[str] = []
    if not frames:
        raise ValueError("No frames selected for stacking.")

    anchor_name, anchor = frames[0]
    log_message(logs, f"Starting session on {len(frames)} frame(s). Anchor={anchor_name}")
    session = StackSession(anchor, segmentation=segmentation, settings=settings.to_stack_settings())
    log_message(logs, f"Anchor threshold {session.threshold:.3f}, {len(session.last_frame_stars)} stars.")

    names = [anchor_name]
    progress = st.progress(0.0)
    for i, (name, frame) in enumerate(frames[1:], start=1):
        if frame.shape != session.shape:
            log_message(logs, f"Skipped {name}: shape {frame.shape} differs from anchor {session.shape}")
            continue
        result = session.merge_frame(frame)
        names.append(name)
        log_message(
            logs,
            f"{name}: {result.outcome.value} (stars={result.report.star_count}, matches={result.report.matched_count})",
        )
        progress.progress(i / max(len(frames) - 1, 1))

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir = Path.cwd() / "starstack_outputs" / timestamp
    output_dir.mkdir(parents=True, exist_ok=True)

    processed = session.get_processed()
    max_composite = session.get_max_composite()
    processed_png = output_dir / "processed.png"
    max_png = output_dir / "max_composite.png"
    mean_tiff = output_dir / "mean_16bit.tiff"
    checkpoint_path = output_dir / "session_checkpoint.fits"
    report_path = output_dir / "session_report.json"
    log_path = output_dir / "processing.log"

    iio.imwrite(processed_png, processed)
    iio.imwrite(max_png, max_composite)
    tifffile.imwrite(mean_tiff, preview.to_uint16(session.get_mean()), photometric="rgb")
    session.save_checkpoint(checkpoint_path)

    reports = [r.to_dict() for r in session.reports]
    for row in reports:
        row["filename"] = names[row["index"]]

    report = {
        "created_utc": datetime.utcnow().isoformat() + "Z",
        "pipeline": "StarStack",
        "settings": asdict(settings),
        "stack_settings": session.settings.to_dict(),
        "summary": session.summary(),
        "per_frame": reports,
        "logs": logs,
    }
    frame_io.save_json(report_path, report)
    log_path.write_text("\n".join(logs), encoding="utf-8")
    log_message(logs, f"Saved outputs to: {output_dir}")

    return {
        "output_dir": output_dir,
        "processed": processed,
        "max_composite": max_composite,
        "preview": session.get_preview(),
        "anchor": anchor,
        "summary": session.summary(),
        "reports": pd.DataFrame(reports),
        "logs": logs,
        "output_files": {
            "processed.png": processed_png,
            "max_composite.png": max_png,
            "mean_16bit.tiff": mean_tiff,
            "session_checkpoint.fits": checkpoint_path,
            "session_checkpoint.fits.json": frame_io.metadata_path(checkpoint_path),
            "session_report.json": report_path,
        },
    }


def main() -> None:
    st.title("StarStack - Hand-held Star Stacking")
    st.caption("Star detection, triangle matching, homography alignment, and mean/max accumulation.")

    if "loaded_frames" not in st.session_state:
        st.session_state.loaded_frames = []
    if "session_result" not in st.session_state:
        st.session_state.session_result = None

    st.sidebar.header("Session Controls")
    matcher_strategy = st.sidebar.selectbox("Matcher", ["auto", "brute_force", "constellation"], index=0)
    initial_threshold = st.sidebar.number_input("Initial Laplacian threshold", value=-10.0, max_value=-0.5, step=1.0)
    min_area = st.sidebar.number_input("Min star area (px)", value=2.0, min_value=0.0, step=1.0)
    max_area = st.sidebar.number_input("Max star area (px)", value=400.0, min_value=1.0, step=10.0)
    min_roundness = st.sidebar.slider("Min roundness", min_value=0.1, max_value=1.0, value=0.8, step=0.05)
    min_stars = st.sidebar.number_input("Min stars per frame", value=5, min_value=1, step=1)
    min_matches = st.sidebar.number_input("Min matched stars", value=5, min_value=4, step=1)
    labels_text = st.sidebar.text_input("Sky labels in segmentation (comma separated)", value="")
    visualize_tracking = st.sidebar.toggle("Show tracked stars in preview", value=True)

    try:
        sky_labels = parse_labels(labels_text)
    except ValueError:
        st.sidebar.error("Sky labels must be integers.")
        sky_labels = None

    settings = PipelineSettings(
        matcher_strategy=matcher_strategy,
        initial_threshold=float(initial_threshold),
        min_area=float(min_area),
        max_area=float(max_area),
        min_roundness=float(min_roundness),
        min_stars_per_image=int(min_stars),
        min_matches=int(min_matches),
        sky_labels=sky_labels,
        visualize_tracking=visualize_tracking,
    )

    st.subheader("1) Input Frames")
    input_mode = st.radio("Input mode", ["Upload images", "Scan local folder"], horizontal=True)
    uploaded_files = None
    folder_path = ""
    if input_mode == "Upload images":
        uploaded_files = st.file_uploader(
            "Upload the exposures in capture order",
            type=None,
            accept_multiple_files=True,
        )
    else:
        folder_path = st.text_input("Folder path", value="")

    segmentation_file = st.file_uploader("Optional sky segmentation map", type=None, accept_multiple_files=False)

    if st.button("Load input frames", type="primary"):
        with st.spinner("Loading images..."):
            if input_mode == "Upload images":
                frames, errors = load_frames_from_uploads(uploaded_files or [])
            else:
                frames, errors = load_frames_from_folder(folder_path)
        st.session_state.loaded_frames = frames
        st.session_state.session_result = None
        for err in errors:
            st.warning(err)
        if frames:
            st.success(f"Loaded {len(frames)} frame(s).")

    frames = st.session_state.loaded_frames
    if not frames:
        st.info("Load image files to continue.")
        return

    segmentation = None
    if segmentation_file is not None:
        segmentation = frame_io.load_segmentation_from_bytes(segmentation_file.name, segmentation_file.getvalue())

    st.subheader("2) Stack")
    if st.button("Run stacking session", type="primary"):
        with st.spinner("Aligning and stacking..."):
            try:
                st.session_state.session_result = run_session(frames, segmentation, settings)
                st.success("Stacking complete.")
            except InitializationError as exc:
                st.session_state.session_result = None
                st.error(f"Anchor frame unusable ({exc.reason}): {exc}")

    result = st.session_state.session_result
    if not result:
        return

    st.subheader("3) Output Summary")
    summary = result["summary"]
    cols = st.columns(4)
    cols[0].metric("Frames stacked", int(summary["frame_count"]))
    cols[1].metric("Frames rejected", int(summary["failed_frame_count"]))
    cols[2].metric("Acceptance", f"{summary['acceptance_ratio']:.0%}")
    cols[3].metric("Final threshold", f"{summary['threshold']:.2f}")

    image_cols = st.columns(3)
    image_cols[0].image(preview.normalize_for_display(result["anchor"]), caption="Anchor frame", clamp=True)
    image_cols[1].image(result["processed"], caption="Processed (mean)", clamp=True)
    image_cols[2].image(result["preview"], caption="Max stack preview", clamp=True)

    st.subheader("4) Per-frame Registration")
    df = result["reports"]
    st.dataframe(df, use_container_width=True)
    if not df.empty:
        fig, ax = plt.subplots(figsize=(8, 3.5))
        ax.plot(df["index"], df["star_count"], marker="o", linewidth=1.0, label="stars")
        ax.plot(df["index"], df["matched_count"], marker="s", linewidth=1.0, label="matches")
        ax.set_xlabel("Frame Index")
        ax.set_ylabel("Count")
        ax.grid(alpha=0.3)
        ax.legend()
        st.pyplot(fig)

    st.subheader("5) Downloads")
    for label, path in result["output_files"].items():
        mime = "application/octet-stream"
        if str(path).endswith(".png"):
            mime = "image/png"
        elif str(path).endswith(".tiff"):
            mime = "image/tiff"
        elif str(path).endswith(".fits"):
            mime = "application/fits"
        elif str(path).endswith(".json"):
            mime = "application/json"
        st.download_button(f"Download {label}", data=Path(path).read_bytes(), file_name=Path(path).name, mime=mime)

    st.caption(f"Output directory: {result['output_dir']}")
    st.subheader("Processing Log")
    st.code("\n".join(result["logs"]), language="text")

    st.markdown(
        textwrap.dedent(
            """
            **Notes**
            - The checkpoint (FITS + JSON) can resume a session with `StackSession.from_checkpoint`.
            - Sky labels select which segmentation classes count as tracked sky; leave empty for probability maps.
            """
        )
    )


if __name__ == "__main__":
    main()
