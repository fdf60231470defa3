"""Checkpoint persistence and frame loading for StarStack."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

logger = logging.getLogger(__name__)

CHECKPOINT_FORMAT_VERSION = 1

# Fixed extension order: combined sum, max stack, unaligned sum, foreground mask.
CHECKPOINT_EXTENSIONS = ("SUMSTACK", "MAXSTACK", "UNALIGN", "FGMASK")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp")


@dataclass
class Checkpoint:
    """Accumulator rasters and counters needed to resume a session."""

    sum_stack: np.ndarray
    max_stack: np.ndarray
    unaligned_sum_stack: np.ndarray
    foreground_mask: Optional[np.ndarray]
    frame_count: int
    failed_frame_count: int = 0
    threshold: Optional[float] = None

    def rasters(self) -> tuple[Optional[np.ndarray], ...]:
        return self.sum_stack, self.max_stack, self.unaligned_sum_stack, self.foreground_mask


def metadata_path(path: str | Path) -> Path:
    """Companion JSON record stored next to a checkpoint file."""
    p = Path(path)
    return p.with_name(p.name + ".json")


def save_json(path: str | Path, payload: dict[str, Any]) -> None:
    """Write JSON with stable formatting."""
    out = Path(path)
    out.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


def load_json(path: str | Path) -> dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def write_checkpoint(path: str | Path, checkpoint: Checkpoint) -> Path:
    """Write the four rasters as FITS extensions plus the JSON metadata record."""
    out = Path(path)
    primary = fits.PrimaryHDU()
    primary.header["SSFORMAT"] = (CHECKPOINT_FORMAT_VERSION, "StarStack checkpoint format")
    primary.header["NFRAMES"] = (int(checkpoint.frame_count), "Accepted frames in stack")

    hdus: list[Any] = [primary]
    for name, data in zip(CHECKPOINT_EXTENSIONS, checkpoint.rasters()):
        payload = None if data is None else np.ascontiguousarray(data, dtype=np.float32)
        hdus.append(fits.ImageHDU(data=payload, name=name))

    fits.HDUList(hdus).writeto(out, overwrite=True)
    save_json(
        metadata_path(out),
        {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "frame_count": int(checkpoint.frame_count),
            "failed_frame_count": int(checkpoint.failed_frame_count),
            "threshold": checkpoint.threshold,
        },
    )
    logger.info("Wrote checkpoint %s (%d frames)", out, checkpoint.frame_count)
    return out


def read_checkpoint(path: str | Path, frame_count: Optional[int] = None) -> Checkpoint:
    """Read a checkpoint; an explicit ``frame_count`` overrides the metadata record."""
    src = Path(path)
    rasters: dict[str, Optional[np.ndarray]] = {}
    with fits.open(src, memmap=False) as hdul:
        for name in CHECKPOINT_EXTENSIONS:
            data = hdul[name].data
            rasters[name] = None if data is None else np.array(data, dtype=np.float32)

    meta_file = metadata_path(src)
    meta = load_json(meta_file) if meta_file.exists() else {}

    count = frame_count if frame_count is not None else meta.get("frame_count")
    if count is None:
        raise ValueError(f"Frame count unknown for checkpoint {src}; pass it explicitly.")
    if int(count) < 1:
        raise ValueError("Checkpoint frame count must be at least 1.")

    if any(rasters[name] is None for name in CHECKPOINT_EXTENSIONS[:3]):
        raise ValueError(f"Checkpoint {src} is missing accumulator data.")

    return Checkpoint(
        sum_stack=rasters["SUMSTACK"],
        max_stack=rasters["MAXSTACK"],
        unaligned_sum_stack=rasters["UNALIGN"],
        foreground_mask=rasters["FGMASK"],
        frame_count=int(count),
        failed_frame_count=int(meta.get("failed_frame_count", 0)),
        threshold=meta.get("threshold"),
    )


def normalize_frame(data: np.ndarray) -> np.ndarray:
    """Coerce decoded image data to an HxWx3 uint8 frame."""
    arr = np.asarray(data)
    arr = np.squeeze(arr)
    if arr.ndim == 2:
        arr = np.stack([arr, arr, arr], axis=-1)
    if arr.ndim != 3 or arr.shape[-1] not in (3, 4):
        raise ValueError(f"Unsupported image dimensionality: {arr.shape}")
    if arr.shape[-1] == 4:
        arr = arr[..., :3]

    if arr.dtype == np.uint8:
        return np.ascontiguousarray(arr)
    if arr.dtype == np.uint16:
        return np.ascontiguousarray((arr >> 8).astype(np.uint8))
    if np.issubdtype(arr.dtype, np.floating) and float(np.nanmax(arr)) <= 1.0:
        arr = arr * 255.0
    return np.ascontiguousarray(np.clip(np.nan_to_num(arr), 0, 255).astype(np.uint8))


def load_frame_from_path(path: str | Path) -> np.ndarray:
    """Decode an image file from disk into a frame."""
    return normalize_frame(iio.imread(Path(path)))


def load_frame_from_bytes(filename: str, payload: bytes) -> np.ndarray:
    """Decode uploaded image bytes into a frame."""
    return normalize_frame(iio.imread(payload, extension=Path(filename).suffix.lower()))


def load_segmentation_from_bytes(filename: str, payload: bytes) -> np.ndarray:
    """Decode an uploaded segmentation map, keeping its first channel."""
    arr = np.asarray(iio.imread(payload, extension=Path(filename).suffix.lower()))
    if arr.ndim == 3:
        arr = arr[..., 0]
    return arr


def scan_folder_for_images(folder: str | Path) -> list[Path]:
    """List image files of a folder in capture (name) order."""
    root = Path(folder).expanduser()
    if not root.exists() or not root.is_dir():
        raise FileNotFoundError(f"Folder does not exist: {root}")
    return sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
