"""Display conversion for accumulator rasters."""

from __future__ import annotations

from typing import Optional, Sequence

import cv2
import numpy as np

OVERLAY_COLOR = (255, 0, 255)


def to_uint8(image: np.ndarray) -> np.ndarray:
    """Round and saturate a 0..255 float raster to uint8."""
    arr = np.asarray(image, dtype=np.float32)
    return np.round(np.clip(arr, 0.0, 255.0)).astype(np.uint8)


def to_uint16(image: np.ndarray) -> np.ndarray:
    """Scale a 0..255 float raster onto the full uint16 range."""
    arr = np.asarray(image, dtype=np.float32)
    return np.round(np.clip(arr, 0.0, 255.0) * 257.0).astype(np.uint16)


def draw_tracking_overlay(
    image: np.ndarray,
    contours: Optional[Sequence[np.ndarray]],
    alpha: float = 0.4,
) -> np.ndarray:
    """Blend detected star outlines over a uint8 preview."""
    base = np.ascontiguousarray(image, dtype=np.uint8)
    if not contours:
        return base.copy()

    overlay = base.copy()
    cv2.drawContours(overlay, list(contours), -1, OVERLAY_COLOR, 2)
    a = float(np.clip(alpha, 0.0, 1.0))
    return cv2.addWeighted(overlay, a, base, 1.0 - a, 0.0)


def normalize_for_display(image: np.ndarray) -> np.ndarray:
    """Percentile stretch of a preview into [0,1] for UI widgets."""
    arr = np.asarray(image, dtype=np.float32)
    valid = arr[np.isfinite(arr)]
    if valid.size == 0:
        return np.zeros_like(arr)
    black = float(np.percentile(valid, 0.5))
    white = float(np.percentile(valid, 99.8))
    span = max(white - black, 1e-6)
    return np.clip((arr - black) / span, 0.0, 1.0).astype(np.float32, copy=False)
