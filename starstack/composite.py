"""Pixel-wise masking and blending used when composing stacked results."""

from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from starstack.config import MaskSettings


def _expand_mask(mask: np.ndarray, image: np.ndarray) -> np.ndarray:
    weights = np.asarray(mask, dtype=np.float32)
    if weights.shape[:2] != image.shape[:2]:
        raise ValueError("Mask and image dimensions do not match.")
    if image.ndim == 3 and weights.ndim == 2:
        weights = weights[..., None]
    return weights


def apply_mask(image: np.ndarray, mask: Optional[np.ndarray], dtype=np.float32) -> np.ndarray:
    """Multiply every channel by a soft [0,1] mask.

    Integer output dtypes are rounded and saturated like OpenCV arithmetic.
    """
    arr = np.asarray(image, dtype=np.float32)
    out = arr if mask is None else arr * _expand_mask(mask, arr)

    target = np.dtype(dtype)
    if np.issubdtype(target, np.integer):
        info = np.iinfo(target)
        return np.clip(np.rint(out), info.min, info.max).astype(target)
    return out.astype(target, copy=False)


def alpha_blend(background: np.ndarray, foreground: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Blend two images, taking ``background`` where the mask is 1 and ``foreground`` where it is 0."""
    bg = np.asarray(background, dtype=np.float32)
    fg = np.asarray(foreground, dtype=np.float32)
    if bg.shape != fg.shape:
        raise ValueError("Blend inputs must share a shape.")
    weights = _expand_mask(mask, bg)
    return (bg * weights + fg * (1.0 - weights)).astype(np.float32, copy=False)


def blend_lighten(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Pixel-wise maximum of two images."""
    return np.maximum(base, layer)


def blend_overlay(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Overlay blend of [0,1] images; the base decides between multiply and screen."""
    a = np.asarray(base, dtype=np.float32)
    b = np.asarray(layer, dtype=np.float32)
    out = np.where(a <= 0.5, 2.0 * a * b, 1.0 - 2.0 * (1.0 - a) * (1.0 - b))
    return np.clip(out, 0.0, 1.0).astype(np.float32, copy=False)


def blend_hard_light(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Hard light blend: overlay with the layer deciding."""
    return blend_overlay(layer, base)


def blend_soft_light(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """Soft light blend of [0,1] images."""
    a = np.asarray(base, dtype=np.float32)
    b = np.asarray(layer, dtype=np.float32)
    lighter = 1.0 - (1.0 - a) * (1.0 - (b - 0.5))
    darker = a * (b + 0.5)
    out = np.where(b > 0.5, lighter, darker)
    return np.clip(out, 0.0, 1.0).astype(np.float32, copy=False)


def prepare_foreground_mask(
    segmentation: np.ndarray,
    shape_hw: tuple[int, int],
    settings: MaskSettings | None = None,
) -> np.ndarray:
    """Turn a segmentation raster into a soft float32 mask at frame resolution.

    The result is 1.0 on static sky and 0.0 on foreground. Foreground is grown
    by ``foreground_dilation`` pixels and the edge is feathered by a Gaussian
    blur so composites do not show seams.
    """
    settings = settings or MaskSettings()
    seg = np.asarray(segmentation)
    if seg.ndim == 3:
        seg = seg[..., 0]
    if seg.ndim != 2:
        raise ValueError(f"Segmentation must be single-channel, got shape {seg.shape}")

    h, w = int(shape_hw[0]), int(shape_hw[1])
    resized = cv2.resize(seg.astype(np.float32), (w, h), interpolation=cv2.INTER_NEAREST)

    if settings.sky_labels is not None:
        sky = np.isin(resized, np.asarray(settings.sky_labels, dtype=np.float32))
    else:
        prob = resized
        if seg.dtype == np.uint8 or float(np.max(prob, initial=0.0)) > 1.0:
            prob = prob / 255.0
        sky = prob >= settings.probability_threshold

    mask = np.where(sky, 255, 0).astype(np.uint8)

    if settings.foreground_dilation > 0:
        size = int(settings.foreground_dilation)
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))
        mask = cv2.erode(mask, kernel)

    if settings.blur_size > 1:
        k = int(settings.blur_size)
        if k % 2 == 0:
            k += 1
        mask = cv2.GaussianBlur(mask, (k, k), 0)

    return (mask.astype(np.float32) / 255.0).astype(np.float32, copy=False)
