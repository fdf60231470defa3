"""Star detection via a thresholded Laplacian response."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from starstack.config import DetectionSettings
from starstack.errors import InitializationError

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Stars found in one frame plus the threshold to use on the next one."""

    stars: np.ndarray
    blob_mask: np.ndarray
    suggested_threshold: float
    contours: list[np.ndarray] = field(default_factory=list)

    @property
    def count(self) -> int:
        return int(len(self.stars))


def to_luminance(image: np.ndarray) -> np.ndarray:
    """Convert mono/RGB image to a mono luminance representation."""
    arr = np.asarray(image, dtype=np.float32)
    if arr.ndim == 2:
        return arr
    if arr.shape[-1] < 3:
        return np.mean(arr, axis=-1)
    return (0.2126 * arr[..., 0] + 0.7152 * arr[..., 1] + 0.0722 * arr[..., 2]).astype(np.float32)


def laplacian_response(image: np.ndarray, settings: DetectionSettings) -> np.ndarray:
    """Blurred Laplacian of the frame luminance; star cores are strongly negative."""
    gray = to_luminance(image)
    k = int(settings.blur_kernel)
    if k % 2 == 0:
        k += 1
    blurred = cv2.GaussianBlur(gray, (k, k), 0)
    return cv2.Laplacian(blurred, cv2.CV_32F, ksize=int(settings.laplacian_ksize))


def clamp_threshold(threshold: float, settings: DetectionSettings) -> float:
    """Keep a threshold negative and inside the configured magnitude range."""
    magnitude = min(max(abs(float(threshold)), settings.min_threshold_magnitude), settings.max_threshold_magnitude)
    return -magnitude


def adjust_threshold(threshold: float, star_count: int, settings: DetectionSettings) -> float:
    """Apply one multiplicative feedback step based on the star count."""
    if star_count > settings.max_stars_allowed:
        # Further from zero admits fewer pixels.
        threshold = threshold * settings.threshold_step
    elif star_count < settings.min_stars_required:
        threshold = threshold / settings.threshold_step
    return clamp_threshold(threshold, settings)


def _extract_centroids(
    blob_mask: np.ndarray,
    settings: DetectionSettings,
) -> tuple[np.ndarray, list[np.ndarray]]:
    contours, _ = cv2.findContours(blob_mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    centroids: list[tuple[int, int]] = []
    accepted: list[np.ndarray] = []
    for contour in contours:
        area = cv2.contourArea(contour)
        if area < settings.min_area or area > settings.max_area:
            continue

        hull_area = cv2.contourArea(cv2.convexHull(contour))
        if hull_area <= 0:
            continue
        if area / hull_area < settings.min_roundness:
            continue

        moments = cv2.moments(contour)
        if moments["m00"] == 0:
            continue
        cx = int(moments["m10"] / moments["m00"])
        cy = int(moments["m01"] / moments["m00"])
        centroids.append((cx, cy))
        accepted.append(contour)

    stars = np.asarray(centroids, dtype=np.int32).reshape(-1, 2)
    return stars, accepted


def detect_stars(
    image: np.ndarray,
    threshold: float,
    settings: DetectionSettings | None = None,
) -> DetectionResult:
    """Detect star centroids at a fixed threshold.

    The returned ``suggested_threshold`` is nudged once toward the configured
    star-count window so slow sky changes are followed frame by frame.
    """
    settings = settings or DetectionSettings()
    response = laplacian_response(image, settings)
    blob_mask = np.where(response <= threshold, 255, 0).astype(np.uint8)
    stars, contours = _extract_centroids(blob_mask, settings)

    suggested = adjust_threshold(threshold, len(stars), settings)
    logger.debug("Detected %d stars at threshold %.3f (next %.3f)", len(stars), threshold, suggested)
    return DetectionResult(
        stars=stars,
        blob_mask=blob_mask,
        suggested_threshold=suggested,
        contours=contours,
    )


def find_threshold(
    image: np.ndarray,
    settings: DetectionSettings | None = None,
) -> tuple[float, DetectionResult]:
    """Search a threshold whose star count lies inside the allowed window."""
    settings = settings or DetectionSettings()
    threshold = clamp_threshold(settings.initial_threshold, settings)

    for iteration in range(settings.max_bootstrap_iterations):
        result = detect_stars(image, threshold, settings)
        if settings.min_stars_required <= result.count <= settings.max_stars_allowed:
            logger.info(
                "Bootstrap threshold %.3f found after %d iteration(s) with %d stars",
                threshold,
                iteration + 1,
                result.count,
            )
            return threshold, result

        if result.suggested_threshold == threshold:
            break
        threshold = result.suggested_threshold

    raise InitializationError(
        InitializationError.NO_THRESHOLD,
        "No detection threshold yields between "
        f"{settings.min_stars_required} and {settings.max_stars_allowed} stars.",
    )
