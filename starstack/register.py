"""Robust homography estimation and frame warping for star alignment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

import cv2
import numpy as np

from starstack.config import HomographySettings

logger = logging.getLogger(__name__)


class FrameOutcome(str, Enum):
    """Result of submitting one frame to a session."""

    ACCEPTED = "accepted"
    REJECTED_INSUFFICIENT_STARS = "rejected_insufficient_stars"
    REJECTED_INSUFFICIENT_MATCHES = "rejected_insufficient_matches"
    REJECTED_NO_HOMOGRAPHY = "rejected_no_homography"
    REJECTED_SCALE_IMPLAUSIBLE = "rejected_scale_implausible"

    @property
    def accepted(self) -> bool:
        return self is FrameOutcome.ACCEPTED


@dataclass
class FrameReport:
    """Per-frame registration details."""

    index: int
    outcome: FrameOutcome
    star_count: int
    matched_count: int = 0
    threshold: Optional[float] = None
    determinant: Optional[float] = None
    determinant_ratio: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "outcome": self.outcome.value,
            "star_count": self.star_count,
            "matched_count": self.matched_count,
            "threshold": self.threshold,
            "determinant": self.determinant,
            "determinant_ratio": self.determinant_ratio,
        }


class HomographyEstimator:
    """Projective fit from matched stars with a frame-to-frame scale guard."""

    def __init__(self, settings: HomographySettings | None = None) -> None:
        self.settings = settings or HomographySettings()

    def estimate(self, points_reference: np.ndarray, points_current: np.ndarray) -> Optional[np.ndarray]:
        """Fit the homography mapping current coordinates onto reference coordinates.

        Returns ``None`` when there are too few pairs or RANSAC finds no model.
        """
        ref = np.asarray(points_reference, dtype=np.float32).reshape(-1, 2)
        cur = np.asarray(points_current, dtype=np.float32).reshape(-1, 2)
        if ref.shape[0] != cur.shape[0]:
            raise ValueError("Reference and current point sets differ in length.")
        if ref.shape[0] < self.settings.min_correspondences:
            return None

        try:
            homography, _ = cv2.findHomography(
                cur,
                ref,
                cv2.RANSAC,
                self.settings.ransac_reprojection_threshold,
            )
        except cv2.error as exc:
            logger.debug("Homography fit failed: %s", exc)
            return None

        if homography is None or not np.all(np.isfinite(homography)):
            return None
        return homography.astype(np.float64, copy=False)

    def check_plausibility(
        self,
        homography: np.ndarray,
        previous_determinant: float,
    ) -> tuple[bool, float, float]:
        """Compare the determinant with the last accepted one.

        Returns ``(ok, determinant, ratio)``.
        """
        determinant = float(np.linalg.det(homography))
        if previous_determinant == 0 or not np.isfinite(previous_determinant):
            return False, determinant, float("inf")
        ratio = determinant / previous_determinant
        ok = bool(
            np.isfinite(ratio)
            and self.settings.min_determinant_ratio <= ratio <= self.settings.max_determinant_ratio
        )
        return ok, determinant, float(ratio)


def compose(total: np.ndarray, pairwise: np.ndarray) -> np.ndarray:
    """Chain a pairwise homography onto the cumulative one (right-multiplication)."""
    return np.asarray(total, dtype=np.float64) @ np.asarray(pairwise, dtype=np.float64)


def warp_frame(
    image: np.ndarray,
    homography: np.ndarray,
    shape_hw: tuple[int, int],
    fill: np.ndarray | tuple[float, ...] = (0.0, 0.0, 0.0),
) -> np.ndarray:
    """Warp ``image`` into reference coordinates, filling uncovered pixels with ``fill``."""
    h, w = int(shape_hw[0]), int(shape_hw[1])
    border = tuple(float(v) for v in np.ravel(fill))[:4]
    return cv2.warpPerspective(
        image,
        np.asarray(homography, dtype=np.float64),
        (w, h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border,
    )


def summarize_reports(reports: Iterable[FrameReport]) -> dict[str, float]:
    """Acceptance ratio and per-outcome counts for UI/reporting."""
    reports = list(reports)
    summary: dict[str, float] = {outcome.value: 0.0 for outcome in FrameOutcome}
    if not reports:
        summary["acceptance_ratio"] = 0.0
        return summary

    for report in reports:
        summary[report.outcome.value] += 1.0
    summary["acceptance_ratio"] = summary[FrameOutcome.ACCEPTED.value] / len(reports)
    return summary
