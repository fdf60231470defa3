"""Incremental alignment and accumulation of a frame sequence.

A ``StackSession`` owns every piece of cross-frame state. Frames are submitted
one at a time in capture order with ``merge_frame``; each call either folds the
frame into the accumulators or rejects it and leaves them untouched. The
session does no threading or locking, so callers feeding it from several
threads must serialize calls.

Accumulators are float32 so dozens of 8-bit frames can be summed without
overflow:

* ``sum_stack``: sum of aligned frames, divided by ``frame_count`` for the mean.
* ``max_stack``: pixel-wise maximum of aligned frames.
* ``unaligned_sum_stack``: sum of raw frames, used for foreground pixels.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np

from starstack.composite import alpha_blend, apply_mask, prepare_foreground_mask
from starstack.config import StackSettings
from starstack.detect import DetectionResult, clamp_threshold, detect_stars, find_threshold
from starstack.errors import InitializationError
from starstack.io import Checkpoint, read_checkpoint, write_checkpoint
from starstack.match import matched_points, select_matcher
from starstack.preview import draw_tracking_overlay, to_uint8
from starstack.register import (
    FrameOutcome,
    FrameReport,
    HomographyEstimator,
    compose,
    summarize_reports,
    warp_frame,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CHECKPOINTED = "checkpointed"


@dataclass
class MergeResult:
    """Outcome of one ``merge_frame`` call and the refreshed preview."""

    outcome: FrameOutcome
    preview: np.ndarray
    report: FrameReport

    @property
    def accepted(self) -> bool:
        return self.outcome.accepted


def _validate_frame(frame: np.ndarray, shape: Optional[tuple[int, ...]] = None) -> np.ndarray:
    arr = np.asarray(frame)
    if arr.ndim != 3 or arr.shape[-1] != 3:
        raise ValueError(f"Frames must be HxWx3, got shape {arr.shape}")
    if arr.dtype != np.uint8:
        raise ValueError(f"Frames must be uint8, got {arr.dtype}")
    if shape is not None and arr.shape != shape:
        raise ValueError(f"Frame shape {arr.shape} does not match session shape {shape}")
    return arr


class StackSession:
    """Aligns incoming frames to an anchor and accumulates them.

    Construction runs the bootstrap on the anchor frame and raises
    ``InitializationError`` when the anchor cannot be used. Afterwards no
    per-frame failure raises; it is reported through ``FrameOutcome``.
    """

    def __init__(
        self,
        anchor: np.ndarray,
        segmentation: Optional[np.ndarray] = None,
        settings: Optional[StackSettings] = None,
    ) -> None:
        self.settings = settings or StackSettings()
        self.state = SessionState.INITIALIZING

        frame = _validate_frame(anchor)
        self.shape = frame.shape

        self.foreground_mask: Optional[np.ndarray] = None
        if segmentation is not None:
            self.foreground_mask = prepare_foreground_mask(segmentation, frame.shape[:2], self.settings.mask)

        detection = self._bootstrap(self._mask_frame(frame))

        self.sum_stack = frame.astype(np.float32)
        self.max_stack = frame.astype(np.float32)
        self.unaligned_sum_stack = frame.astype(np.float32)
        self.frame_count = 1
        self.failed_frame_count = 0
        self.reports: deque[FrameReport] = deque(maxlen=self.settings.max_reports)
        self.reports.append(
            FrameReport(
                index=0,
                outcome=FrameOutcome.ACCEPTED,
                star_count=detection.count,
                threshold=self.threshold,
                determinant=1.0,
                determinant_ratio=1.0,
            )
        )
        self.state = SessionState.ACTIVE
        logger.info(
            "Session started on %dx%d anchor with %d stars (mask=%s)",
            self.shape[1],
            self.shape[0],
            detection.count,
            self.foreground_mask is not None,
        )

    @classmethod
    def from_checkpoint(
        cls,
        path: str | Path,
        frame_count: Optional[int] = None,
        settings: Optional[StackSettings] = None,
    ) -> "StackSession":
        """Resume a session from saved accumulators.

        No threshold search runs and no ``InitializationError`` is raised. The
        saved threshold is reused, and one detection on the restored mean,
        which is already in anchor coordinates, seeds the alignment reference.
        The cumulative homography restarts at identity. A mean with too few
        stars leaves an empty reference, and later frames are rejected as
        unmatched until the caller starts a new session.
        """
        checkpoint = read_checkpoint(path, frame_count=frame_count)

        session = cls.__new__(cls)
        session.settings = settings or StackSettings()
        session.state = SessionState.INITIALIZING
        session.sum_stack = checkpoint.sum_stack
        session.max_stack = checkpoint.max_stack
        session.unaligned_sum_stack = checkpoint.unaligned_sum_stack
        session.foreground_mask = checkpoint.foreground_mask
        session.frame_count = checkpoint.frame_count
        session.failed_frame_count = checkpoint.failed_frame_count
        session.shape = checkpoint.sum_stack.shape
        session.reports = deque(maxlen=session.settings.max_reports)

        for name in ("max_stack", "unaligned_sum_stack"):
            if getattr(session, name).shape != session.shape:
                raise ValueError(f"Checkpoint raster {name} does not match the sum stack shape.")
        if session.foreground_mask is not None and session.foreground_mask.shape != session.shape[:2]:
            raise ValueError("Checkpoint foreground mask does not match the sum stack shape.")

        saved = checkpoint.threshold
        if saved is None:
            saved = session.settings.detection.initial_threshold
        session.threshold = clamp_threshold(saved, session.settings.detection)

        mean = to_uint8(session.get_mean())
        detection = detect_stars(session._mask_frame(mean), session.threshold, session.settings.detection)
        session._seed_reference(detection)
        session.state = SessionState.ACTIVE
        logger.info(
            "Session restored from %s with %d frames, threshold %.3f, %d reference stars",
            path,
            session.frame_count,
            session.threshold,
            detection.count,
        )
        return session

    def _bootstrap(self, masked: np.ndarray) -> DetectionResult:
        self.threshold, detection = find_threshold(masked, self.settings.detection)
        # A successful search already yields min_stars_required stars, so this
        # only fires when min_stars_per_image is the larger floor.
        if detection.count < self.settings.min_stars_per_image:
            raise InitializationError(
                InitializationError.TOO_FEW_STARS,
                f"Only {detection.count} stars found in the anchor frame; "
                f"{self.settings.min_stars_per_image} required.",
            )
        self._seed_reference(detection)
        return detection

    def _seed_reference(self, detection: DetectionResult) -> None:
        self.last_frame_stars = detection.stars.copy()
        self.matcher = select_matcher(detection.stars, self.settings.matching)
        self.estimator = HomographyEstimator(self.settings.homography)
        self.total_homography = np.eye(3, dtype=np.float64)
        self.last_homography_determinant = 1.0
        self._last_detection = detection

    def _mask_frame(self, frame: np.ndarray) -> np.ndarray:
        if self.foreground_mask is None:
            return frame
        return apply_mask(frame, self.foreground_mask, dtype=np.uint8)

    def _reject(self, outcome: FrameOutcome, report: FrameReport) -> MergeResult:
        self.failed_frame_count += 1
        report.outcome = outcome
        self.reports.append(report)
        logger.warning(
            "Frame %d rejected: %s (stars=%d, matches=%d)",
            report.index,
            outcome.value,
            report.star_count,
            report.matched_count,
        )
        return MergeResult(outcome=outcome, preview=self.get_preview(), report=report)

    def merge_frame(self, frame: np.ndarray) -> MergeResult:
        """Align one frame and fold it into the stack, or reject it."""
        frame = _validate_frame(frame, self.shape)
        self.state = SessionState.ACTIVE
        index = self.frame_count + self.failed_frame_count

        masked = self._mask_frame(frame)
        used_threshold = self.threshold
        detection = detect_stars(masked, used_threshold, self.settings.detection)
        self.threshold = detection.suggested_threshold
        self._last_detection = detection

        report = FrameReport(
            index=index,
            outcome=FrameOutcome.ACCEPTED,
            star_count=detection.count,
            threshold=used_threshold,
        )
        if detection.count < self.settings.min_stars_per_image:
            return self._reject(FrameOutcome.REJECTED_INSUFFICIENT_STARS, report)

        matches = self.matcher.match(detection.stars)
        report.matched_count = len(matches)
        if len(matches) < self.settings.min_matches:
            return self._reject(FrameOutcome.REJECTED_INSUFFICIENT_MATCHES, report)

        ref_points, cur_points = matched_points(self.matcher.reference_stars, detection.stars, matches)
        homography = self.estimator.estimate(ref_points, cur_points)
        if homography is None:
            return self._reject(FrameOutcome.REJECTED_NO_HOMOGRAPHY, report)

        ok, determinant, ratio = self.estimator.check_plausibility(homography, self.last_homography_determinant)
        report.determinant = determinant
        report.determinant_ratio = ratio
        if not ok:
            return self._reject(FrameOutcome.REJECTED_SCALE_IMPLAUSIBLE, report)

        # Anchored matchers already fit against the anchor frame.
        total = homography if self.matcher.anchored else compose(self.total_homography, homography)

        fill = masked.reshape(-1, masked.shape[-1]).mean(axis=0)
        warped = warp_frame(frame, total, self.shape[:2], fill=fill).astype(np.float32)

        self.sum_stack += warped
        np.maximum(self.max_stack, warped, out=self.max_stack)
        self.unaligned_sum_stack += frame.astype(np.float32)

        self.total_homography = total
        self.last_homography_determinant = determinant
        self.frame_count += 1
        self.last_frame_stars = detection.stars.copy()
        self.matcher.advance(detection.stars)

        self.reports.append(report)
        logger.debug(
            "Frame %d accepted: %d stars, %d matches, det ratio %.4f",
            index,
            detection.count,
            len(matches),
            ratio,
        )
        return MergeResult(outcome=FrameOutcome.ACCEPTED, preview=self.get_preview(), report=report)

    def get_mean(self) -> np.ndarray:
        """Mean of the aligned frames as a float32 0..255 raster."""
        return (self.sum_stack / float(self.frame_count)).astype(np.float32, copy=False)

    def get_preview(self) -> np.ndarray:
        """Brightest-pixel composite, optionally with the last frame's star outlines."""
        preview = to_uint8(self.max_stack)
        if self.settings.visualize_tracking:
            preview = draw_tracking_overlay(preview, self._last_detection.contours, self.settings.overlay_alpha)
        return preview

    def get_processed(self) -> np.ndarray:
        """Aligned mean on the sky, unaligned mean on the foreground."""
        mean = self.get_mean()
        if self.foreground_mask is None:
            return to_uint8(mean)
        unaligned = self.unaligned_sum_stack / float(self.frame_count)
        return to_uint8(alpha_blend(mean, unaligned, self.foreground_mask))

    def get_max_composite(self) -> np.ndarray:
        """Brightest-pixel sky over the unaligned mean foreground."""
        if self.foreground_mask is None:
            return to_uint8(self.max_stack)
        unaligned = self.unaligned_sum_stack / float(self.frame_count)
        return to_uint8(alpha_blend(self.max_stack, unaligned, self.foreground_mask))

    def save_checkpoint(self, path: str | Path) -> Path:
        """Persist the accumulators and counters; I/O errors propagate."""
        out = write_checkpoint(
            path,
            Checkpoint(
                sum_stack=self.sum_stack,
                max_stack=self.max_stack,
                unaligned_sum_stack=self.unaligned_sum_stack,
                foreground_mask=self.foreground_mask,
                frame_count=self.frame_count,
                failed_frame_count=self.failed_frame_count,
                threshold=self.threshold,
            ),
        )
        self.state = SessionState.CHECKPOINTED
        return out

    def summary(self) -> dict[str, float]:
        """Counters plus per-outcome totals over the retained frame reports."""
        stats = summarize_reports(self.reports)
        stats["frame_count"] = float(self.frame_count)
        stats["failed_frame_count"] = float(self.failed_frame_count)
        stats["threshold"] = float(self.threshold)
        return stats
