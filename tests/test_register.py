import cv2
import numpy as np
import pytest

from starstack.config import HomographySettings
from starstack.register import (
    FrameOutcome,
    FrameReport,
    HomographyEstimator,
    compose,
    summarize_reports,
    warp_frame,
)


def _translation(dx, dy):
    return np.array([[1.0, 0.0, dx], [0.0, 1.0, dy], [0.0, 0.0, 1.0]])


def test_estimate_recovers_translation_with_outliers(star_points):
    current = star_points.astype(np.float32)
    reference = current + np.array([-5.0, -3.0], dtype=np.float32)
    # Two gross mismatches.
    reference[0] += np.array([40.0, -25.0], dtype=np.float32)
    reference[1] += np.array([-30.0, 60.0], dtype=np.float32)

    homography = HomographyEstimator().estimate(reference, current)

    assert homography is not None
    mapped = cv2.perspectiveTransform(current[2:].reshape(-1, 1, 2), homography).reshape(-1, 2)
    np.testing.assert_allclose(mapped, reference[2:], atol=0.5)


def test_estimate_needs_minimum_correspondences():
    points = np.array([(0, 0), (10, 0), (0, 10), (10, 10)], dtype=np.float32)
    assert HomographyEstimator().estimate(points, points) is None

    relaxed = HomographyEstimator(HomographySettings(min_correspondences=4))
    np.testing.assert_allclose(relaxed.estimate(points, points), np.eye(3), atol=1e-6)


def test_estimate_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        HomographyEstimator().estimate(np.zeros((5, 2)), np.zeros((6, 2)))


def test_plausibility_guard_on_determinant_ratio():
    estimator = HomographyEstimator()

    ok, det, ratio = estimator.check_plausibility(np.diag([2.0, 1.0, 1.0]), 1.0)
    assert not ok
    assert det == pytest.approx(2.0)
    assert ratio == pytest.approx(2.0)

    ok, _, ratio = estimator.check_plausibility(np.diag([1.05, 1.0, 1.0]), 1.0)
    assert ok
    assert ratio == pytest.approx(1.05)

    ok, _, ratio = estimator.check_plausibility(np.diag([2.1, 1.0, 1.0]), 2.0)
    assert ok

    ok, _, _ = estimator.check_plausibility(np.eye(3), 0.0)
    assert not ok


def test_compose_right_multiplies():
    total = _translation(-2.0, -1.0)
    pairwise = _translation(-3.0, -2.0)
    np.testing.assert_allclose(compose(total, pairwise), _translation(-5.0, -3.0))

    scale = np.diag([2.0, 2.0, 1.0])
    np.testing.assert_allclose(compose(scale, total), scale @ total)


def test_warp_frame_fills_uncovered_border():
    image = np.full((20, 30, 3), 100, dtype=np.uint8)
    warped = warp_frame(image, _translation(10.0, 0.0), (20, 30), fill=(7.0, 8.0, 9.0))

    assert warped.shape == image.shape
    assert np.array_equal(warped[5, 2], [7, 8, 9])
    assert np.array_equal(warped[5, 20], [100, 100, 100])


def test_summarize_reports_counts_outcomes():
    reports = [
        FrameReport(index=0, outcome=FrameOutcome.ACCEPTED, star_count=20),
        FrameReport(index=1, outcome=FrameOutcome.REJECTED_INSUFFICIENT_STARS, star_count=0),
        FrameReport(index=2, outcome=FrameOutcome.ACCEPTED, star_count=19, matched_count=18),
        FrameReport(index=3, outcome=FrameOutcome.REJECTED_SCALE_IMPLAUSIBLE, star_count=20, matched_count=20),
    ]
    summary = summarize_reports(reports)

    assert summary["acceptance_ratio"] == pytest.approx(0.5)
    assert summary["accepted"] == 2
    assert summary["rejected_insufficient_stars"] == 1
    assert summary["rejected_scale_implausible"] == 1
    assert summarize_reports([])["acceptance_ratio"] == 0.0


def test_frame_report_serializes_outcome():
    report = FrameReport(index=4, outcome=FrameOutcome.REJECTED_NO_HOMOGRAPHY, star_count=12, matched_count=6)
    payload = report.to_dict()
    assert payload["outcome"] == "rejected_no_homography"
    assert payload["matched_count"] == 6
    assert not FrameOutcome.REJECTED_NO_HOMOGRAPHY.accepted
