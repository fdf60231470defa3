"""Tunable constants for detection, matching, registration, and masking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass
class DetectionSettings:
    """Star detector constants.

    The Laplacian of a bright blob is negative at its core, so thresholds are
    negative and a value further from zero is stricter.
    """

    blur_kernel: int = 5
    laplacian_ksize: int = 3
    initial_threshold: float = -10.0
    threshold_step: float = 1.25
    min_threshold_magnitude: float = 0.5
    max_threshold_magnitude: float = 2000.0
    max_bootstrap_iterations: int = 40
    min_area: float = 2.0
    max_area: float = 400.0
    min_roundness: float = 0.8
    min_stars_required: int = 10
    max_stars_allowed: int = 500


@dataclass
class MatchingSettings:
    """Correspondence constants for both matcher strategies."""

    strategy: str = "auto"
    brute_force_limit: int = 200
    max_pixel_distance: float = 50.0
    reference_neighbors: int = 8
    query_neighbors: int = 5
    min_triangle_perimeter: float = 100.0
    max_distance_ratio: float = 0.01


@dataclass
class HomographySettings:
    """Robust fit and plausibility constants."""

    min_correspondences: int = 5
    ransac_reprojection_threshold: float = 3.0
    min_determinant_ratio: float = 0.9
    max_determinant_ratio: float = 1.1


@dataclass
class MaskSettings:
    """Segmentation to soft mask conversion."""

    sky_labels: Optional[tuple[int, ...]] = None
    probability_threshold: float = 0.5
    foreground_dilation: int = 20
    blur_size: int = 101


@dataclass
class StackSettings:
    """All settings for one stacking session.

    The anchor must pass both the detector window (``min_stars_required``) and
    ``min_stars_per_image``; with the defaults the detector window is the
    binding floor. ``max_reports`` bounds the per-frame report history, and
    ``None`` keeps every report.
    """

    detection: DetectionSettings = field(default_factory=DetectionSettings)
    matching: MatchingSettings = field(default_factory=MatchingSettings)
    homography: HomographySettings = field(default_factory=HomographySettings)
    mask: MaskSettings = field(default_factory=MaskSettings)
    min_stars_per_image: int = 5
    min_matches: int = 5
    visualize_tracking: bool = False
    overlay_alpha: float = 0.4
    max_reports: Optional[int] = 1000

    def to_dict(self) -> dict:
        """Return a JSON-ready copy of all settings."""
        return asdict(self)
