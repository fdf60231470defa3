"""Star correspondence between frames.

Two strategies share one surface (``reference_stars``, ``match``, ``advance``
and ``anchored``):

* ``BruteForceMatcher`` pairs stars by mutual nearest neighbour against the
  previously accepted frame. It is quadratic in the star count and only meant
  for sparse fields.
* ``ConstellationMatcher`` indexes triangle signatures of the anchor frame
  once and matches new frames against it. Signatures are built from side
  lengths only, so they survive rotation, translation and reflection, and the
  acceptance tolerance scales with the triangle perimeter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

from starstack.config import MatchingSettings

logger = logging.getLogger(__name__)


@dataclass
class Correspondence:
    """One star of the reference set paired with one star of the current frame."""

    reference_index: int
    current_index: int
    score: float


@dataclass
class ConstellationSet:
    """Triangle signatures of one frame.

    ``signatures`` rows are (short side to base, long side to base, side
    between the two neighbours). ``base_indices`` holds the base star index of
    each row and ``neighbor_indices`` the two outer stars.
    """

    signatures: np.ndarray
    base_indices: np.ndarray
    neighbor_indices: np.ndarray

    def __len__(self) -> int:
        return int(self.signatures.shape[0])

    @property
    def perimeters(self) -> np.ndarray:
        return np.sum(self.signatures, axis=1)


def _as_points(stars: np.ndarray) -> np.ndarray:
    return np.asarray(stars, dtype=np.float64).reshape(-1, 2)


def match_mutual_nearest(
    points_a: np.ndarray,
    points_b: np.ndarray,
    max_distance: float,
) -> list[Correspondence]:
    """Pair points that are each other's nearest neighbour within ``max_distance``."""
    a = _as_points(points_a)
    b = _as_points(points_b)
    if a.shape[0] == 0 or b.shape[0] == 0:
        return []

    distances = cdist(a, b)
    nearest_in_b = np.argmin(distances, axis=1)
    nearest_in_a = np.argmin(distances, axis=0)

    matches: list[Correspondence] = []
    for index_a, index_b in enumerate(nearest_in_b):
        if nearest_in_a[index_b] != index_a:
            continue
        distance = float(distances[index_a, index_b])
        if distance < max_distance:
            matches.append(Correspondence(index_a, int(index_b), distance))
    return matches


def build_constellations(
    stars: np.ndarray,
    neighbors: int,
    min_perimeter: float = 0.0,
) -> ConstellationSet:
    """Build canonical triangle signatures from each star and its nearest neighbours."""
    points = _as_points(stars)
    n = points.shape[0]
    signatures: list[tuple[float, float, float]] = []
    bases: list[int] = []
    outer: list[tuple[int, int]] = []

    if n >= 3 and neighbors >= 2:
        k = min(int(neighbors) + 1, n)
        tree = cKDTree(points)
        dists, indices = tree.query(points, k=k)

        for i in range(n):
            for j in range(1, k):
                for m in range(j + 1, k):
                    a, b = int(indices[i, j]), int(indices[i, m])
                    if a == b or a == i or b == i:
                        continue
                    da, db = float(dists[i, j]), float(dists[i, m])
                    between = float(np.hypot(*(points[a] - points[b])))
                    short_side, long_side = (da, db) if da <= db else (db, da)
                    if short_side + long_side + between <= min_perimeter:
                        continue
                    signatures.append((short_side, long_side, between))
                    bases.append(i)
                    outer.append((a, b))

    return ConstellationSet(
        signatures=np.asarray(signatures, dtype=np.float64).reshape(-1, 3),
        base_indices=np.asarray(bases, dtype=np.int64),
        neighbor_indices=np.asarray(outer, dtype=np.int64).reshape(-1, 2),
    )


class BruteForceMatcher:
    """Mutual nearest neighbour matching against the last accepted frame."""

    anchored = False

    def __init__(self, reference_stars: np.ndarray, settings: MatchingSettings | None = None) -> None:
        self.settings = settings or MatchingSettings()
        self.reference_stars = np.asarray(reference_stars, dtype=np.int32).reshape(-1, 2).copy()

    def match(self, stars: np.ndarray) -> list[Correspondence]:
        return match_mutual_nearest(self.reference_stars, stars, self.settings.max_pixel_distance)

    def advance(self, stars: np.ndarray) -> None:
        self.reference_stars = np.asarray(stars, dtype=np.int32).reshape(-1, 2).copy()


class ConstellationMatcher:
    """Triangle-signature matching against an index built from the anchor frame."""

    anchored = True

    def __init__(self, anchor_stars: np.ndarray, settings: MatchingSettings | None = None) -> None:
        self.settings = settings or MatchingSettings()
        self.reference_stars = np.asarray(anchor_stars, dtype=np.int32).reshape(-1, 2).copy()
        self.reference = build_constellations(
            self.reference_stars,
            neighbors=self.settings.reference_neighbors,
            min_perimeter=self.settings.min_triangle_perimeter,
        )
        self._tree = cKDTree(self.reference.signatures) if len(self.reference) else None
        logger.info(
            "Indexed %d reference constellations from %d anchor stars",
            len(self.reference),
            len(self.reference_stars),
        )

    def match(self, stars: np.ndarray) -> list[Correspondence]:
        if self._tree is None:
            return []
        current = build_constellations(
            stars,
            neighbors=self.settings.query_neighbors,
            min_perimeter=self.settings.min_triangle_perimeter,
        )
        if not len(current):
            return []

        distances, nearest = self._tree.query(current.signatures, k=1)
        tolerance = current.perimeters * self.settings.max_distance_ratio

        matches: list[Correspondence] = []
        for row in np.flatnonzero(distances < tolerance):
            matches.append(
                Correspondence(
                    reference_index=int(self.reference.base_indices[nearest[row]]),
                    current_index=int(current.base_indices[row]),
                    score=float(distances[row]),
                )
            )
        logger.debug("Matched %d of %d constellations", len(matches), len(current))
        return matches

    def advance(self, stars: np.ndarray) -> None:
        # The anchor index is static for the session.
        return None


def select_matcher(anchor_stars: np.ndarray, settings: MatchingSettings | None = None):
    """Pick the matching strategy for a session from its anchor star count."""
    settings = settings or MatchingSettings()
    strategy = settings.strategy.lower().strip()
    if strategy == "auto":
        strategy = "brute_force" if len(anchor_stars) <= settings.brute_force_limit else "constellation"

    if strategy in ("brute_force", "brute-force", "bruteforce"):
        return BruteForceMatcher(anchor_stars, settings)
    if strategy in ("constellation", "triangle"):
        return ConstellationMatcher(anchor_stars, settings)
    raise ValueError(f"Unknown matching strategy: {settings.strategy}")


def matched_points(
    reference_stars: np.ndarray,
    stars: np.ndarray,
    correspondences: list[Correspondence],
) -> tuple[np.ndarray, np.ndarray]:
    """Return aligned (reference, current) float32 point arrays for a fit."""
    ref = np.asarray(reference_stars, dtype=np.float32).reshape(-1, 2)
    cur = np.asarray(stars, dtype=np.float32).reshape(-1, 2)
    ref_idx = np.asarray([c.reference_index for c in correspondences], dtype=np.int64)
    cur_idx = np.asarray([c.current_index for c in correspondences], dtype=np.int64)
    return ref[ref_idx].reshape(-1, 2), cur[cur_idx].reshape(-1, 2)
