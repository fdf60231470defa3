import numpy as np
import pytest

FIELD_SHAPE = (240, 320)


def render_star_field(
    points,
    shape=FIELD_SHAPE,
    amplitude=200.0,
    sigma=1.5,
    background=10.0,
    noise=1.0,
    seed=0,
):
    """Render Gaussian stars at (x, y) positions into an HxWx3 uint8 frame."""
    h, w = shape
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float32)
    img = np.full((h, w), background, dtype=np.float32)
    for x, y in np.asarray(points, dtype=np.float32).reshape(-1, 2):
        img += amplitude * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2.0 * sigma**2))
    if noise > 0:
        rng = np.random.default_rng(seed)
        img += rng.normal(0.0, noise, size=img.shape).astype(np.float32)
    gray = np.clip(np.round(img), 0, 255).astype(np.uint8)
    return np.stack([gray, gray, gray], axis=-1)


def make_star_points(seed=0):
    """20 well separated integer star positions on a jittered grid."""
    rng = np.random.default_rng(seed)
    xs = 40 + 60 * np.arange(5)
    ys = 40 + 50 * np.arange(4)
    grid = np.array([(x, y) for y in ys for x in xs], dtype=np.int64)
    return grid + rng.integers(-8, 9, size=grid.shape)


@pytest.fixture
def star_points():
    return make_star_points()


@pytest.fixture
def anchor_frame(star_points):
    return render_star_field(star_points, seed=1)


@pytest.fixture
def shifted_frame_factory(star_points):
    def _make(dx, dy, seed=2, jitter_count=0):
        moved = star_points + np.array([dx, dy])
        moved[:jitter_count] += np.array([1, 0])
        return render_star_field(moved, seed=seed)

    return _make


@pytest.fixture
def noise_frame():
    return render_star_field([], seed=7)
