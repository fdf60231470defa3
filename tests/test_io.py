import imageio.v3 as iio
import numpy as np
import pytest

from starstack.io import (
    CHECKPOINT_FORMAT_VERSION,
    Checkpoint,
    load_frame_from_bytes,
    load_frame_from_path,
    load_json,
    metadata_path,
    normalize_frame,
    read_checkpoint,
    scan_folder_for_images,
    write_checkpoint,
)
from starstack.config import DetectionSettings, StackSettings
from starstack.register import FrameOutcome
from starstack.stack import SessionState, StackSession


@pytest.fixture
def stacked_session(anchor_frame, shifted_frame_factory):
    session = StackSession(anchor_frame)
    assert session.merge_frame(shifted_frame_factory(5, 3)).accepted
    return session


def test_checkpoint_round_trip_preserves_processed_output(stacked_session, tmp_path):
    path = tmp_path / "session.fits"
    stacked_session.save_checkpoint(path)

    assert stacked_session.state is SessionState.CHECKPOINTED
    meta = load_json(metadata_path(path))
    assert meta["frame_count"] == 2
    assert meta["format_version"] == CHECKPOINT_FORMAT_VERSION

    restored = StackSession.from_checkpoint(path)

    assert restored.frame_count == 2
    assert restored.foreground_mask is None
    np.testing.assert_array_equal(restored.get_processed(), stacked_session.get_processed())
    np.testing.assert_array_equal(restored.get_preview(), stacked_session.get_preview())
    np.testing.assert_array_equal(restored.total_homography, np.eye(3))


def test_checkpoint_round_trip_with_mask(anchor_frame, shifted_frame_factory, tmp_path):
    segmentation = np.zeros(anchor_frame.shape[:2], dtype=np.uint8)
    segmentation[:180] = 255
    session = StackSession(anchor_frame, segmentation=segmentation)
    session.merge_frame(shifted_frame_factory(5, 3))
    path = session.save_checkpoint(tmp_path / "masked.fits")

    restored = StackSession.from_checkpoint(path)

    np.testing.assert_array_equal(restored.foreground_mask, session.foreground_mask)
    np.testing.assert_array_equal(restored.get_processed(), session.get_processed())


def test_restored_session_keeps_stacking(stacked_session, shifted_frame_factory, tmp_path):
    path = tmp_path / "resume.fits"
    stacked_session.save_checkpoint(path)
    restored = StackSession.from_checkpoint(path)

    result = restored.merge_frame(shifted_frame_factory(6, 3, seed=9))

    assert result.accepted
    assert restored.frame_count == 3
    assert restored.state is SessionState.ACTIVE


def test_missing_metadata_requires_explicit_frame_count(stacked_session, tmp_path):
    path = tmp_path / "bare.fits"
    stacked_session.save_checkpoint(path)
    metadata_path(path).unlink()

    with pytest.raises(ValueError):
        read_checkpoint(path)

    checkpoint = read_checkpoint(path, frame_count=2)
    assert checkpoint.frame_count == 2
    assert checkpoint.failed_frame_count == 0


def test_explicit_frame_count_overrides_metadata(stacked_session, tmp_path):
    path = tmp_path / "override.fits"
    stacked_session.save_checkpoint(path)

    restored = StackSession.from_checkpoint(path, frame_count=4)
    assert restored.frame_count == 4

    with pytest.raises(ValueError):
        read_checkpoint(path, frame_count=0)


def test_write_checkpoint_stores_float32_rasters(tmp_path):
    raster = np.full((4, 5, 3), 3.5, dtype=np.float64)
    checkpoint = Checkpoint(
        sum_stack=raster,
        max_stack=raster,
        unaligned_sum_stack=raster,
        foreground_mask=None,
        frame_count=1,
        threshold=-10.0,
    )
    path = write_checkpoint(tmp_path / "small.fits", checkpoint)

    loaded = read_checkpoint(path)
    assert loaded.sum_stack.dtype == np.float32
    assert loaded.sum_stack.shape == (4, 5, 3)
    assert loaded.foreground_mask is None
    assert loaded.threshold == pytest.approx(-10.0)


def test_normalize_frame_handles_common_layouts():
    gray = np.full((3, 4), 9, dtype=np.uint8)
    assert normalize_frame(gray).shape == (3, 4, 3)

    wide = np.full((3, 4, 3), 0x1234, dtype=np.uint16)
    assert normalize_frame(wide)[0, 0, 0] == 0x12

    unit = np.full((3, 4, 3), 0.5, dtype=np.float32)
    assert normalize_frame(unit)[0, 0, 0] == 127

    rgba = np.zeros((3, 4, 4), dtype=np.uint8)
    assert normalize_frame(rgba).shape == (3, 4, 3)

    with pytest.raises(ValueError):
        normalize_frame(np.zeros((3, 4, 2), dtype=np.uint8))


def test_frames_load_from_disk_and_bytes(anchor_frame, tmp_path):
    iio.imwrite(tmp_path / "b_frame.png", anchor_frame)
    iio.imwrite(tmp_path / "a_frame.png", anchor_frame)
    (tmp_path / "notes.txt").write_text("not an image", encoding="utf-8")

    files = scan_folder_for_images(tmp_path)
    assert [p.name for p in files] == ["a_frame.png", "b_frame.png"]
    np.testing.assert_array_equal(load_frame_from_path(files[0]), anchor_frame)

    payload = files[1].read_bytes()
    np.testing.assert_array_equal(load_frame_from_bytes("upload.PNG", payload), anchor_frame)

    with pytest.raises(FileNotFoundError):
        scan_folder_for_images(tmp_path / "missing")


def test_restore_reuses_saved_threshold(anchor_frame, noise_frame, tmp_path):
    session = StackSession(anchor_frame)
    session.merge_frame(noise_frame)
    assert session.threshold == pytest.approx(-8.0)
    path = session.save_checkpoint(tmp_path / "relaxed.fits")

    restored = StackSession.from_checkpoint(path)

    assert restored.threshold == pytest.approx(-8.0)
    assert restored.failed_frame_count == 1
    assert len(restored.last_frame_stars) == 20


def test_restore_does_not_search_thresholds(stacked_session, shifted_frame_factory, tmp_path):
    path = stacked_session.save_checkpoint(tmp_path / "narrow.fits")
    narrow = StackSettings(detection=DetectionSettings(max_stars_allowed=15))

    restored = StackSession.from_checkpoint(path, settings=narrow)

    assert restored.threshold == pytest.approx(stacked_session.threshold)
    assert len(restored.last_frame_stars) > 15
    assert restored.merge_frame(shifted_frame_factory(6, 3, seed=9)).accepted


def test_restore_of_starless_stack_rejects_frames_instead_of_raising(anchor_frame, tmp_path):
    blank = np.full(anchor_frame.shape, 10.0, dtype=np.float32)
    path = write_checkpoint(
        tmp_path / "blank.fits",
        Checkpoint(
            sum_stack=blank,
            max_stack=blank,
            unaligned_sum_stack=blank,
            foreground_mask=None,
            frame_count=1,
        ),
    )

    restored = StackSession.from_checkpoint(path)

    assert restored.threshold == pytest.approx(-10.0)
    assert len(restored.last_frame_stars) == 0
    result = restored.merge_frame(anchor_frame)
    assert result.outcome is FrameOutcome.REJECTED_INSUFFICIENT_MATCHES
    assert restored.frame_count == 1
    assert restored.failed_frame_count == 1
