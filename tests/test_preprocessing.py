import numpy as np
import pytest

from octvolavg.errors import CancellationRequested, DimensionError, GroupConsistencyError
from octvolavg.helpers.cancellation import CancellationToken
from octvolavg.helpers.oct_reader import Volume
from octvolavg.helpers.preprocessing import GroupShapeValidator, VolumePreprocessor, crop_volume


@pytest.mark.parametrize("top,bottom", [(1, 0), (0, 2), (2, 3), (4, 5)])
def test_crop_height(make_volume, top, bottom):
    volume = make_volume(width=6, height=10, depth=3)

    cropped = crop_volume(volume, top, bottom)

    assert cropped.shape == (6, 10 - top - bottom, 3)
    np.testing.assert_array_equal(
        cropped.frames[1].intensity, volume.frames[1].intensity[top:10 - bottom, :]
    )
    assert cropped.name == volume.name
    assert volume.height == 10


def test_zero_crop_returns_input(make_volume):
    volume = make_volume()

    assert crop_volume(volume, 0, 0) is volume


@pytest.mark.parametrize("top,bottom", [(10, 0), (5, 5), (7, 9), (-1, 2)])
def test_crop_outside_frame_raises(make_volume, top, bottom):
    volume = make_volume(height=10, name="rep1")

    with pytest.raises(DimensionError) as excinfo:
        crop_volume(volume, top, bottom)

    assert excinfo.value.volume_name == "rep1"
    assert excinfo.value.height == 10


def test_crop_keeps_doppler_and_timestamps(make_volume):
    volume = make_volume(height=8, doppler=True, timestamps=True)

    cropped = crop_volume(volume, 2, 1)

    frame = cropped.frames[0]
    np.testing.assert_array_equal(frame.doppler, volume.frames[0].doppler[2:7, :])
    assert frame.timestamp == volume.frames[0].timestamp


def test_preprocessor_polls_cancellation(make_volume):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationRequested):
        VolumePreprocessor(crop_top=1).process(make_volume(), token=token)


def test_group_validator_reports_height_mismatch():
    first = Volume.from_stack(np.ones((100, 100, 20), dtype=np.uint16), name="rep1")
    second = Volume.from_stack(np.ones((96, 100, 20), dtype=np.uint16), name="rep2")
    validator = GroupShapeValidator("P01_OD")

    validator.check(first)
    with pytest.raises(GroupConsistencyError) as excinfo:
        validator.check(second)

    error = excinfo.value
    assert error.dimension == "height"
    assert (error.expected, error.found) == (100, 96)
    assert (error.reference_volume, error.volume) == ("rep1", "rep2")
    assert "P01_OD" in str(error)


def test_group_validator_accepts_matching_shapes(make_volume):
    validator = GroupShapeValidator("g")

    validator.check(make_volume(seed=1, name="a"))
    validator.check(make_volume(seed=2, name="b"))

    assert validator.shape == (6, 5, 3)


def test_group_validator_checks_depth(make_volume):
    validator = GroupShapeValidator("g")
    validator.check(make_volume(depth=3))

    with pytest.raises(GroupConsistencyError) as excinfo:
        validator.check(make_volume(depth=4))

    assert excinfo.value.dimension == "depth"
