import numpy as np
import pytest

from octvolavg.helpers.bscan_averaging import shift_bscan_2d, z_project_mean


def test_mean_ignores_background():
    bscans = [np.array([[0.0, 1.0]]), np.array([[4.0, 3.0]]), np.array([[6.0, 0.0]])]

    averaged = z_project_mean(bscans)

    np.testing.assert_allclose(averaged, [[5.0, 2.0]])
    assert averaged.dtype == np.float32


def test_all_background_pixel_is_zero():
    bscans = [np.zeros((2, 2)), np.zeros((2, 2)), np.array([[0.0, 0.0], [0.0, 9.0]])]

    averaged = z_project_mean(bscans)

    np.testing.assert_array_equal(averaged, [[0.0, 0.0], [0.0, 9.0]])
    assert np.all(np.isfinite(averaged))


def test_accepts_stacked_replicates():
    stack = np.stack([np.full((3, 4), 2.0), np.full((3, 4), 4.0)], axis=2)

    np.testing.assert_allclose(z_project_mean(stack), np.full((3, 4), 3.0))


def test_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        z_project_mean([np.ones((2, 2)), np.ones((3, 2))])


def test_shift_fills_with_background():
    bscan = np.arange(1, 26, dtype=np.float32).reshape(5, 5)

    shifted = shift_bscan_2d(bscan, 2, 1)

    np.testing.assert_array_equal(shifted[:1, :], 0)
    np.testing.assert_array_equal(shifted[:, :2], 0)
    np.testing.assert_allclose(shifted[1:, 2:], bscan[:4, :3])


def test_tiny_shift_is_a_copy():
    bscan = np.ones((3, 3), dtype=np.float32)

    shifted = shift_bscan_2d(bscan, 0.001, 0.0)

    assert shifted is not bscan
    np.testing.assert_array_equal(shifted, bscan)
