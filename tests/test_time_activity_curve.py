import numpy as np
import pytest

from petkfit.utils import time_activity_curve as tac_utils


def test_frame_bounds_from_pairs():
    scan_times = np.array([[0.0, 1.0], [1.0, 3.0], [3.0, 6.0]])
    starts, ends = tac_utils.get_frame_bounds(scan_times)
    np.testing.assert_array_equal(starts, [0.0, 1.0, 3.0])
    np.testing.assert_array_equal(ends, [1.0, 3.0, 6.0])


def test_frame_bounds_from_starts_and_scalar_duration():
    starts, ends = tac_utils.get_frame_bounds(np.array([0.0, 2.0, 4.0]), frame_duration=2.0)
    np.testing.assert_array_equal(ends, [2.0, 4.0, 6.0])


def test_frame_bounds_from_starts_and_durations():
    starts, ends = tac_utils.get_frame_bounds(np.array([0.0, 1.0, 3.0]), frame_duration=np.array([1.0, 2.0, 3.0]))
    np.testing.assert_array_equal(ends, [1.0, 3.0, 6.0])


def test_frame_bounds_infers_durations():
    starts, ends = tac_utils.get_frame_bounds(np.array([0.0, 1.0, 3.0]))
    np.testing.assert_array_equal(ends, [1.0, 3.0, 5.0])


@pytest.mark.parametrize("scan_times, frame_duration", [(np.zeros((3, 3)), None),
                                                        (np.array([[0.0, 1.0], [1.0, 0.5]]), None),
                                                        (np.array([0.0, 1.0]), 0.0),
                                                        (np.array([0.0]), None)])
def test_invalid_frame_bounds_raise(scan_times, frame_duration):
    with pytest.raises(ValueError):
        tac_utils.get_frame_bounds(scan_times, frame_duration)


def test_frame_durations_from_starts():
    np.testing.assert_array_equal(tac_utils.get_frame_durations_from_starts(np.array([0.0, 0.5, 1.5, 4.0])),
                                  [0.5, 1.0, 2.5, 2.5])


def test_frame_mid_times():
    np.testing.assert_array_equal(tac_utils.calc_frame_mid_times([0.0, 1.0], [1.0, 3.0]), [0.5, 2.0])


def test_decay_based_weights():
    starts = np.array([0.0, 1.0, 3.0])
    ends = np.array([1.0, 3.0, 6.0])
    tac_vals = np.array([2.0, 4.0, 0.0])
    decay_constant = 0.1

    weights = tac_utils.calc_decay_based_weights(starts, ends, tac_vals, decay_constant)

    mid_times = np.array([0.5, 2.0, 4.5])
    durations = np.array([1.0, 2.0, 3.0])
    expected = durations * np.exp(-decay_constant * mid_times) / np.array([2.0, 4.0, 1.0])
    expected[2] = 0.0
    np.testing.assert_allclose(weights, expected)


def test_decay_based_weights_for_matrix():
    starts = np.array([0.0, 1.0])
    ends = np.array([1.0, 2.0])
    tac_matrix = np.array([[1.0, 2.0, -1.0], [4.0, 1.0, 2.0]])
    weights = tac_utils.calc_decay_based_weights(starts, ends, tac_matrix, 0.0)
    np.testing.assert_allclose(weights, [[1.0, 0.5, 0.0], [0.25, 1.0, 0.5]])


def test_blood_input_defaults():
    blood = tac_utils.BloodInput(times=np.arange(3.0), plasma=np.ones(3))
    assert blood.whole_blood is None


def test_decay_based_weights_for_uncorrected_tac():
    starts = np.array([0.0, 1.0, 3.0])
    ends = np.array([1.0, 3.0, 6.0])
    tac_vals = np.array([2.0, 4.0, 0.0])
    weights = tac_utils.calc_decay_based_weights(starts, ends, tac_vals, 0.1, decay_corrected=False)
    np.testing.assert_allclose(weights, [0.5, 0.5, 0.0])
