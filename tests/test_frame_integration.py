import numpy as np
import pytest

from petkmap.kinetic_modeling.frame_integration import ScanTiming, average_over_frames
from petkmap.utils.errors import InvalidFrames


@pytest.mark.parametrize('durations', [[1.0] * 5, [0.5, 0.5, 2.0, 7.3, 10.0], [0.1] * 3 + [15.0]])
def test_constant_curve_is_unchanged(durations):
    timing = ScanTiming.from_durations(durations)
    averages = timing.average(np.full(len(timing.fine_grid), 4.2))
    np.testing.assert_allclose(averages, 4.2, rtol=1e-12)


def test_constant_curve_with_gaps_and_unaligned_frames():
    grid = np.linspace(0.0, 10.0, 11)
    starts = np.array([0.25, 2.5, 6.1])
    ends = np.array([1.75, 2.5, 9.9])
    averages = average_over_frames(grid, np.full(11, -1.5), starts, ends)
    np.testing.assert_allclose(averages, -1.5)


def test_linear_curve_average_is_midpoint_value():
    grid = np.linspace(0.0, 10.0, 41)
    starts = np.array([0.0, 1.3, 4.0])
    ends = np.array([1.0, 3.9, 10.0])
    averages = average_over_frames(grid, 2.0 * grid + 1.0, starts, ends)
    np.testing.assert_allclose(averages, 2.0 * (starts + ends) / 2.0 + 1.0, rtol=1e-12)


def test_zero_duration_frame_returns_instantaneous_value():
    grid = np.linspace(0.0, 4.0, 5)
    averages = average_over_frames(grid, grid ** 2, np.array([2.5]), np.array([2.5]))
    np.testing.assert_allclose(averages, [(4.0 + 9.0) / 2.0])


def test_matrix_columns_averaged_independently():
    timing = ScanTiming.from_durations([1.0, 2.0, 3.0])
    grid = timing.fine_grid
    curves = np.column_stack([np.ones_like(grid), grid, 3.0 * grid])
    averages = timing.average(curves)
    assert averages.shape == (3, 3)
    np.testing.assert_allclose(averages[:, 0], 1.0)
    np.testing.assert_allclose(averages[:, 1], timing.frame_mid_times, rtol=1e-12)
    np.testing.assert_allclose(averages[:, 2], 3.0 * timing.frame_mid_times, rtol=1e-12)


def test_fine_grid_contains_every_frame_edge():
    timing = ScanTiming(frame_starts=np.array([0.0, 0.37, 1.0]), frame_ends=np.array([0.37, 1.0, 2.9]), step=0.1)
    assert timing.fine_grid[0] == 0.0
    assert np.all(np.diff(timing.fine_grid) > 0.0)
    for edge in np.concatenate([timing.frame_starts, timing.frame_ends]):
        assert np.any(timing.fine_grid == edge)
    assert np.max(np.diff(timing.fine_grid)) <= 0.1 + 1e-12


def test_grid_points_next_to_an_edge_are_dropped():
    edge = 0.3 + 1.0e-9
    timing = ScanTiming(frame_starts=np.array([0.0, edge]), frame_ends=np.array([edge, 1.0]), step=0.1)
    assert np.any(timing.fine_grid == edge)
    assert np.min(np.diff(timing.fine_grid)) > 1.0e-6 * 0.1
    assert len(timing.fine_grid) == 11


def test_fine_grid_for_a_long_scan_with_a_small_step():
    timing = ScanTiming.from_durations(np.full(30, 3.0), step=1.0e-4)
    grid = timing.fine_grid
    assert grid[0] == 0.0 and grid[-1] == 90.0
    assert len(grid) == pytest.approx(900001, abs=2)
    assert np.all(np.diff(grid) > 0.0)
    for edge in timing.frame_ends:
        assert np.any(grid == edge)


def test_default_step():
    timing = ScanTiming.from_durations([0.5, 1.0, 60.0])
    assert timing.step == pytest.approx(0.1)
    long_timing = ScanTiming.from_durations([0.01, 1000.0])
    assert long_timing.step == pytest.approx(1000.01 / 5000.0)


def test_timing_arrays_are_read_only():
    timing = ScanTiming.from_durations([1.0, 1.0])
    with pytest.raises(ValueError):
        timing.fine_grid[0] = 1.0


@pytest.mark.parametrize('starts, ends', [
    ([0.0, 1.0], [1.0]),
    ([-1.0, 1.0], [1.0, 2.0]),
    ([0.0, 2.0], [1.0, 1.5]),
    ([0.0, 0.5], [1.0, 2.0]),
    ([0.0], [0.0]),
    ])
def test_invalid_frames(starts, ends):
    with pytest.raises(InvalidFrames):
        ScanTiming(frame_starts=np.array(starts), frame_ends=np.array(ends))


def test_frames_outside_grid():
    with pytest.raises(ValueError):
        average_over_frames(np.linspace(0.0, 1.0, 5), np.ones(5), np.array([0.5]), np.array([2.0]))
