"""
Tests for the observation window resolver.
"""

import pytest
import numpy as np

from linescan_jitter.config import WindowSettings
from linescan_jitter.trajectory import stencil_start
from linescan_jitter.window import WindowError, index_range, resolve_window


class TestIndexRange:

    def test_centered(self):
        # Time 9.5 falls after sample 9, the 8-sample stencil starts 3 before it
        assert index_range(9.5, 9.5, 0.0, 1.0, 20, 8) == (6, 14)

    def test_guard_band_spanning_samples(self):
        assert index_range(8.9, 10.1, 0.0, 1.0, 20, 8) == (5, 15)

    def test_order_of_times(self):
        assert index_range(10.1, 8.9, 0.0, 1.0, 20, 8) == index_range(8.9, 10.1, 0.0, 1.0, 20, 8)

    def test_clamped_at_start(self):
        beg, end = index_range(-0.1, 0.1, 0.0, 1.0, 20, 8)
        assert beg == 0
        # The interpolation stencil is shifted inwards to samples 0-7
        assert end == 8

    def test_clamped_at_end(self):
        beg, end = index_range(18.9, 19.1, 0.0, 1.0, 20, 8)
        assert beg == 12
        assert end == 20

    @pytest.mark.parametrize("time", [0.0, 0.5, 1.5, 9.5, 17.5, 18.5, 19.0])
    @pytest.mark.parametrize("size", [3, 4, 5, 8])
    def test_covers_interpolation_stencil(self, time, size):
        beg, end = index_range(time, time, 0.0, 1.0, 20, size)
        start = stencil_start(int(np.floor(time)), size, 20)

        assert beg <= start
        assert start + size <= end

    def test_short_trajectory(self):
        assert index_range(1.5, 1.5, 0.0, 1.0, 3, 8) == (0, 3)

    def test_empty_window(self):
        with pytest.raises(WindowError):
            index_range(100.0, 100.0, 0.0, 1.0, 20, 8)

    def test_non_finite_time(self):
        with pytest.raises(WindowError):
            index_range(np.nan, 1.0, 0.0, 1.0, 20, 8)


class TestResolveWindow:

    def test_observation_at_start_time(self, flat_cameras):
        window = resolve_window(
            flat_cameras[0], np.array([500.0, 0.0]), 0, 3, WindowSettings(), line_extra=10.0
        )

        assert window.beg_quat == 0
        assert window.beg_pos == 0
        assert window.camera_index == 0
        assert window.point_index == 3

    def test_in_bounds_over_image(self, flat_cameras):
        cam = flat_cameras[0]
        for line in np.linspace(0.0, cam.image_size[1], 25):
            window = resolve_window(cam, np.array([500.0, line]), 0, 0, WindowSettings(), 10.0)

            assert 0 <= window.beg_quat < window.end_quat <= cam.trajectory.num_quaternions
            assert 0 <= window.beg_pos < window.end_pos <= cam.trajectory.num_positions

    def test_mid_image(self, flat_cameras):
        window = resolve_window(
            flat_cameras[0], np.array([700.0, 950.0]), 0, 0, WindowSettings(), 10.0
        )

        assert (window.beg_quat, window.end_quat) == (6, 14)
        assert (window.beg_pos, window.end_pos) == (6, 14)
        assert window.num_quat == 8
        assert list(window.pos_range) == list(range(6, 14))

    def test_widens_with_window_size(self, flat_cameras):
        pixel = np.array([700.0, 950.0])
        previous = None
        for size in [2, 4, 6, 8, 10]:
            settings = WindowSettings(num_quat_per_obs=size, num_pos_per_obs=size)
            window = resolve_window(flat_cameras[0], pixel, 0, 0, settings, 10.0)
            if previous is not None:
                assert window.beg_quat <= previous.beg_quat
                assert window.end_quat >= previous.end_quat
                assert window.num_pos >= previous.num_pos
            previous = window

    def test_widens_with_guard_band(self, flat_cameras):
        pixel = np.array([700.0, 950.0])
        narrow = resolve_window(flat_cameras[0], pixel, 0, 0, WindowSettings(), 0.0)
        wide = resolve_window(flat_cameras[0], pixel, 0, 0, WindowSettings(), 100.0)

        assert wide.beg_pos <= narrow.beg_pos
        assert wide.end_pos >= narrow.end_pos
        assert wide.num_pos > narrow.num_pos

    def test_different_sampling_rates(self, flat_cameras):
        cam = flat_cameras[0]
        traj = cam.trajectory
        traj.quaternions = np.tile([0.0, 0.0, 0.0, 1.0], (39, 1))
        traj.dt_quat = 0.5

        window = resolve_window(cam, np.array([700.0, 950.0]), 0, 0, WindowSettings(), 10.0)

        assert (window.beg_pos, window.end_pos) == (6, 14)
        assert (window.beg_quat, window.end_quat) == (15, 24)

    def test_outside_trajectory(self, flat_cameras):
        with pytest.raises(WindowError):
            resolve_window(
                flat_cameras[0], np.array([500.0, 5000.0]), 0, 0, WindowSettings(), 10.0
            )
