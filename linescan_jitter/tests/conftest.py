"""
Shared synthetic scenes.

Flat scene: two linescan cameras in a Cartesian frame, identity attitude,
flying along +Y at 10 m/s at x = -200 and x = +200, looking along +Z.
A point (x, y, 1000) is imaged at t = y / 10, line 100 * t, sample
700 + x in the first camera and 300 + x in the second.

Orbit scene: two cameras in ECEF above (6378137, 0, 0) at 700 km, offset
by -100 km and +100 km in Y and moving north at 7 km/s. The ground point
is imaged at t = 5, line 5000, samples 10000 and 30000.
"""

import pytest
import numpy as np

from linescan_jitter.camera import LinescanCamera, SatelliteCovariance
from linescan_jitter.trajectory import CameraTrajectory
from linescan_jitter.transforms import Datum, matrix_to_quaternion

IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])

FLAT_NUM_SAMPLES = 20
ORBIT_NUM_SAMPLES = 11

# Camera X to -Y, camera Y to +Z (north), camera Z to -X (down)
ORBIT_CAM_TO_WORLD = np.array([
    [0.0, 0.0, -1.0],
    [-1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
])
GROUND_POINT = np.array([6378137.0, 0.0, 0.0])


@pytest.fixture(scope="session")
def datum():
    return Datum()


@pytest.fixture
def make_flat_camera(datum):
    """Factory for flat scene cameras at a given across-track offset."""
    def _make(x_offset, thread_safe=True, num_samples=FLAT_NUM_SAMPLES):
        t = np.arange(num_samples, dtype=np.float64)
        positions = np.column_stack([np.full(num_samples, x_offset), 10.0 * t, np.zeros(num_samples)])
        quaternions = np.tile(IDENTITY_QUAT, (num_samples, 1))
        traj = CameraTrajectory(positions, quaternions, 0.0, 1.0, 0.0, 1.0)
        return LinescanCamera(
            traj,
            focal_length=1000.0,
            optical_center=500.0,
            first_line_time=0.0,
            dt_line=0.01,
            image_size=(1000, 100 * (num_samples - 1)),
            datum=datum,
            thread_safe=thread_safe,
        )
    return _make


@pytest.fixture
def flat_cameras(make_flat_camera):
    return [make_flat_camera(-200.0), make_flat_camera(200.0)]


@pytest.fixture
def flat_point():
    return np.array([0.0, 95.0, 1000.0])


def flat_pixels(point):
    """Pixels of a flat scene point in the two cameras."""
    line = 10.0 * point[1]
    return np.array([700.0 + point[0], line]), np.array([300.0 + point[0], line])


@pytest.fixture
def flat_pixel_fn():
    return flat_pixels


@pytest.fixture
def make_orbit_camera(datum):
    """Factory for orbit scene cameras at a given Y offset."""
    def _make(y_offset, pos_var=1.0, quat_var=1e-12, thread_safe=True):
        t = np.arange(ORBIT_NUM_SAMPLES, dtype=np.float64)
        positions = np.column_stack([
            np.full(ORBIT_NUM_SAMPLES, GROUND_POINT[0] + 700000.0),
            np.full(ORBIT_NUM_SAMPLES, y_offset),
            7000.0 * (t - 5.0),
        ])
        quat = matrix_to_quaternion(ORBIT_CAM_TO_WORLD)
        quaternions = np.tile(quat, (ORBIT_NUM_SAMPLES, 1))
        traj = CameraTrajectory(positions, quaternions, 0.0, 1.0, 0.0, 1.0)

        pos_cov = np.tile([pos_var, 0, 0, pos_var, 0, pos_var], (ORBIT_NUM_SAMPLES, 1))
        quat_cov = np.tile(
            [quat_var, 0, 0, 0, quat_var, 0, 0, quat_var, 0, quat_var], (ORBIT_NUM_SAMPLES, 1)
        )
        covariance = SatelliteCovariance(0.0, 1.0, pos_cov, quat_cov)

        return LinescanCamera(
            traj,
            focal_length=70000.0,
            optical_center=20000.0,
            first_line_time=0.0,
            dt_line=0.001,
            image_size=(40000, 10000),
            datum=datum,
            covariance=covariance,
            thread_safe=thread_safe,
        )
    return _make


@pytest.fixture
def orbit_cameras(make_orbit_camera):
    return [make_orbit_camera(-100000.0), make_orbit_camera(100000.0)]


@pytest.fixture
def orbit_pixels():
    return np.array([10000.0, 5000.0]), np.array([30000.0, 5000.0])
