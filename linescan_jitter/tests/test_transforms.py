"""
Tests for datum and rotation helpers.

These tests verify the correctness of:
    - Geodetic to ECEF conversion and back
    - ECEF to NED rotation
    - Quaternion to rotation matrix conversion
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from linescan_jitter.transforms import (
    Datum,
    quaternion_to_matrix,
    matrix_to_quaternion,
    ray_angle,
    split_rotation_translation,
    validate_rotation_matrix,
    WGS84_A,
    WGS84_B,
)


class TestGeodeticToECEF:
    """Tests for geodetic to ECEF conversion."""

    def test_equator_prime_meridian(self):
        """Point at equator/prime meridian should be on +X axis."""
        result = Datum.geodetic_to_ecef(0, 0, 0)

        assert_allclose(result[0], WGS84_A, rtol=1e-10)
        assert_allclose(result[1], 0, atol=1e-10)
        assert_allclose(result[2], 0, atol=1e-10)

    def test_north_pole(self):
        """North pole should be on +Z axis."""
        result = Datum.geodetic_to_ecef(90, 0, 0)

        assert_allclose(result[0], 0, atol=1e-6)
        assert_allclose(result[1], 0, atol=1e-6)
        assert_allclose(result[2], WGS84_B, rtol=1e-10)

    def test_height_increases_distance(self):
        dist_0 = np.linalg.norm(Datum.geodetic_to_ecef(45, 45, 0))
        dist_1000 = np.linalg.norm(Datum.geodetic_to_ecef(45, 45, 1000))

        assert dist_1000 - dist_0 == pytest.approx(1000, rel=0.01)


class TestECEFToGeodetic:
    """Tests for the pyproj based inverse conversion."""

    def test_round_trip(self, datum):
        xyz = Datum.geodetic_to_ecef(27.9881, 86.9250, 8848.0)
        lat, lon, h = datum.ecef_to_geodetic(xyz)

        assert lat == pytest.approx(27.9881, abs=1e-9)
        assert lon == pytest.approx(86.9250, abs=1e-9)
        assert h == pytest.approx(8848.0, abs=1e-4)

    def test_satellite_height(self, datum):
        lat, lon, h = datum.ecef_to_geodetic([WGS84_A + 700000.0, 0.0, 0.0])

        assert lat == pytest.approx(0.0, abs=1e-9)
        assert lon == pytest.approx(0.0, abs=1e-9)
        assert h == pytest.approx(700000.0, abs=1e-4)


class TestECEFToNEDRotation:
    """Tests for ECEF to NED rotation matrix."""

    def test_equator_prime_meridian(self):
        R = Datum.ecef_to_ned_rotation(0, 0)

        assert validate_rotation_matrix(R)
        # North is +Z, East is +Y, Down is -X
        assert_allclose(R[0], [0, 0, 1], atol=1e-12)
        assert_allclose(R[1], [0, 1, 0], atol=1e-12)
        assert_allclose(R[2], [-1, 0, 0], atol=1e-12)

    def test_ned_at_point(self, datum):
        xyz = Datum.geodetic_to_ecef(0, 90, 0)
        R = datum.ecef_to_ned_at(xyz)

        # East at 90°E is -X
        assert_allclose(R[1], [-1, 0, 0], atol=1e-9)
        assert_allclose(datum.ned_to_ecef_rotation(0, 90), R.T, atol=1e-9)

    def test_valid_everywhere(self):
        for lat in [-80, -30, 0, 30, 80]:
            for lon in [-170, -90, 0, 90, 170]:
                assert validate_rotation_matrix(Datum.ecef_to_ned_rotation(lat, lon))


class TestQuaternions:
    """Scalar-last quaternion conversions."""

    def test_identity(self):
        assert_allclose(quaternion_to_matrix([0, 0, 0, 1]), np.eye(3), atol=1e-15)

    def test_unnormalized(self):
        assert_allclose(quaternion_to_matrix([0, 0, 0, 3]), np.eye(3), atol=1e-15)

    def test_rotation_about_z(self):
        half = np.deg2rad(90) / 2
        R = quaternion_to_matrix([0, 0, np.sin(half), np.cos(half)])

        assert_allclose(R @ [1, 0, 0], [0, 1, 0], atol=1e-12)

    def test_round_trip(self):
        R = np.array([[0.0, 0.0, -1.0], [-1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        assert_allclose(quaternion_to_matrix(matrix_to_quaternion(R)), R, atol=1e-12)

    def test_non_finite(self):
        with pytest.raises(ValueError):
            quaternion_to_matrix([np.nan, 0, 0, 1])

    def test_zero(self):
        with pytest.raises(ValueError):
            quaternion_to_matrix([0, 0, 0, 0])


class TestHelpers:

    def test_ray_angle(self):
        assert ray_angle(np.array([1.0, 0, 0]), np.array([0, 2.0, 0])) == pytest.approx(np.pi / 2)
        assert ray_angle(np.array([1.0, 1.0, 0]), np.array([1.0, 1.0, 0])) == pytest.approx(0.0, abs=1e-7)

    def test_split_transform(self):
        T = np.eye(4)
        T[:3, 3] = [1, 2, 3]
        R, t = split_rotation_translation(T)

        assert_allclose(R, np.eye(3))
        assert_allclose(t, [1, 2, 3])

    def test_split_wrong_shape(self):
        with pytest.raises(ValueError):
            split_rotation_translation(np.eye(3))

    def test_reflection_is_not_rotation(self):
        assert not validate_rotation_matrix(np.diag([1.0, 1.0, -1.0]))
