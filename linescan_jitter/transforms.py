"""
Datum and rotation helpers.

This module handles the coordinate conversions the refinement and the
covariance propagation need:
    1. Geodetic (WGS84) to ECEF and back
    2. ECEF to local NED rotation
    3. Quaternion (scalar-last, camera-to-world) to rotation matrix

Coordinate System Definitions:
    - ECEF: Earth-Centered, Earth-Fixed (X towards 0°lon, Y towards 90°E, Z towards North Pole)
    - NED: North-East-Down (local tangent plane)
"""

import numpy as np
from typing import Tuple
from pyproj import Transformer
from scipy.spatial.transform import Rotation
import logging

logger = logging.getLogger(__name__)

# WGS84 ellipsoid parameters
WGS84_A = 6378137.0  # Semi-major axis (m)
WGS84_F = 1 / 298.257223563  # Flattening
WGS84_B = WGS84_A * (1 - WGS84_F)  # Semi-minor axis (m)
WGS84_E2 = 2 * WGS84_F - WGS84_F ** 2  # First eccentricity squared


class Datum:
    """
    WGS84 datum.

    Geodetic to ECEF uses the closed form. ECEF to geodetic goes through
    pyproj (EPSG:4978 to EPSG:4979). Angles are in degrees, heights are
    ellipsoidal, in meters.
    """

    def __init__(self, geocentric_epsg: int = 4978, geographic_epsg: int = 4979):
        self.geocentric_epsg = geocentric_epsg
        self.geographic_epsg = geographic_epsg
        self._to_geodetic = Transformer.from_crs(
            f"EPSG:{geocentric_epsg}", f"EPSG:{geographic_epsg}", always_xy=True
        )

    @staticmethod
    def geodetic_to_ecef(lat: float, lon: float, h: float) -> np.ndarray:
        """
        Convert geodetic coordinates (WGS84) to ECEF.

        Args:
            lat: Latitude in degrees
            lon: Longitude in degrees
            h: Ellipsoidal height in meters

        Returns:
            ECEF coordinates as (X, Y, Z) in meters
        """
        lat_rad = np.deg2rad(lat)
        lon_rad = np.deg2rad(lon)

        # Radius of curvature in the prime vertical
        N = WGS84_A / np.sqrt(1 - WGS84_E2 * np.sin(lat_rad) ** 2)

        X = (N + h) * np.cos(lat_rad) * np.cos(lon_rad)
        Y = (N + h) * np.cos(lat_rad) * np.sin(lon_rad)
        Z = (N * (1 - WGS84_E2) + h) * np.sin(lat_rad)

        return np.array([X, Y, Z])

    def ecef_to_geodetic(self, xyz: np.ndarray) -> np.ndarray:
        """
        Convert ECEF coordinates to geodetic.

        Returns:
            Array of (latitude, longitude, height), degrees and meters
        """
        x, y, z = np.asarray(xyz, dtype=np.float64)
        lon, lat, h = self._to_geodetic.transform(x, y, z)
        return np.array([lat, lon, h])

    @staticmethod
    def ecef_to_ned_rotation(lat: float, lon: float) -> np.ndarray:
        """
        Compute rotation matrix from ECEF to local NED frame.

        Args:
            lat: Latitude in degrees
            lon: Longitude in degrees

        Returns:
            3x3 rotation matrix from ECEF to NED
        """
        lat_rad = np.deg2rad(lat)
        lon_rad = np.deg2rad(lon)

        clat, slat = np.cos(lat_rad), np.sin(lat_rad)
        clon, slon = np.cos(lon_rad), np.sin(lon_rad)

        # Rows are the North, East and Down directions in ECEF
        return np.array([
            [-slat * clon, -slat * slon, clat],
            [-slon, clon, 0],
            [-clat * clon, -clat * slon, -slat]
        ])

    def ned_to_ecef_rotation(self, lat: float, lon: float) -> np.ndarray:
        return self.ecef_to_ned_rotation(lat, lon).T

    def ecef_to_ned_at(self, xyz: np.ndarray) -> np.ndarray:
        """ECEF to NED rotation for the local frame centered at an ECEF point."""
        lat, lon, _ = self.ecef_to_geodetic(xyz)
        return self.ecef_to_ned_rotation(lat, lon)


def quaternion_to_matrix(quat: np.ndarray) -> np.ndarray:
    """
    Rotation matrix for a scalar-last quaternion (x, y, z, w).

    The quaternion is normalized first. Raises ValueError for a zero or
    non-finite quaternion.
    """
    quat = np.asarray(quat, dtype=np.float64)
    if not np.all(np.isfinite(quat)):
        raise ValueError(f"Non-finite quaternion: {quat}")
    return Rotation.from_quat(quat).as_matrix()


def matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Scalar-last quaternion (x, y, z, w) for a rotation matrix."""
    return Rotation.from_matrix(R).as_quat()


def ray_angle(dir1: np.ndarray, dir2: np.ndarray) -> float:
    """Angle between two directions, in radians."""
    d1 = dir1 / np.linalg.norm(dir1)
    d2 = dir2 / np.linalg.norm(dir2)
    cos_angle = np.clip(np.dot(d1, d2), -1.0, 1.0)
    return float(np.arccos(cos_angle))


def validate_rotation_matrix(R: np.ndarray, tol: float = 1e-6) -> bool:
    """
    Validate that a matrix is a proper rotation matrix.

    A proper rotation matrix must:
        1. Be orthogonal: R @ R.T = I
        2. Have determinant = +1 (not a reflection)

    Args:
        R: 3x3 matrix to validate
        tol: Numerical tolerance

    Returns:
        True if R is a valid rotation matrix
    """
    if R.shape != (3, 3):
        return False

    if not np.allclose(R @ R.T, np.eye(3), atol=tol):
        return False

    return bool(np.isclose(np.linalg.det(R), 1.0, atol=tol))


def split_rotation_translation(transform: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a 4x4 homogeneous ECEF transform into rotation and translation."""
    transform = np.asarray(transform, dtype=np.float64)
    if transform.shape != (4, 4):
        raise ValueError(f"Expecting a 4x4 transform, got shape {transform.shape}")
    return transform[:3, :3].copy(), transform[:3, 3].copy()
