"""
Camera models for linescan (pushbroom) sensors.

Implements a single-row linescan camera whose pose varies with the
imaging time of each image line, an adjusted camera that applies an ECEF
rotation and translation to any other camera, and the bookkeeping for the
perturbed copies of a camera used for covariance propagation.

Coordinate System:
    - Camera frame: X across-track (samples), Y along-track (lines), Z look direction
    - Pixel: (sample, line), origin at the first sample of the first line

Projection Model:
    1. Imaging time of a line: t = first_line_time + line * dt_line
    2. Pose at t: Lagrange-interpolated position and normalized quaternion
    3. Ground-to-image: find the line where the point lies in the detector
       plane (Y = 0 in the camera frame), then sample = f * X/Z + cx
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
from enum import Enum
import copy
import logging

from .trajectory import CameraTrajectory, DEFAULT_INTERP_ORDER, NUM_QUAT_PARAMS, NUM_XYZ_PARAMS
from .transforms import Datum, quaternion_to_matrix, matrix_to_quaternion, split_rotation_translation

logger = logging.getLogger(__name__)

# Upper-triangular entries of the 3x3 position and 4x4 quaternion covariances
SAT_POS_COV_SIZE = 6
SAT_QUAT_COV_SIZE = 10

# One nominal camera, then a positive and a negative perturbation for
# each of the 3 position and 4 quaternion coordinates
NUM_CAMS_FOR_COVARIANCE = 15


class ProjectionError(ValueError):
    """Ground-to-image projection is not defined for this point and camera state."""


class CameraMismatchError(ValueError):
    """Cameras do not expose the state an operation requires."""


class CameraModel(ABC):
    """Capabilities the refinement and the covariance propagation need from a camera."""

    @abstractmethod
    def project(self, point: np.ndarray, precision: float = 1e-8) -> np.ndarray:
        """Project an ECEF point to a (sample, line) pixel. Raises ProjectionError."""

    @abstractmethod
    def camera_center(self, pixel: np.ndarray) -> np.ndarray:
        """ECEF camera center when the pixel was imaged."""

    @abstractmethod
    def pixel_to_vector(self, pixel: np.ndarray) -> np.ndarray:
        """Unit ECEF look direction through the pixel."""

    @abstractmethod
    def imaging_time(self, pixel: np.ndarray) -> float:
        """Time at which the pixel was imaged."""

    def pixel_to_ray(self, pixel: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return self.camera_center(pixel), self.pixel_to_vector(pixel)

    def is_thread_safe(self) -> bool:
        return True


@dataclass
class SatelliteCovariance:
    """
    Time-sampled satellite position and orientation covariances.

    Each row holds the upper-triangular entries of a symmetric matrix,
    row by row: c11, c12, c13, c22, c23, c33 for positions and the
    10 analogous entries for quaternions. Lookups use the nearest sample,
    as covariances are known with just a few digits of precision and are
    not meant to be smooth.
    """
    t0: float
    dt: float
    position_cov: np.ndarray  # (N, 6)
    quat_cov: np.ndarray  # (N, 10)

    def __post_init__(self):
        self.position_cov = np.array(self.position_cov, dtype=np.float64).reshape(-1, SAT_POS_COV_SIZE)
        self.quat_cov = np.array(self.quat_cov, dtype=np.float64).reshape(-1, SAT_QUAT_COV_SIZE)
        if self.dt <= 0:
            raise ValueError("Expecting a positive covariance time step")
        if len(self.position_cov) == 0 or len(self.position_cov) != len(self.quat_cov):
            raise ValueError("Expecting as many position as quaternion covariance samples")

    def _nearest(self, time: float) -> int:
        index = int(round((time - self.t0) / self.dt))
        return min(max(index, 0), len(self.position_cov) - 1)

    def position_covariance_at(self, time: float) -> np.ndarray:
        return self.position_cov[self._nearest(time)].copy()

    def quaternion_covariance_at(self, time: float) -> np.ndarray:
        return self.quat_cov[self._nearest(time)].copy()


def position_delta(num: int, delta: float) -> np.ndarray:
    """
    Position perturbation for perturbed camera ``num`` in [0, 15).

    Index 0 is nominal. Indices 1..6 perturb the x, y, z coordinates in the
    positive and then negative direction: (d, 0, 0), (-d, 0, 0), (0, d, 0),
    and so on. Indices 7..14 leave the position nominal.
    """
    ans = np.zeros(NUM_XYZ_PARAMS)
    if num == 0 or num > 6:
        return ans

    sign = -1.0 if num % 2 == 0 else 1.0
    ans[(num - 1) // 2] = sign * delta
    return ans


def quat_delta(num: int, delta: float) -> np.ndarray:
    """Quaternion perturbation for perturbed camera ``num``, same scheme for indices 7..14."""
    ans = np.zeros(NUM_QUAT_PARAMS)
    if num <= 6:
        return ans

    num = num - 6
    if num > 8:
        raise ValueError(f"Out of bounds in quat_delta(): {num + 6}")

    sign = -1.0 if num % 2 == 0 else 1.0
    ans[(num - 1) // 2] = sign * delta
    return ans


def _enforce_quaternion_continuity(quaternions: np.ndarray) -> np.ndarray:
    """Flip signs so consecutive quaternions lie in the same hemisphere."""
    quaternions = quaternions.copy()
    for i in range(1, len(quaternions)):
        if np.dot(quaternions[i], quaternions[i - 1]) < 0:
            quaternions[i] = -quaternions[i]
    return quaternions


class LinescanCamera(CameraModel):
    """
    Pushbroom camera with a single detector row.

    Attributes:
        trajectory: Sampled positions and orientations
        focal_length: Focal length in pixels
        optical_center: Sample coordinate of the optical axis
        first_line_time: Imaging time of line 0
        dt_line: Time between consecutive lines
        image_size: (num_samples, num_lines)
        datum: Datum of the ECEF frame
        covariance: Optional satellite covariance table
        pos_interp_order: Position samples in each Lagrange stencil
        quat_interp_order: Quaternion samples in each Lagrange stencil
    """

    def __init__(
        self,
        trajectory: CameraTrajectory,
        focal_length: float,
        optical_center: float,
        first_line_time: float,
        dt_line: float,
        image_size: Tuple[int, int],
        datum: Optional[Datum] = None,
        covariance: Optional[SatelliteCovariance] = None,
        pos_interp_order: int = DEFAULT_INTERP_ORDER,
        quat_interp_order: int = DEFAULT_INTERP_ORDER,
        thread_safe: bool = True,
    ):
        if dt_line <= 0:
            raise ValueError(f"Expecting a positive line period, got {dt_line}")
        if focal_length <= 0:
            raise ValueError(f"Expecting a positive focal length, got {focal_length}")

        self.trajectory = trajectory
        self.focal_length = float(focal_length)
        self.optical_center = float(optical_center)
        self.first_line_time = float(first_line_time)
        self.dt_line = float(dt_line)
        self.image_size = (int(image_size[0]), int(image_size[1]))
        self.datum = datum if datum is not None else Datum()
        self.covariance = covariance
        self.pos_interp_order = pos_interp_order
        self.quat_interp_order = quat_interp_order
        self.thread_safe = thread_safe

    def is_thread_safe(self) -> bool:
        return self.thread_safe

    def imaging_time(self, pixel: np.ndarray) -> float:
        return self.first_line_time + float(pixel[1]) * self.dt_line

    def line_at_time(self, time: float) -> float:
        return (time - self.first_line_time) / self.dt_line

    def camera_to_world(self, time: float) -> np.ndarray:
        quat = self.trajectory.quaternion_at(time, self.quat_interp_order)
        return quaternion_to_matrix(quat)

    def camera_center(self, pixel: np.ndarray) -> np.ndarray:
        return self.trajectory.position_at(self.imaging_time(pixel), self.pos_interp_order)

    def pixel_to_vector(self, pixel: np.ndarray) -> np.ndarray:
        time = self.imaging_time(pixel)
        direction = np.array([(float(pixel[0]) - self.optical_center) / self.focal_length, 0.0, 1.0])
        direction = self.camera_to_world(time) @ direction
        return direction / np.linalg.norm(direction)

    def _point_in_camera(self, point: np.ndarray, line: float) -> np.ndarray:
        time = self.first_line_time + line * self.dt_line
        try:
            center = self.trajectory.position_at(time, self.pos_interp_order)
            p_cam = self.camera_to_world(time).T @ (point - center)
        except ValueError as e:
            raise ProjectionError(f"Cannot evaluate the pose at line {line}: {e}") from e
        if not np.all(np.isfinite(p_cam)) or p_cam[2] <= 0:
            raise ProjectionError(f"Point {point} is behind the camera at line {line}")
        return p_cam

    def project(
        self,
        point: np.ndarray,
        precision: float = 1e-8,
        max_iterations: int = 100,
    ) -> np.ndarray:
        """
        Project an ECEF point into the image.

        Newton's method on the line coordinate drives the along-track angle
        Y/Z of the point in the camera frame to zero.

        Args:
            point: ECEF point
            precision: Stop when the line update is below this
            max_iterations: Maximum Newton iterations

        Returns:
            (sample, line) pixel

        Raises:
            ProjectionError: If the point is behind the camera or Newton
                does not converge
        """
        point = np.asarray(point, dtype=np.float64)
        if not np.all(np.isfinite(point)):
            raise ProjectionError(f"Cannot project non-finite point {point}")

        h = 0.5  # Line offset for the numerical derivative
        line = 0.5 * self.image_size[1]
        step = prev_step = np.inf
        for _ in range(max_iterations):
            p_cam = self._point_in_camera(point, line)
            g = p_cam[1] / p_cam[2]
            p_next = self._point_in_camera(point, line + h)
            deriv = (p_next[1] / p_next[2] - g) / h
            if deriv == 0 or not np.isfinite(deriv):
                raise ProjectionError(f"Degenerate along-track geometry for point {point}")

            step = g / deriv
            line -= step
            # Stop at the requested precision, or once round-off keeps the
            # step from shrinking further
            if abs(step) < precision or (abs(step) < 1e-6 and abs(step) >= abs(prev_step)):
                break
            prev_step = step

        if not abs(step) < 1e-6:
            raise ProjectionError(f"Ground-to-image did not converge for point {point}")

        p_cam = self._point_in_camera(point, line)
        sample = self.focal_length * p_cam[0] / p_cam[2] + self.optical_center
        return np.array([sample, line])

    def with_trajectory(self, trajectory: CameraTrajectory) -> "LinescanCamera":
        """Shallow copy of this camera using a different trajectory."""
        cam = copy.copy(self)
        cam.trajectory = trajectory
        return cam

    def with_interp_orders(self, pos_order: int, quat_order: int) -> "LinescanCamera":
        """Shallow copy of this camera, sharing the trajectory, with other stencil sizes."""
        if pos_order < 2 or quat_order < 2:
            raise ValueError("Need at least two samples per interpolation stencil")
        cam = copy.copy(self)
        cam.pos_interp_order = pos_order
        cam.quat_interp_order = quat_order
        return cam

    def with_window(
        self,
        beg_quat: int,
        quaternions: np.ndarray,
        beg_pos: int,
        positions: np.ndarray,
    ) -> "LinescanCamera":
        """Private copy of this camera with a range of trajectory samples replaced."""
        return self.with_trajectory(
            self.trajectory.with_window(beg_quat, quaternions, beg_pos, positions)
        )

    def apply_transform(self, rotation: np.ndarray, translation: np.ndarray) -> "LinescanCamera":
        """
        Camera with an ECEF rotation and translation baked into the trajectory.

        Positions become R * p + t and camera-to-world rotations become R * C.
        """
        rotation = np.asarray(rotation, dtype=np.float64)
        translation = np.asarray(translation, dtype=np.float64)
        traj = self.trajectory.copy()
        traj.positions = traj.positions @ rotation.T + translation
        quats = np.array([
            matrix_to_quaternion(rotation @ quaternion_to_matrix(q)) for q in traj.quaternions
        ])
        traj.quaternions = _enforce_quaternion_continuity(quats)
        return self.with_trajectory(traj)

    def perturbed_cameras(self, delta_position: float, delta_quat: float) -> List["LinescanCamera"]:
        """
        Nominal camera followed by 14 perturbed copies.

        Copy k has every position sample shifted by position_delta(k) and
        every quaternion sample shifted by quat_delta(k).
        """
        cams = [self]
        for num in range(1, NUM_CAMS_FOR_COVARIANCE):
            traj = self.trajectory.copy()
            traj.positions += position_delta(num, delta_position)
            traj.quaternions += quat_delta(num, delta_quat)
            cams.append(self.with_trajectory(traj))
        return cams

    def position_covariance(self, pixel: np.ndarray) -> np.ndarray:
        if self.covariance is None:
            raise CameraMismatchError("The camera has no satellite covariance table")
        return self.covariance.position_covariance_at(self.imaging_time(pixel))

    def orientation_covariance(self, pixel: np.ndarray) -> np.ndarray:
        if self.covariance is None:
            raise CameraMismatchError("The camera has no satellite covariance table")
        return self.covariance.quaternion_covariance_at(self.imaging_time(pixel))


class AdjustedCamera(CameraModel):
    """
    Camera with an ECEF rotation and translation applied on top of another camera.

    A point X in the underlying camera's frame maps to R * X + t.
    """

    def __init__(
        self,
        camera: CameraModel,
        rotation: Optional[np.ndarray] = None,
        translation: Optional[np.ndarray] = None,
    ):
        self.camera = camera
        self.rotation = np.eye(3) if rotation is None else np.asarray(rotation, dtype=np.float64)
        self.translation = np.zeros(3) if translation is None else np.asarray(translation, dtype=np.float64)

    @classmethod
    def from_transform(cls, camera: CameraModel, transform: np.ndarray) -> "AdjustedCamera":
        rotation, translation = split_rotation_translation(transform)
        return cls(camera, rotation, translation)

    def ecef_transform(self) -> np.ndarray:
        transform = np.eye(4)
        transform[:3, :3] = self.rotation
        transform[:3, 3] = self.translation
        return transform

    def project(self, point: np.ndarray, precision: float = 1e-8) -> np.ndarray:
        local = self.rotation.T @ (np.asarray(point, dtype=np.float64) - self.translation)
        return self.camera.project(local, precision)

    def camera_center(self, pixel: np.ndarray) -> np.ndarray:
        return self.rotation @ self.camera.camera_center(pixel) + self.translation

    def pixel_to_vector(self, pixel: np.ndarray) -> np.ndarray:
        return self.rotation @ self.camera.pixel_to_vector(pixel)

    def imaging_time(self, pixel: np.ndarray) -> float:
        return self.camera.imaging_time(pixel)

    def is_thread_safe(self) -> bool:
        return self.camera.is_thread_safe()


class CameraKind(Enum):
    UNADJUSTED = "unadjusted"
    ADJUSTED = "adjusted"
    LINESCAN = "linescan"


@dataclass
class CameraHandle:
    """
    A camera with its variant resolved once.

    Attributes:
        camera: The camera as supplied
        kind: Which variant the camera is
        linescan: Underlying linescan model, if any
        rotation: Adjustment rotation, for adjusted cameras
        translation: Adjustment translation, for adjusted cameras
    """
    camera: CameraModel
    kind: CameraKind
    linescan: Optional[LinescanCamera] = None
    rotation: Optional[np.ndarray] = None
    translation: Optional[np.ndarray] = None

    @property
    def is_adjusted(self) -> bool:
        return self.kind == CameraKind.ADJUSTED

    @classmethod
    def resolve(cls, camera: CameraModel) -> "CameraHandle":
        if isinstance(camera, AdjustedCamera):
            inner = camera.camera
            linescan = inner if isinstance(inner, LinescanCamera) else None
            return cls(camera, CameraKind.ADJUSTED, linescan,
                       camera.rotation.copy(), camera.translation.copy())
        if isinstance(camera, LinescanCamera):
            return cls(camera, CameraKind.LINESCAN, camera)
        return cls(camera, CameraKind.UNADJUSTED)

    def require_linescan(self) -> LinescanCamera:
        if self.linescan is None:
            raise CameraMismatchError("Expecting linescan cameras.")
        return self.linescan

    def baked_linescan(self) -> LinescanCamera:
        """Linescan model with any adjustment applied to its trajectory."""
        linescan = self.require_linescan()
        if self.is_adjusted:
            return linescan.apply_transform(self.rotation, self.translation)
        return linescan


def any_single_threaded(cameras: Sequence[CameraModel]) -> bool:
    """True if any camera must not be evaluated from several threads at once."""
    return any(not cam.is_thread_safe() for cam in cameras)
