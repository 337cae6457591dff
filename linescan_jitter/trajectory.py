"""
Trajectory sample store.

A linescan camera's motion is described by two uniformly time-sampled
sequences:
    - positions: (P, 3) ECEF camera centers, in meters
    - quaternions: (Q, 4) camera-to-world orientations, scalar-last (x, y, z, w)

Each sequence has its own start time and time step, since ephemeris and
attitude are usually sampled at different rates. Values at arbitrary
times are obtained by Lagrange interpolation over a fixed number of
neighboring samples, which is also the neighborhood a pixel observation
depends on during refinement.
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
from pyproj import Proj
import logging

from .transforms import Datum

logger = logging.getLogger(__name__)

NUM_XYZ_PARAMS = 3
NUM_QUAT_PARAMS = 4

# Samples used by default when interpolating
DEFAULT_INTERP_ORDER = 8


def check_spacing(
    times: Sequence[float],
    spacing: float,
    tol: float,
    tag: str,
) -> None:
    """
    Check that sample times are separated by the given spacing.

    Args:
        times: Sample times, in seconds
        spacing: Expected time step
        tol: Allowed deviation from the step, in seconds
        tag: Name of the quantity, for error messages

    Raises:
        ValueError: If the spacing is not positive or a step deviates
    """
    if spacing <= 0:
        raise ValueError("Expecting positive time spacing between samples.")

    times = np.asarray(times, dtype=np.float64)
    for i in range(1, len(times)):
        err = abs(times[i] - times[i - 1] - spacing)
        if err > tol:
            raise ValueError(
                f"Expecting all {tag} values to be spaced by {spacing}. "
                f"Found a discrepancy of {err} seconds at index {i}."
            )


def lagrange_interpolate(
    samples: np.ndarray,
    t0: float,
    dt: float,
    time: float,
    order: int = DEFAULT_INTERP_ORDER,
) -> np.ndarray:
    """
    Lagrange interpolation in a uniformly sampled sequence.

    Uses ``order`` consecutive samples around ``time``. The stencil starts
    ``order/2 - 1`` samples before the one preceding ``time`` and is
    shifted inwards near the ends of the sequence, so times slightly
    outside the sampled range are extrapolated.

    Args:
        samples: (N, D) sample values
        t0: Time of the first sample
        dt: Time step
        time: Query time
        order: Number of samples in the stencil

    Returns:
        (D,) interpolated value
    """
    num = len(samples)
    if num < 2:
        raise ValueError("Need at least two samples to interpolate")
    order = min(order, num)

    start = stencil_start(int(np.floor((time - t0) / dt)), order, num)

    # Position of the query among the stencil nodes 0, 1, ..., order - 1
    x = (time - t0) / dt - start
    return _lagrange_weights(x, order) @ samples[start:start + order]


def stencil_start(index: int, order: int, num: int) -> int:
    """First sample of the interpolation stencil for the sample preceding a time."""
    order = min(order, num)
    return min(max(index - (order // 2 - 1), 0), num - order)


def _lagrange_weights(x: float, order: int) -> np.ndarray:
    """Weights of the Lagrange basis on nodes 0, 1, ..., order - 1 at x."""
    nodes = np.arange(order, dtype=np.float64)

    numer = np.tile(x - nodes, (order, 1))
    np.fill_diagonal(numer, 1.0)
    denom = nodes[:, None] - nodes[None, :]
    np.fill_diagonal(denom, 1.0)

    return numer.prod(axis=1) / denom.prod(axis=1)


@dataclass
class CameraTrajectory:
    """
    Uniformly sampled positions and orientations of one camera.

    The arrays are owned by the trajectory and are updated in place by the
    solver at the end of a refinement.

    Attributes:
        positions: (P, 3) camera centers, ECEF meters
        quaternions: (Q, 4) camera-to-world quaternions, scalar-last
        t0_pos: Time of the first position sample
        dt_pos: Time step between position samples
        t0_quat: Time of the first quaternion sample
        dt_quat: Time step between quaternion samples
    """
    positions: np.ndarray
    quaternions: np.ndarray
    t0_pos: float
    dt_pos: float
    t0_quat: float
    dt_quat: float

    def __post_init__(self):
        self.positions = np.array(self.positions, dtype=np.float64).reshape(-1, NUM_XYZ_PARAMS)
        self.quaternions = np.array(self.quaternions, dtype=np.float64).reshape(-1, NUM_QUAT_PARAMS)

        if self.dt_pos <= 0 or self.dt_quat <= 0:
            raise ValueError(
                f"Expecting positive time steps, got dt_pos={self.dt_pos}, dt_quat={self.dt_quat}"
            )
        if len(self.positions) < 2 or len(self.quaternions) < 2:
            raise ValueError("Expecting at least two position and two quaternion samples")

    @property
    def num_positions(self) -> int:
        return len(self.positions)

    @property
    def num_quaternions(self) -> int:
        return len(self.quaternions)

    @property
    def position_time_range(self) -> Tuple[float, float]:
        return self.t0_pos, self.t0_pos + (self.num_positions - 1) * self.dt_pos

    @property
    def quaternion_time_range(self) -> Tuple[float, float]:
        return self.t0_quat, self.t0_quat + (self.num_quaternions - 1) * self.dt_quat

    def position_at(self, time: float, order: int = DEFAULT_INTERP_ORDER) -> np.ndarray:
        return lagrange_interpolate(self.positions, self.t0_pos, self.dt_pos, time, order)

    def quaternion_at(self, time: float, order: int = DEFAULT_INTERP_ORDER) -> np.ndarray:
        """Interpolated quaternion, normalized."""
        quat = lagrange_interpolate(self.quaternions, self.t0_quat, self.dt_quat, time, order)
        norm = np.linalg.norm(quat)
        if not np.isfinite(norm) or norm == 0:
            raise ValueError(f"Cannot normalize interpolated quaternion at time {time}")
        return quat / norm

    def check_min_samples(self, num_pos: int, num_quat: int) -> None:
        """Raise if the trajectory has fewer samples than a window needs."""
        if self.num_positions < num_pos or self.num_quaternions < num_quat:
            raise ValueError(
                f"Trajectory has {self.num_positions} positions and {self.num_quaternions} "
                f"quaternions, need at least {num_pos} and {num_quat}."
            )

    def copy(self) -> "CameraTrajectory":
        return CameraTrajectory(
            positions=self.positions.copy(),
            quaternions=self.quaternions.copy(),
            t0_pos=self.t0_pos,
            dt_pos=self.dt_pos,
            t0_quat=self.t0_quat,
            dt_quat=self.dt_quat,
        )

    def with_window(
        self,
        beg_quat: int,
        quaternions: np.ndarray,
        beg_pos: int,
        positions: np.ndarray,
    ) -> "CameraTrajectory":
        """
        Copy of this trajectory with a contiguous range of samples replaced.

        Args:
            beg_quat: Index of the first replaced quaternion
            quaternions: (n, 4) replacement quaternions
            beg_pos: Index of the first replaced position
            positions: (m, 3) replacement positions
        """
        traj = self.copy()
        quaternions = np.asarray(quaternions, dtype=np.float64).reshape(-1, NUM_QUAT_PARAMS)
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, NUM_XYZ_PARAMS)
        traj.quaternions[beg_quat:beg_quat + len(quaternions)] = quaternions
        traj.positions[beg_pos:beg_pos + len(positions)] = positions
        return traj

    @classmethod
    def from_timestamps(
        cls,
        position_times: Sequence[float],
        positions: np.ndarray,
        quaternion_times: Sequence[float],
        quaternions: np.ndarray,
        tol: float = 1e-6,
    ) -> "CameraTrajectory":
        """
        Build a trajectory from explicit sample times.

        The tolerance should not be too small as times in seconds can be
        large. A satellite moving under 10 km/s covers less than 1 cm in
        1e-6 seconds.
        """
        if len(position_times) < 2 or len(quaternion_times) < 2:
            raise ValueError("Expecting at least two position and two quaternion times")

        dt_pos = position_times[1] - position_times[0]
        dt_quat = quaternion_times[1] - quaternion_times[0]
        check_spacing(position_times, dt_pos, tol, "position")
        check_spacing(quaternion_times, dt_quat, tol, "quaternion")

        return cls(
            positions=positions,
            quaternions=quaternions,
            t0_pos=float(position_times[0]),
            dt_pos=float(dt_pos),
            t0_quat=float(quaternion_times[0]),
            dt_quat=float(dt_quat),
        )


def _stereographic_at(position: np.ndarray, datum: Datum) -> Proj:
    """Stereographic projection centered below an ECEF position."""
    lat, lon, _ = datum.ecef_to_geodetic(position)
    return Proj(proj='stere', lat_0=lat, lon_0=lon, k=1.0, x_0=0.0, y_0=0.0, ellps='WGS84')


def extrapolate_position(
    datum: Datum,
    dt: float,
    times: List[float],
    positions: List[np.ndarray],
    velocities: List[np.ndarray],
) -> None:
    """
    Append one more position, velocity and time by fitting a parabola.

    The fit is done in stereographic coordinates centered at the last
    position, where the orbit curvature is smaller than in ECEF. Velocities
    are extrapolated in ECEF. The lists are modified in place.

    Args:
        datum: Datum for the projection
        dt: Time step between samples
        times: Sample times
        positions: ECEF positions
        velocities: ECEF velocities
    """
    if len(positions) < 3:
        raise ValueError("Expecting at least 3 positions for parabola extrapolation.")
    if dt <= 0:
        raise ValueError("Expecting positive time spacing between samples.")

    check_spacing(times, dt, 1e-6, "position")

    proj = _stereographic_at(np.asarray(positions[-1]), datum)

    def to_projected(xyz):
        lat, lon, h = datum.ecef_to_geodetic(xyz)
        x, y = proj(lon, lat)
        return np.array([x, y, h])

    u, v, w = (to_projected(p) for p in positions[-3:])
    next_proj = u - 3 * v + 3 * w
    lon, lat = proj(next_proj[0], next_proj[1], inverse=True)
    next_pos = datum.geodetic_to_ecef(lat, lon, next_proj[2])

    u, v, w = (np.asarray(vel, dtype=np.float64) for vel in velocities[-3:])
    next_vel = u - 3 * v + 3 * w

    positions.append(next_pos)
    velocities.append(next_vel)
    times.append(times[-1] + dt)

    logger.debug(f"Extrapolated position at time {times[-1]:.6f}: {next_pos}")


def extend_positions_to_cover(
    datum: Datum,
    dt: float,
    times: List[float],
    positions: List[np.ndarray],
    velocities: List[np.ndarray],
    last_line_time: float,
    tol: float = 1e-6,
    max_extra: Optional[int] = None,
) -> int:
    """
    Extrapolate positions until their time range reaches the last image line.

    Trajectory preparation step for sampled ephemerides that end before the
    last image line. Run it on the raw samples before building the
    CameraTrajectory, since the store itself keeps no velocities.

    Returns:
        Number of positions appended
    """
    added = 0
    while times[-1] < last_line_time - tol:
        if max_extra is not None and added >= max_extra:
            raise ValueError(
                f"Position times end at {times[-1]}, could not reach {last_line_time} "
                f"with {max_extra} extrapolated samples."
            )
        extrapolate_position(datum, dt, times, positions, velocities)
        added += 1

    if added:
        logger.info(f"Extrapolated {added} positions to cover the image line times")
    return added
