"""
Observation window resolver.

A pixel observation in a linescan image depends on the trajectory samples
used to interpolate the pose at its imaging time. Since the optimizer
moves the tie point, and with it the projected line, each observation is
tied to a neighborhood of samples around a guard band of lines, not only
to the samples of a single interpolation instant.
"""

import numpy as np
from dataclasses import dataclass
from typing import Tuple
import logging

from .camera import LinescanCamera
from .config import WindowSettings
from .trajectory import stencil_start

logger = logging.getLogger(__name__)


class WindowError(ValueError):
    """An observation window came out empty. Indicates a book-keeping error."""


@dataclass(frozen=True)
class ObservationWindow:
    """
    Half-open index ranges into one camera's trajectory.

    Attributes:
        camera_index: Camera owning the trajectory
        point_index: Tie point observed
        beg_quat: First quaternion sample the observation depends on
        end_quat: One past the last quaternion sample
        beg_pos: First position sample
        end_pos: One past the last position sample
    """
    camera_index: int
    point_index: int
    beg_quat: int
    end_quat: int
    beg_pos: int
    end_pos: int

    @property
    def num_quat(self) -> int:
        return self.end_quat - self.beg_quat

    @property
    def num_pos(self) -> int:
        return self.end_pos - self.beg_pos

    @property
    def quat_range(self) -> range:
        return range(self.beg_quat, self.end_quat)

    @property
    def pos_range(self) -> range:
        return range(self.beg_pos, self.end_pos)


def index_range(
    time1: float,
    time2: float,
    t0: float,
    dt: float,
    count: int,
    num_per_obs: int,
) -> Tuple[int, int]:
    """
    Sample indices [beg, end) influencing poses between two times.

    Each time maps to the sample at or before it, then the range is widened
    by half the window size on each side and clamped to [0, count). Near
    the ends of the trajectory the range is grown to the full interpolation
    stencil of order ``num_per_obs``, which is shifted inwards there.
    """
    if not (np.isfinite(time1) and np.isfinite(time2)):
        raise WindowError(f"Non-finite imaging times {time1}, {time2}")

    idx1 = int(np.floor((time1 - t0) / dt))
    idx2 = int(np.floor((time2 - t0) / dt))

    beg = min(idx1, idx2) - num_per_obs // 2 + 1
    end = max(idx1, idx2) + num_per_obs // 2 + 1

    beg = max(beg, 0)
    end = min(end, count)
    if beg >= end:
        raise WindowError(
            f"Book-keeping error: empty window [{beg}, {end}) for times "
            f"{time1}, {time2} and samples starting at {t0} with step {dt}."
        )

    beg = min(beg, stencil_start(min(idx1, idx2), num_per_obs, count))
    end = max(end, stencil_start(max(idx1, idx2), num_per_obs, count) + min(num_per_obs, count))
    return beg, end


def resolve_window(
    camera: LinescanCamera,
    pixel: np.ndarray,
    camera_index: int,
    point_index: int,
    settings: WindowSettings,
    line_extra: float,
) -> ObservationWindow:
    """
    Window of trajectory samples an observation depends on.

    Args:
        camera: Camera owning the observation
        pixel: Observed (sample, line)
        camera_index: Index of the camera
        point_index: Index of the tie point
        settings: Window sizes
        line_extra: Guard band in image lines on each side of the pixel

    Raises:
        WindowError: If either resulting range is empty
    """
    sample, line = float(pixel[0]), float(pixel[1])
    time1 = camera.imaging_time((sample, line - line_extra))
    time2 = camera.imaging_time((sample, line + line_extra))

    traj = camera.trajectory
    beg_quat, end_quat = index_range(
        time1, time2, traj.t0_quat, traj.dt_quat, traj.num_quaternions, settings.num_quat_per_obs
    )
    beg_pos, end_pos = index_range(
        time1, time2, traj.t0_pos, traj.dt_pos, traj.num_positions, settings.num_pos_per_obs
    )

    return ObservationWindow(
        camera_index=camera_index,
        point_index=point_index,
        beg_quat=beg_quat,
        end_quat=end_quat,
        beg_pos=beg_pos,
        end_pos=end_pos,
    )
