"""
Reprojection residual of one observation.

The residual depends only on the trajectory samples in its observation
window and on its tie point. Evaluation works on a private copy of the
camera with the window overwritten, so residuals can be evaluated from
several threads at once.
"""

import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple
import logging

from .camera import LinescanCamera, ProjectionError
from .trajectory import NUM_QUAT_PARAMS, NUM_XYZ_PARAMS
from .window import ObservationWindow

logger = logging.getLogger(__name__)

PIXEL_SIZE = 2


@dataclass(frozen=True)
class ResidualResult:
    """Either a pixel residual or a geometry-failure marker."""
    residual: Optional[np.ndarray] = None
    failure: Optional[str] = None

    @classmethod
    def success(cls, residual: np.ndarray) -> "ResidualResult":
        return cls(residual=residual)

    @classmethod
    def failed(cls, reason: str) -> "ResidualResult":
        return cls(failure=reason)

    @property
    def ok(self) -> bool:
        return self.residual is not None

    def value(self, penalty: float) -> np.ndarray:
        """The residual, or ``penalty`` in each pixel axis on failure."""
        if self.residual is None:
            return np.full(PIXEL_SIZE, penalty)
        return self.residual


class ReprojectionResidual:
    """
    Projected minus observed pixel for one observation.

    Parameters are laid out as the window's quaternions (4 per sample),
    then its positions (3 per sample), then the 3 tie point coordinates.
    """

    def __init__(
        self,
        observation: np.ndarray,
        camera: LinescanCamera,
        window: ObservationWindow,
        precision: float = 1e-12,
    ):
        self.observation = np.asarray(observation, dtype=np.float64)
        self.camera = camera
        self.window = window
        self.precision = precision

    @property
    def num_parameters(self) -> int:
        return (NUM_QUAT_PARAMS * self.window.num_quat
                + NUM_XYZ_PARAMS * self.window.num_pos
                + NUM_XYZ_PARAMS)

    def split_parameters(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split a flat parameter block into (quaternions, positions, point)."""
        n_quat = NUM_QUAT_PARAMS * self.window.num_quat
        n_pos = NUM_XYZ_PARAMS * self.window.num_pos
        quats = params[:n_quat].reshape(-1, NUM_QUAT_PARAMS)
        positions = params[n_quat:n_quat + n_pos].reshape(-1, NUM_XYZ_PARAMS)
        point = params[n_quat + n_pos:]
        return quats, positions, point

    def initial_parameters(self, point: np.ndarray) -> np.ndarray:
        """Flat parameter block from the camera's current trajectory and a tie point."""
        traj = self.camera.trajectory
        w = self.window
        return np.concatenate([
            traj.quaternions[w.beg_quat:w.end_quat].ravel(),
            traj.positions[w.beg_pos:w.end_pos].ravel(),
            np.asarray(point, dtype=np.float64),
        ])

    def evaluate(
        self,
        quaternions: np.ndarray,
        positions: np.ndarray,
        point: np.ndarray,
    ) -> ResidualResult:
        """
        Reprojection error with the window set to the given samples.

        Args:
            quaternions: (num_quat, 4) values for the window's quaternion samples
            positions: (num_pos, 3) values for the window's position samples
            point: Tie point, ECEF

        Returns:
            ResidualResult with (projected - observed) or a failure marker
        """
        cam = self.camera.with_window(
            self.window.beg_quat, quaternions, self.window.beg_pos, positions
        )
        try:
            pixel = cam.project(point, self.precision)
        except ProjectionError as e:
            return ResidualResult.failed(str(e))

        residual = pixel - self.observation
        if not np.all(np.isfinite(residual)):
            return ResidualResult.failed("Non-finite projection")
        return ResidualResult.success(residual)

    def evaluate_flat(self, params: np.ndarray) -> ResidualResult:
        return self.evaluate(*self.split_parameters(params))
