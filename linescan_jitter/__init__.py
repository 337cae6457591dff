"""
Linescan Jitter Refinement Package

A Python package to refine the sampled trajectories (positions and
orientations) of linescan satellite cameras from image matches, and to
propagate satellite position and orientation covariances to the uncertainty
of triangulated ground points.

Coordinate System Chain:
    Tie point (ECEF) → Camera frame at the line's imaging time → Pixel (sample, line)

Conventions:
    - Positions: ECEF meters, uniformly time-sampled
    - Quaternions: camera-to-world, scalar-last (x, y, z, w), uniformly time-sampled
    - Output uncertainty: local North-East-Down frame at the triangulated point
"""

from .config import (
    JitterConfig,
    WindowSettings,
    NetworkSettings,
    SolverSettings,
    CovarianceSettings,
)
from .transforms import Datum
from .trajectory import CameraTrajectory, check_spacing, extend_positions_to_cover, extrapolate_position
from .camera import (
    CameraModel,
    LinescanCamera,
    AdjustedCamera,
    CameraHandle,
    CameraKind,
    SatelliteCovariance,
    ProjectionError,
    CameraMismatchError,
)
from .window import ObservationWindow, WindowError, resolve_window
from .control_network import (
    ControlNetwork,
    Observation,
    OutlierSet,
    PairwiseMatches,
    TiePoint,
    flag_outliers,
)
from .residual import ReprojectionResidual, ResidualResult
from .solver import JitterProblem, JitterSolver, SolveSummary, Termination
from .covariance import (
    CovarianceError,
    PropagatedCovariance,
    propagate_covariance,
    propagate_covariances,
    triangulation_jacobian,
)
from .refiner import JitterRefiner, RefinementReport, run_jitter_solve

__version__ = "0.1.0"
__all__ = [
    "JitterConfig",
    "WindowSettings",
    "NetworkSettings",
    "SolverSettings",
    "CovarianceSettings",
    "Datum",
    "CameraTrajectory",
    "check_spacing",
    "extend_positions_to_cover",
    "extrapolate_position",
    "CameraModel",
    "LinescanCamera",
    "AdjustedCamera",
    "CameraHandle",
    "CameraKind",
    "SatelliteCovariance",
    "ProjectionError",
    "CameraMismatchError",
    "ObservationWindow",
    "WindowError",
    "resolve_window",
    "ControlNetwork",
    "Observation",
    "OutlierSet",
    "PairwiseMatches",
    "TiePoint",
    "flag_outliers",
    "ReprojectionResidual",
    "ResidualResult",
    "JitterProblem",
    "JitterSolver",
    "SolveSummary",
    "Termination",
    "CovarianceError",
    "PropagatedCovariance",
    "propagate_covariance",
    "propagate_covariances",
    "triangulation_jacobian",
    "JitterRefiner",
    "RefinementReport",
    "run_jitter_solve",
]
