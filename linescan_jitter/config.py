"""
Configuration module for linescan jitter refinement.

Handles loading and validation of the solver, window, outlier and
covariance settings from YAML files. All settings are frozen dataclasses
so a single configuration value can be shared by every component.
"""

import yaml
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSettings:
    """Size of the trajectory neighborhood each observation depends on."""
    num_quat_per_obs: int = 8  # Quaternion samples used in pose interpolation
    num_pos_per_obs: int = 8  # Position samples used in pose interpolation
    line_extra: Optional[float] = None  # Guard band in image lines (None = auto)

    def __post_init__(self):
        if self.num_quat_per_obs < 2 or self.num_pos_per_obs < 2:
            raise ValueError("Need at least two samples per observation window")
        if self.line_extra is not None and self.line_extra < 0:
            raise ValueError(f"line_extra must be non-negative, got {self.line_extra}")


@dataclass(frozen=True)
class NetworkSettings:
    """Control network construction and initial outlier screening."""
    min_matches: int = 30  # Minimum matches for an image pair to be used
    max_pairwise_matches: int = 10000  # Random subset beyond this count
    min_triangulation_angle: float = 0.1  # Degrees
    max_init_reproj_error: float = 5.0  # Pixels
    reject_whole_point: bool = True  # One bad ray condemns the whole tie point
    random_seed: int = 0

    def __post_init__(self):
        if self.min_triangulation_angle <= 0:
            raise ValueError("The minimum triangulation angle must be positive")
        if self.max_init_reproj_error <= 0:
            raise ValueError("Must have a positive max_init_reproj_error")
        if self.max_pairwise_matches <= 0:
            raise ValueError("max_pairwise_matches must be positive")


@dataclass(frozen=True)
class SolverSettings:
    """Nonlinear least-squares settings."""
    robust_threshold: float = 0.5  # Cauchy loss scale, in pixels
    parameter_tolerance: float = 1e-12
    function_tolerance: float = 1e-15
    gradient_tolerance: float = 1e-15
    num_iterations: int = 500
    max_consecutive_invalid_steps: Optional[int] = None  # None = max(5, iterations/5)
    num_threads: Optional[int] = None  # None = number of CPUs
    big_pixel_value: float = 1000.0  # Residual used when projection fails
    projection_precision: float = 1e-12  # Ground-to-image tolerance, in lines
    numeric_diff_relative_step: float = 1e-6
    dense_jacobian_limit: int = 5000  # Use a dense Jacobian up to this many variables

    def __post_init__(self):
        if self.robust_threshold <= 0:
            raise ValueError("The robust threshold must be positive")
        if self.num_iterations <= 0:
            raise ValueError("The number of iterations must be positive")
        if self.numeric_diff_relative_step <= 0:
            raise ValueError("The numerical differentiation step must be positive")

    @property
    def invalid_step_allowance(self) -> int:
        if self.max_consecutive_invalid_steps is not None:
            return self.max_consecutive_invalid_steps
        return max(5, self.num_iterations // 5)

    @property
    def threads(self) -> int:
        if self.num_threads is not None:
            return max(1, self.num_threads)
        return os.cpu_count() or 1


@dataclass(frozen=True)
class CovarianceSettings:
    """
    Perturbation sizes for the triangulation Jacobian and weights for the
    input satellite covariances.

    The positions are on the order of 7e6 meters in ECEF, so the position
    delta should not be too tiny. Quaternions are normalized.
    """
    delta_position: float = 0.01  # Meters
    delta_quat: float = 1.0e-6
    position_covariance_factor: float = 1.0
    orientation_covariance_factor: float = 1.0

    def __post_init__(self):
        if self.delta_position <= 0 or self.delta_quat <= 0:
            raise ValueError("Perturbation deltas must be positive")


@dataclass(frozen=True)
class JitterConfig:
    """
    Main configuration for jitter refinement and covariance propagation.

    Attributes:
        window: Observation window sizes
        network: Control network and outlier settings
        solver: Least-squares solver settings
        covariance: Covariance propagation settings
    """
    window: WindowSettings = field(default_factory=WindowSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    solver: SolverSettings = field(default_factory=SolverSettings)
    covariance: CovarianceSettings = field(default_factory=CovarianceSettings)

    @property
    def line_extra(self) -> float:
        """
        Guard band, in image lines, added on each side of an observation.

        During optimization the 3D point and its pixel may move somewhat,
        so the window is grown by the largest accepted initial error plus
        a few more lines.
        """
        if self.window.line_extra is not None:
            return self.window.line_extra
        return self.network.max_init_reproj_error + 5.0

    @classmethod
    def from_yaml(cls, config_path: str) -> "JitterConfig":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            JitterConfig with loaded parameters

        Example YAML structure:
            window:
              num_quat_per_obs: 8
              num_pos_per_obs: 8
            network:
              min_matches: 30
              min_triangulation_angle: 0.1
              max_init_reproj_error: 5.0
            solver:
              robust_threshold: 0.5
              num_iterations: 500
              num_threads: 8
            covariance:
              position_covariance_factor: 1.0
              orientation_covariance_factor: 1.0
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")

        return cls(
            window=WindowSettings(**data.get('window', {})),
            network=NetworkSettings(**data.get('network', {})),
            solver=SolverSettings(**data.get('solver', {})),
            covariance=CovarianceSettings(**data.get('covariance', {})),
        )

    def to_yaml(self, config_path: str) -> None:
        """Save configuration to a YAML file."""
        data = {
            'window': asdict(self.window),
            'network': asdict(self.network),
            'solver': asdict(self.solver),
            'covariance': asdict(self.covariance),
        }

        with open(config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")
