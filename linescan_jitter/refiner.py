"""
Jitter refinement workflow.

This is the main module that orchestrates a refinement:
    1. Resolve the cameras, applying any input adjustment to the linescan
       trajectories
    2. Merge pairwise matches into tracks and triangulate tie points
    3. Flag tie points that reproject poorly with the initial cameras
    4. Build one residual block per remaining observation
    5. Solve, and report reprojection errors before and after
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
import logging

from .camera import CameraHandle, CameraModel, LinescanCamera
from .config import JitterConfig
from .control_network import (
    ControlNetwork,
    OutlierSet,
    PairwiseMatches,
    build_tracks,
    flag_outliers,
    triangulate_network,
)
from .solver import JitterProblem, JitterSolver, SolveSummary

logger = logging.getLogger(__name__)


@dataclass
class ResidualStats:
    """Per-observation reprojection error statistics, in pixels, without the robust loss."""
    count: int = 0
    num_failed: int = 0
    mean_error: float = 0.0
    median_error: float = 0.0
    max_error: float = 0.0
    rmse: float = 0.0

    @classmethod
    def from_problem(cls, problem: JitterProblem) -> "ResidualStats":
        x = problem.initial_parameters()
        results = [problem.evaluate_block(x, b) for b in range(len(problem.blocks))]
        errors = np.array([np.linalg.norm(r.residual) for r in results if r.ok])

        stats = cls(count=len(results), num_failed=len(results) - len(errors))
        if len(errors) == 0:
            return stats

        stats.mean_error = float(np.mean(errors))
        stats.median_error = float(np.median(errors))
        stats.max_error = float(np.max(errors))
        stats.rmse = float(np.sqrt(np.mean(errors ** 2)))
        return stats


@dataclass
class RefinementReport:
    """Summary of one refinement."""
    num_cameras: int
    num_points: int
    num_outliers: int
    initial: ResidualStats
    final: ResidualStats
    summary: SolveSummary


class JitterRefiner:
    """
    Refine linescan trajectories from image matches.

    Example usage:
        refiner = JitterRefiner(cameras, JitterConfig.from_yaml("jitter.yaml"))
        report = refiner.refine(matches)
        refined = refiner.cameras
    """

    def __init__(self, cameras: Sequence[CameraModel], config: Optional[JitterConfig] = None):
        """
        Args:
            cameras: Linescan cameras, optionally wrapped in an AdjustedCamera

        Raises:
            CameraMismatchError: If a camera has no linescan model
            ValueError: For fewer than two cameras, or too few trajectory samples
        """
        if len(cameras) < 2:
            raise ValueError("Expecting at least two cameras.")

        self.config = config or JitterConfig()
        self.handles = [CameraHandle.resolve(cam) for cam in cameras]

        # Refinement works on the linescan trajectories directly, so bake
        # the adjustments into them. Poses are interpolated over the same
        # number of samples an observation window holds.
        window = self.config.window
        self.cameras: List[LinescanCamera] = [
            h.baked_linescan().with_interp_orders(window.num_pos_per_obs, window.num_quat_per_obs)
            for h in self.handles
        ]

        for cam in self.cameras:
            cam.trajectory.check_min_samples(window.num_pos_per_obs, window.num_quat_per_obs)

        num_adjusted = sum(h.is_adjusted for h in self.handles)
        if num_adjusted:
            logger.info(f"Applied input adjustments to {num_adjusted} cameras")
        logger.info(f"Refiner initialized with {len(self.cameras)} cameras")

    def build_network(self, matches: Sequence[PairwiseMatches]) -> ControlNetwork:
        """Tracks from pairwise matches, triangulated with the initial cameras."""
        tracks = build_tracks(matches, self.config.network)
        network = triangulate_network(self.cameras, tracks, self.config.network)
        if network.num_points == 0:
            raise ValueError("No triangulated points.")
        return network

    def flag_outliers(self, network: ControlNetwork) -> OutlierSet:
        return flag_outliers(network, self.cameras, self.config.network)

    def refine(
        self,
        matches: Optional[Sequence[PairwiseMatches]] = None,
        network: Optional[ControlNetwork] = None,
        outliers: Optional[OutlierSet] = None,
    ) -> RefinementReport:
        """
        Run the whole refinement.

        Args:
            matches: Pairwise matches, used if no network is given
            network: Existing control network, indexed like the cameras
            outliers: Already known outliers, extended by the initial filter

        Returns:
            RefinementReport. The cameras in ``self.cameras`` and the network
            points hold the refined values unless the solve failed. Unadjusted
            input cameras share their trajectories with ``self.cameras``.
        """
        if network is None:
            if matches is None:
                raise ValueError("Expecting either matches or a control network")
            network = self.build_network(matches)
        elif network.num_points == 0:
            raise ValueError("No triangulated points.")

        outliers = flag_outliers(network, self.cameras, self.config.network, outliers)
        logger.info(
            f"Removed {len(outliers)} outliers out of {network.num_points} "
            f"by reprojection error. Ratio: {len(outliers) / network.num_points:.4f}"
        )

        problem = JitterProblem(self.cameras, network, outliers, self.config)
        initial = ResidualStats.from_problem(problem)
        logger.info(
            f"Initial reprojection error: mean {initial.mean_error:.4f}, "
            f"median {initial.median_error:.4f}, max {initial.max_error:.4f} pixels"
        )

        summary = JitterSolver(self.config.solver).solve(problem)

        final = ResidualStats.from_problem(problem)
        logger.info(
            f"Final reprojection error: mean {final.mean_error:.4f}, "
            f"median {final.median_error:.4f}, max {final.max_error:.4f} pixels"
        )

        return RefinementReport(
            num_cameras=len(self.cameras),
            num_points=network.num_points,
            num_outliers=len(outliers),
            initial=initial,
            final=final,
            summary=summary,
        )


def run_jitter_solve(
    cameras: Sequence[CameraModel],
    matches: Sequence[PairwiseMatches],
    config_path: Optional[str] = None,
) -> Tuple[List[LinescanCamera], RefinementReport]:
    """
    Convenience function to run a refinement, optionally from a config file.

    Args:
        cameras: Input cameras
        matches: Pairwise image matches
        config_path: Optional path to a YAML configuration file

    Returns:
        (refined linescan cameras, report)
    """
    # Setup logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = JitterConfig.from_yaml(config_path) if config_path else JitterConfig()
    refiner = JitterRefiner(cameras, config)
    report = refiner.refine(matches)
    return refiner.cameras, report
