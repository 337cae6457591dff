"""
Nonlinear least-squares refinement of trajectories and tie points.

The problem variables are every trajectory sample touched by at least one
observation window plus every tie point with an active observation. Each
sample is addressed by (camera index, sample index) and owns a fixed slice
of the flat parameter vector, so a residual block is evaluated from a
gathered copy of its parameters and never from shared camera state.

The Jacobian is built block by block with central differences, in a
thread pool, and handed to scipy's trust-region reflective solver with a
Cauchy loss.
"""

import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from concurrent.futures import Executor, ThreadPoolExecutor
from scipy.optimize import least_squares
from scipy import sparse
import logging

from .camera import LinescanCamera, any_single_threaded
from .config import JitterConfig, SolverSettings
from .control_network import ControlNetwork, OutlierSet
from .residual import PIXEL_SIZE, ReprojectionResidual, ResidualResult
from .trajectory import NUM_QUAT_PARAMS, NUM_XYZ_PARAMS
from .window import resolve_window

logger = logging.getLogger(__name__)


class Termination(Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max-iterations-reached"
    NUMERICAL_FAILURE = "numerical-failure"


@dataclass
class SolveSummary:
    """Outcome of one refinement."""
    termination: Termination
    initial_cost: float
    final_cost: float
    num_residual_blocks: int
    num_parameters: int
    num_function_evaluations: int
    num_jacobian_evaluations: int
    num_threads: int
    message: str = ""

    @property
    def usable(self) -> bool:
        """True if the parameters were written back to the cameras and points."""
        return self.termination != Termination.NUMERICAL_FAILURE


class ParameterLayout:
    """Offsets of the optimized samples and points in the flat parameter vector."""

    def __init__(self):
        self.quat_offsets: Dict[Tuple[int, int], int] = {}
        self.pos_offsets: Dict[Tuple[int, int], int] = {}
        self.point_offsets: Dict[int, int] = {}
        self.size = 0

    def _allocate(self, table: dict, key, width: int) -> None:
        if key not in table:
            table[key] = self.size
            self.size += width

    @classmethod
    def from_blocks(cls, blocks: Sequence[ReprojectionResidual]) -> "ParameterLayout":
        """Lay out quaternions, then positions, then points, each in sorted order."""
        quats, positions, points = set(), set(), set()
        for block in blocks:
            w = block.window
            quats.update((w.camera_index, i) for i in w.quat_range)
            positions.update((w.camera_index, i) for i in w.pos_range)
            points.add(w.point_index)

        layout = cls()
        for key in sorted(quats):
            layout._allocate(layout.quat_offsets, key, NUM_QUAT_PARAMS)
        for key in sorted(positions):
            layout._allocate(layout.pos_offsets, key, NUM_XYZ_PARAMS)
        for key in sorted(points):
            layout._allocate(layout.point_offsets, key, NUM_XYZ_PARAMS)
        return layout

    def block_indices(self, block: ReprojectionResidual) -> np.ndarray:
        """Indices into the parameter vector, in the block's own parameter order."""
        w = block.window
        indices = []
        for i in w.quat_range:
            off = self.quat_offsets[(w.camera_index, i)]
            indices.extend(range(off, off + NUM_QUAT_PARAMS))
        for i in w.pos_range:
            off = self.pos_offsets[(w.camera_index, i)]
            indices.extend(range(off, off + NUM_XYZ_PARAMS))
        off = self.point_offsets[w.point_index]
        indices.extend(range(off, off + NUM_XYZ_PARAMS))
        return np.array(indices, dtype=np.int64)


class JitterProblem:
    """
    Residual blocks for all active observations and their parameter layout.

    Args:
        cameras: Linescan cameras, indexed as in the network
        network: Triangulated tie points
        outliers: Tie points and observations to leave out
        config: Window and solver settings
    """

    def __init__(
        self,
        cameras: Sequence[LinescanCamera],
        network: ControlNetwork,
        outliers: OutlierSet,
        config: JitterConfig,
    ):
        if len(cameras) < 2:
            raise ValueError("Expecting at least two cameras.")
        if len(cameras) != network.num_cameras:
            raise ValueError(
                f"The network has {network.num_cameras} cameras, got {len(cameras)}"
            )

        window = config.window
        for i, cam in enumerate(cameras):
            if (cam.pos_interp_order > window.num_pos_per_obs
                    or cam.quat_interp_order > window.num_quat_per_obs):
                raise ValueError(
                    f"Camera {i} interpolates over {cam.pos_interp_order} positions and "
                    f"{cam.quat_interp_order} quaternions, more than the observation window "
                    f"of {window.num_pos_per_obs} and {window.num_quat_per_obs} samples."
                )

        self.cameras = list(cameras)
        self.network = network
        self.config = config

        self.blocks: List[ReprojectionResidual] = []
        for point_id, _, obs in network.active_observations(outliers):
            cam = self.cameras[obs.camera_index]
            window = resolve_window(
                cam, obs.pixel, obs.camera_index, point_id, config.window, config.line_extra
            )
            self.blocks.append(ReprojectionResidual(
                obs.pixel, cam, window, config.solver.projection_precision
            ))

        if not self.blocks:
            raise ValueError("No tie points left to optimize after outlier filtering.")

        self.layout = ParameterLayout.from_blocks(self.blocks)
        self.block_indices = [self.layout.block_indices(b) for b in self.blocks]

        logger.info(
            f"Built {len(self.blocks)} residual blocks over {len(self.layout.point_offsets)} "
            f"tie points with {self.num_parameters} parameters"
        )

    @property
    def num_parameters(self) -> int:
        return self.layout.size

    @property
    def num_residuals(self) -> int:
        return PIXEL_SIZE * len(self.blocks)

    def initial_parameters(self) -> np.ndarray:
        """Current trajectory samples and tie points as a flat vector."""
        x = np.empty(self.num_parameters)
        for (cam, i), off in self.layout.quat_offsets.items():
            x[off:off + NUM_QUAT_PARAMS] = self.cameras[cam].trajectory.quaternions[i]
        for (cam, i), off in self.layout.pos_offsets.items():
            x[off:off + NUM_XYZ_PARAMS] = self.cameras[cam].trajectory.positions[i]
        for point_id, off in self.layout.point_offsets.items():
            x[off:off + NUM_XYZ_PARAMS] = self.network.points[point_id].position
        return x

    def evaluate_block(self, x: np.ndarray, b: int) -> ResidualResult:
        return self.blocks[b].evaluate_flat(x[self.block_indices[b]])

    def evaluate_residuals(
        self,
        x: Optional[np.ndarray] = None,
        penalty: float = 1000.0,
        executor: Optional[Executor] = None,
    ) -> np.ndarray:
        """
        Raw (num_blocks, 2) residuals, no robust loss.

        Failed projections are replaced by ``penalty`` in each pixel axis.
        """
        if x is None:
            x = self.initial_parameters()
        map_fn = executor.map if executor is not None else map
        results = map_fn(lambda b: self.evaluate_block(x, b).value(penalty), range(len(self.blocks)))
        return np.array(list(results)).reshape(-1, PIXEL_SIZE)

    def write_back(self, x: np.ndarray) -> None:
        """Store optimized values into the camera trajectories and the network."""
        for (cam, i), off in self.layout.quat_offsets.items():
            self.cameras[cam].trajectory.quaternions[i] = x[off:off + NUM_QUAT_PARAMS]
        for (cam, i), off in self.layout.pos_offsets.items():
            self.cameras[cam].trajectory.positions[i] = x[off:off + NUM_XYZ_PARAMS]
        for point_id, off in self.layout.point_offsets.items():
            self.network.points[point_id].position = x[off:off + NUM_XYZ_PARAMS].copy()


def cauchy_cost(residuals: np.ndarray, scale: float) -> float:
    """0.5 * sum of the Cauchy loss of each squared residual, as scipy reports it."""
    z = np.asarray(residuals, dtype=np.float64).ravel() ** 2
    return float(0.5 * np.sum(scale ** 2 * np.log1p(z / scale ** 2)))


class JitterSolver:
    """Trust-region least squares over a JitterProblem."""

    def __init__(self, settings: Optional[SolverSettings] = None):
        self.settings = settings or SolverSettings()

    def _block_jacobian(self, problem: JitterProblem, x: np.ndarray, b: int) -> np.ndarray:
        """(2, n) central-difference Jacobian of one block over its own parameters."""
        penalty = self.settings.big_pixel_value
        rel_step = self.settings.numeric_diff_relative_step
        block = problem.blocks[b]
        params = x[problem.block_indices[b]]

        jac = np.empty((PIXEL_SIZE, len(params)))
        work = params.copy()
        for j in range(len(params)):
            h = rel_step * max(abs(params[j]), 1.0)
            work[j] = params[j] + h
            plus = block.evaluate_flat(work).value(penalty)
            upper = work[j]
            work[j] = params[j] - h
            minus = block.evaluate_flat(work).value(penalty)
            jac[:, j] = (plus - minus) / (upper - work[j])
            work[j] = params[j]
        return jac

    def _jacobian(self, problem: JitterProblem, x: np.ndarray, executor: Executor, dense: bool):
        blocks = list(executor.map(
            lambda b: self._block_jacobian(problem, x, b), range(len(problem.blocks))
        ))

        if dense:
            J = np.zeros((problem.num_residuals, problem.num_parameters))
            for b, (cols, indices) in enumerate(zip(blocks, problem.block_indices)):
                J[PIXEL_SIZE * b:PIXEL_SIZE * (b + 1), indices] = cols
            return J

        rows, cols, data = [], [], []
        for b, (block_jac, indices) in enumerate(zip(blocks, problem.block_indices)):
            for r in range(PIXEL_SIZE):
                rows.append(np.full(len(indices), PIXEL_SIZE * b + r))
                cols.append(indices)
                data.append(block_jac[r])
        return sparse.csr_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=(problem.num_residuals, problem.num_parameters),
        )

    def num_threads_for(self, problem: JitterProblem) -> int:
        if any_single_threaded(problem.cameras):
            if self.settings.threads > 1:
                logger.warning("Some cameras are not thread-safe, using a single thread")
            return 1
        return self.settings.threads

    def solve(self, problem: JitterProblem) -> SolveSummary:
        """
        Refine the problem's trajectories and tie points.

        On success, and when the iteration budget runs out, the result is
        written back to the cameras and the network. On numerical failure
        nothing is written.

        Returns:
            SolveSummary with the termination state
        """
        s = self.settings
        num_threads = self.num_threads_for(problem)
        dense = problem.num_parameters <= s.dense_jacobian_limit
        penalty = s.big_pixel_value
        x0 = problem.initial_parameters()
        max_nfev = s.num_iterations + s.invalid_step_allowance

        logger.info(
            f"Starting the optimizer: {len(problem.blocks)} residual blocks, "
            f"{problem.num_parameters} parameters, {num_threads} threads, "
            f"{'dense' if dense else 'sparse'} Jacobian"
        )

        with ThreadPoolExecutor(max_workers=num_threads) as executor:
            def fun(x):
                return problem.evaluate_residuals(x, penalty, executor).ravel()

            def jac(x):
                return self._jacobian(problem, x, executor, dense)

            initial_cost = cauchy_cost(fun(x0), s.robust_threshold)
            try:
                result = least_squares(
                    fun, x0, jac=jac, method='trf',
                    loss='cauchy', f_scale=s.robust_threshold, x_scale='jac',
                    ftol=s.function_tolerance, xtol=s.parameter_tolerance, gtol=s.gradient_tolerance,
                    max_nfev=max_nfev, tr_solver='exact' if dense else 'lsmr',
                )
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.error(f"The optimizer failed: {e}")
                return SolveSummary(
                    termination=Termination.NUMERICAL_FAILURE,
                    initial_cost=initial_cost,
                    final_cost=np.nan,
                    num_residual_blocks=len(problem.blocks),
                    num_parameters=problem.num_parameters,
                    num_function_evaluations=0,
                    num_jacobian_evaluations=0,
                    num_threads=num_threads,
                    message=str(e),
                )

        if result.status < 0 or not np.isfinite(result.cost) or not np.all(np.isfinite(result.x)):
            termination = Termination.NUMERICAL_FAILURE
        elif result.status == 0:
            termination = Termination.MAX_ITERATIONS
        else:
            termination = Termination.CONVERGED

        summary = SolveSummary(
            termination=termination,
            initial_cost=initial_cost,
            final_cost=float(result.cost),
            num_residual_blocks=len(problem.blocks),
            num_parameters=problem.num_parameters,
            num_function_evaluations=int(result.nfev),
            num_jacobian_evaluations=int(result.njev or 0),
            num_threads=num_threads,
            message=str(result.message),
        )

        if termination == Termination.NUMERICAL_FAILURE:
            logger.error(f"Numerical failure in the optimizer: {result.message}")
            return summary

        if termination == Termination.MAX_ITERATIONS:
            logger.warning("Found a valid solution, but did not reach the actual minimum.")

        problem.write_back(result.x)
        logger.info(
            f"Optimizer finished ({termination.value}): cost {initial_cost:.6g} -> "
            f"{summary.final_cost:.6g} after {summary.num_function_evaluations} evaluations"
        )
        return summary
