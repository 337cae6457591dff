"""
Tests for the least-squares problem and solver.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

import linescan_jitter.solver as solver_module
from linescan_jitter.config import JitterConfig, SolverSettings, WindowSettings
from linescan_jitter.control_network import ControlNetwork, Observation, OutlierSet, TiePoint, flag_outliers
from linescan_jitter.solver import JitterProblem, JitterSolver, ParameterLayout, Termination, cauchy_cost


def make_network(point, pixels_fn, offset=(0.0, 0.0, 0.0)):
    pix0, pix1 = pixels_fn(point)
    return ControlNetwork(2, [
        TiePoint(point + np.asarray(offset), [Observation(0, pix0), Observation(1, pix1)]),
    ])


@pytest.fixture
def config():
    return JitterConfig(solver=SolverSettings(num_threads=2))


class TestJitterProblem:

    def test_layout(self, flat_cameras, flat_point, flat_pixel_fn, config):
        network = make_network(flat_point, flat_pixel_fn)
        problem = JitterProblem(flat_cameras, network, OutlierSet(), config)

        assert len(problem.blocks) == 2
        assert problem.num_residuals == 4
        # 8 quaternions and 8 positions per camera, one point
        assert problem.num_parameters == 2 * (8 * 4 + 8 * 3) + 3
        assert len(problem.layout.point_offsets) == 1

    def test_blocks_share_point_parameters(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)

        assert_allclose(problem.block_indices[0][-3:], problem.block_indices[1][-3:])
        assert not set(problem.block_indices[0][:-3]) & set(problem.block_indices[1][:-3])

    def test_initial_parameters_match_blocks(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)
        x = problem.initial_parameters()

        for block, indices in zip(problem.blocks, problem.block_indices):
            assert_allclose(x[indices], block.initial_parameters(flat_point))

    def test_consistent_residuals(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)

        assert_allclose(problem.evaluate_residuals(), 0.0, atol=1e-8)

    def test_outliers_excluded(self, flat_cameras, flat_pixel_fn, config):
        good = np.array([0.0, 95.0, 1000.0])
        bad = np.array([0.0, 55.0, 1000.0])
        g0, g1 = flat_pixel_fn(good)
        b0, b1 = flat_pixel_fn(bad)
        network = ControlNetwork(2, [
            TiePoint(good, [Observation(0, g0), Observation(1, g1)]),
            TiePoint(bad, [Observation(0, b0), Observation(1, b1 + [50.0, 0.0])]),
        ])
        outliers = flag_outliers(network, flat_cameras, config.network)

        problem = JitterProblem(flat_cameras, network, outliers, config)

        assert {b.window.point_index for b in problem.blocks} == {0}
        assert list(problem.layout.point_offsets) == [0]

    def test_all_outliers(self, flat_cameras, flat_point, flat_pixel_fn, config):
        outliers = OutlierSet()
        outliers.mark_point(0)
        with pytest.raises(ValueError):
            JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), outliers, config)

    def test_window_smaller_than_stencil(self, flat_cameras, flat_point, flat_pixel_fn):
        config = JitterConfig(window=WindowSettings(num_quat_per_obs=8, num_pos_per_obs=4))
        with pytest.raises(ValueError):
            JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)

        cameras = [cam.with_interp_orders(4, 8) for cam in flat_cameras]
        problem = JitterProblem(cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)
        assert problem.blocks[0].window.num_pos == 4

    def test_needs_two_cameras(self, flat_cameras, flat_point, flat_pixel_fn, config):
        with pytest.raises(ValueError):
            JitterProblem(flat_cameras[:1], make_network(flat_point, flat_pixel_fn), OutlierSet(), config)


class TestJacobian:

    def test_dense_matches_sparse(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(
            flat_cameras, make_network(flat_point, flat_pixel_fn, (0.3, -0.2, 0.5)), OutlierSet(), config
        )
        x = problem.initial_parameters()
        solver = JitterSolver(config.solver)

        with solver_module.ThreadPoolExecutor(max_workers=2) as executor:
            dense = solver._jacobian(problem, x, executor, dense=True)
            sparse = solver._jacobian(problem, x, executor, dense=False)

        assert dense.shape == (problem.num_residuals, problem.num_parameters)
        assert_allclose(sparse.toarray(), dense)

    def test_point_derivative(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)
        x = problem.initial_parameters()
        block_jac = JitterSolver(config.solver)._block_jacobian(problem, x, 0)

        # d(sample)/d(point x) is f / range = 1 pixel per meter
        assert block_jac[0, -3] == pytest.approx(1.0, rel=1e-5)
        assert block_jac[1, -3] == pytest.approx(0.0, abs=1e-5)

    def test_cauchy_cost(self):
        assert cauchy_cost(np.zeros(4), 0.5) == pytest.approx(0.0)
        # Small residuals behave like least squares
        assert cauchy_cost(np.array([1e-4, 0.0]), 0.5) == pytest.approx(0.5e-8, rel=1e-6)


class TestJitterSolver:

    def test_converges(self, flat_cameras, flat_point, flat_pixel_fn, config):
        network = make_network(flat_point, flat_pixel_fn, (0.3, -0.2, 0.5))
        problem = JitterProblem(flat_cameras, network, OutlierSet(), config)

        summary = JitterSolver(config.solver).solve(problem)

        assert summary.termination == Termination.CONVERGED
        assert summary.usable
        assert summary.final_cost < summary.initial_cost
        assert np.max(np.abs(problem.evaluate_residuals())) < 1e-6

    def test_writes_back(self, flat_cameras, flat_point, flat_pixel_fn, config):
        network = make_network(flat_point, flat_pixel_fn, (0.3, -0.2, 0.5))
        problem = JitterProblem(flat_cameras, network, OutlierSet(), config)
        start = network.points[0].position.copy()

        JitterSolver(config.solver).solve(problem)

        assert not np.allclose(network.points[0].position, start)
        assert_allclose(problem.initial_parameters()[-3:], network.points[0].position)

    def test_single_threaded_cameras(self, make_flat_camera, flat_point, flat_pixel_fn, config):
        cameras = [make_flat_camera(-200.0), make_flat_camera(200.0, thread_safe=False)]
        problem = JitterProblem(cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)

        assert JitterSolver(SolverSettings(num_threads=8)).num_threads_for(problem) == 1

    def test_max_iterations(self, flat_cameras, flat_point, flat_pixel_fn):
        settings = SolverSettings(num_iterations=1, max_consecutive_invalid_steps=0)
        network = make_network(flat_point, flat_pixel_fn, (0.3, -0.2, 0.5))
        problem = JitterProblem(flat_cameras, network, OutlierSet(), JitterConfig(solver=settings))

        summary = JitterSolver(settings).solve(problem)

        assert summary.termination == Termination.MAX_ITERATIONS
        assert summary.usable

    def test_numerical_failure(self, flat_cameras, flat_point, flat_pixel_fn, config, monkeypatch):
        network = make_network(flat_point, flat_pixel_fn, (0.3, -0.2, 0.5))
        problem = JitterProblem(flat_cameras, network, OutlierSet(), config)
        start = network.points[0].position.copy()

        def failing_least_squares(*args, **kwargs):
            raise np.linalg.LinAlgError("SVD did not converge")

        monkeypatch.setattr(solver_module, "least_squares", failing_least_squares)
        summary = JitterSolver(config.solver).solve(problem)

        assert summary.termination == Termination.NUMERICAL_FAILURE
        assert not summary.usable
        assert_allclose(network.points[0].position, start)


class TestParameterLayout:

    def test_sorted_and_contiguous(self, flat_cameras, flat_point, flat_pixel_fn, config):
        problem = JitterProblem(flat_cameras, make_network(flat_point, flat_pixel_fn), OutlierSet(), config)
        layout = problem.layout

        quat_offsets = [layout.quat_offsets[k] for k in sorted(layout.quat_offsets)]
        assert quat_offsets == list(range(0, 4 * len(quat_offsets), 4))
        assert min(layout.pos_offsets.values()) == 4 * len(quat_offsets)
        assert layout.point_offsets[0] == layout.size - 3

    def test_empty(self):
        assert ParameterLayout().size == 0
