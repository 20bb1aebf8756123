"""
Tests for the bundle adjustment driver
"""

import numpy as np
import pytest

from ba_app.ba.bundle_adjustment import (
    SolverOptions,
    SolverSummary,
    robust_cost,
    run_bundle_adjustment,
    select_linear_solver,
    solve_bundle_adjustment,
)
from ba_app.ba.problem import BAProblem
from ba_app.geometry.camera_model import matrix_to_angle_axis, project
from ba_app.scene.data_structures import Camera, Observation, Point3D, SceneGraph

from conftest import PRINCIPAL_POINT, camera_ring


def fix_points(problem):
    for i in range(problem.num_points):
        problem.set_point_constant(i)


class TestSolverOptions:
    """Test option validation and linear solver selection"""

    def test_defaults_are_valid(self):
        options = SolverOptions()
        options.validate()
        assert options.loss == "linear"
        assert options.linear_solver_type == "sparse_schur"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"method": "newton"},
            {"linear_solver_type": "cholesky"},
            {"loss": "tukey"},
            {"method": "lm", "loss": "huber"},
            {"loss_scale": 0.0},
            {"max_nfev": 0},
        ],
    )
    def test_invalid_options_rejected(self, kwargs):
        with pytest.raises(ValueError):
            SolverOptions(**kwargs).validate()

    def test_sparse_selection(self):
        assert select_linear_solver(SolverOptions()) == ("sparse_schur", "lsmr")

    def test_dense_selection(self):
        options = SolverOptions(linear_solver_type="dense_schur")
        assert select_linear_solver(options) == ("dense_schur", "exact")

    def test_lm_falls_back_to_dense(self):
        options = SolverOptions(method="lm", linear_solver_type="sparse_schur")
        assert select_linear_solver(options) == ("dense_schur", None)


class TestRobustCost:
    """Test the objective value"""

    def test_linear_is_half_sum_of_squares(self):
        r = np.array([1.0, -2.0, 3.0])
        assert robust_cost(r) == pytest.approx(7.0)

    def test_huber_is_linear_inside_margin(self):
        r = np.array([0.5, -0.25])
        assert robust_cost(r, "huber", 1.0) == pytest.approx(robust_cost(r))

    def test_robust_losses_bound_outliers(self):
        r = np.array([100.0])
        for loss in ("huber", "soft_l1", "cauchy", "arctan"):
            assert robust_cost(r, loss, 1.0) < robust_cost(r)


class TestSolveNoiseless:
    """Noiseless data must stay at its optimum"""

    @pytest.mark.parametrize("linear_solver_type", ["sparse_schur", "dense_schur"])
    def test_cost_zero_and_parameters_unchanged(self, ring_problem, linear_solver_type):
        before = ring_problem.parameters.copy()

        summary = solve_bundle_adjustment(
            ring_problem, SolverOptions(linear_solver_type=linear_solver_type)
        )

        assert isinstance(summary, SolverSummary)
        assert summary.num_residual_blocks == 18
        assert summary.initial_cost < 1e-12
        assert summary.final_cost < 1e-12
        np.testing.assert_allclose(ring_problem.parameters, before, atol=1e-8)


class TestSolvePerturbed:
    """Perturbed cameras must return to ground truth"""

    @pytest.mark.parametrize("linear_solver_type", ["dense_schur", "sparse_schur"])
    def test_cameras_converge_with_points_fixed(self, perturbed_ring_problem, linear_solver_type):
        problem, truth = perturbed_ring_problem
        fix_points(problem)
        points_before = problem.points.copy()

        summary = solve_bundle_adjustment(
            problem, SolverOptions(linear_solver_type=linear_solver_type)
        )

        assert summary.success
        assert summary.initial_cost > 1.0
        assert summary.final_cost < 1e-10
        assert summary.num_free_parameters == 21
        np.testing.assert_allclose(problem.cameras, truth, atol=1e-6)
        np.testing.assert_array_equal(problem.points, points_before)

    def test_lm_converges(self, perturbed_ring_problem):
        problem, truth = perturbed_ring_problem
        fix_points(problem)

        summary = solve_bundle_adjustment(problem, SolverOptions(method="lm"))

        assert summary.linear_solver_type == "dense_schur"
        assert summary.success
        np.testing.assert_allclose(problem.cameras, truth, atol=1e-6)

    def test_lm_on_underdetermined_problem_falls_back_to_trf(self, perturbed_ring_problem, capsys):
        problem, _ = perturbed_ring_problem
        assert 2 * problem.num_observations < problem.num_parameters

        summary = solve_bundle_adjustment(problem, SolverOptions(method="lm"))

        assert summary.method == "trf"
        assert summary.final_cost < summary.initial_cost
        assert "falling back to trf" in capsys.readouterr().out

    def test_robust_loss_converges_on_clean_data(self, perturbed_ring_problem):
        problem, truth = perturbed_ring_problem
        fix_points(problem)

        summary = solve_bundle_adjustment(
            problem, SolverOptions(loss="huber", loss_scale=2.0, linear_solver_type="dense_schur")
        )

        assert summary.loss == "huber"
        assert summary.final_cost < summary.initial_cost
        np.testing.assert_allclose(problem.cameras, truth, atol=1e-4)

    def test_joint_refinement_reduces_cost(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem

        summary = solve_bundle_adjustment(problem)

        assert summary.num_free_parameters == problem.num_parameters
        assert summary.final_cost < 1e-6
        assert summary.final_cost < summary.initial_cost

    def test_constant_camera_untouched(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        problem.set_camera_constant(0)
        camera_before = problem.camera_parameters(0).copy()

        solve_bundle_adjustment(problem, SolverOptions(max_nfev=20))

        np.testing.assert_array_equal(problem.camera_parameters(0), camera_before)

    def test_max_nfev_limits_evaluations(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        fix_points(problem)

        summary = solve_bundle_adjustment(
            problem, SolverOptions(linear_solver_type="dense_schur", max_nfev=1)
        )

        assert summary.status == 0
        assert not summary.success


class TestEvaluationCallback:
    """Test the opt-in evaluation hook"""

    def test_called_with_increasing_indices(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        fix_points(problem)
        calls = []

        summary = solve_bundle_adjustment(
            problem,
            SolverOptions(linear_solver_type="dense_schur"),
            evaluation_callback=lambda index, cost: calls.append((index, cost)),
        )

        assert len(calls) >= 2
        assert [index for index, _ in calls] == list(range(len(calls)))
        assert calls[0][1] == pytest.approx(summary.initial_cost)

    def test_includes_finite_difference_evaluations(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        fix_points(problem)
        calls = []

        summary = solve_bundle_adjustment(
            problem,
            SolverOptions(linear_solver_type="dense_schur"),
            evaluation_callback=lambda index, cost: calls.append(cost),
        )

        assert len(calls) > summary.num_function_evaluations
        assert min(calls) == pytest.approx(summary.final_cost, abs=1e-9)


class TestDegenerateInput:
    """Degenerate problems must not crash"""

    def test_non_finite_initial_cost(self, ring_problem):
        ring_problem.point_parameters(2)[:] = np.nan
        before = ring_problem.parameters.copy()

        summary = solve_bundle_adjustment(ring_problem)

        assert not summary.success
        assert summary.termination == "non-finite initial cost"
        np.testing.assert_array_equal(ring_problem.parameters, before)

    def test_zero_depth_initial_point(self):
        problem = BAProblem(1, 1)
        problem.camera_parameters(0)[6] = 1000.0
        problem.set_point(0, [1.0, 1.0, 0.0])
        problem.add_observation(0, 0, 10.0, 10.0)

        summary = solve_bundle_adjustment(problem)

        assert not summary.success
        assert not np.isfinite(summary.initial_cost)

    def test_no_observations(self):
        problem = BAProblem(2, 2)
        summary = solve_bundle_adjustment(problem)

        assert summary.termination == "no residual blocks"
        assert summary.final_cost == 0.0

    def test_all_blocks_constant(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        fix_points(problem)
        for j in range(problem.num_cameras):
            problem.set_camera_constant(j)

        summary = solve_bundle_adjustment(problem)

        assert summary.termination == "no free parameters"
        assert summary.final_cost == summary.initial_cost


class TestSummaryReports:
    """Test summary text output"""

    def test_reports_mention_costs(self, perturbed_ring_problem):
        problem, _ = perturbed_ring_problem
        fix_points(problem)
        summary = solve_bundle_adjustment(problem, SolverOptions(linear_solver_type="dense_schur"))

        assert "cost" in summary.brief_report()
        report = summary.full_report()
        assert "Initial cost" in report
        assert "Final cost" in report
        assert "dense_schur" in report


class TestRunOnScene:
    """Test the SceneGraph convenience wrapper"""

    def test_refines_scene_in_place(self):
        Rs, ts, focals, points = camera_ring()
        observations = []
        for i, pt in enumerate(points):
            for j in range(len(Rs)):
                camera = np.concatenate([matrix_to_angle_axis(Rs[j]), ts[j], [focals[j]]])
                uv = project(camera, pt) + np.asarray(PRINCIPAL_POINT)
                observations.append(Observation(camera_id=j, point_id=i, uv=uv))

        cameras = [
            Camera(id=j, R=Rs[j], t=ts[j].copy(), focal=focals[j]) for j in range(len(Rs))
        ]
        points3d = [Point3D(id=i, xyz=points[i].copy()) for i in range(len(points))]

        # Perturb one camera's translation and focal length.
        cameras[1].t = cameras[1].t + np.array([0.05, -0.05, 0.1])
        cameras[1].focal += 10.0
        scene = SceneGraph(cameras=cameras, points3d=points3d, observations=observations)

        scene, summary = run_bundle_adjustment(scene, PRINCIPAL_POINT)

        assert summary.final_cost < summary.initial_cost
        assert summary.final_cost < 1e-6
        for cam in scene.cameras:
            np.testing.assert_allclose(cam.R @ cam.R.T, np.eye(3), atol=1e-9)
            assert cam.t.shape == (3,)
            assert isinstance(cam.focal, float)
        for pt in scene.points3d:
            assert pt.xyz.shape == (3,)
