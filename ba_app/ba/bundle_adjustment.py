"""
Bundle adjustment driver: hands the residual-block graph of a BAProblem to
scipy.optimize.least_squares and writes the refined parameters back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import least_squares

from ba_app.ba.problem import BAProblem
from ba_app.ba.residuals import RESIDUAL_SIZE, evaluate_residuals, jacobian_sparsity
from ba_app.geometry.camera_model import angle_axis_to_matrix
from ba_app.scene.data_structures import SceneGraph

METHODS = ("trf", "dogbox", "lm")
LINEAR_SOLVER_TYPES = ("sparse_schur", "dense_schur")

# rho(z) for z = (r / loss_scale)^2, matching scipy.optimize.least_squares.
LOSS_FUNCTIONS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "linear": lambda z: z,
    "huber": lambda z: np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0),
    "soft_l1": lambda z: 2.0 * (np.sqrt(1.0 + z) - 1.0),
    "cauchy": np.log1p,
    "arctan": np.arctan,
}

EvaluationCallback = Callable[[int, float], None]


@dataclass
class SolverOptions:
    """
    Configuration passed through to scipy.optimize.least_squares.

    Attributes:
        method: Trust-region strategy ("trf", "dogbox" or "lm").
        linear_solver_type: "sparse_schur" exploits the camera/point Jacobian
            sparsity; "dense_schur" solves the full dense subproblem.
        loss: Loss applied to squared residuals. "linear" is plain squared error.
        loss_scale: Soft margin between inlier and outlier residuals (pixels).
        max_nfev: Maximum number of function evaluations (None = solver default).
        ftol, xtol, gtol: Convergence tolerances.
        x_scale: Characteristic scale of each variable, or "jac".
        diff_step: Relative finite-difference step (None = solver default).
        verbose: Solver progress reporting (0 silent, 1 final report, 2 per iteration).
    """

    method: str = "trf"
    linear_solver_type: str = "sparse_schur"
    loss: str = "linear"
    loss_scale: float = 1.0
    max_nfev: Optional[int] = None
    ftol: float = 1e-12
    xtol: float = 1e-12
    gtol: float = 1e-12
    x_scale: Union[str, float] = "jac"
    diff_step: Optional[float] = None
    verbose: int = 0

    def validate(self) -> None:
        if self.method not in METHODS:
            raise ValueError(f"Unknown method {self.method!r}, expected one of {METHODS}")
        if self.linear_solver_type not in LINEAR_SOLVER_TYPES:
            raise ValueError(
                f"Unknown linear_solver_type {self.linear_solver_type!r}, "
                f"expected one of {LINEAR_SOLVER_TYPES}"
            )
        if self.loss not in LOSS_FUNCTIONS:
            raise ValueError(
                f"Unknown loss {self.loss!r}, expected one of {tuple(LOSS_FUNCTIONS)}"
            )
        if self.method == "lm" and self.loss != "linear":
            raise ValueError("method='lm' only supports the 'linear' loss")
        if self.loss_scale <= 0:
            raise ValueError(f"loss_scale must be positive, got {self.loss_scale}")
        if self.max_nfev is not None and self.max_nfev < 1:
            raise ValueError(f"max_nfev must be >= 1, got {self.max_nfev}")


@dataclass
class SolverSummary:
    """Outcome of one bundle adjustment run."""

    num_residual_blocks: int
    num_parameters: int
    num_free_parameters: int
    method: str
    linear_solver_type: str
    loss: str
    initial_cost: float
    final_cost: float
    num_function_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    status: int = 0
    termination: str = ""
    success: bool = False
    elapsed_seconds: float = 0.0

    def brief_report(self) -> str:
        return (
            f"Bundle adjustment: cost {self.initial_cost:.6e} -> {self.final_cost:.6e}, "
            f"nfev={self.num_function_evaluations}, "
            f"success={self.success} ({self.termination})"
        )

    def full_report(self) -> str:
        lines = [
            "Solver Summary",
            f"  Residual blocks        {self.num_residual_blocks}",
            f"  Parameters             {self.num_parameters}",
            f"  Free parameters        {self.num_free_parameters}",
            f"  Method                 {self.method}",
            f"  Linear solver          {self.linear_solver_type}",
            f"  Loss                   {self.loss}",
            f"  Initial cost           {self.initial_cost:.6e}",
            f"  Final cost             {self.final_cost:.6e}",
            f"  Function evaluations   {self.num_function_evaluations}",
            f"  Jacobian evaluations   {self.num_jacobian_evaluations}",
            f"  Time (s)               {self.elapsed_seconds:.4f}",
            f"  Termination            {self.termination} (status {self.status})",
            f"  Success                {self.success}",
        ]
        return "\n".join(lines)


def select_linear_solver(options: SolverOptions) -> Tuple[str, Optional[str]]:
    """
    Resolve the requested linear solver to a scipy configuration.

    Args:
        options: Solver options.

    Returns:
        Tuple of (linear_solver_type, tr_solver) where:
        - linear_solver_type: the strategy actually used.
        - tr_solver: value for least_squares(tr_solver=...), None for "lm".
    """
    if options.method == "lm":
        # MINPACK only works with dense Jacobians.
        if options.linear_solver_type == "sparse_schur":
            print("[ba] method='lm' has no sparse backend; using dense_schur instead")
        return "dense_schur", None

    if options.linear_solver_type == "sparse_schur":
        return "sparse_schur", "lsmr"
    return "dense_schur", "exact"


def robust_cost(residuals: np.ndarray, loss: str = "linear", loss_scale: float = 1.0) -> float:
    """0.5 * sum(rho(r^2)), the objective least_squares minimizes."""
    z = (residuals / loss_scale) ** 2
    return float(0.5 * loss_scale**2 * np.sum(LOSS_FUNCTIONS[loss](z)))


def solve_bundle_adjustment(
    problem: BAProblem,
    options: Optional[SolverOptions] = None,
    evaluation_callback: Optional[EvaluationCallback] = None,
) -> SolverSummary:
    """
    Refine all non-constant camera and point blocks of `problem` in place.

    Args:
        problem: BAProblem to optimize. Its parameter arena is updated with
            the refined values when the solver finishes.
        options: Solver configuration (defaults to SolverOptions()).
        evaluation_callback: Optional hook called as
            callback(evaluation_index, cost) after every residual evaluation.
            The sequence is not one call per iteration: it includes the
            initial evaluation, every trial step and every finite-difference
            evaluation used to build the Jacobian, so costs need not decrease
            monotonically. Use the minimum seen so far to track progress.

    Returns:
        SolverSummary describing the run.
    """
    options = options or SolverOptions()
    options.validate()
    start_time = time.perf_counter()

    free_mask = problem.free_parameter_mask()
    num_free = int(np.count_nonzero(free_mask))
    num_residuals = RESIDUAL_SIZE * problem.num_observations

    # MINPACK needs at least as many residuals as free parameters.
    if options.method == "lm" and 0 < num_residuals < num_free:
        print(
            f"[ba] Method lm needs at least as many residuals as free parameters "
            f"({num_residuals} < {num_free}); falling back to trf"
        )
        options = replace(options, method="trf")

    linear_solver_type, tr_solver = select_linear_solver(options)

    camera_indices = problem.camera_indices
    point_indices = problem.point_indices
    observations = problem.observations

    # Trial points are written to a scratch copy; the arena only sees the result.
    arena = problem.parameters
    work = arena.copy()
    x0 = arena[free_mask].copy()

    evaluation_count = 0

    def fun(x: np.ndarray) -> np.ndarray:
        nonlocal evaluation_count
        work[free_mask] = x
        residuals = evaluate_residuals(
            work,
            problem.num_cameras,
            problem.num_points,
            camera_indices,
            point_indices,
            observations,
        )
        if evaluation_callback is not None:
            evaluation_callback(
                evaluation_count, robust_cost(residuals, options.loss, options.loss_scale)
            )
        evaluation_count += 1
        return residuals

    initial_residuals = fun(x0)
    initial_cost = robust_cost(initial_residuals, options.loss, options.loss_scale)

    summary = SolverSummary(
        num_residual_blocks=problem.num_observations,
        num_parameters=problem.num_parameters,
        num_free_parameters=int(x0.size),
        method=options.method,
        linear_solver_type=linear_solver_type,
        loss=options.loss,
        initial_cost=initial_cost,
        final_cost=initial_cost,
        num_function_evaluations=1,
    )

    if problem.num_observations == 0 or x0.size == 0:
        summary.termination = (
            "no residual blocks" if problem.num_observations == 0 else "no free parameters"
        )
        summary.success = True
        summary.elapsed_seconds = time.perf_counter() - start_time
        print(f"[ba] Nothing to optimize: {summary.termination}")
        return summary

    if not np.all(np.isfinite(initial_residuals)):
        summary.termination = "non-finite initial cost"
        summary.elapsed_seconds = time.perf_counter() - start_time
        n_bad = int(np.sum(~np.isfinite(initial_residuals.reshape(-1, 2)).any(axis=1)))
        print(
            f"[ba] {n_bad} residual blocks are non-finite at the initial point; "
            "check point depths. Parameters left unchanged."
        )
        return summary

    print(
        f"[ba] Starting bundle adjustment with {problem.num_cameras} cameras, "
        f"{problem.num_points} points, {problem.num_observations} observations, "
        f"{x0.size}/{problem.num_parameters} free parameters, "
        f"method={options.method}, linear_solver={linear_solver_type}, loss={options.loss}"
    )

    kwargs = dict(
        method=options.method,
        ftol=options.ftol,
        xtol=options.xtol,
        gtol=options.gtol,
        x_scale=options.x_scale,
        loss=options.loss,
        f_scale=options.loss_scale,
        max_nfev=options.max_nfev,
        diff_step=options.diff_step,
        verbose=options.verbose,
    )
    if tr_solver is not None:
        kwargs["tr_solver"] = tr_solver
    if linear_solver_type == "sparse_schur":
        kwargs["jac_sparsity"] = jacobian_sparsity(
            problem.num_cameras,
            problem.num_points,
            camera_indices,
            point_indices,
            free_mask=free_mask,
        )

    result = least_squares(fun, x0, **kwargs)

    arena[free_mask] = result.x

    summary.final_cost = float(result.cost)
    summary.num_function_evaluations = int(result.nfev) + 1
    summary.num_jacobian_evaluations = int(result.njev or 0)
    summary.status = int(result.status)
    summary.termination = str(result.message)
    summary.success = bool(result.success)
    summary.elapsed_seconds = time.perf_counter() - start_time

    print(
        f"[ba] Done. Status={result.status}, nfev={result.nfev}, "
        f"initial_cost={initial_cost:.3e}, final_cost={result.cost:.3e}"
    )

    return summary


def unpack_to_scene(problem: BAProblem, scene: SceneGraph) -> None:
    """
    Write refined problem parameters back into the SceneGraph it was built from.

    Args:
        problem: Solved BAProblem built with BAProblem.from_scene(scene).
        scene: SceneGraph to update in-place.
    """
    for block_idx, cam in enumerate(scene.cameras):
        cam_params = problem.camera_parameters(block_idx)
        cam.R = angle_axis_to_matrix(cam_params[0:3])
        cam.t = cam_params[3:6].copy()
        cam.focal = float(cam_params[6])

    for block_idx, pt in enumerate(scene.points3d):
        pt.xyz = problem.point_parameters(block_idx).copy()


def run_bundle_adjustment(
    scene: SceneGraph,
    principal_point: Sequence[float] = (0.0, 0.0),
    options: Optional[SolverOptions] = None,
) -> Tuple[SceneGraph, SolverSummary]:
    """
    Build a problem from `scene`, refine it, and update `scene` in place.

    Args:
        scene: SceneGraph with initial cameras, points and raw observations.
        principal_point: Principal point subtracted from every observation.
        options: Solver configuration.

    Returns:
        Tuple of (scene, summary).
    """
    problem = BAProblem.from_scene(scene, principal_point)
    summary = solve_bundle_adjustment(problem, options)
    unpack_to_scene(problem, scene)
    return scene, summary


__all__ = [
    "METHODS",
    "LINEAR_SOLVER_TYPES",
    "LOSS_FUNCTIONS",
    "SolverOptions",
    "SolverSummary",
    "select_linear_solver",
    "robust_cost",
    "solve_bundle_adjustment",
    "unpack_to_scene",
    "run_bundle_adjustment",
]
