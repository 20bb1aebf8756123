"""
Problem I/O utilities for saving and loading bundle adjustment problems.
"""

from __future__ import annotations

import numpy as np

from ba_app.ba.problem import BAProblem, ProblemStructureError

_REQUIRED_KEYS = ("cameras", "points", "camera_indices", "point_indices", "observations")


def save_problem_npz(
    output_path: str,
    problem: BAProblem,
) -> None:
    """
    Serialize a BAProblem to a .npz file.

    Observations are stored already centered; the principal point is stored
    alongside so the raw pixel coordinates can be recovered.

    Args:
        output_path: Path where the problem will be saved (.npz file).
        problem: BAProblem with current (initial or refined) parameters.
    """
    np.savez(
        output_path,
        cameras=problem.cameras,
        points=problem.points,
        camera_indices=problem.camera_indices,
        point_indices=problem.point_indices,
        observations=problem.observations,
        principal_point=problem.principal_point,
        constant_cameras=problem.constant_cameras,
        constant_points=problem.constant_points,
    )


def load_problem_npz(
    input_path: str,
) -> BAProblem:
    """
    Load a BAProblem from a .npz file written by save_problem_npz.

    Observations go through the same index checks as BAProblem.add_observation,
    so bad or non-integer indices are rejected as they are for problems built
    in memory. Stored coordinates are already centered and are kept bit-exact.

    Args:
        input_path: Path to the .npz file.

    Returns:
        Reconstructed BAProblem.
    """
    with np.load(input_path) as data:
        missing = [key for key in _REQUIRED_KEYS if key not in data.files]
        if missing:
            raise ValueError(f"{input_path} is missing arrays: {', '.join(missing)}")

        cameras = np.asarray(data["cameras"], dtype=np.float64).reshape(-1, 7)
        points = np.asarray(data["points"], dtype=np.float64).reshape(-1, 3)
        camera_indices = np.asarray(data["camera_indices"]).ravel()
        point_indices = np.asarray(data["point_indices"]).ravel()
        observations = np.asarray(data["observations"], dtype=np.float64).reshape(-1, 2)
        principal_point = (
            data["principal_point"] if "principal_point" in data.files else np.zeros(2)
        )
        constant_cameras = data["constant_cameras"] if "constant_cameras" in data.files else None
        constant_points = data["constant_points"] if "constant_points" in data.files else None

    for name, indices in (("camera_indices", camera_indices), ("point_indices", point_indices)):
        if indices.size and not np.issubdtype(indices.dtype, np.integer):
            raise ProblemStructureError(
                f"{name} in {input_path} must be integer-typed, got dtype {indices.dtype}"
            )

    if not (camera_indices.size == point_indices.size == observations.shape[0]):
        raise ProblemStructureError(
            f"Mismatched observation arrays in {input_path}: "
            f"{camera_indices.size} camera indices, {point_indices.size} point indices, "
            f"{observations.shape[0]} observations"
        )

    problem = BAProblem(cameras.shape[0], points.shape[0], principal_point)
    problem.cameras[:] = cameras
    problem.points[:] = points

    # Stored observations are already centered.
    for cam_idx, pt_idx, (x, y) in zip(camera_indices, point_indices, observations):
        problem._append_centered(cam_idx, pt_idx, x, y)

    if constant_cameras is not None:
        for i in np.flatnonzero(constant_cameras):
            problem.set_camera_constant(i)
    if constant_points is not None:
        for i in np.flatnonzero(constant_points):
            problem.set_point_constant(i)

    print(
        f"[io] Loaded problem from {input_path}: {problem.num_cameras} cameras, "
        f"{problem.num_points} points, {problem.num_observations} observations"
    )
    return problem


__all__ = ["save_problem_npz", "load_problem_npz"]
