"""
Reprojection residual model and the Jacobian structure it induces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.sparse import lil_matrix, spmatrix

from ba_app.geometry.camera_model import CAMERA_PARAM_SIZE, POINT_PARAM_SIZE, project

RESIDUAL_SIZE = 2


def reprojection_residual(
    camera: np.ndarray,
    point: np.ndarray,
    observed_xy: np.ndarray,
) -> np.ndarray:
    """
    Difference between the projected point and its observation.

    Vectorized over leading axes; inputs are never modified.

    Args:
        camera: Camera parameters (..., 7).
        point: 3D point(s) (..., 3).
        observed_xy: Observed image coordinates (..., 2), centered on the
            principal point.

    Returns:
        Residual (..., 2) = project(camera, point) - observed_xy.
    """
    return project(camera, point) - np.asarray(observed_xy, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class ResidualBlock:
    """
    One term of the objective: a residual function bound to the camera and
    point parameter blocks it reads and the observation it compares against.

    `camera` and `point` are views into the owning problem's parameter arena.
    """

    cost_function: Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]
    camera_index: int
    point_index: int
    camera: np.ndarray
    point: np.ndarray
    observed_xy: np.ndarray

    @property
    def parameter_blocks(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.camera, self.point

    def evaluate(self) -> np.ndarray:
        """Residual (2,) at the current parameter values."""
        return self.cost_function(self.camera, self.point, self.observed_xy)


def evaluate_residuals(
    parameters: np.ndarray,
    num_cameras: int,
    num_points: int,
    camera_indices: np.ndarray,
    point_indices: np.ndarray,
    observations: np.ndarray,
) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Args:
        parameters: Flat parameter vector (all cameras, then all points).
        num_cameras: Number of camera blocks.
        num_points: Number of point blocks.
        camera_indices: Camera index per observation (K,).
        point_indices: Point index per observation (K,).
        observations: Centered observed coordinates (K, 2).

    Returns:
        1D array of residuals (2 per observation: [dx, dy]).
    """
    point_offset = num_cameras * CAMERA_PARAM_SIZE
    cameras = parameters[:point_offset].reshape(num_cameras, CAMERA_PARAM_SIZE)
    points = parameters[point_offset:].reshape(num_points, POINT_PARAM_SIZE)

    residuals = reprojection_residual(
        cameras[camera_indices],
        points[point_indices],
        observations,
    )
    return residuals.ravel()


def jacobian_sparsity(
    num_cameras: int,
    num_points: int,
    camera_indices: np.ndarray,
    point_indices: np.ndarray,
    free_mask: Optional[np.ndarray] = None,
) -> spmatrix:
    """
    Build the sparsity pattern of the residual Jacobian.

    Each observation contributes a 2x7 block in its camera's columns and a
    2x3 block in its point's columns; everything else is zero.

    Args:
        num_cameras: Number of camera blocks.
        num_points: Number of point blocks.
        camera_indices: Camera index per observation (K,).
        point_indices: Point index per observation (K,).
        free_mask: Optional boolean mask (num_parameters,) selecting the
            columns of parameters that are being refined.

    Returns:
        Sparse 0/1 matrix of shape (2K, num_parameters) or (2K, free_mask.sum()).
    """
    camera_indices = np.asarray(camera_indices, dtype=int)
    point_indices = np.asarray(point_indices, dtype=int)

    m = RESIDUAL_SIZE * camera_indices.size
    n = num_cameras * CAMERA_PARAM_SIZE + num_points * POINT_PARAM_SIZE
    A = lil_matrix((m, n), dtype=int)

    i = np.arange(camera_indices.size)
    for s in range(CAMERA_PARAM_SIZE):
        A[2 * i, camera_indices * CAMERA_PARAM_SIZE + s] = 1
        A[2 * i + 1, camera_indices * CAMERA_PARAM_SIZE + s] = 1

    point_offset = num_cameras * CAMERA_PARAM_SIZE
    for s in range(POINT_PARAM_SIZE):
        A[2 * i, point_offset + point_indices * POINT_PARAM_SIZE + s] = 1
        A[2 * i + 1, point_offset + point_indices * POINT_PARAM_SIZE + s] = 1

    if free_mask is None:
        return A
    return A.tocsc()[:, np.flatnonzero(free_mask)]


__all__ = [
    "RESIDUAL_SIZE",
    "ResidualBlock",
    "reprojection_residual",
    "evaluate_residuals",
    "jacobian_sparsity",
]
