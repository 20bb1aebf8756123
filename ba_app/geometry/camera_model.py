"""
Pinhole camera parameterization used by bundle adjustment.

A camera is stored as 7 scalars:

    [rx, ry, rz, tx, ty, tz, f]

where (rx, ry, rz) is an angle-axis rotation (angle = norm, axis = direction),
(tx, ty, tz) is the world-to-camera translation and f is the focal length.
The principal point is not part of the camera; observations are centered on
it before they reach the residual model.

All functions here are pure and vectorized over leading axes, so the same
code evaluates one observation or a whole batch.
"""

from __future__ import annotations

import cv2
import numpy as np

CAMERA_PARAM_SIZE = 7
POINT_PARAM_SIZE = 3

# Below this squared angle the Rodrigues formula is replaced by its first-order
# expansion, which is exact to machine precision there.
_SMALL_ANGLE_THETA2 = np.finfo(np.float64).eps


def angle_axis_rotate_point(angle_axis: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    Rotate 3D point(s) by angle-axis rotation(s) using Rodrigues' formula.

    Args:
        angle_axis: Rotation vector(s) (..., 3).
        point: 3D point(s) (..., 3). Broadcast against `angle_axis`.

    Returns:
        Rotated point(s) (..., 3).
    """
    angle_axis = np.asarray(angle_axis, dtype=np.float64)
    point = np.asarray(point, dtype=np.float64)

    theta2 = np.sum(angle_axis * angle_axis, axis=-1, keepdims=True)
    small = theta2 <= _SMALL_ANGLE_THETA2

    theta = np.sqrt(np.where(small, 1.0, theta2))
    w = angle_axis / theta
    cos_t = np.cos(theta)
    sin_t = np.sin(theta)

    w_dot_p = np.sum(w * point, axis=-1, keepdims=True)
    rotated = cos_t * point + sin_t * np.cross(w, point) + (1.0 - cos_t) * w_dot_p * w

    # R ~ I + [w]_x for tiny angles.
    first_order = point + np.cross(angle_axis, point)

    return np.where(small, first_order, rotated)


def project(camera: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    Project 3D point(s) through 7-parameter pinhole camera(s).

    The point is rotated, translated, divided by its depth and scaled by the
    focal length. Zero or negative depth is not special-cased: the result is
    then non-finite or extreme, never an exception.

    Args:
        camera: Camera parameters (..., 7).
        point: 3D point(s) (..., 3).

    Returns:
        Predicted image coordinates (..., 2), centered on the principal point.
    """
    camera = np.asarray(camera, dtype=np.float64)

    p = angle_axis_rotate_point(camera[..., 0:3], point) + camera[..., 3:6]
    focal = camera[..., 6]

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        xp = p[..., 0] / p[..., 2]
        yp = p[..., 1] / p[..., 2]
        return np.stack([focal * xp, focal * yp], axis=-1)


def matrix_to_angle_axis(R: np.ndarray) -> np.ndarray:
    """
    Convert a rotation matrix to an angle-axis vector.

    Args:
        R: Rotation matrix (3x3).

    Returns:
        Angle-axis vector (3,).
    """
    R = np.ascontiguousarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Expected a 3x3 rotation matrix, got shape {R.shape}")

    rvec, _ = cv2.Rodrigues(R)
    return rvec.ravel()


def angle_axis_to_matrix(angle_axis: np.ndarray) -> np.ndarray:
    """
    Convert an angle-axis vector to a rotation matrix.

    Args:
        angle_axis: Angle-axis vector (3,).

    Returns:
        Rotation matrix (3x3).
    """
    rvec = np.ascontiguousarray(angle_axis, dtype=np.float64).reshape(3, 1)
    R, _ = cv2.Rodrigues(rvec)
    return R


def camera_center(camera: np.ndarray) -> np.ndarray:
    """Camera center C = -R^T t in world coordinates for a 7-parameter camera."""
    camera = np.asarray(camera, dtype=np.float64)
    R = angle_axis_to_matrix(camera[0:3])
    return -R.T @ camera[3:6]


__all__ = [
    "CAMERA_PARAM_SIZE",
    "POINT_PARAM_SIZE",
    "angle_axis_rotate_point",
    "project",
    "matrix_to_angle_axis",
    "angle_axis_to_matrix",
    "camera_center",
]
