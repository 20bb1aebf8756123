"""
Bundle adjustment problem store.

All camera and point parameters live in one preallocated float64 arena:
7 scalars per camera followed by 3 scalars per point. Parameter-block
handles are numpy views into that arena, so writes through a handle are
seen by every later residual evaluation and the handles stay valid for the
lifetime of the problem.
"""

from __future__ import annotations

import operator
from typing import Dict, List, Sequence, Tuple

import numpy as np

from ba_app.ba.residuals import ResidualBlock, reprojection_residual
from ba_app.geometry.camera_model import (
    CAMERA_PARAM_SIZE,
    POINT_PARAM_SIZE,
    matrix_to_angle_axis,
)
from ba_app.scene.data_structures import SceneGraph


class ProblemStructureError(ValueError):
    """Raised when a problem is built with inconsistent indices or shapes."""


class BAProblem:
    """
    Cameras, points and observations of one bundle adjustment problem.

    The number of camera and point blocks is fixed at construction.
    Observations are appended with `add_observation` and never change.
    """

    def __init__(
        self,
        num_cameras: int,
        num_points: int,
        principal_point: Sequence[float] = (0.0, 0.0),
    ):
        if num_cameras < 0 or num_points < 0:
            raise ProblemStructureError(
                f"Counts must be non-negative, got num_cameras={num_cameras}, "
                f"num_points={num_points}"
            )
        principal_point = np.asarray(principal_point, dtype=np.float64)
        if principal_point.shape != (2,):
            raise ProblemStructureError(
                f"Principal point must have 2 entries, got shape {principal_point.shape}"
            )

        self.num_cameras = int(num_cameras)
        self.num_points = int(num_points)
        self.principal_point = principal_point

        self._parameters = np.zeros(
            self.num_cameras * CAMERA_PARAM_SIZE + self.num_points * POINT_PARAM_SIZE,
            dtype=np.float64,
        )
        self._camera_indices: List[int] = []
        self._point_indices: List[int] = []
        self._observations: List[Tuple[float, float]] = []

        self._constant_cameras = np.zeros(self.num_cameras, dtype=bool)
        self._constant_points = np.zeros(self.num_points, dtype=bool)

    # ------------------------------------------------------------------
    # Sizes and bulk views
    # ------------------------------------------------------------------
    @property
    def parameters(self) -> np.ndarray:
        """The parameter arena (all cameras, then all points)."""
        return self._parameters

    @property
    def num_parameters(self) -> int:
        return self._parameters.size

    @property
    def num_observations(self) -> int:
        return len(self._observations)

    @property
    def point_offset(self) -> int:
        return self.num_cameras * CAMERA_PARAM_SIZE

    @property
    def cameras(self) -> np.ndarray:
        """(num_cameras, 7) view of the camera blocks."""
        return self._parameters[: self.point_offset].reshape(
            self.num_cameras, CAMERA_PARAM_SIZE
        )

    @property
    def points(self) -> np.ndarray:
        """(num_points, 3) view of the point blocks."""
        return self._parameters[self.point_offset :].reshape(
            self.num_points, POINT_PARAM_SIZE
        )

    @property
    def camera_indices(self) -> np.ndarray:
        return self._readonly(np.array(self._camera_indices, dtype=int))

    @property
    def point_indices(self) -> np.ndarray:
        return self._readonly(np.array(self._point_indices, dtype=int))

    @property
    def observations(self) -> np.ndarray:
        """(num_observations, 2) centered observed coordinates."""
        obs = np.array(self._observations, dtype=np.float64).reshape(-1, 2)
        return self._readonly(obs)

    @staticmethod
    def _readonly(array: np.ndarray) -> np.ndarray:
        array.flags.writeable = False
        return array

    # ------------------------------------------------------------------
    # Parameter-block handles
    # ------------------------------------------------------------------
    @staticmethod
    def _as_index(i, kind: str) -> int:
        # operator.index accepts numpy integers and rejects floats.
        try:
            return operator.index(i)
        except TypeError:
            raise ProblemStructureError(
                f"{kind} index must be an integer, got {i!r} ({type(i).__name__})"
            ) from None

    def _check_camera_index(self, i: int) -> int:
        i = self._as_index(i, "Camera")
        if not 0 <= i < self.num_cameras:
            raise ProblemStructureError(
                f"Camera index {i} out of range [0, {self.num_cameras})"
            )
        return i

    def _check_point_index(self, i: int) -> int:
        i = self._as_index(i, "Point")
        if not 0 <= i < self.num_points:
            raise ProblemStructureError(
                f"Point index {i} out of range [0, {self.num_points})"
            )
        return i

    def camera_parameters(self, i: int) -> np.ndarray:
        """Mutable 7-scalar view of camera `i`: [rx, ry, rz, tx, ty, tz, f]."""
        start = self._check_camera_index(i) * CAMERA_PARAM_SIZE
        return self._parameters[start : start + CAMERA_PARAM_SIZE]

    def point_parameters(self, i: int) -> np.ndarray:
        """Mutable 3-scalar view of point `i`."""
        start = self.point_offset + self._check_point_index(i) * POINT_PARAM_SIZE
        return self._parameters[start : start + POINT_PARAM_SIZE]

    def set_camera(
        self,
        i: int,
        R: np.ndarray,
        t: np.ndarray,
        focal: float,
    ) -> None:
        """
        Initialize camera `i` from a rotation matrix, translation and focal length.

        Args:
            i: Camera index.
            R: Rotation matrix (3x3) from world to camera coordinates.
            t: Translation vector (3,) or (3, 1).
            focal: Focal length in pixels.
        """
        t = np.asarray(t, dtype=np.float64).ravel()
        if t.size != 3:
            raise ProblemStructureError(f"Translation must have 3 entries, got {t.size}")

        cam = self.camera_parameters(i)
        cam[0:3] = matrix_to_angle_axis(R)
        cam[3:6] = t
        cam[6] = focal

    def set_point(self, i: int, xyz: np.ndarray) -> None:
        xyz = np.asarray(xyz, dtype=np.float64).ravel()
        if xyz.size != POINT_PARAM_SIZE:
            raise ProblemStructureError(f"Point must have 3 entries, got {xyz.size}")
        self.point_parameters(i)[:] = xyz

    # ------------------------------------------------------------------
    # Observations and residual blocks
    # ------------------------------------------------------------------
    def add_observation(self, camera_index: int, point_index: int, x: float, y: float) -> int:
        """
        Record an observation of point `point_index` in camera `camera_index`.

        (x, y) are raw pixel coordinates; the principal point is subtracted
        before storage.

        Returns:
            Index of the new observation.
        """
        return self._append_centered(
            camera_index,
            point_index,
            float(x) - self.principal_point[0],
            float(y) - self.principal_point[1],
        )

    def _append_centered(self, camera_index: int, point_index: int, x: float, y: float) -> int:
        """Record an observation whose coordinates are already centered."""
        camera_index = self._check_camera_index(camera_index)
        point_index = self._check_point_index(point_index)

        self._camera_indices.append(camera_index)
        self._point_indices.append(point_index)
        self._observations.append((float(x), float(y)))
        return len(self._observations) - 1

    def residual_blocks(self) -> List[ResidualBlock]:
        """One residual block per observation, bound to the arena views."""
        observations = self.observations
        return [
            ResidualBlock(
                cost_function=reprojection_residual,
                camera_index=cam_idx,
                point_index=pt_idx,
                camera=self.camera_parameters(cam_idx),
                point=self.point_parameters(pt_idx),
                observed_xy=observations[k],
            )
            for k, (cam_idx, pt_idx) in enumerate(
                zip(self._camera_indices, self._point_indices)
            )
        ]

    # ------------------------------------------------------------------
    # Constant parameter blocks
    # ------------------------------------------------------------------
    def set_camera_constant(self, i: int) -> None:
        self._constant_cameras[self._check_camera_index(i)] = True

    def set_camera_variable(self, i: int) -> None:
        self._constant_cameras[self._check_camera_index(i)] = False

    def set_point_constant(self, i: int) -> None:
        self._constant_points[self._check_point_index(i)] = True

    def set_point_variable(self, i: int) -> None:
        self._constant_points[self._check_point_index(i)] = False

    def is_camera_constant(self, i: int) -> bool:
        return bool(self._constant_cameras[self._check_camera_index(i)])

    def is_point_constant(self, i: int) -> bool:
        return bool(self._constant_points[self._check_point_index(i)])

    @property
    def constant_cameras(self) -> np.ndarray:
        return self._readonly(self._constant_cameras.copy())

    @property
    def constant_points(self) -> np.ndarray:
        return self._readonly(self._constant_points.copy())

    def free_parameter_mask(self) -> np.ndarray:
        """Boolean mask over the arena; True where the solver may change a value."""
        camera_mask = np.repeat(~self._constant_cameras, CAMERA_PARAM_SIZE)
        point_mask = np.repeat(~self._constant_points, POINT_PARAM_SIZE)
        return np.concatenate([camera_mask, point_mask])

    # ------------------------------------------------------------------
    # Construction from initialization input
    # ------------------------------------------------------------------
    @classmethod
    def from_scene(
        cls,
        scene: SceneGraph,
        principal_point: Sequence[float] = (0.0, 0.0),
    ) -> "BAProblem":
        """
        Build a problem from an initial SceneGraph estimate.

        Cameras and points get block indices in list order. Every observation
        must reference a camera id and point id present in the scene.
        """
        camera_block: Dict[int, int] = {}
        for block_idx, cam in enumerate(scene.cameras):
            if cam.id in camera_block:
                raise ProblemStructureError(f"Duplicate camera id {cam.id}")
            camera_block[cam.id] = block_idx

        point_block: Dict[int, int] = {}
        for block_idx, pt in enumerate(scene.points3d):
            if pt.id in point_block:
                raise ProblemStructureError(f"Duplicate point id {pt.id}")
            point_block[pt.id] = block_idx

        problem = cls(len(scene.cameras), len(scene.points3d), principal_point)

        for cam in scene.cameras:
            problem.set_camera(camera_block[cam.id], cam.R, cam.t, cam.focal)
        for pt in scene.points3d:
            problem.set_point(point_block[pt.id], pt.xyz)

        for obs in scene.observations:
            if obs.camera_id not in camera_block:
                raise ProblemStructureError(
                    f"Observation references unknown camera id {obs.camera_id}"
                )
            if obs.point_id not in point_block:
                raise ProblemStructureError(
                    f"Observation references unknown point id {obs.point_id}"
                )
            uv = np.asarray(obs.uv, dtype=np.float64).ravel()
            problem.add_observation(
                camera_block[obs.camera_id], point_block[obs.point_id], uv[0], uv[1]
            )

        return problem

    def __repr__(self) -> str:
        return (
            f"BAProblem(num_cameras={self.num_cameras}, num_points={self.num_points}, "
            f"num_observations={self.num_observations})"
        )


__all__ = ["BAProblem", "ProblemStructureError"]
