"""
Initialization input for bundle adjustment.

These dataclasses are simple containers describing the initial estimate
handed to the problem builder:
- cameras with a rotation matrix, translation and focal length
- 3D points
- raw pixel observations linking the two
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

import numpy as np


@dataclass
class Camera:
    """A camera's initial pose and focal length guess."""

    id: int
    # Rotation (3x3) and translation (3,) or (3x1) from world to camera coordinates.
    R: np.ndarray
    t: np.ndarray
    focal: float


@dataclass
class Observation:
    """
    A 2D observation of a 3D point in a particular camera.

    `uv` is (2,) numpy array in raw pixel coordinates (principal point not
    yet subtracted).
    """

    camera_id: int
    point_id: int
    uv: np.ndarray


@dataclass
class Point3D:
    """A single 3D point in world coordinates."""

    id: int
    xyz: np.ndarray


@dataclass
class SceneGraph:
    """
    Global container for all cameras, points, and observations.

    Camera and point ids are arbitrary integers; the problem builder maps
    them to dense block indices in list order.
    """

    cameras: List[Camera] = field(default_factory=list)
    points3d: List[Point3D] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)


__all__ = ["Camera", "Point3D", "Observation", "SceneGraph"]
