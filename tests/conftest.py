"""
Shared fixtures: a small synthetic ring of cameras looking at a point cloud.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ba_app.ba.problem import BAProblem
from ba_app.geometry.camera_model import project

PRINCIPAL_POINT = (500.0, 500.0)
FOCAL = 1000.0


def look_at(center, target=np.zeros(3)):
    """World-to-camera rotation for a camera at `center` looking at `target`."""
    z = target - center
    z = z / np.linalg.norm(z)
    x = np.cross(np.array([0.0, 1.0, 0.0]), z)
    x = x / np.linalg.norm(x)
    y = np.cross(z, x)
    return np.stack([x, y, z])


def camera_ring(num_cameras=3, num_points=6, radius=10.0, seed=0):
    """Cameras evenly spaced on a horizontal ring, points in a unit cube at the center."""
    rng = np.random.default_rng(seed)
    Rs, ts, focals = [], [], []
    for j in range(num_cameras):
        angle = 2.0 * np.pi * j / num_cameras
        center = radius * np.array([np.cos(angle), 0.3, np.sin(angle)])
        R = look_at(center)
        Rs.append(R)
        ts.append(-R @ center)
        focals.append(FOCAL)
    points = rng.uniform(-1.0, 1.0, size=(num_points, 3))
    return Rs, ts, focals, points


def build_problem(num_cameras=3, num_points=6, seed=0):
    """Noiseless problem: every observation equals the projection of its ground truth."""
    Rs, ts, focals, points = camera_ring(num_cameras, num_points, seed=seed)
    problem = BAProblem(num_cameras, num_points, PRINCIPAL_POINT)
    for j in range(num_cameras):
        problem.set_camera(j, Rs[j], ts[j], focals[j])
    for i in range(num_points):
        problem.set_point(i, points[i])

    # Each point is seen by every camera.
    for i in range(num_points):
        for j in range(num_cameras):
            x, y = project(problem.camera_parameters(j), problem.point_parameters(i))
            problem.add_observation(j, i, x + PRINCIPAL_POINT[0], y + PRINCIPAL_POINT[1])
    return problem


@pytest.fixture
def ring_problem():
    return build_problem()


@pytest.fixture
def perturbed_ring_problem():
    """Ring problem with cameras offset from ground truth; returns (problem, truth)."""
    problem = build_problem()
    truth = problem.cameras.copy()

    offset = np.array([0.01, -0.008, 0.005, 0.05, -0.04, 0.1, 8.0])
    for j in range(problem.num_cameras):
        problem.camera_parameters(j)[:] += offset * (1.0 + 0.5 * j)
    return problem, truth
