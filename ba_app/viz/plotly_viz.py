"""
Visualization utilities for bundle adjustment results using Plotly.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import plotly.graph_objs as go

from ba_app.ba.problem import BAProblem
from ba_app.geometry.camera_model import camera_center


def plot_bundle_adjustment(
    problem: BAProblem,
    initial_problem: Optional[BAProblem] = None,
) -> go.Figure:
    """
    Create a 3D Plotly visualization of a bundle adjustment problem.

    Args:
        problem: BAProblem whose current (usually refined) points and camera
            centers are drawn.
        initial_problem: Optional problem holding the initial estimate, drawn
            in grey for comparison.

    Returns:
        Plotly Figure object with 3D scatter plots of points and camera centers.
    """
    fig = go.Figure()

    if initial_problem is not None:
        _add_problem_traces(fig, initial_problem, label="Initial", point_color="lightgray",
                            camera_color="gray")
    _add_problem_traces(fig, problem, label="Refined", point_color="royalblue",
                        camera_color="red")

    fig.update_layout(
        title="Bundle Adjustment",
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


def _add_problem_traces(
    fig: go.Figure,
    problem: BAProblem,
    label: str,
    point_color: str,
    camera_color: str,
) -> None:
    points_xyz = problem.points
    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(size=3, color=point_color, opacity=0.8),
                name=f"{label} Points",
                text=[f"Point {i}" for i in range(len(points_xyz))],
            )
        )

    if problem.num_cameras > 0:
        centers = np.array([camera_center(cam) for cam in problem.cameras])
        fig.add_trace(
            go.Scatter3d(
                x=centers[:, 0],
                y=centers[:, 1],
                z=centers[:, 2],
                mode="markers",
                marker=dict(size=8, color=camera_color, symbol="diamond"),
                name=f"{label} Cameras",
                text=[f"Camera {i}" for i in range(len(centers))],
            )
        )


__all__ = ["plot_bundle_adjustment"]
