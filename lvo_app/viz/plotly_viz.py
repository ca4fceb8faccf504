"""
Visualization of odometry trajectories using Plotly.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

import plotly.graph_objs as go
import numpy as np

from lvo_app.odom.data_structures import PoseEdge


def plot_trajectory(
    poses: Union[Sequence[np.ndarray], Dict[int, np.ndarray]],
    edges: Optional[List[PoseEdge]] = None,
    title: str = "Lidar-visual odometry trajectory",
) -> go.Figure:
    """
    Create a 3D Plotly figure of an estimated trajectory.

    Args:
        poses: Absolute 4x4 poses T_world_frame, as a list in frame order or
            a dictionary keyed by frame.
        edges: Optional pose-graph edges; look-back edges (spanning more than
            one frame) are drawn as segments between the frames' positions.
        title: Figure title.

    Returns:
        Plotly Figure with the camera path and the look-back edges.
    """
    if isinstance(poses, dict):
        frames = sorted(poses)
        mats = [poses[f] for f in frames]
    else:
        frames = list(range(len(poses)))
        mats = list(poses)

    centers = np.array([np.asarray(T)[:3, 3] for T in mats]).reshape(-1, 3)
    position = {f: centers[k] for k, f in enumerate(frames)}

    fig = go.Figure()

    if len(centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=centers[:, 0],
                y=centers[:, 1],
                z=centers[:, 2],
                mode="lines+markers",
                marker=dict(size=2, color="red"),
                line=dict(color="red", width=3),
                name="Trajectory",
                text=[f"Frame {f}" for f in frames],
            )
        )

    # None-separated segments draw all edges as one trace
    xs, ys, zs = [], [], []
    for edge in edges or []:
        if edge.lookback < 2 or edge.ref_frame not in position or edge.query_frame not in position:
            continue
        a, b = position[edge.ref_frame], position[edge.query_frame]
        xs += [a[0], b[0], None]
        ys += [a[1], b[1], None]
        zs += [a[2], b[2], None]

    if xs:
        fig.add_trace(
            go.Scatter3d(
                x=xs,
                y=ys,
                z=zs,
                mode="lines",
                line=dict(color="royalblue", width=1),
                opacity=0.5,
                name="Look-back edges",
            )
        )

    fig.update_layout(
        title=title,
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


__all__ = ["plot_trajectory"]
