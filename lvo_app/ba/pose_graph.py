"""
Pose-graph smoothing over relative-pose edges.

Nodes are absolute poses T_world_frame; edges are the frame-to-frame
estimates accepted by the window selector. The graph is refined in batch
with a robust sparse nonlinear least-squares solve.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from lvo_app.geometry.se3 import matrix_to_pose, pose_to_matrix, poses_to_matrices
from lvo_app.odom.config import BackendConfig
from lvo_app.odom.data_structures import PoseEdge


def pack_parameters(
    poses: Dict[int, np.ndarray],
    free_frames: List[int],
) -> Tuple[np.ndarray, Dict[int, slice]]:
    """
    Pack the poses of the free nodes into a 1D parameter vector.

    Args:
        poses: Absolute 4x4 poses keyed by frame.
        free_frames: Frames whose poses are optimized, in packing order.

    Returns:
        Tuple of (params, meta) where meta[frame] is the slice of that
        frame's [rvec, t] in params.
    """
    params = np.zeros(6 * len(free_frames), dtype=np.float64)
    meta: Dict[int, slice] = {}
    for k, frame in enumerate(free_frames):
        meta[frame] = slice(6 * k, 6 * k + 6)
        params[meta[frame]] = matrix_to_pose(poses[frame])
    return params, meta


def unpack_parameters(
    params: np.ndarray,
    poses: Dict[int, np.ndarray],
    meta: Dict[int, slice],
) -> None:
    """Write optimized parameters back into ``poses`` in place."""
    for frame, sl in meta.items():
        poses[frame] = pose_to_matrix(params[sl])


class PoseGraph:
    """Relative-pose edges plus absolute priors, refined on request."""

    def __init__(self, config: Optional[BackendConfig] = None):
        self.cfg = config or BackendConfig()
        self.poses: Dict[int, np.ndarray] = {}
        self.edges: List[PoseEdge] = []
        self.priors: Dict[int, Tuple[np.ndarray, float]] = {}

    def set_initial(self, frame: int, T: np.ndarray) -> None:
        self.poses[frame] = np.array(T, dtype=np.float64)

    def add_prior(self, frame: int, T: np.ndarray, sigma: Optional[float] = None) -> None:
        self.priors[frame] = (np.array(T, dtype=np.float64), self.cfg.prior_sigma if sigma is None else sigma)
        if frame not in self.poses:
            self.set_initial(frame, T)

    def add_edge(self, edge: PoseEdge) -> None:
        if edge.ref_frame not in self.poses:
            raise ValueError(f"Edge references unknown frame {edge.ref_frame}")
        self.edges.append(edge)
        if edge.query_frame not in self.poses:
            self.set_initial(edge.query_frame, self.poses[edge.ref_frame] @ pose_to_matrix(edge.pose))

    def pose(self, frame: int) -> np.ndarray:
        return self.poses[frame]

    def optimize(self, window: Optional[int] = None) -> Dict[int, np.ndarray]:
        """
        Refine node poses.

        Args:
            window: Optimize only the latest ``window`` nodes; older nodes
                are held fixed. None or 0 optimizes every node.

        Returns:
            Dictionary of the refined poses keyed by frame.
        """
        frames = sorted(self.poses)
        if window:
            frames = frames[-window:]
        free = set(frames)

        edges = [e for e in self.edges if e.ref_frame in free or e.query_frame in free]
        priors = {f: p for f, p in self.priors.items() if f in free}
        if not frames or (not edges and not priors):
            return {}

        params, meta = pack_parameters(self.poses, frames)
        problem = _GraphProblem(self.poses, meta, edges, priors)

        if self.cfg.verbose:
            print(
                f"[graph] Starting pose-graph refinement with {len(frames)} free nodes, "
                f"{len(edges)} edges, {len(priors)} priors, max_nfev={self.cfg.max_nfev}"
            )

        result = least_squares(
            problem.residuals,
            params,
            jac_sparsity=problem.sparsity(len(params)),
            method="trf",
            loss=self.cfg.loss,
            x_scale="jac",
            max_nfev=self.cfg.max_nfev,
        )

        if self.cfg.verbose:
            print(f"[graph] Done. Status={result.status}, nfev={result.nfev}, final_cost={result.cost:.3e}")

        unpack_parameters(result.x, self.poses, meta)
        return {frame: self.poses[frame] for frame in frames}


class _GraphProblem:
    """Vectorized residuals of a pose graph with some nodes held fixed."""

    def __init__(
        self,
        poses: Dict[int, np.ndarray],
        meta: Dict[int, slice],
        edges: List[PoseEdge],
        priors: Dict[int, Tuple[np.ndarray, float]],
    ):
        self.meta = meta
        self.frames = sorted(set(meta) | {e.ref_frame for e in edges} | {e.query_frame for e in edges})
        self.row_of = {frame: k for k, frame in enumerate(self.frames)}
        self.base = np.array([matrix_to_pose(poses[f]) for f in self.frames])
        self.free_rows = np.array([self.row_of[f] for f in meta], dtype=int)
        self.free_cols = np.array([meta[f].start for f in meta], dtype=int)

        self.ii = np.array([self.row_of[e.ref_frame] for e in edges], dtype=int)
        self.jj = np.array([self.row_of[e.query_frame] for e in edges], dtype=int)
        measured = np.array([e.pose for e in edges]).reshape(-1, 6)
        self.Z_R = Rotation.from_rotvec(measured[:, :3]).as_matrix() if len(edges) else np.zeros((0, 3, 3))
        self.Z_t = measured[:, 3:6]
        self.edge_sigma = np.array([e.sigma for e in edges]).reshape(-1, 6)
        self.edge_frames = [(e.ref_frame, e.query_frame) for e in edges]

        self.prior_frames = list(priors)
        self.prior_rows = np.array([self.row_of[f] for f in self.prior_frames], dtype=int)
        prior_poses = np.array([matrix_to_pose(priors[f][0]) for f in self.prior_frames]).reshape(-1, 6)
        self.P_R = Rotation.from_rotvec(prior_poses[:, :3]).as_matrix() if self.prior_frames else np.zeros((0, 3, 3))
        self.P_t = prior_poses[:, 3:6]
        self.prior_sigma = np.array([priors[f][1] for f in self.prior_frames])

    def _nodes(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        x = self.base.copy()
        if len(self.free_rows):
            x[self.free_rows] = params.reshape(-1, 6)[self.free_cols // 6]
        return poses_to_matrices(x)

    def residuals(self, params: np.ndarray) -> np.ndarray:
        R, t = self._nodes(params)
        out = []

        if len(self.ii):
            Ri, Rj = R[self.ii], R[self.jj]
            R_ij = np.einsum("nji,njk->nik", Ri, Rj)
            t_ij = np.einsum("nji,nj->ni", Ri, t[self.jj] - t[self.ii])
            R_err = np.einsum("nji,njk->nik", self.Z_R, R_ij)
            t_err = np.einsum("nji,nj->ni", self.Z_R, t_ij - self.Z_t)
            err = np.hstack([Rotation.from_matrix(R_err).as_rotvec(), t_err])
            out.append((err / self.edge_sigma).ravel())

        if self.prior_frames:
            Rp = R[self.prior_rows]
            R_err = np.einsum("nji,njk->nik", self.P_R, Rp)
            err = np.hstack([Rotation.from_matrix(R_err).as_rotvec(), t[self.prior_rows] - self.P_t])
            out.append((err / self.prior_sigma[:, None]).ravel())

        return np.concatenate(out)

    def sparsity(self, n_params: int) -> lil_matrix:
        n_rows = 6 * (len(self.ii) + len(self.prior_frames))
        A = lil_matrix((n_rows, n_params), dtype=int)

        row = 0
        for ref, query in self.edge_frames:
            for frame in (ref, query):
                sl = self.meta.get(frame)
                if sl is not None:
                    A[row : row + 6, sl] = 1
            row += 6
        for frame in self.prior_frames:
            A[row : row + 6, self.meta[frame]] = 1
            row += 6
        return A


__all__ = ["pack_parameters", "unpack_parameters", "PoseGraph"]
