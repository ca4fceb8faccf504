"""
Rigid-transform helpers.

Convention: ``T_a_b`` maps points from frame b into frame a. Relative poses
are stored as 6-vectors ``[rx, ry, rz, tx, ty, tz]`` (Rodrigues rotation
vector followed by translation), the same packing the bundle adjustment
uses for camera parameters.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np
from scipy.spatial.transform import Rotation


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t).reshape(3)
    return T


def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def pose_to_matrix(pose: np.ndarray) -> np.ndarray:
    """
    Convert a 6-vector ``[rvec, t]`` into a 4x4 rigid transform.

    Args:
        pose: Array-like of 6 values.

    Returns:
        4x4 homogeneous transform, dtype=float64.
    """
    pose = np.asarray(pose, dtype=np.float64).reshape(6)
    R, _ = cv2.Rodrigues(pose[:3].reshape(3, 1))
    return Rt_to_T(R, pose[3:6])


def matrix_to_pose(T: np.ndarray) -> np.ndarray:
    """Inverse of :func:`pose_to_matrix`."""
    rvec, _ = cv2.Rodrigues(np.asarray(T[:3, :3], dtype=np.float64))
    return np.concatenate([rvec.reshape(3), np.asarray(T[:3, 3], dtype=np.float64)])


def poses_to_matrices(poses: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Batched version of :func:`pose_to_matrix` returning rotations and translations.

    Args:
        poses: (N, 6) array of pose vectors.

    Returns:
        Tuple of (R, t) with shapes (N, 3, 3) and (N, 3).
    """
    poses = np.asarray(poses, dtype=np.float64).reshape(-1, 6)
    R = Rotation.from_rotvec(poses[:, :3]).as_matrix()
    return R, poses[:, 3:6]


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to (N, 3) points."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def pose_discrepancy(T_pred: np.ndarray, T_est: np.ndarray) -> Tuple[float, float]:
    """
    Disagreement between a predicted and an estimated relative transform.

    Returns:
        Tuple of (translation_error, rotation_error): the norm of the
        translation difference and the angle (radians) of ``R_pred^T R_est``.
    """
    dt = float(np.linalg.norm(T_est[:3, 3] - T_pred[:3, 3]))
    R_delta = T_pred[:3, :3].T @ T_est[:3, :3]
    # clip keeps arccos defined for slightly non-orthonormal inputs
    cos_angle = np.clip((np.trace(R_delta) - 1.0) / 2.0, -1.0, 1.0)
    return dt, float(np.arccos(cos_angle))


def skew(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ]
    )


__all__ = [
    "Rt_to_T",
    "inv_T",
    "pose_to_matrix",
    "matrix_to_pose",
    "poses_to_matrices",
    "transform_points",
    "pose_discrepancy",
    "skew",
]
