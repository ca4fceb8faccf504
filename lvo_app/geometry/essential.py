"""
Essential matrix from a known relative pose, and the epipolar error used for
correspondences without depth on either side.
"""

from __future__ import annotations

import numpy as np

from lvo_app.geometry.se3 import skew


def compute_essential_matrix(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    Compute the essential matrix of a relative pose.

    Args:
        R: Rotation (3x3) mapping first-camera points into the second camera.
        t: Translation (3,) of the same transform, ``X2 = R @ X1 + t``.

    Returns:
        Essential matrix E (3x3) with ``x2^T E x1 = 0`` for normalized
        homogeneous image points x1, x2.
    """
    return skew(t) @ R


def sampson_distance(
    E: np.ndarray,
    x1: np.ndarray,
    x2: np.ndarray,
) -> np.ndarray:
    """
    First-order geometric (Sampson) error of the epipolar constraint.

    Args:
        E: Essential matrix (3x3), ``x2^T E x1 = 0``.
        x1: Normalized image points in the first camera (N, 2).
        x2: Normalized image points in the second camera (N, 2).

    Returns:
        Signed Sampson distances (N,), in normalized image units.
    """
    n = len(x1)
    if n == 0:
        return np.zeros((0,), dtype=np.float64)

    ones = np.ones((n, 1))
    h1 = np.hstack([np.asarray(x1, dtype=np.float64), ones])
    h2 = np.hstack([np.asarray(x2, dtype=np.float64), ones])

    Ex1 = h1 @ E.T  # rows are E @ x1
    Etx2 = h2 @ E  # rows are E^T @ x2
    algebraic = np.sum(h2 * Ex1, axis=1)
    denom = np.sqrt(Ex1[:, 0] ** 2 + Ex1[:, 1] ** 2 + Etx2[:, 0] ** 2 + Etx2[:, 1] ** 2)

    return algebraic / (denom + 1e-12)


__all__ = ["compute_essential_matrix", "sampson_distance"]
