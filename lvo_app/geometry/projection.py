"""
Pinhole projection and back-projection.
"""

from __future__ import annotations

import numpy as np

# Points closer than this to the image plane are clamped before division.
MIN_PROJECTION_DEPTH = 1e-6


def project_points(K: np.ndarray, points_cam: np.ndarray) -> np.ndarray:
    """
    Project camera-frame 3D points into pixel coordinates.

    Args:
        K: Intrinsic camera matrix (3x3).
        points_cam: 3D points in camera coordinates (N, 3).

    Returns:
        Pixel coordinates (N, 2). Depths are clamped to a small positive value
        so points behind the camera produce large, finite residuals.
    """
    points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
    z = np.maximum(points_cam[:, 2], MIN_PROJECTION_DEPTH)
    u = K[0, 0] * points_cam[:, 0] / z + K[0, 1] * points_cam[:, 1] / z + K[0, 2]
    v = K[1, 1] * points_cam[:, 1] / z + K[1, 2]
    return np.stack([u, v], axis=1)


def pixels_to_normalized(K: np.ndarray, pixels: np.ndarray) -> np.ndarray:
    """Convert pixel coordinates (N, 2) to normalized image coordinates (N, 2)."""
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    ones = np.ones((pixels.shape[0], 1))
    rays = np.hstack([pixels, ones]) @ np.linalg.inv(K).T
    return rays[:, :2] / rays[:, 2:3]


def backproject(K: np.ndarray, pixels: np.ndarray, depth: np.ndarray) -> np.ndarray:
    """
    Lift pixels to 3D camera-frame points at the given depths (z values).

    Args:
        K: Intrinsic camera matrix (3x3).
        pixels: Pixel coordinates (N, 2).
        depth: Depth along the optical axis (N,).

    Returns:
        3D points (N, 3).
    """
    normalized = pixels_to_normalized(K, pixels)
    depth = np.asarray(depth, dtype=np.float64).reshape(-1, 1)
    return np.hstack([normalized * depth, depth])


__all__ = ["project_points", "pixels_to_normalized", "backproject", "MIN_PROJECTION_DEPTH"]
