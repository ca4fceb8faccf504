"""
Range-scan projection into camera images and keypoint depth association.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from lvo_app.geometry.projection import backproject, project_points
from lvo_app.geometry.se3 import inv_T, transform_points
from lvo_app.lidar.scan_cache import ScanEntry
from lvo_app.odom.data_structures import CameraRig


@dataclass
class ScanProjection:
    """Scan points visible in one camera."""

    camera: int
    # (M, 2) pixel coordinates.
    pixels: np.ndarray
    # (M, 3) points in camera coordinates.
    points_cam: np.ndarray
    # (M,) indices into the scan's point array.
    scan_indices: np.ndarray
    # 2D index over ``pixels``.
    tree: Optional[cKDTree]


def project_scan_to_camera(
    points: np.ndarray,
    rig: CameraRig,
    cam: int,
    min_depth: float = 0.5,
) -> ScanProjection:
    """
    Project scanner points into a camera image.

    Args:
        points: Scan points in scanner coordinates (N, 3).
        rig: Camera rig calibration.
        cam: Camera index.
        min_depth: Points closer than this along the optical axis are dropped.

    Returns:
        ScanProjection restricted to points in front of the camera and inside
        the image bounds.
    """
    points_cam = transform_points(rig.T_cam_scan(cam), points)
    in_front = points_cam[:, 2] > min_depth
    pixels = project_points(rig.K(cam), points_cam[in_front])

    w, h = rig.image_size
    inside = (pixels[:, 0] >= 0) & (pixels[:, 0] < w) & (pixels[:, 1] >= 0) & (pixels[:, 1] < h)

    scan_indices = np.nonzero(in_front)[0][inside]
    pixels = pixels[inside]
    tree = cKDTree(pixels) if len(pixels) > 0 else None

    return ScanProjection(
        camera=cam,
        pixels=pixels,
        points_cam=points_cam[scan_indices],
        scan_indices=scan_indices,
        tree=tree,
    )


def scan_projection(entry: ScanEntry, rig: CameraRig, cam: int, min_depth: float = 0.5) -> ScanProjection:
    """Projection of a cached scan into ``cam``, computed once per entry and camera."""
    proj = entry.projections.get(cam)
    if proj is None:
        proj = project_scan_to_camera(entry.points, rig, cam, min_depth=min_depth)
        entry.projections[cam] = proj
    return proj


def associate_depth(
    projection: ScanProjection,
    keypoints_px: np.ndarray,
    K: np.ndarray,
    max_distance_px: float = 5.0,
    neighbors: int = 3,
    scan: Optional[ScanEntry] = None,
    T_scan_cam: Optional[np.ndarray] = None,
    max_surface_distance: Optional[float] = None,
) -> np.ndarray:
    """
    Interpolate a 3D point for every keypoint from nearby projected scan points.

    The depth is the inverse-pixel-distance weighted mean of the ``neighbors``
    nearest projected points within ``max_distance_px``; the 3D point is the
    keypoint's viewing ray scaled to that depth. A projected point that
    coincides with the keypoint is used as is.

    Args:
        projection: Scan projected into the keypoints' camera.
        keypoints_px: Keypoint pixel coordinates (N, 2).
        K: Intrinsic matrix of that camera (3x3).
        max_distance_px: Association radius in pixels.
        neighbors: Maximum number of projected points interpolated.
        scan: Cached scan, required for the surface check.
        T_scan_cam: Camera-to-scanner transform, required for the surface check.
        max_surface_distance: When set, interpolated points farther than this
            from every real scan point are discarded.

    Returns:
        (N, 3) camera-frame points; rows without depth are NaN.
    """
    keypoints_px = np.asarray(keypoints_px, dtype=np.float64).reshape(-1, 2)
    n = len(keypoints_px)
    depth_points = np.full((n, 3), np.nan)
    if n == 0 or projection.tree is None:
        return depth_points

    k = int(min(max(neighbors, 1), len(projection.pixels)))
    dist, idx = projection.tree.query(keypoints_px, k=k, distance_upper_bound=max_distance_px)
    dist = dist.reshape(n, k)
    idx = idx.reshape(n, k)

    # cKDTree marks missing neighbors with an infinite distance
    valid = np.isfinite(dist) & (dist <= max_distance_px)
    has_any = valid.any(axis=1)
    if not np.any(has_any):
        return depth_points

    safe_idx = np.where(valid, idx, 0)
    z = projection.points_cam[safe_idx, 2]

    exact = valid & (dist < 1e-9)
    weights = np.where(valid, 1.0 / np.maximum(dist, 1e-9), 0.0)
    weights = np.where(exact.any(axis=1, keepdims=True), exact.astype(np.float64), weights)

    rows = np.nonzero(has_any)[0]
    interp_z = np.sum(weights[rows] * z[rows], axis=1) / np.sum(weights[rows], axis=1)
    depth_points[rows] = backproject(K, keypoints_px[rows], interp_z)

    if max_surface_distance is not None and scan is not None and T_scan_cam is not None and len(scan.points) > 0:
        in_scan = transform_points(T_scan_cam, depth_points[rows])
        surface_dist, _ = scan.nearest(in_scan)
        depth_points[rows[surface_dist > max_surface_distance]] = np.nan

    return depth_points


def associate_frame_depth(
    entry: ScanEntry,
    rig: CameraRig,
    cam: int,
    keypoints_px: np.ndarray,
    max_distance_px: float = 5.0,
    neighbors: int = 3,
    min_depth: float = 0.5,
    max_surface_distance: Optional[float] = None,
) -> np.ndarray:
    """Project a cached scan into ``cam`` and associate depth to its keypoints."""
    proj = scan_projection(entry, rig, cam, min_depth=min_depth)
    return associate_depth(
        proj,
        keypoints_px,
        rig.K(cam),
        max_distance_px=max_distance_px,
        neighbors=neighbors,
        scan=entry,
        T_scan_cam=inv_T(rig.T_cam_scan(cam)),
        max_surface_distance=max_surface_distance,
    )


__all__ = [
    "ScanProjection",
    "project_scan_to_camera",
    "scan_projection",
    "associate_depth",
    "associate_frame_depth",
]
