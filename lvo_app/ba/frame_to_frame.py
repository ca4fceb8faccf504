"""
Frame-to-frame relative pose estimation from mixed 2D/3D correspondences.

All correspondences share one 6-parameter unknown, T_ref_query packed as
[rvec, t]. Each contributes the residual its ResidualKind calls for:

- POINT_TO_POINT: 3D point-to-point distance (metres)
- REF_DEPTH:      reference 3D point reprojected into the query image (pixels)
- QUERY_DEPTH:    query 3D point reprojected into the reference image (pixels)
- EPIPOLAR:       Sampson distance to the epipolar line (pixels)

Residuals are divided by their kind's inlier threshold so a single robust
loss applies to all of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from lvo_app.geometry.essential import compute_essential_matrix, sampson_distance
from lvo_app.geometry.projection import pixels_to_normalized, project_points
from lvo_app.geometry.se3 import inv_T, pose_to_matrix, transform_points
from lvo_app.lidar.scan_cache import ScanEntry
from lvo_app.odom.config import EstimatorConfig
from lvo_app.odom.data_structures import CameraRig, Correspondence, ResidualKind


@dataclass
class ResidualGroup:
    """Correspondences of one kind between one (query camera, ref camera) pair, stacked."""

    kind: ResidualKind
    query_camera: int
    ref_camera: int
    # Rows of the correspondence list this group was built from.
    indices: np.ndarray
    query_px: np.ndarray
    ref_px: np.ndarray
    query_points: Optional[np.ndarray] = None
    ref_points: Optional[np.ndarray] = None
    # Cached normalized coordinates for the epipolar term.
    query_norm: Optional[np.ndarray] = None
    ref_norm: Optional[np.ndarray] = None


@dataclass
class PoseEstimate:
    """Result of one frame-to-frame estimation."""

    # Refined T_ref_query as [rvec, t].
    pose: np.ndarray
    inliers: List[Correspondence] = field(default_factory=list)
    # Residual kind per inlier, aligned with ``inliers``.
    kinds: List[ResidualKind] = field(default_factory=list)
    # Final unscaled residual norm per input correspondence.
    residual_norms: np.ndarray = field(default_factory=lambda: np.zeros((0,)))
    inlier_mask: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=bool))
    cost: float = 0.0
    nfev: int = 0
    status: int = 0

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)

    def kind_counts(self) -> Dict[ResidualKind, int]:
        counts = {kind: 0 for kind in ResidualKind}
        for kind in self.kinds:
            counts[kind] += 1
        return counts


def group_correspondences(
    correspondences: List[Correspondence],
    rig: CameraRig,
    indices: Optional[np.ndarray] = None,
) -> List[ResidualGroup]:
    """
    Stack correspondences into per-(kind, camera pair) arrays.

    Args:
        correspondences: Full correspondence list.
        rig: Camera rig (intrinsics for the epipolar normalization).
        indices: Optional subset of rows to use.

    Returns:
        List of ResidualGroup objects.
    """
    if indices is None:
        indices = np.arange(len(correspondences))

    buckets: Dict[Tuple[ResidualKind, int, int], List[int]] = {}
    for i in indices:
        c = correspondences[int(i)]
        buckets.setdefault((c.kind, c.query_camera, c.ref_camera), []).append(int(i))

    groups = []
    for (kind, cq, cr), rows in buckets.items():
        members = [correspondences[i] for i in rows]
        group = ResidualGroup(
            kind=kind,
            query_camera=cq,
            ref_camera=cr,
            indices=np.array(rows, dtype=int),
            query_px=np.array([c.query_px for c in members], dtype=np.float64),
            ref_px=np.array([c.ref_px for c in members], dtype=np.float64),
        )
        if kind in (ResidualKind.POINT_TO_POINT, ResidualKind.QUERY_DEPTH):
            group.query_points = np.array([c.query_point for c in members], dtype=np.float64)
        if kind in (ResidualKind.POINT_TO_POINT, ResidualKind.REF_DEPTH):
            group.ref_points = np.array([c.ref_point for c in members], dtype=np.float64)
        if kind == ResidualKind.EPIPOLAR:
            group.query_norm = pixels_to_normalized(rig.K(cq), group.query_px)
            group.ref_norm = pixels_to_normalized(rig.K(cr), group.ref_px)
        groups.append(group)

    return groups


def group_residuals(T: np.ndarray, group: ResidualGroup, rig: CameraRig) -> np.ndarray:
    """
    Raw (unscaled) residuals of one group under the relative pose T_ref_query.

    Returns:
        (n, 3) for POINT_TO_POINT, (n, 2) for the reprojection kinds and
        (n, 1) for EPIPOLAR.
    """
    # T_ref_query acts on reference-camera coordinates; move it into the
    # pair's camera frames
    T_eff = rig.extrinsics[group.ref_camera] @ T @ inv_T(rig.extrinsics[group.query_camera])
    R = T_eff[:3, :3]
    t = T_eff[:3, 3]

    if group.kind == ResidualKind.POINT_TO_POINT:
        return group.query_points @ R.T + t - group.ref_points

    if group.kind == ResidualKind.REF_DEPTH:
        in_query = (group.ref_points - t) @ R
        return project_points(rig.K(group.query_camera), in_query) - group.query_px

    if group.kind == ResidualKind.QUERY_DEPTH:
        in_ref = group.query_points @ R.T + t
        return project_points(rig.K(group.ref_camera), in_ref) - group.ref_px

    E = compute_essential_matrix(R, t)
    focal = rig.K(group.ref_camera)[0, 0]
    return (focal * sampson_distance(E, group.query_norm, group.ref_norm)).reshape(-1, 1)


def frame_to_frame_residuals(
    params: np.ndarray,
    groups: List[ResidualGroup],
    rig: CameraRig,
    scales: Dict[ResidualKind, float],
    icp_source: Optional[np.ndarray] = None,
    icp_target: Optional[np.ndarray] = None,
    icp_scale: float = 1.0,
) -> np.ndarray:
    """
    Compute the stacked, threshold-normalized residual vector.

    Args:
        params: Pose vector [rvec, t] of T_ref_query.
        groups: Residual groups from :func:`group_correspondences`.
        rig: Camera rig.
        scales: Divisor per residual kind.
        icp_source: Optional query points (M, 3), reference-camera coordinates
            of the query frame.
        icp_target: Their fixed nearest scan points (M, 3) in reference-camera
            coordinates of the reference frame.
        icp_scale: Divisor of the point-to-scan residuals.

    Returns:
        1D residual array.
    """
    T = pose_to_matrix(params)
    residuals = [group_residuals(T, g, rig).ravel() / scales[g.kind] for g in groups]

    if icp_source is not None and len(icp_source) > 0:
        residuals.append((transform_points(T, icp_source) - icp_target).ravel() / icp_scale)

    if not residuals:
        return np.zeros((0,), dtype=np.float64)
    return np.concatenate(residuals)


class FrameToFrameEstimator:
    """Robust joint estimation of one relative pose from all residual kinds."""

    def __init__(self, rig: CameraRig, config: EstimatorConfig):
        self.rig = rig
        self.cfg = config

    def threshold(self, kind: ResidualKind) -> float:
        if kind == ResidualKind.POINT_TO_POINT:
            return self.cfg.threshold_3d
        if kind == ResidualKind.EPIPOLAR:
            return self.cfg.threshold_epipolar_px
        return self.cfg.threshold_reprojection_px

    def residual_norms(self, pose: np.ndarray, correspondences: List[Correspondence]) -> np.ndarray:
        """Unscaled residual magnitude of every correspondence under ``pose``."""
        norms = np.zeros(len(correspondences))
        T = pose_to_matrix(pose)
        for g in group_correspondences(correspondences, self.rig):
            norms[g.indices] = np.linalg.norm(group_residuals(T, g, self.rig), axis=1)
        return norms

    def estimate(
        self,
        correspondences: List[Correspondence],
        prior_pose: np.ndarray,
        ref_scan: Optional[ScanEntry] = None,
        query_points: Optional[np.ndarray] = None,
    ) -> PoseEstimate:
        """
        Refine the relative pose between a query and a reference frame.

        Args:
            correspondences: Tagged correspondences (query = current frame).
            prior_pose: Initial T_ref_query as [rvec, t].
            ref_scan: Reference frame's cached scan, used by the optional
                point-to-scan term.
            query_points: Query-frame scan points in reference-camera
                coordinates, used by the optional point-to-scan term.

        Returns:
            PoseEstimate with the refined pose and its inlier correspondences.
        """
        x = np.asarray(prior_pose, dtype=np.float64).reshape(6).copy()
        scales = {kind: self.threshold(kind) for kind in ResidualKind}

        icp_source, icp_target = None, None
        if self.cfg.enable_icp and self.cfg.icp_weight > 0 and ref_scan is not None and query_points is not None:
            icp_source, icp_target = self._associate_scan(x, ref_scan, query_points)

        n = len(correspondences)
        has_icp = icp_source is not None and len(icp_source) > 0
        if n == 0 and not has_icp:
            return PoseEstimate(pose=x)

        icp_scale = self.cfg.threshold_3d / self.cfg.icp_weight if has_icp else 1.0
        active = np.arange(n)
        result = None
        inlier_mask = np.zeros(n, dtype=bool)
        norms = np.zeros(n)

        for iteration in range(self.cfg.outlier_passes + 1):
            groups = group_correspondences(correspondences, self.rig, active)
            result = least_squares(
                frame_to_frame_residuals,
                x,
                args=(groups, self.rig, scales, icp_source, icp_target, icp_scale),
                method="trf",
                loss=self.cfg.loss,
                f_scale=1.0,
                max_nfev=self.cfg.max_nfev,
            )
            x = result.x

            norms = self.residual_norms(x, correspondences)
            limits = np.array([scales[c.kind] for c in correspondences])
            inlier_mask = norms <= limits

            if self.cfg.verbose:
                print(
                    f"[f2f] Pass {iteration}: {len(active)} active, {int(inlier_mask.sum())} inliers, "
                    f"status={result.status}, nfev={result.nfev}, cost={result.cost:.3e}"
                )

            next_active = np.nonzero(inlier_mask)[0]
            if len(next_active) < max(self.cfg.min_inliers, 1) or np.array_equal(next_active, active):
                break
            active = next_active

        inliers = [c for c, ok in zip(correspondences, inlier_mask) if ok]
        return PoseEstimate(
            pose=x,
            inliers=inliers,
            kinds=[c.kind for c in inliers],
            residual_norms=norms,
            inlier_mask=inlier_mask,
            cost=float(result.cost),
            nfev=int(result.nfev),
            status=int(result.status),
        )

    def _associate_scan(
        self,
        prior_pose: np.ndarray,
        ref_scan: ScanEntry,
        query_points: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Fix nearest-scan-point targets for the query points under the prior."""
        if len(ref_scan.points) == 0 or len(query_points) == 0:
            return np.zeros((0, 3)), np.zeros((0, 3))

        T_ref_scan = self.rig.T_ref_scan
        predicted = transform_points(pose_to_matrix(prior_pose), query_points)
        dist, nearest = ref_scan.nearest(transform_points(inv_T(T_ref_scan), predicted))
        close = dist <= self.cfg.icp_max_distance

        if self.cfg.verbose:
            print(f"[f2f] Point-to-scan: {int(close.sum())}/{len(query_points)} associated")

        return query_points[close], transform_points(T_ref_scan, nearest[close])


__all__ = [
    "ResidualGroup",
    "PoseEstimate",
    "group_correspondences",
    "group_residuals",
    "frame_to_frame_residuals",
    "FrameToFrameEstimator",
]
