"""
Adaptive look-back selection of reference frames.

For the current frame the selector walks the look-back distance d = 1, 2, ...
and for each d:
  1) predicts T_{f-d, f} from the dead-reckoning trajectory
  2) gathers correspondences with frame f-d (stops when too few, d > 1)
  3) refines the prediction with the frame-to-frame estimator
  4) stops when the refinement disagrees with the prediction (d > 1)
  5) otherwise emits a pose-graph edge; d = 1 also extends dead reckoning

The d = 1 estimate is never rejected by the agreement check.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from lvo_app.ba.frame_to_frame import FrameToFrameEstimator
from lvo_app.features.matching import collect_correspondences
from lvo_app.geometry.se3 import inv_T, matrix_to_pose, pose_discrepancy, pose_to_matrix, transform_points
from lvo_app.lidar.scan_cache import ScanCache
from lvo_app.odom.config import WindowConfig
from lvo_app.odom.data_structures import CameraRig, OdometryState, PoseEdge

STOP_CAP = "lookback cap"
STOP_FEW_CORRESPONDENCES = "insufficient correspondences"
STOP_DISAGREEMENT = "disagrees with dead reckoning"


@dataclass
class LookbackAttempt:
    lookback: int
    num_correspondences: int
    num_inliers: int = 0
    translation_error: float = 0.0
    rotation_error: float = 0.0
    accepted: bool = False


@dataclass
class WindowReport:
    """What happened while selecting reference frames for one frame."""

    frame: int
    edges: List[PoseEdge] = field(default_factory=list)
    attempts: List[LookbackAttempt] = field(default_factory=list)
    stop_reason: str = STOP_CAP


def _sigma_vector(sigma: List[float]) -> np.ndarray:
    rot, trans = sigma
    return np.array([rot, rot, rot, trans, trans, trans], dtype=np.float64)


class WindowSelector:
    """Chooses look-back pairings, validates them and emits pose-graph edges."""

    def __init__(
        self,
        rig: CameraRig,
        config: WindowConfig,
        estimator: FrameToFrameEstimator,
        scan_cache: Optional[ScanCache] = None,
        backend=None,
    ):
        self.rig = rig
        self.cfg = config
        self.estimator = estimator
        self.scan_cache = scan_cache
        self.backend = backend

    def predict(self, state: OdometryState, frame: int, lookback: int) -> np.ndarray:
        """
        Predicted T_{frame-lookback, frame} from dead reckoning.

        For lookback 1 this is a constant-velocity extrapolation of the two
        latest dead-reckoning poses, or the configured initial guess when
        fewer than two exist. For longer look-backs it is the dead-reckoning
        displacement between the two frames (frame must already be reckoned).
        """
        dr = state.dead_reckoning
        if lookback == 1:
            if frame - 2 in dr and frame - 1 in dr:
                return inv_T(dr[frame - 2]) @ dr[frame - 1]
            return pose_to_matrix(self.cfg.initial_guess)
        return inv_T(dr[frame - lookback]) @ dr[frame]

    def select(self, state: OdometryState, frame: int) -> WindowReport:
        """
        Run the look-back loop for ``frame``.

        Side effects: extends ``state.dead_reckoning`` with ``frame``, appends
        accepted edges to ``state.edges`` and forwards them to the backend.
        """
        report = WindowReport(frame=frame)
        icp = self.estimator.cfg.enable_icp and self.scan_cache is not None
        query_points = None
        if icp:
            stride = max(self.estimator.cfg.icp_stride, 1)
            points = self.scan_cache.get(frame).points[::stride]
            query_points = transform_points(self.rig.T_ref_scan, points)

        for d in range(1, self.cfg.max_lookback + 1):
            ref = frame - d
            if ref not in state.dead_reckoning:
                break

            T_pred = self.predict(state, frame, d)
            correspondences = collect_correspondences(
                state.arena,
                frame,
                ref,
                self.rig.num_cams,
                across_cameras=self.cfg.match_across_cameras,
            )
            attempt = LookbackAttempt(lookback=d, num_correspondences=len(correspondences))
            report.attempts.append(attempt)

            if d > 1 and len(correspondences) < self.cfg.min_correspondences:
                report.stop_reason = STOP_FEW_CORRESPONDENCES
                self._log(frame, attempt, report.stop_reason)
                break

            estimate = self.estimator.estimate(
                correspondences,
                matrix_to_pose(T_pred),
                ref_scan=self.scan_cache.get(ref) if icp else None,
                query_points=query_points,
            )
            T_est = pose_to_matrix(estimate.pose)
            attempt.num_inliers = estimate.num_inliers
            attempt.translation_error, attempt.rotation_error = pose_discrepancy(T_pred, T_est)

            if d > 1 and (
                attempt.translation_error > self.cfg.max_translation_discrepancy * d
                or attempt.rotation_error > self.cfg.max_rotation_discrepancy * d
            ):
                report.stop_reason = STOP_DISAGREEMENT
                self._log(frame, attempt, report.stop_reason)
                break

            if d == 1:
                state.dead_reckoning[frame] = state.dead_reckoning[ref] @ T_est

            attempt.accepted = True
            edge = PoseEdge(
                ref_frame=ref,
                query_frame=frame,
                pose=estimate.pose.copy(),
                sigma=_sigma_vector(self.cfg.sigma_immediate if d == 1 else self.cfg.sigma_lookback),
                num_inliers=estimate.num_inliers,
            )
            report.edges.append(edge)
            state.edges.append(edge)
            if self.backend is not None:
                self.backend.add_edge(edge)
            self._log(frame, attempt, "accepted")

        return report

    def _log(self, frame: int, attempt: LookbackAttempt, outcome: str) -> None:
        if not self.cfg.verbose:
            return
        print(
            f"[window] frame {frame} d={attempt.lookback}: "
            f"{attempt.num_correspondences} correspondences, {attempt.num_inliers} inliers, "
            f"dt={attempt.translation_error:.3f} dr={attempt.rotation_error:.4f} -> {outcome}"
        )


__all__ = [
    "LookbackAttempt",
    "WindowReport",
    "WindowSelector",
    "STOP_CAP",
    "STOP_FEW_CORRESPONDENCES",
    "STOP_DISAGREEMENT",
]
