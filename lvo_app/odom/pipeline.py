"""
Per-frame lidar-visual odometry driver.

For each synchronized frame:
  1) fetch the frame's scan from the cache
  2) track and detect keypoints in every camera
  3) attach scan depth to the keypoints
  4) select reference frames and emit pose-graph edges
  5) update the absolute trajectory, refining it in batches
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from lvo_app.ba.frame_to_frame import FrameToFrameEstimator
from lvo_app.ba.pose_graph import PoseGraph
from lvo_app.features.tracking import KeypointTracker
from lvo_app.geometry.se3 import inv_T
from lvo_app.io.kitti_io import append_pose, write_poses
from lvo_app.lidar.depth import associate_frame_depth
from lvo_app.lidar.scan_cache import ScanCache
from lvo_app.odom.config import OdometryConfig, validate_config
from lvo_app.odom.data_structures import CameraRig, FrameObservations, OdometryState, PoseEdge, TrackArena
from lvo_app.odom.window import WindowReport, WindowSelector


@dataclass
class FrameResult:
    frame: int
    # Absolute pose T_world_frame (4x4) at the time the frame was processed.
    pose: np.ndarray
    edges: List[PoseEdge] = field(default_factory=list)
    report: Optional[WindowReport] = None
    num_tracks: int = 0
    num_depth: int = 0
    elapsed: float = 0.0


class OdometryPipeline:
    """
    Wires the scan cache, tracker, depth association, window selector and
    pose-graph backend together.

    ``image_loader(frame)`` returns one image per rig camera;
    ``scan_loader(frame)`` returns an (N, >=3) array of scanner points.
    Loader errors propagate and end the run.
    """

    def __init__(
        self,
        rig: CameraRig,
        config: OdometryConfig,
        image_loader: Callable[[int], Sequence[np.ndarray]],
        scan_loader: Callable[[int], np.ndarray],
        tracker=None,
        backend=None,
        verbose: bool = False,
    ):
        validate_config(config)
        self.rig = rig
        self.cfg = config
        self.image_loader = image_loader
        self.verbose = verbose

        self.state = OdometryState(arena=TrackArena())
        self.scan_cache = ScanCache(
            scan_loader,
            capacity=config.cache_capacity,
            voxel_size=config.voxel_size,
            verbose=verbose,
        )
        self.tracker = tracker if tracker is not None else KeypointTracker(config.tracker, self.state.arena, verbose)
        self.backend = backend if backend is not None else PoseGraph(config.backend)
        self.estimator = FrameToFrameEstimator(rig, config.estimator)
        self.window = WindowSelector(
            rig,
            config.window,
            self.estimator,
            scan_cache=self.scan_cache,
            backend=self.backend,
        )

        self.output_path: Optional[str] = None
        self._last_frame: Optional[int] = None
        self._processed = 0

    # ========================================
    # Per frame
    # ========================================

    def process_frame(self, frame: int) -> FrameResult:
        """
        Run one synchronized frame through the pipeline.

        Frames must be consecutive; the first processed frame anchors the
        world frame at the identity.
        """
        if self._last_frame is not None and frame != self._last_frame + 1:
            raise ValueError(f"Frames must be consecutive: got {frame} after {self._last_frame}")

        start = time.perf_counter()

        entry = self.scan_cache.get(frame)
        images = self.image_loader(frame)
        if len(images) != self.rig.num_cams:
            raise ValueError(f"Expected {self.rig.num_cams} images for frame {frame}, got {len(images)}")

        observations = self.tracker.track_and_detect(frame, images)
        self._attach_depth(entry, observations)

        state = self.state
        if self._last_frame is None:
            identity = np.eye(4)
            state.dead_reckoning[frame] = identity
            state.absolute[frame] = identity.copy()
            self.backend.add_prior(frame, identity)
            report = WindowReport(frame=frame, stop_reason="first frame")
        else:
            prev = self._last_frame
            report = self.window.select(state, frame)
            step = inv_T(state.dead_reckoning[prev]) @ state.dead_reckoning[frame]
            state.absolute[frame] = state.absolute[prev] @ step

        self._last_frame = frame
        self._processed += 1

        every = self.cfg.backend.optimize_every
        if every > 0 and self._processed % every == 0:
            # rewrites the whole file, this frame included
            self.refine()
        elif self.output_path is not None:
            append_pose(self.output_path, state.absolute[frame])

        result = FrameResult(
            frame=frame,
            pose=state.absolute[frame].copy(),
            edges=list(report.edges),
            report=report,
            num_tracks=sum(len(obs) for obs in observations),
            num_depth=sum(int(obs.has_depth.sum()) for obs in observations),
            elapsed=time.perf_counter() - start,
        )

        if self.verbose:
            print(
                f"[lvo] frame {frame}: {result.num_tracks} tracks ({result.num_depth} with depth), "
                f"{len(result.edges)} edges, stop: {report.stop_reason}, {result.elapsed:.3f}s"
            )

        return result

    def _attach_depth(self, entry, observations: List[FrameObservations]) -> None:
        # observations are the arena's committed objects, so depth lands there too
        depth_cfg = self.cfg.depth
        for obs in observations:
            obs.depth = associate_frame_depth(
                entry,
                self.rig,
                obs.camera,
                obs.pixels,
                max_distance_px=depth_cfg.max_distance_px,
                neighbors=depth_cfg.neighbors,
                min_depth=depth_cfg.min_depth,
                max_surface_distance=depth_cfg.max_surface_distance,
            )
            if self.verbose:
                print(f"[depth] cam {obs.camera} frame {obs.frame}: {int(obs.has_depth.sum())}/{len(obs)} with depth")

    # ========================================
    # Batch refinement and output
    # ========================================

    def refine(self) -> Dict[int, np.ndarray]:
        """Run the backend and adopt its poses as the absolute trajectory."""
        refined = self.backend.optimize(window=self.cfg.backend.window or None)
        self.state.absolute.update({frame: np.array(T) for frame, T in refined.items()})
        if self.output_path is not None:
            write_poses(self.output_path, self.trajectory())
        return refined

    def finish(self) -> List[np.ndarray]:
        """Final refinement; returns the trajectory and writes it when an output path is set."""
        if self._processed > 0:
            self.refine()
        return self.trajectory()

    def trajectory(self) -> List[np.ndarray]:
        return [self.state.absolute[f] for f in sorted(self.state.absolute)]

    def run(
        self,
        frames: Iterable[int],
        output_path: Optional[str] = None,
        on_frame: Optional[Callable[[FrameResult], None]] = None,
    ) -> List[FrameResult]:
        """
        Process ``frames`` in order, then refine and write the results file.

        Args:
            frames: Consecutive frame indices.
            output_path: KITTI pose file; one line is appended per frame and
                the whole file is rewritten after every refinement.
            on_frame: Called with each FrameResult as it is produced.

        Returns:
            List of FrameResult, one per frame.
        """
        self.output_path = output_path
        if output_path is not None:
            write_poses(output_path, [])
        results = []
        for frame in frames:
            result = self.process_frame(frame)
            results.append(result)
            if on_frame is not None:
                on_frame(result)
        self.finish()
        return results


__all__ = ["FrameResult", "OdometryPipeline"]
