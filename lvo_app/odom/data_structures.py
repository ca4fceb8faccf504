"""
Shared core data structures for the odometry pipeline.

These containers are used across:
- keypoint tracking and depth association
- correspondence matching and frame-to-frame estimation
- window selection and the pose-graph backend

Tracks live in a single arena addressed by their ID; every (camera, frame)
keeps index arrays into that arena rather than owning track records.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass
class CameraRig:
    """Calibrated, rigidly mounted cameras plus the range scanner mounting."""

    # Intrinsic matrices (3x3), one per camera.
    intrinsics: List[np.ndarray]
    # T_cam_ref (4x4): maps reference-camera coordinates into each camera.
    extrinsics: List[np.ndarray]
    # T_ref_scan (4x4): maps scanner coordinates into the reference camera.
    T_ref_scan: np.ndarray
    # (width, height) in pixels, shared by all cameras.
    image_size: Tuple[int, int]

    @property
    def num_cams(self) -> int:
        return len(self.intrinsics)

    def K(self, cam: int) -> np.ndarray:
        return self.intrinsics[cam]

    def T_cam_scan(self, cam: int) -> np.ndarray:
        return self.extrinsics[cam] @ self.T_ref_scan


@dataclass
class KeypointTrack:
    """One persistent scene-point identity."""

    id: int
    born_frame: int
    born_camera: int
    # Latest descriptor (D,), refreshed whenever the track is re-described.
    descriptor: np.ndarray
    num_observations: int = 0
    last_frame: int = -1


@dataclass
class FrameObservations:
    """
    Tracked keypoints of one camera at one frame.

    Rows of every array are aligned: row i is track ``ids[i]``.
    """

    camera: int
    frame: int
    # (N,) int64 track IDs.
    ids: np.ndarray
    # (N, 2) float32 pixel coordinates.
    pixels: np.ndarray
    # (N, D) descriptors, uint8 (ORB) or float32 (SIFT).
    descriptors: np.ndarray
    # (N, 3) float64 camera-frame points; NaN rows have no depth.
    depth: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))

    def __post_init__(self) -> None:
        if self.depth.shape[0] != len(self.ids):
            self.depth = np.full((len(self.ids), 3), np.nan)

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def has_depth(self) -> np.ndarray:
        return np.all(np.isfinite(self.depth), axis=1)

    def subset(self, mask: np.ndarray) -> "FrameObservations":
        return FrameObservations(
            camera=self.camera,
            frame=self.frame,
            ids=self.ids[mask],
            pixels=self.pixels[mask],
            descriptors=self.descriptors[mask],
            depth=self.depth[mask],
        )

    @classmethod
    def empty(cls, camera: int, frame: int, descriptor_size: int, dtype=np.uint8) -> "FrameObservations":
        return cls(
            camera=camera,
            frame=frame,
            ids=np.zeros((0,), dtype=np.int64),
            pixels=np.zeros((0, 2), dtype=np.float32),
            descriptors=np.zeros((0, descriptor_size), dtype=dtype),
        )


class TrackArena:
    """
    Owner of all keypoint tracks and of the per-(camera, frame) observations.

    The ID counter is monotonic and never reused; allocation is serialized
    by a lock so detection may run per camera in parallel.
    """

    def __init__(self):
        self.tracks: Dict[int, KeypointTrack] = {}
        self.next_id = 0
        self._observations: Dict[Tuple[int, int], FrameObservations] = {}
        self._lock = threading.Lock()

    def allocate(self, camera: int, frame: int, descriptors: np.ndarray) -> np.ndarray:
        """
        Allocate one new track per descriptor row.

        Returns:
            (N,) int64 array of fresh, consecutive IDs.
        """
        n = len(descriptors)
        with self._lock:
            ids = np.arange(self.next_id, self.next_id + n, dtype=np.int64)
            self.next_id += n
        for track_id, desc in zip(ids, descriptors):
            self.tracks[int(track_id)] = KeypointTrack(
                id=int(track_id),
                born_frame=frame,
                born_camera=camera,
                descriptor=np.array(desc),
            )
        return ids

    def observations(self, camera: int, frame: int) -> Optional[FrameObservations]:
        return self._observations.get((camera, frame))

    def commit(self, obs: FrameObservations) -> None:
        """Store the final observations of a (camera, frame) and update track records."""
        self._observations[(obs.camera, obs.frame)] = obs
        for track_id, desc in zip(obs.ids, obs.descriptors):
            track = self.tracks[int(track_id)]
            track.num_observations += 1
            track.last_frame = max(track.last_frame, obs.frame)
            track.descriptor = desc

    def forget_before(self, frame: int) -> None:
        """Drop observations older than ``frame`` and tracks last seen before it."""
        for key in [k for k in self._observations if k[1] < frame]:
            del self._observations[key]
        for track_id in [i for i, t in self.tracks.items() if t.last_frame < frame and t.born_frame < frame]:
            del self.tracks[track_id]

    def frames(self) -> List[Tuple[int, int]]:
        return sorted(self._observations)

    def summary(self, frame: int) -> Dict[str, object]:
        """
        Statistics of the tracks seen at ``frame``.

        Returns:
            Dictionary with the live track count, the tracks born at
            ``frame`` per camera, and the mean and longest observation
            counts of the live tracks.
        """
        live = [t for t in self.tracks.values() if t.last_frame == frame]
        born: Dict[int, int] = {}
        for t in live:
            if t.born_frame == frame:
                born[t.born_camera] = born.get(t.born_camera, 0) + 1
        lengths = [t.num_observations for t in live]
        return {
            "live": len(live),
            "born": born,
            "mean_observations": float(np.mean(lengths)) if lengths else 0.0,
            "max_observations": max(lengths, default=0),
        }


class ResidualKind(Enum):
    """Which endpoints of a correspondence carry range-scan depth."""

    POINT_TO_POINT = "3d-3d"
    REF_DEPTH = "3d-2d"
    QUERY_DEPTH = "2d-3d"
    EPIPOLAR = "2d-2d"

    @classmethod
    def classify(cls, query_has_depth: bool, ref_has_depth: bool) -> "ResidualKind":
        if query_has_depth and ref_has_depth:
            return cls.POINT_TO_POINT
        if ref_has_depth:
            return cls.REF_DEPTH
        if query_has_depth:
            return cls.QUERY_DEPTH
        return cls.EPIPOLAR


@dataclass
class Correspondence:
    """
    Two observations of the same track: the query (current) frame and the
    reference (older) frame. Points are present exactly when ``kind`` says so.
    """

    track_id: int
    kind: ResidualKind
    query_camera: int
    ref_camera: int
    query_index: int
    ref_index: int
    query_px: np.ndarray
    ref_px: np.ndarray
    query_point: Optional[np.ndarray] = None
    ref_point: Optional[np.ndarray] = None


@dataclass
class PoseEdge:
    """Relative-pose constraint between two frames for the pose-graph backend."""

    ref_frame: int
    query_frame: int
    # T_ref_query as [rvec, t].
    pose: np.ndarray
    # Standard deviations per parameter (6,).
    sigma: np.ndarray
    num_inliers: int = 0

    @property
    def lookback(self) -> int:
        return self.query_frame - self.ref_frame


@dataclass
class OdometryState:
    """
    Mutable state of one run, threaded through the pipeline components.

    dead_reckoning holds T_world_frame built only from accepted one-frame
    edges; absolute holds the output trajectory (backend-refined where
    available).
    """

    arena: TrackArena
    dead_reckoning: Dict[int, np.ndarray] = field(default_factory=dict)
    absolute: Dict[int, np.ndarray] = field(default_factory=dict)
    edges: List[PoseEdge] = field(default_factory=list)


__all__ = [
    "CameraRig",
    "KeypointTrack",
    "FrameObservations",
    "TrackArena",
    "ResidualKind",
    "Correspondence",
    "PoseEdge",
    "OdometryState",
]
