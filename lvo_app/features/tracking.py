"""
Keypoint tracking with persistent IDs across frames and cameras.

Per synchronized frame, every camera:
  1) propagates its previous tracks with pyramidal Lucas-Kanade flow,
     keeping only forward-backward consistent, descriptor-stable points
  2) drops degenerate tracks (out of image, zero motion, non-finite)
  3) merges duplicate tracks that collapsed onto the same pixel
  4) on the detection schedule, adds new corners away from existing tracks
     and pushes them into the other cameras of the same frame
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.spatial import cKDTree

from lvo_app.features.keypoints import (
    create_descriptor_extractor,
    describe_keypoints,
    descriptor_distance,
    detect_keypoints,
    to_gray,
)
from lvo_app.odom.config import TrackerConfig
from lvo_app.odom.data_structures import FrameObservations, TrackArena


class KeypointTracker:
    """Maintains keypoint tracks for every camera of a rig inside a TrackArena."""

    def __init__(
        self,
        config: TrackerConfig,
        arena: TrackArena,
        verbose: bool = False,
    ):
        self.cfg = config
        self.arena = arena
        self.verbose = verbose
        self.extractor = create_descriptor_extractor(config.use_sift)

        self._prev_images: Dict[int, np.ndarray] = {}
        self._prev_frame: Dict[int, int] = {}
        self._lk_params = dict(
            winSize=(config.win_size, config.win_size),
            maxLevel=config.max_level,
            criteria=(cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01),
        )

    # ========================================
    # Driver
    # ========================================

    def track_and_detect(self, frame: int, images: Sequence[np.ndarray]) -> List[FrameObservations]:
        """
        Update all cameras' tracks with the images of one synchronized frame.

        Args:
            frame: Frame index, strictly increasing between calls.
            images: One image per camera.

        Returns:
            The committed observations, one FrameObservations per camera.
        """
        grays = [to_gray(img) for img in images]

        current: List[FrameObservations] = []
        for cam, gray in enumerate(grays):
            obs, prev_pixels = self.track(cam, frame, gray)
            keep = self.remove_degenerate(obs, gray.shape, prev_pixels)
            current.append(self.consolidate(obs.subset(keep)))

        for cam, gray in enumerate(grays):
            if not self._should_detect(cam, frame):
                continue
            before = len(current[cam])
            current[cam] = self.detect(current[cam], gray)
            if self.cfg.cross_propagate and len(current[cam]) > before:
                self.cross_propagate(current, grays, cam, before)

        for obs in current:
            self.arena.commit(obs)

        for cam, gray in enumerate(grays):
            self._prev_images[cam] = gray
            self._prev_frame[cam] = frame

        if self.cfg.history > 0:
            self.arena.forget_before(frame - self.cfg.history + 1)

        if self.verbose:
            stats = self.arena.summary(frame)
            print(
                f"[track] frame {frame}: {stats['live']} live tracks, born per camera {stats['born']}, "
                f"observations mean {stats['mean_observations']:.1f} max {stats['max_observations']}"
            )

        return current

    def _should_detect(self, cam: int, frame: int) -> bool:
        if cam not in self._prev_images:
            return True
        return self.cfg.detect_every > 0 and frame % self.cfg.detect_every == 0

    # ========================================
    # Operations
    # ========================================

    def track(
        self,
        cam: int,
        frame: int,
        gray: np.ndarray,
    ) -> Tuple[FrameObservations, np.ndarray]:
        """
        Propagate the previous frame's tracks of ``cam`` into ``gray``.

        Returns:
            Tuple of (observations, previous_pixels) where previous_pixels
            (N, 2) are the surviving tracks' positions in the previous frame.
        """
        empty = self._empty(cam, frame)
        prev_gray = self._prev_images.get(cam)
        prev = None if prev_gray is None else self.arena.observations(cam, self._prev_frame[cam])
        if prev is None or len(prev) == 0:
            return empty, np.zeros((0, 2), dtype=np.float32)

        ok, p1 = self._flow(prev_gray, gray, prev.pixels)

        described, desc = describe_keypoints(gray, p1[ok], self.extractor)
        rows = np.nonzero(ok)[0][described]
        if len(rows) == 0:
            return empty, np.zeros((0, 2), dtype=np.float32)

        dist = descriptor_distance(desc, prev.descriptors[rows])
        similar = dist <= self.cfg.max_descriptor_distance
        rows = rows[similar]

        obs = FrameObservations(
            camera=cam,
            frame=frame,
            ids=prev.ids[rows].copy(),
            pixels=p1[rows].astype(np.float32),
            descriptors=desc[similar],
        )

        if self.verbose:
            print(f"[track] cam {cam} frame {frame}: {len(prev)} -> {len(obs)} tracked")

        return obs, prev.pixels[rows]

    def remove_degenerate(
        self,
        obs: FrameObservations,
        image_shape: Tuple[int, ...],
        prev_pixels: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Hard geometric filter over tracked observations.

        Args:
            obs: Observations to check.
            image_shape: (H, W) of the image the observations live in.
            prev_pixels: Optional (N, 2) positions in the previous frame;
                tracks that did not move at all are degenerate.

        Returns:
            Boolean keep-mask (N,).
        """
        h, w = image_shape[:2]
        b = self.cfg.border_px
        px = obs.pixels.astype(np.float64)

        keep = np.all(np.isfinite(px), axis=1)
        keep &= (px[:, 0] >= b) & (px[:, 0] < w - b) & (px[:, 1] >= b) & (px[:, 1] < h - b)

        if prev_pixels is not None and len(prev_pixels) == len(px):
            flow = np.linalg.norm(px - prev_pixels.astype(np.float64), axis=1)
            keep &= flow >= self.cfg.zero_flow_px

        return keep

    def consolidate(self, obs: FrameObservations) -> FrameObservations:
        """Merge tracks closer than ``consolidate_px``, keeping the oldest ID."""
        if len(obs) < 2 or self.cfg.consolidate_px <= 0:
            return obs

        pairs = cKDTree(obs.pixels.astype(np.float64)).query_pairs(r=self.cfg.consolidate_px)
        if not pairs:
            return obs

        # IDs are allocated monotonically, so the smaller one is older
        ordered = sorted(
            ((i, j) if obs.ids[i] < obs.ids[j] else (j, i) for i, j in pairs),
            key=lambda p: (obs.ids[p[0]], obs.ids[p[1]]),
        )
        keep = np.ones(len(obs), dtype=bool)
        for older, younger in ordered:
            # a dropped track no longer collides with anything
            if keep[older]:
                keep[younger] = False

        if self.verbose:
            print(f"[track] cam {obs.camera} frame {obs.frame}: merged {int((~keep).sum())} duplicates")

        return obs.subset(keep)

    def detect(self, obs: FrameObservations, gray: np.ndarray) -> FrameObservations:
        """
        Detect new corners away from existing tracks and allocate their IDs.

        Returns:
            ``obs`` with the new tracks appended.
        """
        budget = self.cfg.corner_count - len(obs)
        if budget <= 0:
            return obs

        mask = np.full(gray.shape[:2], 255, dtype=np.uint8)
        radius = max(int(round(self.cfg.min_distance)), 1)
        for x, y in obs.pixels:
            cv2.circle(mask, (int(round(x)), int(round(y))), radius, 0, -1)

        corners = detect_keypoints(
            gray,
            max_corners=budget,
            quality_level=self.cfg.quality_level,
            min_distance=self.cfg.min_distance,
            mask=mask,
        )
        described, desc = describe_keypoints(gray, corners, self.extractor)
        corners = corners[described]

        if len(corners) == 0:
            print(f"[track] Warning: no new features detected in cam {obs.camera} frame {obs.frame}")
            return obs

        ids = self.arena.allocate(obs.camera, obs.frame, desc)

        if self.verbose:
            print(f"[track] cam {obs.camera} frame {obs.frame}: detected {len(ids)} new features")

        return _append(obs, ids, corners, desc)

    def cross_propagate(
        self,
        current: List[FrameObservations],
        grays: Sequence[np.ndarray],
        source_cam: int,
        start: int,
    ) -> None:
        """
        Track the rows ``start:`` of ``current[source_cam]`` into every other
        camera's image of the same frame, appending them there under the same IDs.
        """
        src = current[source_cam]
        new_pixels = src.pixels[start:]
        new_ids = src.ids[start:]
        new_desc = src.descriptors[start:]

        for cam, gray in enumerate(grays):
            if cam == source_cam:
                continue

            ok, p1 = self._flow(grays[source_cam], gray, new_pixels)
            target = current[cam]
            candidates = FrameObservations(
                camera=cam,
                frame=target.frame,
                ids=new_ids,
                pixels=p1.astype(np.float32),
                descriptors=new_desc,
            )
            ok &= self.remove_degenerate(candidates, gray.shape)

            if len(target) > 0 and np.any(ok):
                dist, _ = cKDTree(target.pixels.astype(np.float64)).query(p1[ok].astype(np.float64))
                rows = np.nonzero(ok)[0]
                ok[rows[dist <= self.cfg.consolidate_px]] = False

            rows = np.nonzero(ok)[0]
            described, desc = describe_keypoints(gray, p1[rows], self.extractor)
            rows = rows[described]
            similar = descriptor_distance(desc, new_desc[rows]) <= self.cfg.max_descriptor_distance
            rows = rows[similar]

            if len(rows) == 0:
                continue

            current[cam] = _append(target, new_ids[rows], p1[rows], desc[similar])

            if self.verbose:
                print(f"[track] frame {target.frame}: {len(rows)} features cam {source_cam} -> cam {cam}")

    # ========================================
    # Internals
    # ========================================

    def _flow(
        self,
        img0: np.ndarray,
        img1: np.ndarray,
        pts0: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Forward-backward checked LK flow; returns (ok_mask, pts1)."""
        n = len(pts0)
        if n == 0:
            return np.zeros((0,), dtype=bool), np.zeros((0, 2), dtype=np.float32)

        p0 = pts0.reshape(-1, 1, 2).astype(np.float32)
        p1, st1, _ = cv2.calcOpticalFlowPyrLK(img0, img1, p0, None, **self._lk_params)
        if p1 is None:
            return np.zeros((n,), dtype=bool), pts0.astype(np.float32)
        p0r, st2, _ = cv2.calcOpticalFlowPyrLK(img1, img0, p1, None, **self._lk_params)

        fb = np.linalg.norm(p0r.reshape(-1, 2) - p0.reshape(-1, 2), axis=1)
        ok = (st1.reshape(-1) == 1) & (st2.reshape(-1) == 1) & (fb < self.cfg.fb_threshold_px)
        return ok, p1.reshape(-1, 2)

    def _empty(self, cam: int, frame: int) -> FrameObservations:
        dtype = np.float32 if self.cfg.use_sift else np.uint8
        return FrameObservations.empty(cam, frame, self.extractor.descriptorSize(), dtype=dtype)


def _append(
    obs: FrameObservations,
    ids: np.ndarray,
    pixels: np.ndarray,
    descriptors: np.ndarray,
) -> FrameObservations:
    return FrameObservations(
        camera=obs.camera,
        frame=obs.frame,
        ids=np.concatenate([obs.ids, np.asarray(ids, dtype=np.int64)]),
        pixels=np.vstack([obs.pixels, np.asarray(pixels, dtype=np.float32).reshape(-1, 2)]),
        descriptors=np.vstack([obs.descriptors, descriptors.astype(obs.descriptors.dtype)]),
    )


__all__ = ["KeypointTracker"]
