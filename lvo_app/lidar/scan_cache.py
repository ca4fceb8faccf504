"""
Bounded cache of range scans and their nearest-neighbor indexes.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List

import numpy as np
from scipy.spatial import cKDTree


@dataclass
class ScanEntry:
    """One frame's scan, built once and shared by every camera and pairing."""

    frame: int
    # (N, 3) float64 points in scanner coordinates.
    points: np.ndarray
    tree: cKDTree
    # Per-camera ScanProjection memo, filled by lidar.depth.
    projections: Dict[int, object] = field(default_factory=dict)

    def nearest(self, query_points: np.ndarray):
        """Nearest scan point for each query point: (distances, points)."""
        dist, idx = self.tree.query(np.asarray(query_points, dtype=np.float64).reshape(-1, 3))
        return dist, self.points[idx]


def voxel_downsample(points: np.ndarray, voxel_size: float) -> np.ndarray:
    """
    Replace all points falling in the same voxel by their centroid.

    Args:
        points: (N, 3) points.
        voxel_size: Voxel edge length; values <= 0 return the input.

    Returns:
        (M, 3) downsampled points, M <= N.
    """
    if voxel_size <= 0 or len(points) == 0:
        return points

    keys = np.floor(points / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    sums = np.zeros((len(counts), 3))
    np.add.at(sums, inverse, points)
    return sums / counts[:, None]


class ScanCache:
    """
    Least-recently-used cache of ScanEntry objects keyed by frame index.

    A miss loads the scan synchronously through ``loader``, optionally
    downsamples it, builds a KD-tree and evicts the least recently used entry
    when more than ``capacity`` entries are held. Loader errors propagate.
    """

    def __init__(
        self,
        loader: Callable[[int], np.ndarray],
        capacity: int = 12,
        voxel_size: float = 0.0,
        verbose: bool = False,
    ):
        if capacity < 1:
            raise ValueError(f"ScanCache capacity must be >= 1, got {capacity}")
        self.loader = loader
        self.capacity = capacity
        self.voxel_size = voxel_size
        self.verbose = verbose

        self.hits = 0
        self.misses = 0
        self.evictions = 0

        self._entries: "OrderedDict[int, ScanEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, frame: int) -> ScanEntry:
        with self._lock:
            entry = self._entries.get(frame)
            if entry is not None:
                self._entries.move_to_end(frame)
                self.hits += 1
                return entry

            self.misses += 1
            entry = self._build(frame)
            self._entries[frame] = entry
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                if self.verbose:
                    print(f"[cache] Evicted scan {evicted}")
            return entry

    def _build(self, frame: int) -> ScanEntry:
        raw = np.asarray(self.loader(frame), dtype=np.float64)
        if raw.ndim != 2 or raw.shape[1] < 3:
            raise ValueError(f"Scan for frame {frame} has shape {raw.shape}; expected (N, >=3)")
        points = voxel_downsample(raw[:, :3], self.voxel_size)
        if self.verbose:
            print(f"[cache] Loaded scan {frame}: {len(raw)} points, {len(points)} after downsampling")
        return ScanEntry(frame=frame, points=points, tree=cKDTree(points))

    def frames(self) -> List[int]:
        """Cached frame indices, least to most recently used."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, frame: int) -> bool:
        return frame in self._entries


__all__ = ["ScanEntry", "ScanCache", "voxel_downsample"]
