"""
Correspondence matching by shared track ID.

Tracks carry identities across frames and cameras, so matching two sets of
observations is a lookup-table join rather than a descriptor search.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from lvo_app.odom.data_structures import (
    Correspondence,
    FrameObservations,
    ResidualKind,
    TrackArena,
)


def match_using_id(
    ids_a: Sequence[int],
    ids_b: Sequence[int],
) -> List[Tuple[int, int]]:
    """
    Pair up rows of two ID lists that carry the same track ID.

    Args:
        ids_a: Track IDs of the first observation set.
        ids_b: Track IDs of the second observation set.

    Returns:
        List of (index_in_a, index_in_b) pairs, in the order of ``ids_a``.
    """
    lookup = {int(track_id): j for j, track_id in enumerate(ids_b)}
    matches = []
    for i, track_id in enumerate(ids_a):
        j = lookup.get(int(track_id))
        if j is not None:
            matches.append((i, j))
    return matches


def build_correspondences(
    query: FrameObservations,
    ref: FrameObservations,
) -> List[Correspondence]:
    """
    Join two observation sets and tag every pair by where depth is available.

    Args:
        query: Observations at the current frame.
        ref: Observations at the reference (older) frame.

    Returns:
        List of Correspondence objects, in the order of ``query``.
    """
    query_depth = query.has_depth
    ref_depth = ref.has_depth

    correspondences = []
    for i, j in match_using_id(query.ids, ref.ids):
        kind = ResidualKind.classify(bool(query_depth[i]), bool(ref_depth[j]))
        correspondences.append(
            Correspondence(
                track_id=int(query.ids[i]),
                kind=kind,
                query_camera=query.camera,
                ref_camera=ref.camera,
                query_index=i,
                ref_index=j,
                query_px=np.asarray(query.pixels[i], dtype=np.float64),
                ref_px=np.asarray(ref.pixels[j], dtype=np.float64),
                query_point=query.depth[i].copy() if query_depth[i] else None,
                ref_point=ref.depth[j].copy() if ref_depth[j] else None,
            )
        )
    return correspondences


def collect_correspondences(
    arena: TrackArena,
    frame: int,
    ref_frame: int,
    num_cams: int,
    across_cameras: bool = True,
) -> List[Correspondence]:
    """
    Gather correspondences between two frames over all cameras.

    Args:
        arena: Track arena holding the observations.
        frame: Current (query) frame.
        ref_frame: Reference frame.
        num_cams: Number of cameras in the rig.
        across_cameras: Also pair camera a at ``frame`` with camera b != a at
            ``ref_frame``.

    Returns:
        Concatenated correspondences, grouped by (query camera, ref camera).
    """
    correspondences: List[Correspondence] = []
    for cq in range(num_cams):
        query = arena.observations(cq, frame)
        if query is None or len(query) == 0:
            continue
        for cr in range(num_cams):
            if cr != cq and not across_cameras:
                continue
            ref = arena.observations(cr, ref_frame)
            if ref is None or len(ref) == 0:
                continue
            correspondences.extend(build_correspondences(query, ref))
    return correspondences


__all__ = ["match_using_id", "build_correspondences", "collect_correspondences"]
