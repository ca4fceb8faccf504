import numpy as np

from lvo_app.features.matching import build_correspondences, collect_correspondences, match_using_id
from lvo_app.odom.data_structures import FrameObservations, ResidualKind, TrackArena


def _obs(camera, frame, ids, depth_rows=()):
    ids = np.asarray(ids, dtype=np.int64)
    obs = FrameObservations(
        camera=camera,
        frame=frame,
        ids=ids,
        pixels=np.column_stack([ids * 10.0, ids * 5.0]).astype(np.float32),
        descriptors=np.zeros((len(ids), 32), dtype=np.uint8),
    )
    for row in depth_rows:
        obs.depth[row] = [0.1 * row, 0.0, 5.0 + row]
    return obs


def test_match_using_id():
    assert match_using_id([3, 1, 2], [2, 3]) == [(0, 1), (2, 0)]
    assert match_using_id([4, 5, 6], [4, 5, 6]) == [(0, 0), (1, 1), (2, 2)]
    assert match_using_id([1, 2], [3, 4]) == []
    assert match_using_id([], [1]) == []


def test_correspondence_kind_follows_depth():
    query = _obs(0, 1, [10, 11, 12, 13], depth_rows=(0, 1))
    ref = _obs(0, 0, [13, 12, 11, 10], depth_rows=(3, 1))

    corrs = build_correspondences(query, ref)
    kinds = {c.track_id: c.kind for c in corrs}

    assert kinds == {
        10: ResidualKind.POINT_TO_POINT,
        11: ResidualKind.QUERY_DEPTH,
        12: ResidualKind.REF_DEPTH,
        13: ResidualKind.EPIPOLAR,
    }
    by_id = {c.track_id: c for c in corrs}
    assert by_id[13].query_point is None and by_id[13].ref_point is None
    np.testing.assert_allclose(by_id[12].ref_point, ref.depth[1])
    np.testing.assert_allclose(by_id[11].ref_px, [110.0, 55.0])


def test_collect_over_camera_pairs():
    arena = TrackArena()
    ids = arena.allocate(0, 0, np.zeros((4, 32), dtype=np.uint8))
    for frame in (0, 1):
        for cam in (0, 1):
            arena.commit(_obs(cam, frame, ids))

    across = collect_correspondences(arena, 1, 0, num_cams=2, across_cameras=True)
    temporal = collect_correspondences(arena, 1, 0, num_cams=2, across_cameras=False)

    assert len(across) == 16
    assert len(temporal) == 8
    assert {(c.query_camera, c.ref_camera) for c in across} == {(0, 0), (0, 1), (1, 0), (1, 1)}
    assert all(c.query_camera == c.ref_camera for c in temporal)

    assert collect_correspondences(arena, 1, 5, num_cams=2) == []
