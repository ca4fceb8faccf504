import numpy as np
from scipy.spatial import cKDTree

from lvo_app.lidar.depth import associate_depth, associate_frame_depth, project_scan_to_camera, scan_projection
from lvo_app.lidar.scan_cache import ScanEntry
from conftest import K_TEST


def _entry(points):
    points = np.asarray(points, dtype=np.float64)
    return ScanEntry(frame=0, points=points, tree=cKDTree(points))


def test_projection_keeps_points_in_front_and_inside(rig):
    points = np.array(
        [
            [0.0, 0.0, 5.0],
            [0.0, 0.0, -5.0],  # behind
            [100.0, 0.0, 5.0],  # outside the image
            [0.0, 0.0, 0.2],  # closer than min_depth
        ]
    )
    proj = project_scan_to_camera(points, rig, 0, min_depth=0.5)

    np.testing.assert_array_equal(proj.scan_indices, [0])
    np.testing.assert_allclose(proj.pixels, [[320.0, 240.0]])


def test_keypoint_on_projected_point_gets_that_point(rig):
    rng = np.random.default_rng(3)
    points = np.column_stack(
        [
            rng.uniform(-3, 3, 40),
            rng.uniform(-2, 2, 40),
            rng.uniform(4, 30, 40),
        ]
    )
    proj = project_scan_to_camera(points, rig, 1)

    depth = associate_depth(proj, proj.pixels, K_TEST, max_distance_px=5.0, neighbors=3)
    np.testing.assert_allclose(depth, proj.points_cam, atol=1e-9)


def test_far_keypoint_has_no_depth(rig):
    proj = project_scan_to_camera(np.array([[0.0, 0.0, 5.0]]), rig, 0)

    depth = associate_depth(proj, np.array([[320.0, 246.0], [322.0, 240.0]]), K_TEST, max_distance_px=5.0)

    assert np.all(np.isnan(depth[0]))
    np.testing.assert_allclose(depth[1], [2.0 * 5.0 / 500.0, 0.0, 5.0])


def test_depth_is_inverse_distance_weighted(rig):
    # pixels (320, 240) at z=4 and (324, 240) at z=6
    points = np.array([[0.0, 0.0, 4.0], [4.0 * 6.0 / 500.0, 0.0, 6.0]])
    entry = _entry(points)

    depth = associate_frame_depth(entry, rig, 0, np.array([[322.0, 240.0], [321.0, 240.0]]), neighbors=2)

    np.testing.assert_allclose(depth[0], [0.02, 0.0, 5.0], atol=1e-12)
    # 1 px from z=4, 3 px from z=6
    assert np.isclose(depth[1, 2], (4.0 / 1.0 + 6.0 / 3.0) / (1.0 + 1.0 / 3.0))


def test_surface_check_rejects_points_between_surfaces(rig):
    points = np.array([[0.0, 0.0, 4.0], [4.0 * 6.0 / 500.0, 0.0, 6.0]])
    entry = _entry(points)
    keypoint = np.array([[322.0, 240.0]])

    loose = associate_frame_depth(entry, rig, 0, keypoint, neighbors=2, max_surface_distance=None)
    strict = associate_frame_depth(entry, rig, 0, keypoint, neighbors=2, max_surface_distance=0.1)

    assert np.all(np.isfinite(loose))
    assert np.all(np.isnan(strict))


def test_projection_is_memoized_per_camera(rig):
    entry = _entry(np.array([[0.0, 0.0, 5.0], [1.0, 0.0, 5.0]]))

    assert scan_projection(entry, rig, 0) is scan_projection(entry, rig, 0)
    assert scan_projection(entry, rig, 1) is not scan_projection(entry, rig, 0)
    assert set(entry.projections) == {0, 1}
