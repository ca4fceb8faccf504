import numpy as np
import pytest
from scipy.spatial import cKDTree

from lvo_app.ba.frame_to_frame import FrameToFrameEstimator
from lvo_app.geometry.projection import project_points
from lvo_app.geometry.se3 import inv_T, matrix_to_pose, pose_to_matrix, transform_points
from lvo_app.lidar.scan_cache import ScanEntry
from lvo_app.odom.config import EstimatorConfig
from lvo_app.odom.data_structures import Correspondence, ResidualKind

TRUE_POSE = np.array([0.01, -0.02, 0.005, 0.1, -0.05, 0.8])
KINDS = [
    ResidualKind.POINT_TO_POINT,
    ResidualKind.REF_DEPTH,
    ResidualKind.QUERY_DEPTH,
    ResidualKind.EPIPOLAR,
]


def _scene(n=80, seed=0):
    rng = np.random.default_rng(seed)
    X_ref = np.column_stack(
        [
            rng.uniform(-4, 4, n),
            rng.uniform(-2, 2, n),
            rng.uniform(6, 20, n),
        ]
    )
    X_query = transform_points(inv_T(pose_to_matrix(TRUE_POSE)), X_ref)
    return X_ref, X_query


def _correspondences(rig, X_ref, X_query):
    corrs = []
    for i in range(len(X_ref)):
        kind = KINDS[i % 4]
        cq, cr = (i // 4) % 2, (i // 8) % 2
        q_cam = transform_points(rig.extrinsics[cq], X_query[i])[0]
        r_cam = transform_points(rig.extrinsics[cr], X_ref[i])[0]
        corrs.append(
            Correspondence(
                track_id=i,
                kind=kind,
                query_camera=cq,
                ref_camera=cr,
                query_index=i,
                ref_index=i,
                query_px=project_points(rig.K(cq), q_cam)[0],
                ref_px=project_points(rig.K(cr), r_cam)[0],
                query_point=q_cam if kind in (ResidualKind.POINT_TO_POINT, ResidualKind.QUERY_DEPTH) else None,
                ref_point=r_cam if kind in (ResidualKind.POINT_TO_POINT, ResidualKind.REF_DEPTH) else None,
            )
        )
    return corrs


def test_residuals_vanish_at_true_pose(rig):
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    corrs = _correspondences(rig, *_scene())

    norms = estimator.residual_norms(TRUE_POSE, corrs)
    np.testing.assert_allclose(norms, 0.0, atol=1e-6)

    shifted = TRUE_POSE + np.array([0, 0, 0, 0.2, 0, 0])
    assert np.mean(estimator.residual_norms(shifted, corrs)) > 1e-2


def test_recovers_pose_from_mixed_kinds(rig):
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    corrs = _correspondences(rig, *_scene())

    prior = TRUE_POSE + np.array([0.01, 0.01, -0.01, 0.1, 0.05, -0.2])
    estimate = estimator.estimate(corrs, prior)

    np.testing.assert_allclose(estimate.pose, TRUE_POSE, atol=1e-4)
    assert estimate.num_inliers == len(corrs)
    assert estimate.kind_counts() == {kind: 20 for kind in KINDS}


def test_rejects_gross_outliers(rig):
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    corrs = _correspondences(rig, *_scene(seed=1))
    bad = [i for i, c in enumerate(corrs) if c.kind == ResidualKind.POINT_TO_POINT][:4]
    for i in bad:
        corrs[i].ref_point = corrs[i].ref_point + np.array([2.0, 0.0, 0.0])

    estimate = estimator.estimate(corrs, TRUE_POSE + np.array([0, 0, 0, 0.05, 0, 0.1]))

    np.testing.assert_allclose(estimate.pose, TRUE_POSE, atol=1e-3)
    assert not np.any(estimate.inlier_mask[bad])
    assert estimate.num_inliers == len(corrs) - len(bad)


def test_empty_input_returns_prior(rig):
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    prior = np.array([0, 0, 0, 0, 0, 0.5])

    estimate = estimator.estimate([], prior)

    np.testing.assert_array_equal(estimate.pose, prior)
    assert estimate.num_inliers == 0


def test_point_to_scan_term_alone(rig):
    # unit grid, so nearest-point association under the prior is unambiguous
    grid = np.mgrid[-4:5, -2:3, 6:21:2].reshape(3, -1).T.astype(np.float64)
    X_ref = grid
    X_query = transform_points(inv_T(pose_to_matrix(TRUE_POSE)), X_ref)
    # scanner coincides with the reference camera in the test rig
    ref_scan = ScanEntry(frame=0, points=X_ref, tree=cKDTree(X_ref))
    cfg = EstimatorConfig(enable_icp=True, icp_max_distance=0.5)
    estimator = FrameToFrameEstimator(rig, cfg)

    prior = TRUE_POSE + np.array([0.002, 0.0, 0.0, 0.02, 0.0, -0.02])
    estimate = estimator.estimate([], prior, ref_scan=ref_scan, query_points=X_query)

    np.testing.assert_allclose(estimate.pose, TRUE_POSE, atol=1e-4)


def test_zero_point_to_scan_weight_disables_the_term(rig):
    X_ref, X_query = _scene()
    corrs = _correspondences(rig, X_ref, X_query)
    ref_scan = ScanEntry(frame=0, points=X_ref, tree=cKDTree(X_ref))
    cfg = EstimatorConfig(enable_icp=True, icp_weight=0.0)
    estimator = FrameToFrameEstimator(rig, cfg)

    estimate = estimator.estimate(corrs, TRUE_POSE, ref_scan=ref_scan, query_points=X_query)

    np.testing.assert_allclose(estimate.pose, TRUE_POSE, atol=1e-6)
    assert estimate.num_inliers == len(corrs)


@pytest.mark.parametrize("kind", KINDS)
def test_single_kind_groups_are_consistent(rig, kind):
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    corrs = [c for c in _correspondences(rig, *_scene()) if c.kind == kind]

    assert estimator.threshold(kind) > 0
    np.testing.assert_allclose(estimator.residual_norms(matrix_to_pose(pose_to_matrix(TRUE_POSE)), corrs), 0.0, atol=1e-6)


def test_small_noise_keeps_every_correspondence(rig):
    rng = np.random.default_rng(4)
    estimator = FrameToFrameEstimator(rig, EstimatorConfig())
    corrs = _correspondences(rig, *_scene(seed=5))
    for c in corrs:
        c.query_px = c.query_px + rng.normal(0, 0.1, 2)
        c.ref_px = c.ref_px + rng.normal(0, 0.1, 2)
        if c.query_point is not None:
            c.query_point = c.query_point + rng.normal(0, 0.002, 3)
        if c.ref_point is not None:
            c.ref_point = c.ref_point + rng.normal(0, 0.002, 3)

    estimate = estimator.estimate(corrs, np.array([0, 0, 0, 0, 0, 0.5]))

    np.testing.assert_allclose(estimate.pose[:3], TRUE_POSE[:3], atol=2e-3)
    np.testing.assert_allclose(estimate.pose[3:], TRUE_POSE[3:], atol=2e-2)
    assert estimate.num_inliers == len(corrs)
