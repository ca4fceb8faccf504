import numpy as np

from lvo_app.ba.frame_to_frame import PoseEstimate
from lvo_app.geometry.se3 import Rt_to_T, matrix_to_pose, pose_to_matrix
from lvo_app.odom.config import EstimatorConfig, WindowConfig
from lvo_app.odom.data_structures import FrameObservations, OdometryState, TrackArena
from lvo_app.odom.window import (
    STOP_CAP,
    STOP_DISAGREEMENT,
    STOP_FEW_CORRESPONDENCES,
    WindowSelector,
)

STEP = Rt_to_T(np.eye(3), [0.0, 0.0, 1.0])


class ScriptedEstimator:
    """Returns the seed, optionally corrupted on chosen calls."""

    def __init__(self, corrupt_calls=()):
        self.cfg = EstimatorConfig()
        self.corrupt_calls = set(corrupt_calls)
        self.calls = []

    def estimate(self, correspondences, prior_pose, ref_scan=None, query_points=None):
        self.calls.append(len(correspondences))
        pose = np.array(prior_pose, dtype=np.float64)
        if len(self.calls) in self.corrupt_calls:
            pose = pose + np.array([0.0, 0.0, 0.0, 1.0, 0.0, 0.0])
        return PoseEstimate(pose=pose)


class RecordingBackend:
    def __init__(self):
        self.edges = []

    def add_edge(self, edge):
        self.edges.append(edge)


def _state(num_ids=40, sparse_frames=()):
    """Frames 0..3 observed by camera 0; frames 0..2 dead-reckoned at one STEP per frame."""
    arena = TrackArena()
    ids = arena.allocate(0, 0, np.zeros((num_ids, 32), dtype=np.uint8))
    for frame in range(4):
        keep = ids[:3] if frame in sparse_frames else ids
        arena.commit(
            FrameObservations(
                camera=0,
                frame=frame,
                ids=keep,
                pixels=np.zeros((len(keep), 2), dtype=np.float32),
                descriptors=np.zeros((len(keep), 32), dtype=np.uint8),
            )
        )
    state = OdometryState(arena=arena)
    T = np.eye(4)
    for frame in range(3):
        state.dead_reckoning[frame] = T
        T = T @ STEP
    return state


def _selector(rig, estimator, backend=None, **overrides):
    cfg = WindowConfig(max_lookback=3, min_correspondences=30, **overrides)
    return WindowSelector(rig, cfg, estimator, backend=backend)


def test_consistent_lookbacks_are_all_accepted(rig):
    state = _state()
    backend = RecordingBackend()
    selector = _selector(rig, ScriptedEstimator(), backend)

    report = selector.select(state, 3)

    assert [(e.ref_frame, e.query_frame) for e in report.edges] == [(2, 3), (1, 3), (0, 3)]
    assert report.stop_reason == STOP_CAP
    assert [id(e) for e in backend.edges] == [id(e) for e in report.edges]
    assert len(state.edges) == 3
    np.testing.assert_allclose(state.dead_reckoning[3][:3, 3], [0.0, 0.0, 3.0])
    np.testing.assert_allclose(report.edges[2].pose[3:], [0.0, 0.0, 3.0])

    assert report.edges[0].sigma[3] == selector.cfg.sigma_immediate[1]
    assert report.edges[1].sigma[0] == selector.cfg.sigma_lookback[0]


def test_disagreement_rejects_and_stops(rig):
    state = _state()
    estimator = ScriptedEstimator(corrupt_calls={2})
    selector = _selector(rig, estimator)

    report = selector.select(state, 3)

    assert [e.lookback for e in report.edges] == [1]
    assert report.stop_reason == STOP_DISAGREEMENT
    assert len(estimator.calls) == 2
    assert [a.accepted for a in report.attempts] == [True, False]


def test_immediate_edge_is_never_rejected(rig):
    state = _state()
    selector = _selector(rig, ScriptedEstimator(corrupt_calls={1}))

    report = selector.select(state, 3)

    assert report.edges[0].lookback == 1
    np.testing.assert_allclose(state.dead_reckoning[3][:3, 3], [1.0, 0.0, 3.0])


def test_too_few_correspondences_stop_lookback(rig):
    state = _state(sparse_frames=(1,))
    estimator = ScriptedEstimator()
    selector = _selector(rig, estimator)

    report = selector.select(state, 3)

    assert [e.lookback for e in report.edges] == [1]
    assert report.stop_reason == STOP_FEW_CORRESPONDENCES
    assert estimator.calls == [40]


def test_lookback_bounded_by_available_frames(rig):
    state = _state()
    state.dead_reckoning = {0: np.eye(4)}
    selector = _selector(rig, ScriptedEstimator())

    report = selector.select(state, 1)

    assert [e.ref_frame for e in report.edges] == [0]
    np.testing.assert_allclose(
        matrix_to_pose(state.dead_reckoning[1]),
        selector.cfg.initial_guess,
        atol=1e-12,
    )


def test_prediction(rig):
    state = _state()
    selector = _selector(rig, ScriptedEstimator())

    np.testing.assert_allclose(selector.predict(state, 3, 1), STEP)
    np.testing.assert_allclose(selector.predict(state, 2, 2), STEP @ STEP)
    np.testing.assert_allclose(selector.predict(state, 2, 1), STEP)
    np.testing.assert_allclose(selector.predict(state, 1, 1)[:3, 3], [0.0, 0.0, 0.5])

    state.dead_reckoning = {0: np.eye(4)}
    np.testing.assert_allclose(selector.predict(state, 1, 1), pose_to_matrix(selector.cfg.initial_guess))
