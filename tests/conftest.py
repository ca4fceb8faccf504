import cv2
import numpy as np
import pytest

from lvo_app.geometry.se3 import Rt_to_T
from lvo_app.odom.data_structures import CameraRig

K_TEST = np.array(
    [
        [500.0, 0.0, 320.0],
        [0.0, 500.0, 240.0],
        [0.0, 0.0, 1.0],
    ]
)


def make_rig(baseline: float = 0.5) -> CameraRig:
    """Two pinhole cameras side by side; the scanner coincides with camera 0."""
    return CameraRig(
        intrinsics=[K_TEST.copy(), K_TEST.copy()],
        extrinsics=[np.eye(4), Rt_to_T(np.eye(3), [-baseline, 0.0, 0.0])],
        T_ref_scan=np.eye(4),
        image_size=(640, 480),
    )


def textured_image(seed: int = 0, shape=(480, 640)) -> np.ndarray:
    """Blurred noise: plenty of corners, smooth enough for optical flow."""
    rng = np.random.default_rng(seed)
    noise = rng.uniform(0, 255, size=shape).astype(np.float32)
    blurred = cv2.GaussianBlur(noise, (0, 0), sigmaX=2.0)
    return cv2.normalize(blurred, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)


@pytest.fixture
def rig() -> CameraRig:
    return make_rig()
