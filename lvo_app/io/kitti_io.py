"""
KITTI odometry sequence I/O: calibration, images, velodyne scans, timestamps
and pose files.

Sequence layout:
    <seq>/calib.txt            P0..P3 (3x4 rectified projections), Tr (velodyne -> cam0)
    <seq>/times.txt            one timestamp (s) per frame
    <seq>/image_<c>/%06d.png   rectified images of camera c
    <seq>/velodyne/%06d.bin    float32 (x, y, z, reflectance) records
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from lvo_app.geometry.se3 import Rt_to_T, inv_T
from lvo_app.odom.data_structures import CameraRig


def image_path(seq_dir: str, cam: int, frame: int) -> Path:
    return Path(seq_dir) / f"image_{cam}" / f"{frame:06d}.png"


def scan_path(seq_dir: str, frame: int) -> Path:
    return Path(seq_dir) / "velodyne" / f"{frame:06d}.bin"


def read_calib_file(path: str) -> Dict[str, np.ndarray]:
    """
    Parse a KITTI ``calib.txt`` into named 3x4 matrices.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a line does not hold 12 numbers.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Calibration file not found: {path}")

    mats = {}
    with open(path, "r") as f:
        for line in f:
            if ":" not in line:
                continue
            key, values = line.split(":", 1)
            numbers = np.array([float(v) for v in values.split()])
            if numbers.size != 12:
                raise ValueError(f"Calibration entry '{key.strip()}' has {numbers.size} values; expected 12")
            mats[key.strip()] = numbers.reshape(3, 4)
    return mats


def image_size(seq_dir: str, cam: int = 0, frame: int = 0) -> Tuple[int, int]:
    """(width, height) of a sequence's images."""
    h, w = load_image(seq_dir, cam, frame).shape[:2]
    return w, h


def load_calibration(
    seq_dir: str,
    cameras: Sequence[int] = (0, 1),
    size: Optional[Tuple[int, int]] = None,
) -> CameraRig:
    """
    Build a CameraRig from a sequence's calibration.

    The first entry of ``cameras`` is the rig's reference camera. KITTI's
    rectified projections are P_c = K_c [I | b_c] relative to camera 0, so
    every camera is a pure translation of the others.

    Args:
        seq_dir: Sequence directory.
        cameras: Dataset camera indices (0-3) in rig order.
        size: (width, height); read from the first image when omitted.

    Returns:
        CameraRig with intrinsics, T_cam_ref extrinsics and T_ref_scan.
    """
    if len(cameras) == 0:
        raise ValueError("At least one camera is required")

    mats = read_calib_file(os.path.join(seq_dir, "calib.txt"))
    if "Tr" not in mats:
        raise ValueError("Calibration file has no 'Tr' (velodyne to camera 0) entry")

    intrinsics = []
    offsets = []
    for cam in cameras:
        key = f"P{cam}"
        if key not in mats:
            raise ValueError(f"Calibration file has no '{key}' entry")
        K = mats[key][:, :3].copy()
        intrinsics.append(K)
        offsets.append(np.linalg.solve(K, mats[key][:, 3]))

    # T_cam_cam0 = [I | b_cam]
    T_ref_cam0 = Rt_to_T(np.eye(3), offsets[0])
    extrinsics = [Rt_to_T(np.eye(3), b) @ inv_T(T_ref_cam0) for b in offsets]

    Tr = np.vstack([mats["Tr"], [0.0, 0.0, 0.0, 1.0]])
    T_ref_scan = T_ref_cam0 @ Tr

    if size is None:
        size = image_size(seq_dir, cameras[0])

    return CameraRig(
        intrinsics=intrinsics,
        extrinsics=extrinsics,
        T_ref_scan=T_ref_scan,
        image_size=(int(size[0]), int(size[1])),
    )


def load_image(seq_dir: str, cam: int, frame: int) -> np.ndarray:
    """
    Read one camera image as stored (grayscale for cameras 0/1, BGR for 2/3).

    Raises:
        FileNotFoundError: If the image is missing or unreadable.
    """
    path = image_path(seq_dir, cam, frame)
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    return image


def load_images(seq_dir: str, cameras: Iterable[int], frame: int) -> List[np.ndarray]:
    return [load_image(seq_dir, cam, frame) for cam in cameras]


def load_scan(seq_dir: str, frame: int) -> np.ndarray:
    """
    Read one velodyne scan.

    Returns:
        (N, 3) float64 points in scanner coordinates (reflectance dropped).

    Raises:
        FileNotFoundError: If the scan file is missing.
        ValueError: If the file is not a whole number of 4-float records.
    """
    path = scan_path(seq_dir, frame)
    if not path.exists():
        raise FileNotFoundError(f"Scan not found: {path}")
    raw = np.fromfile(str(path), dtype=np.float32)
    if raw.size % 4 != 0:
        raise ValueError(f"Corrupt scan {path}: {raw.size} floats is not a multiple of 4")
    return raw.reshape(-1, 4)[:, :3].astype(np.float64)


def load_times(seq_dir: str) -> np.ndarray:
    path = os.path.join(seq_dir, "times.txt")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Timestamps not found: {path}")
    return np.atleast_1d(np.loadtxt(path, dtype=np.float64))


def count_frames(seq_dir: str, cam: int = 0) -> int:
    """Number of images of camera ``cam`` in the sequence."""
    folder = Path(seq_dir) / f"image_{cam}"
    if not folder.is_dir():
        raise FileNotFoundError(f"Image folder not found: {folder}")
    return len(list(folder.glob("*.png")))


def _pose_line(T: np.ndarray) -> str:
    row = np.asarray(T, dtype=np.float64)[:3, :4].reshape(-1)
    return " ".join(f"{v:.9e}" for v in row) + "\n"


def write_poses(path: str, poses: Iterable[np.ndarray]) -> None:
    """
    Write poses in KITTI format: the top 3x4 block of each 4x4 pose,
    row-major, one line per frame.
    """
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        for T in poses:
            f.write(_pose_line(T))


def append_pose(path: str, T: np.ndarray) -> None:
    """Append one KITTI pose line, creating the file if needed."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "a") as f:
        f.write(_pose_line(T))


def read_poses(path: str) -> List[np.ndarray]:
    """Read a KITTI pose file back into 4x4 matrices."""
    data = np.loadtxt(path, dtype=np.float64, ndmin=2)
    if data.shape[1] != 12:
        raise ValueError(f"Pose file {path} has {data.shape[1]} columns; expected 12")
    poses = []
    for row in data:
        T = np.eye(4)
        T[:3, :4] = row.reshape(3, 4)
        poses.append(T)
    return poses


__all__ = [
    "image_path",
    "scan_path",
    "read_calib_file",
    "image_size",
    "load_calibration",
    "load_image",
    "load_images",
    "load_scan",
    "load_times",
    "count_frames",
    "write_poses",
    "append_pose",
    "read_poses",
]
