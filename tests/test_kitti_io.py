import cv2
import numpy as np
import pytest

from lvo_app.io.kitti_io import (
    count_frames,
    load_calibration,
    load_image,
    load_scan,
    load_times,
    read_calib_file,
    read_poses,
    write_poses,
)
from lvo_app.geometry.se3 import pose_to_matrix
from conftest import K_TEST

TR = pose_to_matrix([1.2, -1.2, 1.2, 0.01, -0.07, -0.3])


def _write_sequence(root, num_frames=2):
    def row(M):
        return " ".join(f"{v:.12e}" for v in np.asarray(M).reshape(-1))

    P0 = K_TEST @ np.hstack([np.eye(3), np.zeros((3, 1))])
    P1 = K_TEST @ np.hstack([np.eye(3), np.array([[-0.54], [0.0], [0.0]])])
    with open(root / "calib.txt", "w") as f:
        f.write(f"P0: {row(P0)}\nP1: {row(P1)}\nP2: {row(P0)}\nP3: {row(P1)}\nTr: {row(TR[:3])}\n")

    with open(root / "times.txt", "w") as f:
        for k in range(num_frames):
            f.write(f"{0.1 * k:.6e}\n")

    for cam in (0, 1):
        (root / f"image_{cam}").mkdir()
        for k in range(num_frames):
            cv2.imwrite(str(root / f"image_{cam}" / f"{k:06d}.png"), np.full((48, 64), 10 * k, dtype=np.uint8))

    (root / "velodyne").mkdir()
    for k in range(num_frames):
        scan = np.arange(40, dtype=np.float32).reshape(10, 4) + k
        scan.tofile(str(root / "velodyne" / f"{k:06d}.bin"))
    return root


def test_calibration_builds_rig(tmp_path):
    seq = _write_sequence(tmp_path)

    rig = load_calibration(str(seq), cameras=(0, 1))

    assert rig.num_cams == 2
    assert rig.image_size == (64, 48)
    np.testing.assert_allclose(rig.K(1), K_TEST)
    np.testing.assert_allclose(rig.extrinsics[0], np.eye(4), atol=1e-12)
    np.testing.assert_allclose(rig.extrinsics[1][:3, 3], [-0.54, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(rig.T_ref_scan, TR, atol=1e-10)


def test_right_camera_as_reference(tmp_path):
    seq = _write_sequence(tmp_path)

    rig = load_calibration(str(seq), cameras=(1, 0), size=(64, 48))

    np.testing.assert_allclose(rig.extrinsics[0], np.eye(4), atol=1e-12)
    np.testing.assert_allclose(rig.extrinsics[1][:3, 3], [0.54, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(rig.T_ref_scan[:3, 3], TR[:3, 3] + [-0.54, 0.0, 0.0], atol=1e-10)


def test_calibration_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_calib_file(str(tmp_path / "calib.txt"))

    (tmp_path / "calib.txt").write_text("P0: 1 2 3\n")
    with pytest.raises(ValueError):
        read_calib_file(str(tmp_path / "calib.txt"))


def test_scans_images_and_times(tmp_path):
    seq = _write_sequence(tmp_path, num_frames=3)

    scan = load_scan(str(seq), 1)
    assert scan.shape == (10, 3)
    np.testing.assert_allclose(scan[0], [1.0, 2.0, 3.0])

    assert load_image(str(seq), 0, 2).shape == (48, 64)
    assert count_frames(str(seq), 1) == 3
    np.testing.assert_allclose(load_times(str(seq)), [0.0, 0.1, 0.2])

    with pytest.raises(FileNotFoundError):
        load_scan(str(seq), 7)
    with pytest.raises(FileNotFoundError):
        load_image(str(seq), 0, 7)

    np.arange(5, dtype=np.float32).tofile(str(seq / "velodyne" / "000003.bin"))
    with pytest.raises(ValueError):
        load_scan(str(seq), 3)


def test_pose_file_has_twelve_numbers_per_line(tmp_path):
    poses = [np.eye(4), pose_to_matrix([0.0, 0.1, 0.0, 0.5, 0.0, 2.0])]
    path = tmp_path / "results" / "00.txt"

    write_poses(str(path), poses)

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert all(len(line.split()) == 12 for line in lines)
    np.testing.assert_allclose(read_poses(str(path))[1], poses[1], atol=1e-8)
