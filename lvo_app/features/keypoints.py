"""
Corner detection and descriptor extraction at given pixel locations.
"""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

# Keypoint diameter handed to the descriptor extractor.
KEYPOINT_SIZE = 31.0


def to_gray(image: np.ndarray) -> np.ndarray:
    """Return a uint8 single-channel view of ``image``."""
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image


def create_descriptor_extractor(use_sift: bool = False):
    if use_sift:
        return cv2.SIFT_create()
    return cv2.ORB_create(edgeThreshold=15, patchSize=31)


def detect_keypoints(
    image: np.ndarray,
    max_corners: int = 1000,
    quality_level: float = 0.001,
    min_distance: float = 10.0,
    mask: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Detect good-features-to-track corners.

    Args:
        image: Input image (H, W) or (H, W, 3), dtype=uint8.
        max_corners: Maximum number of corners returned.
        quality_level: Relative corner quality threshold.
        min_distance: Minimum pixel distance between corners.
        mask: Optional uint8 mask (H, W); zero pixels are excluded.

    Returns:
        Corner pixel coordinates (N, 2), dtype=float32.
    """
    gray = to_gray(image)
    corners = cv2.goodFeaturesToTrack(
        gray,
        maxCorners=max_corners,
        qualityLevel=quality_level,
        minDistance=min_distance,
        mask=mask,
    )
    if corners is None:
        return np.zeros((0, 2), dtype=np.float32)
    return corners.reshape(-1, 2).astype(np.float32)


def describe_keypoints(
    image: np.ndarray,
    points: np.ndarray,
    extractor,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute descriptors at fixed pixel locations.

    The extractor may drop points it cannot describe (e.g. too close to the
    border); the returned mask says which input rows survived.

    Args:
        image: Input image, dtype=uint8.
        points: Pixel coordinates (N, 2).
        extractor: OpenCV Feature2D with a ``compute`` method.

    Returns:
        Tuple of (mask, descriptors) where:
        - mask: Boolean array (N,) of described points.
        - descriptors: Array (mask.sum(), D) aligned with ``points[mask]``.
    """
    gray = to_gray(image)
    n = len(points)
    mask = np.zeros(n, dtype=bool)
    size = extractor.descriptorSize()
    dtype = np.float32 if extractor.descriptorType() == cv2.CV_32F else np.uint8
    if n == 0:
        return mask, np.zeros((0, size), dtype=dtype)

    keypoints = [
        cv2.KeyPoint(float(x), float(y), KEYPOINT_SIZE, -1, 0, 0, int(i))
        for i, (x, y) in enumerate(points)
    ]
    keypoints, descriptors = extractor.compute(gray, keypoints)
    if descriptors is None or len(keypoints) == 0:
        return mask, np.zeros((0, size), dtype=dtype)

    # class_id carries the input row through compute(), which may drop or reorder
    rows = np.array([kp.class_id for kp in keypoints], dtype=int)
    out = np.zeros((n, size), dtype=descriptors.dtype)
    out[rows] = descriptors
    mask[rows] = True
    return mask, out[mask]


def descriptor_distance(d1: np.ndarray, d2: np.ndarray) -> np.ndarray:
    """
    Row-wise descriptor distance: Hamming for binary (uint8), L2 for float.

    Args:
        d1, d2: Descriptor arrays of the same shape (N, D).

    Returns:
        Distances (N,).
    """
    if len(d1) == 0:
        return np.zeros((0,), dtype=np.float64)
    if d1.dtype == np.uint8:
        return np.unpackbits(np.bitwise_xor(d1, d2), axis=1).sum(axis=1).astype(np.float64)
    return np.linalg.norm(d1.astype(np.float64) - d2.astype(np.float64), axis=1)


__all__ = [
    "to_gray",
    "create_descriptor_extractor",
    "detect_keypoints",
    "describe_keypoints",
    "descriptor_distance",
]
