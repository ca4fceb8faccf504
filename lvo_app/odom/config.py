"""
Run configuration: dataclass defaults with an optional YAML overlay.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class TrackerConfig:
    # goodFeaturesToTrack parameters
    corner_count: int = 1000
    quality_level: float = 0.001
    min_distance: float = 10.0
    # re-detect every N frames (the first frame of a camera always detects)
    detect_every: int = 1
    use_sift: bool = False
    # Lucas-Kanade pyramid
    win_size: int = 21
    max_level: int = 3
    fb_threshold_px: float = 1.0
    # ORB Hamming distance (bits) or SIFT L2 distance
    max_descriptor_distance: float = 80.0
    border_px: float = 2.0
    zero_flow_px: float = 1e-6
    consolidate_px: float = 1.0
    cross_propagate: bool = True
    # frames of observations kept in the arena; 0 keeps all
    history: int = 12


@dataclass
class DepthConfig:
    max_distance_px: float = 5.0
    neighbors: int = 3
    min_depth: float = 0.5
    # metres; None disables the check against the scan KD-tree
    max_surface_distance: Optional[float] = 1.0


@dataclass
class EstimatorConfig:
    loss: str = "soft_l1"
    max_nfev: int = 100
    # inlier thresholds, also the scale each residual kind is divided by
    threshold_3d: float = 0.3
    threshold_reprojection_px: float = 2.0
    threshold_epipolar_px: float = 1.0
    outlier_passes: int = 2
    min_inliers: int = 6
    enable_icp: bool = False
    icp_max_distance: float = 0.5
    icp_weight: float = 0.5
    # every N-th query scan point feeds the point-to-scan term
    icp_stride: int = 10
    verbose: bool = False


@dataclass
class WindowConfig:
    max_lookback: int = 10
    min_correspondences: int = 30
    # per unit of look-back distance
    max_translation_discrepancy: float = 0.1
    max_rotation_discrepancy: float = 0.02
    initial_guess: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0, 0.0, 0.0, 0.5])
    match_across_cameras: bool = True
    # standard deviations [rotation (rad), translation (m)]
    sigma_immediate: List[float] = field(default_factory=lambda: [0.002, 0.02])
    sigma_lookback: List[float] = field(default_factory=lambda: [0.005, 0.05])
    verbose: bool = False


@dataclass
class BackendConfig:
    # batch refinement cadence in frames; 0 disables intermediate refinement
    optimize_every: int = 50
    # latest N nodes optimized, older ones fixed; 0 optimizes the whole graph
    window: int = 0
    max_nfev: int = 20
    loss: str = "soft_l1"
    prior_sigma: float = 1e-3
    verbose: bool = False


@dataclass
class OdometryConfig:
    cameras: List[int] = field(default_factory=lambda: [0, 1])
    cache_capacity: int = 12
    voxel_size: float = 0.0
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    depth: DepthConfig = field(default_factory=DepthConfig)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    window: WindowConfig = field(default_factory=WindowConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)


_SECTIONS = {
    "tracker": TrackerConfig,
    "depth": DepthConfig,
    "estimator": EstimatorConfig,
    "window": WindowConfig,
    "backend": BackendConfig,
}


def _overlay(obj: Any, values: Dict[str, Any], where: str) -> None:
    known = {f.name for f in fields(obj)}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown configuration key '{where}.{key}'")
        setattr(obj, key, value)


def config_from_dict(data: Optional[Dict[str, Any]]) -> OdometryConfig:
    """
    Build an OdometryConfig from a nested dictionary.

    Args:
        data: Mapping with optional top-level keys and one mapping per
              section (tracker, depth, estimator, window, backend).

    Returns:
        OdometryConfig with the given values overlaid on the defaults.

    Raises:
        ValueError: On unknown sections or keys, or inconsistent settings.
    """
    cfg = OdometryConfig()
    if not data:
        return cfg

    for key, value in data.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                raise ValueError(f"Configuration section '{key}' must be a mapping")
            _overlay(getattr(cfg, key), value, key)
        elif key in {"cameras", "cache_capacity", "voxel_size"}:
            setattr(cfg, key, value)
        else:
            raise ValueError(f"Unknown configuration section '{key}'")

    validate_config(cfg)
    return cfg


def validate_config(cfg: OdometryConfig) -> None:
    """
    Check settings that depend on each other.

    Raises:
        ValueError: If the tracker forgets frames a look-back still needs,
            or the point-to-scan weight is negative.
    """
    if 0 < cfg.tracker.history < cfg.window.max_lookback + 1:
        raise ValueError(
            f"tracker.history ({cfg.tracker.history}) must be at least "
            f"window.max_lookback + 1 ({cfg.window.max_lookback + 1})"
        )
    if cfg.estimator.icp_weight < 0:
        raise ValueError(f"estimator.icp_weight must be non-negative, got {cfg.estimator.icp_weight}")


def load_config(path: str) -> OdometryConfig:
    """Load a YAML configuration file."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return config_from_dict(data)


def save_config(cfg: OdometryConfig, path: str) -> None:
    """Write the configuration actually used for a run."""
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(asdict(cfg), f, sort_keys=False)


__all__ = [
    "TrackerConfig",
    "DepthConfig",
    "EstimatorConfig",
    "WindowConfig",
    "BackendConfig",
    "OdometryConfig",
    "config_from_dict",
    "validate_config",
    "load_config",
    "save_config",
]
