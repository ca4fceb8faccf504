"""
Command-line interface for lidar-visual odometry on KITTI sequences.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

from lvo_app.geometry.se3 import matrix_to_pose
from lvo_app.io.kitti_io import count_frames, load_calibration, load_images, load_scan, load_times
from lvo_app.odom.config import OdometryConfig, load_config, save_config
from lvo_app.odom.pipeline import FrameResult, OdometryPipeline
from lvo_app.viz.plotly_viz import plot_trajectory


def main() -> None:
    """
    Main CLI entry point for lidar-visual odometry.

    Usage:
        lvo-odometry --sequence-dir path/to/sequences/00 \\
                     --output results/00.txt \\
                     --config configs/default.yaml
    """
    parser = argparse.ArgumentParser(
        description="Frame-to-frame lidar-visual odometry on a KITTI odometry sequence"
    )
    parser.add_argument(
        "--sequence-dir",
        type=str,
        required=True,
        help="Path to the sequence directory (calib.txt, image_<c>/, velodyne/)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Pose file to write (default: results/<sequence>.txt)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML configuration file (default: built-in defaults)",
    )
    parser.add_argument(
        "--cameras",
        type=int,
        nargs="+",
        default=None,
        help="Dataset camera indices in rig order; the first is the reference camera",
    )
    parser.add_argument(
        "--start",
        type=int,
        default=0,
        help="First frame to process (default: 0)",
    )
    parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Maximum number of frames to process (default: whole sequence)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Write an HTML plot of the trajectory next to the pose file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print per-component diagnostics",
    )

    args = parser.parse_args()

    cfg = load_config(args.config) if args.config else OdometryConfig()
    if args.cameras:
        cfg.cameras = list(args.cameras)
    if args.verbose:
        cfg.estimator.verbose = True
        cfg.window.verbose = True
        cfg.backend.verbose = True

    seq_dir = args.sequence_dir
    sequence = Path(seq_dir.rstrip("/\\")).name
    output = args.output or os.path.join("results", f"{sequence}.txt")
    output_dir = Path(output).parent
    output_dir.mkdir(parents=True, exist_ok=True)

    rig = load_calibration(seq_dir, cfg.cameras)
    print(f"[lvo] Sequence {sequence}: cameras {cfg.cameras}, image size {rig.image_size}")

    total = count_frames(seq_dir, cfg.cameras[0]) - args.start
    if args.max_frames is not None:
        total = min(total, args.max_frames)
    if total <= 0:
        print("Error: No frames to process")
        return

    save_config(cfg, str(output_dir / "config_used.yaml"))

    times = load_times(seq_dir) if (Path(seq_dir) / "times.txt").exists() else None
    if times is not None and args.start < len(times):
        end = min(args.start + total, len(times)) - 1
        print(f"[lvo] Frames {args.start}..{args.start + total - 1} span {times[end] - times[args.start]:.2f}s of recording")

    pipeline = OdometryPipeline(
        rig,
        cfg,
        image_loader=lambda frame: load_images(seq_dir, cfg.cameras, frame),
        scan_loader=lambda frame: load_scan(seq_dir, frame),
        verbose=args.verbose,
    )

    def report(result: FrameResult) -> None:
        pose = matrix_to_pose(result.pose)
        stamp = f" t={times[result.frame]:.2f}s" if times is not None and result.frame < len(times) else ""
        print(
            f"[lvo] {result.frame - args.start + 1}/{total} frame {result.frame}{stamp} "
            f"{result.elapsed:.3f}s pose [{' '.join(f'{v:+.4f}' for v in pose)}] "
            f"edges {len(result.edges)} tracks {result.num_tracks} depth {result.num_depth}"
        )

    pipeline.run(range(args.start, args.start + total), output_path=output, on_frame=report)

    cache = pipeline.scan_cache
    print(f"[lvo] Scan cache: {cache.hits} hits, {cache.misses} misses, {cache.evictions} evictions")
    print(f"[lvo] Wrote {total} poses to {output}")

    if args.visualize:
        fig = plot_trajectory(pipeline.state.absolute, pipeline.state.edges, title=f"Sequence {sequence}")
        html_path = str(Path(output).with_suffix(".html"))
        fig.write_html(html_path)
        print(f"Trajectory visualization saved to {html_path}")


if __name__ == "__main__":
    main()
