#!/usr/bin/env python3
"""
End-to-end fusion example on synthetic data.

Generates a depth-sensor sphere and a sparser, slightly offset image-derived
sphere, runs one pipeline pass and prints the resulting strategy, quality
and mesh statistics. With --visualize the mesh is shown in Open3D.
"""

import argparse
import json
import logging

import numpy as np

from scanfusion import EventType, FusionPipeline, PointCloud, QualityPreset, ScanFusionConfig, ScanSession
from scanfusion.utils import OPEN3D_AVAILABLE, setup_logging, visualize

logger = logging.getLogger(__name__)


def make_sphere(n_points: int, radius: float, noise: float, offset, seed: int) -> PointCloud:
    """Sample a noisy sphere with outward normals."""
    rng = np.random.default_rng(seed)
    directions = rng.normal(size=(n_points, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    positions = directions * radius + rng.normal(scale=noise, size=(n_points, 3)) + np.asarray(offset)
    return PointCloud(positions, normals=directions, confidences=np.full(n_points, 0.9))


def main():
    parser = argparse.ArgumentParser(description="Run the ScanFusion pipeline on a synthetic sphere")
    parser.add_argument("--depth-points", type=int, default=10000, help="Number of depth points")
    parser.add_argument("--image-points", type=int, default=4000, help="Number of image points")
    parser.add_argument("--radius", type=float, default=0.1, help="Sphere radius in meters")
    parser.add_argument("--offset", type=float, default=0.005, help="Image cloud misalignment in meters")
    parser.add_argument("--preset", choices=[p.value for p in QualityPreset], default="standard")
    parser.add_argument("--config", help="Optional JSON configuration file")
    parser.add_argument("--visualize", action="store_true", help="Show the mesh with Open3D")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    setup_logging(level='DEBUG' if args.debug else 'INFO')

    if args.config:
        config = ScanFusionConfig.from_json_file(args.config)
    else:
        config = ScanFusionConfig.create_preset(QualityPreset(args.preset))

    depth = make_sphere(args.depth_points, args.radius, 1e-4, (0.0, 0.0, 0.0), seed=1)
    image = make_sphere(args.image_points, args.radius, 2e-4, (args.offset, 0.0, 0.0), seed=2)

    with ScanSession(config) as session:
        session.emitter.on(EventType.STRATEGY_CHANGED,
                           lambda event: logger.info(f"Strategy: {event.from_strategy.value} -> "
                                                     f"{event.to_strategy.value}"))
        session.emitter.on(EventType.STAGE_COMPLETED,
                           lambda stage, elapsed: logger.debug(f"{stage} took {elapsed:.3f}s"))

        result = FusionPipeline(session).process(depth, image, viewpoint=np.zeros(3))

    print(json.dumps(result.summary(), indent=2))

    if args.visualize and result.mesh is not None:
        if OPEN3D_AVAILABLE:
            visualize(result.mesh)
        else:
            print("Open3D not installed, skipping visualization")


if __name__ == "__main__":
    main()
