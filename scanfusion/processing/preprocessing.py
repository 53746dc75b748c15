"""
Point cloud cleanup applied to each source before indexing.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from ..core.constants import DEFAULT_OUTLIER_NEIGHBORS, DEFAULT_OUTLIER_STD
from .data_types import PointCloud
from .spatial_index import CKDTreeIndex

logger = logging.getLogger(__name__)


def voxel_downsample(cloud: PointCloud, voxel_size: float) -> PointCloud:
    """
    Replace the points of every occupied voxel by their confidence-weighted centroid.

    Args:
        cloud: Input cloud
        voxel_size: Edge length of the voxel grid in meters

    Returns:
        Downsampled cloud (one point per occupied voxel)
    """
    if voxel_size is None or voxel_size <= 0 or len(cloud) == 0:
        return cloud

    keys = np.floor((cloud.positions - cloud.positions.min(axis=0)) / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    n_voxels = len(counts)

    weights = np.maximum(cloud.confidences, 1e-6)
    weight_sum = np.bincount(inverse, weights=weights, minlength=n_voxels)

    def weighted_mean(values: np.ndarray) -> np.ndarray:
        out = np.zeros((n_voxels, values.shape[1]))
        for axis in range(values.shape[1]):
            out[:, axis] = np.bincount(inverse, weights=values[:, axis] * weights, minlength=n_voxels)
        return out / weight_sum[:, None]

    positions = weighted_mean(cloud.positions)
    confidences = np.bincount(inverse, weights=cloud.confidences, minlength=n_voxels) / counts

    normals = None
    if cloud.normals is not None:
        mask = cloud.normal_mask
        summed = np.zeros((n_voxels, 3))
        for axis in range(3):
            summed[:, axis] = np.bincount(inverse[mask], weights=cloud.normals[mask, axis] * weights[mask],
                                          minlength=n_voxels)
        lengths = np.linalg.norm(summed, axis=1, keepdims=True)
        normals = np.where(lengths > 1e-12, summed / np.maximum(lengths, 1e-12), np.nan)

    colors = weighted_mean(cloud.colors) if cloud.colors is not None else None

    sources = None
    if cloud.sources is not None:
        # Majority label per voxel, ties going to the lower SourceType value
        labels = cloud.sources.astype(np.int64)
        low = int(labels.min())
        n_labels = int(labels.max()) - low + 1
        votes = np.bincount(inverse * n_labels + (labels - low), minlength=n_voxels * n_labels)
        sources = votes.reshape(n_voxels, n_labels).argmax(axis=1) + low

    logger.debug(f"Voxel downsampling ({voxel_size:.4f} m): {len(cloud)} -> {n_voxels} points")
    return PointCloud(positions, normals=normals, confidences=confidences, colors=colors, sources=sources)


def statistical_outlier_mask(cloud: PointCloud,
                             neighbors: int = DEFAULT_OUTLIER_NEIGHBORS,
                             std_ratio: float = DEFAULT_OUTLIER_STD) -> np.ndarray:
    """
    Flag points whose mean neighbour distance is unusually large.

    Args:
        cloud: Input cloud
        neighbors: Number of neighbours averaged per point
        std_ratio: Points beyond mean + std_ratio * std are outliers

    Returns:
        Boolean mask of the inliers
    """
    n = len(cloud)
    if n <= 2:
        return np.ones(n, dtype=bool)
    k = min(neighbors + 1, n)  # the point itself is its first neighbour
    _, distances = CKDTreeIndex(cloud.positions).k_nearest_batch(cloud.positions, k)
    mean_distance = distances[:, 1:].mean(axis=1)
    threshold = mean_distance.mean() + std_ratio * mean_distance.std()
    return mean_distance <= threshold


def remove_statistical_outliers(cloud: PointCloud,
                                neighbors: int = DEFAULT_OUTLIER_NEIGHBORS,
                                std_ratio: float = DEFAULT_OUTLIER_STD) -> Tuple[PointCloud, int]:
    """
    Drop statistical outliers.

    Returns:
        Tuple of (filtered cloud, number of removed points)
    """
    mask = statistical_outlier_mask(cloud, neighbors, std_ratio)
    removed = int(len(mask) - mask.sum())
    if removed:
        logger.debug(f"Removed {removed} statistical outliers of {len(cloud)} points")
        return cloud.subset(mask), removed
    return cloud, 0


def preprocess_cloud(cloud: PointCloud, config) -> PointCloud:
    """Apply the configured downsampling and outlier removal (PreprocessingConfig)."""
    if not config.enabled or len(cloud) == 0:
        return cloud
    before = len(cloud)
    if config.voxel_size:
        cloud = voxel_downsample(cloud, config.voxel_size)
    cloud, _ = remove_statistical_outliers(cloud, config.statistical_outlier_neighbors,
                                           config.statistical_outlier_std_ratio)
    logger.info(f"Preprocessed cloud: {before} -> {len(cloud)} points")
    return cloud
