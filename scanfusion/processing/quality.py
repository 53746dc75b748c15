"""
Per-source quality estimation and quality history tracking.

QualityEstimator turns a point cloud into QualityMetrics (density, normal
consistency, completeness, noise, feature preservation) and a scalar
confidence through configured weights. QualityMonitor keeps a bounded,
thread-safe history of reports per source for trend analysis.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Sequence, Union

import numpy as np

from ..core.utils import CancellationToken, WorkerPool
from .compute_backend import ComputeBackend, NumpyBackend
from .config import QualityConfig
from .data_types import AlignmentResult, BoundingBox, Feature, PointCloud, QualityMetrics
from .normals import LocalFrames, estimate_local_frames
from .spatial_index import CKDTreeIndex, SpatialIndex

logger = logging.getLogger(__name__)

# Flat clouds have no volume; each bounding box axis counts at least this thick
MIN_BOX_EXTENT = 1e-3


class QualityTrend(Enum):
    """Direction of recent confidence changes."""
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


@dataclass
class QualityReport:
    """QualityMetrics of one source plus its confidence and pass/fail verdict."""
    source: str
    metrics: QualityMetrics
    confidence: float
    passed: bool
    failures: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            'source': self.source,
            'metrics': self.metrics.to_dict(),
            'confidence': self.confidence,
            'passed': self.passed,
            'failures': list(self.failures),
            'timestamp': self.timestamp,
        }


class QualityEstimator:
    """
    Computes quality metrics for a point cloud.

    Per-point work (neighbour lookups, local frames, normal agreement) runs in
    chunks on the worker pool when one is given.
    """

    def __init__(self,
                 config: Optional[QualityConfig] = None,
                 backend: Optional[ComputeBackend] = None,
                 worker_pool: Optional[WorkerPool] = None,
                 cancel_token: Optional[CancellationToken] = None):
        self.config = config or QualityConfig()
        self.backend = backend or NumpyBackend()
        self.worker_pool = worker_pool
        self.cancel_token = cancel_token

    def estimate(self,
                 data: Union[PointCloud, AlignmentResult],
                 bounding_box: Optional[BoundingBox] = None,
                 index: Optional[SpatialIndex] = None,
                 features: Optional[Sequence[Feature]] = None,
                 alignment: Optional[AlignmentResult] = None) -> Union[QualityMetrics, float]:
        """
        Estimate quality of a point cloud, or the confidence of an alignment.

        Args:
            data: PointCloud to measure, or an AlignmentResult
            bounding_box: Scan volume (defaults to the cloud's own bounds)
            index: Prebuilt spatial index over the cloud positions
            features: Tracked features for the preservation metric
            alignment: Registration of this source, sets alignment_residual

        Returns:
            QualityMetrics for a cloud, a confidence in [0, 1] for an alignment
        """
        if isinstance(data, AlignmentResult):
            return self.alignment_confidence(data)
        return self.estimate_cloud(data, bounding_box, index, features, alignment)

    def estimate_cloud(self,
                       cloud: PointCloud,
                       bounding_box: Optional[BoundingBox] = None,
                       index: Optional[SpatialIndex] = None,
                       features: Optional[Sequence[Feature]] = None,
                       alignment: Optional[AlignmentResult] = None,
                       frames: Optional[LocalFrames] = None) -> QualityMetrics:
        start_time = time.time()
        n = len(cloud)
        residual = None
        if alignment is not None:
            residual = alignment.residual if np.isfinite(alignment.residual) else float('inf')

        if n == 0:
            return QualityMetrics(density=0.0, normal_consistency=0.0, completeness=0.0,
                                  noise_level=1.0, feature_preservation=0.0 if features else 1.0,
                                  alignment_residual=residual, point_count=0)

        if index is None:
            index = CKDTreeIndex(cloud.positions)
        if frames is None:
            frames = estimate_local_frames(cloud.positions, index, self.config.normal_k,
                                           self.backend, self.worker_pool, self.cancel_token)

        metrics = QualityMetrics(
            density=self.density(cloud, bounding_box),
            normal_consistency=self.normal_consistency(cloud, frames),
            completeness=self.completeness(cloud, bounding_box),
            noise_level=self.noise_level(frames),
            feature_preservation=self.feature_preservation(features, index),
            alignment_residual=residual,
            point_count=n,
        )
        logger.debug(f"Quality of {n} points in {time.time() - start_time:.3f}s: {metrics.to_dict()}")
        return metrics

    def density(self, cloud: PointCloud, bounding_box: Optional[BoundingBox] = None) -> float:
        """Points per cubic meter against the optimal density, clamped to [0, 1]."""
        box = bounding_box or cloud.bounding_box()
        volume = float(np.prod(np.maximum(box.size, MIN_BOX_EXTENT)))
        return float(np.clip(len(cloud) / volume / self.config.optimal_density, 0.0, 1.0))

    def normal_consistency(self, cloud: PointCloud, frames: LocalFrames) -> float:
        """
        Mean |dot| between each normal and its k nearest neighbours' normals.

        Only neighbours within normal_radius count, and only points with at
        least min_consistency_neighbors such neighbours contribute. Points
        without a sensor normal use their estimated one.
        """
        normals = frames.normals
        if cloud.normals is not None:
            normals = np.where(cloud.normal_mask[:, None], cloud.normals, frames.normals)
        if frames.neighbors.shape[1] == 0:
            return 0.0

        has_normal = np.all(np.isfinite(normals), axis=1)
        safe = np.where(has_normal[:, None], normals, 0.0)
        neighbor_normals = safe[frames.neighbors]
        valid = (frames.distances <= self.config.normal_radius) & has_normal[frames.neighbors]

        agreement, counts = self.backend.normal_agreement(safe, neighbor_normals, valid)
        counted = has_normal & (counts >= self.config.min_consistency_neighbors)
        if not np.any(counted):
            return 0.0
        return float(np.clip(np.mean(agreement[counted]), 0.0, 1.0))

    def completeness(self, cloud: PointCloud, bounding_box: Optional[BoundingBox] = None) -> float:
        """
        Fraction of occupied cells of a grid laid over the dominant plane of the cloud.

        Points are projected onto their two principal axes; the rectangle they
        span (clipped to the scan box) is divided into completeness_grid^2 cells.
        """
        positions = cloud.positions
        if bounding_box is not None:
            positions = positions[bounding_box.contains(positions)]
        if len(positions) < 3:
            return 0.0
        centered = positions - positions.mean(axis=0)
        _, _, vt = np.linalg.svd(centered, full_matrices=False)
        projected = centered @ vt[:2].T
        lo, hi = projected.min(axis=0), projected.max(axis=0)
        extent = np.maximum(hi - lo, 1e-12)
        g = self.config.completeness_grid
        cells = np.minimum(((projected - lo) / extent * g).astype(np.int64), g - 1)
        occupied = len(np.unique(cells[:, 0] * g + cells[:, 1]))
        return float(occupied) / float(g * g)

    def noise_level(self, frames: LocalFrames) -> float:
        """Mean distance to the local plane relative to max_noise_level, clamped to [0, 1]."""
        if not np.any(frames.valid):
            return 1.0
        mean_distance = float(np.mean(frames.plane_distance[frames.valid]))
        return float(np.clip(mean_distance / self.config.max_noise_level, 0.0, 1.0))

    def feature_preservation(self, features: Optional[Sequence[Feature]], index: SpatialIndex) -> float:
        """Confidence-weighted fraction of features with a point within feature_radius."""
        if not features:
            return 1.0
        positions = np.array([f.position for f in features], dtype=np.float64).reshape(-1, 3)
        weights = np.clip(np.array([f.confidence for f in features], dtype=np.float64), 0.0, 1.0)
        _, distances = index.k_nearest_batch(positions, 1)
        if distances.shape[1] == 0:
            return 0.0
        covered = distances[:, 0] <= self.config.feature_radius
        if weights.sum() <= 0:
            return float(np.mean(covered))
        return float(np.sum(weights * covered) / weights.sum())

    def alignment_confidence(self, alignment: Union[AlignmentResult, float]) -> float:
        """1 - min(residual / max_acceptable_residual, 1); 0 for failed alignments."""
        if isinstance(alignment, AlignmentResult):
            if alignment.failed:
                return 0.0
            residual = alignment.residual
        else:
            residual = float(alignment)
        if not np.isfinite(residual):
            return 0.0
        return float(1.0 - min(max(residual, 0.0) / self.config.max_acceptable_residual, 1.0))

    def confidence(self, metrics: QualityMetrics) -> float:
        """
        Weighted sum of the sub-metrics, in [0, 1].

        Without an alignment residual the alignment weight is left out and the
        remaining weights are rescaled to their full total.
        """
        w = self.config.weights
        score = (w.density * metrics.density +
                 w.normal_consistency * metrics.normal_consistency +
                 w.completeness * metrics.completeness +
                 w.noise * (1.0 - metrics.noise_level) +
                 w.feature_preservation * metrics.feature_preservation)
        if metrics.alignment_residual is not None:
            score += w.alignment * self.alignment_confidence(metrics.alignment_residual)
        else:
            remaining = w.total() - w.alignment
            score = score * w.total() / remaining if remaining > 0 else 0.0
        return float(np.clip(score, 0.0, 1.0))

    def report(self,
               source: str,
               cloud: PointCloud,
               bounding_box: Optional[BoundingBox] = None,
               index: Optional[SpatialIndex] = None,
               features: Optional[Sequence[Feature]] = None,
               alignment: Optional[AlignmentResult] = None) -> QualityReport:
        """
        Measure a source and judge it against the source thresholds.

        Args:
            source: "depth", "image" or "fused"
            cloud: Points of the source

        Returns:
            QualityReport with metrics, confidence and verdict
        """
        metrics = self.estimate_cloud(cloud, bounding_box, index, features, alignment)
        return self.judge(source, metrics)

    def judge(self, source: str, metrics: QualityMetrics) -> QualityReport:
        t = self.config.thresholds
        failures = []
        min_points = t.min_image_points if source == "image" else t.min_depth_points
        if metrics.point_count < min_points:
            failures.append(f"point_count {metrics.point_count} < {min_points}")
        if metrics.density < t.min_density:
            failures.append(f"density {metrics.density:.3f} < {t.min_density:.3f}")
        if metrics.normal_consistency < t.min_normal_consistency:
            failures.append(f"normal_consistency {metrics.normal_consistency:.3f} < {t.min_normal_consistency:.3f}")

        confidence = self.confidence(metrics)
        report = QualityReport(source=source, metrics=metrics, confidence=confidence,
                               passed=not failures, failures=failures)
        if failures:
            logger.info(f"{source} source failed quality checks: {', '.join(failures)}")
        else:
            logger.info(f"{source} source confidence {confidence:.3f} ({metrics.point_count} points)")
        return report


class QualityMonitor:
    """Bounded per-source history of quality reports, safe for concurrent use."""

    def __init__(self, history_size: int = 30, trend_threshold: float = 0.01):
        """
        Args:
            history_size: Reports kept per source
            trend_threshold: Minimum |slope| of confidence per report to call a trend
        """
        self.history_size = history_size
        self.trend_threshold = trend_threshold
        self._history: Dict[str, Deque[QualityReport]] = {}
        self._lock = threading.Lock()

    def record(self, report: QualityReport) -> None:
        with self._lock:
            history = self._history.setdefault(report.source, deque(maxlen=self.history_size))
            history.append(report)

    def history(self, source: str) -> List[QualityReport]:
        with self._lock:
            return list(self._history.get(source, ()))

    def latest(self, source: str) -> Optional[QualityReport]:
        with self._lock:
            history = self._history.get(source)
            return history[-1] if history else None

    def trend(self, source: str, window: int = 10) -> QualityTrend:
        """Least-squares slope of the most recent confidences."""
        recent = self.history(source)[-window:]
        if len(recent) < 3:
            return QualityTrend.STABLE
        values = np.array([r.confidence for r in recent])
        slope = np.polyfit(np.arange(len(values), dtype=np.float64), values, 1)[0]
        if slope > self.trend_threshold:
            return QualityTrend.IMPROVING
        if slope < -self.trend_threshold:
            return QualityTrend.DEGRADING
        return QualityTrend.STABLE

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
