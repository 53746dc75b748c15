"""
Confidence-weighted fusion of two aligned point clouds.

The denser source is indexed and every point of the other source is matched
one-to-one to a nearby base point within the maximum fusion distance. Matched
pairs merge into a single point; unmatched points from either source are
kept as they are, with a confidence chosen by the configured policy.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..core.utils import CancellationToken, WorkerPool
from .config import FusionConfig
from .data_types import PointCloud, SourceType
from .exceptions import handle_processing_error
from .spatial_index import CKDTreeIndex, SpatialIndex

logger = logging.getLogger(__name__)


@dataclass
class FusionWeights:
    """Scalar confidence of each source, in [0, 1]."""
    weight_a: float = 1.0
    weight_b: float = 1.0

    def __post_init__(self):
        if not (0.0 <= self.weight_a <= 1.0 and 0.0 <= self.weight_b <= 1.0):
            raise ValueError(f"Fusion weights must be in [0, 1], got ({self.weight_a}, {self.weight_b})")


@dataclass
class FusionStats:
    """Bookkeeping of one fusion pass."""
    size_a: int
    size_b: int
    matched: int
    unmatched_a: int
    unmatched_b: int
    overlap_ratio: float
    elapsed: float = 0.0

    @property
    def fused_size(self) -> int:
        return self.matched + self.unmatched_a + self.unmatched_b

    @property
    def merge_ratio(self) -> float:
        """Matched pairs relative to the smaller source."""
        smaller = min(self.size_a, self.size_b)
        return self.matched / smaller if smaller else 0.0


class FusionEngine:
    """Merges two aligned point clouds into one."""

    def __init__(self,
                 config: Optional[FusionConfig] = None,
                 worker_pool: Optional[WorkerPool] = None,
                 cancel_token: Optional[CancellationToken] = None):
        self.config = config or FusionConfig()
        self.worker_pool = worker_pool
        self.cancel_token = cancel_token

    def _candidates(self, queries: np.ndarray, index: SpatialIndex, k: int) -> Tuple[np.ndarray, np.ndarray]:
        def search(start: int, stop: int):
            return index.k_nearest_batch(queries[start:stop], k)

        if self.worker_pool is None:
            return search(0, len(queries))
        chunks = self.worker_pool.map_ranges(search, len(queries), self.cancel_token, stage="fusion")
        return np.concatenate([c[0] for c in chunks]), np.concatenate([c[1] for c in chunks])

    def overlap_ratio(self, a: PointCloud, b: PointCloud,
                      index_a: Optional[SpatialIndex] = None,
                      index_b: Optional[SpatialIndex] = None) -> float:
        """Fraction of the sparser cloud lying within max_fusion_distance of the denser one."""
        if len(a) == 0 or len(b) == 0:
            return 0.0
        if len(a) >= len(b):
            dense_index = index_a or CKDTreeIndex(a.positions)
            sparse = b
        else:
            dense_index = index_b or CKDTreeIndex(b.positions)
            sparse = a
        _, distances = self._candidates(sparse.positions, dense_index, 1)
        return float(np.mean(distances[:, 0] <= self.config.max_fusion_distance))

    def fuse(self, a: PointCloud, b: PointCloud, weights: Optional[FusionWeights] = None) -> PointCloud:
        """
        Fuse two aligned clouds.

        Args:
            a: First source (depth by convention)
            b: Second source (image-derived by convention)
            weights: Scalar confidence of each source

        Returns:
            Fused cloud with max(|a|, |b|) <= size <= |a| + |b|
        """
        fused, _ = self.fuse_with_stats(a, b, weights)
        return fused

    @handle_processing_error("fusion")
    def fuse_with_stats(self, a: PointCloud, b: PointCloud,
                        weights: Optional[FusionWeights] = None,
                        index_a: Optional[SpatialIndex] = None,
                        index_b: Optional[SpatialIndex] = None) -> Tuple[PointCloud, FusionStats]:
        """Fuse two clouds and report match statistics."""
        start_time = time.time()
        weights = weights or FusionWeights()
        a = a if a.sources is not None else a.with_source(SourceType.DEPTH)
        b = b if b.sources is not None else b.with_source(SourceType.IMAGE)

        if len(a) == 0 or len(b) == 0:
            fused = self._concatenate([a, b])
            stats = FusionStats(len(a), len(b), 0, len(a), len(b), 0.0, time.time() - start_time)
            return fused, stats

        # Index the denser source, match the other one against it
        a_is_base = len(a) >= len(b)
        base, query = (a, b) if a_is_base else (b, a)
        base_weight, query_weight = ((weights.weight_a, weights.weight_b) if a_is_base
                                     else (weights.weight_b, weights.weight_a))
        base_index = (index_a if a_is_base else index_b) or CKDTreeIndex(base.positions)

        k = min(self.config.candidate_neighbors, len(base))
        cand_idx, cand_dist = self._candidates(query.positions, base_index, k)
        query_match, base_match = self._match_one_to_one(cand_idx, cand_dist)

        merged = self._merge(base, query, base_match, query_match, base_weight, query_weight)

        base_unmatched = np.ones(len(base), dtype=bool)
        base_unmatched[base_match] = False
        query_unmatched = np.ones(len(query), dtype=bool)
        query_unmatched[query_match] = False

        base_rest = self._unmatched(base, base_unmatched, is_a=a_is_base)
        query_rest = self._unmatched(query, query_unmatched, is_a=not a_is_base)
        a_rest, b_rest = (base_rest, query_rest) if a_is_base else (query_rest, base_rest)

        fused = self._concatenate([merged, a_rest, b_rest])
        overlap = float(np.mean(cand_dist[:, 0] <= self.config.max_fusion_distance)) if k else 0.0
        stats = FusionStats(
            size_a=len(a), size_b=len(b), matched=len(base_match),
            unmatched_a=len(a_rest), unmatched_b=len(b_rest),
            overlap_ratio=overlap, elapsed=time.time() - start_time,
        )
        logger.info(f"Fused {len(a)} + {len(b)} points into {len(fused)} "
                    f"({stats.matched} merged, {stats.elapsed:.3f}s)")
        return fused, stats

    def _match_one_to_one(self, cand_idx: np.ndarray, cand_dist: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Greedy matching by ascending distance; each point is used at most once."""
        n_query, k = cand_idx.shape
        query_ids = np.repeat(np.arange(n_query), k)
        base_ids = cand_idx.reshape(-1)
        distances = cand_dist.reshape(-1)
        within = distances <= self.config.max_fusion_distance
        query_ids, base_ids, distances = query_ids[within], base_ids[within], distances[within]
        order = np.lexsort((query_ids, distances))

        used_query = np.zeros(n_query, dtype=bool)
        used_base = set()
        query_match, base_match = [], []
        for q, b in zip(query_ids[order].tolist(), base_ids[order].tolist()):
            if used_query[q] or b in used_base:
                continue
            used_query[q] = True
            used_base.add(b)
            query_match.append(q)
            base_match.append(b)

        query_match = np.array(query_match, dtype=np.int64)
        base_match = np.array(base_match, dtype=np.int64)
        order = np.argsort(base_match, kind='stable')
        return query_match[order], base_match[order]

    def _merge(self, base: PointCloud, query: PointCloud,
               base_match: np.ndarray, query_match: np.ndarray,
               base_weight: float, query_weight: float) -> PointCloud:
        if len(base_match) == 0:
            return PointCloud.empty()

        base_conf = base.confidences[base_match]
        query_conf = query.confidences[query_match]
        wb = base_weight * base_conf
        wq = query_weight * query_conf
        total = wb + wq
        # Two zero-weight points fall back to a plain average
        zero = total <= 0
        wb = np.where(zero, 0.5, wb)
        wq = np.where(zero, 0.5, wq)
        total = wb + wq

        positions = (wb[:, None] * base.positions[base_match] +
                     wq[:, None] * query.positions[query_match]) / total[:, None]

        normals = self._merge_normals(base, query, base_match, query_match, wb, wq)

        if self.config.merged_confidence_policy == "max":
            confidences = np.maximum(base_conf, query_conf)
        else:
            confidences = 0.5 * (base_conf + query_conf)

        colors = None
        if base.colors is not None or query.colors is not None:
            base_colors = base.colors[base_match] if base.colors is not None else np.full((len(base_match), 3), np.nan)
            query_colors = (query.colors[query_match] if query.colors is not None
                            else np.full((len(query_match), 3), np.nan))
            colors = self._blend_optional(base_colors, query_colors, wb, wq)

        return PointCloud(positions, normals=normals, confidences=confidences, colors=colors,
                          sources=np.full(len(base_match), SourceType.FUSED.value, dtype=np.int8))

    def _merge_normals(self, base, query, base_match, query_match, wb, wq) -> Optional[np.ndarray]:
        if base.normals is None and query.normals is None:
            return None
        nan = np.full((len(base_match), 3), np.nan)
        nb = base.normals[base_match] if base.normals is not None else nan
        nq = query.normals[query_match] if query.normals is not None else nan
        has_b = np.all(np.isfinite(nb), axis=1)
        has_q = np.all(np.isfinite(nq), axis=1)
        nb = np.where(has_b[:, None], nb, 0.0)
        nq = np.where(has_q[:, None], nq, 0.0)
        # Unsigned sensor normals: align the query normal with the base before summing
        flip = np.sum(nb * nq, axis=1) < 0
        nq = np.where(flip[:, None], -nq, nq)
        summed = wb[:, None] * nb + wq[:, None] * nq
        lengths = np.linalg.norm(summed, axis=1, keepdims=True)
        return np.where(lengths > 1e-12, summed / np.maximum(lengths, 1e-12), np.nan)

    @staticmethod
    def _blend_optional(x: np.ndarray, y: np.ndarray, wx: np.ndarray, wy: np.ndarray) -> np.ndarray:
        has_x = np.all(np.isfinite(x), axis=1)
        has_y = np.all(np.isfinite(y), axis=1)
        blended = (wx[:, None] * np.where(has_x[:, None], x, 0.0) + wy[:, None] * np.where(has_y[:, None], y, 0.0))
        blended /= (wx + wy)[:, None]
        out = np.where((has_x & has_y)[:, None], blended, np.where(has_x[:, None], x, y))
        return out

    def _unmatched(self, cloud: PointCloud, mask: np.ndarray, is_a: bool) -> PointCloud:
        """Unmatched points keep their attributes; only confidence follows the policy."""
        rest = cloud.subset(mask)
        if len(rest) == 0:
            return rest
        policy = self.config.unmatched_confidence_policy
        if policy == "keep":
            return rest
        if policy == "fixed":
            value = self.config.fixed_depth_confidence if is_a else self.config.fixed_image_confidence
            return rest.replace(confidences=np.full(len(rest), value))
        support = self.local_support(cloud)[mask]
        return rest.replace(confidences=np.clip(rest.confidences * support, 0.0, 1.0))

    def local_support(self, cloud: PointCloud) -> np.ndarray:
        """
        Per-point support in [0, 1] from the point's own source.

        Fill ratio of neighbours within max_fusion_distance (against
        support_neighbors) times the mean |dot| agreement of their normals.
        """
        n = len(cloud)
        if n < 2:
            return np.ones(n)
        k = min(self.config.support_neighbors + 1, n)
        idx, dist = self._candidates(cloud.positions, CKDTreeIndex(cloud.positions), k)
        idx, dist = idx[:, 1:], dist[:, 1:]
        near = dist <= self.config.max_fusion_distance
        fill = near.sum(axis=1) / float(self.config.support_neighbors)

        agreement = np.ones(n)
        if cloud.normals is not None:
            has_normal = cloud.normal_mask
            normals = np.where(has_normal[:, None], cloud.normals, 0.0)
            dots = np.abs(np.einsum('ni,nki->nk', normals, normals[idx]))
            valid = near & has_normal[idx] & has_normal[:, None]
            counts = valid.sum(axis=1)
            mean_dot = np.where(counts > 0, np.sum(np.where(valid, dots, 0.0), axis=1) / np.maximum(counts, 1), 1.0)
            agreement = mean_dot
        return np.clip(fill, 0.0, 1.0) * np.clip(agreement, 0.0, 1.0)

    @staticmethod
    def _concatenate(clouds) -> PointCloud:
        clouds = [c for c in clouds if len(c)]
        if not clouds:
            return PointCloud.empty()

        def stack(attr: str, fill):
            if all(getattr(c, attr) is None for c in clouds):
                return None
            parts = []
            for c in clouds:
                value = getattr(c, attr)
                parts.append(value if value is not None else fill(len(c)))
            return np.concatenate(parts)

        return PointCloud(
            np.concatenate([c.positions for c in clouds]),
            normals=stack('normals', lambda n: np.full((n, 3), np.nan)),
            confidences=np.concatenate([c.confidences for c in clouds]),
            colors=stack('colors', lambda n: np.full((n, 3), np.nan)),
            sources=stack('sources', lambda n: np.full(n, SourceType.FUSED.value, dtype=np.int8)),
        )
