"""
Feature-aware mesh refinement.

Refinement runs in three steps:

* Decimation collapses edges in order of quadric error, scaled up around
  high-curvature regions and tracked features. A collapse is skipped when it
  breaks the link condition or flips a neighbouring triangle.
* Taubin smoothing moves vertices in alternating shrink/inflate passes,
  damped by vertex importance. Boundary vertices stay pinned.
* Validation returns the input mesh when the result has broken topology,
  and raises QualityBelowThresholdError when the result is below the
  quality floor.
"""

import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..core.utils import CancellationToken, Deadline
from .compute_backend import ComputeBackend, NumpyBackend
from .config import RefinementConfig
from .data_types import Feature, MeshData
from .exceptions import (InvalidTopologyError, ProcessingTimeoutError, QualityBelowThresholdError,
                         handle_processing_error)
from .mesh_validation import (MeshQualityAnalyzer, MeshQualityReport, MeshValidator, ValidationReport,
                              boundary_vertices, compute_vertex_normals, unique_edges, vertex_adjacency)

logger = logging.getLogger(__name__)

# Weight of the planes that keep open boundaries in place during decimation
BOUNDARY_QUADRIC_WEIGHT = 10.0
# Collapse systems with a worse condition number use the best endpoint or midpoint
MAX_QUADRIC_CONDITION = 1e8
# Heap pops between cancellation and deadline polls
CHECK_INTERVAL = 256


@dataclass
class RefinementMetrics:
    """Bookkeeping of one refinement pass."""
    input_triangles: int
    output_triangles: int = 0
    collapses: int = 0
    smoothing_iterations: int = 0
    elapsed: float = 0.0
    partial: bool = False
    rolled_back: bool = False
    validation: Optional[ValidationReport] = None
    quality: Optional[MeshQualityReport] = None
    topology_error: Optional[InvalidTopologyError] = None
    timeout: Optional[ProcessingTimeoutError] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'input_triangles': self.input_triangles,
            'output_triangles': self.output_triangles,
            'collapses': self.collapses,
            'smoothing_iterations': self.smoothing_iterations,
            'elapsed': self.elapsed,
            'partial': self.partial,
            'rolled_back': self.rolled_back,
            'validation': self.validation.to_dict() if self.validation else None,
            'quality': self.quality.to_dict() if self.quality else None,
            'topology_error': str(self.topology_error) if self.topology_error else None,
            'timeout': str(self.timeout) if self.timeout else None,
        }


def vertex_importance(mesh: MeshData,
                      features: Optional[Sequence[Feature]] = None,
                      feature_radius: float = 0.01,
                      curvature_weight: float = 1.0) -> np.ndarray:
    """
    Per-vertex importance in [0, 1].

    Local curvature is the mean normal deviation to the one-ring; each feature
    adds a Gaussian falloff around its position scaled by its confidence.
    The sum is normalized by its maximum.
    """
    n = mesh.vertex_count
    importance = np.zeros(n)
    if n == 0:
        return importance

    edges, _, _ = unique_edges(mesh.indices)
    if len(edges):
        deviation = 1.0 - np.abs(np.sum(mesh.normals[edges[:, 0]] * mesh.normals[edges[:, 1]], axis=1))
        total = np.bincount(edges[:, 0], weights=deviation, minlength=n) + \
            np.bincount(edges[:, 1], weights=deviation, minlength=n)
        degree = np.bincount(edges.reshape(-1), minlength=n)
        importance += curvature_weight * np.where(degree > 0, total / np.maximum(degree, 1), 0.0)

    if features:
        for feature in features:
            d2 = np.sum((mesh.vertices - np.asarray(feature.position, dtype=np.float64)) ** 2, axis=1)
            importance += float(np.clip(feature.confidence, 0.0, 1.0)) * np.exp(-d2 / (2.0 * feature_radius ** 2))

    peak = importance.max()
    return importance / peak if peak > 0 else importance


class QuadricDecimator:
    """Edge-collapse simplification driven by quadric error metrics."""

    def __init__(self, config: RefinementConfig,
                 backend: Optional[ComputeBackend] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.backend = backend or NumpyBackend()
        self.cancel_token = cancel_token
        self._clock = clock

    def _initial_quadrics(self, vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
        quadrics = np.zeros((len(vertices), 4, 4))
        a, b, c = vertices[faces[:, 0]], vertices[faces[:, 1]], vertices[faces[:, 2]]
        normals = np.cross(b - a, c - a)
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = np.where(lengths > 0, normals / np.maximum(lengths, 1e-300), 0.0)
        planes = np.concatenate([normals, -np.sum(normals * a, axis=1, keepdims=True)], axis=1)
        K = planes[:, :, None] * planes[:, None, :]
        for corner in range(3):
            np.add.at(quadrics, faces[:, corner], K)

        # Planes through boundary edges, perpendicular to their triangle
        edges, counts, inverse = unique_edges(faces)
        boundary_half = np.nonzero(counts[inverse] == 1)[0]
        if len(boundary_half):
            face_ids = boundary_half // 3
            local = boundary_half % 3
            start = faces[face_ids, local]
            end = faces[face_ids, (local + 1) % 3]
            direction = vertices[end] - vertices[start]
            perpendicular = np.cross(direction, normals[face_ids])
            plen = np.linalg.norm(perpendicular, axis=1, keepdims=True)
            perpendicular = np.where(plen > 0, perpendicular / np.maximum(plen, 1e-300), 0.0)
            bplanes = np.concatenate([perpendicular, -np.sum(perpendicular * vertices[start], axis=1,
                                                             keepdims=True)], axis=1)
            BK = BOUNDARY_QUADRIC_WEIGHT * bplanes[:, :, None] * bplanes[:, None, :]
            np.add.at(quadrics, start, BK)
            np.add.at(quadrics, end, BK)
        return quadrics

    def _collapse_targets(self, Q: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Error-minimizing positions and their errors for a batch of edge quadrics."""
        A = Q[:, :3, :3]
        b = -Q[:, :3, 3]
        positions = 0.5 * (p1 + p2)
        if len(Q):
            cond = np.linalg.cond(A)
            solvable = np.isfinite(cond) & (cond < MAX_QUADRIC_CONDITION)
            if np.any(solvable):
                positions[solvable] = np.linalg.solve(A[solvable], b[solvable][:, :, None])[:, :, 0]
            fallback = ~solvable
            if np.any(fallback):
                options = np.stack([p1[fallback], p2[fallback], positions[fallback]], axis=1)
                Qf = Q[fallback]
                errors = np.stack([self.backend.quadric_errors(Qf, options[:, i]) for i in range(3)], axis=1)
                best = np.argmin(errors, axis=1)
                positions[fallback] = options[np.arange(len(best)), best]
        return positions, self.backend.quadric_errors(Q, positions)

    def decimate(self, mesh: MeshData, importance: np.ndarray, target_triangles: int
                 ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray, int, bool]:
        """
        Collapse edges until the target is reached or no collapse stays within max_edge_error.

        Returns:
            (vertices, faces, normals, confidence, importance, collapses, timed_out)
            of the compacted mesh
        """
        cfg = self.config
        vertices = np.array(mesh.vertices, dtype=np.float64)
        faces = np.array(mesh.indices, dtype=np.int64)
        confidence = np.array(mesh.confidence, dtype=np.float64)
        importance = np.array(importance, dtype=np.float64)
        n_vertices = len(vertices)

        quadrics = self._initial_quadrics(vertices, faces)
        vertex_faces: List[Set[int]] = [set() for _ in range(n_vertices)]
        for f, tri in enumerate(faces.tolist()):
            for v in tri:
                vertex_faces[v].add(f)
        face_alive = np.ones(len(faces), dtype=bool)
        vertex_alive = np.ones(n_vertices, dtype=bool)
        on_boundary = boundary_vertices(faces, n_vertices)
        version = np.zeros(n_vertices, dtype=np.int64)
        triangle_count = len(faces)

        heap: List[tuple] = []
        counter = 0

        def push_edges(us: np.ndarray, vs: np.ndarray):
            nonlocal counter
            if len(us) == 0:
                return
            Q = quadrics[us] + quadrics[vs]
            positions, errors = self._collapse_targets(Q, vertices[us], vertices[vs])
            scale = 1.0 + cfg.feature_weight * np.maximum(importance[us], importance[vs])
            for u, v, pos, err, s in zip(us.tolist(), vs.tolist(), positions, errors.tolist(), scale.tolist()):
                heapq.heappush(heap, (err * s, counter, u, v, int(version[u]), int(version[v]), pos))
                counter += 1

        edges, _, _ = unique_edges(faces)
        push_edges(edges[:, 0], edges[:, 1])

        def neighbors(v: int) -> Set[int]:
            return {w for f in vertex_faces[v] for w in faces[f].tolist() if w != v}

        deadline = Deadline(cfg.time_budget, clock=self._clock)
        collapses = 0
        pops = 0
        timed_out = False
        while heap and triangle_count > target_triangles:
            pops += 1
            if pops % CHECK_INTERVAL == 0:
                if self.cancel_token is not None:
                    self.cancel_token.check("mesh refinement")
                if deadline.expired():
                    timed_out = True
                    logger.warning(f"Decimation stopped by time budget after {collapses} collapses")
                    break

            cost, _, u, v, ver_u, ver_v, position = heapq.heappop(heap)
            if not (vertex_alive[u] and vertex_alive[v]) or version[u] != ver_u or version[v] != ver_v:
                continue
            if cost > cfg.max_edge_error:
                break

            shared = vertex_faces[u] & vertex_faces[v]
            if not shared:
                continue
            boundary_edge = len(shared) == 1
            if on_boundary[u] and on_boundary[v] and not boundary_edge:
                continue
            # A boundary vertex stays in place unless the edge runs along the boundary
            if on_boundary[u] != on_boundary[v]:
                position = vertices[u] if on_boundary[u] else vertices[v]

            # Link condition: the common neighbours are exactly the opposite vertices
            opposite = {w for f in shared for w in faces[f].tolist() if w != u and w != v}
            if (neighbors(u) & neighbors(v)) != opposite:
                continue

            if not self._collapse_keeps_orientation(vertices, faces, vertex_faces, u, v, shared, position):
                continue

            for f in shared:
                face_alive[f] = False
                for w in faces[f].tolist():
                    vertex_faces[w].discard(f)
            for f in vertex_faces[v]:
                faces[f][faces[f] == v] = u
                vertex_faces[u].add(f)
            vertex_faces[v] = set()
            triangle_count -= len(shared)

            vertices[u] = position
            quadrics[u] = quadrics[u] + quadrics[v]
            importance[u] = max(importance[u], importance[v])
            confidence[u] = 0.5 * (confidence[u] + confidence[v])
            on_boundary[u] = on_boundary[u] or on_boundary[v]
            vertex_alive[v] = False
            version[u] += 1
            version[v] += 1
            collapses += 1

            ring = np.array(sorted(neighbors(u)), dtype=np.int64)
            push_edges(np.full(len(ring), u, dtype=np.int64), ring)

        faces = faces[face_alive]
        used = np.zeros(n_vertices, dtype=bool)
        used[faces.reshape(-1)] = True
        remap = -np.ones(n_vertices, dtype=np.int64)
        remap[used] = np.arange(int(used.sum()))
        faces = remap[faces]
        vertices = vertices[used]
        normals = compute_vertex_normals(vertices, faces, fallback=np.asarray(mesh.normals)[used])
        logger.debug(f"Decimation: {collapses} collapses, {mesh.triangle_count} -> {len(faces)} triangles")
        return vertices, faces, normals, confidence[used], importance[used], collapses, timed_out

    def _collapse_keeps_orientation(self, vertices, faces, vertex_faces, u, v, shared, position) -> bool:
        """Reject collapses that flip or degenerate a surviving triangle."""
        for f in (vertex_faces[u] | vertex_faces[v]) - shared:
            tri = faces[f]
            corners = vertices[tri]
            before = np.cross(corners[1] - corners[0], corners[2] - corners[0])
            moved = corners.copy()
            moved[(tri == u) | (tri == v)] = position
            after = np.cross(moved[1] - moved[0], moved[2] - moved[0])
            after_len = np.linalg.norm(after)
            if 0.5 * after_len <= self.config.degenerate_epsilon:
                return False
            before_len = np.linalg.norm(before)
            if before_len > 0 and np.dot(before, after) / (before_len * after_len) < 0.0:
                return False
        return True


def taubin_smooth(vertices: np.ndarray, faces: np.ndarray, importance: np.ndarray,
                  iterations: int, lam: float, mu: float,
                  backend: Optional[ComputeBackend] = None,
                  cancel_token: Optional[CancellationToken] = None) -> np.ndarray:
    """
    Feature-aware Taubin smoothing.

    Each iteration applies a shrinking step (lam) and an inflating step (mu)
    toward the one-ring centroid. The step of every vertex is scaled by
    1 - importance and boundary vertices do not move.
    """
    backend = backend or NumpyBackend()
    vertices = np.array(vertices, dtype=np.float64)
    if iterations <= 0 or len(faces) == 0:
        return vertices

    adjacency = vertex_adjacency(faces, len(vertices))
    degree = np.asarray(adjacency.sum(axis=1)).reshape(-1)
    movable = (degree > 0) & ~boundary_vertices(faces, len(vertices))
    damping = np.where(movable, 1.0 - np.clip(importance, 0.0, 1.0), 0.0)

    for _ in range(iterations):
        if cancel_token is not None:
            cancel_token.check("mesh smoothing")
        for factor in (lam, mu):
            neighbor_mean = (adjacency @ vertices) / np.maximum(degree, 1)[:, None]
            vertices = backend.laplacian_step(vertices, neighbor_mean, factor * damping)
    return vertices


class MeshRefiner:
    """Decimation, smoothing and validation of reconstructed meshes."""

    def __init__(self,
                 config: Optional[RefinementConfig] = None,
                 backend: Optional[ComputeBackend] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or RefinementConfig()
        self.backend = backend or NumpyBackend()
        self.cancel_token = cancel_token
        self._clock = clock

    @handle_processing_error("mesh refinement")
    def refine(self,
               mesh: MeshData,
               features: Optional[Sequence[Feature]] = None,
               config: Optional[RefinementConfig] = None) -> Tuple[MeshData, RefinementMetrics]:
        """
        Refine a mesh.

        Args:
            mesh: Mesh from the previous stage
            features: Tracked features to preserve
            config: Overrides the refiner configuration for this call

        Returns:
            (refined mesh, metrics). When the refined mesh fails topology
            validation the input mesh is returned and metrics.topology_error
            holds the reason.

        Raises:
            QualityBelowThresholdError: The refined mesh is below the quality
                floor, or decimation stopped above target_triangles without
                running out of time; the input mesh travels as fallback_mesh
        """
        cfg = config or self.config
        start_time = time.time()
        metrics = RefinementMetrics(input_triangles=mesh.triangle_count)
        validator = MeshValidator(cfg)
        analyzer = MeshQualityAnalyzer(cfg.quality_floor, cfg.feature_radius, self.backend)

        importance = vertex_importance(mesh, features, cfg.feature_radius, cfg.curvature_weight)
        vertices, faces = np.array(mesh.vertices), np.array(mesh.indices)
        normals, confidence = np.array(mesh.normals), np.array(mesh.confidence)

        if mesh.triangle_count > cfg.target_triangles:
            decimator = QuadricDecimator(cfg, self.backend, self.cancel_token, self._clock)
            vertices, faces, normals, confidence, importance, metrics.collapses, timed_out = \
                decimator.decimate(mesh, importance, cfg.target_triangles)
            if timed_out:
                metrics.partial = True
                metrics.timeout = ProcessingTimeoutError("mesh refinement", time.time() - start_time)

        if cfg.smoothing_iterations > 0 and len(faces):
            vertices = taubin_smooth(vertices, faces, importance, cfg.smoothing_iterations,
                                     cfg.taubin_lambda, cfg.taubin_mu, self.backend, self.cancel_token)
            normals = compute_vertex_normals(vertices, faces, fallback=normals)
            metrics.smoothing_iterations = cfg.smoothing_iterations

        try:
            refined = MeshData(vertices, normals, faces, confidence, mesh.metadata)
            metrics.validation = validator.ensure_valid(refined)
        except (InvalidTopologyError, ValueError) as e:
            error = e if isinstance(e, InvalidTopologyError) else InvalidTopologyError(str(e))
            metrics.topology_error = error
            metrics.rolled_back = True
            metrics.output_triangles = mesh.triangle_count
            metrics.elapsed = time.time() - start_time
            logger.warning(f"Refined mesh rejected, keeping previous mesh: {error.reason}")
            return mesh, metrics

        metrics.quality = analyzer.analyze(refined, features)
        metrics.output_triangles = refined.triangle_count
        metrics.elapsed = time.time() - start_time

        if not metrics.quality.passed:
            metric, value, threshold = metrics.quality.failures[0]
            logger.warning(f"Refined mesh below quality floor: {metric}={value:.3f} < {threshold:.3f}")
            raise QualityBelowThresholdError(metric, value, threshold, fallback_mesh=mesh, metrics=metrics)

        if not metrics.partial and refined.triangle_count > cfg.target_triangles:
            logger.warning(f"Decimation stopped at {refined.triangle_count} triangles, target "
                           f"{cfg.target_triangles} (max_edge_error {cfg.max_edge_error:g})")
            raise QualityBelowThresholdError('triangle_count', float(refined.triangle_count),
                                             float(cfg.target_triangles), fallback_mesh=mesh, metrics=metrics)

        logger.info(f"Refined mesh: {metrics.input_triangles} -> {metrics.output_triangles} triangles, "
                    f"score {metrics.quality.quality_score:.3f} ({metrics.elapsed:.2f}s)")
        return refined.with_step(
            "mesh_refinement",
            input_triangles=metrics.input_triangles,
            output_triangles=metrics.output_triangles,
            collapses=metrics.collapses,
            smoothing_iterations=metrics.smoothing_iterations,
            quality_score=metrics.quality.quality_score,
            partial=metrics.partial,
        ), metrics
