"""
Mesh topology helpers, validation and quality analysis.

MeshValidator checks the invariants a refined mesh must satisfy (no
degenerate, duplicate or non-manifold faces, unit normals, bounded holes).
MeshQualityAnalyzer measures density, normal consistency, smoothness,
triangle shape and feature preservation against the configured floor.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from .compute_backend import ComputeBackend, NumpyBackend
from .config import MeshQualityFloor, RefinementConfig
from .data_types import Feature, MeshData
from .exceptions import InvalidTopologyError
from .spatial_index import CKDTreeIndex

logger = logging.getLogger(__name__)


# ==================== TOPOLOGY HELPERS ====================

def half_edges(indices: np.ndarray) -> np.ndarray:
    """Directed edges (a, b), (b, c), (c, a) of every triangle, shape (3M, 2)."""
    indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    return indices[:, [0, 1, 1, 2, 2, 0]].reshape(-1, 2)


def unique_edges(indices: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Undirected edges of a triangle list.

    Returns:
        (edges, face_counts, inverse): (E, 2) sorted vertex pairs, number of
        triangles using each edge, and the edge id of every half-edge
    """
    half = half_edges(indices)
    if len(half) == 0:
        return np.zeros((0, 2), dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    keys = np.sort(half, axis=1)
    edges, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    return edges, counts, inverse.reshape(-1)


def vertex_adjacency(indices: np.ndarray, vertex_count: int) -> sparse.csr_matrix:
    """Symmetric 0/1 vertex adjacency matrix."""
    edges, _, _ = unique_edges(indices)
    if len(edges) == 0:
        return sparse.csr_matrix((vertex_count, vertex_count))
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.ones(len(rows))
    return sparse.coo_matrix((data, (rows, cols)), shape=(vertex_count, vertex_count)).tocsr()


def boundary_vertices(indices: np.ndarray, vertex_count: int) -> np.ndarray:
    """Mask of vertices on an edge used by exactly one triangle."""
    edges, counts, _ = unique_edges(indices)
    mask = np.zeros(vertex_count, dtype=bool)
    mask[edges[counts == 1].reshape(-1)] = True
    return mask


def boundary_loops(indices: np.ndarray) -> List[List[int]]:
    """
    Chain boundary edges into loops of vertex ids.

    Boundary half-edges keep the direction of their triangle, so each loop is
    followed consistently. Chains that cannot be closed (non-manifold
    boundaries) are returned open.
    """
    half = half_edges(indices)
    if len(half) == 0:
        return []
    _, counts, inverse = unique_edges(indices)
    directed = half[counts[inverse] == 1]

    successors: Dict[int, List[int]] = {}
    for start, end in directed.tolist():
        successors.setdefault(start, []).append(end)

    visited = set()
    loops = []
    for start, end in directed.tolist():
        if (start, end) in visited:
            continue
        visited.add((start, end))
        loop = [start]
        current = end
        while current != start:
            loop.append(current)
            nxt = [w for w in successors.get(current, []) if (current, w) not in visited]
            if not nxt:
                break
            visited.add((current, nxt[0]))
            current = nxt[0]
        loops.append(loop)
    return loops


def loop_perimeter(vertices: np.ndarray, loop: Sequence[int]) -> float:
    points = vertices[np.asarray(loop, dtype=np.int64)]
    return float(np.linalg.norm(points - np.roll(points, -1, axis=0), axis=1).sum())


def compute_vertex_normals(vertices: np.ndarray, indices: np.ndarray,
                           fallback: Optional[np.ndarray] = None) -> np.ndarray:
    """Area-weighted vertex normals; vertices without faces keep their fallback normal."""
    normals = np.zeros((len(vertices), 3))
    if len(indices):
        a, b, c = vertices[indices[:, 0]], vertices[indices[:, 1]], vertices[indices[:, 2]]
        cross = np.cross(b - a, c - a)
        for corner in range(3):
            np.add.at(normals, indices[:, corner], cross)
    lengths = np.linalg.norm(normals, axis=1, keepdims=True)
    if fallback is None:
        fallback = np.tile([0.0, 0.0, 1.0], (len(vertices), 1))
    fallback = np.asarray(fallback, dtype=np.float64)
    fb_len = np.linalg.norm(fallback, axis=1, keepdims=True)
    fallback = np.where(fb_len > 1e-12, fallback / np.maximum(fb_len, 1e-12), [0.0, 0.0, 1.0])
    return np.where(lengths > 1e-20, normals / np.maximum(lengths, 1e-300), fallback)


# ==================== VALIDATION ====================

@dataclass
class ValidationReport:
    """Topology and attribute checks of one mesh."""
    vertex_count: int
    triangle_count: int
    degenerate_triangles: int = 0
    duplicate_triangles: int = 0
    non_manifold_edges: int = 0
    boundary_edges: int = 0
    hole_count: int = 0
    hole_perimeters: List[float] = field(default_factory=list)
    normal_violations: int = 0
    problems: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.problems

    @property
    def is_closed(self) -> bool:
        return self.boundary_edges == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            'vertex_count': self.vertex_count,
            'triangle_count': self.triangle_count,
            'degenerate_triangles': self.degenerate_triangles,
            'duplicate_triangles': self.duplicate_triangles,
            'non_manifold_edges': self.non_manifold_edges,
            'boundary_edges': self.boundary_edges,
            'hole_count': self.hole_count,
            'hole_perimeters': list(self.hole_perimeters),
            'normal_violations': self.normal_violations,
            'problems': list(self.problems),
            'is_valid': self.is_valid,
        }


class MeshValidator:
    """Checks the structural invariants of a MeshData."""

    def __init__(self, config: Optional[RefinementConfig] = None):
        self.config = config or RefinementConfig()

    def validate(self, mesh: MeshData) -> ValidationReport:
        """
        Inspect a mesh.

        When allow_open_boundary is set the longest boundary loop is treated
        as the rim of an open scan and not counted as a hole.
        """
        cfg = self.config
        report = ValidationReport(vertex_count=mesh.vertex_count, triangle_count=mesh.triangle_count)
        if mesh.triangle_count == 0:
            report.problems.append("mesh has no triangles")
            return report

        report.degenerate_triangles = int(len(mesh.degenerate_triangles(cfg.degenerate_epsilon)))
        sorted_faces = np.sort(mesh.indices, axis=1)
        report.duplicate_triangles = int(mesh.triangle_count - len(np.unique(sorted_faces, axis=0)))

        _, counts, _ = unique_edges(mesh.indices)
        report.non_manifold_edges = int(np.sum(counts > 2))
        report.boundary_edges = int(np.sum(counts == 1))

        loops = boundary_loops(mesh.indices) if report.boundary_edges else []
        perimeters = sorted((loop_perimeter(mesh.vertices, loop) for loop in loops), reverse=True)
        if cfg.allow_open_boundary and perimeters:
            perimeters = perimeters[1:]
        report.hole_count = len(perimeters)
        report.hole_perimeters = perimeters

        lengths = np.linalg.norm(mesh.normals, axis=1)
        report.normal_violations = int(np.sum(~np.isfinite(lengths) | (np.abs(lengths - 1.0) > cfg.normal_tolerance)))

        if report.degenerate_triangles:
            report.problems.append(f"{report.degenerate_triangles} degenerate triangles")
        if report.duplicate_triangles:
            report.problems.append(f"{report.duplicate_triangles} duplicate triangles")
        if report.non_manifold_edges:
            report.problems.append(f"{report.non_manifold_edges} non-manifold edges")
        if report.normal_violations:
            report.problems.append(f"{report.normal_violations} normals outside unit-length tolerance")
        if report.hole_count > cfg.max_hole_count:
            report.problems.append(f"{report.hole_count} holes (max {cfg.max_hole_count})")
        if perimeters and perimeters[0] > cfg.max_hole_perimeter:
            report.problems.append(f"hole perimeter {perimeters[0]:.4f} m exceeds {cfg.max_hole_perimeter:.4f} m")
        return report

    def ensure_valid(self, mesh: MeshData) -> ValidationReport:
        """Validate and raise InvalidTopologyError on the first problem."""
        report = self.validate(mesh)
        if not report.is_valid:
            raise InvalidTopologyError("; ".join(report.problems))
        return report


# ==================== QUALITY ANALYSIS ====================

@dataclass
class MeshQualityReport:
    """Quality measurements of a mesh, all normalized values in [0, 1]."""
    vertex_density: float  # vertices per m^2
    normal_consistency: float
    smoothness: float
    triangle_quality: float
    feature_preservation: float
    quality_score: float
    failures: List[Tuple[str, float, float]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, object]:
        return {
            'vertex_density': self.vertex_density,
            'normal_consistency': self.normal_consistency,
            'smoothness': self.smoothness,
            'triangle_quality': self.triangle_quality,
            'feature_preservation': self.feature_preservation,
            'quality_score': self.quality_score,
            'failures': [list(f) for f in self.failures],
        }


class MeshQualityAnalyzer:
    """Computes mesh quality metrics and compares them with the quality floor."""

    def __init__(self,
                 floor: Optional[MeshQualityFloor] = None,
                 feature_radius: float = 0.01,
                 backend: Optional[ComputeBackend] = None):
        self.floor = floor or MeshQualityFloor()
        self.feature_radius = feature_radius
        self.backend = backend or NumpyBackend()

    def analyze(self, mesh: MeshData, features: Optional[Sequence[Feature]] = None) -> MeshQualityReport:
        if mesh.triangle_count == 0:
            return MeshQualityReport(0.0, 0.0, 0.0, 0.0, 0.0, 0.0,
                                     failures=[('quality_score', 0.0, self.floor.min_quality_score)])

        face_normals = mesh.face_normals()
        area = mesh.surface_area()
        vertex_density = mesh.vertex_count / area if area > 0 else 0.0

        # Vertex normals against the normals of their incident faces
        per_corner = np.einsum('mki,mi->mk', mesh.normals[mesh.indices], face_normals)
        normal_consistency = float(np.clip(np.mean(np.maximum(per_corner, 0.0)), 0.0, 1.0))

        # Agreement of face normals across interior edges
        _, counts, inverse = unique_edges(mesh.indices)
        face_of_half = np.repeat(np.arange(mesh.triangle_count), 3)
        interior = counts[inverse] == 2
        if np.any(interior):
            order = np.argsort(inverse[interior], kind='stable')
            faces_sorted = face_of_half[interior][order]
            pairs = faces_sorted.reshape(-1, 2)
            dots = np.sum(face_normals[pairs[:, 0]] * face_normals[pairs[:, 1]], axis=1)
            smoothness = float(np.clip(np.mean(np.maximum(dots, 0.0)), 0.0, 1.0))
        else:
            smoothness = 1.0

        a, b, c = mesh.triangle_corners()
        triangle_quality = float(np.mean(self.backend.triangle_quality(a, b, c)))
        feature_preservation = self._feature_preservation(mesh, features)
        density_factor = min(1.0, vertex_density / self.floor.min_vertex_density) if self.floor.min_vertex_density > 0 else 1.0

        quality_score = (0.25 * normal_consistency + 0.25 * smoothness + 0.2 * triangle_quality +
                         0.2 * feature_preservation + 0.1 * density_factor)

        report = MeshQualityReport(
            vertex_density=float(vertex_density),
            normal_consistency=normal_consistency,
            smoothness=smoothness,
            triangle_quality=triangle_quality,
            feature_preservation=feature_preservation,
            quality_score=float(np.clip(quality_score, 0.0, 1.0)),
        )
        report.failures = self.check_floor(report)
        return report

    def _feature_preservation(self, mesh: MeshData, features: Optional[Sequence[Feature]]) -> float:
        if not features:
            return 1.0
        positions = np.array([f.position for f in features], dtype=np.float64).reshape(-1, 3)
        weights = np.clip(np.array([f.confidence for f in features], dtype=np.float64), 0.0, 1.0)
        _, distances = CKDTreeIndex(mesh.vertices).k_nearest_batch(positions, 1)
        covered = distances[:, 0] <= self.feature_radius
        if weights.sum() <= 0:
            return float(np.mean(covered))
        return float(np.sum(weights * covered) / weights.sum())

    def check_floor(self, report: MeshQualityReport) -> List[Tuple[str, float, float]]:
        """(metric, value, threshold) for every metric below the floor."""
        floor = self.floor
        checks = [
            ('vertex_density', report.vertex_density, floor.min_vertex_density),
            ('normal_consistency', report.normal_consistency, floor.min_normal_consistency),
            ('smoothness', report.smoothness, floor.min_smoothness),
            ('feature_preservation', report.feature_preservation, floor.min_feature_preservation),
            ('quality_score', report.quality_score, floor.min_quality_score),
        ]
        return [(name, value, threshold) for name, value, threshold in checks if value < threshold]
