"""
Data model shared by all processing stages.

Point clouds and meshes are value objects: their arrays are made read-only on
construction and every stage returns a new instance instead of mutating its
input, so before/after results can always be compared.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..core.constants import BOUNDING_BOX_PADDING, DEGENERATE_AREA_EPSILON


def _frozen(array: Optional[np.ndarray], dtype=np.float64, shape_tail: Tuple[int, ...] = ()) -> Optional[np.ndarray]:
    """Copy an array into a read-only buffer of the given dtype."""
    if array is None:
        return None
    out = np.array(array, dtype=dtype, copy=True)
    if shape_tail and out.size == 0:
        out = out.reshape((0,) + shape_tail)
    out.setflags(write=False)
    return out


class ScanningStrategy(Enum):
    """Sensing strategies selected by the strategy controller."""
    DEPTH_ONLY = "depth_only"
    IMAGE_ONLY = "image_only"
    FUSED = "fused"
    NEEDS_RECALIBRATION = "needs_recalibration"


class SourceType(Enum):
    """Provenance of a point in a (possibly fused) cloud."""
    DEPTH = 0
    IMAGE = 1
    FUSED = 2


@dataclass(frozen=True)
class Point:
    """A single 3D sample."""
    position: np.ndarray
    normal: Optional[np.ndarray] = None
    confidence: float = 1.0


@dataclass(frozen=True)
class Feature:
    """
    A tracked surface feature used to weight decimation.

    Attributes:
        position: 3D position
        normal: Surface normal at the feature
        confidence: Detection strength in [0, 1]
        feature_id: Stable identity across frames
    """
    position: np.ndarray
    normal: np.ndarray
    confidence: float
    feature_id: int


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box."""
    min_corner: np.ndarray
    max_corner: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, 'min_corner', _frozen(np.asarray(self.min_corner).reshape(3)))
        object.__setattr__(self, 'max_corner', _frozen(np.asarray(self.max_corner).reshape(3)))

    @classmethod
    def from_points(cls, points: np.ndarray, padding: float = 0.0) -> 'BoundingBox':
        """
        Build the tight box around a set of points.

        Args:
            points: (N, 3) array
            padding: Distance added on every side

        Returns:
            Bounding box
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return cls(np.zeros(3), np.zeros(3))
        return cls(points.min(axis=0) - padding, points.max(axis=0) + padding)

    @property
    def center(self) -> np.ndarray:
        return (self.min_corner + self.max_corner) * 0.5

    @property
    def size(self) -> np.ndarray:
        return self.max_corner - self.min_corner

    @property
    def volume(self) -> float:
        return float(np.prod(np.maximum(self.size, 0.0)))

    @property
    def diagonal(self) -> float:
        return float(np.linalg.norm(self.size))

    def padded(self, padding: float = BOUNDING_BOX_PADDING) -> 'BoundingBox':
        """Return a copy grown by padding on every side."""
        return BoundingBox(self.min_corner - padding, self.max_corner + padding)

    def contains(self, points: np.ndarray) -> np.ndarray:
        """Boolean mask of the points lying inside the box (boundary included)."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return np.all((points >= self.min_corner) & (points <= self.max_corner), axis=1)

    def distance_to(self, point: np.ndarray) -> float:
        """Euclidean distance from a point to the box (0 inside)."""
        delta = np.maximum(np.maximum(self.min_corner - point, 0.0), point - self.max_corner)
        return float(np.linalg.norm(delta))


class PointCloud:
    """
    Ordered, immutable collection of points.

    Normals are optional per point: rows of NaN mark points without a normal.
    Fused clouds may likewise carry NaN color rows for points whose source had
    no color.
    """

    def __init__(self,
                 positions: np.ndarray,
                 normals: Optional[np.ndarray] = None,
                 confidences: Optional[np.ndarray] = None,
                 colors: Optional[np.ndarray] = None,
                 sources: Optional[np.ndarray] = None):
        """
        Initialize a point cloud.

        Args:
            positions: (N, 3) positions
            normals: Optional (N, 3) unit normals, NaN rows where absent
            confidences: Optional (N,) confidences in [0, 1] (default 1.0)
            colors: Optional (N, 3) RGB colors in [0, 1]
            sources: Optional (N,) SourceType values
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        n = len(positions)

        if normals is not None:
            normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
            if len(normals) != n:
                raise ValueError(f"Expected {n} normals, got {len(normals)}")
        if confidences is None:
            confidences = np.ones(n)
        confidences = np.asarray(confidences, dtype=np.float64).reshape(-1)
        if len(confidences) != n:
            raise ValueError(f"Expected {n} confidences, got {len(confidences)}")
        if colors is not None:
            colors = np.asarray(colors, dtype=np.float64).reshape(-1, 3)
            if len(colors) != n:
                raise ValueError(f"Expected {n} colors, got {len(colors)}")
        if sources is not None:
            sources = np.asarray(sources, dtype=np.int8).reshape(-1)
            if len(sources) != n:
                raise ValueError(f"Expected {n} source labels, got {len(sources)}")

        self._positions = _frozen(positions, shape_tail=(3,))
        self._normals = _frozen(normals, shape_tail=(3,))
        self._confidences = _frozen(np.clip(confidences, 0.0, 1.0))
        self._colors = _frozen(colors, shape_tail=(3,))
        self._sources = _frozen(sources, dtype=np.int8)

    @classmethod
    def from_points(cls, points: Sequence[Point]) -> 'PointCloud':
        """Build a cloud from individual Point records."""
        positions = np.array([p.position for p in points], dtype=np.float64).reshape(-1, 3)
        confidences = np.array([p.confidence for p in points], dtype=np.float64)
        normals = None
        if any(p.normal is not None for p in points):
            normals = np.array([p.normal if p.normal is not None else (np.nan, np.nan, np.nan)
                                for p in points], dtype=np.float64).reshape(-1, 3)
        return cls(positions, normals=normals, confidences=confidences)

    @classmethod
    def empty(cls) -> 'PointCloud':
        return cls(np.zeros((0, 3)))

    @property
    def positions(self) -> np.ndarray:
        return self._positions

    @property
    def normals(self) -> Optional[np.ndarray]:
        return self._normals

    @property
    def confidences(self) -> np.ndarray:
        return self._confidences

    @property
    def colors(self) -> Optional[np.ndarray]:
        return self._colors

    @property
    def sources(self) -> Optional[np.ndarray]:
        return self._sources

    @property
    def has_normals(self) -> bool:
        return self._normals is not None and bool(np.any(self.normal_mask))

    @property
    def normal_mask(self) -> np.ndarray:
        """Boolean mask of the points that carry a normal."""
        if self._normals is None:
            return np.zeros(len(self), dtype=bool)
        return np.all(np.isfinite(self._normals), axis=1)

    def __len__(self) -> int:
        return len(self._positions)

    def __getitem__(self, index: int) -> Point:
        normal = None
        if self._normals is not None and np.all(np.isfinite(self._normals[index])):
            normal = self._normals[index]
        return Point(position=self._positions[index], normal=normal,
                     confidence=float(self._confidences[index]))

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    def __repr__(self) -> str:
        return f"PointCloud(n={len(self)}, normals={self._normals is not None}, colors={self._colors is not None})"

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_points(self._positions)

    def subset(self, selection: Union[np.ndarray, Sequence[int]]) -> 'PointCloud':
        """Return a new cloud with the selected points (boolean mask or indices)."""
        selection = np.asarray(selection)
        return PointCloud(
            self._positions[selection],
            normals=None if self._normals is None else self._normals[selection],
            confidences=self._confidences[selection],
            colors=None if self._colors is None else self._colors[selection],
            sources=None if self._sources is None else self._sources[selection],
        )

    def replace(self, **changes) -> 'PointCloud':
        """Return a copy with some attribute arrays replaced."""
        values = {
            'positions': self._positions,
            'normals': self._normals,
            'confidences': self._confidences,
            'colors': self._colors,
            'sources': self._sources,
        }
        values.update(changes)
        return PointCloud(**values)

    def transformed(self, rotation: np.ndarray, translation: np.ndarray) -> 'PointCloud':
        """Apply a rigid transform to positions and normals."""
        rotation = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
        translation = np.asarray(translation, dtype=np.float64).reshape(3)
        normals = None if self._normals is None else self._normals @ rotation.T
        return self.replace(positions=self._positions @ rotation.T + translation, normals=normals)

    def with_source(self, source: SourceType) -> 'PointCloud':
        """Label every point with the same provenance."""
        return self.replace(sources=np.full(len(self), source.value, dtype=np.int8))


@dataclass(frozen=True)
class AlignmentResult:
    """
    Outcome of a rigid registration.

    Attributes:
        rotation: (3, 3) rotation matrix
        translation: (3,) translation vector
        residual: Mean point-to-point distance after alignment (inf on failure)
        iterations: Number of iterations executed
        converged: Whether the convergence threshold was met
        correspondences: Valid correspondences in the last iteration
        failed: True when alignment aborted (identity transform returned)
        timed_out: True when the time budget stopped the iterations
        residual_history: Residual after each iteration
    """
    rotation: np.ndarray
    translation: np.ndarray
    residual: float
    iterations: int
    converged: bool
    correspondences: int = 0
    failed: bool = False
    timed_out: bool = False
    residual_history: Tuple[float, ...] = ()

    @classmethod
    def identity_failure(cls, iterations: int = 0, correspondences: int = 0) -> 'AlignmentResult':
        """Identity transform with infinite residual, signalling a failed alignment."""
        return cls(rotation=np.eye(3), translation=np.zeros(3), residual=float('inf'),
                   iterations=iterations, converged=False, correspondences=correspondences,
                   failed=True)

    @property
    def transform(self) -> np.ndarray:
        """Homogeneous (4, 4) transform."""
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Transform an (N, 3) array of points."""
        return np.asarray(points, dtype=np.float64) @ self.rotation.T + self.translation


@dataclass
class QualityMetrics:
    """
    Per-source quality measurements. All normalized values lie in [0, 1];
    alignment_residual is in meters, None when no alignment was run.
    """
    density: float = 0.0
    normal_consistency: float = 0.0
    completeness: float = 0.0
    noise_level: float = 0.0
    feature_preservation: float = 1.0
    alignment_residual: Optional[float] = None
    point_count: int = 0

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            'density': self.density,
            'normal_consistency': self.normal_consistency,
            'completeness': self.completeness,
            'noise_level': self.noise_level,
            'feature_preservation': self.feature_preservation,
            'alignment_residual': self.alignment_residual,
            'point_count': self.point_count,
        }


@dataclass(frozen=True)
class TransitionEvent:
    """An accepted strategy transition."""
    from_strategy: ScanningStrategy
    to_strategy: ScanningStrategy
    timestamp: float
    metrics: Any = None
    reason: str = ""


class MeshData:
    """
    Immutable triangle mesh with per-vertex normals and confidence.

    Vertex, normal and confidence arrays are parallel; indices is an (M, 3)
    triangle list. metadata['processing_steps'] records the stages that
    produced this mesh.
    """

    def __init__(self,
                 vertices: np.ndarray,
                 normals: np.ndarray,
                 indices: np.ndarray,
                 confidence: Optional[np.ndarray] = None,
                 metadata: Optional[Dict[str, Any]] = None):
        vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
        if confidence is None:
            confidence = np.ones(len(vertices))
        confidence = np.asarray(confidence, dtype=np.float64).reshape(-1)

        if len(normals) != len(vertices) or len(confidence) != len(vertices):
            raise ValueError(
                f"Parallel arrays differ in length: vertices={len(vertices)}, "
                f"normals={len(normals)}, confidence={len(confidence)}"
            )
        if len(indices) and (indices.min() < 0 or indices.max() >= len(vertices)):
            raise ValueError("Triangle indices reference missing vertices")

        self._vertices = _frozen(vertices, shape_tail=(3,))
        self._normals = _frozen(normals, shape_tail=(3,))
        self._indices = _frozen(indices, dtype=np.int64, shape_tail=(3,))
        self._confidence = _frozen(np.clip(confidence, 0.0, 1.0))
        metadata = dict(metadata or {})
        metadata['processing_steps'] = list(metadata.get('processing_steps', []))
        self._metadata = metadata

    @classmethod
    def empty(cls) -> 'MeshData':
        return cls(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros((0, 3), dtype=np.int64))

    @property
    def vertices(self) -> np.ndarray:
        return self._vertices

    @property
    def normals(self) -> np.ndarray:
        return self._normals

    @property
    def indices(self) -> np.ndarray:
        return self._indices

    @property
    def confidence(self) -> np.ndarray:
        return self._confidence

    @property
    def metadata(self) -> Dict[str, Any]:
        # Shallow copy so callers cannot edit the recorded history
        return {**self._metadata, 'processing_steps': list(self._metadata['processing_steps'])}

    @property
    def processing_steps(self) -> List[Dict[str, Any]]:
        return list(self._metadata['processing_steps'])

    @property
    def vertex_count(self) -> int:
        return len(self._vertices)

    @property
    def triangle_count(self) -> int:
        return len(self._indices)

    def __repr__(self) -> str:
        return f"MeshData(vertices={self.vertex_count}, triangles={self.triangle_count})"

    def with_step(self, step: str, **info) -> 'MeshData':
        """Return the same geometry with one more processing step recorded."""
        metadata = self.metadata
        metadata['processing_steps'].append({'step': step, 'timestamp': time.time(), **info})
        return MeshData(self._vertices, self._normals, self._indices, self._confidence, metadata)

    def replace(self, **changes) -> 'MeshData':
        values = {
            'vertices': self._vertices,
            'normals': self._normals,
            'indices': self._indices,
            'confidence': self._confidence,
            'metadata': self.metadata,
        }
        values.update(changes)
        return MeshData(**values)

    def triangle_corners(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        v = self._vertices
        return v[self._indices[:, 0]], v[self._indices[:, 1]], v[self._indices[:, 2]]

    def face_normals(self, normalize: bool = True) -> np.ndarray:
        """Per-triangle normals (unnormalized cross products have length 2*area)."""
        if self.triangle_count == 0:
            return np.zeros((0, 3))
        a, b, c = self.triangle_corners()
        cross = np.cross(b - a, c - a)
        if not normalize:
            return cross
        lengths = np.linalg.norm(cross, axis=1, keepdims=True)
        return np.divide(cross, lengths, out=np.zeros_like(cross), where=lengths > 0)

    def triangle_areas(self) -> np.ndarray:
        return 0.5 * np.linalg.norm(self.face_normals(normalize=False), axis=1)

    def surface_area(self) -> float:
        return float(self.triangle_areas().sum())

    def degenerate_triangles(self, epsilon: float = DEGENERATE_AREA_EPSILON) -> np.ndarray:
        """Indices of triangles with area below epsilon or repeated corners."""
        if self.triangle_count == 0:
            return np.zeros(0, dtype=np.int64)
        idx = self._indices
        repeated = (idx[:, 0] == idx[:, 1]) | (idx[:, 1] == idx[:, 2]) | (idx[:, 0] == idx[:, 2])
        return np.nonzero(repeated | (self.triangle_areas() <= epsilon))[0]

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_points(self._vertices)

    def to_point_cloud(self) -> PointCloud:
        return PointCloud(self._vertices, normals=self._normals, confidences=self._confidence)
