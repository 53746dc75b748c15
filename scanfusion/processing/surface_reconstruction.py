"""
Surface reconstruction from a fused or selected point cloud.

1. Orientation: a plane is fitted to the k nearest neighbours of every point.
   The smallest-eigenvalue direction becomes the normal and a confidence
   from planarity and local density decides whether the point is kept.
2. Implicit field: a truncated signed distance to the oriented points is
   sampled on a uniform grid, slab by slab.
3. Extraction: marching cubes over the grid cells near the data, with vertex
   normals taken from the field gradient.
"""

import logging
import time
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import ndimage
from skimage import measure

from ..core.utils import CancellationToken, Deadline, WorkerPool
from .compute_backend import ComputeBackend, NumpyBackend
from .config import ReconstructionConfig
from .data_types import BoundingBox, MeshData, PointCloud
from .exceptions import InsufficientDataError, ProcessingTimeoutError, handle_processing_error
from .normals import estimate_local_frames, orient_normals
from .spatial_index import CKDTreeIndex

logger = logging.getLogger(__name__)


class SurfaceReconstructor:
    """Oriented-point iso-surface reconstruction."""

    def __init__(self,
                 config: Optional[ReconstructionConfig] = None,
                 backend: Optional[ComputeBackend] = None,
                 worker_pool: Optional[WorkerPool] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or ReconstructionConfig()
        self.backend = backend or NumpyBackend()
        self.worker_pool = worker_pool
        self.cancel_token = cancel_token
        self._clock = clock
        self.last_timeout: Optional[ProcessingTimeoutError] = None

    def _check_cancel(self):
        if self.cancel_token is not None:
            self.cancel_token.check("surface reconstruction")

    def orient(self, cloud: PointCloud, viewpoint: Optional[np.ndarray] = None) -> PointCloud:
        """
        Estimate, score and orient a normal for every point.

        Points with a degenerate neighbourhood or an orientation confidence
        below min_orientation_confidence are dropped.

        Args:
            cloud: Input cloud; existing normals only decide the sign
            viewpoint: Optional sensor position the normals should face

        Returns:
            Oriented cloud whose confidences combine input and orientation confidence
        """
        n = len(cloud)
        if n < 3:
            return cloud.subset(np.zeros(n, dtype=bool))

        index = CKDTreeIndex(cloud.positions)
        k = min(self.config.orientation_k, n - 1)
        frames = estimate_local_frames(cloud.positions, index, k, self.backend,
                                       self.worker_pool, self.cancel_token,
                                       iterations=self.config.power_iterations)

        spacing = frames.distances.mean(axis=1)
        typical = float(np.median(spacing[frames.valid])) if np.any(frames.valid) else 0.0
        density = np.where(spacing > 0, np.clip(typical / np.maximum(spacing, 1e-12), 0.0, 1.0), 1.0)
        confidence = frames.planarity * density

        keep = frames.valid & (confidence >= self.config.min_orientation_confidence)
        normals = orient_normals(cloud.positions, frames.normals, reference_normals=cloud.normals,
                                 viewpoint=viewpoint, neighbors=frames.neighbors, mask=keep)

        logger.info(f"Orientation kept {int(keep.sum())} of {n} points (k={k})")
        oriented = cloud.replace(normals=normals, confidences=cloud.confidences * confidence)
        return oriented.subset(keep)

    def _grid(self, box: BoundingBox, resolution: int) -> Tuple[np.ndarray, float, Tuple[int, int, int]]:
        resolution = int(min(max(resolution, 4), self.config.max_resolution))
        extent = float(max(box.size.max(), 1e-6))
        spacing = extent / resolution
        pad = self.config.padding_cells
        dims = tuple(int(np.ceil(s / spacing)) + 1 + 2 * pad for s in box.size)
        origin = box.min_corner - pad * spacing
        return origin, spacing, dims

    def build_field(self, oriented: PointCloud, resolution: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float, bool]:
        """
        Sample a truncated signed distance field.

        The value at a grid node is the weighted mean of (node - p) . n over its
        nearest oriented points, positive on the side the normals face.

        Returns:
            (field, near_mask, origin, spacing, partial); near_mask marks nodes
            within the truncation distance of the data, partial is True when the
            time budget stopped sampling early
        """
        origin, spacing, dims = self._grid(oriented.bounding_box(), resolution)
        truncation = self.config.truncation_cells * spacing
        field = np.full(dims, truncation, dtype=np.float64)
        near = np.zeros(dims, dtype=bool)

        index = CKDTreeIndex(oriented.positions)
        k = min(self.config.field_neighbors, len(oriented))
        positions, normals, weights = oriented.positions, oriented.normals, np.maximum(oriented.confidences, 1e-6)
        deadline = Deadline(self.config.time_budget, clock=self._clock)

        ys = origin[1] + spacing * np.arange(dims[1])
        zs = origin[2] + spacing * np.arange(dims[2])
        gy, gz = np.meshgrid(ys, zs, indexing='ij')
        slab_yz = np.stack([gy.ravel(), gz.ravel()], axis=1)

        partial = False
        for ix in range(dims[0]):
            self._check_cancel()
            if deadline.expired():
                partial = True
                self.last_timeout = ProcessingTimeoutError("surface reconstruction", deadline.elapsed())
                logger.warning(f"Field sampling stopped by time budget at slab {ix}/{dims[0]}")
                break

            nodes = np.column_stack([np.full(len(slab_yz), origin[0] + ix * spacing), slab_yz])
            idx, dist = index.k_nearest_batch(nodes, k)
            is_near = dist[:, 0] <= truncation
            if not np.any(is_near):
                continue

            idx, dist, nodes = idx[is_near], dist[is_near], nodes[is_near]
            offsets = nodes[:, None, :] - positions[idx]
            signed = np.einsum('nki,nki->nk', offsets, normals[idx])
            w = weights[idx] * np.exp(-0.5 * (dist / spacing) ** 2)
            w_sum = w.sum(axis=1)
            value = np.where(w_sum > 1e-300, (w * signed).sum(axis=1) / np.maximum(w_sum, 1e-300), signed[:, 0])

            slab_field = field[ix].reshape(-1)
            slab_near = near[ix].reshape(-1)
            slab_field[is_near] = np.clip(value, -truncation, truncation)
            slab_near[is_near] = True
            field[ix] = slab_field.reshape(dims[1], dims[2])
            near[ix] = slab_near.reshape(dims[1], dims[2])

        return field, near, origin, spacing, partial

    def extract(self, field: np.ndarray, near: np.ndarray, origin: np.ndarray, spacing: float,
                oriented: PointCloud) -> MeshData:
        """Run marching cubes on the zero level set and attach normals and confidence."""
        values = field[near]
        if values.size == 0 or values.min() > 0.0 or values.max() < 0.0:
            raise InsufficientDataError("iso-surface crossings", 1, 0)

        try:
            verts, faces, mc_normals, _ = measure.marching_cubes(
                field, level=0.0, spacing=(spacing, spacing, spacing),
                allow_degenerate=False, mask=near
            )
        except (ValueError, RuntimeError) as e:
            raise InsufficientDataError("iso-surface crossings", 1, 0) from e
        if len(faces) == 0:
            raise InsufficientDataError("iso-surface triangles", 1, 0)

        # Normals follow the field gradient, which points to the outside
        grid_coords = (verts / spacing).T
        gradient = np.stack([
            ndimage.map_coordinates(g, grid_coords, order=1, mode='nearest')
            for g in np.gradient(field)
        ], axis=1)
        lengths = np.linalg.norm(gradient, axis=1, keepdims=True)
        fallback = -mc_normals / np.maximum(np.linalg.norm(mc_normals, axis=1, keepdims=True), 1e-12)
        normals = np.where(lengths > 1e-12, gradient / np.maximum(lengths, 1e-12), fallback)
        vertices = verts + origin

        faces = self._consistent_winding(vertices, faces.astype(np.int64), normals)

        index = CKDTreeIndex(oriented.positions)
        nearest, distance = index.k_nearest_batch(vertices, 1)
        falloff = np.clip(1.0 - distance[:, 0] / (self.config.truncation_cells * spacing), 0.0, 1.0)
        confidence = oriented.confidences[nearest[:, 0]] * falloff

        return MeshData(vertices, normals, faces, confidence)

    @staticmethod
    def _consistent_winding(vertices: np.ndarray, faces: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """Flip triangles whose winding disagrees with their vertex normals."""
        a, b, c = vertices[faces[:, 0]], vertices[faces[:, 1]], vertices[faces[:, 2]]
        face_normals = np.cross(b - a, c - a)
        vertex_normals = normals[faces].sum(axis=1)
        flip = np.sum(face_normals * vertex_normals, axis=1) < 0
        faces = faces.copy()
        faces[flip] = faces[flip][:, [0, 2, 1]]
        return faces

    @handle_processing_error("surface reconstruction")
    def reconstruct(self,
                    cloud: PointCloud,
                    resolution: Optional[int] = None,
                    bounding_box: Optional[BoundingBox] = None,
                    viewpoint: Optional[np.ndarray] = None) -> MeshData:
        """
        Reconstruct a triangle mesh from points.

        Args:
            cloud: Fused or selected point cloud
            resolution: Grid cells along the longest axis (capped at max_resolution)
            bounding_box: Optional scan volume; points outside are ignored
            viewpoint: Optional sensor position used to orient normals

        Returns:
            MeshData with a 'surface_reconstruction' processing step

        Raises:
            InsufficientDataError: Too few usable points or no surface crossing
        """
        start_time = time.time()
        self.last_timeout = None
        resolution = resolution or self.config.resolution

        if bounding_box is not None:
            cloud = cloud.subset(bounding_box.contains(cloud.positions))
        if len(cloud) < self.config.min_points:
            raise InsufficientDataError("points for reconstruction", self.config.min_points, len(cloud))

        oriented = self.orient(cloud, viewpoint=viewpoint)
        if len(oriented) < self.config.min_points:
            raise InsufficientDataError("oriented points", self.config.min_points, len(oriented))
        self._check_cancel()

        field, near, origin, spacing, partial = self.build_field(oriented, resolution)
        self._check_cancel()
        mesh = self.extract(field, near, origin, spacing, oriented)

        elapsed = time.time() - start_time
        logger.info(f"Reconstructed mesh with {mesh.vertex_count} vertices and {mesh.triangle_count} "
                    f"triangles from {len(oriented)} oriented points ({elapsed:.2f}s)")
        return mesh.with_step(
            "surface_reconstruction",
            resolution=int(min(resolution, self.config.max_resolution)),
            grid_shape=list(field.shape),
            cell_size=spacing,
            input_points=len(cloud),
            oriented_points=len(oriented),
            partial=partial,
            elapsed=elapsed,
        )
