"""
Conversions between ScanFusion data types and Open3D geometry.
"""

import logging
from typing import Optional

import numpy as np

# Open3D is an optional extra
try:
    import open3d as o3d

    OPEN3D_AVAILABLE = True
except ImportError:
    OPEN3D_AVAILABLE = False

from ..processing.data_types import MeshData, PointCloud
from ..processing.exceptions import DependencyError

logger = logging.getLogger(__name__)


def _require_open3d(purpose: str):
    if not OPEN3D_AVAILABLE:
        raise DependencyError("open3d", purpose)


def to_open3d_point_cloud(cloud: PointCloud) -> "o3d.geometry.PointCloud":
    """
    Convert a PointCloud to an Open3D point cloud.

    Points without a normal get a zero normal; missing colors are left unset.
    """
    _require_open3d("point cloud conversion")
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(cloud.positions, dtype=np.float64))
    if cloud.normals is not None:
        normals = np.where(cloud.normal_mask[:, None], cloud.normals, 0.0)
        pcd.normals = o3d.utility.Vector3dVector(normals)
    if cloud.colors is not None and np.all(np.isfinite(cloud.colors)):
        pcd.colors = o3d.utility.Vector3dVector(np.clip(cloud.colors, 0.0, 1.0))
    return pcd


def from_open3d_point_cloud(pcd: "o3d.geometry.PointCloud",
                            confidences: Optional[np.ndarray] = None) -> PointCloud:
    _require_open3d("point cloud conversion")
    positions = np.asarray(pcd.points)
    normals = np.asarray(pcd.normals) if pcd.has_normals() else None
    colors = np.asarray(pcd.colors) if pcd.has_colors() else None
    return PointCloud(positions, normals=normals, confidences=confidences, colors=colors)


def to_open3d_mesh(mesh: MeshData) -> "o3d.geometry.TriangleMesh":
    """Convert a MeshData to an Open3D triangle mesh (vertex confidence is not carried)."""
    _require_open3d("mesh conversion")
    o3d_mesh = o3d.geometry.TriangleMesh()
    o3d_mesh.vertices = o3d.utility.Vector3dVector(np.asarray(mesh.vertices, dtype=np.float64))
    o3d_mesh.triangles = o3d.utility.Vector3iVector(np.asarray(mesh.indices, dtype=np.int32))
    o3d_mesh.vertex_normals = o3d.utility.Vector3dVector(np.asarray(mesh.normals, dtype=np.float64))
    return o3d_mesh


def from_open3d_mesh(o3d_mesh: "o3d.geometry.TriangleMesh",
                     confidence: Optional[np.ndarray] = None) -> MeshData:
    _require_open3d("mesh conversion")
    if not o3d_mesh.has_vertex_normals():
        o3d_mesh.compute_vertex_normals()
    return MeshData(
        np.asarray(o3d_mesh.vertices),
        np.asarray(o3d_mesh.vertex_normals),
        np.asarray(o3d_mesh.triangles),
        confidence,
        {'processing_steps': [{'step': 'open3d_import'}]},
    )


def visualize(*geometries, window_name: str = "ScanFusion") -> None:
    """Show PointCloud / MeshData objects in an Open3D window."""
    _require_open3d("visualization")
    converted = []
    for geometry in geometries:
        if isinstance(geometry, MeshData):
            converted.append(to_open3d_mesh(geometry))
        elif isinstance(geometry, PointCloud):
            converted.append(to_open3d_point_cloud(geometry))
        else:
            converted.append(geometry)
    o3d.visualization.draw_geometries(converted, window_name=window_name)
