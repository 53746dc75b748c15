"""
Synthetic geometry shared by the unit tests.
"""

import numpy as np

from scanfusion.processing.data_types import MeshData, PointCloud


def rotation_z(degrees: float) -> np.ndarray:
    angle = np.radians(degrees)
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def ellipsoid_points(n: int, radii=(0.1, 0.08, 0.06), seed: int = 0):
    """Points on an ellipsoid surface and their outward unit normals."""
    rng = np.random.default_rng(seed)
    directions = rng.normal(size=(n, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    radii = np.asarray(radii, dtype=np.float64)
    points = directions * radii
    normals = points / radii ** 2
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)
    return points, normals


def ellipsoid_cloud(n: int, radii=(0.1, 0.08, 0.06), seed: int = 0,
                    noise: float = 0.0, confidence: float = 0.9) -> PointCloud:
    points, normals = ellipsoid_points(n, radii, seed)
    if noise:
        points = points + np.random.default_rng(seed + 1000).uniform(-noise, noise, size=points.shape)
    return PointCloud(points, normals=normals, confidences=np.full(n, confidence))


def sphere_cloud(n: int, radius: float = 0.1, seed: int = 0, with_normals: bool = True) -> PointCloud:
    rng = np.random.default_rng(seed)
    directions = rng.normal(size=(n, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    return PointCloud(directions * radius, normals=directions if with_normals else None)


def plane_cloud(n_side: int, spacing: float = 0.005, z: float = 0.0, confidence: float = 0.9,
                n_other: int = None) -> PointCloud:
    """Regular (n_side x n_other) grid of points on the plane z = const with +z normals."""
    n_other = n_other or n_side
    xs, ys = np.meshgrid(np.arange(n_side) * spacing, np.arange(n_other) * spacing, indexing='ij')
    positions = np.column_stack([xs.ravel(), ys.ravel(), np.full(xs.size, z)])
    normals = np.tile([0.0, 0.0, 1.0], (len(positions), 1))
    return PointCloud(positions, normals=normals, confidences=np.full(len(positions), confidence))


def noisy_plane_points(n_side: int = 60, spacing: float = 0.002, sigma: float = 0.0002,
                       seed: int = 0) -> PointCloud:
    """Unoriented grid on z = 0 with Gaussian z noise, no normals."""
    xs, ys = np.meshgrid(np.arange(n_side) * spacing, np.arange(n_side) * spacing, indexing='ij')
    zs = np.random.default_rng(seed).normal(scale=sigma, size=xs.size)
    return PointCloud(np.column_stack([xs.ravel(), ys.ravel(), zs]))


def grid_mesh(n_side: int, size: float = 1.0, height=None) -> MeshData:
    """
    Triangulated (n_side x n_side) vertex grid in the xy plane.

    Args:
        n_side: Vertices per side
        size: Edge length of the square
        height: Optional function (x, y) -> z
    """
    coords = np.linspace(0.0, size, n_side)
    xs, ys = np.meshgrid(coords, coords, indexing='ij')
    zs = height(xs, ys) if height is not None else np.zeros_like(xs)
    vertices = np.column_stack([xs.ravel(), ys.ravel(), zs.ravel()])

    faces = []
    for i in range(n_side - 1):
        for j in range(n_side - 1):
            v00 = i * n_side + j
            v10 = (i + 1) * n_side + j
            v01 = i * n_side + j + 1
            v11 = (i + 1) * n_side + j + 1
            faces.append((v00, v10, v11))
            faces.append((v00, v11, v01))
    normals = np.tile([0.0, 0.0, 1.0], (len(vertices), 1))
    return MeshData(vertices, normals, np.array(faces, dtype=np.int64))


def octahedron_mesh() -> MeshData:
    """Closed, consistently wound octahedron with outward normals."""
    vertices = np.array([[1, 0, 0], [-1, 0, 0], [0, 1, 0], [0, -1, 0], [0, 0, 1], [0, 0, -1]], dtype=np.float64)
    faces = np.array([
        [0, 2, 4], [2, 1, 4], [1, 3, 4], [3, 0, 4],
        [2, 0, 5], [1, 2, 5], [3, 1, 5], [0, 3, 5],
    ], dtype=np.int64)
    return MeshData(vertices, vertices.copy(), faces)
