"""
Spatial indices for k-nearest-neighbour and radius queries over 3D points.

Three interchangeable backends share one interface:

* ``KDTreeIndex`` splits at the median of the widest axis.
* ``OctreeIndex`` subdivides a padded root box into eight children once a
  node exceeds its capacity.
* ``CKDTreeIndex`` wraps ``scipy.spatial.cKDTree`` and is the default for bulk
  queries (correspondence search, fusion matching, per-point metrics).

An index owns a read-only snapshot of the points it was built from and can be
queried from several threads at once. Rebuilding means building a new index.
"""

import heapq
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, Union

import numpy as np
from scipy.spatial import cKDTree

from ..core.constants import (
    BOUNDING_BOX_PADDING, DEFAULT_INDEX_BACKEND, DEFAULT_KDTREE_LEAF_SIZE,
    DEFAULT_OCTREE_CAPACITY, DEFAULT_OCTREE_MAX_DEPTH
)
from .data_types import BoundingBox, PointCloud

logger = logging.getLogger(__name__)

PointsLike = Union[np.ndarray, PointCloud]


def _as_points(points: PointsLike) -> np.ndarray:
    if isinstance(points, PointCloud):
        points = points.positions
    points = np.array(points, dtype=np.float64, copy=True).reshape(-1, 3)
    points.setflags(write=False)
    return points


def _empty_knn() -> Tuple[np.ndarray, np.ndarray]:
    return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float64)


class SpatialIndex(ABC):
    """Read-only nearest-neighbour index over a fixed point set."""

    def __init__(self, points: PointsLike):
        self._points = _as_points(points)

    @property
    def points(self) -> np.ndarray:
        return self._points

    def __len__(self) -> int:
        return len(self._points)

    @abstractmethod
    def k_nearest(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Find the k nearest points.

        Args:
            query: 3D query position
            k: Number of neighbours requested

        Returns:
            (indices, distances) of min(k, len(self)) points, ascending by distance
        """

    @abstractmethod
    def radius_search(self, query: np.ndarray, radius: float) -> np.ndarray:
        """Indices of all points within radius of query (boundary included), unordered."""

    def k_nearest_batch(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Run k_nearest for every row of queries.

        Returns:
            (indices, distances) arrays of shape (M, min(k, len(self)))
        """
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        k_eff = max(0, min(int(k), len(self)))
        indices = np.zeros((len(queries), k_eff), dtype=np.int64)
        distances = np.zeros((len(queries), k_eff), dtype=np.float64)
        for row, query in enumerate(queries):
            indices[row], distances[row] = self.k_nearest(query, k_eff)
        return indices, distances

    def radius_search_batch(self, queries: np.ndarray, radius: float) -> List[np.ndarray]:
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        return [self.radius_search(query, radius) for query in queries]


class KDTreeIndex(SpatialIndex):
    """
    k-d tree with median splits on the axis of widest extent.

    Nodes are stored in flat arrays. Points of node i occupy
    ``order[start[i]:stop[i]]``; for an internal node every point of the left
    child has ``coordinate <= split`` and every point of the right child has
    ``coordinate >= split`` on the split axis.
    """

    def __init__(self, points: PointsLike, leaf_size: int = DEFAULT_KDTREE_LEAF_SIZE):
        super().__init__(points)
        self.leaf_size = max(1, int(leaf_size))
        self._order = np.arange(len(self._points), dtype=np.int64)
        self._start: List[int] = []
        self._stop: List[int] = []
        self._axis: List[int] = []
        self._split: List[float] = []
        self._left: List[int] = []
        self._right: List[int] = []
        if len(self._points):
            self._build(0, len(self._points))
        self._order.setflags(write=False)
        logger.debug(f"Built k-d tree over {len(self._points)} points with {len(self._start)} nodes")

    def _new_node(self, start: int, stop: int) -> int:
        self._start.append(start)
        self._stop.append(stop)
        self._axis.append(-1)
        self._split.append(0.0)
        self._left.append(-1)
        self._right.append(-1)
        return len(self._start) - 1

    def _build(self, start: int, stop: int) -> int:
        node = self._new_node(start, stop)
        count = stop - start
        if count <= self.leaf_size:
            return node

        members = self._order[start:stop]
        coords = self._points[members]
        extent = coords.max(axis=0) - coords.min(axis=0)
        axis = int(np.argmax(extent))
        if extent[axis] <= 0.0:
            # All points coincide, nothing left to split
            return node

        mid = count // 2
        partition = np.argpartition(coords[:, axis], mid)
        self._order[start:stop] = members[partition]
        split = float(self._points[self._order[start + mid], axis])

        self._axis[node] = axis
        self._split[node] = split
        left = self._build(start, start + mid)
        right = self._build(start + mid, stop)
        self._left[node] = left
        self._right[node] = right
        return node

    @property
    def node_count(self) -> int:
        return len(self._start)

    def node_points(self, node: int) -> np.ndarray:
        """Indices of the points stored under a node."""
        return self._order[self._start[node]:self._stop[node]]

    def node_split(self, node: int) -> Tuple[int, float, int, int]:
        """(axis, split, left, right) of a node; axis is -1 for leaves."""
        return self._axis[node], self._split[node], self._left[node], self._right[node]

    def k_nearest(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        k = min(int(k), len(self._points))
        if k <= 0:
            return _empty_knn()
        query = np.asarray(query, dtype=np.float64).reshape(3)
        heap: List[Tuple[float, int]] = []  # max-heap of (-d2, index)

        def visit(node: int):
            axis = self._axis[node]
            if axis < 0:
                members = self.node_points(node)
                d2 = np.sum((self._points[members] - query) ** 2, axis=1)
                for dist2, idx in zip(d2.tolist(), members.tolist()):
                    if len(heap) < k:
                        heapq.heappush(heap, (-dist2, idx))
                    elif dist2 < -heap[0][0]:
                        heapq.heapreplace(heap, (-dist2, idx))
                return
            diff = query[axis] - self._split[node]
            near, far = (self._left[node], self._right[node]) if diff < 0 else (self._right[node], self._left[node])
            visit(near)
            # Skip the far side when the splitting plane is beyond the current k-th best
            if len(heap) < k or diff * diff <= -heap[0][0]:
                visit(far)

        visit(0)
        ranked = sorted((-neg, idx) for neg, idx in heap)
        indices = np.array([idx for _, idx in ranked], dtype=np.int64)
        distances = np.sqrt(np.array([d2 for d2, _ in ranked], dtype=np.float64))
        return indices, distances

    def radius_search(self, query: np.ndarray, radius: float) -> np.ndarray:
        if len(self._points) == 0 or radius < 0:
            return np.zeros(0, dtype=np.int64)
        query = np.asarray(query, dtype=np.float64).reshape(3)
        r2 = float(radius) ** 2
        found = []
        stack = [0]
        while stack:
            node = stack.pop()
            axis = self._axis[node]
            if axis < 0:
                members = self.node_points(node)
                d2 = np.sum((self._points[members] - query) ** 2, axis=1)
                found.append(members[d2 <= r2])
                continue
            diff = query[axis] - self._split[node]
            if diff <= radius:
                stack.append(self._left[node])
            if -diff <= radius:
                stack.append(self._right[node])
        if not found:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(found)


class OctreeNode:
    """Axis-aligned cell of an octree."""

    __slots__ = ('min_corner', 'max_corner', 'center', 'depth', 'children', 'indices')

    def __init__(self, min_corner: np.ndarray, max_corner: np.ndarray, depth: int):
        self.min_corner = min_corner
        self.max_corner = max_corner
        self.center = (min_corner + max_corner) * 0.5
        self.depth = depth
        self.children: Optional[List['OctreeNode']] = None
        self.indices: Optional[np.ndarray] = None

    @property
    def is_leaf(self) -> bool:
        return self.children is None

    def box_distance2(self, query: np.ndarray) -> float:
        delta = np.maximum(np.maximum(self.min_corner - query, 0.0), query - self.max_corner)
        return float(np.dot(delta, delta))

    def child_bounds(self, octant: int) -> Tuple[np.ndarray, np.ndarray]:
        """Box of a child; bit i of octant selects the upper half on axis i."""
        upper = np.array([(octant >> axis) & 1 for axis in range(3)], dtype=bool)
        lo = np.where(upper, self.center, self.min_corner)
        hi = np.where(upper, self.max_corner, self.center)
        return lo, hi


class OctreeIndex(SpatialIndex):
    """
    Octree over a padded root box.

    A node holding more than ``capacity`` points is split into eight children
    unless it is at ``max_depth``. Children partition the parent box at its
    center; points with a coordinate >= the center go to the upper half.
    """

    def __init__(self, points: PointsLike,
                 capacity: int = DEFAULT_OCTREE_CAPACITY,
                 max_depth: int = DEFAULT_OCTREE_MAX_DEPTH):
        super().__init__(points)
        self.capacity = max(1, int(capacity))
        self.max_depth = max(0, int(max_depth))

        box = BoundingBox.from_points(self._points)
        # Zero extent on an axis would give children without volume
        half = np.maximum(box.size * 0.5, BOUNDING_BOX_PADDING) + BOUNDING_BOX_PADDING
        self.root = OctreeNode(box.center - half, box.center + half, 0)
        self._node_count = 1
        self._subdivide(self.root, np.arange(len(self._points), dtype=np.int64))
        logger.debug(f"Built octree over {len(self._points)} points with {self._node_count} nodes")

    @property
    def node_count(self) -> int:
        return self._node_count

    def _subdivide(self, node: OctreeNode, members: np.ndarray):
        if len(members) <= self.capacity or node.depth >= self.max_depth:
            node.indices = members
            return
        coords = self._points[members]
        octants = ((coords[:, 0] >= node.center[0]).astype(np.int64)
                   | ((coords[:, 1] >= node.center[1]).astype(np.int64) << 1)
                   | ((coords[:, 2] >= node.center[2]).astype(np.int64) << 2))
        node.children = []
        for octant in range(8):
            lo, hi = node.child_bounds(octant)
            child = OctreeNode(lo, hi, node.depth + 1)
            self._node_count += 1
            node.children.append(child)
            self._subdivide(child, members[octants == octant])

    def iter_nodes(self):
        """Depth-first traversal of all nodes."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            if node.children:
                stack.extend(node.children)

    def k_nearest(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        k = min(int(k), len(self._points))
        if k <= 0:
            return _empty_knn()
        query = np.asarray(query, dtype=np.float64).reshape(3)

        best: List[Tuple[float, int]] = []  # max-heap of (-d2, index)
        frontier = [(self.root.box_distance2(query), 0, self.root)]
        counter = 1
        while frontier:
            box_d2, _, node = heapq.heappop(frontier)
            if len(best) == k and box_d2 > -best[0][0]:
                break
            if node.is_leaf:
                if len(node.indices) == 0:
                    continue
                d2 = np.sum((self._points[node.indices] - query) ** 2, axis=1)
                for dist2, idx in zip(d2.tolist(), node.indices.tolist()):
                    if len(best) < k:
                        heapq.heappush(best, (-dist2, idx))
                    elif dist2 < -best[0][0]:
                        heapq.heapreplace(best, (-dist2, idx))
                continue
            for child in node.children:
                child_d2 = child.box_distance2(query)
                if len(best) < k or child_d2 <= -best[0][0]:
                    heapq.heappush(frontier, (child_d2, counter, child))
                    counter += 1

        ranked = sorted((-neg, idx) for neg, idx in best)
        indices = np.array([idx for _, idx in ranked], dtype=np.int64)
        distances = np.sqrt(np.array([d2 for d2, _ in ranked], dtype=np.float64))
        return indices, distances

    def radius_search(self, query: np.ndarray, radius: float) -> np.ndarray:
        if len(self._points) == 0 or radius < 0:
            return np.zeros(0, dtype=np.int64)
        query = np.asarray(query, dtype=np.float64).reshape(3)
        r2 = float(radius) ** 2
        found = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.box_distance2(query) > r2:
                continue
            if node.is_leaf:
                if len(node.indices):
                    d2 = np.sum((self._points[node.indices] - query) ** 2, axis=1)
                    found.append(node.indices[d2 <= r2])
            else:
                stack.extend(node.children)
        if not found:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(found)


class CKDTreeIndex(SpatialIndex):
    """SciPy cKDTree backend, vectorised for batch queries."""

    def __init__(self, points: PointsLike, leaf_size: int = 16):
        super().__init__(points)
        self._tree = cKDTree(self._points, leafsize=max(1, int(leaf_size))) if len(self._points) else None

    def k_nearest(self, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        indices, distances = self.k_nearest_batch(np.asarray(query).reshape(1, 3), k)
        return indices[0], distances[0]

    def k_nearest_batch(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        k_eff = max(0, min(int(k), len(self._points)))
        if k_eff == 0 or len(queries) == 0:
            return (np.zeros((len(queries), k_eff), dtype=np.int64),
                    np.zeros((len(queries), k_eff), dtype=np.float64))
        distances, indices = self._tree.query(queries, k=k_eff)
        if k_eff == 1:
            distances = distances[:, None]
            indices = indices[:, None]
        return indices.astype(np.int64), distances

    def radius_search(self, query: np.ndarray, radius: float) -> np.ndarray:
        if self._tree is None or radius < 0:
            return np.zeros(0, dtype=np.int64)
        found = self._tree.query_ball_point(np.asarray(query, dtype=np.float64).reshape(3), r=float(radius))
        return np.asarray(found, dtype=np.int64)

    def radius_search_batch(self, queries: np.ndarray, radius: float) -> List[np.ndarray]:
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        if self._tree is None or radius < 0:
            return [np.zeros(0, dtype=np.int64) for _ in queries]
        found = self._tree.query_ball_point(queries, r=float(radius))
        return [np.asarray(f, dtype=np.int64) for f in found]

    def count_within(self, queries: np.ndarray, radius: float) -> np.ndarray:
        """Number of points within radius of each query."""
        queries = np.asarray(queries, dtype=np.float64).reshape(-1, 3)
        if self._tree is None:
            return np.zeros(len(queries), dtype=np.int64)
        return np.asarray(self._tree.query_ball_point(queries, r=float(radius), return_length=True),
                          dtype=np.int64)


def build_index(points: PointsLike, backend: str = DEFAULT_INDEX_BACKEND, config=None) -> SpatialIndex:
    """
    Build a spatial index.

    Args:
        points: Points to index (array or PointCloud)
        backend: "ckdtree", "kdtree" or "octree"
        config: Optional SpatialIndexConfig overriding backend and node sizes

    Returns:
        Read-only index handle
    """
    leaf_size, capacity, max_depth = DEFAULT_KDTREE_LEAF_SIZE, DEFAULT_OCTREE_CAPACITY, DEFAULT_OCTREE_MAX_DEPTH
    if config is not None:
        backend = config.backend
        leaf_size = config.leaf_size
        capacity, max_depth = config.octree_capacity, config.octree_max_depth

    if backend == "ckdtree":
        return CKDTreeIndex(points)
    if backend == "kdtree":
        return KDTreeIndex(points, leaf_size=leaf_size)
    if backend == "octree":
        return OctreeIndex(points, capacity=capacity, max_depth=max_depth)
    raise ValueError(f"Unknown spatial index backend: {backend}")


def k_nearest(index: SpatialIndex, query: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Ordered k nearest neighbours of query (see SpatialIndex.k_nearest)."""
    return index.k_nearest(query, k)


def radius_search(index: SpatialIndex, query: np.ndarray, radius: float) -> np.ndarray:
    """Unordered indices of the points within radius of query."""
    return index.radius_search(query, radius)
