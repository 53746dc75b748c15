"""
Unit tests for the spatial indices.
"""

import unittest

import numpy as np

from scanfusion.processing.data_types import PointCloud
from scanfusion.processing.spatial_index import (
    CKDTreeIndex, KDTreeIndex, OctreeIndex, build_index, k_nearest, radius_search
)


def brute_force_knn(points, query, k):
    distances = np.linalg.norm(points - query, axis=1)
    order = np.argsort(distances, kind="stable")[:k]
    return order, distances[order]


class TestSpatialIndex(unittest.TestCase):
    """Tests shared by all index backends."""

    def setUp(self):
        rng = np.random.default_rng(7)
        self.points = rng.uniform(-1.0, 1.0, size=(500, 3))
        self.queries = rng.uniform(-1.2, 1.2, size=(25, 3))
        self.indices = {
            'kdtree': KDTreeIndex(self.points, leaf_size=4),
            'octree': OctreeIndex(self.points, capacity=6, max_depth=6),
            'ckdtree': CKDTreeIndex(self.points),
        }

    def test_k_nearest_matches_brute_force(self):
        """Distances returned equal the brute-force k smallest distances."""
        for name, index in self.indices.items():
            for query in self.queries:
                idx, dist = index.k_nearest(query, 10)
                _, expected = brute_force_knn(self.points, query, 10)
                self.assertEqual(len(idx), 10, name)
                np.testing.assert_allclose(dist, expected, rtol=1e-12, atol=1e-12, err_msg=name)
                np.testing.assert_allclose(np.linalg.norm(self.points[idx] - query, axis=1), dist,
                                           rtol=1e-12, err_msg=name)

    def test_k_nearest_ascending(self):
        for name, index in self.indices.items():
            _, dist = index.k_nearest(self.queries[0], 50)
            self.assertTrue(np.all(np.diff(dist) >= 0), name)

    def test_k_larger_than_point_count(self):
        """Asking for more neighbours than points returns every point once."""
        small = self.points[:5]
        for index in (KDTreeIndex(small), OctreeIndex(small), CKDTreeIndex(small)):
            idx, dist = index.k_nearest(np.zeros(3), 20)
            self.assertEqual(sorted(idx.tolist()), list(range(5)))
            self.assertEqual(len(dist), 5)

    def test_radius_search_matches_brute_force(self):
        radius = 0.3
        for name, index in self.indices.items():
            for query in self.queries:
                found = np.sort(index.radius_search(query, radius))
                expected = np.nonzero(np.linalg.norm(self.points - query, axis=1) <= radius)[0]
                np.testing.assert_array_equal(found, expected, err_msg=name)

    def test_radius_beyond_bounding_box_returns_every_point_once(self):
        diagonal = float(np.linalg.norm(self.points.max(axis=0) - self.points.min(axis=0)))
        query = np.array([0.4, -0.3, 0.7])
        for backend in ('kdtree', 'octree', 'ckdtree'):
            index = build_index(self.points, backend=backend)
            found = index.radius_search(query, 1.01 * diagonal)
            self.assertEqual(sorted(found.tolist()), list(range(len(self.points))), backend)
            for batch in index.radius_search_batch(np.array([query, -query, self.points[0]]), 1.01 * diagonal):
                self.assertEqual(sorted(batch.tolist()), list(range(len(self.points))), backend)

    def test_radius_boundary_inclusive(self):
        points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        for index in (KDTreeIndex(points, leaf_size=1), OctreeIndex(points, capacity=1), CKDTreeIndex(points)):
            found = sorted(index.radius_search(np.zeros(3), 1.0).tolist())
            self.assertEqual(found, [0, 1])

    def test_empty_index(self):
        for index in (KDTreeIndex(np.zeros((0, 3))), OctreeIndex(np.zeros((0, 3))), CKDTreeIndex(np.zeros((0, 3)))):
            idx, dist = index.k_nearest(np.zeros(3), 3)
            self.assertEqual(len(idx), 0)
            self.assertEqual(len(dist), 0)
            self.assertEqual(len(index.radius_search(np.zeros(3), 1.0)), 0)

    def test_coincident_points(self):
        """Identical points must not recurse forever and are all returned."""
        points = np.tile([[0.5, 0.5, 0.5]], (100, 1))
        for index in (KDTreeIndex(points, leaf_size=2), OctreeIndex(points, capacity=2, max_depth=5)):
            idx, dist = index.k_nearest(np.zeros(3), 100)
            self.assertEqual(len(set(idx.tolist())), 100)
            np.testing.assert_allclose(dist, np.sqrt(0.75))
            self.assertEqual(len(index.radius_search(np.full(3, 0.5), 0.0)), 100)

    def test_planar_points(self):
        rng = np.random.default_rng(3)
        points = np.column_stack([rng.uniform(size=(200, 2)), np.zeros(200)])
        for index in (KDTreeIndex(points), OctreeIndex(points, capacity=4)):
            idx, dist = index.k_nearest(np.array([0.5, 0.5, 0.1]), 5)
            _, expected = brute_force_knn(points, np.array([0.5, 0.5, 0.1]), 5)
            np.testing.assert_allclose(dist, expected)

    def test_batch_queries(self):
        for name, index in self.indices.items():
            idx, dist = index.k_nearest_batch(self.queries, 3)
            self.assertEqual(idx.shape, (len(self.queries), 3), name)
            for row, query in enumerate(self.queries):
                _, expected = brute_force_knn(self.points, query, 3)
                np.testing.assert_allclose(dist[row], expected, err_msg=name)
            found = index.radius_search_batch(self.queries[:3], 0.25)
            self.assertEqual(len(found), 3)

    def test_index_holds_snapshot(self):
        points = self.points.copy()
        index = KDTreeIndex(points)
        points[:] = 100.0
        _, dist = index.k_nearest(self.points[0], 1)
        self.assertAlmostEqual(float(dist[0]), 0.0)
        with self.assertRaises(ValueError):
            index.points[0, 0] = 1.0


class TestKDTreeStructure(unittest.TestCase):

    def test_half_space_partition(self):
        """Left subtree points lie at or below the split, right subtree at or above."""
        rng = np.random.default_rng(11)
        points = rng.normal(size=(300, 3))
        tree = KDTreeIndex(points, leaf_size=5)
        for node in range(tree.node_count):
            axis, split, left, right = tree.node_split(node)
            if axis < 0:
                continue
            self.assertTrue(np.all(points[tree.node_points(left), axis] <= split))
            self.assertTrue(np.all(points[tree.node_points(right), axis] >= split))

    def test_every_point_in_exactly_one_leaf(self):
        points = np.random.default_rng(2).uniform(size=(257, 3))
        tree = KDTreeIndex(points, leaf_size=3)
        leaves = [tree.node_points(n) for n in range(tree.node_count) if tree.node_split(n)[0] < 0]
        combined = np.concatenate(leaves)
        self.assertEqual(sorted(combined.tolist()), list(range(len(points))))


class TestOctreeStructure(unittest.TestCase):

    def test_leaves_partition_points(self):
        points = np.random.default_rng(5).uniform(size=(400, 3))
        tree = OctreeIndex(points, capacity=8, max_depth=6)
        leaves = [node for node in tree.iter_nodes() if node.is_leaf]
        combined = np.concatenate([node.indices for node in leaves])
        self.assertEqual(sorted(combined.tolist()), list(range(len(points))))
        for node in leaves:
            if len(node.indices):
                inside = np.all((points[node.indices] >= node.min_corner)
                                & (points[node.indices] <= node.max_corner), axis=1)
                self.assertTrue(np.all(inside))

    def test_capacity_respected_below_max_depth(self):
        points = np.random.default_rng(8).uniform(size=(400, 3))
        tree = OctreeIndex(points, capacity=10, max_depth=10)
        for node in tree.iter_nodes():
            if node.is_leaf and node.depth < tree.max_depth:
                self.assertLessEqual(len(node.indices), 10)


class TestBuildIndex(unittest.TestCase):

    def test_backends(self):
        cloud = PointCloud(np.random.default_rng(1).uniform(size=(50, 3)))
        self.assertIsInstance(build_index(cloud), CKDTreeIndex)
        self.assertIsInstance(build_index(cloud, "kdtree"), KDTreeIndex)
        self.assertIsInstance(build_index(cloud, "octree"), OctreeIndex)
        with self.assertRaises(ValueError):
            build_index(cloud, "rtree")

    def test_free_functions(self):
        points = np.array([[0.0, 0.0, 0.0], [0.1, 0.0, 0.0], [1.0, 0.0, 0.0]])
        index = build_index(points, "kdtree")
        idx, _ = k_nearest(index, np.zeros(3), 2)
        self.assertEqual(idx.tolist(), [0, 1])
        self.assertEqual(sorted(radius_search(index, np.zeros(3), 0.5).tolist()), [0, 1])


if __name__ == '__main__':
    unittest.main()
