"""
Unit tests for point cloud fusion.
"""

import unittest

import numpy as np

from scanfusion.core.utils import WorkerPool
from scanfusion.processing.config import FusionConfig
from scanfusion.processing.data_types import PointCloud, SourceType
from scanfusion.processing.fusion import FusionEngine, FusionStats, FusionWeights

from helpers import ellipsoid_points, plane_cloud


class TestFusionWeights(unittest.TestCase):

    def test_out_of_range_rejected(self):
        with self.assertRaises(ValueError):
            FusionWeights(1.5, 0.5)
        with self.assertRaises(ValueError):
            FusionWeights(0.5, -0.1)


class TestFusionEngine(unittest.TestCase):

    def setUp(self):
        self.engine = FusionEngine(FusionConfig(max_fusion_distance=0.002))

    def test_size_bounds(self):
        """max(|A|, |B|) <= |fused| <= |A| + |B| for partially overlapping clouds."""
        a = plane_cloud(20, spacing=0.005)
        b = PointCloud(a.positions[:150] + np.array([0.0, 0.0, 0.0005]),
                       normals=a.normals[:150], confidences=np.full(150, 0.7))
        fused, stats = self.engine.fuse_with_stats(a, b)
        self.assertGreaterEqual(len(fused), max(len(a), len(b)))
        self.assertLessEqual(len(fused), len(a) + len(b))
        self.assertEqual(stats.matched, 150)
        self.assertEqual(len(fused), stats.fused_size)
        self.assertEqual(len(fused), len(a))

    def test_disjoint_clouds_concatenate(self):
        a = plane_cloud(10, spacing=0.01)
        b = plane_cloud(10, spacing=0.01, z=1.0)
        fused, stats = self.engine.fuse_with_stats(a, b)
        self.assertEqual(stats.matched, 0)
        self.assertEqual(len(fused), len(a) + len(b))

    def test_empty_source(self):
        a = plane_cloud(5)
        fused = self.engine.fuse(a, PointCloud.empty())
        self.assertEqual(len(fused), len(a))
        self.assertEqual(len(self.engine.fuse(PointCloud.empty(), PointCloud.empty())), 0)

    def test_confidences_in_unit_interval(self):
        a = plane_cloud(15)
        rng = np.random.default_rng(0)
        b = PointCloud(a.positions + rng.uniform(-0.001, 0.001, size=a.positions.shape),
                       normals=-a.normals, confidences=rng.uniform(size=len(a)))
        fused = self.engine.fuse(a, b, FusionWeights(0.9, 0.4))
        self.assertTrue(np.all(fused.confidences >= 0.0))
        self.assertTrue(np.all(fused.confidences <= 1.0))

    def test_merged_position_is_weighted(self):
        a = PointCloud(np.array([[0.0, 0.0, 0.0]]), confidences=np.array([1.0]))
        b = PointCloud(np.array([[0.001, 0.0, 0.0]]), confidences=np.array([1.0]))
        fused = self.engine.fuse(a, b, FusionWeights(0.75, 0.25))
        self.assertEqual(len(fused), 1)
        np.testing.assert_allclose(fused.positions[0], [0.00025, 0.0, 0.0])
        self.assertEqual(int(fused.sources[0]), SourceType.FUSED.value)

    def test_merged_normals_unit_length_and_sign_aligned(self):
        a = plane_cloud(6)
        b = PointCloud(a.positions + 0.0005, normals=-a.normals)
        fused = self.engine.fuse(a, b)
        lengths = np.linalg.norm(fused.normals, axis=1)
        np.testing.assert_allclose(lengths, 1.0, atol=1e-9)
        # opposite-signed inputs must not cancel out
        self.assertTrue(np.all(np.abs(fused.normals[:, 2]) > 0.99))

    def test_merged_confidence_policies(self):
        a = PointCloud(np.zeros((1, 3)), confidences=np.array([0.9]))
        b = PointCloud(np.full((1, 3), 0.0005), confidences=np.array([0.5]))
        mean_fused = FusionEngine(FusionConfig(max_fusion_distance=0.002)).fuse(a, b)
        max_fused = FusionEngine(FusionConfig(max_fusion_distance=0.002,
                                              merged_confidence_policy="max")).fuse(a, b)
        self.assertAlmostEqual(float(mean_fused.confidences[0]), 0.7)
        self.assertAlmostEqual(float(max_fused.confidences[0]), 0.9)

    def test_unmatched_fixed_policy(self):
        a = plane_cloud(4, confidence=0.3)
        b = plane_cloud(4, z=1.0, confidence=0.3)
        config = FusionConfig(max_fusion_distance=0.002, unmatched_confidence_policy="fixed",
                              fixed_depth_confidence=0.8, fixed_image_confidence=0.6)
        fused = FusionEngine(config).fuse(a, b)
        sources = fused.sources
        np.testing.assert_allclose(fused.confidences[sources == SourceType.DEPTH.value], 0.8)
        np.testing.assert_allclose(fused.confidences[sources == SourceType.IMAGE.value], 0.6)

    def test_unmatched_keep_policy(self):
        a = plane_cloud(4, confidence=0.3)
        b = plane_cloud(4, z=1.0, confidence=0.45)
        fused = FusionEngine(FusionConfig(unmatched_confidence_policy="keep")).fuse(a, b)
        np.testing.assert_allclose(np.sort(np.unique(fused.confidences)), [0.3, 0.45])

    def test_unmatched_computed_policy_never_raises_confidence(self):
        a = plane_cloud(8, spacing=0.005, confidence=0.9)
        b = plane_cloud(8, spacing=0.005, z=1.0, confidence=0.9)
        fused = FusionEngine(FusionConfig(max_fusion_distance=0.006)).fuse(a, b)
        self.assertTrue(np.all(fused.confidences <= 0.9 + 1e-12))
        self.assertTrue(np.all(fused.confidences > 0.0))

    def test_one_to_one_matching(self):
        """Two B points near the same A point: only one of them merges."""
        a = PointCloud(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]]))
        b = PointCloud(np.array([[0.0005, 0.0, 0.0], [-0.0005, 0.0, 0.0]]))
        fused, stats = self.engine.fuse_with_stats(a, b)
        self.assertEqual(stats.matched, 1)
        self.assertEqual(len(fused), 4)

    def test_source_labels_and_order(self):
        a = plane_cloud(5)
        b = PointCloud(a.positions[:5] + 0.0002)
        fused = self.engine.fuse(a, b)
        labels = fused.sources.tolist()
        self.assertEqual(labels[:5], [SourceType.FUSED.value] * 5)
        self.assertTrue(all(label == SourceType.DEPTH.value for label in labels[5:]))

    def test_colors_may_be_missing_on_one_side(self):
        a = PointCloud(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]), colors=np.array([[1.0, 0, 0], [0, 1.0, 0]]))
        b = PointCloud(np.array([[0.0005, 0.0, 0.0], [5.0, 0.0, 0.0]]))
        fused = self.engine.fuse(a, b)
        np.testing.assert_allclose(fused.colors[0], [1.0, 0.0, 0.0])
        self.assertTrue(np.all(np.isnan(fused.colors[-1])))

    def test_overlap_ratio(self):
        a = plane_cloud(10)
        b = PointCloud(np.vstack([a.positions[:50], a.positions[:50] + 1.0]))
        self.assertAlmostEqual(self.engine.overlap_ratio(a, b), 0.5)
        self.assertEqual(self.engine.overlap_ratio(a, PointCloud.empty()), 0.0)

    def test_stats_merge_ratio(self):
        stats = FusionStats(size_a=100, size_b=40, matched=30, unmatched_a=70, unmatched_b=10, overlap_ratio=0.75)
        self.assertAlmostEqual(stats.merge_ratio, 0.75)
        self.assertEqual(stats.fused_size, 110)

    def test_inputs_not_mutated(self):
        a = plane_cloud(6)
        b = PointCloud(a.positions + 0.0003)
        before = a.positions.copy()
        self.engine.fuse(a, b)
        np.testing.assert_array_equal(a.positions, before)


class TestFusionScenario(unittest.TestCase):

    def test_aligned_depth_and_image_merge(self):
        """Aligned clouds with +-0.1 mm noise merge at least 95% of the smaller cloud."""
        points, normals = ellipsoid_points(10000, seed=21)
        rng = np.random.default_rng(22)
        depth = PointCloud(points + rng.uniform(-1e-4, 1e-4, size=points.shape), normals=normals,
                           confidences=np.full(len(points), 0.9))
        image = PointCloud(points + rng.uniform(-1e-4, 1e-4, size=points.shape), normals=normals,
                           confidences=np.full(len(points), 0.7))
        with WorkerPool(num_workers=4) as pool:
            fused, stats = FusionEngine(FusionConfig(), worker_pool=pool).fuse_with_stats(
                depth, image, FusionWeights(0.9, 0.7))
        self.assertGreaterEqual(stats.merge_ratio, 0.95)
        self.assertGreaterEqual(len(fused), len(depth))
        self.assertLessEqual(len(fused), len(depth) + len(image))


if __name__ == '__main__':
    unittest.main()
