"""
Unit tests for ICP alignment.
"""

import time
import unittest

import numpy as np

from scanfusion.core.utils import CancellationToken, WorkerPool
from scanfusion.processing.alignment import AlignmentEngine, kabsch
from scanfusion.processing.config import AlignmentConfig
from scanfusion.processing.data_types import AlignmentResult
from scanfusion.processing.exceptions import AlignmentFailedError, ProcessingCancelledError

from helpers import ellipsoid_points, rotation_z


class TestKabsch(unittest.TestCase):

    def test_recovers_exact_transform(self):
        rng = np.random.default_rng(0)
        source = rng.normal(size=(50, 3))
        rotation = rotation_z(30.0)
        translation = np.array([0.1, -0.2, 0.05])
        target = source @ rotation.T + translation

        R, t = kabsch(source, target)
        np.testing.assert_allclose(R, rotation, atol=1e-10)
        np.testing.assert_allclose(t, translation, atol=1e-10)

    def test_never_returns_reflection(self):
        rng = np.random.default_rng(1)
        source = rng.normal(size=(30, 3))
        mirrored = source * np.array([1.0, 1.0, -1.0])
        R, _ = kabsch(source, mirrored)
        self.assertAlmostEqual(np.linalg.det(R), 1.0, places=8)


class TestAlignmentEngine(unittest.TestCase):

    def setUp(self):
        self.target, _ = ellipsoid_points(2000, seed=3)

    def test_known_transform(self):
        """A small rigid motion of the same samples is undone to sub-millimetre accuracy."""
        rotation = rotation_z(2.0)
        translation = np.array([0.003, -0.002, 0.001])
        # source = inverse motion of target, so aligning source must reproduce rotation/translation
        source = (self.target - translation) @ rotation

        engine = AlignmentEngine(AlignmentConfig(max_iterations=100))
        result = engine.align(source, self.target, convergence_threshold=1e-10)

        self.assertFalse(result.failed)
        self.assertLess(result.residual, 1e-3)
        aligned = result.apply(source)
        self.assertLess(np.mean(np.linalg.norm(aligned - self.target, axis=1)), 1e-3)
        np.testing.assert_allclose(result.rotation, rotation, atol=1e-3)
        np.testing.assert_allclose(result.translation, translation, atol=1e-3)

    def test_result_is_proper_rotation(self):
        source = self.target @ rotation_z(5.0).T + 0.002
        result = AlignmentEngine().align(source, self.target)
        self.assertAlmostEqual(np.linalg.det(result.rotation), 1.0, places=8)
        np.testing.assert_allclose(result.rotation @ result.rotation.T, np.eye(3), atol=1e-8)

    def test_residual_history_recorded(self):
        source = self.target + np.array([0.004, 0.0, 0.0])
        result = AlignmentEngine().align(source, self.target)
        self.assertEqual(len(result.residual_history), result.iterations)
        self.assertLessEqual(result.residual_history[-1], result.residual_history[0])
        self.assertLessEqual(result.iterations, 50)

    def test_too_few_points_returns_identity_failure(self):
        source = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        result = AlignmentEngine().align(source, self.target)
        self.assertTrue(result.failed)
        self.assertEqual(result.residual, float('inf'))
        np.testing.assert_array_equal(result.rotation, np.eye(3))
        np.testing.assert_array_equal(result.translation, np.zeros(3))

    def test_too_few_correspondences_within_distance(self):
        source = self.target + 1.0  # far away from every target point
        engine = AlignmentEngine(AlignmentConfig(max_correspondence_distance=0.01))
        result = engine.align(source, self.target)
        self.assertTrue(result.failed)
        self.assertEqual(result.correspondences, 0)

    def test_raise_on_failure(self):
        engine = AlignmentEngine(AlignmentConfig(raise_on_failure=True))
        with self.assertRaises(AlignmentFailedError):
            engine.align(np.zeros((2, 3)), self.target)

    def test_iteration_cap(self):
        source = self.target @ rotation_z(10.0).T
        result = AlignmentEngine().align(source, self.target, max_iterations=2, convergence_threshold=0.0)
        self.assertEqual(result.iterations, 2)
        self.assertFalse(result.converged)

    def test_time_budget_stops_iterations(self):
        ticks = iter(range(0, 1000, 10))
        engine = AlignmentEngine(AlignmentConfig(time_budget=15.0), clock=lambda: float(next(ticks)))
        source = self.target @ rotation_z(10.0).T
        result = engine.align(source, self.target, convergence_threshold=0.0)
        self.assertTrue(result.timed_out)
        self.assertIsNotNone(engine.last_timeout)
        self.assertLess(result.iterations, 50)

    def test_cancellation(self):
        token = CancellationToken()
        token.cancel()
        engine = AlignmentEngine(cancel_token=token)
        with self.assertRaises(ProcessingCancelledError):
            engine.align(self.target + 0.001, self.target)

    def test_parallel_matches_serial(self):
        source = self.target @ rotation_z(3.0).T + 0.002
        serial = AlignmentEngine().align(source, self.target)
        with WorkerPool(num_workers=4, chunk_size=128) as pool:
            parallel = AlignmentEngine(worker_pool=pool).align(source, self.target)
        np.testing.assert_allclose(serial.rotation, parallel.rotation, atol=1e-12)
        self.assertEqual(serial.iterations, parallel.iterations)

    def test_identity_failure_transform(self):
        failure = AlignmentResult.identity_failure()
        np.testing.assert_array_equal(failure.transform, np.eye(4))


class TestAlignmentScenario(unittest.TestCase):

    def test_depth_image_offset(self):
        """10k points over ~0.2 m, 1 cm offset, +-0.1 mm noise: aligned below 2 mm within 50 iterations."""
        points, _ = ellipsoid_points(10000, seed=11)
        rng = np.random.default_rng(12)
        depth = points + rng.uniform(-1e-4, 1e-4, size=points.shape)
        image = points + np.array([0.01, 0.0, 0.0]) + rng.uniform(-1e-4, 1e-4, size=points.shape)

        start = time.time()
        result = AlignmentEngine(AlignmentConfig(max_iterations=50)).align(image, depth)
        self.assertFalse(result.failed)
        self.assertLessEqual(result.iterations, 50)
        self.assertLess(result.residual, 2e-3)
        self.assertLess(time.time() - start, 30.0)


if __name__ == '__main__':
    unittest.main()
