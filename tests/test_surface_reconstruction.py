"""
Unit tests for surface reconstruction.
"""

import itertools
import unittest

import numpy as np

from scanfusion.core.utils import CancellationToken
from scanfusion.processing.config import ReconstructionConfig
from scanfusion.processing.data_types import BoundingBox, PointCloud
from scanfusion.processing.exceptions import InsufficientDataError, ProcessingCancelledError
from scanfusion.processing.mesh_validation import boundary_vertices
from scanfusion.processing.surface_reconstruction import SurfaceReconstructor

from helpers import noisy_plane_points, sphere_cloud


class TestSurfaceReconstructor(unittest.TestCase):

    def setUp(self):
        self.reconstructor = SurfaceReconstructor(ReconstructionConfig(resolution=32))
        self.sphere = sphere_cloud(3000, radius=0.1, seed=9)

    def test_sphere(self):
        mesh = self.reconstructor.reconstruct(self.sphere)
        self.assertGreater(mesh.triangle_count, 100)

        radii = np.linalg.norm(mesh.vertices, axis=1)
        self.assertLess(np.mean(np.abs(radii - 0.1)), 0.005)

        # Normals are unit length and point outward
        np.testing.assert_allclose(np.linalg.norm(mesh.normals, axis=1), 1.0, atol=1e-6)
        outward = np.sum(mesh.normals * mesh.vertices, axis=1) > 0
        self.assertGreater(np.mean(outward), 0.95)

        # Winding agrees with the vertex normals
        face_normals = mesh.face_normals()
        corner_normals = mesh.normals[mesh.indices].sum(axis=1)
        self.assertTrue(np.all(np.sum(face_normals * corner_normals, axis=1) >= 0))

        self.assertTrue(np.all((mesh.confidence >= 0.0) & (mesh.confidence <= 1.0)))
        steps = [step['step'] for step in mesh.processing_steps]
        self.assertEqual(steps, ['surface_reconstruction'])

    def test_unoriented_points(self):
        """Normals are estimated when the input has none."""
        bare = sphere_cloud(3000, radius=0.1, seed=9, with_normals=False)
        mesh = self.reconstructor.reconstruct(bare)
        outward = np.sum(mesh.normals * mesh.vertices, axis=1) > 0
        self.assertGreater(np.mean(outward), 0.95)

    def test_open_surface(self):
        """A patch reconstructs as an open surface with a boundary rim."""
        rng = np.random.default_rng(4)
        xy = rng.uniform(0.0, 0.1, size=(2500, 2))
        z = 0.01 * np.sin(30.0 * xy[:, 0]) + 0.0013
        patch = PointCloud(np.column_stack([xy, z]))
        mesh = self.reconstructor.reconstruct(patch, viewpoint=np.array([0.05, 0.05, 1.0]))
        self.assertGreater(mesh.triangle_count, 0)
        self.assertTrue(np.any(boundary_vertices(mesh.indices, mesh.vertex_count)))
        # Normals face the viewpoint
        self.assertGreater(np.mean(mesh.normals[:, 2] > 0), 0.9)

    def test_plane_without_normals_or_viewpoint(self):
        """Normals of an open sheet agree with each other when nothing fixes their sign."""
        plane = noisy_plane_points(60, spacing=0.002, sigma=0.0002, seed=2)
        oriented = self.reconstructor.orient(plane)
        self.assertGreater(len(oriented), 0.8 * len(plane))
        up = np.mean(oriented.normals[:, 2] > 0)
        self.assertGreater(max(up, 1.0 - up), 0.95)

        mesh = self.reconstructor.reconstruct(plane)
        self.assertGreater(mesh.triangle_count, 0)
        # One sheet: two triangles per grid column at most, all facing one way
        self.assertLess(mesh.triangle_count, 3 * 32 * 32)
        facing = np.mean(mesh.face_normals()[:, 2] > 0)
        self.assertGreater(max(facing, 1.0 - facing), 0.95)
        self.assertLess(np.max(np.abs(mesh.vertices[:, 2])), 0.004)

    def test_orientation_propagates_from_reference_normals(self):
        """A few trusted normals decide the sign of the whole sheet."""
        plane = noisy_plane_points(40, seed=5)
        reference = np.full((len(plane), 3), np.nan)
        # Ten interior points of row 20
        reference[20 * 40 + 10:20 * 40 + 20] = [0.0, 0.0, -1.0]
        oriented = self.reconstructor.orient(plane.replace(normals=reference))
        self.assertGreater(np.mean(oriented.normals[:, 2] < 0), 0.95)

    def test_orient_filters_and_scores(self):
        oriented = self.reconstructor.orient(self.sphere)
        self.assertGreater(len(oriented), 0.8 * len(self.sphere))
        self.assertTrue(np.all(oriented.confidences <= 1.0))
        self.assertTrue(oriented.has_normals)
        np.testing.assert_allclose(np.linalg.norm(oriented.normals, axis=1), 1.0, atol=1e-6)

    def test_too_few_points(self):
        with self.assertRaises(InsufficientDataError):
            self.reconstructor.reconstruct(sphere_cloud(10))

    def test_bounding_box_excludes_points(self):
        box = BoundingBox(np.full(3, 5.0), np.full(3, 6.0))
        with self.assertRaises(InsufficientDataError):
            self.reconstructor.reconstruct(self.sphere, bounding_box=box)

    def test_resolution_capped(self):
        reconstructor = SurfaceReconstructor(ReconstructionConfig(resolution=16, max_resolution=16))
        mesh = reconstructor.reconstruct(self.sphere, resolution=500)
        self.assertEqual(mesh.processing_steps[0]['resolution'], 16)

    def test_cancellation(self):
        token = CancellationToken()
        token.cancel()
        reconstructor = SurfaceReconstructor(ReconstructionConfig(resolution=16), cancel_token=token)
        with self.assertRaises(ProcessingCancelledError):
            reconstructor.reconstruct(self.sphere)

    def test_time_budget_marks_partial_field(self):
        ticks = itertools.count(0.0, 10.0)
        reconstructor = SurfaceReconstructor(ReconstructionConfig(resolution=16, time_budget=25.0),
                                             clock=lambda: next(ticks))
        oriented = reconstructor.orient(self.sphere)
        _, _, _, _, partial = reconstructor.build_field(oriented, 16)
        self.assertTrue(partial)
        self.assertIsNotNone(reconstructor.last_timeout)


if __name__ == '__main__':
    unittest.main()
