"""
Camera record used to re-project 3D points into image space.
"""

import logging
from dataclasses import dataclass, field
from typing import Tuple

import cv2
import numpy as np

from .data_types import PointCloud

logger = logging.getLogger(__name__)


@dataclass
class CameraIntrinsics:
    """
    Pinhole camera with extrinsics mapping world points into the camera frame.

    Attributes:
        fx, fy: Focal lengths in pixels
        cx, cy: Principal point in pixels
        width, height: Image size in pixels
        rotation: (3, 3) world-to-camera rotation
        translation: (3,) world-to-camera translation
        dist_coeffs: OpenCV distortion coefficients (k1, k2, p1, p2, k3)
    """
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(5))

    @property
    def camera_matrix(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]], dtype=np.float64)

    @classmethod
    def from_calibration(cls, calibration: dict, width: int, height: int) -> 'CameraIntrinsics':
        """Build from a calibration dict with 'camera_matrix' and optional 'dist_coeffs', 'R', 'T'."""
        K = np.asarray(calibration['camera_matrix'], dtype=np.float64).reshape(3, 3)
        return cls(
            fx=float(K[0, 0]), fy=float(K[1, 1]), cx=float(K[0, 2]), cy=float(K[1, 2]),
            width=width, height=height,
            rotation=np.asarray(calibration.get('R', np.eye(3)), dtype=np.float64).reshape(3, 3),
            translation=np.asarray(calibration.get('T', np.zeros(3)), dtype=np.float64).reshape(3),
            dist_coeffs=np.asarray(calibration.get('dist_coeffs', np.zeros(5)), dtype=np.float64).reshape(-1),
        )

    def to_camera_frame(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ np.asarray(self.rotation).T + np.asarray(self.translation).reshape(3)

    def project(self, points: np.ndarray) -> np.ndarray:
        """
        Project world points to pixel coordinates.

        Args:
            points: (N, 3) world positions

        Returns:
            (N, 2) pixel coordinates
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return np.zeros((0, 2))
        rvec, _ = cv2.Rodrigues(np.asarray(self.rotation, dtype=np.float64))
        tvec = np.asarray(self.translation, dtype=np.float64).reshape(3, 1)
        pixels, _ = cv2.projectPoints(points.reshape(-1, 1, 3), rvec, tvec,
                                      self.camera_matrix, np.asarray(self.dist_coeffs, dtype=np.float64))
        return pixels.reshape(-1, 2)

    def visible_mask(self, points: np.ndarray) -> np.ndarray:
        """Points in front of the camera whose projection lands inside the image."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return np.zeros(0, dtype=bool)
        in_front = self.to_camera_frame(points)[:, 2] > 0
        pixels = self.project(points)
        inside = ((pixels[:, 0] >= 0) & (pixels[:, 0] < self.width) &
                  (pixels[:, 1] >= 0) & (pixels[:, 1] < self.height))
        return in_front & inside

    def filter_visible(self, cloud: PointCloud) -> Tuple[PointCloud, int]:
        """
        Drop points that re-project outside the image or behind the camera.

        Returns:
            Tuple of (visible cloud, number of dropped points)
        """
        mask = self.visible_mask(cloud.positions)
        dropped = int(len(mask) - mask.sum())
        if dropped:
            logger.info(f"Dropped {dropped} of {len(cloud)} image points outside the camera view")
            return cloud.subset(mask), dropped
        return cloud, 0
