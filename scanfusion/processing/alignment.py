"""
Rigid registration of two point sets with Iterative Closest Point.

Each iteration matches every working source point to its nearest target
point, solves the optimal rotation of the matched pairs with the Kabsch SVD
method (reflections rejected), applies the increment and measures the mean
point-to-point residual. Iterations stop on convergence, at the iteration
cap, on cancellation, or when the time budget runs out.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Union

import numpy as np

from ..core.utils import CancellationToken, Deadline, WorkerPool
from .config import AlignmentConfig
from .data_types import AlignmentResult, PointCloud
from .exceptions import AlignmentFailedError, ProcessingTimeoutError, handle_processing_error
from .spatial_index import CKDTreeIndex, SpatialIndex

logger = logging.getLogger(__name__)

PointsLike = Union[np.ndarray, PointCloud]


def _positions(points: PointsLike) -> np.ndarray:
    if isinstance(points, PointCloud):
        return points.positions
    return np.asarray(points, dtype=np.float64).reshape(-1, 3)


def kabsch(source: np.ndarray, target: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Optimal rigid transform mapping source onto target in the least-squares sense.

    Args:
        source: (N, 3) points
        target: (N, 3) corresponding points

    Returns:
        Tuple of (rotation, translation) with a proper rotation (det = +1)
    """
    source_centroid = source.mean(axis=0)
    target_centroid = target.mean(axis=0)
    H = (source - source_centroid).T @ (target - target_centroid)
    U, _, Vt = np.linalg.svd(H)
    # Correct the sign so the result is a rotation, not a reflection
    d = np.sign(np.linalg.det(Vt.T @ U.T))
    if d == 0:
        d = 1.0
    D = np.diag([1.0, 1.0, d])
    rotation = Vt.T @ D @ U.T
    translation = target_centroid - rotation @ source_centroid
    return rotation, translation


class AlignmentEngine:
    """ICP alignment engine."""

    def __init__(self,
                 config: Optional[AlignmentConfig] = None,
                 worker_pool: Optional[WorkerPool] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the alignment engine.

        Args:
            config: Alignment configuration
            worker_pool: Pool used for the per-iteration correspondence search
            cancel_token: Token polled between iterations
            clock: Monotonic time source for the time budget
        """
        self.config = config or AlignmentConfig()
        self.worker_pool = worker_pool
        self.cancel_token = cancel_token
        self._clock = clock
        self.last_timeout: Optional[ProcessingTimeoutError] = None

    def _find_correspondences(self, points: np.ndarray, index: SpatialIndex) -> Tuple[np.ndarray, np.ndarray]:
        def search(start: int, stop: int):
            idx, dist = index.k_nearest_batch(points[start:stop], 1)
            return idx[:, 0], dist[:, 0]

        if self.worker_pool is None:
            return search(0, len(points))
        chunks = self.worker_pool.map_ranges(search, len(points), self.cancel_token, stage="alignment")
        return np.concatenate([c[0] for c in chunks]), np.concatenate([c[1] for c in chunks])

    def _fail(self, reason: str, iterations: int, correspondences: int) -> AlignmentResult:
        logger.warning(f"ICP aborted after {iterations} iterations: {reason}")
        if self.config.raise_on_failure:
            raise AlignmentFailedError(reason, correspondences=correspondences)
        return AlignmentResult.identity_failure(iterations=iterations, correspondences=correspondences)

    @handle_processing_error("alignment")
    def align(self,
              source: PointsLike,
              target: PointsLike,
              max_iterations: Optional[int] = None,
              convergence_threshold: Optional[float] = None,
              target_index: Optional[SpatialIndex] = None) -> AlignmentResult:
        """
        Align source onto target.

        Args:
            source: Points to move
            target: Reference points
            max_iterations: Iteration cap (defaults to the configured value)
            convergence_threshold: Stop when |previous - current residual| is below this
            target_index: Prebuilt spatial index over the target

        Returns:
            AlignmentResult; on fewer than min_correspondences valid matches
            the identity transform with infinite residual and failed=True

        Raises:
            AlignmentFailedError: On failure when raise_on_failure is set
            ProcessingCancelledError: When the cancellation token fires
        """
        max_iterations = max_iterations if max_iterations is not None else self.config.max_iterations
        threshold = (convergence_threshold if convergence_threshold is not None
                     else self.config.convergence_threshold)
        min_correspondences = max(3, self.config.min_correspondences)
        max_distance = self.config.max_correspondence_distance

        source_points = _positions(source)
        target_points = _positions(target)
        if len(source_points) < min_correspondences or len(target_points) < min_correspondences:
            return self._fail(f"too few points (source={len(source_points)}, target={len(target_points)})",
                              0, min(len(source_points), len(target_points)))

        index = target_index if target_index is not None else CKDTreeIndex(target_points)
        deadline = Deadline(self.config.time_budget, clock=self._clock)
        self.last_timeout = None

        current = source_points.copy()
        total_rotation = np.eye(3)
        total_translation = np.zeros(3)
        previous_error = float('inf')
        residual = float('inf')
        history = []
        converged = False
        timed_out = False
        matched = 0
        iteration = 0

        start_time = time.time()
        for iteration in range(1, max_iterations + 1):
            if self.cancel_token is not None:
                self.cancel_token.check("alignment")

            nearest, distances = self._find_correspondences(current, index)
            valid = np.isfinite(distances)
            if max_distance is not None:
                valid &= distances <= max_distance
            matched = int(valid.sum())
            if matched < min_correspondences:
                return self._fail(f"only {matched} valid correspondences", iteration, matched)

            matched_source = current[valid]
            matched_target = target_points[nearest[valid]]
            rotation, translation = kabsch(matched_source, matched_target)

            current = current @ rotation.T + translation
            total_rotation = rotation @ total_rotation
            total_translation = rotation @ total_translation + translation

            residual = float(np.mean(np.linalg.norm(current[valid] - matched_target, axis=1)))
            history.append(residual)
            logger.debug(f"ICP iteration {iteration}: residual={residual:.6e}, correspondences={matched}")

            if abs(previous_error - residual) < threshold:
                converged = True
                break
            previous_error = residual

            if deadline.expired():
                timed_out = True
                self.last_timeout = ProcessingTimeoutError("alignment", deadline.elapsed())
                logger.warning(f"ICP stopped by time budget after {iteration} iterations")
                break

        logger.info(f"ICP finished: {iteration} iterations, residual={residual:.6f}, "
                    f"converged={converged} ({time.time() - start_time:.3f}s)")
        return AlignmentResult(
            rotation=total_rotation,
            translation=total_translation,
            residual=residual,
            iterations=iteration,
            converged=converged,
            correspondences=matched,
            failed=False,
            timed_out=timed_out,
            residual_history=tuple(history),
        )
