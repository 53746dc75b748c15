"""
Scanning session context and the end-to-end fusion pipeline.

A ScanSession owns everything whose lifetime is one scanning session: the
validated configuration, event emitter, strategy controller, quality
history, cancellation token, compute backend and worker pool. A
FusionPipeline runs one processing pass per call:

    preprocess -> index -> quality -> align -> strategy -> fuse/select
    -> reconstruct -> refine

Every stage finishes before the next one starts, and each stage reports
STAGE_STARTED / STAGE_COMPLETED / STAGE_FAILED events.
"""

import dataclasses
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..core.events import EventEmitter, EventType
from ..core.utils import CancellationToken, WorkerPool
from .alignment import AlignmentEngine
from .camera import CameraIntrinsics
from .compute_backend import get_backend
from .config import ScanFusionConfig
from .data_types import AlignmentResult, BoundingBox, Feature, MeshData, PointCloud, ScanningStrategy, TransitionEvent
from .exceptions import QualityBelowThresholdError, ScanFusionException
from .fusion import FusionEngine, FusionStats, FusionWeights
from .mesh_refinement import MeshRefiner, RefinementMetrics
from .preprocessing import preprocess_cloud
from .quality import QualityEstimator, QualityMonitor, QualityReport
from .spatial_index import build_index
from .strategy import StrategyController
from .surface_reconstruction import SurfaceReconstructor

logger = logging.getLogger(__name__)


class ScanSession:
    """Context object shared by all passes of one scanning session."""

    def __init__(self,
                 config: Optional[ScanFusionConfig] = None,
                 emitter: Optional[EventEmitter] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize a scanning session.

        Args:
            config: Session configuration, validated here
            emitter: Event emitter shared with observers
            clock: Monotonic time source for rate limits and budgets

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config = (config or ScanFusionConfig()).validate()
        self.session_id = uuid.uuid4().hex[:12]
        self.clock = clock
        self.emitter = emitter or EventEmitter()
        self.cancel_token = CancellationToken()
        self.backend = get_backend(self.config.compute.use_gpu)
        self.worker_pool = WorkerPool(self.config.compute.num_workers, self.config.compute.chunk_size)
        self.strategy_controller = StrategyController(self.config.strategy, self.config.fusion,
                                                      self.emitter, clock=clock)
        self.quality_monitor = QualityMonitor(self.config.quality.history_size)
        self.pass_count = 0
        logger.info(f"Started scan session {self.session_id} (backend={self.backend.name}, "
                    f"workers={self.worker_pool.num_workers})")

    def restart(self) -> None:
        """Cancel in-flight work and clear all per-session history."""
        self.cancel_token.cancel()
        self.cancel_token = CancellationToken()
        self.strategy_controller.reset()
        self.quality_monitor.clear()
        self.pass_count = 0
        logger.info(f"Restarted scan session {self.session_id}")
        self.emitter.emit(EventType.SESSION_RESTARTED, self.session_id)

    def close(self) -> None:
        self.cancel_token.cancel()
        self.worker_pool.shutdown()

    def __enter__(self) -> 'ScanSession':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@dataclass
class PipelineResult:
    """Outputs of one processing pass."""
    mesh: Optional[MeshData]
    strategy: ScanningStrategy
    quality_reports: Dict[str, QualityReport] = field(default_factory=dict)
    transitions: List[TransitionEvent] = field(default_factory=list)
    alignment: Optional[AlignmentResult] = None
    fusion_stats: Optional[FusionStats] = None
    refinement: Optional[RefinementMetrics] = None
    errors: List[ScanFusionException] = field(default_factory=list)
    partial_stages: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    used_fallback_mesh: bool = False

    @property
    def recalibration_required(self) -> bool:
        return self.strategy == ScanningStrategy.NEEDS_RECALIBRATION

    @property
    def is_partial(self) -> bool:
        return bool(self.partial_stages)

    def summary(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy.value,
            'vertices': self.mesh.vertex_count if self.mesh is not None else 0,
            'triangles': self.mesh.triangle_count if self.mesh is not None else 0,
            'quality': {name: report.confidence for name, report in self.quality_reports.items()},
            'transitions': [(t.from_strategy.value, t.to_strategy.value) for t in self.transitions],
            'errors': [str(e) for e in self.errors],
            'partial_stages': list(self.partial_stages),
            'used_fallback_mesh': self.used_fallback_mesh,
            'timings': dict(self.timings),
        }


class FusionPipeline:
    """Runs processing passes within a ScanSession."""

    def __init__(self, session: ScanSession):
        self.session = session

    @contextmanager
    def _stage(self, name: str, result: PipelineResult):
        emitter = self.session.emitter
        emitter.emit(EventType.STAGE_STARTED, name)
        start = time.time()
        try:
            yield
        except Exception as e:
            result.timings[name] = time.time() - start
            logger.error(f"Stage {name} failed: {e}")
            emitter.emit(EventType.STAGE_FAILED, name, e)
            raise
        result.timings[name] = time.time() - start
        emitter.emit(EventType.STAGE_COMPLETED, name, result.timings[name])

    def process(self,
                depth_cloud: Optional[PointCloud],
                image_cloud: Optional[PointCloud],
                bounding_box: Optional[BoundingBox] = None,
                features: Optional[Sequence[Feature]] = None,
                camera: Optional[CameraIntrinsics] = None,
                viewpoint: Optional[np.ndarray] = None) -> PipelineResult:
        """
        Run one pass from raw point sets to a validated mesh.

        Args:
            depth_cloud: Depth-sensor points (may be None)
            image_cloud: Image-derived feature points (may be None)
            bounding_box: Scan volume; points outside are ignored
            features: Tracked features, used for quality and decimation
            camera: Camera record; image points re-projecting outside it are dropped
            viewpoint: Sensor position used to orient normals

        Returns:
            PipelineResult; mesh is None when recalibration is required

        Raises:
            InsufficientDataError: Not enough data to reconstruct a surface
            QualityBelowThresholdError: When fallbacks are disabled
            ProcessingCancelledError: When the session is restarted mid-pass
        """
        session = self.session
        cfg = session.config
        token = session.cancel_token
        session.pass_count += 1
        pass_start = time.time()

        depth = depth_cloud if depth_cloud is not None else PointCloud.empty()
        image = image_cloud if image_cloud is not None else PointCloud.empty()
        result = PipelineResult(mesh=None, strategy=session.strategy_controller.current_strategy)

        with self._stage("preprocessing", result):
            if bounding_box is not None:
                depth = depth.subset(bounding_box.contains(depth.positions))
                image = image.subset(bounding_box.contains(image.positions))
            if camera is not None and len(image):
                image, _ = camera.filter_visible(image)
            if cfg.pipeline.apply_preprocessing:
                depth = preprocess_cloud(depth, cfg.preprocessing)
                image = preprocess_cloud(image, cfg.preprocessing)

        with self._stage("indexing", result):
            depth_index = build_index(depth, config=cfg.spatial_index) if len(depth) else None
            image_index = build_index(image, config=cfg.spatial_index) if len(image) else None

        estimator = QualityEstimator(cfg.quality, session.backend, session.worker_pool, token)
        with self._stage("quality", result):
            depth_report = estimator.report("depth", depth, bounding_box, depth_index, features)
            image_report = estimator.report("image", image, bounding_box, image_index, features)

        alignment_confidence = 0.0
        with self._stage("alignment", result):
            min_pairs = cfg.alignment.min_correspondences
            if len(depth) >= min_pairs and len(image) >= min_pairs:
                engine = AlignmentEngine(cfg.alignment, session.worker_pool, token, clock=session.clock)
                alignment = engine.align(image, depth, target_index=depth_index)
                result.alignment = alignment
                if engine.last_timeout is not None:
                    result.errors.append(engine.last_timeout)
                    result.partial_stages.append("alignment")
                if alignment.failed:
                    logger.warning("Alignment failed, fused strategy unavailable for this pass")
                    image_report = estimator.judge(
                        "image", dataclasses.replace(image_report.metrics, alignment_residual=float('inf')))
                else:
                    image = image.transformed(alignment.rotation, alignment.translation)
                    image_index = build_index(image, config=cfg.spatial_index)
                    alignment_confidence = estimator.alignment_confidence(alignment)
                    image_report = estimator.judge(
                        "image", dataclasses.replace(image_report.metrics, alignment_residual=alignment.residual))

        fusion = FusionEngine(cfg.fusion, session.worker_pool, token)
        with self._stage("strategy", result):
            overlap = fusion.overlap_ratio(depth, image, depth_index, image_index) if alignment_confidence > 0 else 0.0
            result.quality_reports = {'depth': depth_report, 'image': image_report}
            session.quality_monitor.record(depth_report)
            session.quality_monitor.record(image_report)
            session.emitter.emit(EventType.QUALITY_UPDATED, dict(result.quality_reports))

            transition = session.strategy_controller.update(depth_report, image_report,
                                                            alignment_confidence, overlap)
            if transition is not None:
                result.transitions.append(transition)
            result.strategy = session.strategy_controller.current_strategy

        if result.recalibration_required:
            logger.warning("Recalibration required, skipping reconstruction")
            result.timings['total'] = time.time() - pass_start
            return result

        with self._stage("fusion", result):
            if result.strategy == ScanningStrategy.FUSED:
                weights = FusionWeights(depth_report.confidence, image_report.confidence)
                points, result.fusion_stats = fusion.fuse_with_stats(depth, image, weights,
                                                                     depth_index, image_index)
            elif result.strategy == ScanningStrategy.IMAGE_ONLY:
                points = image
            else:
                points = depth

        reconstructor = SurfaceReconstructor(cfg.reconstruction, session.backend, session.worker_pool,
                                             token, clock=session.clock)
        with self._stage("reconstruction", result):
            mesh = reconstructor.reconstruct(points, bounding_box=bounding_box, viewpoint=viewpoint)
            if reconstructor.last_timeout is not None:
                result.errors.append(reconstructor.last_timeout)
                result.partial_stages.append("reconstruction")

        refiner = MeshRefiner(cfg.refinement, session.backend, token, clock=session.clock)
        with self._stage("refinement", result):
            try:
                mesh, result.refinement = refiner.refine(mesh, features)
                if result.refinement.topology_error is not None:
                    result.errors.append(result.refinement.topology_error)
                if result.refinement.timeout is not None:
                    result.errors.append(result.refinement.timeout)
                    result.partial_stages.append("refinement")
            except QualityBelowThresholdError as e:
                if not cfg.pipeline.accept_previous_on_quality_failure or e.fallback_mesh is None:
                    raise
                logger.warning(f"Accepting previous-stage mesh: {e.message}")
                mesh = e.fallback_mesh
                result.refinement = e.metrics
                result.errors.append(e)
                result.used_fallback_mesh = True

        result.mesh = mesh.with_step("pipeline", session_id=session.session_id, pass_index=session.pass_count,
                                     strategy=result.strategy.value)
        result.timings['total'] = time.time() - pass_start
        logger.info(f"Pass {session.pass_count} finished with strategy {result.strategy.value}: "
                    f"{result.mesh.triangle_count} triangles in {result.timings['total']:.2f}s")
        return result
