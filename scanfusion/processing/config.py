"""
Configuration management for the ScanFusion pipeline.

Every section is a dataclass with the tuned defaults of the scanning system.
ScanFusionConfig aggregates the sections, offers quality presets and JSON
round-tripping, and validates ranges before a session starts.
"""

import json
import logging
from dataclasses import dataclass, field, asdict, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..core import constants as C
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class QualityPreset(Enum):
    """Processing quality presets."""
    DRAFT = "draft"        # Fast preview
    STANDARD = "standard"  # Balanced speed and quality
    HIGH = "high"          # Slow, maximum detail


@dataclass
class SpatialIndexConfig:
    """Configuration for nearest-neighbour indices."""
    backend: str = C.DEFAULT_INDEX_BACKEND  # "ckdtree", "kdtree" or "octree"
    leaf_size: int = C.DEFAULT_KDTREE_LEAF_SIZE
    octree_capacity: int = C.DEFAULT_OCTREE_CAPACITY
    octree_max_depth: int = C.DEFAULT_OCTREE_MAX_DEPTH


@dataclass
class PreprocessingConfig:
    """Per-source cleanup applied before indexing."""
    enabled: bool = True
    voxel_size: Optional[float] = None  # m, None disables downsampling
    statistical_outlier_neighbors: int = C.DEFAULT_OUTLIER_NEIGHBORS
    statistical_outlier_std_ratio: float = C.DEFAULT_OUTLIER_STD


@dataclass
class ConfidenceWeights:
    """Weights combining sub-metrics into one source confidence. Must sum to 1."""
    density: float = 0.25
    normal_consistency: float = 0.20
    completeness: float = 0.20
    noise: float = 0.15
    feature_preservation: float = 0.10
    alignment: float = 0.10

    def total(self) -> float:
        return (self.density + self.normal_consistency + self.completeness +
                self.noise + self.feature_preservation + self.alignment)


@dataclass
class SourceThresholds:
    """Minimum requirements for a source to be considered valid."""
    min_depth_points: int = 1000
    min_image_points: int = 100
    min_density: float = 0.05
    min_normal_consistency: float = 0.3


@dataclass
class QualityConfig:
    """Configuration for per-source quality estimation."""
    optimal_density: float = C.DEFAULT_OPTIMAL_DENSITY  # points per m^3
    normal_k: int = C.DEFAULT_NORMAL_CONSISTENCY_K
    normal_radius: float = C.DEFAULT_NORMAL_CONSISTENCY_RADIUS
    min_consistency_neighbors: int = C.MIN_CONSISTENCY_NEIGHBORS
    max_noise_level: float = C.DEFAULT_MAX_NOISE_LEVEL
    completeness_grid: int = C.DEFAULT_COMPLETENESS_GRID
    feature_radius: float = 0.005
    max_acceptable_residual: float = C.DEFAULT_MAX_ACCEPTABLE_RESIDUAL
    history_size: int = C.QUALITY_HISTORY_SIZE
    weights: ConfidenceWeights = field(default_factory=ConfidenceWeights)
    thresholds: SourceThresholds = field(default_factory=SourceThresholds)


@dataclass
class AlignmentConfig:
    """Configuration for ICP registration."""
    max_iterations: int = C.DEFAULT_ICP_MAX_ITERATIONS
    convergence_threshold: float = C.DEFAULT_ICP_CONVERGENCE_THRESHOLD
    max_correspondence_distance: Optional[float] = None  # m, None accepts every match
    min_correspondences: int = C.MIN_CORRESPONDENCES
    time_budget: Optional[float] = C.DEFAULT_STAGE_BUDGET
    raise_on_failure: bool = False


@dataclass
class FusionConfig:
    """Configuration for confidence-weighted fusion."""
    max_fusion_distance: float = C.DEFAULT_MAX_FUSION_DISTANCE
    fusion_confidence_threshold: float = C.DEFAULT_FUSION_CONFIDENCE_THRESHOLD
    min_overlap: float = C.DEFAULT_MIN_OVERLAP
    candidate_neighbors: int = 4
    merged_confidence_policy: str = "mean"        # "mean" or "max"
    unmatched_confidence_policy: str = "computed"  # "computed", "fixed" or "keep"
    fixed_depth_confidence: float = C.FIXED_DEPTH_CONFIDENCE
    fixed_image_confidence: float = C.FIXED_IMAGE_CONFIDENCE
    support_neighbors: int = 8


@dataclass
class StrategyConfig:
    """Configuration for the hysteretic strategy controller."""
    improvement_margin: float = C.DEFAULT_IMPROVEMENT_MARGIN
    oscillation_window: int = C.DEFAULT_OSCILLATION_WINDOW
    rate_limit_window: float = C.DEFAULT_RATE_LIMIT_WINDOW  # seconds
    rate_limit_max_transitions: int = C.DEFAULT_RATE_LIMIT_MAX_TRANSITIONS
    history_capacity: int = C.TRANSITION_HISTORY_CAPACITY
    min_depth_quality: float = 0.7
    min_image_quality: float = 0.6
    min_fused_quality: float = C.DEFAULT_FUSION_CONFIDENCE_THRESHOLD


@dataclass
class ReconstructionConfig:
    """Configuration for orientation and iso-surface extraction."""
    orientation_k: int = C.DEFAULT_ORIENTATION_K
    min_orientation_confidence: float = C.DEFAULT_MIN_ORIENTATION_CONFIDENCE
    resolution: int = C.DEFAULT_GRID_RESOLUTION
    max_resolution: int = C.MAX_GRID_RESOLUTION
    padding_cells: int = 2
    truncation_cells: float = 3.0
    field_neighbors: int = 8
    min_points: int = 20
    power_iterations: int = C.POWER_ITERATIONS
    time_budget: Optional[float] = C.DEFAULT_STAGE_BUDGET


@dataclass
class MeshQualityFloor:
    """Minimum mesh quality accepted after refinement."""
    min_vertex_density: float = 10.0  # vertices per m^2 of surface
    min_normal_consistency: float = 0.8
    min_smoothness: float = 0.7
    min_feature_preservation: float = 0.8
    min_quality_score: float = 0.6


@dataclass
class RefinementConfig:
    """Configuration for decimation, smoothing and validation."""
    target_triangles: int = C.DEFAULT_TARGET_TRIANGLES
    max_edge_error: float = C.DEFAULT_MAX_EDGE_ERROR
    feature_weight: float = C.DEFAULT_FEATURE_WEIGHT
    feature_radius: float = 0.01
    curvature_weight: float = 1.0
    smoothing_iterations: int = 3
    taubin_lambda: float = C.TAUBIN_LAMBDA
    taubin_mu: float = C.TAUBIN_MU
    degenerate_epsilon: float = C.DEGENERATE_AREA_EPSILON
    normal_tolerance: float = C.NORMAL_LENGTH_TOLERANCE
    max_hole_count: int = 10
    max_hole_perimeter: float = 0.05  # m
    allow_open_boundary: bool = True
    time_budget: Optional[float] = C.DEFAULT_STAGE_BUDGET
    quality_floor: MeshQualityFloor = field(default_factory=MeshQualityFloor)


@dataclass
class ComputeConfig:
    """Configuration for the compute backend and worker pool."""
    use_gpu: bool = True
    num_workers: Optional[int] = None
    chunk_size: int = C.DEFAULT_CHUNK_SIZE


@dataclass
class PipelineConfig:
    """Pipeline-level recovery behaviour."""
    accept_previous_on_quality_failure: bool = True
    apply_preprocessing: bool = True


_SECTIONS = {
    'spatial_index': SpatialIndexConfig,
    'preprocessing': PreprocessingConfig,
    'quality': QualityConfig,
    'alignment': AlignmentConfig,
    'fusion': FusionConfig,
    'strategy': StrategyConfig,
    'reconstruction': ReconstructionConfig,
    'refinement': RefinementConfig,
    'compute': ComputeConfig,
    'pipeline': PipelineConfig,
}


def _build_section(cls, values: Dict[str, Any]):
    """Instantiate a (possibly nested) dataclass section from a dict."""
    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(cls.__name__, f"unknown field '{key}'")
        default = known[key].default_factory() if callable(known[key].default_factory) else None
        if is_dataclass(default) and isinstance(value, dict):
            value = _build_section(type(default), value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass
class ScanFusionConfig:
    """Complete configuration of a scanning session."""
    spatial_index: SpatialIndexConfig = field(default_factory=SpatialIndexConfig)
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    reconstruction: ReconstructionConfig = field(default_factory=ReconstructionConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    preset: QualityPreset = QualityPreset.STANDARD

    @classmethod
    def create_preset(cls, preset: QualityPreset) -> 'ScanFusionConfig':
        """
        Create a configuration preset.

        Args:
            preset: Quality preset to use

        Returns:
            Configuration object with preset values
        """
        config = cls(preset=preset)

        if preset == QualityPreset.DRAFT:
            config.preprocessing.voxel_size = 0.004
            config.alignment.max_iterations = 20
            config.reconstruction.resolution = 32
            config.refinement.target_triangles = 10000
            config.refinement.smoothing_iterations = 1
            config.refinement.quality_floor.min_quality_score = 0.4

        elif preset == QualityPreset.STANDARD:
            config.preprocessing.voxel_size = 0.002
            config.reconstruction.resolution = 64
            config.refinement.target_triangles = 50000

        elif preset == QualityPreset.HIGH:
            config.preprocessing.voxel_size = None
            config.alignment.max_iterations = 100
            config.alignment.convergence_threshold = 1e-7
            config.reconstruction.resolution = 128
            config.refinement.target_triangles = 200000
            config.refinement.smoothing_iterations = 5
            config.refinement.max_edge_error = 5e-6
            config.refinement.quality_floor.min_quality_score = 0.7

        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScanFusionConfig':
        """Build a configuration from a (partial) nested dict."""
        kwargs = {}
        for key, value in data.items():
            if key == 'preset':
                try:
                    kwargs['preset'] = QualityPreset(value)
                except ValueError:
                    raise ConfigurationError('preset', f"unknown preset '{value}'")
            elif key in _SECTIONS:
                if not isinstance(value, dict):
                    raise ConfigurationError(key, "section must be a mapping")
                kwargs[key] = _build_section(_SECTIONS[key], value)
            else:
                raise ConfigurationError('root', f"unknown section '{key}'")
        return cls(**kwargs)

    @classmethod
    def from_json_file(cls, filepath: Union[str, Path]) -> 'ScanFusionConfig':
        """Load a configuration saved with save_json."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        logger.info(f"Loaded configuration from {filepath}")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: asdict(getattr(self, name)) for name in _SECTIONS}
        data['preset'] = self.preset.value
        return data

    def save_json(self, filepath: Union[str, Path]) -> None:
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved configuration to {filepath}")

    def validate(self) -> 'ScanFusionConfig':
        """
        Check ranges and relationships between settings.

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        def require(condition: bool, section: str, reason: str):
            if not condition:
                raise ConfigurationError(section, reason)

        idx = self.spatial_index
        require(idx.backend in ('ckdtree', 'kdtree', 'octree'), 'spatial_index',
                f"unknown backend '{idx.backend}'")
        require(idx.leaf_size >= 1, 'spatial_index', "leaf_size must be >= 1")
        require(idx.octree_capacity >= 1, 'spatial_index', "octree_capacity must be >= 1")
        require(idx.octree_max_depth >= 0, 'spatial_index', "octree_max_depth must be >= 0")

        pre = self.preprocessing
        require(pre.voxel_size is None or pre.voxel_size > 0, 'preprocessing', "voxel_size must be positive")
        require(pre.statistical_outlier_neighbors >= 1, 'preprocessing', "outlier neighbours must be >= 1")
        require(pre.statistical_outlier_std_ratio > 0, 'preprocessing', "outlier std ratio must be positive")

        q = self.quality
        require(q.optimal_density > 0, 'quality', "optimal_density must be positive")
        require(q.normal_k >= 1, 'quality', "normal_k must be >= 1")
        require(q.normal_radius > 0, 'quality', "normal_radius must be positive")
        require(q.max_noise_level > 0, 'quality', "max_noise_level must be positive")
        require(q.completeness_grid >= 1, 'quality', "completeness_grid must be >= 1")
        require(q.max_acceptable_residual > 0, 'quality', "max_acceptable_residual must be positive")
        require(q.history_size >= 2, 'quality', "history_size must be >= 2")
        weights = asdict(q.weights)
        require(all(w >= 0 for w in weights.values()), 'quality', "confidence weights must be non-negative")
        require(abs(q.weights.total() - 1.0) <= C.WEIGHT_SUM_TOLERANCE, 'quality',
                f"confidence weights must sum to 1 (got {q.weights.total():.6f})")
        t = q.thresholds
        require(t.min_depth_points >= 0 and t.min_image_points >= 0, 'quality', "minimum point counts must be >= 0")
        require(0.0 <= t.min_density <= 1.0, 'quality', "min_density must be in [0, 1]")
        require(0.0 <= t.min_normal_consistency <= 1.0, 'quality', "min_normal_consistency must be in [0, 1]")

        a = self.alignment
        require(a.max_iterations >= 1, 'alignment', "max_iterations must be >= 1")
        require(a.convergence_threshold >= 0, 'alignment', "convergence_threshold must be >= 0")
        require(a.max_correspondence_distance is None or a.max_correspondence_distance > 0,
                'alignment', "max_correspondence_distance must be positive")
        require(a.min_correspondences >= 3, 'alignment', "min_correspondences must be >= 3")
        require(a.time_budget is None or a.time_budget > 0, 'alignment', "time_budget must be positive")

        fu = self.fusion
        require(fu.max_fusion_distance > 0, 'fusion', "max_fusion_distance must be positive")
        require(0.0 <= fu.fusion_confidence_threshold <= 1.0, 'fusion', "fusion_confidence_threshold must be in [0, 1]")
        require(0.0 < fu.min_overlap <= 1.0, 'fusion', "min_overlap must be in (0, 1]")
        require(fu.candidate_neighbors >= 1, 'fusion', "candidate_neighbors must be >= 1")
        require(fu.merged_confidence_policy in ('mean', 'max'), 'fusion',
                f"unknown merged_confidence_policy '{fu.merged_confidence_policy}'")
        require(fu.unmatched_confidence_policy in ('computed', 'fixed', 'keep'), 'fusion',
                f"unknown unmatched_confidence_policy '{fu.unmatched_confidence_policy}'")
        require(0.0 <= fu.fixed_depth_confidence <= 1.0 and 0.0 <= fu.fixed_image_confidence <= 1.0,
                'fusion', "fixed confidences must be in [0, 1]")

        s = self.strategy
        require(0.0 <= s.improvement_margin <= 1.0, 'strategy', "improvement_margin must be in [0, 1]")
        require(s.oscillation_window >= 4, 'strategy', "oscillation_window must be >= 4")
        require(s.rate_limit_window > 0, 'strategy', "rate_limit_window must be positive")
        require(s.rate_limit_max_transitions >= 1, 'strategy', "rate_limit_max_transitions must be >= 1")
        require(s.history_capacity >= s.oscillation_window, 'strategy',
                "history_capacity must hold at least one oscillation window")
        for name in ('min_depth_quality', 'min_image_quality', 'min_fused_quality'):
            require(0.0 <= getattr(s, name) <= 1.0, 'strategy', f"{name} must be in [0, 1]")

        r = self.reconstruction
        require(r.orientation_k >= 3, 'reconstruction', "orientation_k must be >= 3")
        require(0.0 <= r.min_orientation_confidence <= 1.0, 'reconstruction',
                "min_orientation_confidence must be in [0, 1]")
        require(4 <= r.resolution <= r.max_resolution, 'reconstruction',
                f"resolution must be in [4, {r.max_resolution}]")
        require(r.padding_cells >= 1, 'reconstruction', "padding_cells must be >= 1")
        require(r.truncation_cells > 0, 'reconstruction', "truncation_cells must be positive")
        require(r.field_neighbors >= 1, 'reconstruction', "field_neighbors must be >= 1")

        m = self.refinement
        require(m.target_triangles >= 1, 'refinement', "target_triangles must be >= 1")
        require(m.max_edge_error > 0, 'refinement', "max_edge_error must be positive")
        require(m.feature_weight >= 0, 'refinement', "feature_weight must be >= 0")
        require(m.feature_radius > 0, 'refinement', "feature_radius must be positive")
        require(m.smoothing_iterations >= 0, 'refinement', "smoothing_iterations must be >= 0")
        require(0.0 < m.taubin_lambda < 1.0 and m.taubin_mu < -m.taubin_lambda, 'refinement',
                "Taubin factors need 0 < lambda < -mu")
        require(m.max_hole_count >= 0 and m.max_hole_perimeter >= 0, 'refinement', "hole bounds must be >= 0")
        floor = m.quality_floor
        for name in ('min_normal_consistency', 'min_smoothness', 'min_feature_preservation', 'min_quality_score'):
            require(0.0 <= getattr(floor, name) <= 1.0, 'refinement', f"{name} must be in [0, 1]")
        require(floor.min_vertex_density >= 0, 'refinement', "min_vertex_density must be >= 0")

        c = self.compute
        require(c.num_workers is None or c.num_workers >= 1, 'compute', "num_workers must be >= 1")
        require(c.chunk_size >= 1, 'compute', "chunk_size must be >= 1")

        return self
