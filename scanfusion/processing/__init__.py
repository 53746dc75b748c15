"""
Multi-sensor surface reconstruction pipeline.

The processing package turns a depth-sensor cloud and an image-derived cloud
into a refined triangle mesh: spatial indexing, quality estimation, ICP
alignment, point fusion, strategy selection, implicit surface extraction and
feature-preserving mesh refinement.
"""

from .data_types import (
    ScanningStrategy, SourceType, Point, Feature, BoundingBox, PointCloud,
    AlignmentResult, QualityMetrics, TransitionEvent, MeshData
)
from .config import (
    QualityPreset, ScanFusionConfig, SpatialIndexConfig, PreprocessingConfig,
    ConfidenceWeights, SourceThresholds, QualityConfig, AlignmentConfig,
    FusionConfig, StrategyConfig, ReconstructionConfig, MeshQualityFloor,
    RefinementConfig, ComputeConfig, PipelineConfig
)
from .exceptions import (
    ScanFusionException, ConfigurationError, DependencyError, ProcessingError,
    InsufficientDataError, AlignmentFailedError, QualityBelowThresholdError,
    InvalidTopologyError, ProcessingTimeoutError, ProcessingCancelledError
)
from .spatial_index import (
    SpatialIndex, KDTreeIndex, OctreeIndex, CKDTreeIndex, build_index,
    k_nearest, radius_search
)
from .compute_backend import CUPY_AVAILABLE, ComputeBackend, get_backend
from .preprocessing import voxel_downsample, remove_statistical_outliers, preprocess_cloud
from .camera import CameraIntrinsics
from .quality import QualityEstimator, QualityMonitor, QualityReport, QualityTrend
from .alignment import AlignmentEngine, kabsch
from .fusion import FusionEngine, FusionWeights, FusionStats
from .strategy import StrategyController, StrategyQuality
from .surface_reconstruction import SurfaceReconstructor
from .mesh_validation import (
    MeshValidator, ValidationReport, MeshQualityAnalyzer, MeshQualityReport
)
from .mesh_refinement import MeshRefiner, RefinementMetrics, QuadricDecimator, taubin_smooth
from .pipeline import ScanSession, FusionPipeline, PipelineResult

__all__ = [
    # Data types
    'ScanningStrategy', 'SourceType', 'Point', 'Feature', 'BoundingBox',
    'PointCloud', 'AlignmentResult', 'QualityMetrics', 'TransitionEvent', 'MeshData',

    # Configuration
    'QualityPreset', 'ScanFusionConfig', 'SpatialIndexConfig', 'PreprocessingConfig',
    'ConfidenceWeights', 'SourceThresholds', 'QualityConfig', 'AlignmentConfig',
    'FusionConfig', 'StrategyConfig', 'ReconstructionConfig', 'MeshQualityFloor',
    'RefinementConfig', 'ComputeConfig', 'PipelineConfig',

    # Exceptions
    'ScanFusionException', 'ConfigurationError', 'DependencyError', 'ProcessingError',
    'InsufficientDataError', 'AlignmentFailedError', 'QualityBelowThresholdError',
    'InvalidTopologyError', 'ProcessingTimeoutError', 'ProcessingCancelledError',

    # Spatial indexing
    'SpatialIndex', 'KDTreeIndex', 'OctreeIndex', 'CKDTreeIndex', 'build_index',
    'k_nearest', 'radius_search',

    # Compute
    'CUPY_AVAILABLE', 'ComputeBackend', 'get_backend',

    # Stages
    'voxel_downsample', 'remove_statistical_outliers', 'preprocess_cloud',
    'CameraIntrinsics',
    'QualityEstimator', 'QualityMonitor', 'QualityReport', 'QualityTrend',
    'AlignmentEngine', 'kabsch',
    'FusionEngine', 'FusionWeights', 'FusionStats',
    'StrategyController', 'StrategyQuality',
    'SurfaceReconstructor',
    'MeshValidator', 'ValidationReport', 'MeshQualityAnalyzer', 'MeshQualityReport',
    'MeshRefiner', 'RefinementMetrics', 'QuadricDecimator', 'taubin_smooth',

    # Pipeline
    'ScanSession', 'FusionPipeline', 'PipelineResult'
]
