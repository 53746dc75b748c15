"""
ScanFusion SDK - multi-sensor 3D surface reconstruction.

Quick start:
    from scanfusion import ScanSession, FusionPipeline
    with ScanSession() as session:
        result = FusionPipeline(session).process(depth_cloud, image_cloud)
        mesh = result.mesh
"""

# Import version from pyproject.toml to maintain single source of truth
try:
    import importlib.metadata
    __version__ = importlib.metadata.version("scanfusion-sdk")
except (ImportError, importlib.metadata.PackageNotFoundError):
    # Fallback for development installs
    __version__ = "0.1.0"
__author__ = "ScanFusion Team"

from .core.events import EventType, EventEmitter
from .core.utils import CancellationToken
from .processing import (
    ScanningStrategy, PointCloud, MeshData, BoundingBox, Feature,
    ScanFusionConfig, QualityPreset, ScanFusionException,
    ScanSession, FusionPipeline, PipelineResult
)
from .utils.logging_config import setup_logging, get_logger, debug_mode

# Public API
__all__ = [
    # Version
    '__version__',
    '__author__',

    # Core types
    'EventType',
    'EventEmitter',
    'CancellationToken',
    'ScanningStrategy',
    'PointCloud',
    'MeshData',
    'BoundingBox',
    'Feature',

    # Configuration
    'ScanFusionConfig',
    'QualityPreset',
    'ScanFusionException',

    # Main API
    'ScanSession',
    'FusionPipeline',
    'PipelineResult',

    # Logging
    'setup_logging',
    'get_logger',
    'debug_mode'
]
