"""
Utility modules for ScanFusion: logging setup and Open3D interop.
"""

from .logging_config import ScanFusionLogger, setup_logging, get_logger, debug_mode
from .open3d_utils import (
    OPEN3D_AVAILABLE, to_open3d_point_cloud, from_open3d_point_cloud,
    to_open3d_mesh, from_open3d_mesh, visualize
)

__all__ = [
    'ScanFusionLogger', 'setup_logging', 'get_logger', 'debug_mode',
    'OPEN3D_AVAILABLE', 'to_open3d_point_cloud', 'from_open3d_point_cloud',
    'to_open3d_mesh', 'from_open3d_mesh', 'visualize'
]
