"""
Logging setup for ScanFusion applications.

Library modules only call ``logging.getLogger(__name__)``; applications and
examples call setup_logging() or debug_mode() once at startup.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional, Union

from ..core.constants import DEBUG_DIR_PREFIX, LOG_FORMAT, MAX_LOG_FILE_SIZE

CONSOLE_FORMAT = '%(levelname)-7s %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_BACKUP_COUNT = 3


class ScanFusionLogger:
    """Root logger configuration shared by ScanFusion tools."""

    LEVELS = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }

    # Defaults per module; per-pass stage logs stay at INFO, per-query logs are quieter
    MODULE_LEVELS = {
        'scanfusion.processing.alignment': logging.INFO,
        'scanfusion.processing.fusion': logging.INFO,
        'scanfusion.processing.strategy': logging.INFO,
        'scanfusion.processing.spatial_index': logging.WARNING,
        'scanfusion.processing.normals': logging.WARNING,
        'scanfusion.processing.mesh_refinement': logging.INFO,
        'scanfusion.core': logging.WARNING,
    }

    @classmethod
    def parse_level(cls, level: Union[str, int]) -> int:
        """Accept a level name or number; unknown names map to INFO."""
        if isinstance(level, int):
            return level
        return cls.LEVELS.get(str(level).upper(), logging.INFO)

    @classmethod
    def _console_handler(cls, level: int) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        return handler

    @classmethod
    def _file_handler(cls, log_file: Union[str, Path]) -> logging.Handler:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=MAX_LOG_FILE_SIZE, backupCount=LOG_BACKUP_COUNT)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        return handler

    @classmethod
    def apply_module_levels(cls, overrides: Optional[Dict[str, Union[str, int]]] = None) -> None:
        """Set the default per-module levels, then any overrides on top."""
        levels = dict(cls.MODULE_LEVELS)
        levels.update({name: cls.parse_level(value) for name, value in (overrides or {}).items()})
        for name, value in levels.items():
            logging.getLogger(name).setLevel(value)

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = 'INFO',
        log_file: Optional[Union[str, Path]] = None,
        console: bool = True,
        module_levels: Optional[Dict[str, Union[str, int]]] = None
    ) -> None:
        """
        Replace the root handlers with a console and/or rotating file handler.

        Args:
            level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL) or number
            log_file: Optional log file; it always records DEBUG and above
            console: Log to stdout
            module_levels: Per-module level overrides, e.g. {'scanfusion.processing.fusion': 'DEBUG'}
        """
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        if console:
            root.addHandler(cls._console_handler(cls.parse_level(level)))
        if log_file:
            root.addHandler(cls._file_handler(log_file))

        cls.apply_module_levels(module_levels)

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        return logging.getLogger(name)

    @classmethod
    def session_log_dir(cls, session_name: Optional[str] = None, base_dir: Optional[Path] = None) -> Path:
        """Directory for one debug session, e.g. ~/.scanfusion/logs/scanfusion_debug_20240101_120000."""
        name = session_name or f"{DEBUG_DIR_PREFIX}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        root = Path(base_dir) if base_dir else Path.home() / '.scanfusion' / 'logs'
        return root / name

    @classmethod
    def setup_debug_logging(cls, session_name: Optional[str] = None, base_dir: Optional[Path] = None) -> str:
        """
        Log everything to the console and to debug.log in a fresh session directory.

        Returns:
            Path of the debug log file
        """
        session_dir = cls.session_log_dir(session_name, base_dir)
        session_dir.mkdir(parents=True, exist_ok=True)
        log_file = session_dir / 'debug.log'
        cls.setup_logging(level='DEBUG', log_file=log_file, console=True,
                          module_levels={name: 'DEBUG' for name in cls.MODULE_LEVELS})

        logger = logging.getLogger('scanfusion')
        logger.info(f"Debug logging to {log_file}")
        return str(log_file)


def setup_logging(**kwargs) -> None:
    ScanFusionLogger.setup_logging(**kwargs)


def get_logger(name: str) -> logging.Logger:
    return ScanFusionLogger.get_logger(name)


def debug_mode(session_name: Optional[str] = None, base_dir: Optional[Path] = None) -> str:
    """Turn on full debug logging for this process."""
    return ScanFusionLogger.setup_debug_logging(session_name, base_dir)
