"""
Core module of ScanFusion - base definitions that do not depend on other modules.
"""

from .constants import LOG_FORMAT, MAX_LOG_FILE_SIZE
from .events import EventType, EventEmitter
from .utils import CancellationToken, Deadline, WorkerPool, partition_range

__all__ = [
    # Constants
    'LOG_FORMAT', 'MAX_LOG_FILE_SIZE',

    # Events
    'EventType', 'EventEmitter',

    # Utils
    'CancellationToken', 'Deadline', 'WorkerPool', 'partition_range'
]
