"""
Custom exceptions for ScanFusion processing.

This module defines all custom exceptions used throughout the pipeline,
providing consistent error handling and clear error messages.
"""

import functools
from typing import Optional, Any


class ScanFusionException(Exception):
    """Base exception for all ScanFusion errors."""

    def __init__(self, message: str, details: Optional[Any] = None):
        """
        Initialize ScanFusion exception.

        Args:
            message: Error message
            details: Optional additional details
        """
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(ScanFusionException):
    """Raised when configuration is invalid."""

    def __init__(self, config_type: str, reason: str):
        message = f"Invalid {config_type} configuration: {reason}"
        super().__init__(message, details={'config_type': config_type, 'reason': reason})


class DependencyError(ScanFusionException):
    """Raised when required dependency is missing."""

    def __init__(self, dependency: str, purpose: str):
        message = f"Missing dependency '{dependency}' required for {purpose}"
        super().__init__(message, details={'dependency': dependency, 'purpose': purpose})


class ProcessingError(ScanFusionException):
    """Base exception for processing pipeline errors."""
    pass


class InsufficientDataError(ProcessingError):
    """Raised when not enough points or features are available to proceed."""

    def __init__(self, data_type: str, expected: int, actual: int):
        message = f"Insufficient {data_type}: expected {expected}, got {actual}"
        super().__init__(message, details={
            'data_type': data_type,
            'expected': expected,
            'actual': actual
        })
        self.data_type = data_type
        self.expected = expected
        self.actual = actual


class AlignmentFailedError(ProcessingError):
    """Raised when ICP found too few correspondences or did not converge."""

    def __init__(self, reason: str, correspondences: int = 0, residual: float = float('inf')):
        message = f"Alignment failed: {reason}"
        super().__init__(message, details={
            'reason': reason,
            'correspondences': correspondences,
            'residual': residual
        })
        self.reason = reason
        self.correspondences = correspondences
        self.residual = residual


class QualityBelowThresholdError(ProcessingError):
    """
    Raised when a stage output fails its quality floor.

    The previous-stage result travels with the error so the caller can accept
    it instead of retrying.
    """

    def __init__(self, metric: str, value: float, threshold: float,
                 fallback_mesh: Optional[Any] = None, metrics: Optional[Any] = None):
        message = f"Quality below threshold: {metric}={value:.4f} (required {threshold:.4f})"
        super().__init__(message, details={'metric': metric, 'value': value, 'threshold': threshold})
        self.metric = metric
        self.value = value
        self.threshold = threshold
        self.fallback_mesh = fallback_mesh
        self.metrics = metrics


class InvalidTopologyError(ProcessingError):
    """Raised when a mesh fails manifoldness or degeneracy checks."""

    def __init__(self, reason: str):
        message = f"Invalid mesh topology: {reason}"
        super().__init__(message, details={'reason': reason})
        self.reason = reason


class ProcessingTimeoutError(ProcessingError):
    """Raised (or attached as a flag) when a bounded stage exceeds its budget."""

    def __init__(self, stage: str, elapsed: float):
        message = f"{stage} exceeded its time budget after {elapsed:.2f}s"
        super().__init__(message, details={'stage': stage, 'elapsed': elapsed})
        self.stage = stage
        self.elapsed = elapsed


class ProcessingCancelledError(ProcessingError):
    """Raised when a cancellation token is observed by a running stage."""

    def __init__(self, stage: str):
        message = f"{stage} was cancelled"
        super().__init__(message, details={'stage': stage})
        self.stage = stage


# Error handling utilities
def handle_processing_error(stage: str):
    """Decorator converting unexpected exceptions at a stage boundary into ProcessingError."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ScanFusionException:
                raise  # Re-raise our custom exceptions
            except Exception as e:
                raise ProcessingError(f"{stage} failed: {str(e)}", details=e) from e
        return wrapper
    return decorator
