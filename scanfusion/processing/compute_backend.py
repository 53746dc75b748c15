"""
Compute backends for the per-point numeric kernels.

The same kernels (covariance eigen-decomposition for normal estimation,
normal agreement for quality scoring, Laplacian smoothing steps, quadric
errors for decimation scoring, triangle quality) run either on the CPU with
numpy or on the GPU with CuPy. Kernels are written once against an array
module ``xp`` so both backends share a single implementation.
"""

import logging
from typing import Tuple

import numpy as np

from ..core.constants import POWER_ITERATIONS

logger = logging.getLogger(__name__)

# Try to import GPU libraries
try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    cp = None
    CUPY_AVAILABLE = False

_EPS = 1e-30
_SEED = np.array([0.8017837, 0.5345225, 0.2672612])  # arbitrary unit vector


def _normalize(xp, v):
    norms = xp.linalg.norm(v, axis=-1, keepdims=True)
    return v / xp.maximum(norms, _EPS), norms[..., 0]


def _power_iteration(xp, cov, iterations, ortho=None):
    """Dominant eigenvector of each symmetric 3x3 matrix, optionally kept orthogonal to ``ortho``."""
    n = cov.shape[0]
    # Start from the largest row; it lies in the range of the matrix
    pick = xp.argmax(xp.linalg.norm(cov, axis=2), axis=1)
    v = cov[xp.arange(n), pick]
    seed = xp.asarray(_SEED)
    if ortho is not None:
        v = v - xp.sum(v * ortho, axis=1, keepdims=True) * ortho
    v, norms = _normalize(xp, v)
    empty = norms <= 1e-20
    if ortho is not None:
        fallback = seed - (ortho @ seed)[:, None] * ortho
        fallback = xp.where(xp.linalg.norm(fallback, axis=1, keepdims=True) > 1e-6,
                            fallback, xp.cross(ortho, xp.asarray([0.0, 0.0, 1.0])))
        fallback, _ = _normalize(xp, fallback)
    else:
        fallback = xp.broadcast_to(seed, v.shape)
    v = xp.where(empty[:, None], fallback, v)

    for _ in range(iterations):
        v = xp.einsum('nij,nj->ni', cov, v)
        if ortho is not None:
            v = v - xp.sum(v * ortho, axis=1, keepdims=True) * ortho
        v, norms = _normalize(xp, v)
        v = xp.where((norms <= 1e-20)[:, None], fallback, v)
    return v


def _covariance_eigen(xp, neighborhoods, iterations):
    centered = neighborhoods - neighborhoods.mean(axis=1, keepdims=True)
    cov = xp.einsum('nki,nkj->nij', centered, centered) / max(neighborhoods.shape[1], 1)

    v1 = _power_iteration(xp, cov, iterations)
    lambda1 = xp.einsum('ni,nij,nj->n', v1, cov, v1)
    # Deflate the dominant direction and find the second one
    deflated = cov - lambda1[:, None, None] * (v1[:, :, None] * v1[:, None, :])
    v2 = _power_iteration(xp, deflated, iterations, ortho=v1)
    lambda2 = xp.einsum('ni,nij,nj->n', v2, cov, v2)
    # The smallest eigenvector completes the orthonormal frame
    normal, _ = _normalize(xp, xp.cross(v1, v2))
    lambda3 = xp.einsum('ni,nij,nj->n', normal, cov, normal)

    eigenvalues = xp.stack([lambda1, lambda2, xp.maximum(lambda3, 0.0)], axis=1)
    return eigenvalues, normal


def _normal_agreement(xp, normals, neighbor_normals, valid):
    dots = xp.abs(xp.einsum('ni,nki->nk', normals, neighbor_normals))
    dots = xp.where(valid, dots, 0.0)
    counts = valid.sum(axis=1)
    return xp.where(counts > 0, dots.sum(axis=1) / xp.maximum(counts, 1), xp.nan), counts


def _laplacian_step(xp, vertices, neighbor_mean, step):
    return vertices + step[:, None] * (neighbor_mean - vertices)


def _quadric_errors(xp, quadrics, positions):
    homogeneous = xp.concatenate([positions, xp.ones((positions.shape[0], 1))], axis=1)
    errors = xp.einsum('ni,nij,nj->n', homogeneous, quadrics, homogeneous)
    return xp.maximum(errors, 0.0)


def _triangle_quality(xp, a, b, c):
    area2 = xp.linalg.norm(xp.cross(b - a, c - a), axis=1)
    edges = (xp.sum((b - a) ** 2, axis=1) + xp.sum((c - b) ** 2, axis=1) +
             xp.sum((a - c) ** 2, axis=1))
    # 2*sqrt(3)*|cross| / sum(edge^2) is 1 for equilateral triangles
    quality = 2.0 * np.sqrt(3.0) * area2 / xp.maximum(edges, _EPS)
    return xp.clip(quality, 0.0, 1.0)


class ComputeBackend:
    """Interface of a compute backend. Inputs and outputs are numpy arrays."""

    name = "base"
    is_gpu = False

    def covariance_eigen(self, neighborhoods: np.ndarray,
                         iterations: int = POWER_ITERATIONS) -> Tuple[np.ndarray, np.ndarray]:
        """
        Eigen-decompose the covariance of each neighbourhood.

        Args:
            neighborhoods: (N, k, 3) neighbour positions per point
            iterations: Power iterations per eigenvector

        Returns:
            (eigenvalues, normals): (N, 3) eigenvalues in descending order and
            (N, 3) unit eigenvectors of the smallest eigenvalue
        """
        raise NotImplementedError

    def normal_agreement(self, normals: np.ndarray, neighbor_normals: np.ndarray,
                         valid: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Mean |dot| between each normal and its valid neighbours' normals (NaN when none)."""
        raise NotImplementedError

    def laplacian_step(self, vertices: np.ndarray, neighbor_mean: np.ndarray, step: np.ndarray) -> np.ndarray:
        """Move every vertex toward its neighbour centroid by a per-vertex step."""
        raise NotImplementedError

    def quadric_errors(self, quadrics: np.ndarray, positions: np.ndarray) -> np.ndarray:
        """Error v^T Q v of each position under its 4x4 quadric."""
        raise NotImplementedError

    def triangle_quality(self, a: np.ndarray, b: np.ndarray, c: np.ndarray) -> np.ndarray:
        """Shape quality in [0, 1] per triangle (1 for equilateral, 0 for degenerate)."""
        raise NotImplementedError


class NumpyBackend(ComputeBackend):
    """CPU backend."""

    name = "numpy"

    def covariance_eigen(self, neighborhoods, iterations=POWER_ITERATIONS):
        neighborhoods = np.asarray(neighborhoods, dtype=np.float64)
        if len(neighborhoods) == 0:
            return np.zeros((0, 3)), np.zeros((0, 3))
        return _covariance_eigen(np, neighborhoods, iterations)

    def normal_agreement(self, normals, neighbor_normals, valid):
        return _normal_agreement(np, np.asarray(normals, dtype=np.float64),
                                 np.asarray(neighbor_normals, dtype=np.float64),
                                 np.asarray(valid, dtype=bool))

    def laplacian_step(self, vertices, neighbor_mean, step):
        return _laplacian_step(np, np.asarray(vertices, dtype=np.float64),
                               np.asarray(neighbor_mean, dtype=np.float64),
                               np.asarray(step, dtype=np.float64))

    def quadric_errors(self, quadrics, positions):
        return _quadric_errors(np, np.asarray(quadrics, dtype=np.float64),
                               np.asarray(positions, dtype=np.float64).reshape(-1, 3))

    def triangle_quality(self, a, b, c):
        return _triangle_quality(np, np.asarray(a, dtype=np.float64),
                                 np.asarray(b, dtype=np.float64), np.asarray(c, dtype=np.float64))


class CupyBackend(ComputeBackend):
    """
    GPU backend built on CuPy.

    Any kernel failure on the device is logged and the call is repeated on the
    numpy backend, so callers never see GPU errors.
    """

    name = "cupy"
    is_gpu = True

    def __init__(self, device_id: int = 0):
        if not CUPY_AVAILABLE:
            raise RuntimeError("CuPy is not installed")
        self.device = cp.cuda.Device(device_id)
        self.device.use()
        # Warm up the GPU so the first kernel does not pay for context creation
        sample = cp.ones((16, 3), dtype=cp.float64)
        cp.cuda.Stream.null.synchronize()
        del sample
        self._cpu = NumpyBackend()
        logger.info(f"Using CUDA device {device_id} for compute kernels")

    def to_gpu(self, data: np.ndarray):
        return cp.asarray(data)

    def to_cpu(self, data) -> np.ndarray:
        if isinstance(data, cp.ndarray):
            return data.get()
        return data

    def _run(self, name: str, kernel, *arrays):
        try:
            result = kernel(cp, *[self.to_gpu(np.asarray(a)) for a in arrays])
            if isinstance(result, tuple):
                return tuple(self.to_cpu(r) for r in result)
            return self.to_cpu(result)
        except Exception as e:
            logger.warning(f"GPU kernel '{name}' failed ({e}), falling back to CPU")
            return getattr(self._cpu, name)(*arrays)

    def free_memory(self) -> None:
        cp.get_default_memory_pool().free_all_blocks()

    def covariance_eigen(self, neighborhoods, iterations=POWER_ITERATIONS):
        neighborhoods = np.asarray(neighborhoods, dtype=np.float64)
        if len(neighborhoods) == 0:
            return np.zeros((0, 3)), np.zeros((0, 3))
        try:
            values, normals = _covariance_eigen(cp, self.to_gpu(neighborhoods), iterations)
            return self.to_cpu(values), self.to_cpu(normals)
        except Exception as e:
            logger.warning(f"GPU kernel 'covariance_eigen' failed ({e}), falling back to CPU")
            return self._cpu.covariance_eigen(neighborhoods, iterations)

    def normal_agreement(self, normals, neighbor_normals, valid):
        return self._run('normal_agreement', _normal_agreement, normals, neighbor_normals, valid)

    def laplacian_step(self, vertices, neighbor_mean, step):
        return self._run('laplacian_step', _laplacian_step, vertices, neighbor_mean, step)

    def quadric_errors(self, quadrics, positions):
        return self._run('quadric_errors', _quadric_errors, quadrics, np.asarray(positions).reshape(-1, 3))

    def triangle_quality(self, a, b, c):
        return self._run('triangle_quality', _triangle_quality, a, b, c)


def get_backend(prefer_gpu: bool = True) -> ComputeBackend:
    """
    Select a compute backend.

    Args:
        prefer_gpu: Try the CuPy backend first

    Returns:
        CupyBackend when CuPy and a device initialise, NumpyBackend otherwise
    """
    if prefer_gpu and CUPY_AVAILABLE:
        try:
            return CupyBackend()
        except Exception as e:
            logger.warning(f"Failed to initialize GPU backend: {e}. Using CPU")
    elif prefer_gpu:
        logger.debug("CuPy not found, using the numpy compute backend")
    return NumpyBackend()
