"""
Local surface frames: per-point normals from neighbourhood covariance.

Shared by quality estimation (normal consistency, noise) and surface
reconstruction (orientation).
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import breadth_first_order, connected_components, minimum_spanning_tree

from ..core.constants import POWER_ITERATIONS
from ..core.utils import CancellationToken, WorkerPool
from .compute_backend import ComputeBackend, NumpyBackend
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)

_DEGENERATE_VARIANCE = 1e-18
_EDGE_WEIGHT_FLOOR = 1e-6
_REFERENCE_VOTE_WEIGHT = 10.0


@dataclass
class LocalFrames:
    """
    Attributes:
        normals: (N, 3) unit normals, NaN rows where the neighbourhood is degenerate
        eigenvalues: (N, 3) covariance eigenvalues, descending
        neighbors: (N, k) neighbour indices, nearest first, the point itself excluded
        distances: (N, k) neighbour distances
        valid: (N,) mask of points with a usable normal
    """
    normals: np.ndarray
    eigenvalues: np.ndarray
    neighbors: np.ndarray
    distances: np.ndarray
    valid: np.ndarray

    @property
    def surface_variation(self) -> np.ndarray:
        """lambda3 / (lambda1 + lambda2 + lambda3), in [0, 1/3]."""
        total = self.eigenvalues.sum(axis=1)
        return np.where(total > 0, self.eigenvalues[:, 2] / np.maximum(total, _DEGENERATE_VARIANCE), 0.0)

    @property
    def planarity(self) -> np.ndarray:
        return np.clip(1.0 - 3.0 * self.surface_variation, 0.0, 1.0)

    @property
    def plane_distance(self) -> np.ndarray:
        """RMS distance of each neighbourhood to its fitted plane."""
        return np.sqrt(np.maximum(self.eigenvalues[:, 2], 0.0))


def estimate_local_frames(positions: np.ndarray,
                          index: SpatialIndex,
                          k: int,
                          backend: Optional[ComputeBackend] = None,
                          worker_pool: Optional[WorkerPool] = None,
                          cancel_token: Optional[CancellationToken] = None,
                          iterations: int = POWER_ITERATIONS) -> LocalFrames:
    """
    Fit a plane to the k nearest neighbours of every point.

    Args:
        positions: (N, 3) positions (must be the points the index was built on)
        index: Spatial index over positions
        k: Neighbours per point, excluding the point itself
        backend: Compute backend for the covariance kernel
        worker_pool: Pool partitioning the points into chunks
        cancel_token: Polled between chunks
        iterations: Power iterations per eigenvector

    Returns:
        LocalFrames for all points
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    n = len(positions)
    backend = backend or NumpyBackend()
    k_query = min(k + 1, n)
    if n == 0 or k_query < 1:
        return LocalFrames(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros((0, 0), dtype=np.int64),
                           np.zeros((0, 0)), np.zeros(0, dtype=bool))

    def process(start: int, stop: int):
        idx, dist = index.k_nearest_batch(positions[start:stop], k_query)
        eigenvalues, normals = backend.covariance_eigen(positions[idx], iterations)
        return idx, dist, eigenvalues, normals

    if worker_pool is not None:
        chunks = worker_pool.map_ranges(process, n, cancel_token, stage="normal estimation")
    else:
        if cancel_token is not None:
            cancel_token.check("normal estimation")
        chunks = [process(0, n)]

    idx = np.concatenate([c[0] for c in chunks])
    dist = np.concatenate([c[1] for c in chunks])
    eigenvalues = np.concatenate([c[2] for c in chunks])
    normals = np.concatenate([c[3] for c in chunks])

    # Fewer than three points, coincident or collinear neighbourhoods have no plane
    valid = (k_query >= 3) & (eigenvalues[:, 1] > _DEGENERATE_VARIANCE) & np.all(np.isfinite(normals), axis=1)
    normals = np.where(valid[:, None], normals, np.nan)

    logger.debug(f"Estimated local frames for {n} points ({int(valid.sum())} valid, k={k_query - 1})")
    return LocalFrames(normals=normals, eigenvalues=eigenvalues, neighbors=idx[:, 1:],
                       distances=dist[:, 1:], valid=valid)


def propagate_orientation(normals: np.ndarray,
                          neighbors: np.ndarray,
                          mask: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Make normal signs agree across the neighbourhood graph.

    The kNN graph is weighted by 1 - |n_i . n_j| and its minimum spanning
    tree is walked breadth first from one root per connected component, each
    child taking the sign that agrees with its parent.

    Args:
        normals: (N, 3) unsigned normals, NaN rows are left out of the graph
        neighbors: (N, k) neighbour indices, -1 or out-of-range entries ignored
        mask: Optional (N,) mask of points allowed in the graph

    Returns:
        (sign, labels): per-point sign relative to its component root (+1 for
        points outside the graph) and the component label of every point
    """
    normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    n = len(normals)
    sign = np.ones(n)
    usable = np.all(np.isfinite(normals), axis=1)
    if mask is not None:
        usable &= np.asarray(mask, dtype=bool)
    neighbors = np.asarray(neighbors).reshape(n, -1) if n else np.zeros((0, 0), dtype=np.int64)
    if n == 0 or neighbors.shape[1] == 0:
        return sign, np.arange(n)

    rows = np.repeat(np.arange(n), neighbors.shape[1])
    cols = neighbors.ravel().astype(np.int64)
    edge = (cols >= 0) & (cols < n) & (rows != cols)
    rows, cols = rows[edge], cols[edge]
    edge = usable[rows] & usable[cols]
    rows, cols = rows[edge], cols[edge]

    # Zero weights would read as missing edges
    weights = 1.0 - np.abs(np.sum(normals[rows] * normals[cols], axis=1)) + _EDGE_WEIGHT_FLOOR
    graph = sparse.coo_matrix((weights, (rows, cols)), shape=(n, n)).tocsr()
    graph = graph.maximum(graph.T)
    tree = minimum_spanning_tree(graph)
    tree = tree + tree.T

    n_components, labels = connected_components(tree, directed=False)
    sizes = np.bincount(labels, minlength=n_components)
    for component in np.flatnonzero(sizes > 1):
        root = int(np.flatnonzero(labels == component)[0])
        order, parents = breadth_first_order(tree, root, directed=False, return_predecessors=True)
        children = order[1:]
        flips = np.where(np.sum(normals[children] * normals[parents[children]], axis=1) < 0, -1.0, 1.0)
        # BFS order visits every parent before its children
        for node, parent, flip in zip(children, parents[children], flips):
            sign[node] = sign[parent] * flip

    logger.debug(f"Orientation graph: {len(rows)} edges, {int(np.sum(sizes > 1))} components")
    return sign, labels


def orient_normals(positions: np.ndarray,
                   normals: np.ndarray,
                   reference_normals: Optional[np.ndarray] = None,
                   viewpoint: Optional[np.ndarray] = None,
                   neighbors: Optional[np.ndarray] = None,
                   mask: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Give unsigned normals a consistent sign.

    Without a neighbour graph each normal is flipped on its own: toward its
    reference normal when one exists, otherwise toward the viewpoint if given,
    or away from the centroid of the points. With neighbours the signs are
    first made consistent over the graph (propagate_orientation) and each
    connected component is then flipped as a whole by a vote of those same
    rules, reference normals weighing most. Points with a reference normal
    always end up agreeing with it.

    Args:
        positions: (N, 3) points
        normals: (N, 3) unsigned normals
        reference_normals: Optional (N, 3) normals whose sign is trusted, NaN rows absent
        viewpoint: Optional sensor position the normals should face
        neighbors: Optional (N, k) neighbour indices for propagation
        mask: Optional (N,) mask of points allowed in the propagation graph

    Returns:
        (N, 3) oriented normals (NaN rows stay NaN)
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    normals = np.array(normals, dtype=np.float64, copy=True).reshape(-1, 3)
    if len(positions) == 0:
        return normals

    if viewpoint is not None:
        outward = np.asarray(viewpoint, dtype=np.float64).reshape(3) - positions
    else:
        outward = positions - positions.mean(axis=0)
    outward /= np.maximum(np.linalg.norm(outward, axis=1, keepdims=True), 1e-12)
    agreement = np.nan_to_num(np.sum(normals * outward, axis=1))
    sign = np.sign(agreement)

    has_reference = np.zeros(len(positions), dtype=bool)
    ref_agreement = np.zeros(len(positions))
    if reference_normals is not None:
        reference_normals = np.asarray(reference_normals, dtype=np.float64).reshape(-1, 3)
        has_reference = np.all(np.isfinite(reference_normals), axis=1)
        ref_agreement = np.nan_to_num(
            np.sum(normals * np.where(has_reference[:, None], reference_normals, 0.0), axis=1))

    if neighbors is not None:
        relative, labels = propagate_orientation(normals, neighbors, mask)
        score = np.where(has_reference, _REFERENCE_VOTE_WEIGHT * ref_agreement, agreement)
        votes = np.bincount(labels, weights=relative * score, minlength=int(labels.max()) + 1)
        component_sign = np.where(votes < 0, -1.0, 1.0)
        sign = relative * component_sign[labels]

    ref_sign = np.sign(ref_agreement)
    sign = np.where(has_reference & (ref_sign != 0), ref_sign, sign)
    sign = np.where(sign == 0, 1.0, sign)
    return normals * sign[:, None]
