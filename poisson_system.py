"""
Poisson System Builder

Assembles the screened Poisson system over the leaves of an octree. Each
leaf is one unknown of the indicator function. For every pair of
face-adjacent leaves (i, j) the energy term

    (x_j - x_i - g_ij)^2,    g_ij = V_ij . (c_j - c_i)

asks the indicator to change along the pair like the oriented normal field
V, which is the average unit normal of whichever leaves of the pair hold
samples (zero in empty space). Its normal equations give A = L, the graph
Laplacian, and b, the discrete divergence of V.

Occupied leaves additionally add a screening term pulling the indicator
towards the signed distance from the leaf centre to the local tangent plane,
weighted by `point_weight` and the mean sample confidence. This pins the
zero level set to the samples and makes A positive definite.
"""

import time

import numpy as np
from scipy import sparse

from pipeline_log import log_step
from reconstruction_errors import SurfaceReconstructionFailed


class SparseLinearSystem:
    """A x = b with one row per octree leaf (`node_ids[row]` is the leaf)."""

    def __init__(self, matrix, rhs, node_ids):
        self.matrix = sparse.csr_matrix(matrix)
        self.rhs = np.asarray(rhs, dtype=np.float64)
        self.node_ids = np.asarray(node_ids, dtype=np.int64)

    @property
    def size(self):
        return len(self.rhs)

    @property
    def nnz(self):
        return self.matrix.nnz

    def entry(self, row, col):
        return float(self.matrix[row, col])

    def is_symmetric(self, tol=1e-12):
        diff = self.matrix - self.matrix.T
        return diff.nnz == 0 or float(abs(diff).max()) <= tol

    def release(self):
        self.matrix = None
        self.rhs = None
        self.node_ids = None

    def __repr__(self):
        if self.matrix is None:
            return "SparseLinearSystem(released)"
        return f"SparseLinearSystem(size={self.size:,}, nnz={self.nnz:,})"


class PoissonSystemBuilder:
    """
    Build the screened Poisson system of an octree.

    Args:
        point_weight: Screening weight of occupied leaves
        verbose: Print progress
    """

    def __init__(self, point_weight=4.0, verbose=True):
        if point_weight <= 0:
            raise ValueError(f"point_weight must be positive, got {point_weight}")
        self.point_weight = point_weight
        self.verbose = verbose

    def build(self, octree):
        """
        Raises:
            SurfaceReconstructionFailed: the octree holds no samples
        """
        build_start = time.time()
        stats = octree.leaf_statistics()
        n = len(stats)
        occupied = stats.occupied
        if not np.any(occupied):
            raise SurfaceReconstructionFailed("Octree holds no samples to reconstruct from")

        row_of = np.full(octree.node_count, -1, dtype=np.int64)
        row_of[stats.node_ids] = np.arange(n)

        lengths = np.linalg.norm(stats.normal_sums, axis=1, keepdims=True)
        unit_normals = np.where(lengths > 0, stats.normal_sums / np.maximum(lengths, 1e-300), 0.0)
        has_normal = occupied & (lengths[:, 0] > 0)

        pairs = octree.leaf_neighbors()
        i = row_of[pairs[:, 0]]
        j = row_of[pairs[:, 1]]

        # Average normal over the occupied leaves of each pair
        weight_i = has_normal[i].astype(np.float64)
        weight_j = has_normal[j].astype(np.float64)
        field = (unit_normals[i] * weight_i[:, None] + unit_normals[j] * weight_j[:, None])
        field /= np.maximum(weight_i + weight_j, 1.0)[:, None]
        target = np.sum(field * (stats.centers[j] - stats.centers[i]), axis=1)

        m = len(pairs)
        ones = np.ones(m)
        rows = np.concatenate([i, j, i, j])
        cols = np.concatenate([i, j, j, i])
        data = np.concatenate([ones, ones, -ones, -ones])

        rhs = np.zeros(n)
        np.add.at(rhs, i, -target)
        np.add.at(rhs, j, target)

        # Screening towards the local tangent plane of each occupied leaf
        screened = np.nonzero(has_normal)[0]
        alpha = self.point_weight * stats.mean_confidence[screened]
        offsets = np.sum(
            unit_normals[screened] * (stats.centers[screened] - stats.mean_positions[screened]),
            axis=1,
        )
        rows = np.concatenate([rows, screened])
        cols = np.concatenate([cols, screened])
        data = np.concatenate([data, alpha])
        np.add.at(rhs, screened, alpha * offsets)

        matrix = sparse.coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()
        system = SparseLinearSystem(matrix, rhs, stats.node_ids)

        if self.verbose:
            log_step(f"Unknowns: {n:,} leaves ({int(occupied.sum()):,} occupied)", indent=4)
            log_step(f"Adjacencies: {m:,}, non-zeros: {system.nnz:,}", indent=4)
            log_step(f"System assembled ({time.time() - build_start:.2f}s)", indent=4)
        return system
