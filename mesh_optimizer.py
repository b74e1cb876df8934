"""
Mesh Optimizer

Capture-adaptive smoothing and decimation of the raw isosurface.

Every vertex gets a processing weight

    w = blend * density_norm + (1 - blend) * (1 - importance)

from its local sample density (inverse-distance-weighted neighbour count)
and its feature importance (normal divergence against its triangles).
Feature vertices (importance >= feature_threshold) are locked: smoothing
leaves them in place and decimation never moves them.

Smoothing is a Gaussian-weighted Taubin filter (lambda / mu) whose kernel
width and iteration count follow the measured capture noise. The smoothing
iterations are split across the decimation passes:
smooth -> decimate -> smooth -> decimate ...
"""

import math
import time
from dataclasses import dataclass, field

import numpy as np
from scipy.spatial import cKDTree

from batch_scheduler import BatchJob, current_rss
from kernel_executor import NumpyKernelExecutor
from mesh_types import Mesh, mean_edge_length, unique_edges
from pipeline_log import log_section, log_step, log_warning

# Neighbours considered per vertex for the density estimate
DENSITY_NEIGHBORS = 32


@dataclass
class VertexWeights:
    weights: np.ndarray
    density: np.ndarray
    importance: np.ndarray
    locked: np.ndarray
    jobs: list = field(default_factory=list)


@dataclass
class OptimizationResult:
    mesh: Mesh
    weights: np.ndarray
    locked: np.ndarray
    feature_positions: np.ndarray
    feature_tolerance: float
    feature_preservation: float
    collapses: int
    smoothing_iterations: int
    batch_jobs: list = field(default_factory=list)


def feature_preservation(feature_positions, vertices, tolerance):
    """
    Share of feature positions that still have a mesh vertex within
    `tolerance`. 1.0 when there are no features.
    """
    feature_positions = np.asarray(feature_positions, dtype=np.float64).reshape(-1, 3)
    if len(feature_positions) == 0:
        return 1.0
    if len(vertices) == 0:
        return 0.0
    distances, _ = cKDTree(vertices).query(feature_positions, k=1)
    return float(np.mean(distances <= tolerance))


def smooth_taubin_adaptive(vertices, triangles, weights, locked, sigma, iterations,
                           lambda_val=0.5, mu=-0.53):
    """
    Taubin smoothing (volume-preserving) with Gaussian edge weights.

    Each iteration applies a lambda (shrinking) and a mu (inflating) step of
    the Gaussian-weighted umbrella operator; a vertex moves by its processing
    weight times the step, locked vertices not at all.
    """
    vertices = np.asarray(vertices, dtype=np.float64).copy()
    if iterations <= 0 or len(triangles) == 0:
        return vertices
    edges, _ = unique_edges(triangles)
    i, j = edges[:, 0], edges[:, 1]
    scale = np.where(locked, 0.0, np.clip(weights, 0.0, 1.0))[:, None]
    n = len(vertices)

    for _ in range(iterations):
        for factor in (lambda_val, mu):
            diff = vertices[j] - vertices[i]
            w = np.exp(-np.einsum('ij,ij->i', diff, diff) / (2.0 * sigma ** 2))
            total = np.bincount(i, weights=w, minlength=n) + np.bincount(j, weights=w, minlength=n)
            delta = np.zeros_like(vertices)
            for a in range(3):
                delta[:, a] = (np.bincount(i, weights=w * diff[:, a], minlength=n)
                               - np.bincount(j, weights=w * diff[:, a], minlength=n))
            laplacian = np.where(total[:, None] > 0, delta / np.maximum(total, 1e-300)[:, None], 0.0)
            vertices += factor * scale * laplacian
    return vertices


class MeshOptimizer:
    """
    Args:
        config: OptimizerConfig
        executor: KernelExecutor (defaults to the CPU executor)
        verbose: Print progress
    """

    def __init__(self, config, executor=None, verbose=True):
        self.config = config
        self.executor = executor or NumpyKernelExecutor()
        self.verbose = verbose

    def local_density(self, vertices, radius):
        """
        Inverse-distance-weighted neighbour count within `radius`, computed in
        chunks. A chunk whose memory growth exceeds the budget halves the
        next chunk.

        Returns:
            (density per vertex, list of BatchJob)
        """
        n = len(vertices)
        density = np.zeros(n)
        jobs = []
        if n == 0:
            return density, jobs
        tree = cKDTree(vertices)
        k = min(DENSITY_NEIGHBORS, n)
        budget = self.config.chunk_memory_budget_mb * 1024 * 1024
        chunk = max(1, int(self.config.chunk_size))
        start = 0
        while start < n:
            stop = min(n, start + chunk)
            chunk_start = time.time()
            rss_before = current_rss()

            distances, _ = tree.query(vertices[start:stop], k=k, distance_upper_bound=radius)
            distances = np.asarray(distances).reshape(stop - start, -1)
            valid = np.isfinite(distances) & (distances > 0)
            contrib = np.where(valid, 1.0 / (np.where(valid, distances, 0.0) + 0.1 * radius), 0.0)
            density[start:stop] = contrib.sum(axis=1)

            job = BatchJob(len(jobs), start, stop, time.time() - chunk_start,
                           current_rss() - rss_before)
            jobs.append(job)
            if job.memory_delta > budget and chunk > 256:
                chunk = max(256, chunk // 2)
                if self.verbose:
                    log_warning(f"Chunk {job.index} grew memory by "
                                f"{job.memory_delta / 1024 / 1024:.1f} MB, chunk size -> {chunk:,}")
            start = stop
        return density, jobs

    def compute_weights(self, mesh):
        """Processing weights, feature importance and locked features of a mesh."""
        cfg = self.config
        vertices = mesh.vertices
        triangles = mesh.triangles
        edge_len = mean_edge_length(vertices, triangles)
        density, jobs = self.local_density(vertices, cfg.density_radius_factor * max(edge_len, 1e-12))
        peak = density.max() if len(density) else 0.0
        density_norm = density / peak if peak > 0 else np.zeros_like(density)

        curvature = self.executor.compute_curvature(vertices, triangles, mesh.normals)
        importance, locked = self.executor.detect_features(
            curvature, cfg.divergence_scale, cfg.feature_threshold)
        self.executor.synchronize()

        blend = cfg.density_blend
        weights = blend * density_norm + (1.0 - blend) * (1.0 - importance)
        return VertexWeights(weights, density_norm, importance, locked, jobs)

    def optimize(self, mesh, noise_mm=0.0):
        """
        Smooth and decimate a mesh.

        Args:
            mesh: Raw isosurface Mesh
            noise_mm: Measured capture noise in millimetres

        Returns:
            OptimizationResult
        """
        cfg = self.config
        optimize_start = time.time()
        if self.verbose:
            log_section("MESH OPTIMIZATION")

        vertices = mesh.vertices.copy()
        triangles = mesh.triangles.copy()
        edge_len = mean_edge_length(vertices, triangles)

        vw = self.compute_weights(mesh)
        weights = vw.weights
        locked = vw.locked
        feature_positions = vertices[locked].copy()

        sigma = (0.5 + noise_mm) * edge_len
        total_iterations = int(math.ceil(noise_mm * 10))
        passes = max(1, int(cfg.decimation_passes))
        per_pass = [len(part) for part in np.array_split(np.arange(total_iterations), passes)]

        if self.verbose:
            log_step(f"Vertices: {len(vertices):,}, triangles: {len(triangles):,}", indent=4)
            log_step(f"Locked features: {int(locked.sum()):,}, "
                     f"mean weight: {weights.mean() if len(weights) else 0.0:.3f}", indent=4)
            log_step(f"Smoothing: {total_iterations} iterations, sigma {sigma:.5f}, "
                     f"{passes} passes", indent=4)

        collapses = 0
        for iterations in per_pass:
            if iterations and sigma > 0:
                vertices = smooth_taubin_adaptive(vertices, triangles, weights, locked, sigma,
                                                  iterations, cfg.taubin_lambda, cfg.taubin_mu)
            result = self.executor.decimate_mesh(vertices, triangles, weights,
                                                 cfg.error_threshold, locked)
            self.executor.synchronize()
            vertices = result.vertices
            triangles = result.triangles
            weights = weights[result.kept]
            locked = locked[result.kept]
            collapses += result.collapses

        normals = self.executor.recalculate_normals(vertices, triangles)
        self.executor.synchronize()
        optimized = Mesh.from_triangles(vertices, triangles, normals)

        preserved = feature_preservation(feature_positions, vertices, edge_len)
        if self.verbose:
            log_step(f"Collapsed {collapses:,} edges: {optimized.vertex_count:,} vertices, "
                     f"{optimized.triangle_count:,} triangles", indent=4)
            log_step(f"Feature preservation: {preserved:.1%}", indent=4)
            log_step(f"Optimization complete ({time.time() - optimize_start:.2f}s)", indent=4)

        return OptimizationResult(
            mesh=optimized,
            weights=weights,
            locked=locked,
            feature_positions=feature_positions,
            feature_tolerance=edge_len,
            feature_preservation=preserved,
            collapses=collapses,
            smoothing_iterations=total_iterations,
            batch_jobs=vw.jobs,
        )
