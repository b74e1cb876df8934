"""
Batch Scheduler

Bounded-memory ingestion of a point cloud into the master octree.

The cloud is split into sequential batches. Each batch is checked for
corrupt data, stripped of outliers (judged against neighbourhoods of the
whole cloud), denoised along its normals, bucketed into a partial octree on
the shared (pre-computed) bounds and merged into the master tree. Merges run
one at a time and in batch order, even when batches are processed on a
thread pool.

Batch size shrinks when the resource monitor reports pressure or when a
batch grew the process memory by more than its budget. On a critical
snapshot the scheduler calls the caller's `on_critical` hook; pausing,
resuming or cancelling is the caller's decision.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np
import psutil
from scipy.spatial import cKDTree

from pipeline_log import log_step, log_warning
from quality_validator import ValidationStage
from reconstruction_errors import ReconstructionCancelled, ValidationError
from spatial_index import Octree


def current_rss():
    """Resident set size of this process in bytes."""
    return psutil.Process().memory_info().rss


@dataclass
class BatchJob:
    """Telemetry of one processed batch (or optimizer chunk)."""
    index: int
    start: int
    stop: int
    processing_time: float = 0.0
    memory_delta: int = 0
    noise_rms: float = 0.0
    outliers_removed: int = 0

    @property
    def size(self):
        return self.stop - self.start


class ResourceState(IntEnum):
    NOMINAL = 0
    ELEVATED = 1
    SERIOUS = 2
    CRITICAL = 3


@dataclass
class ResourceSnapshot:
    state: ResourceState = ResourceState.NOMINAL
    memory_percent: float = 0.0
    cpu_percent: float = 0.0
    timestamp: float = field(default_factory=time.time)


class ResourceMonitor:
    """Source of resource telemetry. The base monitor always reports nominal."""

    def sample(self):
        return ResourceSnapshot()


class PsutilResourceMonitor(ResourceMonitor):
    """
    Maps system memory usage to a ResourceState.

    Args:
        pressure_threshold: Memory usage fraction considered under pressure
    """

    def __init__(self, pressure_threshold=0.8):
        self.pressure_threshold = pressure_threshold

    def classify(self, memory_fraction):
        ratio = memory_fraction / self.pressure_threshold
        if ratio < 0.85:
            return ResourceState.NOMINAL
        if ratio < 1.0:
            return ResourceState.ELEVATED
        if ratio < 1.15:
            return ResourceState.SERIOUS
        return ResourceState.CRITICAL

    def sample(self):
        memory = psutil.virtual_memory()
        return ResourceSnapshot(
            state=self.classify(memory.percent / 100.0),
            memory_percent=memory.percent,
            cpu_percent=psutil.cpu_percent(interval=None),
        )


def unit_normals(normals):
    normals = np.asarray(normals, dtype=np.float64)
    return normals / np.maximum(np.linalg.norm(normals, axis=1, keepdims=True), 1e-300)


class OutlierFilter:
    """
    Statistical and normal-consistency outlier test against a reference cloud.

    A sample is kept when the mean distance to its k nearest reference
    neighbours stays within `std_ratio` standard deviations of the reference
    average, and when its normal agrees with theirs (mean dot product above
    `min_normal_consistency`). Samples are expected to be reference points;
    their first neighbour is themselves and is skipped.

    Args:
        positions: Nx3 reference coordinates (finite)
        normals: Nx3 reference normals
        k: Neighbours per sample
        std_ratio: Distance cutoff in standard deviations
        min_normal_consistency: Minimum mean normal agreement
        chunk_size: Reference points queried at once while measuring the cutoff
    """

    def __init__(self, positions, normals, k=20, std_ratio=2.0, min_normal_consistency=0.7,
                 chunk_size=5000):
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        self.normals = unit_normals(np.asarray(normals).reshape(-1, 3))
        self.k = max(1, min(int(k), len(self.positions) - 1))
        self.std_ratio = std_ratio
        self.min_normal_consistency = min_normal_consistency
        self.tree = cKDTree(self.positions) if len(self.positions) > 1 else None
        self.distance_cutoff = np.inf
        if self.tree is None:
            return

        total = 0.0
        total_sq = 0.0
        chunk_size = max(1, int(chunk_size))
        for start in range(0, len(self.positions), chunk_size):
            mean_dist, _ = self._neighbours(self.positions[start:start + chunk_size])
            total += float(mean_dist.sum())
            total_sq += float((mean_dist ** 2).sum())
        n = len(self.positions)
        mean = total / n
        std = np.sqrt(max(total_sq / n - mean ** 2, 0.0))
        self.distance_cutoff = mean + std_ratio * std

    def _neighbours(self, positions):
        dist, idx = self.tree.query(positions, k=self.k + 1)
        return dist[:, 1:].mean(axis=1), idx[:, 1:]

    def keep(self, positions, normals):
        """Boolean mask of the samples that pass both tests."""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        if self.tree is None or len(positions) == 0:
            return np.ones(len(positions), dtype=bool)
        mean_dist, idx = self._neighbours(positions)
        consistency = np.einsum('nki,ni->n', self.normals[idx], unit_normals(normals)) / self.k
        return (mean_dist <= self.distance_cutoff) & (consistency > self.min_normal_consistency)


def remove_outliers(positions, normals, k=20, std_ratio=2.0, min_normal_consistency=0.7):
    """
    Drop isolated samples and samples whose normals disagree with their
    neighbourhood.

    Returns:
        (kept positions, kept normals, keep mask)
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    keep = OutlierFilter(positions, normals, k, std_ratio, min_normal_consistency).keep(
        positions, normals)
    return positions[keep], normals[keep], keep


def reduce_point_noise(positions, normals, k=10, max_noise=None):
    """
    Adaptive noise reduction along normals.

    Each point moves along its normal towards the mean height of its
    neighbours above its tangent plane. The strength adapts to the batch's
    RMS neighbour height: s = 0.5 * rms / (rms + max_noise), so clean batches
    are barely touched.

    Args:
        positions: Nx3 coordinates
        normals: Nx3 normals
        k: Neighbours per point (including itself)
        max_noise: Noise level (coordinate units) where s reaches 0.25

    Returns:
        (denoised positions, rms height)
    """
    positions = np.asarray(positions, dtype=np.float64)
    n = len(positions)
    if n < 3:
        return positions.copy(), 0.0
    normals = unit_normals(normals)

    k = min(k, n)
    _, idx = cKDTree(positions).query(positions, k=k)
    heights = np.einsum('nki,ni->nk', positions[idx] - positions[:, None, :], normals)
    mean_height = heights[:, 1:].mean(axis=1)
    rms = float(np.sqrt(np.mean(heights[:, 1:] ** 2)))
    if rms == 0.0:
        return positions.copy(), 0.0
    if max_noise is None:
        max_noise = rms
    strength = 0.5 * rms / (rms + max_noise)
    return positions + (strength * mean_height)[:, None] * normals, rms


class BatchScheduler:
    """
    Args:
        config: BatchConfig
        octree_config: OctreeConfig for the partial and master octrees
        monitor: ResourceMonitor (defaults to PsutilResourceMonitor)
        on_critical: Optional callable(scheduler, snapshot) for critical states
        cancel_token: Optional CancellationToken
        max_noise: Denoising reference noise in coordinate units
        verbose: Print progress
    """

    def __init__(self, config, octree_config, monitor=None, on_critical=None,
                 cancel_token=None, max_noise=None, verbose=True):
        self.config = config
        self.octree_config = octree_config
        self.monitor = monitor or PsutilResourceMonitor(config.memory_pressure_threshold)
        self.on_critical = on_critical
        self.cancel_token = cancel_token
        self.max_noise = max_noise
        self.verbose = verbose
        self.batch_size = config.batch_size
        self.jobs = []
        self.outlier_filter = None
        self._resume = threading.Event()
        self._resume.set()
        self._merge_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Caller hooks
    # ------------------------------------------------------------------

    def pause(self):
        self._resume.clear()
        if self.verbose:
            log_warning("Batch processing paused")

    def resume(self):
        self._resume.set()
        if self.verbose:
            log_step("Batch processing resumed", indent=4)

    @property
    def paused(self):
        return not self._resume.is_set()

    def report_resource_state(self, snapshot):
        """React to a resource snapshot: shrink batches, escalate critical states."""
        if snapshot.state >= ResourceState.SERIOUS:
            self._shrink(f"resource state {snapshot.state.name}")
        if snapshot.state == ResourceState.CRITICAL and self.on_critical is not None:
            self.on_critical(self, snapshot)

    def _shrink(self, reason):
        shrunk = max(self.config.min_batch_size, self.batch_size // 2)
        if shrunk < self.batch_size and self.verbose:
            log_warning(f"Batch size {self.batch_size:,} -> {shrunk:,} ({reason})")
        self.batch_size = shrunk

    def _check_cancelled(self):
        if self.cancel_token is not None:
            reason = self.cancel_token.reason()
            if reason:
                raise ReconstructionCancelled(f"Batch ingestion stopped: {reason}")

    def _wait_if_paused(self):
        while not self._resume.wait(0.05):
            self._check_cancelled()
        self._check_cancelled()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _new_octree(self, bounds):
        return Octree(bounds, self.octree_config.max_depth, self.octree_config.min_points,
                      self.octree_config.base_depth)

    def _build_outlier_filter(self, cloud):
        # Corrupt rows are left for the per-batch check to report
        finite = np.all(np.isfinite(cloud.positions), axis=1)
        finite &= np.all(np.isfinite(cloud.normals), axis=1)
        return OutlierFilter(cloud.positions[finite], cloud.normals[finite],
                             k=self.config.outlier_neighbors,
                             std_ratio=self.config.outlier_std_ratio,
                             min_normal_consistency=self.config.outlier_normal_consistency,
                             chunk_size=self.config.batch_size)

    def process_batch(self, index, cloud, start, stop, bounds):
        """
        Build the partial octree of one batch.

        Raises:
            ValidationError: non-finite positions, normals or confidences
        """
        batch_start = time.time()
        rss_before = current_rss()
        batch = cloud.subset(slice(start, stop))

        bad = ~np.all(np.isfinite(batch.positions), axis=1)
        bad |= ~np.all(np.isfinite(batch.normals), axis=1)
        if batch.confidence is not None:
            bad |= ~np.isfinite(batch.confidence)
        if np.any(bad):
            raise ValidationError(
                ValidationStage.PREPROCESSING, 1005,
                f"Batch {index} contains {int(bad.sum())} non-finite samples "
                f"(points {start}-{stop})",
            )

        removed = 0
        if self.outlier_filter is not None:
            keep = self.outlier_filter.keep(batch.positions, batch.normals)
            removed = int(np.count_nonzero(~keep))
            if removed:
                batch = batch.subset(keep)

        positions = batch.positions
        rms = 0.0
        if self.config.denoise:
            positions, rms = reduce_point_noise(positions, batch.normals,
                                                self.config.denoise_neighbors, self.max_noise)
            positions = np.clip(positions, bounds.min, bounds.max)

        partial = self._new_octree(bounds)
        partial.insert_many(positions, batch.normals, batch.confidence)

        job = BatchJob(index, start, stop, time.time() - batch_start,
                       current_rss() - rss_before, rms, removed)
        return partial, job

    def _merge(self, master, partial, job):
        with self._merge_lock:
            master.merge(partial)
            self.jobs.append(job)
        if job.memory_delta > self.config.batch_memory_budget_mb * 1024 * 1024:
            self._shrink(f"batch {job.index} grew memory by "
                         f"{job.memory_delta / 1024 / 1024:.1f} MB")
        if self.verbose:
            dropped = f", {job.outliers_removed:,} outliers dropped" if job.outliers_removed else ""
            log_step(f"Batch {job.index}: points {job.start:,}-{job.stop:,} "
                     f"({job.processing_time:.2f}s, {job.memory_delta / 1024 / 1024:+.1f} MB"
                     f"{dropped})", indent=4)

    def run(self, cloud, bounds):
        """
        Ingest a whole cloud.

        Args:
            cloud: PointCloud with normals
            bounds: Root BoundingBox shared by every partial octree

        Returns:
            (master Octree, list of BatchJob)

        Raises:
            ValidationError: a batch holds corrupt data (nothing of it is merged)
            ReconstructionCancelled: the cancel token fired
        """
        master = self._new_octree(bounds)
        self.jobs = []
        workers = max(1, int(self.config.max_workers))
        n = len(cloud)
        self.outlier_filter = None
        if self.config.remove_outliers:
            self.outlier_filter = self._build_outlier_filter(cloud)
        start = 0
        index = 0

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch") if workers > 1 else None
        try:
            while start < n:
                self._wait_if_paused()
                self.report_resource_state(self.monitor.sample())
                self._wait_if_paused()

                # Up to `workers` consecutive batches in flight, merged in order
                ranges = []
                while start < n and len(ranges) < workers:
                    stop = min(n, start + self.batch_size)
                    ranges.append((index, start, stop))
                    index += 1
                    start = stop

                if pool is None:
                    for i, s, e in ranges:
                        partial, job = self.process_batch(i, cloud, s, e, bounds)
                        self._merge(master, partial, job)
                else:
                    futures = [pool.submit(self.process_batch, i, cloud, s, e, bounds)
                               for i, s, e in ranges]
                    try:
                        for future in futures:
                            partial, job = future.result()
                            self._merge(master, partial, job)
                    except BaseException:
                        for future in futures:
                            future.cancel()
                        raise
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        if self.verbose:
            removed = sum(job.outliers_removed for job in self.jobs)
            log_step(f"Ingested {n - removed:,} of {n:,} points in {len(self.jobs)} batches "
                     f"({master.node_count:,} octree nodes)", indent=4)
        return master, list(self.jobs)
