import threading

import numpy as np
import pytest

from batch_scheduler import (
    BatchScheduler,
    PsutilResourceMonitor,
    ResourceMonitor,
    ResourceSnapshot,
    ResourceState,
    reduce_point_noise,
    remove_outliers,
)
from cg_solver import CancellationToken
from mesh_types import PointCloud
from reconstruction_config import BatchConfig, OctreeConfig
from reconstruction_errors import ReconstructionCancelled, ValidationError
from spatial_index import Octree, compute_octree_bounds
from tests.sample_data import fibonacci_sphere, stray_samples


class ScriptedMonitor(ResourceMonitor):
    """Replays a fixed sequence of states, then stays nominal."""

    def __init__(self, states):
        self.states = list(states)

    def sample(self):
        if self.states:
            return ResourceSnapshot(state=self.states.pop(0))
        return ResourceSnapshot()


def scheduler(batch_size=100, workers=1, monitor=None, remove_outliers=False, **kwargs):
    config = BatchConfig(batch_size=batch_size, min_batch_size=25, max_workers=workers,
                         denoise=False, remove_outliers=remove_outliers)
    return BatchScheduler(config, OctreeConfig(max_depth=6, base_depth=2),
                          monitor=monitor or ResourceMonitor(), verbose=False, **kwargs)


def test_psutil_monitor_classifies_pressure():
    monitor = PsutilResourceMonitor(pressure_threshold=0.8)
    assert monitor.classify(0.5) is ResourceState.NOMINAL
    assert monitor.classify(0.75) is ResourceState.ELEVATED
    assert monitor.classify(0.85) is ResourceState.SERIOUS
    assert monitor.classify(0.95) is ResourceState.CRITICAL
    snapshot = monitor.sample()
    assert isinstance(snapshot.state, ResourceState)
    assert 0.0 <= snapshot.memory_percent <= 100.0


def test_batches_cover_cloud_and_match_unbatched_tree(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    master, jobs = scheduler(batch_size=100).run(random_cloud, bounds)

    assert [j.size for j in jobs] == [100] * 6
    assert [j.index for j in jobs] == list(range(6))
    assert jobs[0].start == 0 and jobs[-1].stop == len(random_cloud)
    assert all(j.processing_time >= 0 for j in jobs)

    full = Octree(bounds, max_depth=6, base_depth=2)
    full.insert_many(random_cloud.positions, random_cloud.normals, random_cloud.confidence)
    assert master.leaf_point_counts() == full.leaf_point_counts()


def test_parallel_batches_merge_in_order(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    serial, _ = scheduler(batch_size=70).run(random_cloud, bounds)
    parallel, jobs = scheduler(batch_size=70, workers=3).run(random_cloud, bounds)
    assert [j.index for j in jobs] == list(range(len(jobs)))
    assert parallel.leaf_point_counts() == serial.leaf_point_counts()


def test_pressure_shrinks_batches(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    monitor = ScriptedMonitor([ResourceState.NOMINAL, ResourceState.SERIOUS])
    _, jobs = scheduler(batch_size=200, monitor=monitor).run(random_cloud, bounds)
    assert jobs[0].size == 200
    assert jobs[1].size == 100
    assert sum(j.size for j in jobs) == len(random_cloud)


def test_batch_size_never_drops_below_minimum():
    s = scheduler(batch_size=40)
    for _ in range(5):
        s.report_resource_state(ResourceSnapshot(state=ResourceState.SERIOUS))
    assert s.batch_size == 25


def test_critical_state_calls_hook(random_cloud):
    calls = []

    def on_critical(sched, snapshot):
        calls.append(snapshot.state)

    bounds = compute_octree_bounds(random_cloud.positions)
    monitor = ScriptedMonitor([ResourceState.CRITICAL])
    scheduler(monitor=monitor, on_critical=on_critical).run(random_cloud, bounds)
    assert calls == [ResourceState.CRITICAL]


def test_critical_hook_can_cancel(random_cloud):
    token = CancellationToken()

    def on_critical(sched, snapshot):
        token.cancel()

    bounds = compute_octree_bounds(random_cloud.positions)
    monitor = ScriptedMonitor([ResourceState.NOMINAL, ResourceState.CRITICAL])
    s = scheduler(monitor=monitor, on_critical=on_critical, cancel_token=token)
    with pytest.raises(ReconstructionCancelled):
        s.run(random_cloud, bounds)
    assert len(s.jobs) == 1


def test_pause_blocks_until_resume(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    s = scheduler()
    s.pause()
    assert s.paused
    result = {}

    def work():
        result["tree"], result["jobs"] = s.run(random_cloud, bounds)

    worker = threading.Thread(target=work)
    worker.start()
    worker.join(0.3)
    assert worker.is_alive()
    assert s.jobs == []
    s.resume()
    worker.join(30)
    assert not worker.is_alive()
    assert len(result["jobs"]) == 6


def test_corrupt_batch_is_fatal(random_cloud):
    positions = random_cloud.positions.copy()
    positions[250] = np.nan
    cloud = PointCloud(positions, random_cloud.normals)
    bounds = compute_octree_bounds(random_cloud.positions)
    s = scheduler(batch_size=100)
    with pytest.raises(ValidationError) as err:
        s.run(cloud, bounds)
    assert err.value.code == 1005
    # Batches before the corrupt one were merged, the corrupt one was not
    assert [j.index for j in s.jobs] == [0, 1]


def test_noise_reduction_pulls_points_to_surface():
    rng = np.random.default_rng(0)
    xy = rng.uniform(-1, 1, size=(2000, 2))
    noisy = np.column_stack([xy, rng.normal(scale=0.01, size=2000)])
    normals = np.tile([0.0, 0.0, 1.0], (2000, 1))
    denoised, rms = reduce_point_noise(noisy, normals, k=10)
    assert rms > 0
    assert np.std(denoised[:, 2]) < np.std(noisy[:, 2])
    assert np.allclose(denoised[:, :2], noisy[:, :2])


def test_noise_reduction_leaves_flat_cloud_alone():
    xy = np.random.default_rng(1).uniform(-1, 1, size=(100, 2))
    flat = np.column_stack([xy, np.zeros(100)])
    denoised, rms = reduce_point_noise(flat, np.tile([0.0, 0.0, 1.0], (100, 1)))
    assert rms == 0.0
    assert np.array_equal(denoised, flat)

def test_remove_outliers_drops_isolated_and_flipped_samples():
    rng = np.random.default_rng(5)
    plane = np.column_stack([rng.uniform(-1, 1, size=(1500, 2)), np.zeros(1500)])
    normals = np.tile([0.0, 0.0, 1.0], (1500, 1))
    normals[:10] = [0.0, 0.0, -1.0]
    plane[-1] = [0.0, 0.0, 3.0]

    kept, kept_normals, keep = remove_outliers(plane, normals, k=20)
    assert not keep[:10].any()
    assert not keep[-1]
    assert keep.sum() > 0.9 * len(plane)
    assert np.all(kept_normals[:, 2] == 1.0)
    assert np.all(kept[:, 2] == 0.0)


def test_stray_samples_never_reach_the_octree():
    surface, surface_normals = fibonacci_sphere(3000)
    strays, stray_normals = stray_samples(60)
    # The strays fill the last batch on their own
    cloud = PointCloud(np.vstack([surface, strays]), np.vstack([surface_normals, stray_normals]))
    bounds = compute_octree_bounds(cloud.positions)

    master, jobs = scheduler(batch_size=500, remove_outliers=True).run(cloud, bounds)
    positions, _, _ = master.all_points()
    assert np.all(np.linalg.norm(positions, axis=1) > 0.9)
    assert master.point_count > 0.9 * len(surface)
    assert jobs[-1].outliers_removed == 60
    assert sum(j.outliers_removed for j in jobs) == len(cloud) - master.point_count


def test_outlier_removal_can_be_disabled():
    surface, surface_normals = fibonacci_sphere(1000)
    strays, stray_normals = stray_samples(20)
    cloud = PointCloud(np.vstack([surface, strays]), np.vstack([surface_normals, stray_normals]))
    master, jobs = scheduler(batch_size=500).run(cloud, compute_octree_bounds(cloud.positions))
    assert master.point_count == len(cloud)
    assert all(j.outliers_removed == 0 for j in jobs)
