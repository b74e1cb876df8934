import numpy as np
import pytest

from mesh_types import BoundingBox
from reconstruction_errors import OctreeMergeError, PointOutsideBounds
from spatial_index import NO_CHILD, Octree, compute_octree_bounds


def build(positions, normals, bounds, **kwargs):
    tree = Octree(bounds, **kwargs)
    tree.insert_many(positions, normals)
    return tree


def test_bounds_are_cubic_and_enlarged(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions, scale=1.1)
    size = bounds.size
    assert np.allclose(size, size[0])
    assert np.all(bounds.contains_many(random_cloud.positions))
    assert size[0] > np.ptp(random_cloud.positions, axis=0).max()


def test_subdivision_creates_all_children():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=3, min_points=2)
    tree.insert([0.1, 0.1, 0.1], [0, 0, 1])
    assert tree.is_leaf(0)
    tree.insert([0.9, 0.9, 0.9], [0, 0, 1])
    kids = tree.children(0)
    assert len(kids) == 8 and NO_CHILD not in kids
    # Octant code: bit0 = x, bit1 = y, bit2 = z
    far = tree.node_bounds(kids[7])
    assert np.allclose(far.min, [0.5, 0.5, 0.5])
    near = tree.node_bounds(kids[1])
    assert np.allclose(near.min, [0.5, 0.0, 0.0])


def test_max_depth_leaf_accepts_any_count():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=1, min_points=2)
    for _ in range(10):
        tree.insert([0.2, 0.2, 0.2], [1, 0, 0])
    assert tree.node_count == 9
    assert tree.point_count == 10


def test_base_depth_refines_occupied_leaves():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=6, min_points=5, base_depth=3)
    tree.insert([0.3, 0.3, 0.3], [0, 1, 0])
    depths = [tree.node_depth(n) for n in tree.leaf_ids()]
    assert max(depths) == 3


def test_structure_independent_of_insertion_order(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    reference = build(random_cloud.positions, random_cloud.normals, bounds, base_depth=2)
    rng = np.random.default_rng(3)
    for _ in range(3):
        perm = rng.permutation(len(random_cloud))
        shuffled = build(random_cloud.positions[perm], random_cloud.normals[perm], bounds,
                         base_depth=2)
        assert shuffled.leaf_point_counts() == reference.leaf_point_counts()
        assert shuffled.node_count == reference.node_count


def test_merge_matches_unbatched_tree(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    positions, normals = random_cloud.positions, random_cloud.normals
    full = build(positions, normals, bounds)

    parts = [slice(0, 200), slice(200, 400), slice(400, 600)]
    for order in ([0, 1, 2], [2, 0, 1], [1, 2, 0]):
        master = Octree(bounds)
        for k in order:
            master.merge(build(positions[parts[k]], normals[parts[k]], bounds))
        assert master.leaf_point_counts() == full.leaf_point_counts()

        # Same structure, same leaf values -> same implicit function
        for tree in (master, full):
            stats = tree.leaf_statistics()
            tree.assign_values(stats.node_ids, stats.centers[:, 0] + 2 * stats.centers[:, 2])
        probes = np.random.default_rng(1).uniform(-0.9, 0.9, size=(50, 3))
        assert np.allclose(master.evaluate_many(probes), full.evaluate_many(probes))


def test_merge_rejects_incompatible_layout(random_cloud):
    a = Octree(BoundingBox([0, 0, 0], [1, 1, 1]))
    b = Octree(BoundingBox([0, 0, 0], [2, 2, 2]))
    with pytest.raises(OctreeMergeError):
        a.merge(b)
    with pytest.raises(OctreeMergeError):
        a.merge(a)


def test_out_of_bounds_insert_is_rejected():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]))
    with pytest.raises(PointOutsideBounds):
        tree.insert([1.5, 0.5, 0.5], [0, 0, 1])
    with pytest.raises(PointOutsideBounds):
        tree.insert_many([[0.5, 0.5, 0.5], [0.5, -0.1, 0.5]], [[0, 0, 1], [0, 0, 1]])
    # The block check runs before any point is stored
    assert tree.point_count == 0


def test_evaluate_descends_to_leaf_value():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=2, min_points=1)
    tree.insert([0.2, 0.2, 0.2], [0, 0, 1])
    leaves = tree.leaf_ids()
    values = np.arange(len(leaves), dtype=np.float64)
    tree.assign_values(leaves, values)

    leaf = int(tree.locate_leaves([[0.2, 0.2, 0.2]])[0])
    expected = values[list(leaves).index(leaf)]
    assert tree.evaluate_implicit_function([0.2, 0.2, 0.2]) == pytest.approx(expected)
    assert tree.evaluate_many([[0.2, 0.2, 0.2]])[0] == pytest.approx(expected)


def test_evaluate_blends_valued_children_by_inverse_distance():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=1, min_points=1)
    tree.insert([0.25, 0.25, 0.25], [0, 0, 1])
    kids = tree.children(0)
    # Only two children carry values; the others stay unassigned
    tree.assign_values([kids[0], kids[7]], [1.0, 3.0])

    p = np.array([0.75, 0.25, 0.25])   # inside child 1, which has no value
    d0 = np.linalg.norm(p - 0.25)
    d7 = np.linalg.norm(p - 0.75)
    w0 = 1.0 / (d0 + 0.1)
    w7 = 1.0 / (d7 + 0.1)
    expected = (w0 * 1.0 + w7 * 3.0) / (w0 + w7)
    assert tree.evaluate_implicit_function(p) == pytest.approx(expected)
    assert tree.evaluate_many([p])[0] == pytest.approx(expected)


def test_unassigned_tree_evaluates_to_nan():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]))
    assert np.isnan(tree.evaluate_implicit_function([0.5, 0.5, 0.5]))


def test_leaf_neighbors_of_uniform_grid():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]), max_depth=1, min_points=1)
    tree.insert([0.1, 0.1, 0.1], [0, 0, 1])
    pairs = tree.leaf_neighbors()
    # 2x2x2 grid: 12 face adjacencies
    assert len(pairs) == 12
    assert np.all(pairs[:, 0] < pairs[:, 1])


def test_clear_releases_points(random_cloud):
    bounds = compute_octree_bounds(random_cloud.positions)
    tree = build(random_cloud.positions, random_cloud.normals, bounds)
    tree.clear()
    assert tree.point_count == 0
    assert tree.node_count == 1
