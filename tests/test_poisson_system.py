import numpy as np
import pytest

from cg_solver import ConjugateGradientSolver
from mesh_types import BoundingBox
from poisson_system import PoissonSystemBuilder
from reconstruction_errors import SurfaceReconstructionFailed
from spatial_index import Octree, compute_octree_bounds
from tests.sample_data import fibonacci_sphere


def sphere_octree(n=800):
    positions, normals = fibonacci_sphere(n)
    tree = Octree(compute_octree_bounds(positions), max_depth=5, min_points=5, base_depth=4)
    tree.insert_many(positions, normals)
    return tree


def test_system_is_symmetric_and_one_row_per_leaf():
    tree = sphere_octree()
    system = PoissonSystemBuilder(point_weight=4.0, verbose=False).build(tree)
    assert system.size == len(tree.leaf_ids())
    assert system.matrix.shape == (system.size, system.size)
    assert system.is_symmetric()
    assert system.nnz > system.size
    assert np.all(system.matrix.diagonal() > 0)


def test_screening_adds_point_weight_on_occupied_leaves():
    tree = sphere_octree()
    stats = tree.leaf_statistics()
    degree = np.zeros(len(stats))
    pairs = tree.leaf_neighbors()
    row_of = {int(node): row for row, node in enumerate(stats.node_ids)}
    for a, b in pairs.tolist():
        degree[row_of[a]] += 1
        degree[row_of[b]] += 1

    system = PoissonSystemBuilder(point_weight=4.0, verbose=False).build(tree)
    diagonal = system.matrix.diagonal()
    occupied = stats.occupied
    assert np.allclose(diagonal[~occupied], degree[~occupied])
    assert np.allclose(diagonal[occupied], degree[occupied] + 4.0 * stats.mean_confidence[occupied])


def test_solution_is_negative_inside_and_positive_outside():
    tree = sphere_octree()
    system = PoissonSystemBuilder(verbose=False).build(tree)
    solver = ConjugateGradientSolver(tolerance=1e-8, max_iterations=2000, iteration_cap=4000,
                                     adaptive_tolerance=False)
    result = solver.solve(system.matrix, system.rhs)
    tree.assign_values(system.node_ids, result.solution)

    assert tree.evaluate_implicit_function([0.0, 0.0, 0.0]) < 0
    assert tree.evaluate_implicit_function([0.3, -0.2, 0.1]) < 0
    assert tree.evaluate_implicit_function([1.05, 0.0, 0.0]) > 0
    assert tree.evaluate_implicit_function([0.0, -1.05, 0.05]) > 0


def test_empty_octree_fails():
    tree = Octree(BoundingBox([0, 0, 0], [1, 1, 1]))
    with pytest.raises(SurfaceReconstructionFailed):
        PoissonSystemBuilder(verbose=False).build(tree)


def test_release_drops_buffers():
    system = PoissonSystemBuilder(verbose=False).build(sphere_octree(300))
    system.release()
    assert system.matrix is None and system.rhs is None
    assert "released" in repr(system)


def test_point_weight_must_be_positive():
    with pytest.raises(ValueError):
        PoissonSystemBuilder(point_weight=0.0)
