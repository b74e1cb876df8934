import numpy as np
import pytest

from kernel_executor import NumpyKernelExecutor, Open3DKernelExecutor, create_executor
from mesh_types import vertex_normals
from reconstruction_errors import InitializationFailed
from tests.sample_data import octahedron


def test_create_cpu_executor():
    executor = create_executor("cpu")
    assert isinstance(executor, NumpyKernelExecutor)
    assert executor.name == "cpu"
    assert create_executor(None).name == "cpu"


def test_unknown_backend_fails_to_initialize():
    with pytest.raises(InitializationFailed) as err:
        create_executor("metal")
    assert err.value.backend == "metal"
    assert not err.value.recoverable


def test_curvature_is_zero_when_normals_match_faces():
    vertices = np.array([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]], dtype=np.float64)
    triangles = np.array([[0, 1, 2], [0, 2, 3]])
    normals = np.tile([0.0, 0.0, 1.0], (4, 1))
    curvature = NumpyKernelExecutor().compute_curvature(vertices, triangles, normals)
    assert np.allclose(curvature, 0.0)


def test_octahedron_corners_are_features():
    vertices, triangles = octahedron()
    executor = NumpyKernelExecutor()
    normals = executor.recalculate_normals(vertices, triangles)
    curvature = executor.compute_curvature(vertices, triangles, normals)
    # Vertex normal (along the axis) vs face normal (1,1,1)/sqrt(3): 1 - 1/sqrt(3)
    assert np.allclose(curvature, 1.0 - 1.0 / np.sqrt(3.0))
    importance, locked = executor.detect_features(curvature, divergence_scale=0.1, threshold=0.5)
    assert np.allclose(importance, 1.0)
    assert np.all(locked)


def test_detect_features_scales_and_clips():
    importance, locked = NumpyKernelExecutor().detect_features(
        np.array([0.0, 0.02, 0.06, 0.5]), divergence_scale=0.1, threshold=0.5)
    assert np.allclose(importance, [0.0, 0.2, 0.6, 1.0])
    assert locked.tolist() == [False, False, True, True]


def test_recalculate_normals_matches_area_weighting():
    vertices, triangles = octahedron()
    normals = NumpyKernelExecutor().recalculate_normals(vertices, triangles)
    assert np.allclose(normals, vertex_normals(vertices, triangles))
    assert np.allclose(normals, vertices)


def test_decimate_mesh_delegates_to_quadric_decimator():
    vertices, triangles = octahedron()
    result = NumpyKernelExecutor().decimate_mesh(vertices, triangles, np.ones(6), 0.0)
    assert result.collapses == 0
    assert NumpyKernelExecutor().synchronize() is None


def test_open3d_executor_matches_cpu():
    pytest.importorskip("open3d")
    vertices, triangles = octahedron()
    executor = create_executor("open3d")
    assert isinstance(executor, Open3DKernelExecutor)
    normals = executor.recalculate_normals(vertices, triangles)
    assert np.allclose(normals, vertices, atol=1e-6)
    curvature = executor.compute_curvature(vertices, triangles, normals)
    assert np.allclose(curvature, 1.0 - 1.0 / np.sqrt(3.0), atol=1e-6)
