import numpy as np
import pytest

from mesh_types import PointCloud
from tests.sample_data import fibonacci_sphere


@pytest.fixture
def sphere_cloud():
    positions, normals = fibonacci_sphere(5000)
    return PointCloud(positions, normals)


@pytest.fixture
def random_cloud():
    rng = np.random.default_rng(7)
    positions = rng.uniform(-1.0, 1.0, size=(600, 3))
    normals = rng.normal(size=(600, 3))
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)
    return PointCloud(positions, normals, rng.uniform(0.2, 1.0, size=600))
