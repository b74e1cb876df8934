import numpy as np
import pytest

from mesh_types import PointCloud
from point_cloud_analysis import (
    compute_point_density,
    estimate_noise_level,
    normal_consistency,
    validate_point_cloud_input,
)
from reconstruction_errors import InsufficientPoints, MissingNormals, PointDensityInsufficient


def cube_cloud(n, side, seed=0):
    rng = np.random.default_rng(seed)
    positions = rng.uniform(0.0, side, size=(n, 3))
    positions[0] = 0.0
    positions[1] = side
    normals = np.tile([0.0, 0.0, 1.0], (n, 1))
    return PointCloud(positions, normals)


def test_density_in_points_per_cubic_centimetre():
    cloud = cube_cloud(1200, 1.0)
    assert compute_point_density(cloud.positions) == pytest.approx(1200.0)
    # Same capture in millimetres
    assert compute_point_density(cloud.positions * 10.0, units_per_cm=10.0) == pytest.approx(1200.0)


def test_flat_capture_density_uses_clamped_extent():
    positions = np.column_stack([np.linspace(0, 1, 100), np.linspace(0, 1, 100), np.zeros(100)])
    assert compute_point_density(positions) == pytest.approx(100.0 / 0.01)


def test_noise_of_flat_plane_is_zero_and_grows_with_jitter():
    rng = np.random.default_rng(2)
    xy = rng.uniform(0, 1, size=(3000, 2))
    flat = np.column_stack([xy, np.zeros(3000)])
    normals = np.tile([0.0, 0.0, 1.0], (3000, 1))
    assert estimate_noise_level(flat, normals) == pytest.approx(0.0, abs=1e-9)

    noisy = flat.copy()
    noisy[:, 2] = rng.normal(scale=0.01, size=3000)
    noise_mm = estimate_noise_level(noisy, normals)
    # 0.01 cm jitter -> roughly 0.1 mm
    assert 0.05 < noise_mm < 0.15
    # PCA normals when the capture has none
    assert 0.02 < estimate_noise_level(noisy) < 0.15


def test_normal_consistency():
    rng = np.random.default_rng(4)
    positions = rng.uniform(0, 1, size=(500, 3))
    aligned = np.tile([0.0, 0.0, 1.0], (500, 1))
    assert normal_consistency(positions, aligned) == 1.0
    flipped = aligned * np.where(rng.random(500) < 0.5, -1.0, 1.0)[:, None]
    assert 0.3 < normal_consistency(positions, flipped) < 0.7
    assert normal_consistency(positions, None) == 0.0


def test_validation_checks_count_first():
    with pytest.raises(InsufficientPoints) as err:
        validate_point_cloud_input(PointCloud(np.zeros((10, 3))), min_points=1000, verbose=False)
    assert err.value.count == 10
    assert err.value.recoverable


def test_validation_requires_normals():
    cloud = cube_cloud(1200, 1.0)
    with pytest.raises(MissingNormals):
        validate_point_cloud_input(PointCloud(cloud.positions), verbose=False)

    normals = cloud.normals.copy()
    normals[5] = 0.0
    normals[6] = np.nan
    with pytest.raises(MissingNormals) as err:
        validate_point_cloud_input(PointCloud(cloud.positions, normals), verbose=False)
    assert err.value.invalid_count == 2


def test_validation_rejects_sparse_capture():
    cloud = cube_cloud(1200, 2.0)   # 150 points per cm^3
    with pytest.raises(PointDensityInsufficient) as err:
        validate_point_cloud_input(cloud, verbose=False)
    assert err.value.density == pytest.approx(150.0)


def test_validation_returns_density():
    cloud = cube_cloud(1200, 1.0)
    assert validate_point_cloud_input(cloud, verbose=False) == pytest.approx(1200.0)
