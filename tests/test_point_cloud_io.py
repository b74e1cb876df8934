import numpy as np
import pytest
from plyfile import PlyData, PlyElement

from mesh_types import Mesh, PointCloud, vertex_normals
from point_cloud_io import load_mesh, load_point_cloud, save_mesh, save_point_cloud
from tests.sample_data import fibonacci_sphere, octahedron


def write_vertices(path, **columns):
    n = len(next(iter(columns.values())))
    data = np.empty(n, dtype=[(name, 'f4') for name in columns])
    for name, values in columns.items():
        data[name] = values
    PlyData([PlyElement.describe(data, 'vertex')]).write(str(path))


def test_point_cloud_round_trip(tmp_path):
    positions, normals = fibonacci_sphere(200)
    confidence = np.linspace(0.1, 0.9, 200)
    path = tmp_path / "clouds" / "sphere.ply"
    assert save_point_cloud(PointCloud(positions, normals, confidence), path, verbose=False) == 200

    cloud = load_point_cloud(path, verbose=False)
    assert len(cloud) == 200
    assert cloud.has_normals()
    assert np.allclose(cloud.positions, positions, atol=1e-6)
    assert np.allclose(cloud.normals, normals, atol=1e-6)
    assert np.allclose(cloud.confidence, confidence, atol=1e-6)


def test_cloud_without_normals_loads_with_none(tmp_path):
    path = tmp_path / "bare.ply"
    write_vertices(path, x=[0.0, 1.0], y=[0.0, 1.0], z=[0.0, 1.0])
    cloud = load_point_cloud(path, verbose=False)
    assert cloud.normals is None
    assert cloud.confidence is None


def test_confidence_is_clipped_to_unit_range(tmp_path):
    path = tmp_path / "scores.ply"
    write_vertices(path, x=[0.0, 1.0, 2.0], y=[0.0] * 3, z=[0.0] * 3, confidence=[-0.2, 0.5, 1.3])
    cloud = load_point_cloud(path, verbose=False)
    assert np.allclose(cloud.confidence, [0.0, 0.5, 1.0])


def test_splat_opacity_is_not_confidence(tmp_path):
    path = tmp_path / "splat.ply"
    write_vertices(path, x=[0.0, 1.0], y=[0.0] * 2, z=[0.0] * 2, opacity=[-4.0, 4.0], alpha=[0.1, 0.9])
    assert load_point_cloud(path, verbose=False).confidence is None


def test_alternate_field_names(tmp_path):
    path = tmp_path / "alt.ply"
    write_vertices(path, pos_x=[1.0], pos_y=[2.0], pos_z=[3.0],
                   normal_x=[0.0], normal_y=[1.0], normal_z=[0.0])
    cloud = load_point_cloud(path, verbose=False)
    assert np.allclose(cloud.positions, [[1.0, 2.0, 3.0]])
    assert np.allclose(cloud.normals, [[0.0, 1.0, 0.0]])


def test_missing_positions_raise(tmp_path):
    path = tmp_path / "nopos.ply"
    write_vertices(path, a=[1.0], b=[2.0])
    with pytest.raises(ValueError):
        load_point_cloud(path, verbose=False)


@pytest.mark.parametrize("binary", [True, False])
def test_mesh_round_trip(tmp_path, binary):
    vertices, triangles = octahedron()
    mesh = Mesh.from_triangles(vertices, triangles, vertex_normals(vertices, triangles))
    path = tmp_path / "octahedron.ply"
    save_mesh(mesh, path, binary=binary, verbose=False)

    loaded = load_mesh(path)
    assert loaded.vertex_count == 6
    assert np.array_equal(loaded.triangles, triangles)
    assert np.allclose(loaded.vertices, vertices)
    assert np.allclose(loaded.normals, mesh.normals, atol=1e-6)
