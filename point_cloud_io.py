"""
Point Cloud and Mesh PLY I/O

Reads oriented point clouds (XYZ + normals + optional confidence) from PLY
files and writes reconstructed meshes and point clouds back to PLY.

Usage:
    python point_cloud_io.py capture.ply --inspect
"""

import argparse
import time
from pathlib import Path

import numpy as np
from plyfile import PlyData, PlyElement

from mesh_types import Mesh, PointCloud
from pipeline_log import format_size, format_time, log_section, log_step


def find_field(names, candidates):
    """Find the first matching field name from a list of candidates."""
    for candidate in candidates:
        if candidate in names:
            return candidate
    return None


POSITION_FIELDS = (
    ['x', 'px', 'pos_x', 'position_x'],
    ['y', 'py', 'pos_y', 'position_y'],
    ['z', 'pz', 'pos_z', 'position_z'],
)
NORMAL_FIELDS = (
    ['nx', 'normal_x', 'n_x'],
    ['ny', 'normal_y', 'n_y'],
    ['nz', 'normal_z', 'n_z'],
)
CONFIDENCE_FIELDS = ['confidence', 'quality', 'scalar_confidence']


def extract_confidence(vertex, verbose=True):
    """
    Extract per-point confidence in [0, 1].
    Capture confidence is stored as a 0-1 score; out-of-range values are clipped.

    Returns:
        confidence array, or None if no confidence field found
    """
    names = vertex.data.dtype.names
    field = find_field(names, CONFIDENCE_FIELDS)
    if field is None:
        return None

    raw = np.array(vertex[field], dtype=np.float64)
    if verbose:
        print(f"    Found confidence field: '{field}'")
        print(f"    Raw range: {raw.min():.3f} to {raw.max():.3f}")
    return np.clip(raw, 0, 1)


def _columns(vertex, candidates):
    names = vertex.data.dtype.names
    fields = [find_field(names, c) for c in candidates]
    if not all(fields):
        return None
    return np.stack([np.array(vertex[f], dtype=np.float64) for f in fields], axis=1)


def load_point_cloud(input_path, verbose=True):
    """
    Load an oriented point cloud from a PLY file.

    Clouds without normal fields load with `normals=None`; the engine rejects
    them with MissingNormals.

    Raises:
        ValueError: the file has no vertex element or no position fields
    """
    if verbose:
        log_step(f"Loading point cloud: {input_path}")

    load_start = time.time()
    plydata = PlyData.read(str(input_path))
    if 'vertex' not in [el.name for el in plydata.elements]:
        raise ValueError(f"{input_path} has no 'vertex' element")
    vertex = plydata['vertex']

    positions = _columns(vertex, POSITION_FIELDS)
    if positions is None:
        raise ValueError(
            f"Could not find position fields (x, y, z) in {input_path}; "
            f"available fields: {vertex.data.dtype.names}"
        )
    normals = _columns(vertex, NORMAL_FIELDS)
    confidence = extract_confidence(vertex, verbose=False)
    cloud = PointCloud(positions, normals, confidence)
    load_time = time.time() - load_start

    if verbose:
        print()
        log_section("POINT CLOUD LOADED")
        print(f"    Points:         {len(cloud):,}")
        print(f"    Has normals:    {cloud.has_normals()}")
        print(f"    Has confidence: {cloud.confidence is not None}")
        print(f"    Load time:      {format_time(load_time)}")
        if len(cloud) > 0:
            lo, hi = positions.min(axis=0), positions.max(axis=0)
            print("    Extent:")
            for axis, a, b in zip("XYZ", lo, hi):
                print(f"      {axis}: [{a:.4f}, {b:.4f}]  ({b - a:.4f})")
        print()

    return cloud


def save_point_cloud(cloud, output_path, verbose=True):
    """Write positions, normals and confidence (when present) to a PLY file."""
    dtype = [('x', 'f4'), ('y', 'f4'), ('z', 'f4')]
    columns = [cloud.positions[:, 0], cloud.positions[:, 1], cloud.positions[:, 2]]
    if cloud.normals is not None:
        dtype += [('nx', 'f4'), ('ny', 'f4'), ('nz', 'f4')]
        columns += [cloud.normals[:, 0], cloud.normals[:, 1], cloud.normals[:, 2]]
    if cloud.confidence is not None:
        dtype += [('confidence', 'f4')]
        columns += [cloud.confidence]

    data = np.empty(len(cloud), dtype=dtype)
    for (name, _), column in zip(dtype, columns):
        data[name] = column

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    PlyData([PlyElement.describe(data, 'vertex')]).write(str(output_path))
    if verbose:
        log_step(f"Wrote {len(cloud):,} points to {output_path}")
    return len(cloud)


def save_mesh(mesh, output_path, binary=True, verbose=True):
    """Write a mesh (positions, normals, triangles) to a PLY file."""
    if verbose:
        log_section("SAVING MESH")
        print(f"    Mesh:      {mesh!r}")
        print(f"    Format:    {'binary' if binary else 'ascii'} PLY")

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    save_start = time.time()
    vertices = np.empty(mesh.vertex_count, dtype=[
        ('x', 'f4'), ('y', 'f4'), ('z', 'f4'),
        ('nx', 'f4'), ('ny', 'f4'), ('nz', 'f4'),
    ])
    for a, name in enumerate('xyz'):
        vertices[name] = mesh.vertices[:, a]
        vertices['n' + name] = mesh.normals[:, a]

    faces = np.empty(mesh.triangle_count, dtype=[('vertex_indices', 'i4', (3,))])
    faces['vertex_indices'] = mesh.triangles

    PlyData(
        [PlyElement.describe(vertices, 'vertex'), PlyElement.describe(faces, 'face')],
        text=not binary,
    ).write(str(output_path))
    if verbose:
        size = format_size(Path(output_path).stat().st_size)
        print(f"    Wrote {output_path} ({size}) in {format_time(time.time() - save_start)}")
        print()
    return True


def load_mesh(input_path):
    """Read a triangle mesh written by `save_mesh` (or any PLY with vertex/face elements)."""
    plydata = PlyData.read(str(input_path))
    vertex = plydata['vertex']
    positions = _columns(vertex, POSITION_FIELDS)
    normals = _columns(vertex, NORMAL_FIELDS)
    faces = plydata['face']
    face_field = find_field(faces.data.dtype.names, ['vertex_indices', 'vertex_index'])
    triangles = np.vstack([np.asarray(f, dtype=np.int64) for f in faces[face_field]]) \
        if len(faces) else np.zeros((0, 3), dtype=np.int64)
    return Mesh.from_triangles(positions, triangles, normals)


def inspect_ply(input_path):
    """
    Inspect a PLY file and report whether it can feed the reconstruction
    engine. Useful for debugging field name issues.
    """
    print(f"Inspecting PLY file: {input_path}")
    print("=" * 60)

    plydata = PlyData.read(str(input_path))

    print(f"Elements in file: {[el.name for el in plydata.elements]}")
    print()

    for element in plydata.elements:
        print(f"Element: '{element.name}' ({len(element)} entries)")
        print("-" * 40)
        for prop in element.properties:
            data = np.array(element[prop.name])
            if data.dtype == object or len(data) == 0:
                print(f"  {prop.name:20s} (list property)")
                continue
            print(f"  {prop.name:20s} dtype={str(data.dtype):10s} range=[{data.min():.4f}, {data.max():.4f}]")
        print()

    vertex = plydata['vertex']
    names = vertex.data.dtype.names

    print("=" * 60)
    print("ANALYSIS:")
    print("-" * 40)
    if _columns(vertex, POSITION_FIELDS) is not None:
        print("[OK] Position fields found (x, y, z)")
    else:
        print("[!!] Position fields NOT found - file may not be a valid point cloud")
    if _columns(vertex, NORMAL_FIELDS) is not None:
        print("[OK] Normal fields found (nx, ny, nz)")
    else:
        print("[!!] No normal fields - reconstruction requires oriented normals")
    field = find_field(names, CONFIDENCE_FIELDS)
    if field:
        print(f"[OK] Confidence field '{field}' found")
    else:
        print("[INFO] No confidence field - all points weighted equally")
    print()
    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(description="Inspect a point cloud PLY file")
    parser.add_argument("input", help="Input .ply file")
    parser.add_argument(
        "--inspect", "-i",
        action="store_true",
        help="Print the PLY structure (default action)"
    )
    args = parser.parse_args()
    inspect_ply(args.input)


if __name__ == "__main__":
    main()
