"""
Core data model: input points, point clouds, bounding boxes and meshes.

Meshes and point clouds are columnar numpy containers (like the splat
container of the capture tooling) so that stages can run vectorised kernels
over whole buffers.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Point:
    """A single captured sample. Immutable."""
    position: tuple
    normal: tuple = None
    confidence: float = None


class BoundingBox:
    """Axis-aligned bounding box."""

    def __init__(self, bounds_min, bounds_max):
        self.min = np.asarray(bounds_min, dtype=np.float64).copy()
        self.max = np.asarray(bounds_max, dtype=np.float64).copy()

    @classmethod
    def from_points(cls, points):
        points = np.asarray(points, dtype=np.float64)
        if len(points) == 0:
            return cls(np.zeros(3), np.zeros(3))
        return cls(points.min(axis=0), points.max(axis=0))

    @property
    def center(self):
        return (self.min + self.max) * 0.5

    @property
    def size(self):
        return self.max - self.min

    @property
    def extent(self):
        return float(self.size.max())

    @property
    def volume(self):
        return float(np.prod(self.size))

    @property
    def diagonal(self):
        return float(np.linalg.norm(self.size))

    def contains(self, point):
        point = np.asarray(point)
        return bool(np.all(point >= self.min) and np.all(point <= self.max))

    def contains_many(self, points):
        points = np.asarray(points)
        return np.all((points >= self.min) & (points <= self.max), axis=1)

    def same_as(self, other, tol=1e-12):
        return (np.allclose(self.min, other.min, rtol=0, atol=tol)
                and np.allclose(self.max, other.max, rtol=0, atol=tol))

    def to_dict(self):
        return {"min": self.min.tolist(), "max": self.max.tolist()}

    def __repr__(self):
        return f"BoundingBox(min={self.min.tolist()}, max={self.max.tolist()})"


class PointCloud:
    """
    Oriented point cloud.

    positions:  Nx3 float64
    normals:    Nx3 float64, or None when the capture carried no normals
    confidence: N float64, or None (treated as 1.0)
    """

    def __init__(self, positions, normals=None, confidence=None):
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        self.normals = None
        if normals is not None:
            self.normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        self.confidence = None
        if confidence is not None:
            self.confidence = np.asarray(confidence, dtype=np.float64).reshape(-1)

    @classmethod
    def from_points(cls, points):
        """Build a cloud from a sequence of `Point` records."""
        points = list(points)
        positions = np.array([p.position for p in points], dtype=np.float64).reshape(-1, 3)
        normals = None
        if points and all(p.normal is not None for p in points):
            normals = np.array([p.normal for p in points], dtype=np.float64)
        confidence = None
        if points and all(p.confidence is not None for p in points):
            confidence = np.array([p.confidence for p in points], dtype=np.float64)
        return cls(positions, normals, confidence)

    def points(self):
        """Iterate the cloud as immutable `Point` records."""
        for i in range(len(self)):
            normal = tuple(self.normals[i]) if self.normals is not None else None
            conf = float(self.confidence[i]) if self.confidence is not None else None
            yield Point(tuple(self.positions[i]), normal, conf)

    def subset(self, index):
        """Return a new cloud holding the rows selected by a slice, mask or index array."""
        return PointCloud(
            self.positions[index],
            self.normals[index] if self.normals is not None else None,
            self.confidence[index] if self.confidence is not None else None,
        )

    def confidence_or_ones(self):
        if self.confidence is None:
            return np.ones(len(self))
        return self.confidence

    @property
    def bounding_box(self):
        return BoundingBox.from_points(self.positions)

    def has_normals(self):
        return self.normals is not None

    def __len__(self):
        return len(self.positions)


class Mesh:
    """
    Triangle mesh.

    vertices: Nx3 float64
    normals:  Nx3 float64 (one per vertex)
    indices:  flat int64 triangle index list

    The container does not enforce its invariants; `QualityValidator` reports
    violations so corrupted buffers can be detected at each stage.
    """

    def __init__(self, vertices, normals=None, indices=None):
        self.vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        if normals is None:
            normals = np.zeros_like(self.vertices)
        self.normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        if indices is None:
            indices = np.zeros(0, dtype=np.int64)
        self.indices = np.asarray(indices, dtype=np.int64).reshape(-1)

    @classmethod
    def from_triangles(cls, vertices, triangles, normals=None):
        return cls(vertices, normals, np.asarray(triangles, dtype=np.int64).reshape(-1))

    @classmethod
    def from_point_cloud(cls, cloud):
        """Wrap a point cloud as a triangle-free mesh (used at the preprocessing stage)."""
        return cls(cloud.positions, cloud.normals, None)

    @property
    def triangles(self):
        """Mx3 view of the index list (requires a multiple of 3 indices)."""
        if len(self.indices) % 3 != 0:
            raise ValueError(f"Index count {len(self.indices)} is not a multiple of 3")
        return self.indices.reshape(-1, 3)

    @property
    def vertex_count(self):
        return len(self.vertices)

    @property
    def triangle_count(self):
        return len(self.indices) // 3

    def copy(self):
        return Mesh(self.vertices.copy(), self.normals.copy(), self.indices.copy())

    def flipped(self):
        """Return a copy with reversed triangle winding and negated normals."""
        tris = self.triangles.copy()
        tris[:, [1, 2]] = tris[:, [2, 1]]
        return Mesh(self.vertices.copy(), -self.normals, tris.reshape(-1))

    def compacted(self):
        """Return a copy without unreferenced vertices."""
        tris = self.triangles
        used = np.unique(tris)
        remap = np.full(len(self.vertices), -1, dtype=np.int64)
        remap[used] = np.arange(len(used))
        return Mesh(self.vertices[used], self.normals[used], remap[tris].reshape(-1))

    def __repr__(self):
        return f"Mesh(vertices={self.vertex_count:,}, triangles={self.triangle_count:,})"


def triangle_normals(vertices, triangles, normalize=True):
    """Per-triangle normals (area-weighted when `normalize` is False)."""
    v0 = vertices[triangles[:, 0]]
    v1 = vertices[triangles[:, 1]]
    v2 = vertices[triangles[:, 2]]
    normals = np.cross(v1 - v0, v2 - v0)
    if normalize:
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = normals / np.maximum(lengths, 1e-300)
    return normals


def vertex_normals(vertices, triangles):
    """Area-weighted, unit-length vertex normals."""
    normals = np.zeros_like(vertices, dtype=np.float64)
    if len(triangles) == 0:
        return normals
    face_normals = triangle_normals(vertices, triangles, normalize=False)
    for k in range(3):
        np.add.at(normals, triangles[:, k], face_normals)
    lengths = np.linalg.norm(normals, axis=1, keepdims=True)
    return np.where(lengths > 0, normals / np.maximum(lengths, 1e-300), 0.0)


def unique_edges(triangles):
    """
    Undirected edges of a triangle list.

    Returns:
        edges: Ex2 sorted vertex pairs
        counts: number of triangles sharing each edge
    """
    if len(triangles) == 0:
        return np.zeros((0, 2), dtype=np.int64), np.zeros(0, dtype=np.int64)
    edges = np.concatenate([
        triangles[:, [0, 1]],
        triangles[:, [1, 2]],
        triangles[:, [2, 0]],
    ])
    edges = np.sort(edges, axis=1)
    return np.unique(edges, axis=0, return_counts=True)


def mean_edge_length(vertices, triangles):
    edges, _ = unique_edges(triangles)
    if len(edges) == 0:
        return 0.0
    return float(np.mean(np.linalg.norm(vertices[edges[:, 0]] - vertices[edges[:, 1]], axis=1)))
