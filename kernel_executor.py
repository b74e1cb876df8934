"""
Kernel Executors

Data-parallel mesh kernels behind one interface, so the optimizer never
depends on a particular compute backend. Every kernel is a pure function of
its input buffers and returns new buffers; `synchronize()` is the barrier a
stage calls before handing results to the next one.

Backends:
    cpu     - NumpyKernelExecutor (always available)
    open3d  - Open3DKernelExecutor (requires the optional open3d package)

The backend is chosen explicitly. Requesting one that cannot start raises
InitializationFailed instead of silently running on another.
"""

import numpy as np

from mesh_types import triangle_normals, vertex_normals
from quadric_decimation import QuadricDecimator
from reconstruction_errors import InitializationFailed


class KernelExecutor:
    """Interface of the parallel mesh kernels."""

    name = "abstract"

    def compute_curvature(self, vertices, triangles, normals):
        """Mean normal divergence (1 - n_v . n_f) over each vertex's triangles."""
        raise NotImplementedError

    def detect_features(self, curvature, divergence_scale=0.1, threshold=0.5):
        """Return (importance in [0, 1], locked feature mask)."""
        raise NotImplementedError

    def decimate_mesh(self, vertices, triangles, weights, threshold, locked=None):
        """Return a DecimationResult."""
        raise NotImplementedError

    def recalculate_normals(self, vertices, triangles):
        raise NotImplementedError

    def synchronize(self):
        """Block until every submitted kernel has finished."""
        raise NotImplementedError


class NumpyKernelExecutor(KernelExecutor):
    """CPU implementation with numpy / scipy."""

    name = "cpu"

    def compute_curvature(self, vertices, triangles, normals):
        vertices = np.asarray(vertices, dtype=np.float64)
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        divergence = np.zeros(len(vertices))
        if len(triangles) == 0:
            return divergence
        face_normals = triangle_normals(vertices, triangles)
        normals = np.asarray(normals, dtype=np.float64)
        lengths = np.linalg.norm(normals, axis=1, keepdims=True)
        normals = normals / np.maximum(lengths, 1e-300)

        counts = np.zeros(len(vertices))
        for k in range(3):
            idx = triangles[:, k]
            dots = np.einsum('ij,ij->i', normals[idx], face_normals)
            np.add.at(divergence, idx, 1.0 - dots)
            np.add.at(counts, idx, 1.0)
        return np.where(counts > 0, divergence / np.maximum(counts, 1.0), 0.0)

    def detect_features(self, curvature, divergence_scale=0.1, threshold=0.5):
        importance = np.clip(np.asarray(curvature, dtype=np.float64) / divergence_scale, 0.0, 1.0)
        return importance, importance >= threshold

    def decimate_mesh(self, vertices, triangles, weights, threshold, locked=None):
        return QuadricDecimator(threshold).decimate(vertices, triangles, weights, locked)

    def recalculate_normals(self, vertices, triangles):
        return vertex_normals(np.asarray(vertices, dtype=np.float64),
                              np.asarray(triangles, dtype=np.int64).reshape(-1, 3))

    def synchronize(self):
        # numpy kernels complete before returning
        return None


class Open3DKernelExecutor(NumpyKernelExecutor):
    """
    Open3D-backed kernels.

    Normals and face normals come from Open3D's TriangleMesh. Decimation keeps
    the CPU quadric decimator: Open3D's simplification has no per-vertex
    weights or locked vertices.
    """

    name = "open3d"

    def __init__(self):
        try:
            import open3d as o3d
        except ImportError as e:
            raise InitializationFailed("open3d", f"open3d is not installed ({e})") from e
        self._o3d = o3d

    def _triangle_mesh(self, vertices, triangles):
        o3d = self._o3d
        mesh = o3d.geometry.TriangleMesh()
        mesh.vertices = o3d.utility.Vector3dVector(np.asarray(vertices, dtype=np.float64))
        mesh.triangles = o3d.utility.Vector3iVector(
            np.asarray(triangles, dtype=np.int32).reshape(-1, 3))
        return mesh

    def compute_curvature(self, vertices, triangles, normals):
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        divergence = np.zeros(len(vertices))
        if len(triangles) == 0:
            return divergence
        mesh = self._triangle_mesh(vertices, triangles)
        mesh.compute_triangle_normals()
        face_normals = np.asarray(mesh.triangle_normals)
        normals = np.asarray(normals, dtype=np.float64)
        normals = normals / np.maximum(np.linalg.norm(normals, axis=1, keepdims=True), 1e-300)

        counts = np.bincount(triangles.ravel(), minlength=len(vertices)).astype(np.float64)
        for k in range(3):
            idx = triangles[:, k]
            dots = np.einsum('ij,ij->i', normals[idx], face_normals)
            divergence += np.bincount(idx, weights=1.0 - dots, minlength=len(vertices))
        return np.where(counts > 0, divergence / np.maximum(counts, 1.0), 0.0)

    def recalculate_normals(self, vertices, triangles):
        if len(triangles) == 0:
            return np.zeros((len(vertices), 3))
        mesh = self._triangle_mesh(vertices, triangles)
        mesh.compute_vertex_normals()
        return np.asarray(mesh.vertex_normals).copy()


def create_executor(backend="cpu"):
    """
    Instantiate the kernel executor for a backend name.

    Raises:
        InitializationFailed: unknown backend or missing dependency
    """
    backend = (backend or "cpu").lower()
    if backend == "cpu":
        return NumpyKernelExecutor()
    if backend == "open3d":
        return Open3DKernelExecutor()
    raise InitializationFailed(backend, "unknown backend (expected 'cpu' or 'open3d')")
