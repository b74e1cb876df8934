"""
Quadric Error Decimation

Edge-collapse simplification driven by quadric error matrices. Each vertex
accumulates K_p = p p^T over the planes p = (a, b, c, d) of its incident
triangles; v^T Q v is then the sum of squared distances from v to those
planes.

Collapses are thresholded rather than count-targeted: an edge (u, v) is
collapsed only while its error stays below

    error_threshold * L^2 * min(w_u, w_v)

with L the mean edge length when the pass starts and w the per-vertex
processing weights. A collapse is rejected when it would break the link
condition, touch a boundary vertex, create a duplicate face or flip a
triangle. Locked vertices never move: an edge towards a locked vertex
collapses onto it, and edges between two locked vertices are skipped.
"""

import heapq
import itertools

import numpy as np

from mesh_types import mean_edge_length, unique_edges

# Minimum cosine between a triangle's normal before and after a collapse
FOLD_COSINE = 0.2


def plane_quadrics(vertices, triangles):
    """Per-vertex 4x4 quadrics summed over incident triangle planes."""
    quadrics = np.zeros((len(vertices), 4, 4))
    if len(triangles) == 0:
        return quadrics
    v0 = vertices[triangles[:, 0]]
    normals = np.cross(vertices[triangles[:, 1]] - v0, vertices[triangles[:, 2]] - v0)
    lengths = np.linalg.norm(normals, axis=1)
    valid = lengths > 0
    normals = normals[valid] / lengths[valid, None]
    planes = np.concatenate([normals, -np.sum(normals * v0[valid], axis=1, keepdims=True)], axis=1)
    outer = planes[:, :, None] * planes[:, None, :]
    for k in range(3):
        np.add.at(quadrics, triangles[valid, k], outer)
    return quadrics


def quadric_error(quadric, position):
    h = np.append(np.asarray(position, dtype=np.float64), 1.0)
    return float(h @ quadric @ h)


def optimal_position(quadric, p1, p2):
    """
    Position minimising v^T Q v, with the error at that position.

    Solves the 3x3 system of the quadric; when it is singular (flat or
    cylindrical neighbourhoods) the best of both endpoints and the midpoint
    is used.
    """
    A = quadric[:3, :3]
    b = -quadric[:3, 3]
    candidates = [p1, p2, (p1 + p2) * 0.5]
    if abs(np.linalg.det(A)) > 1e-12 * max(np.abs(A).max(), 1e-300) ** 3:
        solved = np.linalg.solve(A, b)
        # Far-away optima come from near-singular systems
        if np.all(np.isfinite(solved)) and np.linalg.norm(solved - candidates[2]) <= np.linalg.norm(p2 - p1):
            candidates.insert(0, solved)
    errors = [quadric_error(quadric, c) for c in candidates]
    best = int(np.argmin(errors))
    return candidates[best], max(errors[best], 0.0)


class DecimationResult:
    def __init__(self, vertices, triangles, kept, collapses):
        self.vertices = vertices
        self.triangles = triangles
        # kept[i] = index of output vertex i in the input mesh
        self.kept = kept
        self.collapses = collapses


class QuadricDecimator:
    """
    Args:
        error_threshold: Collapse threshold relative to the squared mean edge length
    """

    def __init__(self, error_threshold=0.01):
        self.error_threshold = error_threshold

    def decimate(self, vertices, triangles, weights=None, locked=None, threshold=None):
        vertices = np.asarray(vertices, dtype=np.float64).copy()
        triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3).copy()
        n = len(vertices)
        weights = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64).copy()
        locked = np.zeros(n, dtype=bool) if locked is None else np.asarray(locked, dtype=bool).copy()
        threshold = self.error_threshold if threshold is None else threshold

        if len(triangles) == 0:
            return DecimationResult(vertices, triangles, np.arange(n), 0)

        edge_len = mean_edge_length(vertices, triangles)
        scale = threshold * edge_len ** 2

        edges, counts = unique_edges(triangles)
        boundary = np.zeros(n, dtype=bool)
        boundary[edges[counts == 1].ravel()] = True
        # Non-manifold edges are left alone too
        boundary[edges[counts > 2].ravel()] = True

        quadrics = plane_quadrics(vertices, triangles)
        alive_face = np.ones(len(triangles), dtype=bool)
        vertex_faces = [set() for _ in range(n)]
        for f, tri in enumerate(triangles.tolist()):
            for v in tri:
                vertex_faces[v].add(f)
        face_keys = {tuple(sorted(tri)): f for f, tri in enumerate(triangles.tolist())}
        alive = np.ones(n, dtype=bool)
        version = np.zeros(n, dtype=np.int64)

        heap = []
        order = itertools.count()

        def push(u, v):
            if boundary[u] or boundary[v] or (locked[u] and locked[v]):
                return
            if locked[v]:
                u, v = v, u
            q = quadrics[u] + quadrics[v]
            if locked[u]:
                position = vertices[u].copy()
                error = max(quadric_error(q, position), 0.0)
            else:
                position, error = optimal_position(q, vertices[u], vertices[v])
            if error < scale * min(weights[u], weights[v]):
                heapq.heappush(heap, (error, next(order), u, v, version[u], version[v], position))

        for u, v in edges.tolist():
            push(u, v)

        collapses = 0
        while heap:
            _, _, u, v, ver_u, ver_v, position = heapq.heappop(heap)
            if not (alive[u] and alive[v]) or version[u] != ver_u or version[v] != ver_v:
                continue
            if not self._can_collapse(u, v, position, vertices, triangles, vertex_faces, face_keys):
                continue

            # Collapse v into u
            shared = vertex_faces[u] & vertex_faces[v]
            for f in shared:
                alive_face[f] = False
                del face_keys[tuple(sorted(triangles[f].tolist()))]
                for w in triangles[f].tolist():
                    vertex_faces[w].discard(f)
            for f in vertex_faces[v]:
                del face_keys[tuple(sorted(triangles[f].tolist()))]
                triangles[f][triangles[f] == v] = u
                face_keys[tuple(sorted(triangles[f].tolist()))] = f
                vertex_faces[u].add(f)
            vertex_faces[v] = set()

            vertices[u] = position
            quadrics[u] = quadrics[u] + quadrics[v]
            weights[u] = min(weights[u], weights[v])
            locked[u] = locked[u] or locked[v]
            alive[v] = False
            version[u] += 1
            version[v] += 1
            collapses += 1

            for w in self._neighbors(u, triangles, vertex_faces):
                push(u, w)

        triangles = triangles[alive_face]
        used = np.unique(triangles)
        remap = np.full(n, -1, dtype=np.int64)
        remap[used] = np.arange(len(used))
        return DecimationResult(vertices[used], remap[triangles], used, collapses)

    @staticmethod
    def _neighbors(u, triangles, vertex_faces):
        ring = set()
        for f in vertex_faces[u]:
            ring.update(triangles[f].tolist())
        ring.discard(u)
        return ring

    def _can_collapse(self, u, v, position, vertices, triangles, vertex_faces, face_keys):
        shared = vertex_faces[u] & vertex_faces[v]
        if len(shared) != 2:
            return False

        # Link condition: the only common neighbours are the two opposite vertices
        opposite = set()
        for f in shared:
            opposite.update(triangles[f].tolist())
        opposite -= {u, v}
        common = (self._neighbors(u, triangles, vertex_faces)
                  & self._neighbors(v, triangles, vertex_faces))
        if common != opposite:
            return False

        for moved in (u, v):
            for f in vertex_faces[moved] - shared:
                tri = triangles[f]
                new_tri = np.where((tri == u) | (tri == v), u, tri)
                if moved == v:
                    key = tuple(sorted(new_tri.tolist()))
                    if key in face_keys:
                        return False
                old = vertices[tri]
                new = old.copy()
                new[(tri == u) | (tri == v)] = position
                n_old = np.cross(old[1] - old[0], old[2] - old[0])
                n_new = np.cross(new[1] - new[0], new[2] - new[0])
                len_old = np.linalg.norm(n_old)
                len_new = np.linalg.norm(n_new)
                if len_new <= 1e-12 * max(len_old, 1e-300):
                    return False
                if len_old > 0 and np.dot(n_old, n_new) < FOLD_COSINE * len_old * len_new:
                    return False
        return True


def decimate(vertices, triangles, weights=None, locked=None, error_threshold=0.01):
    """Functional wrapper around QuadricDecimator."""
    return QuadricDecimator(error_threshold).decimate(vertices, triangles, weights, locked)
