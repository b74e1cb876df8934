"""
Spatial Index

Adaptive octree over oriented points, stored as an arena: nodes live in
parallel lists and refer to their children by integer index (-1 = none).

Subdivision depends only on how many points fall inside a node, never on
insertion order:
    - a leaf splits once it holds `min_points` points,
    - an occupied leaf shallower than `base_depth` always splits,
    - leaves at `max_depth` accept any number of points.
Inserting the same set of points in any order therefore yields the same
tree, which is what makes batch merging exact.
"""

import threading

import numpy as np

from mesh_types import BoundingBox
from reconstruction_errors import OctreeMergeError, PointOutsideBounds

NO_CHILD = -1

# Child offsets indexed by 3-bit octant code (bit0 = x, bit1 = y, bit2 = z)
OCTANT_OFFSETS = np.array(
    [[(code >> axis) & 1 for axis in range(3)] for code in range(8)], dtype=np.int64
)


def compute_octree_bounds(positions, scale=1.1):
    """
    Cube enclosing the point cloud, enlarged by `scale` around its centre.

    The box is fixed once from the full cloud; batches inserted later must
    fall inside it.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    if len(positions) == 0:
        raise ValueError("Cannot compute octree bounds of an empty point set")
    lo = positions.min(axis=0)
    hi = positions.max(axis=0)
    center = (lo + hi) * 0.5
    half = float((hi - lo).max()) * 0.5 * scale
    if half <= 0:
        half = 1e-3
    return BoundingBox(center - half, center + half)


class LeafStatistics:
    """Per-leaf aggregates, one row per leaf (rows follow `node_ids`)."""

    def __init__(self, node_ids, centers, sizes, depths, counts, mean_positions,
                 normal_sums, mean_confidence):
        self.node_ids = node_ids
        self.centers = centers
        self.sizes = sizes
        self.depths = depths
        self.counts = counts
        self.mean_positions = mean_positions
        self.normal_sums = normal_sums
        self.mean_confidence = mean_confidence

    @property
    def occupied(self):
        return self.counts > 0

    def __len__(self):
        return len(self.node_ids)


class Octree:
    """
    Arena octree over points with normals and confidences.

    Args:
        bounds: BoundingBox of the root node (never expanded)
        max_depth: Maximum node depth (root = 0)
        min_points: Leaf point count that triggers subdivision
        base_depth: Occupied leaves shallower than this always subdivide
    """

    def __init__(self, bounds, max_depth=8, min_points=5, base_depth=0):
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        if min_points < 1:
            raise ValueError(f"min_points must be >= 1, got {min_points}")
        self.bounds = BoundingBox(bounds.min, bounds.max)
        self.max_depth = int(max_depth)
        self.min_points = int(min_points)
        self.base_depth = int(min(base_depth, max_depth))
        self._lock = threading.Lock()
        self._reset()

    def _reset(self):
        # Node arena
        self._min = []
        self._max = []
        self._center = []
        self._depth = []
        self._children = []
        self._leaf_points = []
        self._value = []
        # Point store
        self._positions = []
        self._normals = []
        self._confidence = []
        self._arrays = None
        self._add_node(tuple(self.bounds.min), tuple(self.bounds.max), 0)

    def _add_node(self, lo, hi, depth):
        self._min.append(lo)
        self._max.append(hi)
        self._center.append(tuple((a + b) * 0.5 for a, b in zip(lo, hi)))
        self._depth.append(depth)
        self._children.append(None)
        self._leaf_points.append([])
        self._value.append(float('nan'))
        return len(self._depth) - 1

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    @property
    def node_count(self):
        return len(self._depth)

    @property
    def point_count(self):
        return len(self._positions)

    def is_leaf(self, node):
        return self._children[node] is None

    def leaf_ids(self):
        return np.array([i for i, c in enumerate(self._children) if c is None], dtype=np.int64)

    def children(self, node):
        """Child indices of a node (NO_CHILD entries for missing octants)."""
        kids = self._children[node]
        if kids is None:
            return [NO_CHILD] * 8
        return list(kids)

    def node_depth(self, node):
        return self._depth[node]

    def node_bounds(self, node):
        return BoundingBox(self._min[node], self._max[node])

    def node_value(self, node):
        return self._value[node]

    def same_layout(self, other):
        """True when `other` shares bounds and subdivision parameters."""
        return (self.bounds.same_as(other.bounds)
                and self.max_depth == other.max_depth
                and self.min_points == other.min_points
                and self.base_depth == other.base_depth)

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def _octant(self, node, p):
        cx, cy, cz = self._center[node]
        return (p[0] >= cx) | ((p[1] >= cy) << 1) | ((p[2] >= cz) << 2)

    def _check_inside(self, position):
        p = np.asarray(position, dtype=np.float64).reshape(3)
        if not (np.all(np.isfinite(p)) and self.bounds.contains(p)):
            raise PointOutsideBounds(p, self.bounds)
        return p

    def insert(self, position, normal, confidence=1.0):
        """
        Insert one oriented point.

        Raises:
            PointOutsideBounds: the point lies outside the root box
        """
        p = self._check_inside(position)
        n = np.asarray(normal, dtype=np.float64).reshape(3)
        self._store(tuple(p.tolist()), tuple(n.tolist()), float(confidence))

    def insert_many(self, positions, normals, confidence=None):
        """
        Insert a block of points. The bounds check covers the whole block
        before anything is inserted.
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
        if len(normals) != len(positions):
            raise ValueError(f"Got {len(positions)} positions but {len(normals)} normals")
        if confidence is None:
            confidence = np.ones(len(positions))
        confidence = np.asarray(confidence, dtype=np.float64).reshape(-1)

        inside = np.all(np.isfinite(positions), axis=1) & self.bounds.contains_many(positions)
        if not np.all(inside):
            bad = int(np.argmin(inside))
            raise PointOutsideBounds(positions[bad], self.bounds)

        for p, n, c in zip(positions.tolist(), normals.tolist(), confidence.tolist()):
            self._store(tuple(p), tuple(n), c)

    def _store(self, p, n, c):
        pid = len(self._positions)
        self._positions.append(p)
        self._normals.append(n)
        self._confidence.append(c)
        self._arrays = None

        node = 0
        while self._children[node] is not None:
            node = self._children[node][self._octant(node, p)]
        self._leaf_points[node].append(pid)
        self._maybe_subdivide(node)

    def _should_subdivide(self, node):
        depth = self._depth[node]
        if depth >= self.max_depth:
            return False
        count = len(self._leaf_points[node])
        return count >= self.min_points or (count > 0 and depth < self.base_depth)

    def _maybe_subdivide(self, node):
        if not self._should_subdivide(node):
            return
        lo = self._min[node]
        hi = self._max[node]
        c = self._center[node]
        depth = self._depth[node] + 1
        kids = []
        for code in range(8):
            child_lo = tuple(c[a] if (code >> a) & 1 else lo[a] for a in range(3))
            child_hi = tuple(hi[a] if (code >> a) & 1 else c[a] for a in range(3))
            kids.append(self._add_node(child_lo, child_hi, depth))
        self._children[node] = kids

        pids = self._leaf_points[node]
        self._leaf_points[node] = []
        for pid in pids:
            child = kids[self._octant(node, self._positions[pid])]
            self._leaf_points[child].append(pid)
        for child in kids:
            self._maybe_subdivide(child)

    def merge(self, other):
        """
        Merge an octree built from a disjoint batch of the same cloud.

        Both trees must share bounds and subdivision parameters. The result
        has the same structure as inserting the union of both point sets.
        Merges are serialised on this tree's lock.

        Raises:
            OctreeMergeError: incompatible layouts or merging a tree into itself
        """
        if other is self:
            raise OctreeMergeError("Cannot merge an octree into itself")
        if not self.same_layout(other):
            raise OctreeMergeError(
                f"Incompatible octrees: bounds {self.bounds} / {other.bounds}, "
                f"(max_depth, min_points, base_depth) "
                f"{(self.max_depth, self.min_points, self.base_depth)} / "
                f"{(other.max_depth, other.min_points, other.base_depth)}"
            )
        with self._lock:
            # Every point of `other` already passed the same bounds check
            for p, n, c in zip(other._positions, other._normals, other._confidence):
                self._store(p, n, c)
        return self

    # ------------------------------------------------------------------
    # Vectorised views
    # ------------------------------------------------------------------

    def _node_arrays(self):
        if self._arrays is None:
            children = np.full((self.node_count, 8), NO_CHILD, dtype=np.int64)
            for i, kids in enumerate(self._children):
                if kids is not None:
                    children[i] = kids
            self._arrays = {
                'children': children,
                'is_leaf': np.array([k is None for k in self._children]),
                'center': np.array(self._center, dtype=np.float64),
                'min': np.array(self._min, dtype=np.float64),
                'max': np.array(self._max, dtype=np.float64),
                'depth': np.array(self._depth, dtype=np.int64),
            }
        return self._arrays

    def locate_leaves(self, points):
        """Leaf index containing each point, -1 for points outside the root box."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        arrays = self._node_arrays()
        node = np.zeros(len(points), dtype=np.int64)
        inside = self.bounds.contains_many(points)
        active = inside & ~arrays['is_leaf'][node]
        while np.any(active):
            idx = np.nonzero(active)[0]
            cur = node[idx]
            code = ((points[idx] >= arrays['center'][cur]).astype(np.int64)
                    * np.array([1, 2, 4])).sum(axis=1)
            node[idx] = arrays['children'][cur, code]
            active[idx] = ~arrays['is_leaf'][node[idx]]
        node[~inside] = -1
        return node

    def leaf_neighbors(self):
        """
        Face-adjacent leaf pairs as an Ex2 array (i < j).

        Each leaf probes just past the centre of its six faces; finer
        neighbours find the coarser one through their own probes, so the
        union over both sides covers every adjacency.
        """
        arrays = self._node_arrays()
        leaves = self.leaf_ids()
        centers = arrays['center'][leaves]
        half = (arrays['max'][leaves] - arrays['min'][leaves]) * 0.5
        step = float((self.bounds.size / 2 ** (self.max_depth + 2)).min())

        pairs = []
        for axis in range(3):
            for sign in (-1.0, 1.0):
                probes = centers.copy()
                probes[:, axis] += sign * (half[:, axis] + step)
                found = self.locate_leaves(probes)
                ok = found >= 0
                pairs.append(np.stack([leaves[ok], found[ok]], axis=1))
        pairs = np.concatenate(pairs)
        pairs = pairs[pairs[:, 0] != pairs[:, 1]]
        pairs = np.sort(pairs, axis=1)
        if len(pairs) == 0:
            return np.zeros((0, 2), dtype=np.int64)
        return np.unique(pairs, axis=0)

    def all_points(self):
        """Stored points as (positions Nx3, normals Nx3, confidence N)."""
        if not self._positions:
            return np.zeros((0, 3)), np.zeros((0, 3)), np.zeros(0)
        return (np.array(self._positions, dtype=np.float64),
                np.array(self._normals, dtype=np.float64),
                np.array(self._confidence, dtype=np.float64))

    def _point_leaf_index(self):
        owner = np.empty(len(self._positions), dtype=np.int64)
        for node, pids in enumerate(self._leaf_points):
            if pids:
                owner[pids] = node
        return owner

    def leaf_statistics(self):
        """Aggregate points per leaf for the linear system builder."""
        arrays = self._node_arrays()
        leaves = self.leaf_ids()
        row_of = np.full(self.node_count, -1, dtype=np.int64)
        row_of[leaves] = np.arange(len(leaves))
        m = len(leaves)

        counts = np.zeros(m, dtype=np.int64)
        pos_sums = np.zeros((m, 3))
        normal_sums = np.zeros((m, 3))
        conf_sums = np.zeros(m)
        if self._positions:
            positions, normals, confidence = self.all_points()
            rows = row_of[self._point_leaf_index()]
            counts = np.bincount(rows, minlength=m)
            conf_sums = np.bincount(rows, weights=confidence, minlength=m)
            for a in range(3):
                pos_sums[:, a] = np.bincount(rows, weights=positions[:, a], minlength=m)
                normal_sums[:, a] = np.bincount(rows, weights=normals[:, a], minlength=m)

        safe = np.maximum(counts, 1)
        return LeafStatistics(
            node_ids=leaves,
            centers=arrays['center'][leaves],
            sizes=(arrays['max'][leaves] - arrays['min'][leaves]).max(axis=1),
            depths=arrays['depth'][leaves],
            counts=counts,
            mean_positions=pos_sums / safe[:, None],
            normal_sums=normal_sums,
            mean_confidence=np.where(counts > 0, conf_sums / safe, 0.0),
        )

    def leaf_point_counts(self):
        """
        Point count per leaf keyed by (depth, min corner).

        Keys come from the geometric subdivision, so the mapping is identical
        for any insertion order of the same points.
        """
        result = {}
        for node, kids in enumerate(self._children):
            if kids is None:
                key = (self._depth[node], tuple(round(v, 12) for v in self._min[node]))
                result[key] = len(self._leaf_points[node])
        return result

    # ------------------------------------------------------------------
    # Implicit function
    # ------------------------------------------------------------------

    def assign_values(self, node_ids, values):
        """
        Write indicator values onto leaves and propagate child means upward.
        Internal nodes without any valued child stay NaN.
        """
        node_ids = np.asarray(node_ids, dtype=np.int64).reshape(-1)
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if len(node_ids) != len(values):
            raise ValueError(f"Got {len(node_ids)} node ids but {len(values)} values")
        for node, value in zip(node_ids.tolist(), values.tolist()):
            if self._children[node] is not None:
                raise ValueError(f"Node {node} is not a leaf")
            self._value[node] = value

        # Children are always created after their parent
        for node in range(self.node_count - 1, -1, -1):
            kids = self._children[node]
            if kids is None:
                continue
            child_values = [self._value[k] for k in kids
                            if k != NO_CHILD and not np.isnan(self._value[k])]
            self._value[node] = float(np.mean(child_values)) if child_values else float('nan')

    def _has_data(self, node):
        return node != NO_CHILD and not np.isnan(self._value[node])

    def _blend_children(self, node, p):
        kids = [k for k in self._children[node] if self._has_data(k)]
        if not kids:
            return self._value[node]
        extent = float(np.max(np.subtract(self._max[node], self._min[node])))
        weights = []
        values = []
        for k in kids:
            d = float(np.linalg.norm(np.subtract(p, self._center[k])))
            weights.append(1.0 / (d + 0.1 * extent))
            values.append(self._value[k])
        return float(np.dot(weights, values) / np.sum(weights))

    def _evaluate_from(self, node, p):
        while self._children[node] is not None:
            child = self._children[node][self._octant(node, p)]
            if not self._has_data(child):
                return self._blend_children(node, p)
            node = child
        return self._value[node]

    def evaluate_implicit_function(self, point):
        """
        Indicator value at a point.

        Descends into the containing child while it carries a value; where it
        does not, the children that do are blended by inverse distance
        (w = 1 / (d + 0.1 * extent)), falling back to the node's own value.
        """
        p = tuple(np.asarray(point, dtype=np.float64).reshape(3).tolist())
        return self._evaluate_from(0, p)

    def evaluate_many(self, points):
        """Vectorised `evaluate_implicit_function`."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        arrays = self._node_arrays()
        values = np.array(self._value, dtype=np.float64)
        has_data = ~np.isnan(values)

        node = np.zeros(len(points), dtype=np.int64)
        blocked = np.zeros(len(points), dtype=bool)
        active = ~arrays['is_leaf'][node]
        while np.any(active):
            idx = np.nonzero(active)[0]
            cur = node[idx]
            code = ((points[idx] >= arrays['center'][cur]).astype(np.int64)
                    * np.array([1, 2, 4])).sum(axis=1)
            child = arrays['children'][cur, code]
            ok = (child != NO_CHILD) & has_data[np.maximum(child, 0)]
            node[idx[ok]] = child[ok]
            blocked[idx[~ok]] = True
            active[idx[~ok]] = False
            active[idx[ok]] = ~arrays['is_leaf'][child[ok]]

        result = values[node]
        for i in np.nonzero(blocked)[0]:
            result[i] = self._blend_children(int(node[i]), tuple(points[i].tolist()))
        return result

    def clear(self):
        """Release all nodes and points."""
        self._reset()

    def __len__(self):
        return self.point_count

    def __repr__(self):
        return (f"Octree(nodes={self.node_count:,}, points={self.point_count:,}, "
                f"max_depth={self.max_depth})")
