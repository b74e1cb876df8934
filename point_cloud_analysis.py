"""
Point Cloud Analysis

Density, noise and normal-consistency estimates for oriented point clouds,
plus the fail-fast input checks run before any reconstruction work starts.

Coordinates are interpreted through `units_per_cm` (coordinate units per
centimetre): densities are reported in points/cm^3 and noise in millimetres.
"""

import numpy as np
from scipy.spatial import cKDTree

from reconstruction_errors import InsufficientPoints, MissingNormals, PointDensityInsufficient

# Upper bound on query points used for neighbourhood statistics
MAX_SAMPLES = 4000


def _sample_indices(n, max_samples=MAX_SAMPLES):
    if n <= max_samples:
        return np.arange(n)
    return np.linspace(0, n - 1, max_samples).astype(np.int64)


def compute_point_density(positions, units_per_cm=1.0):
    """
    Points per cubic centimetre of the bounding volume.

    Flat captures would have a zero-volume box, so every extent is clamped to
    at least 1% of the largest extent.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    finite = positions[np.all(np.isfinite(positions), axis=1)]
    if len(finite) == 0:
        return 0.0
    size_cm = (finite.max(axis=0) - finite.min(axis=0)) / units_per_cm
    largest = size_cm.max()
    if largest <= 0:
        return 0.0
    size_cm = np.maximum(size_cm, 0.01 * largest)
    return float(len(finite) / np.prod(size_cm))


def _tangent_normals(positions, neighbor_idx):
    # Smallest-eigenvalue direction of each neighbourhood covariance
    nbrs = positions[neighbor_idx]
    centered = nbrs - nbrs.mean(axis=1, keepdims=True)
    cov = np.einsum('nki,nkj->nij', centered, centered)
    _, eigvecs = np.linalg.eigh(cov)
    return eigvecs[:, :, 0]


def estimate_noise_level(positions, normals=None, k=10, units_per_cm=1.0, tree=None):
    """
    Estimate capture noise in millimetres.

    For each sampled point, neighbour heights above its tangent plane are
    collected; the noise is the RMS of their per-neighbourhood standard
    deviation. The plane normal is the captured normal when available,
    otherwise the PCA normal of the neighbourhood.

    Args:
        positions: Nx3 coordinates
        normals: Optional Nx3 normals
        k: Neighbours per point (including the point itself)
        units_per_cm: Coordinate units per centimetre
        tree: Optional prebuilt cKDTree over `positions`

    Returns:
        Noise level in mm (0.0 for clouds too small to estimate)
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    n = len(positions)
    if n < 4:
        return 0.0
    k = min(k, n)
    if tree is None:
        tree = cKDTree(positions)

    sample = _sample_indices(n)
    _, idx = tree.query(positions[sample], k=k)

    if normals is not None:
        plane_normals = np.asarray(normals, dtype=np.float64)[sample]
        lengths = np.linalg.norm(plane_normals, axis=1, keepdims=True)
        plane_normals = plane_normals / np.maximum(lengths, 1e-300)
    else:
        plane_normals = _tangent_normals(positions, idx)

    offsets = positions[idx] - positions[sample][:, None, :]
    heights = np.einsum('nki,ni->nk', offsets, plane_normals)
    spread = heights.std(axis=1)
    rms = float(np.sqrt(np.mean(spread ** 2)))
    return rms / units_per_cm * 10.0


def normal_consistency(positions, normals, k=8, tree=None):
    """
    Fraction of neighbouring normal pairs that agree in orientation (dot > 0).

    A consistently oriented cloud scores close to 1.0; random orientations
    score around 0.5.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    if normals is None or len(positions) < 2:
        return 0.0
    normals = np.asarray(normals, dtype=np.float64)
    k = min(k + 1, len(positions))
    if tree is None:
        tree = cKDTree(positions)
    sample = _sample_indices(len(positions))
    _, idx = tree.query(positions[sample], k=k)
    dots = np.einsum('nki,ni->nk', normals[idx[:, 1:]], normals[sample])
    return float(np.mean(dots > 0))


def validate_point_cloud_input(cloud, min_points=1000, min_density=500.0, units_per_cm=1.0,
                               verbose=True):
    """
    Fail-fast checks on a capture before reconstruction.

    Raises:
        InsufficientPoints: fewer than `min_points` samples
        MissingNormals: no normals, or normals that are non-finite or zero
        PointDensityInsufficient: density below `min_density` points/cm^3

    Returns:
        Measured density in points/cm^3
    """
    n = len(cloud)
    if n < min_points:
        raise InsufficientPoints(n, min_points)

    if cloud.normals is None:
        raise MissingNormals(
            f"Point cloud of {n:,} points has no normals; oriented normals are "
            f"required for Poisson reconstruction"
        )
    if cloud.normals.shape != cloud.positions.shape:
        raise MissingNormals(
            f"Normal count {len(cloud.normals):,} does not match point count {n:,}"
        )
    lengths = np.linalg.norm(cloud.normals, axis=1)
    invalid = int(np.sum(~np.isfinite(lengths) | (lengths < 1e-12)))
    if invalid:
        raise MissingNormals(
            f"{invalid:,} of {n:,} normals are zero-length or non-finite",
            invalid_count=invalid,
        )

    density = compute_point_density(cloud.positions, units_per_cm)
    if density < min_density:
        raise PointDensityInsufficient(density, min_density)

    if verbose:
        print(f"    Points:  {n:,}")
        print(f"    Density: {density:,.1f} pts/cm^3")
    return density
