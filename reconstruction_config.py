"""
Reconstruction Configuration

Parameters for every stage of the surface reconstruction engine, grouped per
stage. Values can come from code, from the command line, or from environment
variables (see `ReconstructionConfig.from_env`).

Environment Variables:
    RECON_PRESET            - "draft", "standard" or "high_quality" (default: standard)
    RECON_MIN_POINTS        - Minimum number of input points (default: 1000)
    RECON_UNITS_PER_CM      - Coordinate units per centimetre (default: 1.0)
    RECON_BACKEND           - Kernel executor backend: "cpu" or "open3d" (default: cpu)
    RECON_DEADLINE          - Soft deadline for one request in seconds (optional)
    OCTREE_MAX_DEPTH        - Maximum octree depth (default: 8)
    OCTREE_MIN_POINTS       - Points per leaf before subdivision (default: 5)
    OCTREE_BASE_DEPTH       - Depth every occupied node reaches (default: 6)
    POINT_WEIGHT            - Screening weight of samples in the linear system (default: 4.0)
    SOLVER_TOLERANCE        - Conjugate gradient tolerance (default: 1e-6)
    SOLVER_MAX_ITERATIONS   - Initial iteration budget (default: 100)
    GRID_RESOLUTION         - Marching cubes samples per axis (default: 64)
    MIN_COMPONENT_FRACTION  - Drop mesh components smaller than this share of the largest (default: 0.05)
    ERROR_THRESHOLD         - Decimation error threshold (default: 0.01)
    DENSITY_BLEND           - Density vs. feature blend factor (default: 0.5)
    DECIMATION_PASSES       - Smoothing/decimation passes (default: 2)
    BATCH_SIZE              - Points per ingestion batch (default: 5000)
    BATCH_WORKERS           - Concurrent ingestion batches (default: 1)
    DENOISE_BATCHES         - Adaptive noise reduction per batch (default: true)
    REMOVE_OUTLIERS         - Drop statistical and normal outliers before ingestion (default: true)
    OUTLIER_STD_RATIO       - Neighbour distance cutoff in standard deviations (default: 2.0)
    CLINICAL_GATING         - Enforce clinical thresholds (default: true)
    FUSE_CAPTURE_NORMALS    - Run the capture-normal fusion stage (default: true)
    VERBOSE                 - Print progress (default: true)
"""

import os
from dataclasses import dataclass, field, replace


def get_env_bool(name, default=False):
    """Get boolean from environment variable."""
    val = os.environ.get(name, str(default)).lower()
    return val in ('true', '1', 'yes', 'on')


def get_env_float(name, default=None):
    """Get float from environment variable."""
    val = os.environ.get(name)
    if val is None or val == '':
        return default
    try:
        return float(val)
    except ValueError:
        print(f"[WARNING] Invalid float for {name}: {val}, using default: {default}")
        return default


def get_env_int(name, default=None):
    """Get int from environment variable."""
    val = os.environ.get(name)
    if val is None or val == '':
        return default
    try:
        return int(val)
    except ValueError:
        print(f"[WARNING] Invalid int for {name}: {val}, using default: {default}")
        return default


@dataclass
class OctreeConfig:
    max_depth: int = 8
    min_points: int = 5
    base_depth: int = 6
    bounds_scale: float = 1.1


@dataclass
class SolverConfig:
    tolerance: float = 1e-6
    max_iterations: int = 100
    iteration_extension: int = 50
    iteration_cap: int = 500
    stall_ratio: float = 0.01
    adaptive_tolerance: bool = True
    preconditioner: str = "jacobi"


@dataclass
class ExtractionConfig:
    resolution: int = 64
    iso_value: float = 0.0
    # Relative to the sampling grid diagonal
    weld_epsilon: float = 1e-6
    # Relative to the triangle count of the largest component
    min_component_fraction: float = 0.05


@dataclass
class OptimizerConfig:
    # Relative to the squared mean edge length
    error_threshold: float = 0.01
    density_blend: float = 0.5
    density_radius_factor: float = 2.5
    divergence_scale: float = 0.1
    feature_threshold: float = 0.5
    decimation_passes: int = 2
    chunk_size: int = 5000
    chunk_memory_budget_mb: float = 256.0
    taubin_lambda: float = 0.5
    taubin_mu: float = -0.53


@dataclass
class ValidationConfig:
    min_point_density: float = 500.0      # points per cm^3
    max_noise_mm: float = 0.1
    min_completeness: float = 0.98
    min_feature_preservation: float = 0.95
    min_manifoldness: float = 0.95
    min_watertightness: float = 0.98
    max_aspect_ratio: float = 10.0
    max_poor_aspect_fraction: float = 0.05
    min_normal_consistency: float = 0.8
    clinical_gating: bool = True


@dataclass
class BatchConfig:
    batch_size: int = 5000
    min_batch_size: int = 250
    max_workers: int = 1
    denoise: bool = True
    denoise_neighbors: int = 10
    remove_outliers: bool = True
    outlier_neighbors: int = 20
    outlier_std_ratio: float = 2.0
    outlier_normal_consistency: float = 0.7
    memory_pressure_threshold: float = 0.8
    batch_memory_budget_mb: float = 512.0


@dataclass
class ReconstructionConfig:
    min_points: int = 1000
    units_per_cm: float = 1.0
    point_weight: float = 4.0
    backend: str = "cpu"
    deadline_seconds: float = None
    fuse_capture_normals: bool = True
    verbose: bool = True
    octree: OctreeConfig = field(default_factory=OctreeConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def preset(cls, name):
        """
        Build a configuration from a named quality preset.

        Args:
            name: "draft", "standard" or "high_quality"

        Returns:
            ReconstructionConfig
        """
        name = name.lower()
        if name == "standard":
            return cls()
        if name == "draft":
            return cls(
                point_weight=3.0,
                octree=OctreeConfig(max_depth=7, base_depth=5),
                extraction=ExtractionConfig(resolution=32),
                optimizer=OptimizerConfig(error_threshold=0.02, decimation_passes=1),
            )
        if name == "high_quality":
            return cls(
                point_weight=6.0,
                octree=OctreeConfig(max_depth=9, base_depth=7),
                extraction=ExtractionConfig(resolution=128),
                optimizer=OptimizerConfig(error_threshold=0.005, density_blend=0.4),
            )
        raise ValueError(f"Unknown preset: {name} (expected draft, standard or high_quality)")

    @classmethod
    def from_env(cls):
        """Build a configuration from environment variables (see module docstring)."""
        preset = os.environ.get('RECON_PRESET', 'standard').lower()
        if preset not in ('draft', 'standard', 'high_quality'):
            print(f"[WARNING] Invalid RECON_PRESET: {preset}, using 'standard'")
            preset = 'standard'
        base = cls.preset(preset)

        backend = os.environ.get('RECON_BACKEND', base.backend).lower()
        if backend not in ('cpu', 'open3d'):
            print(f"[WARNING] Invalid RECON_BACKEND: {backend}, using 'cpu'")
            backend = 'cpu'

        return replace(
            base,
            min_points=get_env_int('RECON_MIN_POINTS', base.min_points),
            units_per_cm=get_env_float('RECON_UNITS_PER_CM', base.units_per_cm),
            point_weight=get_env_float('POINT_WEIGHT', base.point_weight),
            backend=backend,
            deadline_seconds=get_env_float('RECON_DEADLINE', base.deadline_seconds),
            fuse_capture_normals=get_env_bool('FUSE_CAPTURE_NORMALS', base.fuse_capture_normals),
            verbose=get_env_bool('VERBOSE', base.verbose),
            octree=replace(
                base.octree,
                max_depth=get_env_int('OCTREE_MAX_DEPTH', base.octree.max_depth),
                min_points=get_env_int('OCTREE_MIN_POINTS', base.octree.min_points),
                base_depth=get_env_int('OCTREE_BASE_DEPTH', base.octree.base_depth),
            ),
            solver=replace(
                base.solver,
                tolerance=get_env_float('SOLVER_TOLERANCE', base.solver.tolerance),
                max_iterations=get_env_int('SOLVER_MAX_ITERATIONS', base.solver.max_iterations),
            ),
            extraction=replace(
                base.extraction,
                resolution=get_env_int('GRID_RESOLUTION', base.extraction.resolution),
                min_component_fraction=get_env_float(
                    'MIN_COMPONENT_FRACTION', base.extraction.min_component_fraction),
            ),
            optimizer=replace(
                base.optimizer,
                error_threshold=get_env_float('ERROR_THRESHOLD', base.optimizer.error_threshold),
                density_blend=get_env_float('DENSITY_BLEND', base.optimizer.density_blend),
                decimation_passes=get_env_int('DECIMATION_PASSES', base.optimizer.decimation_passes),
            ),
            validation=replace(
                base.validation,
                clinical_gating=get_env_bool('CLINICAL_GATING', base.validation.clinical_gating),
            ),
            batch=replace(
                base.batch,
                batch_size=get_env_int('BATCH_SIZE', base.batch.batch_size),
                max_workers=get_env_int('BATCH_WORKERS', base.batch.max_workers),
                denoise=get_env_bool('DENOISE_BATCHES', base.batch.denoise),
                remove_outliers=get_env_bool('REMOVE_OUTLIERS', base.batch.remove_outliers),
                outlier_std_ratio=get_env_float('OUTLIER_STD_RATIO', base.batch.outlier_std_ratio),
            ),
        )
