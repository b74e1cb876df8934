"""
Surface Reconstruction Engine

Turns an oriented point cloud into a watertight, quality-validated triangle
mesh:

    input checks -> batched octree ingestion -> screened Poisson system
    -> conjugate gradient solve -> marching cubes -> adaptive smoothing and
    quadric decimation -> capture-normal fusion -> postprocessing
    -> quality validation and clinical gating

One engine instance serves exactly one request. Everything it needs (config,
kernel executor, resource monitor, cancellation token, progress callback)
arrives through a ReconstructionContext, so independent requests can run in
parallel.

Usage:
    python surface_reconstruction.py capture.ply mesh.ply [options]

    # Millimetre coordinates, draft quality:
    python surface_reconstruction.py capture.ply mesh.ply --units mm --preset draft
"""

import argparse
import json
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
from scipy.spatial import cKDTree

from batch_scheduler import BatchScheduler, PsutilResourceMonitor
from cg_solver import CancellationToken, ConjugateGradientSolver, submit_solve
from kernel_executor import create_executor
from marching_cubes import SurfaceExtractor, orient_outward, remove_small_components
from mesh_optimizer import MeshOptimizer, feature_preservation
from mesh_types import Mesh, PointCloud
from pipeline_log import StageTimer, format_time, log_error, log_header, log_section, log_step
from point_cloud_analysis import validate_point_cloud_input
from poisson_system import PoissonSystemBuilder
from quality_validator import QualityValidator, ValidationStage
from reconstruction_config import ReconstructionConfig
from reconstruction_errors import (
    InsufficientPoints,
    QualityValidationFailed,
    ReconstructionCancelled,
    ReconstructionError,
)
from spatial_index import compute_octree_bounds

UNIT_SCALES = {'cm': 1.0, 'mm': 10.0, 'm': 0.01}


@dataclass
class ReconstructionContext:
    """Per-request collaborators of the engine."""
    config: ReconstructionConfig
    executor: object
    monitor: object
    cancel_token: CancellationToken
    progress: object = None
    on_critical: object = None

    @classmethod
    def create(cls, config=None, progress=None, on_critical=None, monitor=None, executor=None):
        """
        Build a context from a config.

        Raises:
            InitializationFailed: the configured backend is unavailable
        """
        config = config or ReconstructionConfig()
        return cls(
            config=config,
            executor=executor or create_executor(config.backend),
            monitor=monitor or PsutilResourceMonitor(config.batch.memory_pressure_threshold),
            cancel_token=CancellationToken(config.deadline_seconds),
            progress=progress,
            on_critical=on_critical,
        )

    def report(self, stage, fraction):
        if self.progress is not None:
            self.progress(stage, fraction)


@dataclass
class ReconstructionResult:
    mesh: Mesh
    report: object
    batch_jobs: list = field(default_factory=list)
    optimizer_jobs: list = field(default_factory=list)
    solver_result: object = None
    timings: dict = field(default_factory=dict)


def capture_normal_agreement(mesh, cloud):
    """Fraction of mesh vertex normals agreeing with the nearest captured normal."""
    if mesh.vertex_count == 0 or cloud.normals is None:
        return 1.0
    _, nearest = cKDTree(cloud.positions).query(mesh.vertices, k=1)
    dots = np.einsum('ij,ij->i', mesh.normals, cloud.normals[nearest])
    return float(np.mean(dots > 0))


class SurfaceReconstructionEngine:
    """
    Single-use reconstruction engine.

    Args:
        context: ReconstructionContext (built from `config` when omitted)
        config: ReconstructionConfig used when no context is given
    """

    def __init__(self, context=None, config=None):
        self.context = context or ReconstructionContext.create(config)
        self.config = self.context.config
        self.verbose = self.config.verbose
        self.timer = StageTimer()
        self._used = False
        self._octree = None
        self._system = None
        self._scheduler = None
        self._solve_job = None

    # ------------------------------------------------------------------
    # Caller hooks
    # ------------------------------------------------------------------

    def cancel(self):
        """Stop the request at the next checkpoint (or CG iteration)."""
        self.context.cancel_token.cancel()

    def pause(self):
        if self._scheduler is not None:
            self._scheduler.pause()

    def resume(self):
        if self._scheduler is not None:
            self._scheduler.resume()

    def report_resource_state(self, snapshot):
        if self._scheduler is not None:
            self._scheduler.report_resource_state(snapshot)

    def _checkpoint(self, stage, fraction):
        reason = self.context.cancel_token.reason()
        if reason:
            raise ReconstructionCancelled(f"Reconstruction stopped before {stage}: {reason}")
        self.context.report(stage, fraction)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def reconstruct(self, points):
        """
        Reconstruct a mesh from oriented points.

        Args:
            points: PointCloud or sequence of Point

        Returns:
            ReconstructionResult

        Raises:
            RuntimeError: the engine was already used
            ReconstructionError: typed failure of any stage
        """
        if self._used:
            raise RuntimeError("SurfaceReconstructionEngine is single-use; create a new instance")
        self._used = True

        cloud = points if isinstance(points, PointCloud) else PointCloud.from_points(points)
        total_start = time.time()
        try:
            return self._run(cloud)
        finally:
            # Drop the large per-request structures whatever happened
            if self._octree is not None:
                self._octree.clear()
            if self._system is not None:
                self._system.release()
            self._octree = None
            self._system = None
            self._solve_job = None
            self._scheduler = None
            if self.verbose:
                log_step(f"Request finished in {format_time(time.time() - total_start)}")

    def _run(self, cloud):
        cfg = self.config
        ctx = self.context
        verbose = self.verbose
        validator = QualityValidator(cfg.validation, cfg.units_per_cm, verbose=verbose)

        # Input validation
        self._checkpoint("preprocessing", 0.0)
        if verbose:
            log_section("INPUT VALIDATION")
        self.timer.start("preprocessing")
        validate_point_cloud_input(cloud, cfg.min_points, cfg.validation.min_point_density,
                                   cfg.units_per_cm, verbose=verbose)
        pre = validator.validate(ValidationStage.PREPROCESSING, Mesh.from_point_cloud(cloud),
                                 reference=cloud)
        noise_mm = pre.metrics.noise_level
        self.timer.stop("preprocessing")

        # Batched ingestion into the master octree
        self._checkpoint("ingestion", 0.1)
        if verbose:
            log_section("OCTREE INGESTION")
        self.timer.start("ingestion")
        bounds = compute_octree_bounds(cloud.positions, cfg.octree.bounds_scale)
        max_noise = cfg.validation.max_noise_mm / 10.0 * cfg.units_per_cm
        self._scheduler = BatchScheduler(
            cfg.batch, cfg.octree, monitor=ctx.monitor, on_critical=ctx.on_critical,
            cancel_token=ctx.cancel_token, max_noise=max_noise, verbose=verbose,
        )
        self._octree, batch_jobs = self._scheduler.run(cloud, bounds)
        self.timer.stop("ingestion")
        if self._octree.point_count < cfg.min_points:
            raise InsufficientPoints(self._octree.point_count, cfg.min_points)

        # Linear system
        self._checkpoint("system", 0.3)
        if verbose:
            log_section("POISSON SYSTEM")
        self.timer.start("system")
        self._system = PoissonSystemBuilder(cfg.point_weight, verbose=verbose).build(self._octree)
        self.timer.stop("system")

        # Solve on a dedicated worker
        self._checkpoint("solve", 0.4)
        if verbose:
            log_section("CONJUGATE GRADIENT SOLVE")
        self.timer.start("solve")
        solver = ConjugateGradientSolver.from_config(cfg.solver, verbose=verbose)
        self._solve_job = submit_solve(solver, self._system.matrix, self._system.rhs,
                                       cancel_token=ctx.cancel_token)
        solver_result = self._solve_job.result()
        self._octree.assign_values(self._system.node_ids, solver_result.solution)
        self.timer.stop("solve")

        # Isosurface
        self._checkpoint("extraction", 0.6)
        if verbose:
            log_section("SURFACE EXTRACTION")
        self.timer.start("extraction")
        extractor = SurfaceExtractor(cfg.extraction.resolution, cfg.extraction.iso_value,
                                     cfg.extraction.weld_epsilon, executor=ctx.executor,
                                     verbose=verbose)
        raw = extractor.extract(self._octree)
        ctx.executor.synchronize()
        validator.validate(ValidationStage.RECONSTRUCTION, raw, reference=cloud)
        self.timer.stop("extraction")

        # The octree and system are not needed past this point
        self._octree.clear()
        self._system.release()

        # Smoothing and decimation
        self._checkpoint("optimization", 0.7)
        self.timer.start("optimization")
        optimizer = MeshOptimizer(cfg.optimizer, executor=ctx.executor, verbose=verbose)
        optimized = optimizer.optimize(raw, noise_mm)
        mesh = optimized.mesh
        validator.validate(ValidationStage.OPTIMIZATION, mesh, reference=cloud,
                           feature_preservation=optimized.feature_preservation)
        self.timer.stop("optimization")

        # Fusion with the captured normal field
        fused = False
        if cfg.fuse_capture_normals:
            self._checkpoint("fusion", 0.85)
            if verbose:
                log_section("CAPTURE NORMAL FUSION")
            mesh, agreement, fused = self._fuse_capture_normals(mesh, cloud)
            validator.validate(ValidationStage.FUSION, mesh, reference=cloud,
                               feature_preservation=optimized.feature_preservation,
                               capture_agreement=agreement)

        # Postprocessing
        self._checkpoint("postprocessing", 0.9)
        if verbose:
            log_section("POSTPROCESSING")
        mesh = self._postprocess(mesh, orient=not fused)
        preserved = feature_preservation(optimized.feature_positions, mesh.vertices,
                                         optimized.feature_tolerance)
        validator.validate(ValidationStage.POSTPROCESSING, mesh, reference=cloud,
                           feature_preservation=preserved)

        report = validator.finalize()
        ctx.report("complete", 1.0)

        if verbose:
            self._print_summary(mesh, report, solver_result)

        return ReconstructionResult(
            mesh=mesh,
            report=report,
            batch_jobs=batch_jobs,
            optimizer_jobs=optimized.batch_jobs,
            solver_result=solver_result,
            timings=dict(self.timer.timings),
        )

    def _fuse_capture_normals(self, mesh, cloud):
        """
        Orient the mesh to agree with the captured normals.

        Returns:
            (mesh, agreement after orientation, whether the capture decided)
        """
        agreement = capture_normal_agreement(mesh, cloud)
        if agreement < 0.5:
            if self.verbose:
                log_step(f"Only {agreement:.1%} of normals agree with the capture, flipping...",
                         indent=4)
            mesh = mesh.flipped()
            agreement = 1.0 - agreement
        if self.verbose:
            log_step(f"Capture normal agreement: {agreement:.1%}", indent=4)
        return mesh, agreement, True

    def _postprocess(self, mesh, orient=True):
        triangles = mesh.triangles
        triangles, dropped = remove_small_components(
            mesh.vertices, triangles, self.config.extraction.min_component_fraction)
        if dropped and self.verbose:
            log_step(f"Removed {dropped} small disconnected component(s)", indent=4)
        if orient:
            triangles = orient_outward(mesh.vertices, triangles)
        normals = self.context.executor.recalculate_normals(mesh.vertices, triangles)
        self.context.executor.synchronize()
        result = Mesh.from_triangles(mesh.vertices, triangles, normals).compacted()
        if self.verbose:
            log_step(f"Final mesh: {result.vertex_count:,} vertices, "
                     f"{result.triangle_count:,} triangles", indent=4)
        return result

    def _print_summary(self, mesh, report, solver_result):
        metrics = report.metrics
        print("  " + "-" * 50)
        print("  RECONSTRUCTION SUMMARY")
        print("  " + "-" * 50)
        print(f"    Vertices:       {mesh.vertex_count:,}")
        print(f"    Triangles:      {mesh.triangle_count:,}")
        print(f"    Surface area:   {metrics.surface_area:.4f}")
        print(f"    Volume:         {metrics.volume:.4f}")
        print(f"    Manifoldness:   {metrics.manifoldness:.4f}")
        print(f"    Watertightness: {metrics.watertightness:.4f}")
        print(f"    Noise:          {metrics.noise_level:.4f} mm")
        print(f"    Completeness:   {metrics.completeness:.1%}")
        print(f"    CG iterations:  {solver_result.iterations}")
        print(f"    Quality score:  {report.score:.3f}")
        for stage, seconds in self.timer.timings.items():
            print(f"    {stage + ':':16s}{format_time(seconds)}")
        print()


def reconstruct_surface(points, config=None, **context_kwargs):
    """Run a single reconstruction request with a fresh engine."""
    context = ReconstructionContext.create(config, **context_kwargs)
    return SurfaceReconstructionEngine(context).reconstruct(points)


def write_report(report, output_path):
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(report.to_dict(), f, indent=2)


def reconstruct_file(input_path, output_path, config=None, report_path=None):
    """
    Full pipeline: PLY point cloud to PLY mesh plus JSON quality report.

    Returns:
        Output mesh path if successful, None otherwise
    """
    # Imported here so the engine itself does not depend on plyfile
    from point_cloud_io import load_point_cloud, save_mesh

    config = config or ReconstructionConfig()
    verbose = config.verbose
    report_path = report_path or str(Path(output_path).with_suffix('.json'))
    total_start = time.time()

    cloud = load_point_cloud(input_path, verbose)
    try:
        result = reconstruct_surface(cloud, config)
    except QualityValidationFailed as e:
        log_error(e.message)
        if e.report is not None:
            write_report(e.report, report_path)
            log_step(f"Quality report written to {report_path}")
        return None
    except ReconstructionError as e:
        log_error(e.message)
        if e.recoverable:
            print("  [HINT] This failure is recoverable: adjust the capture or settings and retry")
        return None

    save_mesh(result.mesh, output_path, verbose=verbose)
    write_report(result.report, report_path)
    if verbose:
        log_step(f"Quality report written to {report_path}")
        log_step(f"Total time: {format_time(time.time() - total_start)}")
    return output_path


def build_config(args):
    """Map parsed CLI arguments onto a ReconstructionConfig."""
    config = ReconstructionConfig.preset(args.preset)
    octree = config.octree
    if args.depth is not None:
        octree = replace(octree, max_depth=args.depth)
    if args.base_depth is not None:
        octree = replace(octree, base_depth=args.base_depth)
    extraction = config.extraction
    if args.resolution is not None:
        extraction = replace(extraction, resolution=args.resolution)
    if args.min_component_fraction is not None:
        extraction = replace(extraction, min_component_fraction=args.min_component_fraction)
    optimizer = config.optimizer
    if args.error_threshold is not None:
        optimizer = replace(optimizer, error_threshold=args.error_threshold)
    if args.density_blend is not None:
        optimizer = replace(optimizer, density_blend=args.density_blend)

    return replace(
        config,
        units_per_cm=args.units_per_cm if args.units_per_cm else UNIT_SCALES[args.units],
        point_weight=args.point_weight if args.point_weight is not None else config.point_weight,
        backend=args.backend,
        deadline_seconds=args.deadline,
        fuse_capture_normals=not args.no_fusion,
        verbose=not args.quiet,
        octree=octree,
        extraction=extraction,
        optimizer=optimizer,
        validation=replace(config.validation, clinical_gating=not args.no_clinical_gating),
        batch=replace(config.batch, batch_size=args.batch_size, max_workers=args.workers,
                      denoise=not args.no_denoise,
                      remove_outliers=not args.no_outlier_removal),
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Reconstruct a watertight mesh from an oriented point cloud",
        epilog="""
Examples:
  # Standard reconstruction (centimetre coordinates)
  python surface_reconstruction.py capture.ply mesh.ply

  # Millimetre coordinates, high quality
  python surface_reconstruction.py capture.ply mesh.ply --units mm --preset high_quality

  # Exploratory run without clinical gating
  python surface_reconstruction.py capture.ply mesh.ply --no-clinical-gating
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input", help="Input point cloud PLY file (with normals)")
    parser.add_argument("output", help="Output mesh PLY file")

    basic = parser.add_argument_group("Basic Options")
    basic.add_argument(
        "--preset", "-p",
        choices=['draft', 'standard', 'high_quality'],
        default='standard',
        help="Quality preset (default: standard)"
    )
    basic.add_argument(
        "--units", "-u",
        choices=sorted(UNIT_SCALES),
        default='cm',
        help="Coordinate units of the input (default: cm)"
    )
    basic.add_argument(
        "--units-per-cm",
        type=float,
        default=None,
        help="Explicit coordinate units per centimetre (overrides --units)"
    )
    basic.add_argument(
        "--report", "-r",
        default=None,
        help="Quality report JSON path (default: output path with .json suffix)"
    )
    basic.add_argument(
        "--backend", "-b",
        choices=['cpu', 'open3d'],
        default='cpu',
        help="Kernel executor backend (default: cpu)"
    )
    basic.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Soft deadline in seconds; the request is cancelled when exceeded"
    )

    recon = parser.add_argument_group("Reconstruction Options")
    recon.add_argument(
        "--depth", "-d",
        type=int,
        default=None,
        help="Maximum octree depth (default: preset)"
    )
    recon.add_argument(
        "--base-depth",
        type=int,
        default=None,
        help="Depth every occupied octree node reaches (default: preset)"
    )
    recon.add_argument(
        "--resolution",
        type=int,
        default=None,
        help="Marching cubes samples per axis (default: preset)"
    )
    recon.add_argument(
        "--point-weight",
        type=float,
        default=None,
        help="Screening weight of samples (default: preset)"
    )

    opt = parser.add_argument_group("Optimization Options")
    opt.add_argument(
        "--error-threshold",
        type=float,
        default=None,
        help="Decimation error threshold relative to squared edge length (default: preset)"
    )
    opt.add_argument(
        "--density-blend",
        type=float,
        default=None,
        help="Density vs. feature blend of processing weights, 0-1 (default: preset)"
    )
    opt.add_argument(
        "--no-fusion",
        action="store_true",
        help="Skip orienting the mesh with the captured normals"
    )
    opt.add_argument(
        "--min-component-fraction",
        type=float,
        default=None,
        help="Drop disconnected pieces smaller than this share of the largest (default: 0.05)"
    )

    batch = parser.add_argument_group("Batching Options")
    batch.add_argument(
        "--batch-size",
        type=int,
        default=5000,
        help="Points per ingestion batch (default: 5000)"
    )
    batch.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Concurrent ingestion batches (default: 1)"
    )
    batch.add_argument(
        "--no-denoise",
        action="store_true",
        help="Disable adaptive noise reduction per batch"
    )
    batch.add_argument(
        "--no-outlier-removal",
        action="store_true",
        help="Keep isolated samples and samples with inconsistent normals"
    )

    out = parser.add_argument_group("Output Options")
    out.add_argument(
        "--no-clinical-gating",
        action="store_true",
        help="Report clinical thresholds without enforcing them"
    )
    out.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress output messages"
    )

    args = parser.parse_args(argv)
    config = build_config(args)

    if config.verbose:
        log_header("SURFACE RECONSTRUCTION")
        print(f"  Input:  {args.input}")
        print(f"  Output: {args.output}")

    result = reconstruct_file(args.input, args.output, config, args.report)
    return 0 if result else 1


if __name__ == "__main__":
    sys.exit(main())
