"""
Quality Validator

Per-stage mesh validation for the reconstruction pipeline.

Stages must be validated in pipeline order:

    preprocessing -> reconstruction -> optimization -> [fusion] -> postprocessing

Every stage runs the structural checks, whose failures are fatal
ValidationErrors (corrupted buffers), then computes the quality metrics once
and records stage-specific ValidationWarnings with a remediation hint.
`finalize()` applies the acceptance rule and clinical gating to the final
metrics and returns the QualityReport, or raises QualityValidationFailed.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum

import numpy as np
from scipy.spatial import cKDTree

from mesh_types import BoundingBox, triangle_normals, unique_edges
from pipeline_log import log_step, log_warning
from point_cloud_analysis import compute_point_density, estimate_noise_level, normal_consistency
from reconstruction_errors import QualityValidationFailed, ValidationError

# Structural error codes
EMPTY_VERTICES = 1001
INDEX_COUNT = 1002
INDEX_OUT_OF_BOUNDS = 1003
NORMAL_COUNT = 1004
NON_FINITE = 1005


class ValidationStage(Enum):
    PREPROCESSING = "preprocessing"
    RECONSTRUCTION = "reconstruction"
    OPTIMIZATION = "optimization"
    FUSION = "fusion"
    POSTPROCESSING = "postprocessing"

    @property
    def order(self):
        return list(ValidationStage).index(self)


@dataclass
class ValidationWarning:
    stage: ValidationStage
    code: int
    message: str
    recommendation: str

    def to_dict(self):
        return {"stage": self.stage.value, "code": self.code, "message": self.message,
                "recommendation": self.recommendation}


@dataclass
class QualityMetrics:
    vertex_count: int = 0
    face_count: int = 0
    bounding_box: BoundingBox = None
    surface_area: float = 0.0
    volume: float = 0.0
    manifoldness: float = 1.0
    watertightness: float = 0.0
    noise_level: float = 0.0
    feature_preservation: float = 1.0
    point_density: float = 0.0
    completeness: float = 1.0

    def to_dict(self):
        result = asdict(self)
        result["bounding_box"] = self.bounding_box.to_dict() if self.bounding_box else None
        return result


@dataclass
class ValidationResult:
    stage: ValidationStage
    metrics: QualityMetrics
    warnings: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def passed(self):
        return not self.errors

    def to_dict(self):
        return {
            "stage": self.stage.value,
            "passed": self.passed,
            "metrics": self.metrics.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": list(self.errors),
        }


@dataclass
class QualityReport:
    metrics: QualityMetrics
    stage_results: dict = field(default_factory=dict)
    warnings: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    clinical_failures: list = field(default_factory=list)
    score: float = 0.0
    accepted: bool = False

    def to_dict(self):
        return {
            "accepted": self.accepted,
            "score": self.score,
            "metrics": self.metrics.to_dict(),
            "stages": {name: r.to_dict() for name, r in self.stage_results.items()},
            "warnings": [w.to_dict() for w in self.warnings],
            "recommendations": list(self.recommendations),
            "errors": list(self.errors),
            "clinical_failures": list(self.clinical_failures),
        }


def surface_area(vertices, triangles):
    if len(triangles) == 0:
        return 0.0
    v0 = vertices[triangles[:, 0]]
    cross = np.cross(vertices[triangles[:, 1]] - v0, vertices[triangles[:, 2]] - v0)
    return float(0.5 * np.linalg.norm(cross, axis=1).sum())


def enclosed_volume(vertices, triangles):
    if len(triangles) == 0:
        return 0.0
    v0 = vertices[triangles[:, 0]]
    v1 = vertices[triangles[:, 1]]
    v2 = vertices[triangles[:, 2]]
    return float(abs(np.einsum('ij,ij->i', v0, np.cross(v1, v2)).sum()) / 6.0)


def edge_topology(triangles):
    """(manifoldness, watertightness, edges, counts) of a triangle list."""
    edges, counts = unique_edges(triangles)
    if len(edges) == 0:
        return 1.0, 0.0, edges, counts
    total = float(len(edges))
    manifoldness = 1.0 - np.count_nonzero(counts > 2) / total
    watertightness = 1.0 - np.count_nonzero(counts == 1) / total
    return manifoldness, watertightness, edges, counts


def aspect_ratios(vertices, triangles):
    """Longest edge over the triangle's shortest altitude scale (1.15 for equilateral)."""
    if len(triangles) == 0:
        return np.zeros(0)
    a = vertices[triangles[:, 0]]
    b = vertices[triangles[:, 1]]
    c = vertices[triangles[:, 2]]
    lengths = np.stack([np.linalg.norm(b - a, axis=1), np.linalg.norm(c - b, axis=1),
                        np.linalg.norm(a - c, axis=1)], axis=1)
    area2 = np.linalg.norm(np.cross(b - a, c - a), axis=1)
    longest = lengths.max(axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = longest ** 2 / area2
    return np.where(area2 > 0, ratio, np.inf)


def completeness(reference_points, vertices, triangles):
    """Share of reference points within two median edge lengths of a mesh vertex."""
    if len(reference_points) == 0:
        return 1.0
    if len(vertices) == 0:
        return 0.0
    edges, _ = unique_edges(triangles)
    if len(edges) == 0:
        return 1.0
    tolerance = 2.0 * float(np.median(np.linalg.norm(
        vertices[edges[:, 0]] - vertices[edges[:, 1]], axis=1)))
    distances, _ = cKDTree(vertices).query(reference_points, k=1)
    return float(np.mean(distances <= tolerance))


class QualityValidator:
    """
    Args:
        config: ValidationConfig
        units_per_cm: Coordinate units per centimetre
        verbose: Print progress
    """

    def __init__(self, config, units_per_cm=1.0, verbose=True):
        self.config = config
        self.units_per_cm = units_per_cm
        self.verbose = verbose
        self.reset()

    def reset(self):
        self._last_stage = None
        self._results = {}
        self._reference = None
        self._reference_stats = None

    @property
    def results(self):
        return dict(self._results)

    def _check_order(self, stage):
        last = -1 if self._last_stage is None else self._last_stage.order
        allowed = {last + 1}
        if last + 1 == ValidationStage.FUSION.order:
            allowed.add(ValidationStage.POSTPROCESSING.order)
        if stage.order not in allowed:
            expected = [s.value for s in ValidationStage if s.order in allowed]
            previous = self._last_stage.value if self._last_stage else "start"
            raise ValueError(
                f"Stage '{stage.value}' cannot follow '{previous}' "
                f"(expected {' or '.join(expected)})"
            )

    def check_structure(self, stage, mesh):
        """
        Raises:
            ValidationError: empty vertex set, bad index count, out-of-range
                indices, vertex/normal count mismatch or non-finite values
        """
        n = len(mesh.vertices)
        if n == 0:
            raise ValidationError(stage, EMPTY_VERTICES, "Mesh has no vertices")
        if len(mesh.indices) % 3 != 0:
            raise ValidationError(stage, INDEX_COUNT,
                                  f"Index count {len(mesh.indices)} is not a multiple of 3")
        if len(mesh.indices) and (mesh.indices.min() < 0 or mesh.indices.max() >= n):
            raise ValidationError(
                stage, INDEX_OUT_OF_BOUNDS,
                f"Triangle indices span [{mesh.indices.min()}, {mesh.indices.max()}] "
                f"but the mesh has {n} vertices",
            )
        if len(mesh.normals) != n:
            raise ValidationError(stage, NORMAL_COUNT,
                                  f"{n} vertices but {len(mesh.normals)} normals")
        if not (np.all(np.isfinite(mesh.vertices)) and np.all(np.isfinite(mesh.normals))):
            raise ValidationError(stage, NON_FINITE, "Mesh has non-finite coordinates or normals")

    def _reference_metrics(self, reference):
        # The capture does not change between stages
        if self._reference is not reference:
            self._reference = reference
            self._reference_stats = (
                compute_point_density(reference.positions, self.units_per_cm),
                estimate_noise_level(reference.positions, reference.normals,
                                     units_per_cm=self.units_per_cm),
                normal_consistency(reference.positions, reference.normals),
            )
        return self._reference_stats

    def compute_metrics(self, mesh, reference=None, feature_preservation=1.0):
        triangles = mesh.triangles
        manifoldness, watertightness, _, _ = edge_topology(triangles)
        metrics = QualityMetrics(
            vertex_count=mesh.vertex_count,
            face_count=mesh.triangle_count,
            bounding_box=BoundingBox.from_points(mesh.vertices),
            surface_area=surface_area(mesh.vertices, triangles),
            volume=enclosed_volume(mesh.vertices, triangles),
            manifoldness=manifoldness,
            watertightness=watertightness,
            feature_preservation=float(feature_preservation),
        )
        if reference is not None:
            density, noise, _ = self._reference_metrics(reference)
            metrics.point_density = density
            metrics.noise_level = noise
            if len(triangles):
                metrics.completeness = completeness(reference.positions, mesh.vertices, triangles)
        return metrics

    def validate(self, stage, mesh, reference=None, feature_preservation=1.0,
                 capture_agreement=None):
        """
        Validate one pipeline stage.

        Args:
            stage: ValidationStage, in pipeline order
            mesh: Mesh at this stage (triangle-free at preprocessing)
            reference: Input PointCloud for density, noise and completeness
            feature_preservation: Share of feature vertices preserved so far
            capture_agreement: Fraction of mesh normals agreeing with captured
                normals (fusion stage)

        Returns:
            ValidationResult

        Raises:
            ValueError: stage out of order
            ValidationError: structural corruption
        """
        self._check_order(stage)
        self.check_structure(stage, mesh)

        metrics = self.compute_metrics(mesh, reference, feature_preservation)
        result = ValidationResult(stage, metrics)
        checks = {
            ValidationStage.PREPROCESSING: self._check_preprocessing,
            ValidationStage.RECONSTRUCTION: self._check_reconstruction,
            ValidationStage.OPTIMIZATION: self._check_optimization,
            ValidationStage.FUSION: self._check_fusion,
            ValidationStage.POSTPROCESSING: self._check_postprocessing,
        }
        checks[stage](result, mesh, reference, capture_agreement)

        self._last_stage = stage
        self._results[stage.value] = result
        if self.verbose:
            log_step(f"Validated {stage.value}: {metrics.vertex_count:,} vertices, "
                     f"{metrics.face_count:,} faces, {len(result.warnings)} warnings", indent=4)
            for warning in result.warnings:
                log_warning(f"{warning.message} -> {warning.recommendation}", indent=6)
        return result

    # ------------------------------------------------------------------
    # Stage checks
    # ------------------------------------------------------------------

    def _warn(self, result, code, message, recommendation):
        result.warnings.append(ValidationWarning(result.stage, code, message, recommendation))

    def _check_preprocessing(self, result, mesh, reference, _):
        cfg = self.config
        if reference is not None:
            density, noise, consistency = self._reference_metrics(reference)
        else:
            density = compute_point_density(mesh.vertices, self.units_per_cm)
            noise = estimate_noise_level(mesh.vertices, mesh.normals,
                                         units_per_cm=self.units_per_cm)
            consistency = normal_consistency(mesh.vertices, mesh.normals)
        result.metrics.point_density = density
        result.metrics.noise_level = noise
        if density < cfg.min_point_density:
            self._warn(result, 2001, f"Low point density: {density:.1f} pts/cm^3",
                       "Capture more views or move the sensor closer to the surface")
        if noise > cfg.max_noise_mm:
            self._warn(result, 2002, f"High capture noise: {noise:.3f} mm",
                       "Hold the sensor steadier or improve lighting")
        if consistency < cfg.min_normal_consistency:
            self._warn(result, 2003, f"Inconsistent normals: {consistency:.1%} of neighbours agree",
                       "Re-estimate normals with a consistent orientation")

    def _check_reconstruction(self, result, mesh, reference, _):
        metrics = result.metrics
        triangles = mesh.triangles
        if metrics.watertightness < self.config.min_watertightness:
            self._warn(result, 3001, f"Surface gaps: watertightness {metrics.watertightness:.3f}",
                       "Fill capture gaps or raise the grid resolution")
        if metrics.manifoldness < 1.0:
            self._warn(result, 3002, f"Non-manifold edges: manifoldness {metrics.manifoldness:.3f}",
                       "Increase the point weight or reduce noise before reconstruction")
        areas = np.linalg.norm(triangle_normals(mesh.vertices, triangles, normalize=False), axis=1)
        degenerate = int(np.count_nonzero(areas <= 1e-12 * max(areas.max(initial=0.0), 1e-300)))
        if degenerate:
            self._warn(result, 3003, f"{degenerate} degenerate triangles",
                       "Decimation will remove them; check the weld tolerance if this persists")

    def _check_optimization(self, result, mesh, reference, _):
        cfg = self.config
        triangles = mesh.triangles
        if len(triangles) == 0:
            return
        ratios = aspect_ratios(mesh.vertices, triangles)
        poor = float(np.mean(ratios > cfg.max_aspect_ratio))
        if poor > cfg.max_poor_aspect_fraction:
            self._warn(result, 4001, f"Poor aspect ratio on {poor:.1%} of triangles",
                       "Lower the decimation error threshold")

        # Adjacent faces with opposing normals indicate folds / self-intersections
        _, _, edges, counts = edge_topology(triangles)
        face_normals = triangle_normals(mesh.vertices, triangles)
        folds = _count_folded_edges(triangles, face_normals)
        if folds:
            self._warn(result, 4002, f"{folds} folded edges (possible self-intersections)",
                       "Reduce smoothing or decimation strength")

        lengths = np.linalg.norm(mesh.vertices[edges[:, 0]] - mesh.vertices[edges[:, 1]], axis=1)
        if len(lengths) and lengths.max() > 10.0 * np.median(lengths):
            self._warn(result, 4003, f"Excessive edge length: {lengths.max():.4f} "
                       f"(median {np.median(lengths):.4f})",
                       "Lower the decimation error threshold in sparse regions")

    def _check_fusion(self, result, mesh, reference, capture_agreement):
        if capture_agreement is not None and capture_agreement < self.config.min_normal_consistency:
            self._warn(result, 5001, f"Low agreement with captured normals: {capture_agreement:.1%}",
                       "Check the capture's normal orientation")

    def _check_postprocessing(self, result, mesh, reference, _):
        cfg = self.config
        metrics = result.metrics
        margins = [
            (metrics.point_density < 1.1 * cfg.min_point_density, 6001,
             f"Point density {metrics.point_density:.1f} pts/cm^3 near clinical minimum"),
            (metrics.noise_level > 0.9 * cfg.max_noise_mm, 6002,
             f"Noise {metrics.noise_level:.3f} mm near clinical maximum"),
            (metrics.completeness < min(1.0, cfg.min_completeness + 0.01), 6003,
             f"Completeness {metrics.completeness:.1%} near clinical minimum"),
            (metrics.feature_preservation < min(1.0, cfg.min_feature_preservation + 0.02), 6004,
             f"Feature preservation {metrics.feature_preservation:.1%} near clinical minimum"),
        ]
        for failed, code, message in margins:
            if failed:
                self._warn(result, code, message, "Review before clinical use")

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def clinical_failures(self, metrics):
        cfg = self.config
        failures = []
        if metrics.point_density < cfg.min_point_density:
            failures.append(f"point density {metrics.point_density:.1f} < "
                            f"{cfg.min_point_density:.1f} pts/cm^3")
        if metrics.noise_level > cfg.max_noise_mm:
            failures.append(f"noise {metrics.noise_level:.3f} > {cfg.max_noise_mm:.3f} mm")
        if metrics.completeness < cfg.min_completeness:
            failures.append(f"completeness {metrics.completeness:.1%} < {cfg.min_completeness:.1%}")
        if metrics.feature_preservation < cfg.min_feature_preservation:
            failures.append(f"feature preservation {metrics.feature_preservation:.1%} < "
                            f"{cfg.min_feature_preservation:.1%}")
        return failures

    def quality_score(self, metrics):
        """Mean of the four clinical criteria ratios, each clipped to [0, 1]."""
        cfg = self.config
        noise_ratio = 1.0 if metrics.noise_level <= 0 else cfg.max_noise_mm / metrics.noise_level
        ratios = [
            metrics.point_density / cfg.min_point_density,
            noise_ratio,
            metrics.completeness / cfg.min_completeness,
            metrics.feature_preservation / cfg.min_feature_preservation,
        ]
        return float(np.mean(np.clip(ratios, 0.0, 1.0)))

    def finalize(self):
        """
        Build the QualityReport from the last validated stage.

        Raises:
            ValueError: postprocessing has not been validated yet
            QualityValidationFailed: acceptance or clinical thresholds unmet
        """
        if self._last_stage is not ValidationStage.POSTPROCESSING:
            raise ValueError("Validate the postprocessing stage before finalizing")
        cfg = self.config
        metrics = self._results[ValidationStage.POSTPROCESSING.value].metrics
        warnings = [w for r in self._results.values() for w in r.warnings]
        errors = [e for r in self._results.values() for e in r.errors]

        report = QualityReport(
            metrics=metrics,
            stage_results=dict(self._results),
            warnings=warnings,
            recommendations=list(dict.fromkeys(w.recommendation for w in warnings)),
            errors=errors,
            score=self.quality_score(metrics),
        )

        failures = []
        if metrics.manifoldness <= cfg.min_manifoldness:
            failures.append(f"manifoldness {metrics.manifoldness:.3f} <= {cfg.min_manifoldness}")
        if metrics.watertightness <= cfg.min_watertightness:
            failures.append(f"watertightness {metrics.watertightness:.3f} <= "
                            f"{cfg.min_watertightness}")
        failures.extend(errors)
        report.accepted = not failures

        if cfg.clinical_gating:
            report.clinical_failures = self.clinical_failures(metrics)
            failures.extend(report.clinical_failures)

        if self.verbose:
            log_step(f"Quality score: {report.score:.3f}, accepted: {report.accepted}", indent=4)
        if failures:
            report.accepted = False
            raise QualityValidationFailed(report.score, report, failures)
        return report


def _count_folded_edges(triangles, face_normals):
    """Interior edges whose two faces point in opposite directions."""
    edges = np.concatenate([triangles[:, [0, 1]], triangles[:, [1, 2]], triangles[:, [2, 0]]])
    faces = np.tile(np.arange(len(triangles)), 3)
    keys = np.sort(edges, axis=1)
    order = np.lexsort((keys[:, 1], keys[:, 0]))
    keys = keys[order]
    faces = faces[order]
    same = np.all(keys[1:] == keys[:-1], axis=1)
    first = faces[:-1][same]
    second = faces[1:][same]
    dots = np.einsum('ij,ij->i', face_normals[first], face_normals[second])
    return int(np.count_nonzero(dots < -0.5))
