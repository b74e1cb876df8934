"""
Reconstruction Error Kinds

Typed failures raised by the surface reconstruction engine. Callers map these
to user-facing guidance (request more capture, retry with relaxed solver
settings, flag for review, ...). Each class carries a `recoverable` flag:
recoverable errors can be fixed by retrying with new input or settings,
fatal ones indicate a broken environment or corrupted data.
"""


class ReconstructionError(Exception):
    """Base class for all reconstruction failures."""
    recoverable = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InitializationFailed(ReconstructionError):
    """The requested compute backend is not available."""

    def __init__(self, backend, reason=None):
        msg = f"Compute backend '{backend}' unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.backend = backend
        self.reason = reason


class InsufficientPoints(ReconstructionError):
    recoverable = True

    def __init__(self, count, required):
        super().__init__(f"Insufficient points: {count:,} (required: {required:,})")
        self.count = count
        self.required = required


class PointDensityInsufficient(ReconstructionError):
    recoverable = True

    def __init__(self, density, required):
        super().__init__(
            f"Point density too low: {density:.1f} pts/cm^3 (required: {required:.1f})"
        )
        self.density = density
        self.required = required


class MissingNormals(ReconstructionError):
    """Input points carry no usable oriented normals."""
    recoverable = True

    def __init__(self, message=None, invalid_count=None):
        super().__init__(message or "Point cloud has no oriented normals")
        self.invalid_count = invalid_count


class PointOutsideBounds(ReconstructionError):
    """A point was inserted outside the fixed root bounding box of an octree."""

    def __init__(self, point, bounds):
        super().__init__(
            f"Point {tuple(round(float(v), 6) for v in point)} lies outside "
            f"octree bounds {bounds}"
        )
        self.point = point
        self.bounds = bounds


class OctreeMergeError(ReconstructionError):
    pass


class PoissonSolverFailed(ReconstructionError):
    recoverable = True

    def __init__(self, reason, iterations=0, residual=float("nan")):
        super().__init__(
            f"Poisson solve failed ({reason}) after {iterations} iterations, "
            f"residual={residual:.3e}"
        )
        self.reason = reason
        self.iterations = iterations
        self.residual = residual


class ReconstructionCancelled(ReconstructionError):
    recoverable = True


class SurfaceReconstructionFailed(ReconstructionError):
    pass


class QualityValidationFailed(ReconstructionError):
    """Quality or clinical thresholds were not met. The caller decides what to do."""
    recoverable = True

    def __init__(self, score, report=None, failures=None):
        failures = list(failures or [])
        msg = f"Quality validation failed (score={score:.3f})"
        if failures:
            msg += ": " + "; ".join(failures)
        super().__init__(msg)
        self.score = score
        self.report = report
        self.failures = failures


class ValidationError(ReconstructionError):
    """Structural mesh corruption detected at a validation stage."""

    def __init__(self, stage, code, message):
        super().__init__(f"[{getattr(stage, 'value', stage)}:{code}] {message}")
        self.stage = stage
        self.code = code
        self.detail = message
