"""
Conjugate Gradient Solver

Jacobi-preconditioned conjugate gradient for the symmetric positive-definite
Poisson system, with:
    - a tolerance that tightens with system size (min(tol, 1e-5 / n)),
    - an iteration budget that grows while the residual stalls,
    - a progress callback that can abort the solve,
    - cooperative cancellation through a CancellationToken (event + deadline).

The solver never hands back a partial solution: anything short of
convergence raises PoissonSolverFailed.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from scipy import sparse

from pipeline_log import log_step
from reconstruction_errors import PoissonSolverFailed


class CancellationToken:
    """Cancellation flag shared between a caller and a long-running job."""

    def __init__(self, deadline_seconds=None):
        self._event = threading.Event()
        self._deadline = None
        if deadline_seconds is not None:
            self._deadline = time.monotonic() + deadline_seconds

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    @property
    def expired(self):
        return self._deadline is not None and time.monotonic() >= self._deadline

    def reason(self):
        """Why work should stop, or None to keep going."""
        if self._event.is_set():
            return "cancelled"
        if self.expired:
            return "deadline exceeded"
        return None

    def wait(self, timeout):
        """Sleep up to `timeout` seconds, waking early on cancellation."""
        return self._event.wait(timeout)


@dataclass
class SolverResult:
    solution: np.ndarray
    iterations: int
    residual: float
    converged: bool
    tolerance: float
    history: list = field(default_factory=list)


class ConjugateGradientSolver:
    """
    Args:
        tolerance: Relative residual target ||r|| / ||b||
        max_iterations: Initial iteration budget
        iteration_extension: Budget added for each stalled iteration
        iteration_cap: Upper bound on the budget
        stall_ratio: Minimum relative residual improvement per iteration
        adaptive_tolerance: Tighten the tolerance to min(tolerance, 1e-5 / n)
        preconditioner: "jacobi" or "none"
        verbose: Print progress
    """

    def __init__(self, tolerance=1e-6, max_iterations=100, iteration_extension=50,
                 iteration_cap=500, stall_ratio=0.01, adaptive_tolerance=True,
                 preconditioner="jacobi", verbose=False):
        if preconditioner not in ("jacobi", "none", None):
            raise ValueError(f"Unknown preconditioner: {preconditioner}")
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.iteration_extension = iteration_extension
        self.iteration_cap = iteration_cap
        self.stall_ratio = stall_ratio
        self.adaptive_tolerance = adaptive_tolerance
        self.preconditioner = preconditioner or "none"
        self.verbose = verbose

    @classmethod
    def from_config(cls, config, verbose=False):
        return cls(
            tolerance=config.tolerance,
            max_iterations=config.max_iterations,
            iteration_extension=config.iteration_extension,
            iteration_cap=config.iteration_cap,
            stall_ratio=config.stall_ratio,
            adaptive_tolerance=config.adaptive_tolerance,
            preconditioner=config.preconditioner,
            verbose=verbose,
        )

    def effective_tolerance(self, size):
        if self.adaptive_tolerance and size > 0:
            return min(self.tolerance, 1e-5 / size)
        return self.tolerance

    def solve(self, matrix, rhs, callback=None, cancel_token=None):
        """
        Solve A x = b from a zero initial guess.

        Args:
            matrix: Square sparse (or dense) SPD matrix
            rhs: Right-hand side vector
            callback: Optional callable(iteration, residual); returning False aborts
            cancel_token: Optional CancellationToken checked every iteration

        Returns:
            SolverResult

        Raises:
            PoissonSolverFailed: non-convergence, breakdown, abort or cancellation
        """
        A = sparse.csr_matrix(matrix)
        b = np.asarray(rhs, dtype=np.float64).reshape(-1)
        n = len(b)
        if A.shape != (n, n):
            raise ValueError(f"Matrix shape {A.shape} does not match rhs length {n}")

        tol = self.effective_tolerance(n)
        x = np.zeros(n)
        if not np.all(np.isfinite(b)):
            raise PoissonSolverFailed("non-finite right-hand side")
        b_norm = float(np.linalg.norm(b))
        if b_norm == 0.0:
            return SolverResult(x, 0, 0.0, True, tol, [0.0])

        if self.preconditioner == "jacobi":
            diag = A.diagonal()
            if np.any(diag <= 0) or not np.all(np.isfinite(diag)):
                raise PoissonSolverFailed("matrix diagonal is not positive")
            inv_diag = 1.0 / diag
        else:
            inv_diag = np.ones(n)

        r = b.copy()
        z = inv_diag * r
        p = z.copy()
        rz = float(r @ z)
        residual = 1.0
        history = [residual]
        budget = self.max_iterations
        iteration = 0

        while residual >= tol:
            if iteration >= budget:
                raise PoissonSolverFailed("did not converge", iteration, residual)
            if cancel_token is not None:
                reason = cancel_token.reason()
                if reason:
                    raise PoissonSolverFailed(reason, iteration, residual)

            Ap = A @ p
            curvature = float(p @ Ap)
            if not np.isfinite(curvature) or curvature <= 0.0:
                raise PoissonSolverFailed("breakdown: non-positive curvature", iteration, residual)

            step = rz / curvature
            x += step * p
            r -= step * Ap
            iteration += 1

            new_residual = float(np.linalg.norm(r)) / b_norm
            if not np.isfinite(new_residual):
                raise PoissonSolverFailed("breakdown: non-finite residual", iteration, residual)
            if new_residual > (1.0 - self.stall_ratio) * residual:
                budget = max(budget, min(budget + self.iteration_extension, self.iteration_cap))
            residual = new_residual
            history.append(residual)

            if callback is not None and callback(iteration, residual) is False:
                raise PoissonSolverFailed("aborted by callback", iteration, residual)

            z = inv_diag * r
            rz_new = float(r @ z)
            p = z + (rz_new / rz) * p
            rz = rz_new

        if self.verbose:
            log_step(f"CG converged: {iteration} iterations, residual {residual:.3e} "
                     f"(tolerance {tol:.3e})", indent=4)
        return SolverResult(x, iteration, residual, True, tol, history)


class SolveJob:
    """
    A solve running on a dedicated worker thread.

    Exposes the future, the latest (iteration, residual) progress and
    `cancel()`, which stops the solve at its next iteration.
    """

    def __init__(self, solver, matrix, rhs, cancel_token=None, callback=None, executor=None):
        self.token = cancel_token or CancellationToken()
        self._callback = callback
        self._progress = (0, float('nan'))
        self._lock = threading.Lock()

        owns_executor = executor is None
        if owns_executor:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="poisson-solve")
        self.future = executor.submit(
            solver.solve, matrix, rhs, callback=self._on_progress, cancel_token=self.token
        )
        if owns_executor:
            self.future.add_done_callback(lambda _: executor.shutdown(wait=False))

    def _on_progress(self, iteration, residual):
        with self._lock:
            self._progress = (iteration, residual)
        if self._callback is not None:
            return self._callback(iteration, residual)
        return True

    @property
    def progress(self):
        with self._lock:
            return self._progress

    def cancel(self):
        self.token.cancel()

    def done(self):
        return self.future.done()

    def result(self, timeout=None):
        """Block for the SolverResult; re-raises PoissonSolverFailed from the worker."""
        return self.future.result(timeout)


def submit_solve(solver, matrix, rhs, cancel_token=None, callback=None, executor=None):
    """Start `solver.solve` on a worker thread and return its SolveJob."""
    return SolveJob(solver, matrix, rhs, cancel_token=cancel_token, callback=callback,
                    executor=executor)
