import threading

import numpy as np
import pytest
from scipy import sparse

from cg_solver import CancellationToken, ConjugateGradientSolver, submit_solve
from reconstruction_config import SolverConfig
from reconstruction_errors import PoissonSolverFailed


def laplacian_1d(n, shift=0.1):
    main = np.full(n, 2.0 + shift)
    off = np.full(n - 1, -1.0)
    return sparse.diags([off, main, off], [-1, 0, 1], format='csr')


def test_converges_on_spd_system():
    A = laplacian_1d(50)
    x_true = np.sin(np.linspace(0, 3, 50))
    b = A @ x_true
    solver = ConjugateGradientSolver(tolerance=1e-6, max_iterations=200)
    result = solver.solve(A, b)
    assert result.converged
    assert result.residual < result.tolerance
    assert result.iterations <= 200
    assert np.allclose(result.solution, x_true, atol=1e-4)
    assert result.history[0] == 1.0


def test_effective_tolerance_tightens_with_size():
    solver = ConjugateGradientSolver(tolerance=1e-6)
    assert solver.effective_tolerance(5) == 1e-6
    assert solver.effective_tolerance(100) == pytest.approx(1e-7)
    fixed = ConjugateGradientSolver(tolerance=1e-6, adaptive_tolerance=False)
    assert fixed.effective_tolerance(100) == 1e-6


def test_zero_rhs_returns_zero_solution():
    result = ConjugateGradientSolver().solve(laplacian_1d(10), np.zeros(10))
    assert result.converged
    assert result.iterations == 0
    assert np.all(result.solution == 0)


def test_inconsistent_system_fails_without_hanging():
    A = np.array([[1.0, 1.0], [1.0, 1.0]])
    b = np.array([1.0, -1.0])
    solver = ConjugateGradientSolver(max_iterations=100, iteration_cap=500)
    with pytest.raises(PoissonSolverFailed):
        solver.solve(A, b)


def test_budget_exhaustion_raises():
    A = laplacian_1d(400, shift=1e-4)
    b = np.ones(400)
    solver = ConjugateGradientSolver(tolerance=1e-12, max_iterations=3, iteration_extension=1,
                                     iteration_cap=5, adaptive_tolerance=False)
    with pytest.raises(PoissonSolverFailed) as err:
        solver.solve(A, b)
    assert err.value.iterations <= 5
    assert err.value.recoverable


def test_stalled_solve_extends_budget_up_to_cap():
    # Nearly singular 1D Laplacian: most iterations improve the residual by under 1%
    A = laplacian_1d(2000, shift=1e-6)
    b = np.ones(2000)
    seen = []
    solver = ConjugateGradientSolver(tolerance=1e-14, max_iterations=100, iteration_extension=50,
                                     iteration_cap=500, adaptive_tolerance=False)
    with pytest.raises(PoissonSolverFailed, match="did not converge") as err:
        solver.solve(A, b, callback=lambda i, r: seen.append(i))
    assert max(seen) > 100
    assert err.value.iterations == 500

    no_extension = ConjugateGradientSolver(tolerance=1e-14, max_iterations=100,
                                           iteration_extension=0, iteration_cap=500,
                                           adaptive_tolerance=False)
    with pytest.raises(PoissonSolverFailed) as err:
        no_extension.solve(A, b)
    assert err.value.iterations == 100


def test_callback_can_abort():
    seen = []

    def callback(iteration, residual):
        seen.append((iteration, residual))
        return iteration < 3

    solver = ConjugateGradientSolver(tolerance=1e-12, max_iterations=100,
                                     adaptive_tolerance=False)
    with pytest.raises(PoissonSolverFailed, match="aborted"):
        solver.solve(laplacian_1d(200, shift=1e-3), np.ones(200), callback=callback)
    assert [i for i, _ in seen] == [1, 2, 3]


def test_cancelled_token_stops_solve():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(PoissonSolverFailed, match="cancelled"):
        ConjugateGradientSolver().solve(laplacian_1d(20), np.ones(20), cancel_token=token)


def test_expired_deadline_stops_solve():
    token = CancellationToken(deadline_seconds=0.0)
    assert token.expired
    assert token.reason() == "deadline exceeded"
    with pytest.raises(PoissonSolverFailed, match="deadline"):
        ConjugateGradientSolver().solve(laplacian_1d(20), np.ones(20), cancel_token=token)


def test_non_positive_diagonal_fails():
    A = np.array([[0.0, 0.0], [0.0, 1.0]])
    with pytest.raises(PoissonSolverFailed):
        ConjugateGradientSolver().solve(A, np.array([1.0, 1.0]))


def test_from_config():
    config = SolverConfig(tolerance=1e-4, max_iterations=10, preconditioner="none")
    solver = ConjugateGradientSolver.from_config(config)
    assert solver.tolerance == 1e-4
    assert solver.max_iterations == 10
    assert solver.preconditioner == "none"
    with pytest.raises(ValueError):
        ConjugateGradientSolver(preconditioner="ilu")


def test_solve_job_runs_on_worker_thread():
    A = laplacian_1d(60)
    b = np.ones(60)
    threads = []

    def callback(iteration, residual):
        threads.append(threading.current_thread().name)
        return True

    job = submit_solve(ConjugateGradientSolver(max_iterations=300), A, b, callback=callback)
    result = job.result(timeout=30)
    assert job.done()
    assert result.converged
    assert job.progress[0] == result.iterations
    assert threads and all(name != threading.current_thread().name for name in threads)


def test_solve_job_cancel():
    started = threading.Event()
    release = threading.Event()

    def callback(iteration, residual):
        started.set()
        release.wait(5)
        return True

    solver = ConjugateGradientSolver(tolerance=1e-14, max_iterations=1000,
                                     adaptive_tolerance=False)
    job = submit_solve(solver, laplacian_1d(500, shift=1e-6), np.ones(500), callback=callback)
    assert started.wait(5)
    job.cancel()
    release.set()
    with pytest.raises(PoissonSolverFailed, match="cancelled"):
        job.result(timeout=30)
