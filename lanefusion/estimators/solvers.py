"""
Batch sparse nonlinear least-squares solvers.

All solvers minimize f(x) = ‖r(x)‖² over a CostFunction that retracts a step
onto a Trial and re-linearizes every factor block. With J the stacked
whitened Jacobian:

    A = JᵀJ,   b = -Jᵀr

Implements:
    - Gauss-Newton: A h = b, with oscillation detection over recent costs
    - Levenberg-Marquardt: (A + λ diag(A)) h = b with gain-ratio acceptance
    - Trust region: Powell's dogleg between the Gauss-Newton and the
      steepest-descent (Cauchy) step

Damped solvers never modify the accepted Trial; a rejected step is simply
discarded. After termination every bias delta is folded into the nominal
bias (final retraction).

References:
    Madsen, Nielsen, Tingleff, "Methods for Non-Linear Least Squares
    Problems", 2004, Sections 3.2-3.3.
    Rosen, Kaess, Leonard, "RISE: An Incremental Trust-Region Method for
    Robust Online Sparse Least-Squares Estimation", IEEE T-RO 2014.
"""

import logging
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import MatrixRankWarning, spsolve

from lanefusion.config import SolverOptions
from lanefusion.errors import SingularInformationError, SingularityReport
from lanefusion.estimators.state import Trial
from lanefusion.utils.linalg import sparse_covariance

_TINY = 1e-12


class CostFunction(ABC):
    """Retract-and-linearize interface consumed by the solvers."""

    @property
    @abstractmethod
    def size(self) -> int:
        """Length of the optimization vector."""

    @abstractmethod
    def __call__(
        self, trial: Trial, delta: np.ndarray, final: bool = False
    ) -> Tuple[Trial, np.ndarray, sparse.csr_matrix]:
        """Apply ``delta`` to ``trial`` and linearize at the result.

        Returns:
            (new trial, whitened residual, whitened sparse Jacobian).
        """


@dataclass
class SolverResult:
    """Outcome of one batch solve.

    Attributes:
        trial: Final estimates (bias deltas folded).
        cost: Final cost ‖r‖².
        iterations: Iterations performed (accepted and rejected).
        converged: True if a cost, step or radius criterion ended the solve.
        reason: Termination criterion.
        cost_history: Cost after every accepted step, initial cost first.
        residual: Final whitened residual.
        jacobian: Final whitened Jacobian.
    """

    trial: Trial
    cost: float
    iterations: int
    converged: bool
    reason: str
    cost_history: List[float] = field(default_factory=list)
    residual: Optional[np.ndarray] = None
    jacobian: Optional[sparse.csr_matrix] = None


def _normal_equations(residual, jacobian):
    A = (jacobian.T @ jacobian).tocsc()
    b = -(jacobian.T @ residual)
    return A, np.asarray(b).reshape(-1)


def _solve(A, b, lane_offset: Optional[int] = None) -> np.ndarray:
    """Sparse direct solve of A h = b.

    Raises:
        SingularInformationError: If A is singular and the step contains NaN.
    """
    with warnings.catch_warnings():
        # Singular systems are diagnosed below from the NaN result
        warnings.simplefilter("ignore", MatrixRankWarning)
        h = np.asarray(spsolve(A, b)).reshape(-1)
    if np.any(np.isnan(h)):
        raise SingularInformationError(analyze_singularity(A, lane_offset))
    return h


def _stop_reason(options: SolverOptions, cost_change, step_norm, iteration) -> Optional[str]:
    if abs(cost_change) <= options.cost_thres:
        return "cost"
    if step_norm <= options.step_thres:
        return "step"
    if iteration >= options.iter_thres:
        return "iterations"
    return None


def _finish(cost_func, trial, reason, iteration, history, log):
    zero = np.zeros(cost_func.size)
    trial, residual, jacobian = cost_func(trial, zero, final=True)
    cost = float(residual @ residual)
    log.info("Optimization finished after %d iterations: %s criterion", iteration, reason)
    return SolverResult(
        trial=trial,
        cost=cost,
        iterations=iteration,
        converged=reason in ("cost", "step", "radius", "oscillation"),
        reason=reason,
        cost_history=history,
        residual=residual,
        jacobian=jacobian,
    )


def detect_oscillation(costs: List[float], window: int = 5, rel_tol: float = 1e-3) -> bool:
    """
    True if the last ``window`` costs lie in a narrow band around their mean.

    The band is relative, rel_tol · max(|mean|, tiny), so the test behaves the
    same for any cost magnitude.

    Example:
        >>> detect_oscillation([10.0, 5.0, 5.001, 4.999, 5.0, 5.0005])
        True
        >>> detect_oscillation([10.0, 8.0, 6.0, 4.0, 2.0])
        False
    """
    if len(costs) < window:
        return False
    recent = np.asarray(costs[-window:], dtype=float)
    mean = recent.mean()
    band = rel_tol * max(abs(mean), _TINY)
    return bool(np.all(np.abs(recent - mean) <= band))


def gauss_newton(
    cost_func: CostFunction,
    trial: Trial,
    options: SolverOptions,
    lane_offset: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> SolverResult:
    """Undamped Gauss-Newton iterations with oscillation detection.

    Raises:
        SingularInformationError: If the normal equations are singular.
    """
    log = logger or logging.getLogger(__name__)
    trial, residual, jacobian = cost_func(trial, np.zeros(cost_func.size))
    prev_cost = float(residual @ residual)
    history = [prev_cost]
    log.info("GN iteration %3d  cost %.6g", 0, prev_cost)

    iteration = 0
    while True:
        iteration += 1
        A, b = _normal_equations(residual, jacobian)
        step = _solve(A, b, lane_offset)
        trial, residual, jacobian = cost_func(trial, step)
        cost = float(residual @ residual)
        history.append(cost)
        step_norm = float(np.linalg.norm(step))
        log.info("GN iteration %3d  cost %.6g  step %.3g", iteration, cost, step_norm)

        reason = _stop_reason(options, prev_cost - cost, step_norm, iteration)
        if reason is None and detect_oscillation(
            history, options.oscillation_window, options.oscillation_rel_tol
        ):
            reason = "oscillation"
        if reason is not None:
            return _finish(cost_func, trial, reason, iteration, history, log)
        prev_cost = cost


def levenberg_marquardt(
    cost_func: CostFunction,
    trial: Trial,
    options: SolverOptions,
    lane_offset: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> SolverResult:
    """
    Levenberg-Marquardt with Marquardt scaling.

    Solves (A + λ D) h = b with D = diag(A). The gain ratio compares the
    actual cost reduction with hᵀ(λ D h + b), the reduction predicted by the
    linear model. Accepted steps divide λ by Ld, rejected steps multiply it by
    Lu; λ stays within [lambda_min, lambda_max].

    Raises:
        SingularInformationError: If the damped normal equations are singular.
    """
    log = logger or logging.getLogger(__name__)
    lm = options.lm
    trial, residual, jacobian = cost_func(trial, np.zeros(cost_func.size))
    prev_cost = float(residual @ residual)
    history = [prev_cost]
    lam = lm.lambda0
    log.info("LM iteration %3d  cost %.6g  lambda %.3g  Init", 0, prev_cost, lam)

    iteration = 0
    while True:
        iteration += 1
        A, b = _normal_equations(residual, jacobian)
        D = sparse.diags(A.diagonal())
        step = _solve((A + lam * D).tocsc(), b, lane_offset)

        trial_new, residual_new, jacobian_new = cost_func(trial, step)
        cost = float(residual_new @ residual_new)
        ared = prev_cost - cost
        pred = float(step @ (lam * (D @ step) + b))
        rho = ared / pred if pred > 0 else -np.inf
        accepted = rho >= lm.eta
        step_norm = float(np.linalg.norm(step))
        log.info(
            "LM iteration %3d  cost %.6g  step %.3g  lambda %.3g  %s",
            iteration, cost, step_norm, lam, "Accepted" if accepted else "Rejected",
        )

        if accepted:
            trial, residual, jacobian = trial_new, residual_new, jacobian_new
            prev_cost = cost
            history.append(cost)
            lam = max(lam / lm.Ld, lm.lambda_min)
            reason = _stop_reason(options, ared, step_norm, iteration)
            if reason is not None:
                return _finish(cost_func, trial, reason, iteration, history, log)
        else:
            lam = min(lam * lm.Lu, lm.lambda_max)
            if iteration >= options.iter_thres:
                return _finish(cost_func, trial, "iterations", iteration, history, log)


def dogleg(h_gn: np.ndarray, h_gd: np.ndarray, radius: float) -> np.ndarray:
    """
    Powell's dogleg step inside a trust region of the given radius.

    Returns the Gauss-Newton step if it fits, the truncated steepest-descent
    step if even that leaves the region, and otherwise the point where the
    segment from h_gd to h_gn crosses the boundary.
    """
    if np.linalg.norm(h_gn) <= radius:
        return h_gn
    gd_norm = np.linalg.norm(h_gd)
    if gd_norm >= radius:
        return (radius / gd_norm) * h_gd
    v = h_gn - h_gd
    gv = float(h_gd @ v)
    vv = float(v @ v)
    beta = (-gv + np.sqrt(gv**2 + (radius**2 - gd_norm**2) * vv)) / vv
    return h_gd + beta * v


def trust_region(
    cost_func: CostFunction,
    trial: Trial,
    options: SolverOptions,
    lane_offset: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> SolverResult:
    """
    Dogleg trust-region solver.

    The gain ratio uses the reduction predicted by the quadratic model,
    2 bᵀh - hᵀA h. Steps with ρ ≥ eta1 are accepted; the radius grows by
    gamma2 when ρ ≥ eta2 and shrinks by gamma1 when ρ < eta1.

    Args:
        lane_offset: First lane-parameter column, used to localize duplicate
            rows when the normal equations turn out singular.

    Raises:
        SingularInformationError: If the normal equations are singular or
            the gradient lies in their null space.
    """
    log = logger or logging.getLogger(__name__)
    tr = options.tr
    trial, residual, jacobian = cost_func(trial, np.zeros(cost_func.size))
    prev_cost = float(residual @ residual)
    history = [prev_cost]
    radius = tr.radius0
    log.info("TR iteration %3d  cost %.6g  radius %.3g  Init", 0, prev_cost, radius)

    iteration = 0
    while True:
        iteration += 1
        A, b = _normal_equations(residual, jacobian)
        if not np.any(b):
            return _finish(cost_func, trial, "step", iteration, history, log)
        h_gn = _solve(A, b, lane_offset)
        bAb = float(b @ (A @ b))
        if bAb <= 0:
            raise SingularInformationError(analyze_singularity(A, lane_offset))
        h_gd = (float(b @ b) / bAb) * b

        step = dogleg(h_gn, h_gd, radius)
        trial_new, residual_new, jacobian_new = cost_func(trial, step)
        cost = float(residual_new @ residual_new)
        ared = prev_cost - cost
        pred = float(2.0 * (b @ step) - step @ (A @ step))
        rho = ared / pred if pred > 0 else -np.inf
        accepted = rho >= tr.eta1
        step_norm = float(np.linalg.norm(step))
        log.info(
            "TR iteration %3d  cost %.6g  step %.3g  radius %.3g  %s",
            iteration, cost, step_norm, radius, "Accepted" if accepted else "Rejected",
        )

        if rho >= tr.eta2:
            radius = tr.gamma2 * radius
        elif rho < tr.eta1:
            radius = tr.gamma1 * radius

        if accepted:
            trial, residual, jacobian = trial_new, residual_new, jacobian_new
            prev_cost = cost
            history.append(cost)
            reason = _stop_reason(options, ared, step_norm, iteration)
            if reason is None and radius <= tr.thres:
                reason = "radius"
            if reason is not None:
                return _finish(cost_func, trial, reason, iteration, history, log)
        elif radius < tr.thres:
            return _finish(cost_func, trial, "radius", iteration, history, log)
        elif iteration >= options.iter_thres:
            return _finish(cost_func, trial, "iterations", iteration, history, log)


def analyze_singularity(A, lane_offset: Optional[int] = None) -> SingularityReport:
    """
    Locate the cause of a singular information matrix.

    Scans for zero diagonal entries and for identical rows inside the
    lane-parameter block A[lane_offset:, lane_offset:].

    Returns:
        SingularityReport with full-matrix indices.
    """
    A = sparse.csr_matrix(A)
    diag = A.diagonal()
    report = SingularityReport(zero_diagonals=[int(i) for i in np.flatnonzero(diag == 0)])

    if lane_offset is not None and lane_offset < A.shape[0]:
        block = A[lane_offset:, lane_offset:].toarray()
        for i in range(len(block)):
            for j in range(i + 1, len(block)):
                if np.linalg.norm(block[i] - block[j]) < 1e-8 and np.array_equal(block[i], block[j]):
                    report.duplicate_rows.append((lane_offset + i, lane_offset + j))
        for i, j in report.duplicate_rows:
            warnings.warn(f"Information matrix rows {i} and {j} are identical", RuntimeWarning)
    return report


def information_summary(jacobian) -> Tuple[sparse.csc_matrix, np.ndarray]:
    """Information matrix JᵀJ and its inverse (covariance)."""
    info = (sparse.csr_matrix(jacobian).T @ sparse.csr_matrix(jacobian)).tocsc()
    return info, sparse_covariance(info)


SOLVERS = {
    "GN": gauss_newton,
    "LM": levenberg_marquardt,
    "TR": trust_region,
}
