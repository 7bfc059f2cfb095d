r"""
Box-constrained solver for the damped normal equations of a Levenberg-Marquardt step.

Each Levenberg-Marquardt proposal needs the step :math:`\delta` that minimizes

.. math::

    q(\delta) = \delta^{T}A\delta - 2b^{T}\delta,\qquad l - p \leq \delta \leq u - p,

where :math:`A` is the damped approximate Hessian, :math:`b` the gradient term, :math:`p` the current parameters and
:math:`l, u` the parameter bounds. Parameters that are held fixed keep :math:`\delta_{k}=0`. We solve this with cyclic
coordinate descent, keeping a running gradient :math:`r = A\delta - b` so each coordinate update costs one column of
:math:`A`. Every iterate satisfies the bounds, so the returned step is feasible even if the sweep limit is reached.

"""
import numba
import numpy as np


@numba.njit(nogil=True)
def solve_bounded_quadratic(hessian: np.ndarray,
                            gradient: np.ndarray,
                            params: np.ndarray,
                            lower_bounds: np.ndarray,
                            upper_bounds: np.ndarray,
                            sensitivity: np.ndarray,
                            max_sweeps: int = 500,
                            tol: float = 1.0e-12) -> tuple:
    r"""Minimizes :math:`\delta^{T}A\delta - 2b^{T}\delta` over the box :math:`[l-p, u-p]` by coordinate descent.

    A coordinate whose diagonal entry is not positive, or whose candidate value is not finite, is left unchanged for
    that sweep. The iteration stops once a full sweep changes no coordinate by more than ``tol`` relative to the
    magnitude of the parameter it moves, or after ``max_sweeps`` sweeps.

    Args:
        hessian (np.ndarray): Symmetric ``(P, P)`` matrix :math:`A`.
        gradient (np.ndarray): Vector :math:`b` of length P.
        params (np.ndarray): Current parameters :math:`p`.
        lower_bounds (np.ndarray): Lower parameter bounds :math:`l`.
        upper_bounds (np.ndarray): Upper parameter bounds :math:`u`.
        sensitivity (np.ndarray): Boolean mask; coordinates where it is False stay at zero.
        max_sweeps (int): Maximum number of full sweeps over the coordinates. Defaults to 500.
        tol (float): Relative convergence tolerance. Defaults to 1e-12.

    Returns:
        tuple: ``(step, num_sweeps)``.

    """
    num_params = gradient.shape[0]
    step = np.zeros(num_params)
    resid = -gradient.copy()

    num_sweeps = 0
    for sweep in range(max_sweeps):
        num_sweeps = sweep + 1
        converged = True
        for k in range(num_params):
            if not sensitivity[k]:
                continue
            diag = hessian[k, k]
            if diag <= 1.0e-300:
                continue
            candidate = step[k] - resid[k] / diag
            if not np.isfinite(candidate):
                continue
            candidate = min(max(candidate, lower_bounds[k] - params[k]), upper_bounds[k] - params[k])
            diff = candidate - step[k]
            if diff == 0.0:
                continue
            if abs(diff) > tol * (abs(params[k] + candidate) + tol):
                converged = False
            for j in range(num_params):
                resid[j] += hessian[j, k] * diff
            step[k] = candidate
        if converged:
            break

    return step, num_sweeps


@numba.njit(nogil=True)
def calc_quadratic_objective(hessian: np.ndarray, gradient: np.ndarray, step: np.ndarray) -> float:
    r"""Value of :math:`\delta^{T}A\delta - 2b^{T}\delta`."""
    num_params = step.shape[0]
    obj_val = 0.0
    for i in range(num_params):
        row_sum = 0.0
        for j in range(num_params):
            row_sum += hessian[i, j] * step[j]
        obj_val += step[i] * (row_sum - 2.0 * gradient[i])
    return obj_val
