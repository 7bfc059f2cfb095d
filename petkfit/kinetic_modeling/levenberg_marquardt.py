r"""
This module contains the bounded Levenberg-Marquardt (LM) optimizer used to fit a kinetic model to a single TAC.

The optimizer minimizes the weighted residual sum of squares (WRSS)

.. math::

    R(p) = \sum_{i} w_{i}\left(C_{i} - f_{i}(p)\right)^{2}

subject to box constraints on the parameters and a sensitivity mask that holds some parameters fixed at their
initial value. Each proposal solves the damped normal equations

.. math::

    \left(J^{T}WJ + \lambda\,\mathrm{diag}(J^{T}WJ)\right)\delta = J^{T}W(C - f)

inside the box with :func:`petkfit.kinetic_modeling.coordinate_descent.solve_bounded_quadratic`. Accepted steps
shrink the damping factor :math:`\lambda` and refresh the Jacobian; rejected steps grow :math:`\lambda` and retry with
the same Jacobian.

Rejections, degenerate coordinates and running out of iterations are ordinary outcomes and never raise. The fit
reports how it ended through :class:`LevMarStatus`.

"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Union
import numpy as np
from .coordinate_descent import solve_bounded_quadratic
from .kinetic_models import KineticModelContext


class LevMarStatus(Enum):
    """Terminal states of a Levenberg-Marquardt fit."""
    CONVERGED = 'converged'
    ITERATION_LIMIT = 'iteration_limit'


@dataclass(frozen=True)
class LevMarConfig:
    """
    Tunable constants of the Levenberg-Marquardt optimizer.

    Attributes:
        lambda_init (float): Initial damping factor.
        lambda_up (float): Factor applied to the damping after a rejected step.
        lambda_down (float): Divisor applied to the damping after an accepted step.
        lambda_min (float): Floor of the damping factor.
        lambda_max (float): Ceiling of the damping factor. A rejection at the ceiling ends the fit as converged.
        ftol (float): Relative WRSS decrease below which an accepted step ends the fit as converged.
        xtol (float): Relative step size below which a proposal ends the fit as converged.
        cd_max_sweeps (int): Sweep limit of the bounded coordinate-descent solver.
        cd_tol (float): Convergence tolerance of the bounded coordinate-descent solver.
    """
    lambda_init: float = 1.0e-3
    lambda_up: float = 10.0
    lambda_down: float = 10.0
    lambda_min: float = 1.0e-12
    lambda_max: float = 1.0e12
    ftol: float = 1.0e-10
    xtol: float = 1.0e-10
    cd_max_sweeps: int = 500
    cd_tol: float = 1.0e-12


@dataclass
class LevMarResult:
    """
    Result of a Levenberg-Marquardt fit.

    Attributes:
        params (np.ndarray): Fitted parameters.
        fitted_tac (np.ndarray): Model TAC evaluated at ``params``.
        wrss (float): Weighted residual sum of squares at ``params``.
        status (LevMarStatus): How the fit ended.
        num_iters (int): Number of proposed steps, accepted or not.
        num_accepted (int): Number of accepted steps.
        damping (float): Damping factor when the fit ended.
        wrss_history (list[float]): WRSS at the initial parameters and after every accepted step.
    """
    params: np.ndarray
    fitted_tac: np.ndarray
    wrss: float
    status: LevMarStatus
    num_iters: int = 0
    num_accepted: int = 0
    damping: float = 0.0
    wrss_history: list = field(default_factory=list)


def calc_weighted_rss(tac_vals: np.ndarray, weights: np.ndarray, model_vals: np.ndarray) -> float:
    """Weighted residual sum of squares between a TAC and a model TAC."""
    resid = tac_vals - model_vals
    return float(np.sum(weights * resid * resid))


def fit_tac_with_levmar(tac_vals: np.ndarray,
                        weights: np.ndarray,
                        context: KineticModelContext,
                        initial_params: np.ndarray,
                        lower_bounds: np.ndarray,
                        upper_bounds: np.ndarray,
                        sensitivity: np.ndarray,
                        max_iters: int,
                        config: Union[LevMarConfig, None] = None,
                        out_params: Union[np.ndarray, None] = None,
                        out_tac: Union[np.ndarray, None] = None) -> LevMarResult:
    r"""
    Fits the context's kinetic model to a TAC with a bounded Levenberg-Marquardt iteration.

    Every proposal, accepted or rejected, counts towards ``max_iters``. The fit ends as
    :attr:`LevMarStatus.CONVERGED` when:
        * no parameter is sensitive,
        * a proposed step changes no parameter by more than ``xtol`` relative to its magnitude,
        * an accepted step decreases the WRSS by less than ``ftol`` relative to the previous WRSS, or the WRSS
          reaches zero,
        * a step is rejected while the damping factor is already at ``lambda_max``.

    Otherwise it ends as :attr:`LevMarStatus.ITERATION_LIMIT` with the best parameters found so far. A trial whose
    WRSS is not finite is treated as a rejection.

    Parameters where ``sensitivity`` is False are never modified and are returned bit-identical to
    ``initial_params``. Trial parameters are clipped into ``[lower_bounds, upper_bounds]``.

    Args:
        tac_vals (np.ndarray): Measured TAC, one value per frame.
        weights (np.ndarray): Non-negative weight of each frame.
        context (KineticModelContext): Shared context holding the model, scan timing and blood input.
        initial_params (np.ndarray): Starting parameters.
        lower_bounds (np.ndarray): Lower parameter bounds.
        upper_bounds (np.ndarray): Upper parameter bounds.
        sensitivity (np.ndarray): Mask of the parameters to estimate. 0/False holds a parameter fixed.
        max_iters (int): Maximum number of proposed steps.
        config (LevMarConfig, optional): Optimizer constants. Defaults to :class:`LevMarConfig`.
        out_params (np.ndarray, optional): If given, the fitted parameters are also written into it.
        out_tac (np.ndarray, optional): If given, the fitted TAC is also written into it.

    Returns:
        LevMarResult: Fitted parameters, fitted TAC and diagnostics.

    """
    if config is None:
        config = LevMarConfig()
    model = context.model
    sensitivity = np.asarray(sensitivity).astype(bool)
    lower_bounds = np.asarray(lower_bounds, dtype=float)
    upper_bounds = np.asarray(upper_bounds, dtype=float)
    tac_vals = np.asarray(tac_vals, dtype=float)
    weights = np.asarray(weights, dtype=float)
    params = np.array(initial_params, dtype=float)

    model_vals, jac = model.calc_tac_and_jacobian(params, context, sensitivity)
    wrss = calc_weighted_rss(tac_vals, weights, model_vals)
    wrss_history = [wrss]
    damping = config.lambda_init
    num_iters = 0
    num_accepted = 0
    status = LevMarStatus.ITERATION_LIMIT if sensitivity.any() else LevMarStatus.CONVERGED

    while status is LevMarStatus.ITERATION_LIMIT and num_iters < max_iters:
        weighted_jac = jac * weights[:, None]
        hessian = jac.T @ weighted_jac
        gradient = weighted_jac.T @ (tac_vals - model_vals)
        damped_hessian = hessian + damping * np.diag(np.diag(hessian))

        step, _ = solve_bounded_quadratic(damped_hessian, gradient, params, lower_bounds, upper_bounds, sensitivity,
                                          config.cd_max_sweeps, config.cd_tol)
        num_iters += 1
        if np.all(np.abs(step) <= config.xtol * (np.abs(params) + config.xtol)):
            status = LevMarStatus.CONVERGED
            break

        trial_params = np.where(sensitivity, np.clip(params + step, lower_bounds, upper_bounds), params)
        trial_vals = model.calc_tac(trial_params, context)
        trial_wrss = calc_weighted_rss(tac_vals, weights, trial_vals)

        if np.isfinite(trial_wrss) and trial_wrss < wrss:
            rel_decrease = (wrss - trial_wrss) / wrss
            params = trial_params
            wrss = trial_wrss
            wrss_history.append(wrss)
            num_accepted += 1
            damping = max(damping / config.lambda_down, config.lambda_min)
            if rel_decrease < config.ftol or wrss == 0.0:
                status = LevMarStatus.CONVERGED
                break
            model_vals, jac = model.calc_tac_and_jacobian(params, context, sensitivity)
        elif damping >= config.lambda_max:
            status = LevMarStatus.CONVERGED
        else:
            damping = min(damping * config.lambda_up, config.lambda_max)

    fitted_tac = model.calc_tac(params, context)
    if out_params is not None:
        out_params[:] = params
    if out_tac is not None:
        out_tac[:] = fitted_tac

    return LevMarResult(params=params,
                        fitted_tac=fitted_tac,
                        wrss=calc_weighted_rss(tac_vals, weights, fitted_tac),
                        status=status,
                        num_iters=num_iters,
                        num_accepted=num_accepted,
                        damping=damping,
                        wrss_history=wrss_history)
