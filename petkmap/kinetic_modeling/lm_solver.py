r"""
A bounded, weighted Levenberg-Marquardt (LM) solver for small nonlinear least-squares problems, such as fitting a
compartment model to a single TAC.

The solver minimizes

.. math::

    \chi^2(\mathbf{p}) = \frac{1}{2} \sum_i w_i^2 \left(y_i - f_i(\mathbf{p})\right)^2

over the free parameters, subject to :math:`\mathbf{l} \leq \mathbf{p} \leq \mathbf{u}`. Each iteration solves the
Marquardt-scaled normal equations

.. math::

    \left(\mathbf{A} + \lambda\,\mathrm{diag}(\mathbf{A})\right)\boldsymbol{\delta} = \mathbf{b},\qquad
    \mathbf{A} = (\mathbf{W}\mathbf{J})^\top(\mathbf{W}\mathbf{J}),\quad
    \mathbf{b} = (\mathbf{W}\mathbf{J})^\top \mathbf{W}(\mathbf{y} - \mathbf{f})

and projects :math:`\mathbf{p}+\boldsymbol{\delta}` back into the bounds. Box constraints are enforced by projection
only, so a parameter sitting on a bound can leave it on a later iteration.

Numerical trouble (a singular damped system, a step that does not reduce the cost) is handled by raising the damping
and is reported through :class:`FitStatus`; it never raises. Contract violations (bad shapes, inverted bounds, too
few usable frames) raise before the first iteration.

"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

import numpy as np

from ..math_lib import l2norm, weighted_norm
from ..utils.errors import InsufficientFrames, InvalidBounds, InvalidFrames, ParameterCountMismatch, SingularSystem

logger = logging.getLogger(__name__)


class FitStatus(Enum):
    """Terminal state of a fit."""
    CONVERGED = 'converged'
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'
    DIVERGED = 'diverged'

    @property
    def code(self) -> int:
        """Integer code used for status maps: 0 converged, 1 iteration cap, 2 diverged."""
        return list(FitStatus).index(self)


@dataclass
class LMSettings:
    r"""
    Configuration of :func:`levenberg_marquardt`.

    Attributes:
        max_iterations (int): Maximum number of outer iterations (Jacobian evaluations).
        initial_damping (float): Starting value of the damping factor :math:`\lambda`.
        damping_increase (float): Factor applied to :math:`\lambda` after a rejected step.
        damping_decrease (float): Divisor applied to :math:`\lambda` after an accepted step.
        max_damping (float): The fit is reported as diverged once :math:`\lambda` exceeds this value.
        min_damping (float): Lower limit for :math:`\lambda`.
        max_retries (int): Maximum number of re-solves with increased damping per iteration.
        ftol (float): Converged when an accepted step reduces the cost by a relative amount below this.
        gtol (float): Converged when the norm of :math:`\mathbf{b}` falls to this value.
        xtol (float): Converged when the projected step satisfies
            :math:`\|\boldsymbol{\delta}\| \leq x_{\mathrm{tol}}(\|\mathbf{p}\| + x_{\mathrm{tol}})`.
    """
    max_iterations: int = 100
    initial_damping: float = 1.0e-3
    damping_increase: float = 10.0
    damping_decrease: float = 10.0
    max_damping: float = 1.0e16
    min_damping: float = 1.0e-12
    max_retries: int = 20
    ftol: float = 1.0e-10
    gtol: float = 1.0e-12
    xtol: float = 1.0e-10


@dataclass
class LMResult:
    """
    Output of :func:`levenberg_marquardt`.

    Attributes:
        params (np.ndarray): Final parameters, all of them, fixed ones included.
        predicted (np.ndarray): Model prediction at ``params``.
        iterations (int): Number of iterations performed.
        status (FitStatus): Terminal state.
        cost (float): Final value of :math:`\\frac{1}{2}\\|\\mathbf{W}(\\mathbf{y}-\\mathbf{f})\\|^2`.
    """
    params: np.ndarray
    predicted: np.ndarray
    iterations: int
    status: FitStatus
    cost: float


def calc_cost(observed: np.ndarray, predicted: np.ndarray, weights: np.ndarray) -> float:
    r"""Weighted least-squares cost :math:`\frac{1}{2}\sum_i (w_i(y_i - f_i))^2`."""
    return 0.5 * weighted_norm(observed - predicted, weights) ** 2


def solve_damped_normal_equations(hessian: np.ndarray, gradient: np.ndarray, damping: float) -> np.ndarray:
    r"""
    Solves :math:`(\mathbf{A} + \lambda\,\mathrm{diag}(\mathbf{A}))\boldsymbol{\delta} = \mathbf{b}`.

    The diagonal used for the Marquardt scaling is floored at :math:`10^{-12}\max(1, \max_i A_{ii})` so that a
    parameter with no influence on the model still gets a positive damping term.

    Args:
        hessian (np.ndarray): The Gauss-Newton matrix :math:`\mathbf{A}`.
        gradient (np.ndarray): The right-hand side :math:`\mathbf{b}`.
        damping (float): The damping factor :math:`\lambda`.

    Returns:
        np.ndarray: The step :math:`\boldsymbol{\delta}`.

    Raises:
        SingularSystem: If the damped system cannot be solved or the step is not finite.
    """
    scale = np.diag(hessian).copy()
    scale = np.maximum(scale, 1.0e-12 * max(1.0, float(np.max(scale))))
    damped = hessian + damping * np.diag(scale)
    try:
        step = np.linalg.solve(damped, gradient)
    except np.linalg.LinAlgError as exc:
        raise SingularSystem(f"Damped normal equations are singular (damping={damping:.3e}).") from exc
    if not np.all(np.isfinite(step)):
        raise SingularSystem(f"Damped normal equations gave a non-finite step (damping={damping:.3e}).")
    return step


def validate_fit_arrays(observed: np.ndarray,
                        weights: np.ndarray,
                        initial: np.ndarray,
                        lower: np.ndarray,
                        upper: np.ndarray,
                        free_mask: Union[np.ndarray, None]) -> tuple:
    r"""
    Checks and normalizes the inputs of a fit.

    Non-finite observations are given zero weight. Initial values outside of the bounds are clamped.

    Returns:
        tuple: ``(observed, weights, initial, lower, upper, free_mask)`` as float (bool for the mask) arrays.

    Raises:
        ParameterCountMismatch: If the parameter arrays do not have matching 1D shapes.
        InvalidFrames: If ``observed`` and ``weights`` differ in shape, or a weight is negative.
        InvalidBounds: If a lower bound is above its upper bound.
        InsufficientFrames: If there are more free parameters than frames with non-zero weight.
    """
    observed = np.array(observed, dtype=float)
    weights = np.array(weights, dtype=float)
    initial = np.asarray(initial, dtype=float)
    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)

    if initial.ndim != 1 or lower.shape != initial.shape or upper.shape != initial.shape:
        raise ParameterCountMismatch(f"Initial values and bounds must be 1D arrays of the same length. Got "
                                     f"{initial.shape}, {lower.shape} and {upper.shape}.")
    free_mask = np.ones(initial.shape, dtype=bool) if free_mask is None else np.asarray(free_mask, dtype=bool)
    if free_mask.shape != initial.shape:
        raise ParameterCountMismatch(f"The free-parameter mask needs {len(initial)} entries. "
                                     f"Got shape {free_mask.shape}.")
    if observed.ndim != 1 or weights.shape != observed.shape:
        raise InvalidFrames(f"Observed values and weights must be 1D arrays of the same length. Got "
                            f"{observed.shape} and {weights.shape}.")
    if np.any(weights < 0.0) or not np.all(np.isfinite(weights)):
        raise InvalidFrames("Frame weights must be finite and non-negative.")
    if np.any(lower > upper):
        bad = np.flatnonzero(lower > upper).tolist()
        raise InvalidBounds(f"Lower bounds exceed upper bounds for parameter(s) at index {bad}.")

    not_finite = ~np.isfinite(observed)
    if np.any(not_finite):
        logger.warning(f"{np.count_nonzero(not_finite)} non-finite observation(s) will be ignored in the fit.")
        weights[not_finite] = 0.0
        observed[not_finite] = 0.0

    num_free = int(np.count_nonzero(free_mask))
    num_usable = int(np.count_nonzero(weights > 0.0))
    if num_free > num_usable:
        raise InsufficientFrames(f"Cannot fit {num_free} free parameter(s) to {num_usable} frame(s) with "
                                 f"non-zero weight.")

    clamped = np.clip(initial, lower, upper)
    if np.any(clamped != initial):
        logger.debug(f"Initial values {initial} clamped into bounds as {clamped}.")
    return observed, weights, clamped, lower, upper, free_mask


def levenberg_marquardt(model_func: Callable[[np.ndarray], np.ndarray],
                        model_and_jacobian_func: Callable[[np.ndarray, np.ndarray], tuple],
                        observed: np.ndarray,
                        weights: np.ndarray,
                        initial: np.ndarray,
                        lower: np.ndarray,
                        upper: np.ndarray,
                        free_mask: Union[np.ndarray, None] = None,
                        settings: Union[LMSettings, None] = None) -> LMResult:
    r"""
    Fits the free parameters of a model to weighted observations with a bounded Levenberg-Marquardt iteration.

    Each iteration evaluates the Jacobian once, then solves the damped normal equations. If the projected step does
    not reduce the cost, the damping is raised and the system re-solved with the same Jacobian, up to
    ``settings.max_retries`` times.

    The fit stops with:
        * :attr:`FitStatus.CONVERGED` when an accepted step reduces the cost by a relative amount below ``ftol``,
          when :math:`\|\mathbf{b}\| \leq g_{\mathrm{tol}}`, when the projected step is below the ``xtol`` limit, or
          when the cost is exactly zero. The step and cost-decrease tests are scaled by :math:`1 + \lambda`, so a
          heavily damped step is not mistaken for convergence.
        * :attr:`FitStatus.DIVERGED` when the damping exceeds ``max_damping`` or the retries run out without an
          improving step.
        * :attr:`FitStatus.MAX_ITERATIONS_REACHED` otherwise.

    In every case the best parameters found are returned.

    Args:
        model_func (Callable): ``model_func(params) -> predicted`` for the full parameter vector.
        model_and_jacobian_func (Callable): ``f(params, free_mask) -> (predicted, jacobian)``, with one Jacobian
            column per free parameter.
        observed (np.ndarray): Observed values.
        weights (np.ndarray): Non-negative weights :math:`w_i`, one per observation.
        initial (np.ndarray): Initial parameter values. Clamped into the bounds.
        lower (np.ndarray): Lower bounds.
        upper (np.ndarray): Upper bounds.
        free_mask (np.ndarray, optional): Boolean mask of the parameters to fit. Fixed parameters keep their initial
            value. Defaults to all free.
        settings (LMSettings, optional): Solver configuration. Defaults to :class:`LMSettings()`.

    Returns:
        LMResult: Final parameters, prediction, iteration count, status and cost.

    Raises:
        ParameterCountMismatch: If the parameter arrays have inconsistent shapes.
        InvalidBounds: If a lower bound is above its upper bound.
        InvalidFrames: If the observations and weights do not match.
        InsufficientFrames: If there are more free parameters than usable frames.

    """
    settings = LMSettings() if settings is None else settings
    observed, weights, params, lower, upper, free_mask = validate_fit_arrays(observed, weights, initial,
                                                                              lower, upper, free_mask)
    lo_free = lower[free_mask]
    hi_free = upper[free_mask]

    predicted, jacobian = model_and_jacobian_func(params, free_mask)
    cost = calc_cost(observed, predicted, weights)
    damping = settings.initial_damping
    status = FitStatus.MAX_ITERATIONS_REACHED
    iterations = 0

    if not np.isfinite(cost):
        logger.debug("LM: cost is not finite at the initial parameters.")
        return LMResult(params, predicted, 0, FitStatus.DIVERGED, cost)
    if not np.any(free_mask) or cost == 0.0:
        return LMResult(params, predicted, 0, FitStatus.CONVERGED, cost)

    for iteration in range(1, settings.max_iterations + 1):
        iterations = iteration
        weighted_jac = weights[:, None] * jacobian
        residual = weights * (observed - predicted)
        hessian = weighted_jac.T @ weighted_jac
        gradient = weighted_jac.T @ residual

        if l2norm(gradient) <= settings.gtol:
            status = FitStatus.CONVERGED
            break

        free_vals = params[free_mask]
        step_limit = settings.xtol * (l2norm(free_vals) + settings.xtol)
        trial = None
        for retry in range(settings.max_retries):
            try:
                step = solve_damped_normal_equations(hessian, gradient, damping)
            except SingularSystem as exc:
                logger.debug(f"LM iteration {iteration}: {exc}")
                damping *= settings.damping_increase
                if damping > settings.max_damping:
                    break
                continue

            candidate = params.copy()
            candidate[free_mask] = np.clip(free_vals + step, lo_free, hi_free)
            step_norm = l2norm(candidate[free_mask] - free_vals)
            # damping shrinks the step roughly by 1 + damping
            damping_scale = 1.0 + damping
            if retry == 0 and step_norm * damping_scale <= step_limit:
                status = FitStatus.CONVERGED
                break

            candidate_pred = model_func(candidate)
            candidate_cost = calc_cost(observed, candidate_pred, weights)
            if np.isfinite(candidate_cost) and candidate_cost < cost:
                trial = (candidate, candidate_pred, candidate_cost, step_norm, damping_scale)
                break

            damping *= settings.damping_increase
            if damping > settings.max_damping:
                break

        if status is FitStatus.CONVERGED:
            logger.debug(f"LM iteration {iteration}: projected step below tolerance.")
            break
        if trial is None:
            status = FitStatus.DIVERGED
            break

        candidate, candidate_pred, candidate_cost, step_norm, damping_scale = trial
        rel_decrease = (cost - candidate_cost) / cost
        params, predicted, cost = candidate, candidate_pred, candidate_cost
        damping = max(damping / settings.damping_decrease, settings.min_damping)
        logger.debug(f"LM iteration {iteration}: cost={cost:.6e}, damping={damping:.3e}, step={step_norm:.3e}")

        if (cost == 0.0 or rel_decrease * damping_scale < settings.ftol
                or step_norm * damping_scale <= step_limit):
            status = FitStatus.CONVERGED
            break
        predicted, jacobian = model_and_jacobian_func(params, free_mask)

    logger.debug(f"LM finished with status '{status.value}' after {iterations} iteration(s); cost={cost:.6e}.")
    return LMResult(params=params, predicted=predicted, iterations=iterations, status=status, cost=cost)
