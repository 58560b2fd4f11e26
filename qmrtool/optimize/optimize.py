"""
Protocol optimization: finds the free acquisition parameters of a scheme that minimize a loss on the Fisher
information of a tissue model.
"""
import logging
import warnings
from copy import deepcopy
from typing import Optional, Union, Tuple, List, Dict, Callable

import numpy as np
from scipy.optimize import OptimizeResult, minimize, differential_evolution, Bounds

from .loss_functions import compute_loss, scipy_loss, LossFunction, default_loss, ILL_LOSS, compute_crlb
from .methods import Optimizer, SOMA
from ..acquisition_scheme import AcquisitionScheme
from ..constants import ConstraintTypes
from ..tissue_model import TissueModel
from ..utils.math import is_smaller_than_with_tolerance, is_higher_than_with_tolerance

logger = logging.getLogger(__name__)

OptimizationOutput = Union[Tuple[AcquisitionScheme, float], Tuple[AcquisitionScheme, float, OptimizeResult]]


def optimize_scheme(scheme: AcquisitionScheme, model: TissueModel,
                    noise_variance: float,
                    loss: LossFunction = default_loss,
                    loss_scaling_factor: float = 1.0,
                    method: Optional[Union[str, Optimizer]] = None,
                    solver_options: dict = None,
                    full_output: bool = False) -> OptimizationOutput:
    """
    Searches the free acquisition parameters of a scheme for the lowest loss. The loss maps the N×M scaled Jacobian
    (N measurements, M optimized tissue parameters), the signal and the noise variance to a scalar.

    :param scheme: Initial scheme, left untouched. The optimizer works on a copy.
    :param model: Tissue model the protocol is designed for.
    :param noise_variance: Variance of the noise on the signal.
    :param loss: LossFunction to minimize.
    :param loss_scaling_factor: Multiplies the loss, use it to bring the loss to order 1.
    :param method: An Optimizer such as SOMA, 'differential_evolution' or the name of a derivative free
                   scipy.optimize.minimize method. Defaults to SOMA with its default control parameters.
    :param solver_options: Keyword options passed to the scipy solver.
    :param full_output: Return the OptimizeResult as third element.
    :return: The optimized scheme copy and its loss.
    """
    solver_options = {} if solver_options is None else solver_options
    method = SOMA() if method is None else method

    initial_loss = check_initial_scheme(scheme, model, noise_variance, loss)

    optimized = deepcopy(scheme)
    x0 = optimized.scaled_free_parameter_vector
    bounds = bounds_tuple2scipy(optimized.free_parameter_bounds_scaled)
    constraints = optimized.constraint_list
    check_constraints_satisfied(x0, optimized.constraints)

    loss_args = (optimized, model, noise_variance, loss, loss_scaling_factor)
    callback = make_logging_callback(optimized, model, noise_variance, loss)
    logger.info("Initial loss: %e", initial_loss)

    if method == 'differential_evolution':
        logger.info("Running differential evolution on %d free values.", x0.size)
        result = differential_evolution(scipy_loss, bounds=bounds, args=loss_args, x0=x0, workers=1,
                                        constraints=constraints or (), polish=True, callback=callback,
                                        **solver_options)
    else:
        logger.info("Running %s on %d free values.",
                    type(method).__name__ if isinstance(method, Optimizer) else method, x0.size)
        result = minimize(scipy_loss, x0, args=loss_args, method=method, bounds=bounds, constraints=constraints,
                          options=solver_options, callback=callback)

    if result.get('x') is None:
        raise RuntimeError("The optimizer did not return a solution.")
    optimized.set_scaled_free_parameter_vector(result['x'])
    final_loss = compute_loss(optimized, model, noise_variance, loss)

    if final_loss > initial_loss:
        warnings.warn("The optimized scheme has a higher loss than the initial scheme, consider another method.")
    check_constraints_satisfied(result['x'], optimized.constraints)
    if not result['success']:
        logger.warning("Optimizer stopped without success: %s", result.get("message", ""))
        warnings.warn("The optimizer reports no success. Adjust solver_options or the SOMA control parameters, "
                      "try another method or start from a different scheme.")
    logger.info("Final loss: %e", final_loss)

    if full_output:
        return optimized, final_loss, result
    return optimized, final_loss


def make_logging_callback(scheme: AcquisitionScheme, model: TissueModel, noise_var: float,
                          loss: LossFunction) -> Callable:
    """
    Callback for minimize (SOMA included) and differential_evolution that writes the current solution, its loss and
    the scaled CRLBs to the log. The scheme is updated in place.
    """
    count = [0]

    def callback(x_current, intermediate_result: Optional[OptimizeResult] = None, *_args, **_kwargs):
        scheme.set_scaled_free_parameter_vector(x_current)
        if isinstance(intermediate_result, OptimizeResult):
            iteration, fun = intermediate_result.nit, intermediate_result.fun
        else:
            count[0] += 1
            iteration, fun = count[0], compute_loss(scheme, model, noise_var, loss)

        try:
            crlb = compute_crlb(scheme, model, noise_var, loss)
        except np.linalg.LinAlgError:
            crlb = "singular information matrix"

        logger.info("iteration %d, loss %f", iteration, fun)
        logger.info("    x = %s", x_current)
        logger.info("    scaled CRLB = %s", crlb)

    return callback


def bounds_tuple2scipy(bounds: List[Tuple[Optional[float], Optional[float]]]) -> Bounds:
    """
    Converts (lower, upper) pairs with None for unbounded into feasible-keeping scipy Bounds.
    """
    lower = np.array([-np.inf if lb is None else lb for lb, _ in bounds], dtype=np.float64)
    upper = np.array([np.inf if ub is None else ub for _, ub in bounds], dtype=np.float64)
    return Bounds(lower, upper, keep_feasible=True)


def check_initial_scheme(scheme: AcquisitionScheme, model: TissueModel, noise_variance: float,
                         loss: LossFunction) -> float:
    """
    Runs the sanity checks on the starting point of an optimization.

    :return: The loss of the initial scheme
    """
    check_degrees_of_freedom(scheme, model)
    check_insensitive(scheme, model)
    initial_loss = compute_loss(scheme, model, noise_variance, loss)
    check_ill_conditioned(initial_loss)
    return initial_loss


def check_ill_conditioned(loss_value: float):
    if loss_value >= ILL_LOSS:
        raise RuntimeError("The initial scheme gives an ill conditioned Fisher information matrix. The model may be "
                           "degenerate for this scheme, start from another scheme or fix some tissue parameters.")


def check_insensitive(scheme: AcquisitionScheme, model: TissueModel):
    """
    :raise ValueError: The signal does not depend on an optimized tissue parameter for any measurement.
    """
    flat = np.all(model.scaled_jacobian(scheme) == 0, axis=0)
    if np.any(flat):
        names = np.array(model.parameter_names)[model.include_optimize][flat]
        raise ValueError(f"The signal of the initial scheme does not depend on {list(names)}. Exclude these "
                         f"parameters from optimization.")


def check_degrees_of_freedom(scheme: AcquisitionScheme, model: TissueModel):
    n_parameters = int(np.sum(model.include_optimize))
    if n_parameters > scheme.pulse_count:
        raise ValueError(f"{scheme.pulse_count} measurements can not determine {n_parameters} tissue parameters.")


def check_constraints_satisfied(x: np.ndarray, constraints: Dict[str, ConstraintTypes]):
    """
    :param x: Scaled free parameter vector
    :param constraints: Named scheme constraints
    :raise RuntimeError: x violates at least one constraint
    """
    violated = []
    for name, constraint in constraints.items():
        value = constraint.fun(x)
        if np.any(is_smaller_than_with_tolerance(value, constraint.lb)) or \
                np.any(is_higher_than_with_tolerance(value, constraint.ub)):
            violated.append(f"{name} ({value} outside [{constraint.lb}, {constraint.ub}])")

    if violated:
        raise RuntimeError("Violated constraints: " + ", ".join(violated))
