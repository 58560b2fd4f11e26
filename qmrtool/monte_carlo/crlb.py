"""
Cramer-Rao lower bound based protocol scoring (Alexander, 2008, DOI 10.1002/mrm.21646).

The score of a protocol is the mean squared coefficient of variation CRLB_i / x_i² over the selected tissue parameters
and a set of tissue parameter values. Lower is better.
"""
import logging
from copy import deepcopy
from typing import List, Optional, Tuple, Union, Sequence

import numpy as np
from scipy.optimize import OptimizeResult, minimize

from ..acquisition_scheme import AcquisitionScheme
from ..optimize.loss_functions import fisher_information_gauss, ILL_LOSS
from ..optimize.methods import Optimizer, SOMA
from ..tissue_model import TissueModel

logger = logging.getLogger(__name__)


def fisher_matrix(model: TissueModel, scheme: AcquisitionScheme, sigma: float) -> np.ndarray:
    """
    Fisher information matrix J^T J / sigma² of the fitted parameters in physical units.

    :param model: The tissue model at the parameter values of interest
    :param scheme: The acquisition scheme
    :param sigma: Standard deviation of the gaussian noise
    :return: Square matrix with a row and column per fitted parameter
    """
    mask = model.include_fit
    scales = np.array([parameter.scale for parameter in model.values()])[mask]
    jac = model.scaled_jacobian(scheme, mask=mask) / scales
    signal = model(scheme)
    return fisher_information_gauss(np.ascontiguousarray(jac, dtype=np.float64),
                                    np.ascontiguousarray(signal, dtype=np.float64), float(sigma ** 2))


def sim_crlb(model: TissueModel, scheme: AcquisitionScheme, xvalues: np.ndarray, sigma: float,
             variables: Optional[Sequence[str]] = None) -> Tuple[float, List[str], np.ndarray]:
    """
    Scores a protocol by the CRLB of the fitted parameters.

    :param model: The tissue model
    :param scheme: The acquisition scheme
    :param xvalues: Tissue parameter values, shape (n_sets, n_parameters) in the order of model.parameter_names
    :param sigma: Standard deviation of the gaussian noise
    :param variables: The fitted parameters the score averages over, defaults to all fitted parameters
    :return: The score F, the names of the fitted parameters and the normalised CRLBs (CRLB / x²) of shape
             (n_sets, n_fitted)
    """
    xvalues = np.atleast_2d(np.asarray(xvalues, dtype=np.float64))
    if xvalues.shape[1] != len(model):
        raise ValueError(f"Expected {len(model)} parameter values per set, got {xvalues.shape[1]}")

    names = model.fit_parameter_names
    if variables is None:
        variables = names
    unknown = set(variables) - set(names)
    if unknown:
        raise ValueError(f"Parameters {sorted(unknown)} are not fitted parameters of the tissue model.")
    selected = np.array([name in variables for name in names])

    working_model = deepcopy(model)
    fitted_mask = working_model.include_fit
    normalized = np.zeros((xvalues.shape[0], len(names)))
    for i, values in enumerate(xvalues):
        working_model.set_parameters(dict(zip(working_model.parameter_names, values)))
        information = fisher_matrix(working_model, scheme, sigma)
        crlb = np.linalg.inv(information + np.finfo(float).eps)
        with np.errstate(divide='ignore', invalid='ignore'):
            normalized[i] = np.diag(crlb) / values[fitted_mask] ** 2

    score = float(np.mean(normalized[:, selected]))
    return score, names, normalized


def crlb_protocol_cost(x: np.ndarray, scheme: AcquisitionScheme, model: TissueModel, xvalues: np.ndarray,
                       sigma: float, variables: Optional[Sequence[str]] = None) -> float:
    """
    sim_crlb as an objective of the scaled free acquisition parameters. Singular or non finite scores cost ILL_LOSS.

    :param x: The scaled free acquisition parameters, the scheme is updated in place
    """
    scheme.set_scaled_free_parameter_vector(x)
    try:
        score, _, _ = sim_crlb(model, scheme, xvalues, sigma, variables)
    except np.linalg.LinAlgError:
        return ILL_LOSS
    if not np.isfinite(score) or score < 0:
        return ILL_LOSS
    return score


def optimize_crlb_protocol(scheme: AcquisitionScheme, model: TissueModel, xvalues: np.ndarray, sigma: float,
                           variables: Optional[Sequence[str]] = None,
                           method: Optional[Union[str, Optimizer]] = None,
                           solver_options: Optional[dict] = None) -> Tuple[AcquisitionScheme, OptimizeResult]:
    """
    Minimizes the CRLB score over the free parameters of a copy of the scheme. The result of the SOMA optimizer
    carries the cost history and the cost of the initial scheme (reference_fun).

    :param scheme: The initial scheme, it is not changed
    :param model: The tissue model
    :param xvalues: Tissue parameter values, shape (n_sets, n_parameters)
    :param sigma: Standard deviation of the gaussian noise
    :param variables: The fitted parameters the score averages over
    :param method: None for the SOMA optimizer or any method accepted by scipy.optimize.minimize
    :param solver_options: Options passed to scipy.optimize.minimize
    :return: The optimized scheme and the OptimizeResult
    """
    if method is None:
        method = SOMA()
    solver_options = {} if solver_options is None else solver_options

    scheme_copy = deepcopy(scheme)
    x0 = scheme_copy.scaled_free_parameter_vector
    bounds = [(-np.inf if lb is None else lb, np.inf if ub is None else ub)
              for lb, ub in scheme_copy.free_parameter_bounds_scaled]

    args = (scheme_copy, model, xvalues, sigma, variables)
    logger.info("Initial CRLB score: %e", crlb_protocol_cost(x0, *args))
    result = minimize(crlb_protocol_cost, x0, args=args, method=method, bounds=bounds,
                      constraints=scheme_copy.constraint_list, options=solver_options)

    scheme_copy.set_scaled_free_parameter_vector(result.x)
    logger.info("Final CRLB score: %e", result.fun)
    return scheme_copy, result
