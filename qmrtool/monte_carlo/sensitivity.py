"""
Sensitivity analysis: each fitted tissue parameter is varied over a grid spanning its bounds while the others stay at
their nominal value. Every grid point is simulated and fitted a number of times.
"""
import logging
from copy import deepcopy
from dataclasses import dataclass
from typing import Dict, Optional, List, Tuple, Union

import numpy as np
import pandas as pd
from numpy.random import default_rng, Generator
from tqdm import tqdm

from ..acquisition_scheme import AcquisitionScheme
from ..constants import SENSITIVITY_STEPS
from ..tissue_model import TissueModel

logger = logging.getLogger(__name__)


@dataclass
class SensitivityResult:
    """
    Sensitivity of all fitted fields to the variation of a single tissue parameter.

    :param parameter: Name of the varied parameter
    :param grid: The values of the varied parameter
    :param fits: Per fitted field an array of shape (n_steps, runs)
    :param mean: Mean over the runs, indexed by the grid, a column per field
    :param std: Standard deviation over the runs (ddof 1)
    :param ground_truth: The true values of all fields at every grid point
    """
    parameter: str
    grid: np.ndarray
    fits: Dict[str, np.ndarray]
    mean: pd.DataFrame
    std: pd.DataFrame
    ground_truth: pd.DataFrame


def simulate_sensitivity(model: TissueModel, scheme: AcquisitionScheme, snr: float = 50., runs: int = 10,
                         varied: Optional[List[str]] = None, n_steps: int = SENSITIVITY_STEPS,
                         bounds: Optional[Dict[str, Tuple[float, float]]] = None, noise: str = 'rician',
                         fit_options: Optional[dict] = None,
                         rng: Union[None, int, Generator] = None) -> Dict[str, SensitivityResult]:
    """
    :param model: The tissue model at its nominal parameter values
    :param scheme: The acquisition scheme
    :param snr: Signal to noise ratio with respect to the maximal signal
    :param runs: Number of noisy simulations per grid point
    :param varied: The parameters to vary, defaults to all fitted parameters with finite fit bounds
    :param n_steps: Number of grid points per parameter
    :param bounds: Grid limits per parameter, defaults to the fit bounds
    :param noise: 'rician' or 'gaussian'
    :param fit_options: Keyword arguments for the fit of the tissue model
    :param rng: numpy Generator or seed
    :return: The SensitivityResult per varied parameter
    :raise ValueError: unknown parameter, invalid number of steps or runs or an explicitly varied parameter without
                       finite limits
    """
    if runs < 1 or n_steps < 1:
        raise ValueError("The number of runs and steps should be positive.")

    rng = default_rng(rng)
    bounds = {} if bounds is None else bounds
    fit_options = {} if fit_options is None else fit_options

    explicit = varied is not None
    if varied is None:
        varied = model.fit_parameter_names

    results = {}
    for name in varied:
        if name not in model:
            raise ValueError(f"Unknown tissue parameter {name}")

        lb, ub = bounds.get(name, model[name].fit_bounds)
        if lb is None or ub is None or not (np.isfinite(lb) and np.isfinite(ub)):
            if explicit:
                raise ValueError(f"Parameter {name} has infinite bounds, provide finite limits through bounds.")
            logger.warning("Skipping %s in the sensitivity analysis because of its infinite bounds", name)
            continue

        grid = np.linspace(lb, ub, n_steps)
        results[name] = _vary_parameter(model, scheme, name, grid, snr, runs, noise, fit_options, rng)

    return results


def _vary_parameter(model: TissueModel, scheme: AcquisitionScheme, name: str, grid: np.ndarray, snr: float,
                    runs: int, noise: str, fit_options: dict, rng: Generator) -> SensitivityResult:
    fits = {}
    ground_truth = []
    for i, value in enumerate(tqdm(grid, desc=f"Simulating {name} sensitivity data")):
        grid_model = deepcopy(model)
        grid_model.set_parameters({name: value})

        truth = grid_model.parameters
        truth.update(grid_model.derived_parameters(truth))
        ground_truth.append(truth)

        for run in range(runs):
            fitted = grid_model.simulate_single_voxel(scheme, snr=snr, noise=noise, rng=rng, **fit_options)
            for field, fitted_value in fitted.items():
                if field not in fits:
                    fits[field] = np.full((len(grid), runs), np.nan)
                fits[field][i, run] = fitted_value

    index = pd.Index(grid, name=name)
    mean = pd.DataFrame({field: np.mean(values, axis=1) for field, values in fits.items()}, index=index)
    if runs > 1:
        std = pd.DataFrame({field: np.std(values, axis=1, ddof=1) for field, values in fits.items()}, index=index)
    else:
        std = pd.DataFrame({field: np.full(len(grid), np.nan) for field in fits}, index=index)

    ground_truth = pd.DataFrame(ground_truth, index=index).astype('float64')
    return SensitivityResult(parameter=name, grid=grid, fits=fits, mean=mean, std=std, ground_truth=ground_truth)
