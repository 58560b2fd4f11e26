"""
Multi voxel simulation of normally distributed tissue parameters and the analysis of the fitted values against the
ground truth.
"""
import logging
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
from numpy.random import default_rng, Generator
from tqdm import tqdm

from ..acquisition_scheme import AcquisitionScheme
from ..tissue_model import TissueModel

logger = logging.getLogger(__name__)


@dataclass
class SimRndResult:
    """
    :param ground_truth: The simulated parameters (one row per voxel) including derived parameters
    :param fitted: The fitted parameters (one row per voxel)
    :param time: Elapsed time of the simulation in seconds
    :param analysis: Error, PctError, MPE, RMSE and NRMSE, see analyze_results
    """
    ground_truth: pd.DataFrame
    fitted: pd.DataFrame
    time: float
    analysis: Dict[str, Union[pd.DataFrame, pd.Series]]


def draw_random_parameters(model: TissueModel, n_voxels: int,
                           mean: Optional[Dict[str, float]] = None,
                           std: Optional[Dict[str, float]] = None,
                           rng: Union[None, int, Generator] = None) -> pd.DataFrame:
    """
    Draws normally distributed values of the fitted tissue parameters, clipped to their fit bounds.

    :param model: The tissue model
    :param n_voxels: The number of voxels
    :param mean: The mean per parameter, defaults to the current parameter values
    :param std: The standard deviation per parameter, defaults to 10% of the mean
    :param rng: numpy Generator or seed
    :return: DataFrame with a column per fitted parameter and a row per voxel
    """
    if n_voxels < 1:
        raise ValueError("At least one voxel is needed.")

    rng = default_rng(rng)
    mean = {} if mean is None else mean
    std = {} if std is None else std

    unknown = (set(mean) | set(std)) - set(model.fit_parameter_names)
    if unknown:
        raise ValueError(f"Parameters {sorted(unknown)} are not fitted parameters of the tissue model.")

    parameters = {}
    for name in model.fit_parameter_names:
        parameter_mean = mean.get(name, model[name].value)
        parameter_std = std.get(name, 0.1 * abs(parameter_mean))
        if parameter_std < 0:
            raise ValueError(f"Negative standard deviation for {name}")

        lb, ub = model[name].fit_bounds
        values = rng.normal(parameter_mean, parameter_std, size=n_voxels)
        parameters[name] = np.clip(values, -np.inf if lb is None else lb, np.inf if ub is None else ub)

    return pd.DataFrame(parameters)


def simulate_random(model: TissueModel, scheme: AcquisitionScheme, parameters: pd.DataFrame, snr: float = 50.,
                    noise: str = 'rician', fit_options: Optional[dict] = None,
                    rng: Union[None, int, Generator] = None) -> SimRndResult:
    """
    Simulates and fits a noisy signal for every voxel (row) of parameters and compares the fitted values with the
    ground truth.

    :param model: The tissue model, parameters that are not in the table keep their current value
    :param scheme: The acquisition scheme
    :param parameters: DataFrame with tissue parameter values, one row per voxel, see draw_random_parameters
    :param snr: Signal to noise ratio with respect to the maximal signal
    :param noise: 'rician' or 'gaussian'
    :param fit_options: Keyword arguments for the fit of the tissue model
    :param rng: numpy Generator or seed
    :return: The SimRndResult
    """
    rng = default_rng(rng)
    fit_options = {} if fit_options is None else fit_options

    ground_truth = []
    fitted = []
    start = time.perf_counter()
    for _, row in tqdm(parameters.iterrows(), total=len(parameters), desc="Simulating data"):
        voxel_model = deepcopy(model)
        voxel_model.set_parameters(row.to_dict())

        truth = voxel_model.parameters
        truth.update(voxel_model.derived_parameters(truth))
        ground_truth.append(truth)

        fitted.append(voxel_model.simulate_single_voxel(scheme, snr=snr, noise=noise, rng=rng, **fit_options))
    elapsed = time.perf_counter() - start
    logger.info("Simulated %d voxels in %.1f s", len(parameters), elapsed)

    ground_truth = pd.DataFrame(ground_truth, index=parameters.index).astype('float64')
    fitted = pd.DataFrame(fitted, index=parameters.index).astype('float64')
    return SimRndResult(ground_truth=ground_truth, fitted=fitted, time=elapsed,
                        analysis=analyze_results(ground_truth, fitted))


def analyze_results(ground_truth: pd.DataFrame, fitted: pd.DataFrame) -> Dict[str, Union[pd.DataFrame, pd.Series]]:
    """
    Compares fitted values with the ground truth for the fields present in both.

    * Error: fitted - ground truth
    * PctError: 100 Error / ground truth
    * MPE: mean percentage error
    * RMSE: root mean squared error
    * NRMSE: RMSE normalised by the range (max - min) of the ground truth

    :param ground_truth: The input parameters, one row per voxel
    :param fitted: The fitted parameters, one row per voxel
    :return: Dictionary with the per voxel errors as DataFrames and the summary statistics as Series
    """
    fields = [field for field in ground_truth.columns if field in fitted.columns]
    truth = ground_truth[fields]
    error = fitted[fields] - truth

    # division by a zero ground truth gives inf, which is reported as is. Failed fits (NaN) propagate into MPE,
    # RMSE and NRMSE
    with np.errstate(divide='ignore', invalid='ignore'):
        pct_error = 100 * error / truth
        rmse = np.sqrt((error ** 2).mean(skipna=False))
        value_range = truth.max() - truth.min()
        nrmse = rmse / value_range

    return {
        'Error': error,
        'PctError': pct_error,
        'MPE': pct_error.mean(skipna=False),
        'RMSE': rmse,
        'NRMSE': nrmse,
    }
