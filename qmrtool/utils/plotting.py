import math
from typing import Optional, List

import matplotlib.pyplot as plt
import numpy as np
from scipy.optimize import OptimizeResult

from ..acquisition_scheme import AcquisitionScheme
from ..monte_carlo.random_parameters import SimRndResult
from ..monte_carlo.sensitivity import SensitivityResult
from ..tissue_model import TissueModel


def _grid_layout(n: int) -> (int, int):
    n_cols = min(n, 3)
    return math.ceil(n / n_cols), n_cols


def plot_soma_history(result: OptimizeResult, ylabel: str = "CRLB", fig_label: str = "optimization history") \
        -> plt.Figure:
    """
    Plots the best cost after every migration of a SOMA run, with the cost of the initial point as a reference line.

    :param result: The OptimizeResult of the SOMA optimizer
    :param ylabel: Label of the cost axis
    :param fig_label: Figure label
    :return: The figure
    """
    if 'history' not in result:
        raise ValueError("The optimization result has no history, was it produced by the SOMA optimizer?")

    history = np.asarray(result.history)
    migrations = np.arange(1, len(history) + 1)

    fig, ax = plt.subplots(num=fig_label)
    ax.plot(migrations, history, '-*', label="Leader")
    reference = result.get('reference_fun')
    if reference is not None and np.isfinite(reference):
        ax.plot([1, max(len(history), 1)], [reference, reference], '--r', label="Initial protocol")
    ax.set_xlabel("migrations")
    ax.set_ylabel(ylabel)
    ax.set_title("optimization history : SOMA All to One")
    ax.legend()
    fig.tight_layout()
    return fig


def plot_sensitivity(result: SensitivityResult, fields: Optional[List[str]] = None,
                     fig_label: Optional[str] = None) -> plt.Figure:
    """
    Plots the mean ± standard deviation of the fitted fields against the grid of the varied parameter. The ground
    truth is drawn as a dashed line, for the varied parameter itself this is the identity line.

    :param result: A SensitivityResult
    :param fields: The fields to plot, defaults to all fitted fields
    :param fig_label: Figure label, defaults to the name of the varied parameter
    :return: The figure
    """
    if fields is None:
        fields = list(result.mean.columns)

    fig = plt.figure(fig_label if fig_label is not None else f"{result.parameter} sensitivity")
    n_rows, n_cols = _grid_layout(len(fields))
    for i, field in enumerate(fields):
        ax = fig.add_subplot(n_rows, n_cols, i + 1)
        mean = result.mean[field].to_numpy()
        std = result.std[field].to_numpy()
        ax.errorbar(result.grid, mean, yerr=std, fmt='o', capsize=3, label="fitted")
        if field in result.ground_truth:
            ax.plot(result.grid, result.ground_truth[field].to_numpy(), '--k', label="ground truth")
        ax.set_xlabel(result.parameter)
        ax.set_ylabel(field)
        ax.legend()

    fig.tight_layout()
    return fig


def plot_simrnd(result: SimRndResult, fig_label: str = "fitted vs true") -> plt.Figure:
    """
    Scatter plots of the fitted against the true values of every analysed field, with the identity line.

    :param result: A SimRndResult
    :param fig_label: Figure label
    :return: The figure
    """
    fields = list(result.analysis['RMSE'].index)
    fig = plt.figure(fig_label)
    n_rows, n_cols = _grid_layout(len(fields))
    for i, field in enumerate(fields):
        ax = fig.add_subplot(n_rows, n_cols, i + 1)
        truth = result.ground_truth[field].to_numpy()
        fitted = result.fitted[field].to_numpy()
        ax.plot(truth, fitted, '.', alpha=0.5)
        limits = [np.nanmin(truth), np.nanmax(truth)]
        ax.plot(limits, limits, '--k')
        ax.set_xlabel(f"{field} (true)")
        ax.set_ylabel(f"{field} (fitted)")
        ax.set_title(f"NRMSE = {result.analysis['NRMSE'][field]:.3g}")

    fig.tight_layout()
    return fig


def plot_acquisition_parameters(scheme: AcquisitionScheme, title: Optional[str] = None) -> plt.Figure:
    """
    Makes subplots of all the acquisition parameters

    :param scheme: The acquisition scheme
    :param title: Figure title
    :return: matplotlib figure
    """
    fig = plt.figure(title)
    n_rows, n_cols = _grid_layout(len(scheme))
    for i, parameter in enumerate(scheme):
        ax = fig.add_subplot(n_rows, n_cols, i + 1)
        y = scheme[parameter].values
        ax.plot(np.arange(len(y)) + 1, y, '.')
        ax.set_xlabel("Measurement")
        ax.set_ylabel(f"{parameter} [{scheme[parameter].unit}]")
    if title is not None:
        fig.suptitle(title)
    fig.tight_layout()
    return fig


def plot_signal(scheme: AcquisitionScheme, model: TissueModel, noisy_signal: Optional[np.ndarray] = None,
                fitted_model: Optional[TissueModel] = None, fig_label: str = "signal plot") -> plt.Figure:
    """
    Plots the signal of a model per measurement, optionally with noisy data and the signal of a fitted model.
    """
    fig, ax = plt.subplots(num=fig_label)
    measurements = np.arange(scheme.pulse_count) + 1
    ax.plot(measurements, model(scheme), '.', label="ground truth")
    if noisy_signal is not None:
        ax.plot(measurements, noisy_signal, 'x', label="data")
    if fitted_model is not None:
        ax.plot(measurements, fitted_model(scheme), '-', label="fit")
    ax.set_xlabel('Measurement')
    ax.set_ylabel('Signal')
    ax.legend()
    fig.tight_layout()
    return fig
