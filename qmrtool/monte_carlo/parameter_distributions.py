import math
from typing import Dict, Optional

import numpy as np
import pandas as pd
from matplotlib import pyplot as plt
from scipy.stats import norm

from ..tissue_model import TissueModel


def fit_gaussian(parameter_distribution: pd.DataFrame) -> pd.DataFrame:
    """
    Maximum likelihood normal fit per column, NaNs ignored.

    :return: DataFrame indexed by parameter name with the columns 'mean' and 'std'
    """
    rows = {name: dict(zip(('mean', 'std'), norm.fit(column.dropna())))
            for name, column in parameter_distribution.items()}
    return pd.DataFrame.from_dict(rows, orient='index')


def scale(mc_result: pd.DataFrame, ground_truth: TissueModel) -> pd.DataFrame:
    """
    (fitted - true) / scale for every column that is a parameter of the ground truth model. Other columns, such as
    derived parameters, are left out.
    """
    return pd.DataFrame({name: (column - ground_truth[name].value) / ground_truth[name].scale
                         for name, column in mc_result.items() if name in ground_truth})


def plot_parameter_distributions(mc_result: pd.DataFrame, gt_model: TissueModel,
                                 symbols: Optional[Dict[str, str]] = None,
                                 gaussian_fit: Optional[pd.DataFrame] = None,
                                 color: Optional[str] = None, fig_label: str = "parameter distributions",
                                 hist_label: str = 'parameter distribution',
                                 draw_gt: bool = True) -> plt.Figure:
    """
    One histogram per column of a Monte Carlo result, up to three per row. Parameters with a scale of 1e-3 or
    smaller (or 1e3 and larger) are plotted in units of that scale.

    :param mc_result: MonteCarloSimulation.run output
    :param gt_model: Model that generated the signal
    :param symbols: Axis label per parameter, as 'quantity unit'
    :param gaussian_fit: fit_gaussian output, drawn as a density curve
    :param color: Matplotlib color of histograms and curves
    :param fig_label: Figure label
    :param hist_label: Legend entry of the histograms
    :param draw_gt: Mark the ground truth value
    """
    fig = plt.figure(fig_label)
    n_cols = min(mc_result.shape[1], 3)
    n_rows = math.ceil(mc_result.shape[1] / n_cols)

    for position, (name, column) in enumerate(mc_result.items(), start=1):
        ax = fig.add_subplot(n_rows, n_cols, position)
        values = column.to_numpy(dtype=np.float64)

        truth = gt_model[name].value if name in gt_model else None
        order = int(np.round(np.log10(gt_model[name].scale))) if name in gt_model else 0
        unit_scale = 10. ** order if abs(order) >= 3 else 1.
        scale_label = rf'$10^{{{order}}}$' if abs(order) >= 3 else ''

        ax.hist(values[np.isfinite(values)] / unit_scale, bins='scott', alpha=0.5, color=color, label=hist_label,
                histtype='step')

        if gaussian_fit is not None and name in gaussian_fit.index:
            grid = np.linspace(*ax.get_xlim(), 100)
            mean, std = gaussian_fit.loc[name, 'mean'] / unit_scale, gaussian_fit.loc[name, 'std'] / unit_scale
            ax.plot(grid, norm.pdf(grid, mean, std), color=color, label="Gaussian fit")

        if symbols is not None and name in symbols:
            quantity, unit = symbols[name].split(sep=' ')
            ax.set_xlabel(f"{quantity} {scale_label} {unit}")
        else:
            ax.set_xlabel(f"{name} {scale_label}")
        ax.set_ylabel("Count")

        if draw_gt and truth is not None:
            ax.axvline(truth / unit_scale, color="black", label="Ground truth")
        ax.legend()

    fig.tight_layout()
    return fig
