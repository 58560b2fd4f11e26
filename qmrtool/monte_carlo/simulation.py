"""
Monte Carlo estimate of the distribution of fitted tissue parameters for a fixed acquisition scheme and noise model.
"""
import logging
import pathlib
from typing import Union, Optional

import pandas as pd
from numpy.random import default_rng, Generator
from scipy.stats._distn_infrastructure import rv_continuous_frozen
from tqdm import tqdm

from ..acquisition_scheme import AcquisitionScheme
from ..tissue_model import TissueModel
from ..utils.IO import HiddenPrints, save_pickle

logger = logging.getLogger(__name__)


class MonteCarloSimulation:
    """
    Fits the model n_sim times to its own signal plus independent noise draws.

    :param scheme: Scheme that generates the signal.
    :param model: Ground truth model, also used for the fits.
    :param noise_distribution: Frozen scipy distribution, sampled once per measurement and repetition.
    :param n_sim: Number of noisy repetitions.
    :param fit_options: Keyword arguments of model.fit.
    :param rng: Seed or Generator of the noise.
    """

    def __init__(self, scheme: AcquisitionScheme, model: TissueModel, noise_distribution: rv_continuous_frozen,
                 n_sim: int, fit_options: Optional[dict] = None, rng: Union[None, int, Generator] = None):
        if n_sim < 1:
            raise ValueError(f"n_sim should be positive, got {n_sim}.")
        self.scheme = scheme
        self.model = model
        self.noise_distribution = noise_distribution
        self.n_sim = n_sim
        self.fit_options = fit_options or {}
        self._rng = default_rng(rng)
        self._result = None

    def __str__(self) -> str:
        noise = f"{self.noise_distribution.dist.name}{self.noise_distribution.kwds}"
        return f"{self.n_sim} Monte Carlo repetitions with {noise} noise\n{self.scheme}\n{self.model}"

    def run(self) -> pd.DataFrame:
        """
        :return: Fitted parameters, one row per repetition.
        """
        signal = self.model(self.scheme)

        rows = []
        for _ in tqdm(range(self.n_sim), desc="Monte Carlo"):
            noisy = signal + self.noise_distribution.rvs(size=signal.size, random_state=self._rng)
            # silences solvers that print
            with HiddenPrints():
                fitted = self.model.fit(self.scheme, noisy, **self.fit_options)
            rows.append(fitted.fitted_parameters)

        self._result = pd.DataFrame(rows).astype('float64')
        logger.info("Monte Carlo simulation done, %d repetitions", self.n_sim)
        return self._result

    @property
    def result(self) -> Optional[pd.DataFrame]:
        return self._result

    def save(self, result_path: Union[pathlib.Path, str]) -> None:
        """
        :raise RuntimeError: run has not been called yet.
        """
        if self._result is None:
            raise RuntimeError("Nothing to save, run the simulation first.")
        save_pickle(self._result, result_path)
