"""
Tissue models map the acquisition parameters of a scheme to an MR signal.

Every model is a dictionary of named TissueParameters. It predicts the signal for a scheme, provides the Jacobian with
respect to its scaled parameters (the input of the CRLB losses) and fits its parameters to a measured signal.
"""
from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass
from typing import Dict, Union, List, Optional, Sequence

import numpy as np
from numpy.random import default_rng, Generator
from scipy.optimize import minimize, Bounds, OptimizeResult, curve_fit
from tabulate import tabulate

from .acquisition_scheme import AcquisitionScheme, InversionRecoveryAcquisitionScheme, EchoScheme, \
    ReducedDiffusionScheme
from .constants import BASE_SIGNAL_KEY, T2_KEY, T1_KEY, DIFFUSIVITY_KEY

RandomState = Union[None, int, Generator]

NOISE_MODELS = ('rician', 'gaussian')

# step on the scaled parameters for the central differences
JACOBIAN_STEP = 1e-3


@dataclass
class TissueParameter:
    # noinspection PyUnresolvedReferences
    """
    A scalar tissue parameter.

    :param value: Current value in physical units.
    :param scale: Order of magnitude of the value. Jacobians, CRLBs and fits work with value / scale.
    :param optimize: Protocol optimization minimizes the CRLB of this parameter.
    :param fit_flag: The parameter is estimated by fit, otherwise it is held at its value.
    :param fit_bounds: (lower, upper) of the fit in physical units, None for unbounded.
    :param fit_guess: Start value of the fit, the scale when omitted.
    """
    value: float
    scale: float
    optimize: bool = True
    fit_flag: bool = True
    fit_bounds: tuple = (0.0, np.inf)
    fit_guess: Optional[float] = None

    def __post_init__(self):
        if self.fit_guess is None:
            self.fit_guess = self.scale

    def __str__(self):
        return f'{self.value} (scale {self.scale}, optimize {self.optimize}, fit {self.fit_flag} in {self.fit_bounds})'


def add_noise(signal: np.ndarray, sigma: float, noise: str = 'rician', rng: RandomState = None) -> np.ndarray:
    """
    :param signal: Noise free signal
    :param sigma: Noise standard deviation, per channel for Rician noise
    :param noise: 'gaussian' adds real valued noise, 'rician' returns the magnitude after adding complex noise
    :param rng: Seed or Generator
    """
    if noise not in NOISE_MODELS:
        raise ValueError(f"Noise model should be one of {NOISE_MODELS}, got '{noise}'")

    rng = default_rng(rng)
    signal = np.asarray(signal, dtype=np.float64)
    real = signal + sigma * rng.standard_normal(signal.shape)
    if noise == 'gaussian':
        return real
    imaginary = sigma * rng.standard_normal(signal.shape)
    return np.hypot(real, imaginary)


class TissueModel(Dict[str, TissueParameter], ABC):
    """
    Base class of the tissue models.

    :param parameters: TissueParameters by name, in the order of the parameter vectors.
    """

    def __init__(self, parameters: Dict[str, TissueParameter]):
        super().__init__(parameters)

    @abstractmethod
    def __call__(self, scheme: AcquisitionScheme) -> np.ndarray:
        """
        :return: The signal of every measurement of the scheme for the current parameter values.
        """
        raise NotImplementedError()

    def __str__(self) -> str:
        rows = [[name, p.value, p.scale, p.optimize, p.fit_flag, p.fit_bounds] for name, p in self.items()]
        table = tabulate(rows, headers=["Tissue-parameter", "Value", "Scale", "Optimize", "Fit", "Fit Bounds"])
        return f'Tissue model with {len(self)} scalar parameters:\n{table}'

    def scaled_jacobian(self, scheme: AcquisitionScheme, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Derivative of the signal with respect to the scaled parameters by central differences. Models with a closed
        form derivative override this.

        :param scheme: The acquisition scheme.
        :param mask: Columns to return, the parameters with optimize set by default.
        :return: Array of shape (measurements, selected parameters).
        """
        mask = self.include_optimize if mask is None else mask

        center = self.scaled_parameter_vector
        steps = 0.5 * JACOBIAN_STEP * np.identity(center.size)
        difference = self._simulate_signals_scaled(center + steps, scheme) - \
            self._simulate_signals_scaled(center - steps, scheme)
        if not np.any(difference):
            raise RuntimeError("The signal does not change with any of the tissue parameters.")

        return (difference / JACOBIAN_STEP).T[:, mask]

    def _simulate_signals_scaled(self, parameter_vectors: np.ndarray, scheme: AcquisitionScheme) -> np.ndarray:
        """
        Signal for every row of scaled parameter values. The current values are restored afterwards.
        """
        current = self.scaled_parameter_vector
        signals = np.empty((parameter_vectors.shape[0], scheme.pulse_count))
        for row, vector in enumerate(parameter_vectors):
            self.set_scaled_parameters(vector)
            signals[row] = self(scheme)
        self.set_scaled_parameters(current)
        return signals

    def fit(self, scheme: AcquisitionScheme, signal: np.ndarray, method: str = 'L-BFGS-B', n_starts: int = 3,
            rng: RandomState = None, **fit_options) -> FittedModelMinimize:
        """
        Bounded least squares fit with scipy.optimize.minimize. The first run starts at the fit guess, further runs
        start at uniform draws within the finite fit bounds. The run with the lowest residual is kept.

        :param scheme: The acquisition scheme of the signal.
        :param signal: Measured signal, one value per measurement.
        :param method: Bounded minimize method.
        :param n_starts: Number of runs.
        :param rng: Seed or Generator of the random starts.
        """
        signal = np.asarray(signal, dtype=np.float64)
        if signal.shape != (scheme.pulse_count,):
            raise ValueError(f"The scheme has {scheme.pulse_count} measurements, the signal has shape {signal.shape}")

        rng = default_rng(rng)
        bounds = self.scaled_fit_bounds_all
        guess = np.clip(self._data_driven_guess(signal), bounds.lb, bounds.ub)
        finite = np.isfinite(bounds.lb) & np.isfinite(bounds.ub)
        args = (signal, scheme, deepcopy(self))

        best = None
        for start in range(max(n_starts, 1)):
            x0 = guess.copy()
            if start:
                x0[finite] = rng.uniform(bounds.lb[finite], bounds.ub[finite])
            result = minimize(fit_cost, x0=x0, args=args, bounds=bounds, method=method, **fit_options)
            if best is None or result.fun < best.fun:
                best = result

        return FittedModelMinimize(self, best)

    def _data_driven_guess(self, signal: np.ndarray) -> np.ndarray:
        guess = self.scaled_fit_initial_guess
        peak = np.max(np.abs(signal))
        if BASE_SIGNAL_KEY in self.fit_parameter_names and peak > 0:
            # S0 starts at the largest measured signal
            guess[self.fit_parameter_names.index(BASE_SIGNAL_KEY)] = peak / self[BASE_SIGNAL_KEY].scale
        return guess

    def derived_parameters(self, parameters: Dict[str, float]) -> Dict[str, float]:
        """
        Quantities computed from the parameter values, reported next to the fitted parameters. None by default.

        :param parameters: Every parameter value by name.
        """
        return {}

    def simulate_single_voxel(self, scheme: AcquisitionScheme, snr: float = 50., noise: str = 'rician',
                              rng: RandomState = None, **fit_options) -> Dict[str, float]:
        """
        Generates the signal of the current values, adds noise with σ = max(signal) / snr and fits it.

        :return: Fitted and derived parameters.
        """
        if snr <= 0:
            raise ValueError(f"SNR must be positive, got {snr}")
        rng = default_rng(rng)
        signal = self(scheme)
        noisy = add_noise(signal, np.max(signal) / snr, noise, rng)
        # the same generator seeds the random fit starts
        fit_options.setdefault("rng", rng)
        return self.fit(scheme, noisy, **fit_options).fitted_parameters

    @property
    def parameters(self) -> Dict[str, Union[float, np.ndarray]]:
        return {name: parameter.value for name, parameter in self.items()}

    @property
    def parameter_names(self) -> List[str]:
        return list(self)

    @property
    def fit_parameter_names(self) -> List[str]:
        return [name for name, parameter in self.items() if parameter.fit_flag]

    def set_parameters(self, values: Dict[str, float]) -> None:
        """
        :param values: New values in physical units by name.
        :raise KeyError: A name is not a parameter of the model.
        """
        unknown = set(values) - set(self)
        if unknown:
            raise KeyError(f"Not a parameter of {type(self).__name__}: {sorted(unknown)}")
        for name, value in values.items():
            self[name].value = value

    def set_scaled_parameters(self, new_parameter_values: Sequence[float]) -> None:
        for parameter, scaled in zip(self.values(), new_parameter_values):
            parameter.value = scaled * parameter.scale

    def set_scaled_fit_parameters(self, new_values: np.ndarray) -> None:
        """
        :param new_values: Scaled values of the parameters with fit_flag set, in model order.
        """
        fitted = [parameter for parameter in self.values() if parameter.fit_flag]
        if len(fitted) != len(new_values):
            raise ValueError(f"{len(fitted)} parameters are fitted, got {len(new_values)} values.")
        for parameter, scaled in zip(fitted, new_values):
            parameter.value = scaled * parameter.scale

    @property
    def scaled_parameter_vector(self) -> np.ndarray:
        return np.array([p.value / p.scale for p in self.values()], dtype=np.float64)

    @property
    def include_optimize(self) -> np.ndarray:
        return np.array([p.optimize for p in self.values()], dtype=bool)

    @property
    def include_fit(self) -> np.ndarray:
        return np.array([p.fit_flag for p in self.values()], dtype=bool)

    @property
    def scaled_fit_bounds_all(self) -> Bounds:
        """
        Bounds of the scaled fit parameters.
        """
        lower, upper = [], []
        for name, p in self.items():
            if not p.fit_flag:
                continue
            lb, ub = p.fit_bounds
            lower.append(-np.inf if lb is None else lb / p.scale)
            upper.append(np.inf if ub is None else ub / p.scale)
            if upper[-1] < lower[-1]:
                raise ValueError(f"Fit bounds of {name} are reversed: {p.fit_bounds}")
        return Bounds(np.array(lower, dtype=np.float64), np.array(upper, dtype=np.float64), keep_feasible=False)

    @property
    def scaled_fit_initial_guess(self) -> np.ndarray:
        return np.array([p.fit_guess / p.scale for p in self.values() if p.fit_flag], dtype=np.float64)


class ExponentialTissueModel(TissueModel):
    """
    Mono-exponential T2 decay S = S0 exp(-TE / T2).

    :param t2: T2 in s
    :param s0: Signal at TE = 0
    """

    def __init__(self, t2: float, s0: float = 1.0):
        super().__init__({
            T2_KEY: TissueParameter(value=t2, scale=1e-2, fit_bounds=(1e-4, 10.), fit_guess=5e-2),
            BASE_SIGNAL_KEY: TissueParameter(value=s0, scale=1.0, fit_bounds=(0., np.inf), fit_guess=1.0),
        })

    def __call__(self, scheme: EchoScheme) -> np.ndarray:
        return self[BASE_SIGNAL_KEY].value * np.exp(-scheme.echo_times / self[T2_KEY].value)

    def scaled_jacobian(self, scheme: EchoScheme, mask: Optional[np.ndarray] = None) -> np.ndarray:
        mask = self.include_optimize if mask is None else mask

        te, t2 = scheme.echo_times, self[T2_KEY].value
        decay = np.exp(-te / t2)
        d_t2 = self[BASE_SIGNAL_KEY].value * decay * te / t2 ** 2
        jac = np.column_stack([d_t2 * self[T2_KEY].scale, decay * self[BASE_SIGNAL_KEY].scale])
        return jac[:, mask]

    def fit(self, scheme: EchoScheme, signal: np.ndarray, rng: RandomState = None,
            **fit_options) -> FittedModelCurveFit:
        """
        scipy curve_fit started from a straight line fit to the log of the positive samples. The fit is
        deterministic, rng is accepted for a common fit signature and not used.

        :param fit_options: Keyword arguments of curve_fit.
        """
        te = scheme.echo_times
        signal = np.asarray(signal, dtype=np.float64)
        working_copy = deepcopy(self)

        def predict(_index, *scaled_values):
            working_copy.set_scaled_fit_parameters(np.array(scaled_values))
            return working_copy(scheme)

        bounds = self.scaled_fit_bounds_all
        p0 = np.clip(self._log_linear_guess(te, signal), bounds.lb, bounds.ub)
        fit_options.setdefault('maxfev', 1600)
        result = curve_fit(predict, np.arange(te.size), signal, p0, bounds=(bounds.lb, bounds.ub), full_output=True,
                           **fit_options)
        return FittedModelCurveFit(self, result)

    def _log_linear_guess(self, te: np.ndarray, signal: np.ndarray) -> np.ndarray:
        guess = {name: p.fit_guess / p.scale for name, p in self.items()}
        positive = signal > 0
        if np.count_nonzero(positive) >= 2 and np.ptp(te[positive]) > 0:
            slope, intercept = np.polyfit(te[positive], np.log(signal[positive]), 1)
            if slope < 0:
                guess[T2_KEY] = -1 / (slope * self[T2_KEY].scale)
            guess[BASE_SIGNAL_KEY] = np.exp(intercept) / self[BASE_SIGNAL_KEY].scale
        return np.array([guess[name] for name in self.fit_parameter_names])


class InversionRecoveryTissueModel(TissueModel):
    """
    Magnitude inversion recovery signal S = |S0 (1 - 2 exp(-TI / T1) + exp(-TR / T1))|.

    :param t1: T1 in s
    :param s0: Fully relaxed signal
    """

    def __init__(self, t1: float, s0: float = 1.0):
        super().__init__({
            T1_KEY: TissueParameter(value=t1, scale=1.0, fit_bounds=(1e-3, 10.), fit_guess=1.0),
            BASE_SIGNAL_KEY: TissueParameter(value=s0, scale=1.0, fit_bounds=(0., np.inf), fit_guess=1.0),
        })

    def __call__(self, scheme: InversionRecoveryAcquisitionScheme) -> np.ndarray:
        rate = 1 / self[T1_KEY].value
        recovery = 1 - 2 * np.exp(-scheme.inversion_times * rate) + np.exp(-scheme.repetition_times * rate)
        return np.abs(self[BASE_SIGNAL_KEY].value * recovery)


class RelaxedIsotropicModel(TissueModel):
    """
    Isotropic diffusion with T2 weighting, S = S0 exp(-b D) exp(-TE / T2). S0 is not optimized.

    :param t2: T2 in s
    :param diffusivity: D in mm²/s
    :param s0: Signal without weighting
    """

    def __init__(self, t2: float, diffusivity: float, s0: float = 1.0):
        super().__init__({
            T2_KEY: TissueParameter(value=t2, scale=1e-2, fit_bounds=(1e-4, 1.), fit_guess=5e-2),
            DIFFUSIVITY_KEY: TissueParameter(value=diffusivity, scale=1e-3, fit_bounds=(0., 5e-3), fit_guess=1e-3),
            BASE_SIGNAL_KEY: TissueParameter(value=s0, scale=1.0, optimize=False, fit_bounds=(0., np.inf)),
        })

    def _attenuation(self, scheme: ReducedDiffusionScheme) -> np.ndarray:
        return np.exp(-scheme.b_values * self[DIFFUSIVITY_KEY].value - scheme.echo_times / self[T2_KEY].value)

    def __call__(self, scheme: ReducedDiffusionScheme) -> np.ndarray:
        return self[BASE_SIGNAL_KEY].value * self._attenuation(scheme)

    def scaled_jacobian(self, scheme: ReducedDiffusionScheme, mask: Optional[np.ndarray] = None) -> np.ndarray:
        mask = self.include_optimize if mask is None else mask

        attenuation = self._attenuation(scheme)
        signal = self[BASE_SIGNAL_KEY].value * attenuation
        jac = np.column_stack([
            signal * scheme.echo_times / self[T2_KEY].value ** 2 * self[T2_KEY].scale,
            -signal * scheme.b_values * self[DIFFUSIVITY_KEY].scale,
            attenuation * self[BASE_SIGNAL_KEY].scale,
        ])
        return jac[:, mask]


class FittedModel(ABC):
    """
    Outcome of TissueModel.fit.

    :param model: The model that was fitted. Parameters without fit_flag keep their values.
    """

    def __init__(self, model: TissueModel):
        self.model = model

    @property
    @abstractmethod
    def scaled_fitted_parameters(self) -> np.ndarray:
        raise NotImplementedError()

    @property
    @abstractmethod
    def fit_information(self) -> dict:
        raise NotImplementedError()

    @property
    def fitted_parameters(self) -> Dict[str, float]:
        """
        Fitted values in physical units by name, followed by the derived parameters of the model.
        """
        names = self.model.fit_parameter_names
        fitted = {name: float(scaled * self.model[name].scale)
                  for name, scaled in zip(names, self.scaled_fitted_parameters)}
        fitted.update(self.model.derived_parameters({**self.model.parameters, **fitted}))
        return fitted


class FittedModelCurveFit(FittedModel):
    """
    :param curve_fit_result: Output of curve_fit with full_output=True.
    """

    def __init__(self, model: TissueModel, curve_fit_result: tuple):
        if len(curve_fit_result) != 5:
            raise ValueError("FittedModelCurveFit needs the full output of curve_fit.")
        super().__init__(model)
        popt, pcov, infodict, message, _flag = curve_fit_result
        self._popt = popt
        self._information = dict(infodict, covariance_matrix=pcov, message=message)

    @property
    def scaled_fitted_parameters(self) -> np.ndarray:
        return self._popt

    @property
    def fit_information(self) -> dict:
        return self._information


class FittedModelMinimize(FittedModel):
    def __init__(self, model: TissueModel, result: OptimizeResult):
        super().__init__(model)
        self.result = result
        if not result.success:
            warnings.warn(f"Tissue model fit did not converge: {result.message}", category=RuntimeWarning)

    @property
    def scaled_fitted_parameters(self) -> np.ndarray:
        return self.result.x

    @property
    def fit_information(self) -> dict:
        return dict(self.result)


def fit_cost(fit_parameter_vector: np.ndarray, signal: np.ndarray, scheme: AcquisitionScheme,
             model: TissueModel) -> float:
    """
    Residual sum of squares. The fit parameters of model are overwritten with fit_parameter_vector (scaled).
    """
    model.set_scaled_fit_parameters(fit_parameter_vector)
    return float(np.sum((signal - model(scheme)) ** 2))
