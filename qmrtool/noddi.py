"""
Neurite orientation dispersion and density imaging (NODDI).

The tissue is modelled by three compartments:

 * intra-cellular: sticks with diffusivity di whose orientations follow a Watson distribution around (theta, phi) with
   concentration kappa,
 * extra-cellular: a cylindrically symmetric hindered tensor with Watson averaged diffusivities and the tortuosity
   approximation d_perp = di (1 - ficvf),
 * isotropic: free water with diffusivity diso.

The Watson averaged stick signal is evaluated through its zonal (Legendre) expansion where the Legendre coefficients of
 the stick response and of the Watson distribution follow from Gauss-Legendre quadrature.
"""
import itertools
from copy import deepcopy
from typing import Dict, Optional

import numpy as np
from numpy.polynomial.legendre import leggauss
from scipy.optimize import minimize
from scipy.special import eval_legendre

from .acquisition_scheme import DiffusionAcquisitionScheme
from .constants import BASE_SIGNAL_KEY, FICVF_KEY, DI_KEY, KAPPA_KEY, FISO_KEY, DISO_KEY, THETA_KEY, PHI_KEY, ODI_KEY
from .tissue_model import TissueModel, TissueParameter, FittedModelMinimize, RandomState, fit_cost
from .utils.sphere import angles_to_unitvectors, unitvector_to_angles

# b-values below this value [s/mm²] are treated as non diffusion weighted
B0_THRESHOLD = 10.0

KAPPA_MAX = 64.0

# Coarse grid of the second fitting stage
FICVF_GRID = np.linspace(0.05, 0.95, 10)
KAPPA_GRID = np.array([0.25, 0.5, 1., 2., 4., 8., 16., 32.])
FISO_GRID = np.array([0., 0.1, 0.2, 0.4, 0.7])


def orientation_dispersion_index(kappa: float) -> float:
    # ODI = 2/pi arctan(1/kappa), ODI = 1 for kappa = 0
    return float(2 / np.pi * np.arctan2(1., kappa))


def dti_fit(b_values: np.ndarray, b_vectors: np.ndarray, signal: np.ndarray) -> Optional[np.ndarray]:
    """
    Log-linear least squares fit of the diffusion tensor.

    :param b_values: b-values in s/mm²
    :param b_vectors: unit gradient directions of shape (N, 3)
    :param signal: measured signal
    :return: The 3x3 diffusion tensor in mm²/s, None if the tensor is not determined by the data.
    """
    positive = signal > 0
    b = b_values[positive]
    g = b_vectors[positive]
    gx, gy, gz = g.T
    design = np.column_stack([np.ones_like(b),
                              -b * gx ** 2, -b * gy ** 2, -b * gz ** 2,
                              -2 * b * gx * gy, -2 * b * gx * gz, -2 * b * gy * gz])

    if design.shape[0] < design.shape[1] or np.linalg.matrix_rank(design) < design.shape[1]:
        return None

    coefficients, *_ = np.linalg.lstsq(design, np.log(signal[positive]), rcond=None)
    dxx, dyy, dzz, dxy, dxz, dyz = coefficients[1:]
    return np.array([[dxx, dxy, dxz],
                     [dxy, dyy, dyz],
                     [dxz, dyz, dzz]])


class NODDIModel(TissueModel):
    """
    Watson dispersed sticks, tortuous hindered compartment and isotropic compartment.

    :param ficvf: Intra-cellular volume fraction (of the non isotropic part).
    :param kappa: Watson concentration parameter.
    :param fiso: Isotropic volume fraction.
    :param theta: Polar angle of the mean fibre orientation in rad.
    :param phi: Azimuthal angle of the mean fibre orientation in rad.
    :param s0: Non diffusion weighted signal.
    :param di: Intrinsic diffusivity in mm²/s, fixed by default.
    :param diso: Isotropic diffusivity in mm²/s, fixed by default.
    :param max_order: Highest (even) order of the Legendre expansion.
    :param n_quadrature: Number of Gauss-Legendre nodes.
    """

    def __init__(self, ficvf: float = 0.5, kappa: float = 2.0, fiso: float = 0.1, theta: float = 0.0,
                 phi: float = 0.0, s0: float = 1.0, di: float = 1.7e-3, diso: float = 3e-3,
                 max_order: int = 24, n_quadrature: int = 100):
        super().__init__({
            FICVF_KEY: TissueParameter(value=ficvf, scale=1.0, fit_bounds=(0.0, 1.0), fit_guess=0.5),
            DI_KEY: TissueParameter(value=di, scale=1e-3, optimize=False, fit_flag=False, fit_bounds=(0.0, 3e-3),
                                    fit_guess=1.7e-3),
            KAPPA_KEY: TissueParameter(value=kappa, scale=1.0, fit_bounds=(0.0, KAPPA_MAX), fit_guess=2.0),
            FISO_KEY: TissueParameter(value=fiso, scale=1.0, fit_bounds=(0.0, 1.0), fit_guess=0.1),
            DISO_KEY: TissueParameter(value=diso, scale=1e-3, optimize=False, fit_flag=False,
                                      fit_bounds=(0.0, 4e-3), fit_guess=3e-3),
            THETA_KEY: TissueParameter(value=theta, scale=1.0, optimize=False, fit_bounds=(0.0, np.pi),
                                       fit_guess=0.0),
            PHI_KEY: TissueParameter(value=phi, scale=1.0, optimize=False, fit_bounds=(-np.pi, np.pi),
                                     fit_guess=0.0),
            BASE_SIGNAL_KEY: TissueParameter(value=s0, scale=1.0, fit_bounds=(0.0, np.inf), fit_guess=1.0),
        })

        if max_order < 0 or max_order % 2 != 0:
            raise ValueError("The maximal order of the Legendre expansion should be even and non negative.")
        if n_quadrature < 2:
            raise ValueError("At least two quadrature nodes are needed.")

        self._orders = np.arange(0, max_order + 1, 2)
        self._nodes, self._weights = leggauss(n_quadrature)
        # P_l(t) at the quadrature nodes, shape (n_orders, n_quadrature)
        self._legendre_nodes = eval_legendre(self._orders[:, np.newaxis], self._nodes[np.newaxis, :])

    def __call__(self, scheme: DiffusionAcquisitionScheme) -> np.ndarray:
        if not isinstance(scheme, DiffusionAcquisitionScheme):
            raise ValueError("Unsupported scheme type")

        b_values = scheme.b_values
        cos_angle = scheme.b_vectors @ self.orientation

        ficvf = self[FICVF_KEY].value
        fiso = self[FISO_KEY].value
        s0 = self[BASE_SIGNAL_KEY].value

        e_ic = self.intra_cellular_signal(b_values, cos_angle)
        e_ec = self.extra_cellular_signal(b_values, cos_angle)
        e_iso = np.exp(-b_values * self[DISO_KEY].value)

        return s0 * ((1 - fiso) * (ficvf * e_ic + (1 - ficvf) * e_ec) + fiso * e_iso)

    @property
    def orientation(self) -> np.ndarray:
        return angles_to_unitvectors(np.array([[self[THETA_KEY].value, self[PHI_KEY].value]]))[0]

    def watson_coefficients(self) -> np.ndarray:
        """
        Legendre coefficients of the Watson distribution normalised to the zeroth order, which is one.
        """
        density = np.exp(self[KAPPA_KEY].value * (self._nodes ** 2 - 1)) * self._weights
        return self._legendre_nodes @ density / np.sum(density)

    def watson_mean_squared_cosine(self) -> float:
        """
        <(n.mu)²> over the Watson distribution.
        """
        density = np.exp(self[KAPPA_KEY].value * (self._nodes ** 2 - 1)) * self._weights
        return float(np.sum(density * self._nodes ** 2) / np.sum(density))

    def intra_cellular_signal(self, b_values: np.ndarray, cos_angle: np.ndarray) -> np.ndarray:
        di = self[DI_KEY].value
        # stick response coefficients k_l(b), shape (N, n_orders)
        stick = np.exp(-np.outer(b_values * di, self._nodes ** 2))
        stick_coefficients = stick @ (self._legendre_nodes * self._weights).T

        legendre_gradients = eval_legendre(self._orders[np.newaxis, :], cos_angle[:, np.newaxis])
        factors = (2 * self._orders + 1) / 2 * self.watson_coefficients()
        return np.sum(factors * stick_coefficients * legendre_gradients, axis=-1)

    def extra_cellular_signal(self, b_values: np.ndarray, cos_angle: np.ndarray) -> np.ndarray:
        di = self[DI_KEY].value
        d_perp = di * (1 - self[FICVF_KEY].value)
        mean_squared_cosine = self.watson_mean_squared_cosine()

        d_par_eff = d_perp + (di - d_perp) * mean_squared_cosine
        d_perp_eff = d_perp + (di - d_perp) * (1 - mean_squared_cosine) / 2
        return np.exp(-b_values * (d_perp_eff + (d_par_eff - d_perp_eff) * cos_angle ** 2))

    def derived_parameters(self, parameters: Dict[str, float]) -> Dict[str, float]:
        return {ODI_KEY: orientation_dispersion_index(parameters[KAPPA_KEY])}

    def fit(self, scheme: DiffusionAcquisitionScheme, signal: np.ndarray, method: str = 'L-BFGS-B',
            rng: RandomState = None, **fit_options) -> FittedModelMinimize:
        """
        Three stage fit:
         1. S0 from the non diffusion weighted measurements and the fibre orientation from a log-linear DTI fit,
         2. a coarse grid search over ficvf, kappa and fiso,
         3. bounded least squares polishing of all fitted parameters.

        :param scheme: A diffusion acquisition scheme
        :param signal: The (noisy) signal
        :param method: A bounded solver available in scipy.optimize.minimize
        :param rng: Not used, the grid search makes the fit deterministic
        :return: A FittedModelMinimize
        """
        if not isinstance(scheme, DiffusionAcquisitionScheme):
            raise ValueError("Unsupported scheme type")
        signal = np.asarray(signal, dtype=np.float64)
        if signal.shape != (scheme.pulse_count,):
            raise ValueError(f"Expected a signal of shape ({scheme.pulse_count},), got {signal.shape}")

        model = deepcopy(self)
        b_values = scheme.b_values

        # Stage 1
        s0_guess = self._base_signal_guess(b_values, signal)
        if model[BASE_SIGNAL_KEY].fit_flag:
            # working in units of the base signal keeps the cost function well scaled
            model[BASE_SIGNAL_KEY].scale = s0_guess
            model[BASE_SIGNAL_KEY].value = s0_guess

        if model[THETA_KEY].fit_flag or model[PHI_KEY].fit_flag:
            tensor = dti_fit(b_values, scheme.b_vectors, signal)
            if tensor is not None and np.all(np.isfinite(tensor)):
                _, eigenvectors = np.linalg.eigh(tensor)
                principal = eigenvectors[:, -1]
                if principal[2] < 0:
                    principal = -principal
                theta, phi = unitvector_to_angles(principal[np.newaxis, :])[0]
                if model[THETA_KEY].fit_flag:
                    model[THETA_KEY].value = theta
                if model[PHI_KEY].fit_flag:
                    model[PHI_KEY].value = phi

        # Stage 2
        grid = {
            FICVF_KEY: FICVF_GRID,
            KAPPA_KEY: KAPPA_GRID,
            FISO_KEY: FISO_GRID,
        }
        grid = {key: values for key, values in grid.items() if model[key].fit_flag}
        best_cost = np.inf
        best_point = None
        for point in itertools.product(*grid.values()):
            model.set_parameters(dict(zip(grid.keys(), point)))
            cost = np.sum((signal - model(scheme)) ** 2)
            if cost < best_cost:
                best_cost = cost
                best_point = point
        if best_point is not None:
            model.set_parameters(dict(zip(grid.keys(), best_point)))

        # Stage 3
        bounds = model.scaled_fit_bounds_all
        x0 = np.array([model[key].value / model[key].scale for key in model.fit_parameter_names])
        x0 = np.clip(x0, bounds.lb, bounds.ub)
        result = minimize(fit_cost, x0=x0, args=(signal, scheme, deepcopy(model)), bounds=bounds, method=method,
                          **fit_options)

        return FittedModelMinimize(model, result)

    @staticmethod
    def _base_signal_guess(b_values: np.ndarray, signal: np.ndarray) -> float:
        b0 = b_values < B0_THRESHOLD
        if np.any(b0) and np.mean(signal[b0]) > 0:
            return float(np.mean(signal[b0]))
        max_signal = float(np.max(np.abs(signal)))
        return max_signal if max_signal > 0 else 1.0
