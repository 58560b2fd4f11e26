from typing import Callable

import numpy as np
from numba import njit

from ..acquisition_scheme import AcquisitionScheme
from ..tissue_model import TissueModel
from ..utils.math import cartesian_product, diagonal

# A condition number of 10^k costs about k significant digits. Matrices that would keep fewer than 2 of the ~7 float32
# digits count as ill conditioned.
CONDITION_THRESHOLD = 1e-2 / np.finfo(np.float32).eps

ILL_LOSS = 1e30

InformationFunction = Callable[[np.ndarray, np.ndarray, float], np.ndarray]


@njit
def fisher_information_gauss(jac: np.ndarray, _signal: np.ndarray, noise_var: float) -> np.ndarray:
    """
    Gaussian noise: I = JᵀJ / σ², Alexander (2008) eq. A2, DOI 10.1002/mrm.21646.

    :param jac: Jacobian of shape (measurements, parameters)
    :param _signal: unused
    :param noise_var: σ²
    """
    return (jac.T @ jac) / noise_var


@njit
def fisher_information_rice(jac: np.ndarray, signal: np.ndarray, noise_var: float) -> np.ndarray:
    """
    Rician noise. The expectation over the Bessel function ratio is replaced by the rational approximation of
    DOI 10.1109/TIT.1967.1054037 (eq. 8), accurate to about 4%.

    :param jac: Jacobian of shape (measurements, parameters)
    :param signal: Noise free signal per measurement
    :param noise_var: σ²
    """
    sigma = np.sqrt(noise_var)
    z = 2 * signal * (sigma + signal) / (sigma + 2 * signal)
    weights = (z - signal ** 2) / noise_var ** 2
    return np.sum(cartesian_product(jac) * weights, axis=-1)


class LossFunction:
    """
    Interface of the protocol losses. Every loss maps a Jacobian of shape (measurements, parameters), the noise free
    signal and the noise variance to a scalar.
    """

    def __call__(self, jac: np.ndarray, signal: np.ndarray, noise_var: float) -> float:
        raise NotImplementedError()

    def crlb(self, jac: np.ndarray, signal: np.ndarray, noise_var: float) -> np.ndarray:
        """
        :return: The Cramér-Rao lower bound of every parameter.
        """
        raise NotImplementedError()


class CrlbLoss(LossFunction):
    """
    Total variance bound: the sum of the CRLBs of the scaled tissue parameters.

    :param information_func: Computes the Fisher information matrix for a noise distribution.
    """

    def __init__(self, information_func: InformationFunction):
        self.information_func = information_func

    def information(self, jac: np.ndarray, signal: np.ndarray, noise_var: float) -> np.ndarray:
        return self.information_func(np.ascontiguousarray(jac, dtype=np.float64),
                                     np.ascontiguousarray(signal, dtype=np.float64), float(noise_var))

    def __call__(self, jac: np.ndarray, signal: np.ndarray, noise_var: float) -> float:
        """
        trace(I⁻¹) evaluated as the sum of the reciprocal eigenvalues of I. Ill conditioned or non finite information
        gives ILL_LOSS.
        """
        information = self.information(jac, signal, noise_var)
        if not np.all(np.isfinite(information)) or np.linalg.cond(information) > CONDITION_THRESHOLD:
            return ILL_LOSS
        return float(np.sum(1 / np.linalg.eigvalsh(information)))

    def crlb(self, jac: np.ndarray, signal: np.ndarray, noise_var: float) -> np.ndarray:
        return diagonal(np.linalg.inv(self.information(jac, signal, noise_var)))


def _jacobian_and_signal(scheme: AcquisitionScheme, model: TissueModel):
    return (np.asarray(model.scaled_jacobian(scheme), dtype=np.float64),
            np.asarray(model(scheme), dtype=np.float64))


def compute_loss(scheme: AcquisitionScheme,
                 model: TissueModel,
                 noise_var: float,
                 loss: LossFunction) -> float:
    """
    Loss of a scheme for the optimized parameters of a model.
    """
    jac, signal = _jacobian_and_signal(scheme, model)
    return loss(jac, signal, noise_var)


def compute_crlb(scheme: AcquisitionScheme,
                 model: TissueModel,
                 noise_var: float,
                 loss: LossFunction) -> np.ndarray:
    """
    CRLBs of the scaled tissue parameters that are marked for optimization.
    """
    jac, signal = _jacobian_and_signal(scheme, model)
    return loss.crlb(jac, signal, noise_var)


def scipy_loss(x: np.ndarray, scheme: AcquisitionScheme, model: TissueModel, noise_variance: float,
               loss: LossFunction, scaling_factor: float = 1.0) -> float:
    """
    Objective for the scipy optimizers.

    :param x: Scaled free acquisition parameters. They are written into scheme before the loss is computed.
    :param scaling_factor: Multiplies the loss
    """
    scheme.set_scaled_free_parameter_vector(x)
    return scaling_factor * compute_loss(scheme, model, noise_variance, loss)


gauss_loss = CrlbLoss(fisher_information_gauss)
rice_loss = CrlbLoss(fisher_information_rice)

default_loss = gauss_loss
