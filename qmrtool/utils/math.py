from typing import Union

import numpy as np
from numba import njit

Number = Union[np.ndarray, float]


def is_smaller_than_with_tolerance(number: Number, lower_bound: Number, tolerance=1e-12) -> Union[bool, np.ndarray]:
    """
    Elementwise number < lower_bound, where values within tolerance of the bound count as equal.

    :param number: Values to compare
    :param lower_bound: Bound, broadcast against number
    :param tolerance: Absolute distance to the bound that is still considered equal
    :return: Boolean array of at least one dimension
    """
    number = np.atleast_1d(np.asarray(number, dtype=float))
    within_tolerance = np.isclose(number, lower_bound, atol=tolerance, rtol=0.0)
    return (number < lower_bound) & ~within_tolerance


def is_higher_than_with_tolerance(number: Number, upper_bound: Number, tolerance=1e-12) -> Union[bool, np.ndarray]:
    """
    Elementwise number > upper_bound with the same tolerance as is_smaller_than_with_tolerance.
    """
    return is_smaller_than_with_tolerance(-np.asarray(number, dtype=float), -np.asarray(upper_bound, dtype=float),
                                          tolerance)


@njit
def cartesian_product(jac: np.ndarray):
    """
    Products of all pairs of Jacobian columns, shape (parameters, parameters, measurements).
    """
    n_measurements, n_parameters = jac.shape
    out = np.empty((n_parameters, n_parameters, n_measurements))
    for row in range(n_parameters):
        for col in range(n_parameters):
            out[row, col, :] = jac[:, row] * jac[:, col]
    return out


@njit
def diagonal(square: np.ndarray) -> np.ndarray:
    n = square.shape[0]
    out = np.empty(n)
    for k in range(n):
        out[k] = square[k, k]
    return out
