"""
Acquisition schemes describe the measurements of a qMRI protocol as named series of acquisition parameters. The values
that are not fixed form the search space of the protocol optimizers.
"""
import warnings
from abc import ABC, abstractmethod
from os import PathLike
from pathlib import Path
from typing import Union, List, Tuple, Dict, Optional, Iterator

import numpy as np
from scipy.optimize import NonlinearConstraint
from tabulate import tabulate

from .constants import ConstraintTypes, GAMMA, GRADIENT_UNIT, GRADIENT_SCALE, G_MAX, PULSE_TIMING_UNIT, \
    PULSE_TIMING_LB, PULSE_TIMING_UB, PULSE_TIMING_SCALE, B_UNIT, B_VAL_LB, B_VAL_UB, B_VAL_SCALE, TIMING_MARGIN
from .utils.math import is_smaller_than_with_tolerance, is_higher_than_with_tolerance
from .utils.sphere import unitvector_to_angles, angles_to_unitvectors

PROTOCOL_COLUMNS = ['Gx', 'Gy', 'Gz', '|G|', 'Delta', 'delta', 'TE']

Bound = Optional[float]


class AcquisitionParameters:
    """
    One acquisition parameter (echo time, gradient magnitude, ...) with a value per measurement.

    Measurements are fixed individually through set_fixed_mask. A repetition period ties groups of consecutive free
    measurements together, which is how a shell of directions shares a single b-value. Fix measurements before setting
    the repetition period.

    :param values: The value of every measurement.
    :param unit: Unit of the values, e.g. 's'.
    :param scale: Order of magnitude of the values, optimizers work with values / scale.
    :param symbol: Label for plots.
    :param lower_bound: Smallest allowed value, None for unbounded.
    :param upper_bound: Largest allowed value, None for unbounded.
    :param fixed: Exclude all measurements from optimization.
    :raise ValueError: A value lies outside the bounds.
    """

    def __init__(self,
                 values: Union[List[float], np.ndarray],
                 unit: str,
                 scale: float,
                 symbol: Optional[str] = None,
                 lower_bound: Bound = 0.0,
                 upper_bound: Bound = None,
                 fixed: bool = False):
        self.values = np.array(values, dtype=np.float64).ravel()
        self.unit = unit
        self.scale = scale
        self.symbol = symbol
        self.lower_bound = lower_bound
        self.upper_bound = upper_bound

        self._free = np.full(self.values.shape, not fixed)
        self._period = 0

        below = lower_bound is not None and np.any(is_smaller_than_with_tolerance(self.values, lower_bound))
        above = upper_bound is not None and np.any(is_higher_than_with_tolerance(self.values, upper_bound))
        if below or above:
            raise ValueError(f"Values {self.values} {unit} are outside the bounds [{lower_bound}, {upper_bound}].")

    def __str__(self):
        suffix = ' (fixed parameter)' if self.fixed else ''
        return f'{self.values} {self.unit}{suffix}'

    def __len__(self):
        return self.values.size

    @property
    def fixed(self) -> bool:
        return not np.any(self._free)

    @fixed.setter
    def fixed(self, fix: bool):
        self._free = np.full(self.values.shape, not fix)

    @property
    def optimize_mask(self) -> np.ndarray:
        """
        True for the measurements that are optimized.
        """
        return self._free

    def set_fixed_mask(self, fixed_mask: np.ndarray) -> None:
        """
        :param fixed_mask: Boolean per measurement, True keeps the value of that measurement fixed.
        """
        fixed_mask = np.asarray(fixed_mask, dtype=bool).ravel()
        if fixed_mask.shape != self.values.shape:
            raise ValueError(f"Expected a fixed mask of {self.values.size} measurements, got {fixed_mask.size}")
        self._free = ~fixed_mask

    @property
    def free_values(self) -> np.ndarray:
        return self.values[self._free]

    @free_values.setter
    def free_values(self, new_values: np.ndarray) -> None:
        self.values[self._free] = new_values

    def set_repetition_period(self, n: int):
        """
        Groups the free measurements in blocks of n. Only the first measurement of a block stays free, the others
        follow it through propagate_repetitions.

        :param n: Block length
        """
        n_free = int(np.count_nonzero(self._free))
        if n < 1 or n_free % n != 0:
            raise ValueError(f"{n_free} free measurements can not be split in blocks of {n}")

        block_starts = np.arange(n_free) % n == 0
        free = self._free.copy()
        free[self._free] = block_starts
        self._free = free
        self._period = n

    def propagate_repetitions(self):
        """
        Copies the first value of every block to the rest of the block.
        """
        if self._period == 0:
            return
        start = int(np.argmax(self._free))
        for first in range(start, self.values.size, self._period):
            self.values[first:first + self._period] = self.values[first]


class AcquisitionScheme(Dict[str, AcquisitionParameters], ABC):
    """
    Base-class for MR acquisition schemes, a dictionary of named AcquisitionParameters of equal length. Use BIDS names
    for the keys where they exist.

    The free values of all parameters, in the order of the dictionary, make up the parameter vector of the
    optimizers. The scaled vector divides every value by the scale of its parameter.

    :param parameters: The acquisition parameters by name.
    :raise ValueError: The parameters have different numbers of measurements.
    """

    def __init__(self, parameters: Dict[str, AcquisitionParameters]):
        lengths = {name: len(parameter) for name, parameter in parameters.items()}
        if len(set(lengths.values())) > 1:
            raise ValueError(f"All acquisition parameters need the same number of measurements, got {lengths}")
        super().__init__(parameters)

    def __str__(self) -> str:
        columns = {}
        for name, parameter in self.items():
            if parameter.fixed:
                header = f"{name} [{parameter.unit}] (fixed)"
            else:
                header = f"{name} [{parameter.unit}] in {parameter.lower_bound, parameter.upper_bound}"
            columns[header] = parameter.values

        n_free = self.free_parameter_vector.size
        return (f"Acquisition scheme with {self.pulse_count} measurements and {len(self)} scalar parameters.\n"
                f"{n_free} values are optimized:\n{tabulate(columns, headers='keys')}")

    def _free_layout(self) -> Iterator[Tuple[str, slice]]:
        """
        The position of every non fixed parameter in the free parameter vector.
        """
        start = 0
        for name, parameter in self.items():
            if parameter.fixed:
                continue
            stop = start + parameter.free_values.size
            yield name, slice(start, stop)
            start = stop

    @property
    def pulse_count(self) -> int:
        return len(next(iter(self.values())))

    @property
    def free_parameter_vector(self) -> np.ndarray:
        values = [self[name].free_values for name, _ in self._free_layout()]
        return np.concatenate(values) if values else np.array([])

    def set_free_parameter_vector(self, vector: np.ndarray) -> None:
        """
        :param vector: New free values in physical units, ordered as free_parameter_vector.
        """
        vector = np.asarray(vector, dtype=np.float64).ravel()
        if vector.size != self.free_parameter_vector.size:
            raise ValueError(f"Expected {self.free_parameter_vector.size} free values, got {vector.size}")

        for name, position in self._free_layout():
            self[name].free_values = vector[position]
            self[name].propagate_repetitions()

    @property
    def _free_scales(self) -> np.ndarray:
        scales = np.ones(self.free_parameter_vector.size)
        for name, position in self._free_layout():
            scales[position] = self[name].scale
        return scales

    @property
    def scaled_free_parameter_vector(self) -> np.ndarray:
        return self.free_parameter_vector / self._free_scales

    def set_scaled_free_parameter_vector(self, vector: np.ndarray) -> None:
        self.set_free_parameter_vector(np.asarray(vector, dtype=np.float64) * self._free_scales)

    @property
    def free_parameter_bounds_scaled(self) -> List[Tuple[Bound, Bound]]:
        """
        (lower, upper) per entry of the scaled free parameter vector, None where a parameter is unbounded.
        """
        bounds = []
        for name, position in self._free_layout():
            parameter = self[name]
            pair = tuple(None if bound is None else bound / parameter.scale
                         for bound in (parameter.lower_bound, parameter.upper_bound))
            bounds.extend([pair] * (position.stop - position.start))
        return bounds

    def get_parameter_from_parameter_vector(self, parameter: str, x: np.ndarray) -> np.ndarray:
        """
        The free values of one parameter in physical units, taken from a scaled optimizer vector.

        :raise KeyError: The parameter is fixed or unknown.
        """
        for name, position in self._free_layout():
            if name == parameter:
                return np.asarray(x)[position] * self[name].scale
        raise KeyError(f"{parameter} is not a free parameter of the scheme")

    @property
    @abstractmethod
    def constraints(self) -> Dict[str, ConstraintTypes]:
        """
        Named constraints on the scaled free parameter vector, an empty dictionary when there are none.
        """
        raise NotImplementedError()

    @property
    def constraint_list(self) -> List[ConstraintTypes]:
        return list(self.constraints.values())

    def _check_constraints(self):
        x = self.scaled_free_parameter_vector
        for name, constraint in self.constraints.items():
            value = constraint.fun(x)
            if np.any(is_smaller_than_with_tolerance(value, constraint.lb)) or \
                    np.any(is_higher_than_with_tolerance(value, constraint.ub)):
                raise ValueError(f"{type(self).__name__}: constraint violated, scheme does not satisfy {name}")

    def _copy_and_update_parameter(self, parameter: str, x: np.ndarray) -> np.ndarray:
        """
        All values of a parameter with the free ones taken from the scaled optimizer vector x. Used inside constraint
        functions.
        """
        values = self[parameter].values.copy()
        if not self[parameter].fixed:
            values[self[parameter].optimize_mask] = self.get_parameter_from_parameter_vector(parameter, x)
        return values

    def _are_fixed(self, names: List[str]) -> bool:
        return all(self[name].fixed for name in names)


def b_value_from_pulse(gradient_magnitudes: np.ndarray, pulse_intervals: np.ndarray,
                       pulse_widths: np.ndarray) -> np.ndarray:
    """
    b-values of rectangular PGSE pulses, b = (γGδ)²(Δ − δ/3).

    :param gradient_magnitudes: |G| in T/m
    :param pulse_intervals: Δ in s
    :param pulse_widths: δ in s
    :return: b-values in s/mm²
    """
    b = (GAMMA * gradient_magnitudes * pulse_widths) ** 2 * (pulse_intervals - pulse_widths / 3)
    # s/m² to s/mm²
    return b * 1e-6


def gradient_from_b_value(b_values: np.ndarray, pulse_intervals: np.ndarray, pulse_widths: np.ndarray) -> np.ndarray:
    """
    Inverse of b_value_from_pulse.

    :param b_values: b-values in s/mm²
    :param pulse_intervals: Δ in s
    :param pulse_widths: δ in s
    :return: |G| in T/m
    """
    effective_time = pulse_intervals - pulse_widths / 3
    if np.any(effective_time <= 0):
        raise ValueError("Pulse interval too short for the given pulse width.")
    return np.sqrt(b_values * 1e6 / effective_time) / (GAMMA * pulse_widths)


def _warn_non_bids_name(file: Path, suffix: str) -> None:
    if file.name != f"dwi.{suffix}" and not file.name.endswith(f"_dwi.{suffix}"):
        warnings.warn(f"BIDS names FSL {suffix} files [*_]dwi.{suffix}, got {file.name}")


class DiffusionAcquisitionScheme(AcquisitionScheme):
    """
    A pulsed gradient spin echo (PGSE) protocol. Every measurement has a gradient magnitude and direction, a pulse
    width δ, a pulse interval Δ and an echo time. The directions are stored as fixed spherical angles.

    :param gradient_magnitudes: |G| per measurement in T/m, zero for b=0 measurements.
    :param gradient_directions: Unit vectors of shape (N, 3), ignored for b=0 measurements.
    :param pulse_widths: δ in s.
    :param pulse_intervals: Δ in s.
    :param echo_times: TE in s, defaults to just above Δ + δ.
    :param max_gradient: Upper bound of the gradient magnitude in T/m.
    :raise ValueError: Directions are not unit vectors, lengths differ, a value is out of bounds or a constraint is
                       violated.
    """

    def __init__(self,
                 gradient_magnitudes: Union[List[float], np.ndarray],
                 gradient_directions: Union[List[Tuple[float, float, float]], np.ndarray],
                 pulse_widths: Union[List[float], np.ndarray],
                 pulse_intervals: Union[List[float], np.ndarray],
                 echo_times: Optional[Union[List[float], np.ndarray]] = None,
                 max_gradient: float = G_MAX):

        gradient_magnitudes = np.asarray(gradient_magnitudes, dtype=np.float64)
        pulse_widths = np.asarray(pulse_widths, dtype=np.float64)
        pulse_intervals = np.asarray(pulse_intervals, dtype=np.float64)
        if echo_times is None:
            echo_times = pulse_intervals + pulse_widths + 1e-6

        directions = np.array(gradient_directions, dtype=np.float64).reshape(-1, 3)
        b0 = gradient_magnitudes == 0
        if directions.shape[0] != b0.size:
            raise ValueError(f"Got {directions.shape[0]} gradient directions for {b0.size} gradient magnitudes.")
        if not np.allclose(np.linalg.norm(directions[~b0], axis=1), 1):
            raise ValueError("Gradient directions should be unit vectors.")

        # b=0 measurements point along z
        directions[b0] = [0., 0., 1.]
        theta, phi = unitvector_to_angles(directions).T

        timing = dict(unit=PULSE_TIMING_UNIT, scale=PULSE_TIMING_SCALE, lower_bound=PULSE_TIMING_LB)
        super().__init__({
            'DiffusionPulseMagnitude': AcquisitionParameters(gradient_magnitudes, GRADIENT_UNIT, GRADIENT_SCALE,
                                                             symbol="|G|", upper_bound=max_gradient),
            'DiffusionGradientAnglePhi': AcquisitionParameters(phi, 'rad', 1., symbol=r"$\phi$", lower_bound=None,
                                                               fixed=True),
            'DiffusionGradientAngleTheta': AcquisitionParameters(theta, 'rad', 1., symbol=r"$\theta$",
                                                                 lower_bound=None, fixed=True),
            'DiffusionPulseWidth': AcquisitionParameters(pulse_widths, symbol=r"$\delta$",
                                                         upper_bound=PULSE_TIMING_UB, **timing),
            'DiffusionPulseInterval': AcquisitionParameters(pulse_intervals, symbol=r"$\Delta$",
                                                            upper_bound=PULSE_TIMING_UB, **timing),
            'EchoTime': AcquisitionParameters(echo_times, symbol=r"$T_E$", upper_bound=2 * PULSE_TIMING_UB, **timing),
        })

        self._check_constraints()

    @classmethod
    def from_bvals(cls, b_values: np.ndarray, b_vectors: np.ndarray, pulse_widths: np.ndarray,
                   pulse_intervals: np.ndarray,
                   echo_times: Optional[Union[List[float], np.ndarray]] = None,
                   max_gradient: float = G_MAX) -> 'DiffusionAcquisitionScheme':
        """
        Builds the scheme from b-values in s/mm², the gradient magnitudes follow from the pulse timing. Scalar timings
        apply to every measurement.
        """
        b_values = np.asarray(b_values, dtype=np.float64)
        pulse_widths = np.broadcast_to(np.asarray(pulse_widths, dtype=np.float64), b_values.shape)
        pulse_intervals = np.broadcast_to(np.asarray(pulse_intervals, dtype=np.float64), b_values.shape)
        gradient_magnitudes = gradient_from_b_value(b_values, pulse_intervals, pulse_widths)

        return cls(gradient_magnitudes, b_vectors, pulse_widths, pulse_intervals, echo_times, max_gradient)

    @classmethod
    def from_protocol(cls, protocol: np.ndarray, max_gradient: float = G_MAX) -> 'DiffusionAcquisitionScheme':
        """
        Builds the scheme from a protocol table with the columns Gx Gy Gz |G| Delta delta TE (gradient in T/m, timings
        in s).

        :param protocol: array of shape (N, 7)
        :param max_gradient: The maximal gradient magnitude in T/m.
        """
        protocol = np.atleast_2d(np.asarray(protocol, dtype=np.float64))
        if protocol.shape[1] != len(PROTOCOL_COLUMNS):
            raise ValueError(f"Expected a protocol with columns {PROTOCOL_COLUMNS}, got {protocol.shape[1]} columns.")

        directions = protocol[:, 0:3].copy()
        magnitudes = protocol[:, 3]
        norms = np.linalg.norm(directions, axis=1)
        directions[norms > 0] /= norms[norms > 0, np.newaxis]

        return cls(magnitudes, directions, pulse_widths=protocol[:, 5], pulse_intervals=protocol[:, 4],
                   echo_times=protocol[:, 6], max_gradient=max_gradient)

    @classmethod
    def read_protocol(cls, file: Union[str, PathLike], skiprows: int = 0,
                      max_gradient: float = G_MAX) -> 'DiffusionAcquisitionScheme':
        """
        Reads a whitespace separated protocol text file with the columns Gx Gy Gz |G| Delta delta TE.
        """
        protocol = np.loadtxt(str(file), comments='#', skiprows=skiprows, ndmin=2)
        return cls.from_protocol(protocol, max_gradient)

    def to_protocol(self) -> np.ndarray:
        """
        :return: The protocol table of shape (N, 7) with columns Gx Gy Gz |G| Delta delta TE
        """
        return np.column_stack([self.b_vectors, self.pulse_magnitude, self.pulse_intervals, self.pulse_widths,
                                self.echo_times])

    def write_protocol(self, file: Union[str, PathLike]) -> None:
        np.savetxt(str(file), self.to_protocol(), fmt='%.6e', header=' '.join(PROTOCOL_COLUMNS))

    @property
    def b_values(self) -> np.ndarray:
        # s/mm²
        return b_value_from_pulse(self.pulse_magnitude, self.pulse_intervals, self.pulse_widths)

    @property
    def b_vectors(self) -> np.ndarray:
        """
        Unit gradient directions of shape (N, 3), zero vectors for the b=0 measurements.
        """
        vectors = angles_to_unitvectors(np.column_stack([self.theta, self.phi]))
        vectors[self.b_values == 0] = 0
        return vectors

    @property
    def theta(self) -> np.ndarray:
        return self['DiffusionGradientAngleTheta'].values

    @property
    def phi(self) -> np.ndarray:
        return self['DiffusionGradientAnglePhi'].values

    @property
    def pulse_magnitude(self) -> np.ndarray:
        return self['DiffusionPulseMagnitude'].values

    @property
    def pulse_widths(self) -> np.ndarray:
        return self['DiffusionPulseWidth'].values

    @property
    def pulse_intervals(self) -> np.ndarray:
        return self['DiffusionPulseInterval'].values

    @property
    def echo_times(self) -> np.ndarray:
        return self['EchoTime'].values

    def write_bval(self, file: Union[str, PathLike]) -> None:
        """
        Writes the b-values as a single row FSL bval file.
        """
        file = Path(file)
        _warn_non_bids_name(file, 'bval')
        np.savetxt(str(file), self.b_values[np.newaxis, :], fmt='%.6e')

    def write_bvec(self, file: Union[str, PathLike]) -> None:
        """
        Writes the gradient directions as an FSL bvec file, one row per component.
        """
        file = Path(file)
        _warn_non_bids_name(file, 'bvec')
        np.savetxt(str(file), self.b_vectors.T, fmt='%.6e')

    @property
    def constraints(self) -> Dict[str, NonlinearConstraint]:
        def timing(x: np.ndarray):
            return (self._copy_and_update_parameter('DiffusionPulseWidth', x),
                    self._copy_and_update_parameter('DiffusionPulseInterval', x))

        def interval_minus_width(x: np.ndarray):
            width, interval = timing(x)
            return interval - width

        def echo_time_margin(x: np.ndarray):
            width, interval = timing(x)
            return self._copy_and_update_parameter('EchoTime', x) - (interval + width)

        constraints = {}
        # Δ > δ
        if not self._are_fixed(['DiffusionPulseWidth', 'DiffusionPulseInterval']):
            constraints["PulseIntervalLargerThanPulseWidth"] = NonlinearConstraint(interval_minus_width, TIMING_MARGIN,
                                                                                   np.inf)
        # TE >= Δ + δ
        if not self._are_fixed(['DiffusionPulseWidth', 'DiffusionPulseInterval', 'EchoTime']):
            constraints["EchoTimeLargerThanMinEchoTime"] = NonlinearConstraint(echo_time_margin, 0.0, np.inf)
        return constraints

    def fix_b0_measurements(self) -> None:
        """
        Excludes the b=0 measurements from optimization, on top of the measurements that are already fixed.
        """
        b0 = self.b_values == 0
        for name in ["DiffusionPulseMagnitude", "DiffusionPulseWidth", "DiffusionPulseInterval", "EchoTime"]:
            self[name].set_fixed_mask(b0 | ~self[name].optimize_mask)


class InversionRecoveryAcquisitionScheme(AcquisitionScheme):
    """
    Inversion recovery protocol. The echo times are fixed.

    :param repetition_times: TR in s.
    :param echo_times: TE in s.
    :param inversion_times: TI in s.
    :raise ValueError: Lengths differ or TR < TE + TI for a measurement.
    """

    def __init__(self,
                 repetition_times: Union[List[float], np.ndarray],
                 echo_times: Union[List[float], np.ndarray],
                 inversion_times: Union[List[float], np.ndarray]):
        repetition_times = np.asarray(repetition_times, dtype=np.float64)
        echo_times = np.asarray(echo_times, dtype=np.float64)
        inversion_times = np.asarray(inversion_times, dtype=np.float64)
        if np.any(is_smaller_than_with_tolerance(repetition_times - echo_times - inversion_times, TIMING_MARGIN)):
            raise ValueError("Every measurement needs TR > TE + TI.")

        super().__init__({
            'RepetitionTimeExcitation': AcquisitionParameters(repetition_times, 's', 0.1, symbol=r"$T_R$",
                                                              lower_bound=10e-3, upper_bound=20.0),
            'EchoTime': AcquisitionParameters(echo_times, 's', 1e-2, symbol=r"$T_E$", lower_bound=1e-4,
                                              upper_bound=1.0, fixed=True),
            'InversionTime': AcquisitionParameters(inversion_times, 's', 0.1, symbol=r"$T_I$", lower_bound=10e-3,
                                                   upper_bound=20.0),
        })

    @property
    def repetition_times(self) -> np.ndarray:
        return self['RepetitionTimeExcitation'].values

    @property
    def echo_times(self) -> np.ndarray:
        return self['EchoTime'].values

    @property
    def inversion_times(self) -> np.ndarray:
        return self['InversionTime'].values

    @property
    def constraints(self) -> Dict[str, ConstraintTypes]:
        if self._are_fixed(['InversionTime', 'EchoTime', 'RepetitionTimeExcitation']):
            return {}

        def recovery_margin(x: np.ndarray):
            # TR - TE - TI > 0
            return (self._copy_and_update_parameter('RepetitionTimeExcitation', x)
                    - self._copy_and_update_parameter('EchoTime', x)
                    - self._copy_and_update_parameter('InversionTime', x))

        return {"RepetitionTimeLargerThanEchoTimePlusInversionTime": NonlinearConstraint(recovery_margin, TIMING_MARGIN,
                                                                                         np.inf)}


class EchoScheme(AcquisitionScheme):
    """
    Multi-echo protocol for T2 mapping.

    :param echo_times: TE in s
    """

    def __init__(self, echo_times: Union[List[float], np.ndarray]):
        super().__init__({
            'EchoTime': AcquisitionParameters(echo_times, 's', 1e-2, symbol=r"$T_E$", lower_bound=1e-3,
                                              upper_bound=0.5)
        })

    @property
    def echo_times(self) -> np.ndarray:
        return self['EchoTime'].values

    @property
    def constraints(self) -> Dict[str, ConstraintTypes]:
        return {}


class ReducedDiffusionScheme(AcquisitionScheme):
    """
    Diffusion weighting described by b-values only, combined with T2 weighting.

    :param b_values: b in s/mm²
    :param echo_times: TE in s
    """

    def __init__(self, b_values: Union[List[float], np.ndarray], echo_times: Union[List[float], np.ndarray]):
        super().__init__({
            'DiffusionBvalue': AcquisitionParameters(b_values, B_UNIT, B_VAL_SCALE, symbol=r"$b$",
                                                     lower_bound=B_VAL_LB, upper_bound=B_VAL_UB),
            'EchoTime': AcquisitionParameters(echo_times, 's', 1e-2, symbol=r"$T_E$", lower_bound=1e-3,
                                              upper_bound=0.5),
        })

    @property
    def b_values(self) -> np.ndarray:
        return self['DiffusionBvalue'].values

    @property
    def echo_times(self) -> np.ndarray:
        return self['EchoTime'].values

    @property
    def constraints(self) -> Dict[str, ConstraintTypes]:
        return {}
