"""
Ready made acquisition schemes for demos and tests.
"""
from typing import Sequence

import numpy as np

from ..acquisition_scheme import DiffusionAcquisitionScheme, EchoScheme, InversionRecoveryAcquisitionScheme, \
    ReducedDiffusionScheme, gradient_from_b_value
from .sphere import sample_half_sphere_fibonacci

REPEATED_PARAMETERS = ['DiffusionPulseMagnitude', 'DiffusionPulseWidth', 'DiffusionPulseInterval']


def noddi_multishell_scheme(n_directions: int = 30, b_values: Sequence[float] = (700., 2000.), n_b0: int = 3,
                            pulse_width: float = 0.020, pulse_interval: float = 0.040,
                            shell_repetition: bool = True) -> DiffusionAcquisitionScheme:
    """
    A multi-shell PGSE scheme with n_b0 non diffusion weighted measurements followed by n_directions measurements per
    shell. The echo times are fixed and so are the b0 measurements.

    :param n_directions: Number of gradient directions per shell
    :param b_values: The shell b-values in s/mm²
    :param n_b0: Number of b=0 measurements
    :param pulse_width: δ in s
    :param pulse_interval: Δ in s
    :param shell_repetition: Let all measurements of a shell share their gradient magnitude and pulse timing during
                             optimization
    :return: The scheme
    """
    n_shells = len(b_values)
    directions = np.concatenate([np.zeros((n_b0, 3)),
                                 np.tile(sample_half_sphere_fibonacci(n_directions), (n_shells, 1))])
    shell_b_values = np.concatenate([np.zeros(n_b0), np.repeat(np.asarray(b_values, dtype=np.float64), n_directions)])

    n_pulses = len(shell_b_values)
    pulse_widths = np.full(n_pulses, pulse_width)
    pulse_intervals = np.full(n_pulses, pulse_interval)
    magnitudes = gradient_from_b_value(shell_b_values, pulse_intervals, pulse_widths)
    echo_times = pulse_intervals + pulse_widths + 0.01

    scheme = DiffusionAcquisitionScheme(magnitudes, directions, pulse_widths, pulse_intervals, echo_times)
    scheme["EchoTime"].fixed = True
    scheme.fix_b0_measurements()

    if shell_repetition:
        for parameter in REPEATED_PARAMETERS:
            scheme[parameter].set_repetition_period(n_directions)
    return scheme


def echo_scheme(n_pulses: int = 10, first_echo: float = 10e-3, last_echo: float = 100e-3) -> EchoScheme:
    """
    Equally spaced echo times in s.
    """
    return EchoScheme(np.linspace(first_echo, last_echo, n_pulses))


def ir_scheme(n_pulses: int = 8, repetition_time: float = 5.0, echo_time: float = 10e-3,
              first_inversion: float = 50e-3, last_inversion: float = 3.0) -> InversionRecoveryAcquisitionScheme:
    """
    Inversion recovery scheme with constant TR and TE (s) and equally spaced inversion times (s).
    """
    tr = np.repeat(repetition_time, n_pulses)
    te = np.repeat(echo_time, n_pulses)
    ti = np.linspace(first_inversion, last_inversion, n_pulses)
    return InversionRecoveryAcquisitionScheme(tr, te, ti)


def reduced_diffusion_scheme(n_pulses: int = 20) -> ReducedDiffusionScheme:
    """
    b-values between 0 and 3000 s/mm² combined with echo times between 50 and 150 ms.
    """
    b_values = np.tile(np.linspace(0, 3000, 5), n_pulses // 5 + 1)[:n_pulses]
    echo_times = np.repeat(np.linspace(50e-3, 150e-3, n_pulses // 5 + 1), 5)[:n_pulses]
    return ReducedDiffusionScheme(b_values, echo_times)
