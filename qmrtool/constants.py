from typing import Union, List

from scipy.optimize import LinearConstraint, NonlinearConstraint

GAMMA = 2.675987e8  # Proton gyromagnetic ratio [rad/s/T].

B_UNIT = 's/mm²'
B_VAL_LB = 0.0
B_VAL_UB = 3e4
B_VAL_SCALE = 1e3

GRADIENT_UNIT = 'T/m'
GRADIENT_SCALE = 1e-2
G_MAX = 0.08  # Maximum gradient magnitude [T/m].

PULSE_TIMING_UNIT = 's'
PULSE_TIMING_LB = 1e-3
PULSE_TIMING_UB = 150e-3
PULSE_TIMING_SCALE = 1e-2

# Smallest gap [s] in the strict timing inequalities Δ > δ and TR > TE + TI
TIMING_MARGIN = 1e-6

# Key for the starting signal
BASE_SIGNAL_KEY = "S0"

# relaxation
T2_KEY = 'T2'
T1_KEY = 'T1'

DIFFUSIVITY_KEY = 'Diffusivity'

# NODDI parameter keys
FICVF_KEY = 'ficvf'
DI_KEY = 'di'
KAPPA_KEY = 'kappa'
FISO_KEY = 'fiso'
DISO_KEY = 'diso'
THETA_KEY = 'theta'
PHI_KEY = 'phi'
ODI_KEY = 'ODI'

# SOMA All-to-One control parameters
SOMA_STEP = 0.11
SOMA_PATH_LENGTH = 3.0
SOMA_PRT = 0.1
SOMA_POPULATION_SIZE = 50
SOMA_MIGRATIONS = 200

# Number of grid points used by the sensitivity analysis
SENSITIVITY_STEPS = 10

ConstraintTypes = Union[
    List[Union[LinearConstraint, NonlinearConstraint]], Union[LinearConstraint, NonlinearConstraint]]
