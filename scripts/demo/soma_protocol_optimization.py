import matplotlib.pyplot as plt
import numpy as np

from qmrtool.monte_carlo.crlb import optimize_crlb_protocol, sim_crlb
from qmrtool.noddi import NODDIModel
from qmrtool.optimize.methods import SOMA
from qmrtool.utils.IO import configure_logging
from qmrtool.utils.plotting import plot_soma_history, plot_acquisition_parameters
from qmrtool.utils.saved_schemes import noddi_multishell_scheme


def main():
    log_file = configure_logging()
    print(f"Logging to {log_file}")

    # ## 1. The initial two shell protocol, the b0 measurements and echo times are kept fixed
    scheme = noddi_multishell_scheme(n_directions=30, b_values=(700., 2000.))
    print(scheme)

    # ## 2. The tissue the protocol should be sensitive to
    model = NODDIModel()
    xvalues = np.array([
        [0.4, 1.7e-3, 1., 0.1, 3e-3, 0.3, 0.2, 1.],
        [0.7, 1.7e-3, 4., 0.05, 3e-3, 1.2, -0.5, 1.],
    ])
    sigma = 1 / 30
    variables = ['ficvf', 'kappa', 'fiso']

    score, names, normalized = sim_crlb(model, scheme, xvalues, sigma, variables)
    print(f"Initial CRLB score {score:.4e}")

    # ## 3. Optimize the shells with SOMA All-to-One
    optimizer = SOMA(population_sz=20, max_migrations=30, seed=0)
    print(optimizer)
    optimal_scheme, result = optimize_crlb_protocol(scheme, model, xvalues, sigma, variables, method=optimizer)
    print(result.message)
    print(optimal_scheme)

    plot_soma_history(result)
    plot_acquisition_parameters(optimal_scheme, "optimized protocol")
    optimal_scheme.write_protocol("optimized_protocol.txt")
    plt.show()


if __name__ == "__main__":
    main()
