import matplotlib.pyplot as plt
from scipy import stats

from qmrtool.monte_carlo.parameter_distributions import fit_gaussian, plot_parameter_distributions
from qmrtool.monte_carlo.simulation import MonteCarloSimulation
from qmrtool.optimize.optimize import optimize_scheme
from qmrtool.tissue_model import InversionRecoveryTissueModel
from qmrtool.utils.plotting import plot_signal
from qmrtool.utils.saved_schemes import ir_scheme


def main():
    # # Inversion recovery

    # ## 1. Create a tissue model specifying a T1 of 900 ms
    relaxation_model = InversionRecoveryTissueModel(t1=0.9)
    print(relaxation_model)

    # ## 2. Create an initial inversion-recovery acquisition scheme
    # TR = 5 s, TE = 10 ms, TI = {50, ..., 3000} ms
    scheme = ir_scheme(n_pulses=8)
    print(scheme)
    plot_signal(scheme, relaxation_model, fig_label="initial scheme")

    # ## 3. Optimize the acquisition scheme
    noise_variance = 0.02
    scheme_optimal, _ = optimize_scheme(scheme, relaxation_model, noise_variance, method='differential_evolution',
                                        solver_options={"maxiter": 50})
    print(scheme_optimal)
    plot_signal(scheme_optimal, relaxation_model, fig_label="optimal scheme")

    # ## 4. Compare the T1 precision of both schemes
    noise = stats.norm(loc=0, scale=noise_variance ** 0.5)
    for label, acquisition in [("initial", scheme), ("optimal", scheme_optimal)]:
        simulation = MonteCarloSimulation(acquisition, relaxation_model, noise, n_sim=200, rng=0)
        distribution = simulation.run()
        plot_parameter_distributions(distribution, relaxation_model, gaussian_fit=fit_gaussian(distribution),
                                     fig_label=f"{label} scheme", hist_label=label)

    plt.show()


if __name__ == "__main__":
    main()
