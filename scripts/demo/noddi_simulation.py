import matplotlib.pyplot as plt

from qmrtool.monte_carlo.random_parameters import draw_random_parameters, simulate_random
from qmrtool.monte_carlo.sensitivity import simulate_sensitivity
from qmrtool.noddi import NODDIModel
from qmrtool.utils.plotting import plot_simrnd, plot_sensitivity, plot_signal
from qmrtool.utils.saved_schemes import noddi_multishell_scheme


def main():
    scheme = noddi_multishell_scheme(n_directions=30)
    model = NODDIModel(ficvf=0.5, kappa=2., fiso=0.1, theta=0.5, phi=0.3)
    print(model)

    plot_signal(scheme, model)

    # ## Fitting voxels with normally distributed parameters
    parameters = draw_random_parameters(model, 50, mean={'fiso': 0.15}, std={'theta': 0., 'phi': 0.}, rng=0)
    simrnd = simulate_random(model, scheme, parameters, snr=50., rng=1)
    print(f"Simulated {len(parameters)} voxels in {simrnd.time:.1f} s")
    print(simrnd.analysis['NRMSE'])
    plot_simrnd(simrnd)

    # ## Sensitivity of the fit to each parameter
    sensitivity = simulate_sensitivity(model, scheme, snr=50., runs=5, varied=['ficvf', 'kappa', 'fiso'],
                                       bounds={'kappa': (0.5, 16.)}, rng=2)
    for result in sensitivity.values():
        plot_sensitivity(result, fields=['ficvf', 'ODI', 'fiso'])

    plt.show()


if __name__ == "__main__":
    main()
