import matplotlib.pyplot as plt
import numpy as np
from scipy.optimize import minimize, Bounds, NonlinearConstraint

from qmrtool.optimize.methods import SOMA
from qmrtool.utils.plotting import plot_soma_history


def ackley(x):
    """
    Multimodal test problem with its global minimum at x = (0,..,0)
    """
    ninv = 1 / float(len(x))
    sum1 = np.sum(x ** 2)
    sum2 = np.sum(np.cos(2 * np.pi * x))
    return 20 + np.exp(1) - (20 * np.exp(-.2 * np.sqrt(ninv * sum1))) - np.exp(ninv * sum2)


def main():
    # ## Control parameters, the seed makes the runs reproducible
    soma_optimizer = SOMA(population_sz=30, max_migrations=100, seed=42)
    print(soma_optimizer)

    n_dim = 3
    x0 = np.full(n_dim, 2.5)
    bounds = Bounds(np.full(n_dim, -5.), np.full(n_dim, 5.))

    result = minimize(ackley, x0, method=soma_optimizer, bounds=bounds)
    print(result.x, result.fun, result.nfev)

    # ## The same problem restricted to the region outside a ball of radius 1
    outside_ball = NonlinearConstraint(lambda x: np.sum(x ** 2), 1., np.inf)
    constrained = minimize(ackley, x0, method=soma_optimizer, bounds=bounds, constraints=outside_ball)
    print(constrained.x, constrained.fun)

    plot_soma_history(result, ylabel="ackley", fig_label="unconstrained")
    plot_soma_history(constrained, ylabel="ackley", fig_label="constrained")
    plt.show()


if __name__ == "__main__":
    main()
