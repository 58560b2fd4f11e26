import numpy as np
import pytest

from qmrtool.acquisition_scheme import EchoScheme
from qmrtool.monte_carlo.crlb import fisher_matrix, sim_crlb, crlb_protocol_cost, optimize_crlb_protocol
from qmrtool.optimize.methods import SOMA
from qmrtool.tissue_model import ExponentialTissueModel


def expected_normalized_crlb(te, t2, s0, sigma):
    s = s0 * np.exp(-te / t2)
    jac = np.column_stack([te * s / t2 ** 2, s / s0])
    crlb = np.diag(np.linalg.inv(jac.T @ jac / sigma ** 2))
    return crlb / np.array([t2, s0]) ** 2


class TestSimCrlb:
    te = np.array([0.01, 0.03, 0.06, 0.1])
    scheme = EchoScheme(te)
    model = ExponentialTissueModel(t2=0.05)
    sigma = 0.02
    xvalues = np.array([[0.04, 1.], [0.08, 2.]])

    def test_fisher_matrix(self):
        information = fisher_matrix(self.model, self.scheme, self.sigma)
        s = np.exp(-self.te / 0.05)
        jac = np.column_stack([self.te * s / 0.05 ** 2, s])
        np.testing.assert_allclose(information, jac.T @ jac / self.sigma ** 2, rtol=1e-10)

    def test_normalized_crlb(self):
        score, names, normalized = sim_crlb(self.model, self.scheme, self.xvalues, self.sigma)

        assert names == ['T2', 'S0']
        assert normalized.shape == (2, 2)
        for values, row in zip(self.xvalues, normalized):
            np.testing.assert_allclose(row, expected_normalized_crlb(self.te, *values, self.sigma), rtol=1e-6)
        assert score == pytest.approx(normalized.mean())

    def test_selected_variables(self):
        score, _, normalized = sim_crlb(self.model, self.scheme, self.xvalues, self.sigma, variables=['T2'])
        assert score == pytest.approx(normalized[:, 0].mean())

    def test_model_is_unchanged(self):
        sim_crlb(self.model, self.scheme, self.xvalues, self.sigma)
        assert self.model['T2'].value == 0.05

    def test_invalid_input(self):
        with pytest.raises(ValueError):
            sim_crlb(self.model, self.scheme, self.xvalues, self.sigma, variables=['T1'])
        with pytest.raises(ValueError):
            sim_crlb(self.model, self.scheme, np.ones((2, 3)), self.sigma)

    def test_protocol_cost(self):
        scheme = EchoScheme(self.te)
        x = np.array([2., 4., 8., 12.])
        cost = crlb_protocol_cost(x, scheme, self.model, self.xvalues, self.sigma)

        np.testing.assert_allclose(scheme.echo_times, [0.02, 0.04, 0.08, 0.12])
        assert cost == pytest.approx(sim_crlb(self.model, scheme, self.xvalues, self.sigma)[0])


def test_optimize_crlb_protocol():
    scheme = EchoScheme(np.array([0.01, 0.02, 0.03]))
    model = ExponentialTissueModel(t2=0.05)
    xvalues = np.array([[0.05, 1.]])

    optimal_scheme, result = optimize_crlb_protocol(scheme, model, xvalues, sigma=0.02,
                                                    method=SOMA(population_sz=10, max_migrations=5, seed=0))

    # The initial scheme is part of the population, the optimum can only be better.
    assert result.fun <= result.reference_fun
    assert len(result.history) == result.nit
    np.testing.assert_equal(scheme.echo_times, [0.01, 0.02, 0.03])
    assert sim_crlb(model, optimal_scheme, xvalues, 0.02)[0] == pytest.approx(result.fun)
