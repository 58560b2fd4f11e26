# Test compatibility with SOMA and all scipy optimizers.
import numpy as np
import pytest

from qmrtool.acquisition_scheme import EchoScheme
from qmrtool.noddi import NODDIModel
from qmrtool.optimize.loss_functions import compute_loss, gauss_loss, rice_loss
from qmrtool.optimize.methods import SOMA
from qmrtool.optimize.optimize import optimize_scheme, check_degrees_of_freedom, check_ill_conditioned, \
    check_insensitive
from qmrtool.tissue_model import ExponentialTissueModel, InversionRecoveryTissueModel, TissueParameter
from qmrtool.utils.saved_schemes import noddi_multishell_scheme, ir_scheme

# Optimizers available in SciPy that do not require a Jacobian
optimizers = [
    'differential_evolution',  # Calls scipy.optimize.differential_evolution
    'Nelder-Mead',
    'Powell',
    'CG',
    'L-BFGS-B',
    'TNC',
    'COBYLA',
    'SLSQP',
    # 'trust-constr',  # Interior point iterates are not monotone in the loss
]


@pytest.mark.parametrize("method", optimizers)
def test_scipy_optimizers(method):
    # Define a very simple model and acquisition scheme.
    model = ExponentialTissueModel(t2=0.02)  # T2 = 20 ms
    scheme = EchoScheme(np.array([0.06, 0.08, 0.1]))  # TE = 60, 80, 100 ms
    noise_variance = 1.0

    initial_loss = compute_loss(scheme, model, noise_variance, gauss_loss)

    # A single iteration as a sanity check, the loss should not increase.
    _, loss = optimize_scheme(scheme, model, noise_variance, loss=gauss_loss, method=method,
                              solver_options={"maxiter": 1})
    assert loss <= initial_loss


class TestSOMA:
    model = ExponentialTissueModel(t2=0.02)
    scheme = EchoScheme(np.array([0.06, 0.08, 0.1]))

    def test_loss_decreases(self):
        initial_loss = compute_loss(self.scheme, self.model, 1.0, gauss_loss)
        optimal_scheme, loss, result = optimize_scheme(self.scheme, self.model, 1.0,
                                                       method=SOMA(population_sz=10, max_migrations=10, seed=0),
                                                       full_output=True)
        assert loss <= initial_loss
        assert loss < 0.5 * initial_loss
        assert result.reference_fun == pytest.approx(initial_loss)
        assert np.all(np.diff(result.history) <= 0)

        # The scheme passed in is left untouched.
        np.testing.assert_equal(self.scheme.echo_times, [0.06, 0.08, 0.1])
        assert np.all(optimal_scheme.echo_times >= 1e-3)
        assert np.all(optimal_scheme.echo_times <= 0.5)

    def test_rice_loss(self):
        initial_loss = compute_loss(self.scheme, self.model, 1e-4, rice_loss)
        _, loss = optimize_scheme(self.scheme, self.model, 1e-4, loss=rice_loss,
                                  method=SOMA(population_sz=10, max_migrations=3, seed=1))
        assert loss <= initial_loss

    def test_noddi_shells(self):
        scheme = noddi_multishell_scheme(n_directions=10)
        model = NODDIModel(ficvf=0.5, kappa=2., fiso=0.1)
        model['S0'].optimize = False
        initial_loss = compute_loss(scheme, model, 1e-4, gauss_loss)

        optimal_scheme, loss = optimize_scheme(scheme, model, 1e-4,
                                               method=SOMA(population_sz=8, max_migrations=3, seed=2))
        assert loss <= initial_loss

        # Shell structure, fixed b0 measurements and the timing constraints survive the optimization.
        assert np.all(optimal_scheme.b_values[:3] == 0)
        assert np.unique(optimal_scheme.pulse_widths[3:13]).size == 1
        assert np.all(optimal_scheme.pulse_intervals >= optimal_scheme.pulse_widths - 1e-12)
        assert np.all(optimal_scheme.echo_times >= optimal_scheme.pulse_intervals + optimal_scheme.pulse_widths
                      - 1e-12)


class TestInitialSchemeChecks:
    model = ExponentialTissueModel(t2=0.02)

    def test_degrees_of_freedom(self):
        scheme = EchoScheme(np.array([0.05]))
        with pytest.raises(ValueError):
            check_degrees_of_freedom(scheme, self.model)
        with pytest.raises(ValueError):
            optimize_scheme(scheme, self.model, 1.0)

    def test_insensitive(self):
        model = InversionRecoveryTissueModel(t1=0.9)
        # A parameter that does not enter the signal equation.
        model['Unused'] = TissueParameter(value=1., scale=1.)
        with pytest.raises(ValueError):
            check_insensitive(ir_scheme(), model)

    def test_ill_conditioned(self):
        with pytest.raises(RuntimeError):
            check_ill_conditioned(1e30)
        check_ill_conditioned(1.)
