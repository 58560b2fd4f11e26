import numpy as np
import pytest

from qmrtool.acquisition_scheme import EchoScheme
from qmrtool.tissue_model import ExponentialTissueModel, InversionRecoveryTissueModel, RelaxedIsotropicModel, \
    TissueModel, TissueParameter, add_noise, fit_cost
from qmrtool.utils.saved_schemes import echo_scheme, ir_scheme, reduced_diffusion_scheme


def finite_difference_jacobian(model: TissueModel, scheme) -> np.ndarray:
    """ The generic finite difference implementation of the base class, bypassing analytical overrides. """
    return TissueModel.scaled_jacobian(model, scheme)


class TestExponentialTissueModel:
    model = ExponentialTissueModel(t2=0.02, s0=2.)
    scheme = EchoScheme(np.array([0.01, 0.02, 0.04]))

    def test_signal(self):
        np.testing.assert_allclose(self.model(self.scheme), 2. * np.exp(-np.array([0.5, 1., 2.])))

    def test_analytical_jacobian(self):
        np.testing.assert_allclose(self.model.scaled_jacobian(self.scheme),
                                   finite_difference_jacobian(self.model, self.scheme), rtol=1e-4)

    def test_jacobian_mask(self):
        jac = self.model.scaled_jacobian(self.scheme, mask=np.array([True, False]))
        assert jac.shape == (3, 1)

    def test_fit_noise_free(self):
        fitted = self.model.fit(self.scheme, self.model(self.scheme)).fitted_parameters
        assert fitted['T2'] == pytest.approx(0.02, rel=1e-6)
        assert fitted['S0'] == pytest.approx(2., rel=1e-6)

    def test_simulate_single_voxel(self):
        model = ExponentialTissueModel(t2=0.05)
        fitted = model.simulate_single_voxel(echo_scheme(20), snr=1000., noise='gaussian', rng=0)
        assert fitted['T2'] == pytest.approx(0.05, rel=1e-2)

        with pytest.raises(ValueError):
            model.simulate_single_voxel(echo_scheme(), snr=0.)


class TestInversionRecoveryTissueModel:
    model = InversionRecoveryTissueModel(t1=0.9, s0=1.)
    scheme = ir_scheme()

    def test_signal(self):
        signal = self.model(self.scheme)
        ti, tr = self.scheme.inversion_times, self.scheme.repetition_times
        np.testing.assert_allclose(signal, np.abs(1 - 2 * np.exp(-ti / 0.9) + np.exp(-tr / 0.9)))
        assert np.all(signal >= 0)

    def test_fit_noise_free(self):
        model = InversionRecoveryTissueModel(t1=0.9, s0=1.)
        fitted = model.fit(self.scheme, model(self.scheme), rng=0).fitted_parameters
        assert fitted['T1'] == pytest.approx(0.9, rel=1e-2)
        assert fitted['S0'] == pytest.approx(1., rel=1e-2)


class TestRelaxedIsotropicModel:
    model = RelaxedIsotropicModel(t2=0.08, diffusivity=1e-3)
    scheme = reduced_diffusion_scheme()

    def test_analytical_jacobian(self):
        np.testing.assert_allclose(self.model.scaled_jacobian(self.scheme),
                                   finite_difference_jacobian(self.model, self.scheme), rtol=1e-4, atol=1e-10)

    def test_fit_noise_free(self):
        fitted = self.model.fit(self.scheme, self.model(self.scheme), rng=0).fitted_parameters
        assert fitted['T2'] == pytest.approx(0.08, rel=1e-2)
        assert fitted['Diffusivity'] == pytest.approx(1e-3, rel=1e-2)


class TestParameterHandling:
    def test_scaled_parameters(self):
        model = ExponentialTissueModel(t2=0.02, s0=2.)
        np.testing.assert_allclose(model.scaled_parameter_vector, [2., 2.])

        model.set_scaled_parameters([3., 1.])
        assert model.parameters == pytest.approx({'T2': 0.03, 'S0': 1.})

    def test_fit_parameters(self):
        model = ExponentialTissueModel(t2=0.02)
        model['S0'].fit_flag = False
        assert model.fit_parameter_names == ['T2']

        model.set_scaled_fit_parameters(np.array([4.]))
        assert model['T2'].value == pytest.approx(0.04)
        with pytest.raises(ValueError):
            model.set_scaled_fit_parameters(np.array([4., 1.]))

        bounds = model.scaled_fit_bounds_all
        np.testing.assert_allclose(bounds.lb, [1e-2])
        np.testing.assert_allclose(bounds.ub, [1e3])

    def test_set_parameters(self):
        model = ExponentialTissueModel(t2=0.02)
        model.set_parameters({'T2': 0.03})
        assert model['T2'].value == 0.03
        with pytest.raises(KeyError):
            model.set_parameters({'T1': 1.})

    def test_default_fit_guess(self):
        parameter = TissueParameter(value=3., scale=2.)
        assert parameter.fit_guess == 2.

    def test_fit_cost(self):
        model = ExponentialTissueModel(t2=0.02)
        scheme = EchoScheme(np.array([0.01, 0.02]))
        signal = model(scheme)
        assert fit_cost(np.array([2., 1.]), signal, scheme, model) == pytest.approx(0.)
        assert fit_cost(np.array([2., 2.]), signal, scheme, model) == pytest.approx(np.sum(signal ** 2))

    def test_string(self):
        assert 'Tissue model with 2 scalar parameters' in str(ExponentialTissueModel(t2=0.02))


class TestNoise:
    signal = np.full(20000, 10.)

    def test_gaussian(self):
        noisy = add_noise(self.signal, 2., 'gaussian', rng=0)
        assert np.mean(noisy) == pytest.approx(10., abs=0.1)
        assert np.std(noisy) == pytest.approx(2., rel=0.05)

    def test_rician(self):
        noisy = add_noise(self.signal, 2., 'rician', rng=0)
        assert np.all(noisy >= 0)
        # The Rician mean exceeds the signal amplitude, approximately by sigma²/(2A).
        assert np.mean(noisy) == pytest.approx(10.2, abs=0.1)

        # A zero signal gives Rayleigh distributed magnitudes.
        rayleigh = add_noise(np.zeros(20000), 1., rng=1)
        assert np.mean(rayleigh) == pytest.approx(np.sqrt(np.pi / 2), rel=0.05)

    def test_reproducible(self):
        np.testing.assert_equal(add_noise(self.signal, 1., rng=5), add_noise(self.signal, 1., rng=5))

    def test_unknown_noise(self):
        with pytest.raises(ValueError):
            add_noise(self.signal, 1., 'poisson')
