import numpy as np
import pytest
from numpy.polynomial.legendre import leggauss
from scipy.special import erf

from qmrtool.acquisition_scheme import DiffusionAcquisitionScheme, EchoScheme
from qmrtool.noddi import NODDIModel, orientation_dispersion_index, dti_fit
from qmrtool.utils.saved_schemes import noddi_multishell_scheme
from qmrtool.utils.sphere import angles_to_unitvectors


def watson_stick_signal(b_value, di, kappa, cos_alpha, n=200):
    """
    Brute force quadrature of the Watson averaged stick signal, for a gradient at angle alpha from the mean
    orientation.
    """
    t, w = leggauss(n)
    psi = np.linspace(0, 2 * np.pi, n, endpoint=False)
    sin_alpha = np.sqrt(1 - cos_alpha ** 2)

    t_grid, psi_grid = np.meshgrid(t, psi, indexing='ij')
    cosine = cos_alpha * t_grid + sin_alpha * np.sqrt(1 - t_grid ** 2) * np.cos(psi_grid)
    density = np.exp(kappa * t_grid ** 2) * w[:, np.newaxis]
    return np.sum(density * np.exp(-b_value * di * cosine ** 2)) / np.sum(density)


class TestWatson:
    def test_coefficients(self):
        model = NODDIModel(kappa=0.)
        coefficients = model.watson_coefficients()
        assert coefficients[0] == pytest.approx(1.)
        np.testing.assert_allclose(coefficients[1:], 0., atol=1e-12)
        assert model.watson_mean_squared_cosine() == pytest.approx(1 / 3)

    def test_concentrated(self):
        model = NODDIModel(kappa=64.)
        assert model.watson_coefficients()[0] == pytest.approx(1.)
        assert model.watson_mean_squared_cosine() > 0.95

    def test_orientation_dispersion_index(self):
        assert orientation_dispersion_index(0.) == pytest.approx(1.)
        assert orientation_dispersion_index(1.) == pytest.approx(0.5)
        assert orientation_dispersion_index(1e6) == pytest.approx(0., abs=1e-5)
        assert NODDIModel(kappa=1.).derived_parameters({'kappa': 1.}) == pytest.approx({'ODI': 0.5})


class TestSignal:
    scheme = noddi_multishell_scheme(n_directions=20)

    def test_b0_signal(self):
        model = NODDIModel(s0=3.)
        b0 = self.scheme.b_values == 0
        np.testing.assert_allclose(model(self.scheme)[b0], 3.)

    def test_isotropic_intra_cellular_signal(self):
        # Without orientation preference the stick signal is the mean of exp(-b di t²) over t in [0, 1].
        model = NODDIModel(kappa=0.)
        b_values = np.array([700., 2000.])
        bd = b_values * model['di'].value
        expected = np.sqrt(np.pi) / 2 * erf(np.sqrt(bd)) / np.sqrt(bd)
        for cos_angle in (0., 0.5, 1.):
            np.testing.assert_allclose(model.intra_cellular_signal(b_values, np.full(2, cos_angle)), expected,
                                       rtol=1e-10)

    @pytest.mark.parametrize("kappa", [0.5, 4., 32.])
    def test_intra_cellular_signal_matches_quadrature(self, kappa):
        model = NODDIModel(kappa=kappa)
        di = model['di'].value
        cos_angles = np.array([0., 0.3, 0.8, 1.])
        b_values = np.full(4, 2000.)

        expected = [watson_stick_signal(2000., di, kappa, c) for c in cos_angles]
        np.testing.assert_allclose(model.intra_cellular_signal(b_values, cos_angles), expected, rtol=1e-5)

    def test_expansion_converged(self):
        low = NODDIModel(kappa=16., max_order=24)
        high = NODDIModel(kappa=16., max_order=40)
        np.testing.assert_allclose(low(self.scheme), high(self.scheme), rtol=1e-5)

    def test_limits(self):
        b_values = self.scheme.b_values

        # Without sticks the hindered compartment has the intrinsic diffusivity in every direction.
        model = NODDIModel(ficvf=0., fiso=0.)
        np.testing.assert_allclose(model(self.scheme), np.exp(-b_values * model['di'].value))

        model = NODDIModel(fiso=1.)
        np.testing.assert_allclose(model(self.scheme), np.exp(-b_values * model['diso'].value))

    def test_rotation_symmetry(self):
        # The signal along the mean orientation does not depend on the azimuth of the orientation.
        direction = angles_to_unitvectors(np.array([[0.7, 1.2]]))
        scheme = DiffusionAcquisitionScheme.from_bvals(np.array([2000.]), direction, 0.02, 0.04)
        parallel = NODDIModel(theta=0.7, phi=1.2)(scheme)

        scheme_z = DiffusionAcquisitionScheme.from_bvals(np.array([2000.]), np.array([[0., 0., 1.]]), 0.02, 0.04)
        np.testing.assert_allclose(parallel, NODDIModel(theta=0., phi=0.)(scheme_z))

    def test_unsupported_scheme(self):
        with pytest.raises(ValueError):
            NODDIModel()(EchoScheme(np.array([0.05])))
        with pytest.raises(ValueError):
            NODDIModel().fit(EchoScheme(np.array([0.05])), np.ones(1))

    def test_invalid_expansion(self):
        with pytest.raises(ValueError):
            NODDIModel(max_order=7)
        with pytest.raises(ValueError):
            NODDIModel(n_quadrature=1)


def test_dti_fit():
    scheme = noddi_multishell_scheme(n_directions=30)
    rotation = np.linalg.qr(np.random.default_rng(0).standard_normal((3, 3)))[0]
    tensor = rotation @ np.diag([1.7e-3, 0.3e-3, 0.2e-3]) @ rotation.T

    b_vectors = scheme.b_vectors
    signal = np.exp(-scheme.b_values * np.einsum('ij,jk,ik->i', b_vectors, tensor, b_vectors))
    np.testing.assert_allclose(dti_fit(scheme.b_values, b_vectors, signal), tensor, atol=1e-9)

    # Three measurements cannot determine the six tensor elements.
    assert dti_fit(scheme.b_values[:3], b_vectors[:3], signal[:3]) is None


class TestFit:
    scheme = noddi_multishell_scheme(n_directions=30)
    truth = {'ficvf': 0.6, 'kappa': 4., 'fiso': 0.1, 'theta': 0.5, 'phi': 0.3, 's0': 100.}

    def test_noise_free_fit(self):
        model = NODDIModel(**self.truth)
        fitted = model.fit(self.scheme, model(self.scheme)).fitted_parameters

        assert fitted['ficvf'] == pytest.approx(0.6, abs=0.02)
        assert fitted['kappa'] == pytest.approx(4., rel=0.1)
        assert fitted['fiso'] == pytest.approx(0.1, abs=0.02)
        assert fitted['S0'] == pytest.approx(100., rel=1e-2)
        assert fitted['ODI'] == pytest.approx(orientation_dispersion_index(fitted['kappa']))
        # The model itself is not changed by the fit.
        assert model['S0'].scale == 1.

    def test_fixed_orientation(self):
        model = NODDIModel(**self.truth)
        model['theta'].fit_flag = False
        model['phi'].fit_flag = False
        fitted = model.fit(self.scheme, model(self.scheme)).fitted_parameters

        assert 'theta' not in fitted
        assert fitted['ficvf'] == pytest.approx(0.6, abs=0.02)

    def test_signal_shape(self):
        with pytest.raises(ValueError):
            NODDIModel().fit(self.scheme, np.ones(3))
