import numpy as np
import pandas as pd
import pytest
from scipy import stats

from qmrtool.monte_carlo.random_parameters import draw_random_parameters, simulate_random
from qmrtool.monte_carlo.sensitivity import simulate_sensitivity
from qmrtool.monte_carlo.simulation import MonteCarloSimulation
from qmrtool.noddi import NODDIModel
from qmrtool.tissue_model import ExponentialTissueModel, InversionRecoveryTissueModel
from qmrtool.utils.IO import get_pickle
from qmrtool.utils.saved_schemes import echo_scheme, ir_scheme, noddi_multishell_scheme


class TestMonteCarloSimulation:
    model = ExponentialTissueModel(t2=0.05)
    scheme = echo_scheme(10)

    def test_run_and_save(self, tmp_path):
        simulation = MonteCarloSimulation(self.scheme, self.model, stats.norm(loc=0, scale=0.01), n_sim=50, rng=0)
        with pytest.raises(RuntimeError):
            simulation.save(tmp_path / "mc.pkl")

        result = simulation.run()
        assert result.shape == (50, 2)
        assert result['T2'].mean() == pytest.approx(0.05, rel=0.05)

        simulation.save(tmp_path / "mc.pkl")
        pd.testing.assert_frame_equal(get_pickle(tmp_path / "mc.pkl"), result)

    def test_reproducible(self):
        first = MonteCarloSimulation(self.scheme, self.model, stats.norm(loc=0, scale=0.01), n_sim=5, rng=1).run()
        second = MonteCarloSimulation(self.scheme, self.model, stats.norm(loc=0, scale=0.01), n_sim=5, rng=1).run()
        pd.testing.assert_frame_equal(first, second)

    def test_invalid_number_of_simulations(self):
        with pytest.raises(ValueError):
            MonteCarloSimulation(self.scheme, self.model, stats.norm(), n_sim=0)


class TestSimRnd:
    def test_exponential(self):
        model = ExponentialTissueModel(t2=0.05)
        parameters = draw_random_parameters(model, 20, rng=0)
        result = simulate_random(model, echo_scheme(10), parameters, snr=200., noise='gaussian', rng=1)

        assert result.time > 0
        assert list(result.ground_truth.columns) == ['T2', 'S0']
        pd.testing.assert_series_equal(result.ground_truth['T2'], parameters['T2'])
        assert result.fitted.shape == (20, 2)
        assert result.analysis['NRMSE']['T2'] < 0.2
        assert abs(result.analysis['MPE']['T2']) < 2.

    def test_noddi(self):
        model = NODDIModel(ficvf=0.5, kappa=2., fiso=0.1)
        parameters = draw_random_parameters(model, 3, std={'theta': 0., 'phi': 0.}, rng=2)
        result = simulate_random(model, noddi_multishell_scheme(n_directions=20), parameters, snr=100., rng=3)

        assert 'ODI' in result.ground_truth.columns
        assert 'ODI' in result.fitted.columns
        assert 'ODI' in result.analysis['RMSE'].index
        assert np.all(np.abs(result.analysis['Error']['ficvf']) < 0.2)

    def test_seeded_run_is_reproducible(self):
        # the inversion recovery fit starts from random points drawn from the same generator as the noise
        model = InversionRecoveryTissueModel(t1=0.9)
        parameters = draw_random_parameters(model, 5, rng=4)
        first = simulate_random(model, ir_scheme(), parameters, snr=20., rng=5)
        second = simulate_random(model, ir_scheme(), parameters, snr=20., rng=5)

        pd.testing.assert_frame_equal(first.fitted, second.fitted)


class TestSimVary:
    model = ExponentialTissueModel(t2=0.05)
    scheme = echo_scheme(10)

    def test_sensitivity(self):
        results = simulate_sensitivity(self.model, self.scheme, snr=100., runs=3, n_steps=4,
                                       bounds={'T2': (0.02, 0.08)}, noise='gaussian', rng=0)

        # S0 has no finite upper bound and is skipped.
        assert list(results) == ['T2']
        result = results['T2']
        np.testing.assert_allclose(result.grid, [0.02, 0.04, 0.06, 0.08])
        assert result.fits['T2'].shape == (4, 3)
        np.testing.assert_allclose(result.ground_truth['T2'], result.grid)
        np.testing.assert_allclose(result.ground_truth['S0'], 1.)
        np.testing.assert_allclose(result.mean['T2'], result.grid, rtol=0.1)
        assert np.all(result.std['T2'] > 0)

    def test_single_run(self):
        results = simulate_sensitivity(self.model, self.scheme, runs=1, n_steps=2, varied=['T2'],
                                       bounds={'T2': (0.03, 0.06)}, rng=1)
        assert results['T2'].std['T2'].isna().all()

    def test_invalid_input(self):
        with pytest.raises(ValueError):
            simulate_sensitivity(self.model, self.scheme, varied=['S0'])
        with pytest.raises(ValueError):
            simulate_sensitivity(self.model, self.scheme, varied=['T1'])
        with pytest.raises(ValueError):
            simulate_sensitivity(self.model, self.scheme, runs=0)

    def test_seeded_run_is_reproducible(self):
        model = InversionRecoveryTissueModel(t1=0.9)
        first = simulate_sensitivity(model, ir_scheme(), snr=20., runs=2, n_steps=3, bounds={'T1': (0.5, 1.5)},
                                     rng=6)
        second = simulate_sensitivity(model, ir_scheme(), snr=20., runs=2, n_steps=3, bounds={'T1': (0.5, 1.5)},
                                      rng=6)

        assert list(first) == ['T1']
        np.testing.assert_array_equal(first['T1'].fits['T1'], second['T1'].fits['T1'])
        pd.testing.assert_frame_equal(first['T1'].mean, second['T1'].mean)
