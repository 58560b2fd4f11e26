import nibabel as nib
import numpy as np
import pytest

from qmrtool.fitting import fit_data, fit_nifti
from qmrtool.noddi import NODDIModel
from qmrtool.tissue_model import ExponentialTissueModel
from qmrtool.utils.IO import load_nifti_data, get_pickle
from qmrtool.utils.saved_schemes import echo_scheme, noddi_multishell_scheme

T2_MAP = np.array([[0.03, 0.04], [0.05, 0.06]])


def exponential_data(scheme):
    return np.exp(-scheme.echo_times / T2_MAP[..., np.newaxis])


class TestFitData:
    scheme = echo_scheme(8)
    model = ExponentialTissueModel(t2=0.05)

    def test_noise_free(self):
        maps = fit_data(exponential_data(self.scheme), self.scheme, self.model)
        assert set(maps) == {'T2', 'S0'}
        np.testing.assert_allclose(maps['T2'], T2_MAP, rtol=1e-4)
        np.testing.assert_allclose(maps['S0'], 1., rtol=1e-4)

    def test_mask(self):
        mask = np.array([[True, False], [True, True]])
        maps = fit_data(exponential_data(self.scheme), self.scheme, self.model, mask=mask)
        assert maps['T2'][0, 1] == 0.
        np.testing.assert_allclose(maps['T2'][mask], T2_MAP[mask], rtol=1e-4)

    def test_failed_voxel(self):
        data = exponential_data(self.scheme)
        data[1, 0] = np.nan
        with pytest.warns(UserWarning):
            maps = fit_data(data, self.scheme, self.model)
        assert np.isnan(maps['T2'][1, 0])
        assert maps['T2'][0, 0] == pytest.approx(0.03, rel=1e-4)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            fit_data(np.ones((2, 2, 5)), self.scheme, self.model)
        with pytest.raises(ValueError):
            fit_data(exponential_data(self.scheme), self.scheme, self.model, mask=np.ones((3, 2), dtype=bool))

    def test_noddi_maps_include_odi(self):
        scheme = noddi_multishell_scheme(n_directions=20)
        model = NODDIModel(ficvf=0.6, kappa=4., fiso=0.1, theta=0.4, phi=0.2)
        data = model(scheme)[np.newaxis, :]

        maps = fit_data(data, scheme, model)
        assert set(maps) == set(model.fit_parameter_names) | {'ODI'}
        assert maps['ficvf'][0] == pytest.approx(0.6, abs=0.02)


def test_fit_nifti(tmp_path):
    scheme = echo_scheme(8)
    data = exponential_data(scheme)[:, :, np.newaxis, :]
    affine = np.diag([1.5, 1.5, 3., 1.])
    nib.save(nib.Nifti1Image(data, affine), str(tmp_path / "data.nii.gz"))
    mask = np.ones(data.shape[:-1], dtype=np.uint8)
    mask[0, 0, 0] = 0
    nib.save(nib.Nifti1Image(mask, affine), str(tmp_path / "mask.nii.gz"))

    written = fit_nifti(tmp_path / "data.nii.gz", scheme, ExponentialTissueModel(t2=0.05), tmp_path / "fit",
                        mask_path=tmp_path / "mask.nii.gz")

    t2, t2_affine = load_nifti_data(written['T2'])
    np.testing.assert_allclose(t2_affine, affine)
    assert t2.shape == (2, 2, 1)
    assert t2[0, 0, 0] == 0.
    np.testing.assert_allclose(t2[1, :, 0], T2_MAP[1], rtol=1e-4)

    results = get_pickle(tmp_path / "fit" / "FitResults.pkl")
    np.testing.assert_allclose(results['T2'], t2)
