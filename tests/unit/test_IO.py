import logging

import nibabel as nib
import numpy as np

from qmrtool.utils.IO import load_nifti_data, save_parameter_maps, save_pickle, get_pickle, configure_logging, \
    initiate_logging_directory, HiddenPrints


def test_parameter_maps_with_reference(tmp_path):
    affine = np.diag([2., 2., 2., 1.])
    reference = tmp_path / "dwi.nii.gz"
    nib.save(nib.Nifti1Image(np.zeros((3, 4, 5, 6), dtype=np.float32), affine), str(reference))

    maps = {'ficvf': np.random.default_rng(0).uniform(size=(3, 4, 5)), 'ODI': np.ones((3, 4, 5))}
    written = save_parameter_maps(maps, tmp_path / "maps", reference=reference)

    assert set(written) == {'ficvf', 'ODI'}
    data, read_affine = load_nifti_data(written['ficvf'])
    np.testing.assert_allclose(data, maps['ficvf'])
    np.testing.assert_allclose(read_affine, affine)
    assert data.dtype == np.float64


def test_parameter_maps_without_reference(tmp_path):
    written = save_parameter_maps({'T2': np.full((2, 2), 0.05)}, tmp_path)
    data, affine = load_nifti_data(written['T2'])
    np.testing.assert_allclose(data, 0.05)
    np.testing.assert_allclose(affine, np.eye(4))
    assert written['T2'].name == "T2.nii.gz"


def test_pickle(tmp_path):
    path = tmp_path / "result.pkl"
    save_pickle({'a': np.arange(3)}, path)
    np.testing.assert_equal(get_pickle(path)['a'], np.arange(3))


def test_configure_logging(tmp_path):
    assert initiate_logging_directory(tmp_path) == tmp_path / "logs"

    log_file = configure_logging(tmp_path)
    logger = logging.getLogger("qmrtool")
    try:
        logging.getLogger("qmrtool.optimize.optimize").info("logged message")
        for handler in logger.handlers:
            handler.flush()
        assert log_file.parent == tmp_path / "logs"
        assert "logged message" in log_file.read_text()
    finally:
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_file):
                logger.removeHandler(handler)
                handler.close()


def test_hidden_prints(capsys):
    with HiddenPrints():
        print("hidden")
    print("visible")
    assert capsys.readouterr().out == "visible\n"
