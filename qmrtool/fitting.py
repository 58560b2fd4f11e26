"""
Voxel wise fitting of a tissue model to multi dimensional MR data.
"""
import logging
import warnings
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
from tqdm import tqdm

from .acquisition_scheme import AcquisitionScheme
from .tissue_model import TissueModel
from .utils.IO import load_nifti_data, save_parameter_maps, save_pickle

logger = logging.getLogger(__name__)

PathType = Union[str, Path]


def fit_data(data: np.ndarray, scheme: AcquisitionScheme, model: TissueModel, mask: Optional[np.ndarray] = None,
             fit_options: Optional[dict] = None) -> Dict[str, np.ndarray]:
    """
    Fits the tissue model to every voxel in the mask.

    :param data: Array of shape (..., N) with N the number of measurements of the scheme
    :param scheme: The acquisition scheme of the data
    :param model: The tissue model, its non fitted parameters are kept at their current value
    :param mask: Boolean array of the spatial shape of the data, defaults to all voxels
    :param fit_options: Keyword arguments for the fit of the tissue model
    :return: A map per fitted (and derived) parameter. Voxels outside the mask are 0, failed fits are NaN.
    :raise ValueError: The data or mask do not match the scheme or each other.
    """
    data = np.asarray(data, dtype=np.float64)
    if data.ndim < 1 or data.shape[-1] != scheme.pulse_count:
        raise ValueError(f"The last axis of the data ({data.shape}) should match the {scheme.pulse_count} "
                         f"measurements of the scheme.")

    spatial_shape = data.shape[:-1]
    if mask is None:
        mask = np.ones(spatial_shape, dtype=bool)
    else:
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != spatial_shape:
            raise ValueError(f"Mask shape {mask.shape} does not match the spatial shape of the data {spatial_shape}")

    fit_options = {} if fit_options is None else fit_options
    fields = model.fit_parameter_names + list(model.derived_parameters(model.parameters).keys())

    maps = {}
    for field in fields:
        parameter_map = np.zeros(spatial_shape)
        parameter_map[mask] = np.nan
        maps[field] = parameter_map

    voxels = np.argwhere(mask)
    n_failed = 0
    for voxel in tqdm(voxels, desc=f"Fitting {len(voxels)} voxels"):
        index = tuple(voxel)
        try:
            fitted = model.fit(scheme, data[index], **fit_options).fitted_parameters
        except (ValueError, RuntimeError, np.linalg.LinAlgError) as error:
            n_failed += 1
            warnings.warn(f"Fit failed in voxel {index}: {error}")
            continue

        for field, value in fitted.items():
            if field in maps:
                maps[field][index] = value

    if n_failed:
        logger.warning("%d of %d voxel fits failed", n_failed, len(voxels))
    return maps


def fit_nifti(data_path: PathType, scheme: AcquisitionScheme, model: TissueModel, output_directory: PathType,
              mask_path: Optional[PathType] = None, fit_options: Optional[dict] = None) -> Dict[str, Path]:
    """
    Fits a 4D NIfTI file and writes a NIfTI map per parameter, with the header of the data, plus a pickle with all
    maps (FitResults.pkl) to the output directory.

    :param data_path: Path of the data
    :param scheme: The acquisition scheme of the data
    :param model: The tissue model
    :param output_directory: Directory for the results
    :param mask_path: Optional path of a mask image
    :param fit_options: Keyword arguments for the fit of the tissue model
    :return: Paths of the written maps
    """
    data, _ = load_nifti_data(data_path)
    mask = None
    if mask_path is not None:
        mask_data, _ = load_nifti_data(mask_path)
        mask = mask_data > 0

    maps = fit_data(data, scheme, model, mask, fit_options)

    written = save_parameter_maps(maps, output_directory, reference=data_path)
    save_pickle(maps, Path(output_directory) / "FitResults.pkl")
    logger.info("Saved %d parameter maps to %s", len(written), output_directory)
    return written
