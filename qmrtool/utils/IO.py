"""
File handling of qmrtool: pickles, log files and NIfTI images.
"""
import logging
import os
import pickle
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import nibabel as nib
import numpy as np

PathType = Union[str, Path]


class HiddenPrints:
    """
    Context manager that discards everything printed to stdout inside the block.
    """

    def __enter__(self):
        self._stdout = sys.stdout
        self._devnull = open(os.devnull, 'w')
        sys.stdout = self._devnull

    def __exit__(self, exc_type, exc_val, exc_tb):
        sys.stdout = self._stdout
        self._devnull.close()


def get_pickle(path) -> Any:
    with open(path, 'rb') as file:
        return pickle.load(file)


def save_pickle(obj: Any, path) -> None:
    with open(path, 'wb') as file:
        pickle.dump(obj, file)


def initiate_logging_directory(parent: Optional[PathType] = None) -> Path:
    """
    Makes (if needed) the directory in which optimization logs are stored.

    :param parent: Directory in which the 'logs' folder is created, defaults to the current working directory
    :return: Path to the logging directory
    """
    parent = Path.cwd() if parent is None else Path(parent)
    log_dir = parent / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def configure_logging(parent: Optional[PathType] = None, level: int = logging.INFO) -> Path:
    """
    Sends the log records of qmrtool to a time stamped file in the logging directory.

    :param parent: Directory in which the 'logs' folder is created
    :param level: Logging level
    :return: Path to the log file
    """
    log_dir = initiate_logging_directory(parent)
    log_file = log_dir / f"optimization_{datetime.now():%y%m%d_%H%M}.log"

    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter('%(message)s'))
    logger = logging.getLogger("qmrtool")
    logger.addHandler(handler)
    logger.setLevel(level)
    return log_file


def load_nifti_data(path: PathType) -> Tuple[np.ndarray, np.ndarray]:
    """
    Loads a NIfTI file as a float64 array.

    :param path: Path to the .nii or .nii.gz file
    :return: The data and its affine
    """
    nifti = nib.load(str(path))
    return np.asarray(nifti.get_fdata(), dtype=np.float64), nifti.affine


def save_parameter_maps(maps: Dict[str, np.ndarray], directory: PathType,
                        reference: Optional[PathType] = None,
                        affine: Optional[np.ndarray] = None) -> Dict[str, Path]:
    """
    Writes every parameter map to <directory>/<name>.nii.gz. The header and affine of a reference image are copied
    when it is provided.

    :param maps: Dictionary of parameter name: map
    :param directory: Output directory (created if needed)
    :param reference: Optional NIfTI file whose header and affine are used
    :param affine: Affine used when no reference is given, defaults to identity
    :return: Dictionary of parameter name: written file path
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    header = None
    if reference is not None:
        reference_image = nib.load(str(reference))
        affine = reference_image.affine
        header = reference_image.header.copy()
    elif affine is None:
        affine = np.eye(4)

    written = {}
    for name, parameter_map in maps.items():
        image = nib.Nifti1Image(np.asarray(parameter_map, dtype=np.float64), affine, header)
        image.set_data_dtype(np.float64)
        path = directory / f"{name}.nii.gz"
        nib.save(image, str(path))
        written[name] = path
    return written
