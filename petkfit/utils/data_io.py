"""
Data IO

Loading and saving of the plain array, blood input and tabular files used by the fitting tools.

PET radionuclide half life source: code borrowed from DynamicPET
(https://github.com/bilgelm/dynamicpet/blob/main/src/dynamicpet/petbids/petbidsjson.py), derived
from TPC (turkupetcentre.net/petanalysis/decay.html). This source is from:
Table of Isotopes, Sixth edition, edited by C.M. Lederer, J.M. Hollander, I. Perlman. WILEY, 1967.
"""
import json
import logging
import os
from typing import Union
import numpy as np
import pandas as pd

from .time_activity_curve import BloodInput

logger = logging.getLogger(__name__)


_HALFLIVES_ = {
    "c11": 1224,
    "n13": 599,
    "o15": 123,
    "f18": 6588,
    "cu62": 582,
    "cu64": 45721.1,
    "ga68": 4080,
    "ge68": 23760000,
    "br76": 58700,
    "rb82": 75,
    "zr89": 282240,
    "i124": 360806.4,
}

_TIME_UNIT_SCALES_ = {'s': 1.0, 'sec': 1.0, 'min': 60.0}


def write_dict_to_json(meta_data_dict: dict, out_path: str):
    """
    Save a dictionary, such as the properties of an analysis, to a JSON file.

    Args:
        meta_data_dict (dict): The dictionary to be saved.
        out_path (str): Path of the JSON file.
    """
    with open(out_path, 'w', encoding='utf-8') as out_file:
        json.dump(meta_data_dict, out_file, indent=4)


def safe_load_array(filename: str, **kwargs) -> np.ndarray:
    """
    Loads a numeric array from a ``.npy`` file or a whitespace separated text file.

    Text files are read with :func:`numpy.loadtxt`. If that fails, we assume the file has a header row and try again
    skipping it.

    Args:
        filename (str): The name of the file to be loaded.
        **kwargs: Forwarded to :func:`numpy.loadtxt` for text files.

    Returns:
        np.ndarray: The loaded array, as C-ordered floats.

    Raises:
        Exception: An error occurred loading the file.
    """
    if filename.endswith('.npy'):
        return np.asarray(np.load(filename), dtype=float, order='C')
    try:
        arr = np.loadtxt(filename, **kwargs)
    except ValueError:
        arr = np.loadtxt(filename, skiprows=1, **kwargs)
    except Exception as e:
        logger.error(f"Couldn't read file {filename}. Error: {e}")
        raise e
    return np.asarray(arr, dtype=float, order='C')


def load_blood_input(filename: str) -> BloodInput:
    """
    Loads a blood input function file.

    The file has one row per sample and two or three columns: the sampling time, the plasma activity and, optionally,
    the whole-blood activity.

    Args:
        filename (str): Path to the blood input file.

    Returns:
        BloodInput: The blood input curves.

    Raises:
        ValueError: If the file does not have two or three columns.
    """
    blood_data = safe_load_array(filename)
    if blood_data.ndim != 2 or blood_data.shape[1] not in (2, 3):
        raise ValueError(f"Blood input file {filename} must have 2 or 3 columns: time, plasma[, whole blood]. "
                         f"Got an array of shape {blood_data.shape}.")
    whole_blood = blood_data[:, 2].copy() if blood_data.shape[1] == 3 else None
    return BloodInput(times=blood_data[:, 0].copy(), plasma=blood_data[:, 1].copy(), whole_blood=whole_blood)


def get_half_life_for_radionuclide(radionuclide: str) -> float:
    """
    Half-life of a radionuclide, in seconds.

    Args:
        radionuclide (str): Radionuclide name such as ``'F18'``, ``'f-18'`` or ``'C11'``.

    Returns:
        float: The half-life in seconds.

    Raises:
        ValueError: If the radionuclide is not in the half-life table.
    """
    key = radionuclide.lower().replace("-", "")
    try:
        return _HALFLIVES_[key]
    except KeyError as exc:
        raise ValueError(f"Unknown radionuclide {radionuclide}. Must be one of "
                         f"{', '.join(_HALFLIVES_)}.") from exc


def get_decay_constant_for_radionuclide(radionuclide: str, time_unit: str = 'min') -> float:
    r"""
    Decay constant :math:`\lambda=\ln(2)/T_{1/2}` of a radionuclide in the inverse of ``time_unit``.

    Args:
        radionuclide (str): Radionuclide name, see :func:`get_half_life_for_radionuclide`.
        time_unit (str): Either ``'s'`` or ``'min'``. Defaults to ``'min'``.

    Returns:
        float: The decay constant.

    Raises:
        ValueError: If the radionuclide or the time unit is not supported.
    """
    if time_unit not in _TIME_UNIT_SCALES_:
        raise ValueError(f"Invalid time unit! Must be one of {', '.join(_TIME_UNIT_SCALES_)}. Got {time_unit}.")
    half_life = get_half_life_for_radionuclide(radionuclide) / _TIME_UNIT_SCALES_[time_unit]
    return np.log(2.0) / half_life


def write_param_matrix_to_tsv(param_matrix: np.ndarray,
                              param_names: Union[list, tuple],
                              out_path: str) -> pd.DataFrame:
    """
    Writes a fitted parameter matrix to a TSV file with one row per voxel and one column per parameter.

    Args:
        param_matrix (np.ndarray): Parameter matrix of shape ``(num_params, num_voxels)``.
        param_names (list[str]): Name of each parameter.
        out_path (str): Path of the TSV file.

    Returns:
        pd.DataFrame: The table that was written.
    """
    param_table = pd.DataFrame(np.asarray(param_matrix).T, columns=list(param_names))
    param_table.index.name = 'voxel'
    out_dir = os.path.dirname(os.path.abspath(out_path))
    os.makedirs(out_dir, exist_ok=True)
    param_table.to_csv(out_path, sep='\t')
    return param_table
