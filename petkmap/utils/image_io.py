"""
Image IO

Readers for the inputs of a kinetic fit (TAC tables, 4D-PET NIfTI images and their BIDS JSON sidecars) and writers
for its outputs (parametric maps and analysis properties).

PET radionuclide half life source: code borrowed from DynamicPET
(https://github.com/bilgelm/dynamicpet/blob/main/src/dynamicpet/petbids/petbidsjson.py), derived
from TPC (turkupetcentre.net/petanalysis/decay.html). This source is from:
Table of Isotopes, Sixth edition, edited by C.M. Lederer, J.M. Hollander, I. Perlman. WILEY, 1967.
"""
import json
import logging
import os
import re

import nibabel
import numpy as np

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


def write_dict_to_json(meta_data_dict: dict, out_path: str):
    """Writes analysis properties (or any JSON-serializable dictionary) to ``out_path`` with an indent of 4."""
    with open(out_path, 'w', encoding='utf-8') as props_file:
        json.dump(meta_data_dict, props_file, indent=4)
    logger.debug(f"Wrote {out_path}")


def sidecar_path_for_nifti(image_path: str) -> str:
    """``sub-01_pet.nii.gz`` -> ``sub-01_pet.json``."""
    return re.sub(r'\.nii(\.gz)?$', '.json', image_path)


def load_sidecar_for_nifti(image_path: str) -> dict:
    """
    Reads the BIDS JSON sidecar of a NIfTI image.

    Args:
        image_path (str): Path to a ``.nii`` or ``.nii.gz`` image. The sidecar has the same name with a ``.json``
            extension.

    Returns:
        dict: The sidecar fields.

    Raises:
        FileNotFoundError: If the image or its sidecar does not exist.
    """
    if not os.path.exists(image_path):
        raise FileNotFoundError(f"Image file {image_path} not found.")
    sidecar_path = sidecar_path_for_nifti(image_path)
    if not os.path.exists(sidecar_path):
        raise FileNotFoundError(f"No JSON sidecar found for {image_path}; expected {sidecar_path}.")
    with open(sidecar_path, 'r', encoding='utf-8') as sidecar_file:
        return json.load(sidecar_file)


def safe_load_tac(filename: str, **kwargs) -> np.ndarray:
    """
    Loads a whitespace-delimited table of TAC columns from a file.

    The file may start with a single header row, which is skipped. Values are returned as they are stored; no
    unit conversion is applied.

    Args:
        filename (str): Path to the table.
        **kwargs: Passed on to :func:`numpy.loadtxt`.

    Returns:
        np.ndarray: A 2D array with one row per column of the file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file cannot be parsed as a numeric table.
    """
    if not os.path.exists(filename):
        raise FileNotFoundError(f"TAC file {filename} not found.")
    try:
        table = np.loadtxt(filename, ndmin=2, **kwargs)
    except ValueError:
        logger.debug(f"Could not parse {filename} as a plain table; skipping its header row.")
        table = np.loadtxt(filename, skiprows=1, ndmin=2, **kwargs)
    return np.ascontiguousarray(table.T, dtype=float)


def half_life_from_sidecar(sidecar: dict) -> float:
    """
    Radionuclide half-life in seconds, from ``TracerRadionuclide`` (e.g. ``'F18'``, ``'C-11'``) if it names a known
    radionuclide, else from ``RadionuclideHalfLife``.

    Raises:
        KeyError: If neither field gives a half-life.
    """
    radionuclide = str(sidecar.get('TracerRadionuclide', '')).lower().replace("-", "")
    if radionuclide in _HALFLIVES_:
        return float(_HALFLIVES_[radionuclide])
    try:
        return float(sidecar['RadionuclideHalfLife'])
    except KeyError as exc:
        raise KeyError("The sidecar has neither a known 'TracerRadionuclide' nor a 'RadionuclideHalfLife'.") from exc


def get_half_life_from_nifti(image_path: str) -> float:
    """Radionuclide half-life in seconds, read from the JSON sidecar of ``image_path``."""
    return half_life_from_sidecar(load_sidecar_for_nifti(image_path))


def get_frame_timing_for_nifti(image_path: str) -> tuple[np.ndarray, np.ndarray]:
    r"""
    Frame start and end times, in seconds, from the JSON sidecar of a 4D-PET image.

    ``FrameDuration`` is required. Without ``FrameTimesStart`` the frames are taken to be back to back from
    :math:`t=0`.

    Args:
        image_path (str): Path to the NIfTI image.

    Returns:
        tuple: ``(frame_starts, frame_ends)`` arrays.

    Raises:
        FileNotFoundError: If the image or its sidecar does not exist.
        KeyError: If the sidecar has no ``FrameDuration``.
    """
    sidecar = load_sidecar_for_nifti(image_path)
    durations = np.asarray(sidecar['FrameDuration'], dtype=float)
    if 'FrameTimesStart' in sidecar:
        starts = np.asarray(sidecar['FrameTimesStart'], dtype=float)
    else:
        logger.debug(f"{image_path} has no FrameTimesStart; assuming back-to-back frames from t=0.")
        starts = np.cumsum(durations) - durations
    return starts, starts + durations


def safe_load_4dpet_nifti(filename: str) -> nibabel.nifti1.Nifti1Image:
    """
    Loads a 4D-PET NIfTI image, frames along the last axis.

    Raises:
        ValueError: If the file is not ``.nii``/``.nii.gz``, or the image is not 4D.
        FileNotFoundError: If the file does not exist.
    """
    if not filename.endswith(('.nii', '.nii.gz')):
        raise ValueError(f"Expected a '.nii' or '.nii.gz' image. Got {filename}.")
    if not os.path.exists(filename):
        raise FileNotFoundError(f"Image file {filename} not found.")
    image = nibabel.load(filename)
    if len(image.shape) != 4:
        raise ValueError(f"Expected a 4D image. {filename} has shape {image.shape}.")
    return image


def save_parametric_map(image_array: np.ndarray, affine: np.ndarray, out_file: str, verbose: bool = True):
    """
    Saves a 3D map (fitted parameter, status or iteration count) as a NIfTI image in the space of the PET scan.

    Args:
        image_array (np.ndarray): The map. Its dtype is kept.
        affine (np.ndarray): Voxel-to-world affine of the PET image.
        out_file (str): Output path.
        verbose (bool): Log the saved path at INFO level.
    """
    nibabel.save(nibabel.Nifti1Image(image_array, affine), out_file)
    if verbose:
        logger.info(f"Parametric map saved to {out_file}")
