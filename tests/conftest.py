import json

import nibabel
import numpy as np
import pytest

from petkmap.kinetic_modeling.frame_integration import ScanTiming
from petkmap.kinetic_modeling.tcm_models import evaluate
from petkmap.utils.time_activity_curve import InputFunction


def bolus(times: np.ndarray) -> np.ndarray:
    """Two-exponential bolus: zero at t=0, peak near 1.5 min, slow washout."""
    return 60.0 * (np.exp(-0.08 * times) - np.exp(-1.5 * times)) + 8.0 * (1.0 - np.exp(-0.5 * times))


@pytest.fixture
def bolus_input() -> InputFunction:
    times = np.array([0.0, 0.3, 0.7, 1.2, 2.0, 4.0, 8.0, 15.0, 30.0, 60.0])
    plasma = bolus(times)
    return InputFunction(times=times, plasma=plasma, whole_blood=0.9 * plasma)


@pytest.fixture
def increasing_frames() -> ScanTiming:
    durations = np.repeat([0.5, 1.0, 2.0, 3.0, 5.0], 4)
    return ScanTiming.from_durations(durations)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(20240117)


VOXEL_PARAMS_1T3P = np.array([[0.5, 0.3, 0.05],
                              [0.3, 0.1, 0.1],
                              [0.8, 0.5, 0.02]])
F18_HALF_LIFE_SEC = 6588.0


@pytest.fixture
def pet_dataset(tmp_path, bolus_input, increasing_frames):
    """
    A 3x1x1 dynamic image in Bq/mL with a BIDS sidecar (times in seconds), a mask that drops the last voxel, and a
    blood input file in minutes. Voxel TACs follow the one-tissue model with the F18 decay constant.
    """
    decay_constant = np.log(2.0) / (F18_HALF_LIFE_SEC / 60.0)
    tacs = np.stack([evaluate('1t3p', params, bolus_input, increasing_frames, decay_constant)[0]
                     for params in VOXEL_PARAMS_1T3P])
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    pet_path = tmp_path / 'sub-001_pet.nii.gz'
    nibabel.save(nibabel.Nifti1Image(tacs.reshape(3, 1, 1, -1), affine), pet_path)
    sidecar = {'TracerRadionuclide': 'F18',
               'FrameTimesStart': (increasing_frames.frame_starts * 60.0).tolist(),
               'FrameDuration': (increasing_frames.frame_durations * 60.0).tolist()}
    with open(tmp_path / 'sub-001_pet.json', 'w', encoding='utf-8') as sidecar_file:
        json.dump(sidecar, sidecar_file)

    mask_path = tmp_path / 'sub-001_mask.nii.gz'
    nibabel.save(nibabel.Nifti1Image(np.array([1, 1, 0], dtype=np.int16).reshape(3, 1, 1), affine), mask_path)

    input_path = tmp_path / 'sub-001_blood.txt'
    np.savetxt(input_path, np.column_stack([bolus_input.times, bolus_input.plasma, bolus_input.whole_blood]))
    return {'pet': pet_path, 'mask': mask_path, 'input': input_path, 'tacs': tacs, 'decay': decay_constant,
            'params': VOXEL_PARAMS_1T3P}
