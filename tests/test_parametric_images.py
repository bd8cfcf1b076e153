import json
import logging
import os

import nibabel
import numpy as np
import pytest

from petkmap.kinetic_modeling.lm_solver import FitStatus
from petkmap.kinetic_modeling.parametric_images import ParametricImageAnalysis, fit_many_tacs, get_num_workers
from petkmap.kinetic_modeling.tac_fitting import fit_tac
from petkmap.kinetic_modeling.tcm_models import evaluate, get_kinetic_model
from petkmap.utils.errors import InvalidBounds, InvalidFrames, ParameterCountMismatch


@pytest.fixture
def voxel_tacs(bolus_input, increasing_frames, rng):
    params = np.column_stack([rng.uniform(0.2, 1.0, 8), rng.uniform(0.05, 0.6, 8), rng.uniform(0.0, 0.15, 8)])
    tacs = np.stack([evaluate('1t3p', p, bolus_input, increasing_frames)[0] for p in params])
    return params, tacs


def test_get_num_workers():
    available = os.cpu_count() or 1
    assert get_num_workers() == available
    assert get_num_workers(1) == 1
    assert get_num_workers(10 ** 6) == available
    with pytest.raises(ValueError):
        get_num_workers(0)


def test_results_are_in_input_order(voxel_tacs, bolus_input, increasing_frames):
    params, tacs = voxel_tacs
    results = fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, num_workers=4)
    assert len(results) == len(tacs)
    for truth, result in zip(params, results):
        assert result.status is FitStatus.CONVERGED
        np.testing.assert_allclose(result.params, truth, rtol=0.01, atol=1e-4)


def test_threaded_matches_serial_and_single_fits(voxel_tacs, bolus_input, increasing_frames):
    _, tacs = voxel_tacs
    serial = fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, num_workers=1)
    threaded = fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, num_workers=3)
    for one, other, tac in zip(serial, threaded, tacs):
        np.testing.assert_array_equal(one.params, other.params)
        assert one.iterations == other.iterations
        assert one.status is other.status
        single = fit_tac('1t3p', tac, None, bolus_input, increasing_frames)
        np.testing.assert_array_equal(one.params, single.params)


def test_voxel_fit_does_not_depend_on_its_neighbours(voxel_tacs, bolus_input, increasing_frames):
    _, tacs = voxel_tacs
    alone = fit_many_tacs('1t3p', tacs[3:4], None, bolus_input, increasing_frames)[0]
    shuffled = fit_many_tacs('1t3p', tacs[::-1], None, bolus_input, increasing_frames, num_workers=2)
    np.testing.assert_array_equal(alone.params, shuffled[len(tacs) - 4].params)


def test_per_voxel_initial_values(voxel_tacs, bolus_input, increasing_frames):
    params, tacs = voxel_tacs
    results = fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, initial=params,
                            free_mask=np.array([False, False, False]), num_workers=2)
    for truth, result in zip(params, results):
        np.testing.assert_array_equal(result.params, truth)
        assert result.iterations == 0


def test_empty_batch(bolus_input, increasing_frames):
    assert fit_many_tacs('1t3p', np.empty((0, increasing_frames.num_frames)), None, bolus_input,
                         increasing_frames) == []


def test_contract_errors_raise_before_fitting(voxel_tacs, bolus_input, increasing_frames):
    _, tacs = voxel_tacs
    with pytest.raises(InvalidBounds):
        fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, lower=np.array([0.0, 1.0, 0.0]),
                      upper=np.array([1.0, 0.5, 1.0]))
    with pytest.raises(InvalidFrames):
        fit_many_tacs('1t3p', tacs[:, :-1], None, bolus_input, increasing_frames)
    with pytest.raises(InvalidFrames):
        fit_many_tacs('1t3p', tacs, np.ones(3), bolus_input, increasing_frames)
    with pytest.raises(ParameterCountMismatch):
        fit_many_tacs('1t3p', tacs, None, bolus_input, increasing_frames, initial=np.ones(5))


@pytest.mark.parametrize('num_workers', [1, 3])
def test_voxels_without_enough_frames_do_not_stop_the_batch(num_workers, voxel_tacs, bolus_input,
                                                            increasing_frames, caplog):
    params, tacs = voxel_tacs
    batch = tacs[:4].copy()
    batch[1] = np.nan
    batch[2, 2:] = np.nan
    with caplog.at_level(logging.WARNING):
        results = fit_many_tacs('1t3p', batch, None, bolus_input, increasing_frames, num_workers=num_workers)
    assert "2 TAC(s) have fewer usable frames" in caplog.text
    assert len(results) == 4

    default_initial = get_kinetic_model('1t3p').default_bounds_array()[:, 0]
    for skipped in (results[1], results[2]):
        assert skipped.status is FitStatus.DIVERGED
        assert skipped.iterations == 0
        assert np.all(np.isnan(skipped.predicted))
        np.testing.assert_array_equal(skipped.params, default_initial)
    for voxel_id in (0, 3):
        assert results[voxel_id].status is FitStatus.CONVERGED
        np.testing.assert_array_equal(results[voxel_id].params,
                                      fit_tac('1t3p', tacs[voxel_id], None, bolus_input, increasing_frames).params)
        np.testing.assert_allclose(results[voxel_id].params, params[voxel_id], rtol=0.01, atol=1e-4)


def test_parametric_image_analysis(tmp_path, pet_dataset):
    out_dir = tmp_path / 'out'
    out_dir.mkdir()
    analysis = ParametricImageAnalysis(input_tac_path=str(pet_dataset['input']),
                                       pet4d_img_path=str(pet_dataset['pet']),
                                       output_directory=str(out_dir),
                                       output_filename_prefix='sub-001',
                                       compartment_model='1t3p',
                                       mask_img_path=str(pet_dataset['mask']),
                                       decay_constant=None,
                                       num_workers=2)
    analysis()

    assert analysis.resolved_decay_constant() == pytest.approx(pet_dataset['decay'])
    np.testing.assert_allclose(analysis.param_images[:2, 0, 0], pet_dataset['params'][:2], rtol=0.01, atol=1e-4)
    assert np.all(np.isnan(analysis.param_images[2, 0, 0]))
    np.testing.assert_array_equal(analysis.status_image[:, 0, 0], [0, 0, -1])

    k1_img = nibabel.load(out_dir / 'sub-001_desc-1t3p_K1.nii.gz')
    assert k1_img.shape == (3, 1, 1)
    np.testing.assert_array_equal(k1_img.affine, np.diag([2.0, 2.0, 2.0, 1.0]))
    np.testing.assert_allclose(k1_img.get_fdata()[:2, 0, 0], pet_dataset['params'][:2, 0], rtol=0.01)
    status_img = nibabel.load(out_dir / 'sub-001_desc-1t3p_status.nii.gz')
    np.testing.assert_array_equal(status_img.get_fdata()[:, 0, 0], [0, 0, -1])
    assert analysis.iterations_image.dtype == np.int32
    iterations_img = nibabel.load(out_dir / 'sub-001_desc-1t3p_iterations.nii.gz')
    assert iterations_img.get_data_dtype() == np.int32
    np.testing.assert_array_equal(iterations_img.get_fdata()[:, 0, 0], analysis.iterations_image[:, 0, 0])

    with open(out_dir / 'sub-001_desc-1t3p_props.json', 'r', encoding='utf-8') as props_file:
        props = json.load(props_file)
    assert props['NumberOfVoxelsFit'] == 2
    assert props['StatusCounts'] == {'converged': 2, 'max_iterations_reached': 0, 'diverged': 0}
    assert props['DecayConstant'] == pytest.approx(pet_dataset['decay'])


def test_bad_voxels_inside_mask_keep_the_rest_of_the_image(tmp_path, pet_dataset):
    tacs = pet_dataset['tacs'].copy()
    tacs[0] = np.nan
    tacs[1, 2:] = np.nan
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    nibabel.save(nibabel.Nifti1Image(tacs.reshape(3, 1, 1, -1), affine), pet_dataset['pet'])
    mask_path = tmp_path / 'sub-001_fullmask.nii.gz'
    nibabel.save(nibabel.Nifti1Image(np.ones((3, 1, 1), dtype=np.int16), affine), mask_path)

    analysis = ParametricImageAnalysis(input_tac_path=str(pet_dataset['input']),
                                       pet4d_img_path=str(pet_dataset['pet']),
                                       output_directory=str(tmp_path),
                                       output_filename_prefix='sub-001',
                                       compartment_model='1t3p',
                                       mask_img_path=str(mask_path),
                                       decay_constant=pet_dataset['decay'],
                                       num_workers=2)
    analysis.run_analysis()

    np.testing.assert_array_equal(analysis.status_image[:, 0, 0], [-1, 2, 0])
    assert np.all(np.isnan(analysis.param_images[0, 0, 0]))
    np.testing.assert_allclose(analysis.param_images[2, 0, 0], pet_dataset['params'][2], rtol=0.01, atol=1e-4)
    assert analysis.analysis_props['NumberOfVoxelsFit'] == 2
    assert analysis.analysis_props['StatusCounts'] == {'converged': 1, 'max_iterations_reached': 0, 'diverged': 1}


def test_parametric_image_without_mask_fits_every_voxel(tmp_path, pet_dataset):
    analysis = ParametricImageAnalysis(input_tac_path=str(pet_dataset['input']),
                                       pet4d_img_path=str(pet_dataset['pet']),
                                       output_directory=str(tmp_path),
                                       output_filename_prefix='sub-001',
                                       compartment_model='1t3p',
                                       decay_constant=pet_dataset['decay'],
                                       fixed_parameters=['Vb'],
                                       num_workers=1)
    analysis.run_analysis()
    assert analysis.analysis_props['NumberOfVoxelsFit'] == 3
    np.testing.assert_array_equal(analysis.param_images[:, 0, 0, 2], np.float32(0.05))


def test_save_before_run_raises(tmp_path, pet_dataset):
    analysis = ParametricImageAnalysis(str(pet_dataset['input']), str(pet_dataset['pet']), str(tmp_path), 'sub-001',
                                       '1t3p')
    with pytest.raises(RuntimeError):
        analysis.save_analysis()
