import numpy as np
import pytest

from petkmap.kinetic_modeling.tcm_models import (KineticModelEvaluator, ModelVariant, evaluate, get_kinetic_model)
from petkmap.utils.errors import ParameterCountMismatch, UnknownModel

F18_DECAY_PER_MIN = 0.00063

PARAMETER_SETS = {
    '1t3p': [np.array([0.5, 0.3, 0.05]), np.array([1.2, 0.05, 0.2])],
    '2t5p': [np.array([0.4, 0.25, 0.08, 0.02, 0.05]), np.array([0.9, 0.6, 0.3, 0.4, 0.1])],
    'srtm': [np.array([1.1, 0.2, 1.5, 0.03]), np.array([0.8, 0.5, 3.0, 0.0])],
    'liver': [np.array([0.8, 0.9, 0.02, 0.01, 1.5, 0.25, 0.1]), np.array([1.5, 0.4, 0.1, 0.05, 0.4, 0.7, 0.2])],
    }


def finite_difference_jacobian(evaluator, params, rel_step=1.0e-6):
    columns = []
    for idx in range(len(params)):
        step = rel_step * max(1.0, abs(params[idx]))
        upper = params.copy()
        lower = params.copy()
        upper[idx] += step
        lower[idx] -= step
        columns.append((evaluator.tac(upper) - evaluator.tac(lower)) / (2.0 * step))
    return np.column_stack(columns)


@pytest.mark.parametrize('model_name', sorted(PARAMETER_SETS))
@pytest.mark.parametrize('set_id', [0, 1])
def test_jacobian_matches_central_differences(model_name, set_id, bolus_input, increasing_frames):
    evaluator = KineticModelEvaluator(model_name, bolus_input, increasing_frames, F18_DECAY_PER_MIN)
    params = PARAMETER_SETS[model_name][set_id]
    tac, jac = evaluator.tac_and_jacobian(params)
    numeric = finite_difference_jacobian(evaluator, params)
    np.testing.assert_allclose(tac, evaluator.tac(params), rtol=1e-12)
    scale = np.max(np.abs(numeric), axis=0)
    np.testing.assert_allclose(jac, numeric, rtol=1e-5, atol=1e-6 * np.max(scale))


@pytest.mark.parametrize('model_name', sorted(PARAMETER_SETS))
def test_jacobian_at_random_points_inside_bounds(model_name, bolus_input, increasing_frames, rng):
    model = get_kinetic_model(model_name)
    bounds = model.default_bounds_array()
    evaluator = KineticModelEvaluator(model, bolus_input, increasing_frames, F18_DECAY_PER_MIN)
    for _ in range(3):
        lo = bounds[:, 1] + 0.05 * (bounds[:, 2] - bounds[:, 1])
        hi = bounds[:, 1] + 0.5 * (bounds[:, 2] - bounds[:, 1])
        params = rng.uniform(lo, hi)
        jac = evaluator.jacobian(params)
        numeric = finite_difference_jacobian(evaluator, params)
        np.testing.assert_allclose(jac, numeric, rtol=1e-4, atol=1e-6 * np.max(np.abs(numeric)))


def test_jacobian_at_repeated_eigenvalue(bolus_input, increasing_frames):
    evaluator = KineticModelEvaluator('2t5p', bolus_input, increasing_frames, F18_DECAY_PER_MIN)
    params = np.array([0.6, 0.2, 0.0, 0.2, 0.05])
    jac = evaluator.jacobian(params)
    numeric = finite_difference_jacobian(evaluator, params)
    np.testing.assert_allclose(jac, numeric, rtol=1e-4, atol=1e-6 * np.max(np.abs(numeric)))


def test_repeated_eigenvalue_branch_is_continuous(bolus_input, increasing_frames):
    evaluator = KineticModelEvaluator('2t5p', bolus_input, increasing_frames, F18_DECAY_PER_MIN)
    degenerate = evaluator.tac(np.array([0.6, 0.2, 0.0, 0.2, 0.05]))
    nearby = evaluator.tac(np.array([0.6, 0.2, 1.0e-7, 0.2, 0.05]))
    assert np.all(np.isfinite(degenerate))
    np.testing.assert_allclose(degenerate, nearby, rtol=1e-4)


def test_two_tissue_with_no_exchange_reduces_to_one_tissue(bolus_input, increasing_frames):
    one_tissue, _ = evaluate('1t3p', np.array([0.5, 0.3, 0.05]), bolus_input, increasing_frames, F18_DECAY_PER_MIN)
    two_tissue, _ = evaluate('2t5p', np.array([0.5, 0.3, 0.0, 0.0, 0.05]), bolus_input, increasing_frames,
                             F18_DECAY_PER_MIN)
    np.testing.assert_allclose(two_tissue, one_tissue, rtol=1e-9)


def test_liver_with_only_arterial_input_is_two_tissue(bolus_input, increasing_frames):
    two_tissue, _ = evaluate('2t5p', np.array([0.8, 0.5, 0.1, 0.05, 0.1]), bolus_input, increasing_frames)
    liver, _ = evaluate('liver', np.array([0.8, 0.5, 0.1, 0.05, 2.0, 1.0, 0.1]), bolus_input, increasing_frames)
    np.testing.assert_allclose(liver, two_tissue, rtol=1e-10)


def test_srtm_with_unit_ratio_and_no_binding_follows_reference(bolus_input, increasing_frames):
    srtm, _ = evaluate('srtm', np.array([1.0, 0.3, 0.0, 0.0]), bolus_input, increasing_frames)
    reference = increasing_frames.average(KineticModelEvaluator('srtm', bolus_input, increasing_frames).plasma)
    np.testing.assert_allclose(srtm, reference, rtol=1e-12)


def test_vascular_fraction_of_one_gives_blood_curve(bolus_input, increasing_frames):
    evaluator = KineticModelEvaluator('1t3p', bolus_input, increasing_frames)
    np.testing.assert_allclose(evaluator.tac(np.array([0.5, 0.3, 1.0])),
                               increasing_frames.average(evaluator.whole_blood), rtol=1e-12)


def test_jacobian_only_has_free_columns(bolus_input, increasing_frames):
    params = PARAMETER_SETS['2t5p'][0]
    free_mask = np.array([True, True, False, True, False])
    tac, jac = evaluate('2t5p', params, bolus_input, increasing_frames, want_jacobian=True, free_mask=free_mask)
    _, full = evaluate('2t5p', params, bolus_input, increasing_frames, want_jacobian=True)
    assert jac.shape == (increasing_frames.num_frames, 3)
    np.testing.assert_allclose(jac, full[:, free_mask])


def test_evaluate_without_jacobian(bolus_input, increasing_frames):
    tac, jac = evaluate('1t3p', np.array([0.5, 0.3, 0.05]), bolus_input, increasing_frames)
    assert jac is None
    assert tac.shape == (increasing_frames.num_frames,)


@pytest.mark.parametrize('tag, variant', [('1T3P', ModelVariant.ONE_TISSUE_3P),
                                          ('two_tissue_5p', ModelVariant.TWO_TISSUE_5P),
                                          ('SRTM', ModelVariant.SRTM),
                                          ('Liver', ModelVariant.LIVER),
                                          (ModelVariant.LIVER, ModelVariant.LIVER)])
def test_model_lookup(tag, variant):
    assert get_kinetic_model(tag).variant is variant


def test_parameter_names():
    assert get_kinetic_model('srtm').param_names == ('R1', 'k2', 'BPnd', 'Vb')
    assert get_kinetic_model('liver').num_params == 7


def test_unknown_model():
    with pytest.raises(UnknownModel):
        get_kinetic_model('3tcm')


def test_parameter_count_mismatch(bolus_input, increasing_frames):
    with pytest.raises(ParameterCountMismatch):
        evaluate('2t5p', np.array([0.5, 0.3, 0.05]), bolus_input, increasing_frames)
    with pytest.raises(ParameterCountMismatch):
        evaluate('1t3p', np.array([0.5, 0.3, 0.05]), bolus_input, increasing_frames, want_jacobian=True,
                 free_mask=np.array([True, False]))


def test_default_bounds_contain_initial_values():
    for variant in ModelVariant:
        bounds = get_kinetic_model(variant).default_bounds_array()
        assert np.all(bounds[:, 1] <= bounds[:, 0])
        assert np.all(bounds[:, 0] <= bounds[:, 2])
