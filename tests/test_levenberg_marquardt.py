import numpy as np
import pytest

from petkfit.kinetic_modeling.levenberg_marquardt import (LevMarConfig, LevMarStatus, calc_weighted_rss,
                                                          fit_tac_with_levmar)


@pytest.fixture
def one_tcm_context(make_context):
    return make_context('1tcm', with_blood_volume=False)


@pytest.fixture
def one_tcm_tac(one_tcm_context):
    return one_tcm_context.model.calc_tac(np.array([0.5, 0.3]), one_tcm_context)


def _fit(context, tac_vals, initial_params, sensitivity=(1, 1), max_iters=50, lower=(0.0, 0.0), upper=(5.0, 5.0),
         **kwargs):
    return fit_tac_with_levmar(tac_vals=tac_vals,
                               weights=np.ones(context.num_frames),
                               context=context,
                               initial_params=np.asarray(initial_params, dtype=float),
                               lower_bounds=np.asarray(lower, dtype=float),
                               upper_bounds=np.asarray(upper, dtype=float),
                               sensitivity=np.asarray(sensitivity),
                               max_iters=max_iters,
                               **kwargs)


def test_recovers_noiseless_one_tissue_parameters(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1])

    np.testing.assert_allclose(result.params, [0.5, 0.3], rtol=1e-2)
    assert result.num_iters <= 50
    assert result.num_accepted >= 1
    np.testing.assert_allclose(result.fitted_tac, one_tcm_context.model.calc_tac(result.params, one_tcm_context))


def test_fixed_parameter_is_bit_identical(one_tcm_context, one_tcm_tac):
    initial_k2 = 0.2718281828
    for max_iters in (0, 1, 5, 50):
        result = _fit(one_tcm_context, one_tcm_tac, [0.1, initial_k2], sensitivity=(1, 0), max_iters=max_iters)
        assert result.params[1] == initial_k2


def test_wrss_never_increases(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [2.0, 1.5])
    history = np.asarray(result.wrss_history)
    assert history.shape[0] == result.num_accepted + 1
    assert np.all(np.diff(history) <= 0.0)
    assert result.wrss == pytest.approx(history[-1])


def test_parameters_stay_in_bounds(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.5], lower=(0.0, 0.35), upper=(0.3, 1.0))
    assert 0.0 <= result.params[0] <= 0.3
    assert 0.35 <= result.params[1] <= 1.0


def test_refit_from_converged_parameters_is_idempotent(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1])
    refit = _fit(one_tcm_context, one_tcm_tac, result.params, max_iters=0)

    np.testing.assert_array_equal(refit.params, result.params)
    np.testing.assert_array_equal(refit.fitted_tac, result.fitted_tac)
    assert refit.num_iters == 0
    assert refit.status is LevMarStatus.ITERATION_LIMIT


def test_no_sensitive_parameters_converges_immediately(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1], sensitivity=(0, 0))
    assert result.status is LevMarStatus.CONVERGED
    assert result.num_iters == 0
    np.testing.assert_array_equal(result.params, [0.1, 0.1])


def test_iteration_limit_returns_best_parameters(one_tcm_context, one_tcm_tac):
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1], max_iters=2)
    assert result.num_iters == 2
    assert result.status is LevMarStatus.ITERATION_LIMIT
    assert result.wrss <= result.wrss_history[0]


def test_outputs_are_written_in_place(one_tcm_context, one_tcm_tac):
    out_params = np.zeros(2)
    out_tac = np.zeros(one_tcm_context.num_frames)
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1], out_params=out_params, out_tac=out_tac)
    np.testing.assert_array_equal(out_params, result.params)
    np.testing.assert_array_equal(out_tac, result.fitted_tac)


def test_config_is_used(one_tcm_context, one_tcm_tac):
    config = LevMarConfig(lambda_init=1.0e-12, lambda_max=1.0e-12)
    result = _fit(one_tcm_context, one_tcm_tac, [0.1, 0.1], config=config)
    assert result.damping <= 1.0e-12


def test_zero_weights_ignore_frames(one_tcm_context, one_tcm_tac):
    corrupted = one_tcm_tac.copy()
    corrupted[:3] = 1.0e6
    weights = np.ones(one_tcm_context.num_frames)
    weights[:3] = 0.0
    result = fit_tac_with_levmar(corrupted, weights, one_tcm_context, np.array([0.1, 0.1]), np.zeros(2),
                                 np.full(2, 5.0), np.ones(2), 50)
    np.testing.assert_allclose(result.params, [0.5, 0.3], rtol=1e-2)


def test_two_tissue_fit_reduces_wrss(make_context):
    context = make_context('2tcm')
    tac_vals = context.model.calc_tac(np.array([0.4, 0.25, 0.08, 0.03, 0.05]), context)
    result = fit_tac_with_levmar(tac_vals, np.ones(context.num_frames), context,
                                 np.array([0.1, 0.1, 0.1, 0.1, 0.1]), np.zeros(5), np.array([5.0, 5.0, 5.0, 5.0, 1.0]),
                                 np.ones(5), 100)
    assert result.wrss < 0.1 * result.wrss_history[0]
    assert np.all(result.params >= 0.0)


def test_calc_weighted_rss():
    assert calc_weighted_rss(np.array([1.0, 2.0]), np.array([2.0, 0.5]), np.array([0.0, 0.0])) == pytest.approx(4.0)
