import json
import logging
import os
import numpy as np
import pandas as pd
import pytest

from petkfit.kinetic_modeling import parametric_fitting as pf
from petkfit.kinetic_modeling.kinetic_models import calc_tacs_for_param_matrix

_TRUE_PARAMS_ = np.array([[0.5, 0.2, 0.9, 0.35, 0.6, 0.15, 0.75],
                          [0.3, 0.1, 0.6, 0.25, 0.4, 0.05, 0.5]])


@pytest.fixture
def context(make_context):
    return make_context('1tcm', with_blood_volume=False)


@pytest.fixture
def tac_matrix(context):
    rng = np.random.default_rng(42)
    tacs = calc_tacs_for_param_matrix(_TRUE_PARAMS_, context)
    return tacs * (1.0 + 0.01 * rng.standard_normal(tacs.shape))


def _fit_all(context, tac_matrix, weights=None, initial_params=(0.1, 0.1), num_workers=None, max_iters=50):
    if weights is None:
        weights = np.ones(context.num_frames)
    return pf.fit_tacs_voxelwise(tac_matrix=tac_matrix,
                                 weights=weights,
                                 context=context,
                                 initial_params=np.asarray(initial_params, dtype=float),
                                 lower_bounds=np.zeros(2),
                                 upper_bounds=np.full(2, 5.0),
                                 sensitivity=np.ones(2),
                                 max_iters=max_iters,
                                 num_workers=num_workers)


def test_output_shapes_and_recovery(context):
    noiseless = calc_tacs_for_param_matrix(_TRUE_PARAMS_, context)
    param_matrix, fitted_tacs = _fit_all(context, noiseless, num_workers=2)
    assert param_matrix.shape == (2, 7)
    assert fitted_tacs.shape == (context.num_frames, 7)
    np.testing.assert_allclose(param_matrix, _TRUE_PARAMS_, rtol=1e-2)


def test_results_do_not_depend_on_pool_size(context, tac_matrix):
    serial_params, serial_tacs = _fit_all(context, tac_matrix, num_workers=1)
    for num_workers in (2, 3, 16):
        params, tacs = _fit_all(context, tac_matrix, num_workers=num_workers)
        np.testing.assert_array_equal(params, serial_params)
        np.testing.assert_array_equal(tacs, serial_tacs)


def test_voxel_results_do_not_depend_on_other_voxels(context, tac_matrix):
    all_params, all_tacs = _fit_all(context, tac_matrix, num_workers=3)
    for vox_id in (0, 4, 6):
        params, tacs = _fit_all(context, tac_matrix[:, [vox_id]], num_workers=1)
        np.testing.assert_array_equal(params[:, 0], all_params[:, vox_id])
        np.testing.assert_array_equal(tacs[:, 0], all_tacs[:, vox_id])


def test_broadcast_weights_match_full_weights(context, tac_matrix):
    weights = np.linspace(0.5, 2.0, context.num_frames)
    broadcast_params, _ = _fit_all(context, tac_matrix, weights=weights, num_workers=2)
    column_params, _ = _fit_all(context, tac_matrix, weights=weights[:, None], num_workers=2)
    full_params, _ = _fit_all(context, tac_matrix, weights=np.tile(weights[:, None], (1, 7)), num_workers=2)
    np.testing.assert_array_equal(broadcast_params, full_params)
    np.testing.assert_array_equal(column_params, full_params)


def test_per_voxel_initial_params(context, tac_matrix):
    shared_params, _ = _fit_all(context, tac_matrix, initial_params=[0.1, 0.1], num_workers=2)
    column_params, _ = _fit_all(context, tac_matrix, initial_params=[[0.1], [0.1]], num_workers=2)
    tiled_params, _ = _fit_all(context, tac_matrix, initial_params=np.full((2, 7), 0.1), num_workers=2)
    np.testing.assert_array_equal(shared_params, column_params)
    np.testing.assert_array_equal(shared_params, tiled_params)


def test_single_row_initial_params_warns_and_broadcasts(context, tac_matrix):
    shared_params, _ = _fit_all(context, tac_matrix, initial_params=[0.1, 0.1], num_workers=2)
    with pytest.warns(pf.ParameterShapeWarning):
        row_params, _ = _fit_all(context, tac_matrix, initial_params=[[0.1, 0.1]], num_workers=2)
    np.testing.assert_array_equal(row_params, shared_params)


def test_fixed_parameter_is_kept_for_every_voxel(context, tac_matrix):
    initial_params = np.vstack((np.full(7, 0.1), np.linspace(0.1, 0.7, 7)))
    param_matrix, _ = pf.fit_tacs_voxelwise(tac_matrix, np.ones(context.num_frames), context, initial_params,
                                            np.zeros(2), np.full(2, 5.0), np.array([1, 0]), 50, num_workers=3)
    np.testing.assert_array_equal(param_matrix[1], initial_params[1])


@pytest.mark.parametrize("kwargs", [{'initial_params': np.zeros((3, 7))},
                                    {'initial_params': np.zeros((2, 5))},
                                    {'initial_params': [[0.1, 0.1, 0.1]]},
                                    {'weights': np.ones(5)},
                                    {'lower_bounds': np.zeros(3)},
                                    {'sensitivity': np.ones(1)}])
def test_invalid_shapes_raise(context, tac_matrix, kwargs):
    args = dict(tac_matrix=tac_matrix, weights=np.ones(context.num_frames), context=context,
                initial_params=np.full(2, 0.1), lower_bounds=np.zeros(2), upper_bounds=np.full(2, 5.0),
                sensitivity=np.ones(2), max_iters=10, num_workers=2)
    args.update(kwargs)
    with pytest.raises(ValueError):
        pf.fit_tacs_voxelwise(**args)


def test_frame_mismatch_raises(context, tac_matrix):
    with pytest.raises(ValueError):
        _fit_all(context, tac_matrix[:-1])


def test_memory_error_becomes_voxel_fitting_error(context, tac_matrix, monkeypatch):
    def _fail_allocate(num_frames, num_params):
        raise MemoryError("no scratch space")

    monkeypatch.setattr(pf._WorkerScratch, 'allocate', staticmethod(_fail_allocate))
    with pytest.raises(pf.VoxelFittingError):
        _fit_all(context, tac_matrix, num_workers=3)


def test_worker_count_is_logged(context, tac_matrix, caplog):
    with caplog.at_level(logging.INFO, logger='petkfit'):
        _fit_all(context, tac_matrix, num_workers=4)
    assert "using 4 workers" in caplog.text


def test_pool_is_capped_at_voxel_count(context, tac_matrix, caplog):
    with caplog.at_level(logging.INFO, logger='petkfit'):
        _fit_all(context, tac_matrix[:, :2], num_workers=8)
    assert "using 2 workers" in caplog.text


class TestVoxelwiseKineticFit:
    def test_run_and_save(self, context, tac_matrix, tmp_path):
        voxel_fit = pf.VoxelwiseKineticFit(tac_matrix=tac_matrix, weights=np.ones(context.num_frames),
                                           context=context, max_iters=50, num_workers=2)
        voxel_fit.run_analysis()
        voxel_fit.save_analysis(output_directory=str(tmp_path / 'out'), output_filename_prefix='sub-001')

        prefix = os.path.join(str(tmp_path / 'out'), 'sub-001_model-1tcm')
        np.testing.assert_array_equal(np.load(f"{prefix}_params.npy"), voxel_fit.param_matrix)
        np.testing.assert_array_equal(np.load(f"{prefix}_fitted_tacs.npy"), voxel_fit.fitted_tac_matrix)

        param_table = pd.read_csv(f"{prefix}_params.tsv", sep='\t', index_col='voxel')
        assert list(param_table.columns) == ['K1', 'k2']
        assert param_table.shape == (7, 2)

        with open(f"{prefix}_props.json", 'r', encoding='utf-8') as props_file:
            props = json.load(props_file)
        assert props['ModelName'] == '1tcm'
        assert props['ParameterNames'] == ['K1', 'k2']
        assert props['NumberOfVoxels'] == 7
        assert set(props['ParameterMeans']) == {'K1', 'k2'}
        assert props['MeanWRSS'] >= 0.0

    def test_defaults_come_from_model(self, context, tac_matrix):
        voxel_fit = pf.VoxelwiseKineticFit(tac_matrix=tac_matrix, weights=np.ones(context.num_frames),
                                           context=context)
        np.testing.assert_array_equal(voxel_fit.lower_bounds, [0.0, 0.0])
        np.testing.assert_array_equal(voxel_fit.upper_bounds, [5.0, 5.0])
        assert voxel_fit.sensitivity.all()

    def test_save_before_run_raises(self, context, tac_matrix, tmp_path):
        voxel_fit = pf.VoxelwiseKineticFit(tac_matrix=tac_matrix, weights=np.ones(context.num_frames),
                                           context=context)
        with pytest.raises(RuntimeError):
            voxel_fit.save_analysis(output_directory=str(tmp_path), output_filename_prefix='sub-001')
