import json
import numpy as np
import pandas as pd
import pytest

from petkfit.utils import data_io


def test_safe_load_array_text_with_header(tmp_path):
    file_path = tmp_path / 'frames.txt'
    file_path.write_text("start\tend\n0.0\t1.0\n1.0\t3.0\n")
    np.testing.assert_array_equal(data_io.safe_load_array(str(file_path)), [[0.0, 1.0], [1.0, 3.0]])


def test_safe_load_array_npy(tmp_path):
    file_path = tmp_path / 'tacs.npy'
    np.save(file_path, np.arange(6).reshape(2, 3))
    arr = data_io.safe_load_array(str(file_path))
    assert arr.dtype == float
    np.testing.assert_array_equal(arr, np.arange(6.0).reshape(2, 3))


def test_safe_load_array_missing_file(tmp_path):
    with pytest.raises(OSError):
        data_io.safe_load_array(str(tmp_path / 'missing.txt'))


def test_load_blood_input(tmp_path):
    file_path = tmp_path / 'blood.txt'
    np.savetxt(file_path, np.array([[0.0, 0.0, 0.0], [1.0, 10.0, 9.0], [2.0, 5.0, 4.5]]))
    blood = data_io.load_blood_input(str(file_path))
    np.testing.assert_array_equal(blood.times, [0.0, 1.0, 2.0])
    np.testing.assert_array_equal(blood.plasma, [0.0, 10.0, 5.0])
    np.testing.assert_array_equal(blood.whole_blood, [0.0, 9.0, 4.5])


def test_load_blood_input_plasma_only(tmp_path):
    file_path = tmp_path / 'blood.txt'
    np.savetxt(file_path, np.array([[0.0, 0.0], [1.0, 10.0]]))
    assert data_io.load_blood_input(str(file_path)).whole_blood is None


def test_load_blood_input_bad_columns(tmp_path):
    file_path = tmp_path / 'blood.txt'
    np.savetxt(file_path, np.ones((3, 4)))
    with pytest.raises(ValueError):
        data_io.load_blood_input(str(file_path))


def test_decay_constants():
    assert data_io.get_half_life_for_radionuclide('F-18') == 6588
    assert data_io.get_decay_constant_for_radionuclide('F18', time_unit='s') == pytest.approx(np.log(2.0) / 6588)
    assert data_io.get_decay_constant_for_radionuclide('c11') == pytest.approx(np.log(2.0) / (1224 / 60.0))
    with pytest.raises(ValueError):
        data_io.get_decay_constant_for_radionuclide('xx99')
    with pytest.raises(ValueError):
        data_io.get_decay_constant_for_radionuclide('F18', time_unit='h')


def test_write_param_matrix_to_tsv(tmp_path):
    out_path = tmp_path / 'nested' / 'params.tsv'
    data_io.write_param_matrix_to_tsv(np.array([[0.5, 0.6], [0.3, 0.2]]), ['K1', 'k2'], str(out_path))
    table = pd.read_csv(out_path, sep='\t', index_col='voxel')
    np.testing.assert_allclose(table['K1'].values, [0.5, 0.6])
    np.testing.assert_allclose(table['k2'].values, [0.3, 0.2])


def test_write_dict_to_json(tmp_path):
    out_path = tmp_path / 'props.json'
    data_io.write_dict_to_json({'ModelName': '2tcm', 'MaxIterations': 10}, str(out_path))
    with open(out_path, 'r', encoding='utf-8') as props_file:
        assert json.load(props_file) == {'ModelName': '2tcm', 'MaxIterations': 10}
