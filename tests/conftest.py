import numpy as np
import pytest

from petkfit.kinetic_modeling.kinetic_models import KineticModelContext, get_kinetic_model

F18_DECAY_CONSTANT = np.log(2.0) / 109.77


def calc_feng_plasma_input(times: np.ndarray) -> np.ndarray:
    """Feng's analytic plasma input function, with times in minutes."""
    a1, a2, a3 = 851.1225, 21.8798, 20.8113
    l1, l2, l3 = -4.133859, -0.01043449, -0.1190996
    return ((a1 * times - a2 - a3) * np.exp(l1 * times)
            + a2 * np.exp(l2 * times)
            + a3 * np.exp(l3 * times))


@pytest.fixture(scope='session')
def blood_times():
    return np.arange(601) / 10.0


@pytest.fixture(scope='session')
def plasma_vals(blood_times):
    return calc_feng_plasma_input(blood_times)


@pytest.fixture(scope='session')
def whole_blood_vals(plasma_vals):
    return 0.85 * plasma_vals


@pytest.fixture(scope='session')
def scan_times():
    durations = np.array([0.5] * 10 + [1.0] * 5 + [2.5] * 4 + [5.0] * 8)
    frame_ends = np.cumsum(durations)
    return np.column_stack((frame_ends - durations, frame_ends))


@pytest.fixture
def make_context(blood_times, plasma_vals, whole_blood_vals, scan_times):
    def _make_context(model_name: str,
                      with_blood_volume: bool = True,
                      decay_constant: float = F18_DECAY_CONSTANT) -> KineticModelContext:
        model = get_kinetic_model(model_name, with_blood_volume=with_blood_volume)
        return KineticModelContext.from_scan(model=model,
                                             scan_times=scan_times,
                                             plasma=plasma_vals,
                                             whole_blood=whole_blood_vals,
                                             blood_times=blood_times,
                                             decay_constant=decay_constant)
    return _make_context
