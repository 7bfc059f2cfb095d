"""
Helpers to handle scan timing, blood input data and per-frame weights for time activity curves (TACs).

The kinetic models in :mod:`petkfit.kinetic_modeling` only ever see frame start and end times. Scan timing reaches us
in a few shapes though, either explicit ``[start, end]`` pairs or only the frame start times, so this module
normalizes all of them.

"""
from dataclasses import dataclass
from typing import Union
import numpy as np


@dataclass
class BloodInput:
    """Class to store blood input function data sampled on a fine time grid.

    Attributes:
        times (np.ndarray): Sampling times of the blood curves.
        plasma (np.ndarray): Plasma activity concentration at each sampling time.
        whole_blood (np.ndarray): Whole-blood activity concentration at each sampling time. ``None`` if only the
            plasma curve was measured.
    """
    times: np.ndarray
    plasma: np.ndarray
    whole_blood: Union[np.ndarray, None] = None


def get_frame_durations_from_starts(frame_starts: np.ndarray) -> np.ndarray:
    """
    Get array containing the duration of each frame given only the frame start times.

    For a set of N frames, the first N-1 frame durations are estimated as the difference between each frame start and
    the next frame start. Frame N is then inferred as being the same duration as frame N-1.

    Args:
        frame_starts (np.ndarray): Start time of each frame.

    Returns:
        np.ndarray: The estimated duration of each frame.

    Raises:
        ValueError: If fewer than two frame starts are provided.
    """
    frame_starts = np.asarray(frame_starts, dtype=float)
    if frame_starts.shape[0] < 2:
        raise ValueError("At least two frame start times are needed to infer the frame durations.")
    durations = np.zeros(frame_starts.shape[0])
    durations[:-1] = frame_starts[1:] - frame_starts[:-1]
    durations[-1] = durations[-2]
    return durations


def get_frame_bounds(scan_times: np.ndarray,
                     frame_duration: Union[float, np.ndarray, None] = None) -> tuple[np.ndarray, np.ndarray]:
    r"""
    Converts scan timing into frame start and end times.

    ``scan_times`` can either be:
        * An array of shape ``(F, 2)`` with the start and end of every frame. ``frame_duration`` is ignored.
        * An array of length ``F`` with the start of every frame. The frame durations are taken from
          ``frame_duration`` (a scalar applied to every frame, or one value per frame). If ``frame_duration`` is None,
          they are inferred with :func:`get_frame_durations_from_starts`.

    Args:
        scan_times (np.ndarray): Scan timing, as described above.
        frame_duration (float, np.ndarray or None): Duration of the frames when only start times are given.

    Returns:
        tuple[np.ndarray, np.ndarray]: ``(frame_starts, frame_ends)``.

    Raises:
        ValueError: If the shape of ``scan_times`` is not understood, or if any frame has a non-positive duration.
    """
    scan_times = np.asarray(scan_times, dtype=float)
    if scan_times.ndim == 2 and scan_times.shape[1] == 2:
        frame_starts = scan_times[:, 0].copy()
        frame_ends = scan_times[:, 1].copy()
    elif scan_times.ndim == 1:
        frame_starts = scan_times.copy()
        if frame_duration is None:
            durations = get_frame_durations_from_starts(frame_starts)
        else:
            durations = np.broadcast_to(np.asarray(frame_duration, dtype=float), frame_starts.shape)
        frame_ends = frame_starts + durations
    else:
        raise ValueError("`scan_times` must either be a vector of frame starts or an (F, 2) array of "
                         f"[start, end] pairs. Got shape {scan_times.shape}.")

    if np.any(frame_ends <= frame_starts):
        raise ValueError("Every frame must end after it starts.")
    return frame_starts, frame_ends


def calc_frame_mid_times(frame_starts: np.ndarray, frame_ends: np.ndarray) -> np.ndarray:
    """Mid-point of each frame."""
    return 0.5 * (np.asarray(frame_starts, dtype=float) + np.asarray(frame_ends, dtype=float))


def calc_decay_based_weights(frame_starts: np.ndarray,
                             frame_ends: np.ndarray,
                             tac_vals: np.ndarray,
                             decay_constant: float,
                             decay_corrected: bool = True) -> np.ndarray:
    r"""
    Generates per-frame inverse-variance weights for a TAC, assuming Poisson counting statistics.

    The variance of a decay-corrected frame is taken as proportional to :math:`C_i e^{\lambda t_i}/\Delta t_i`,
    with :math:`t_i` the frame mid-time and :math:`\Delta t_i` the frame duration, so the weights are

    .. math::

        w_i = \frac{\Delta t_i\,e^{-\lambda t_i}}{C_i}.

    A TAC that is not decay-corrected already carries the :math:`e^{-\lambda t}` factor in its counts, so with
    ``decay_corrected=False`` the weights are :math:`\Delta t_i/C_i` and ``decay_constant`` is not used.

    Frames with non-positive activity get a weight of zero. ``tac_vals`` can be a single TAC or a
    ``frames x voxels`` matrix.

    Args:
        frame_starts (np.ndarray): Start time of each frame.
        frame_ends (np.ndarray): End time of each frame.
        tac_vals (np.ndarray): TAC values, with frames along the first axis.
        decay_constant (float): Decay constant, :math:`\lambda=\ln(2)/T_{1/2}`, in the inverse of the time unit.
        decay_corrected (bool): Whether ``tac_vals`` are decay-corrected. Defaults to True.

    Returns:
        np.ndarray: Weights with the same shape as ``tac_vals``.
    """
    tac_vals = np.asarray(tac_vals, dtype=float)
    mid_times = calc_frame_mid_times(frame_starts, frame_ends)
    durations = np.asarray(frame_ends, dtype=float) - np.asarray(frame_starts, dtype=float)
    scale = durations * np.exp(-decay_constant * mid_times) if decay_corrected else durations
    if tac_vals.ndim == 2:
        scale = scale[:, None]

    weights = np.zeros_like(tac_vals)
    pos_idx = tac_vals > 0.0
    weights[pos_idx] = (np.broadcast_to(scale, tac_vals.shape)[pos_idx]) / tac_vals[pos_idx]
    return weights
