r"""
This module contains the numerical primitives used to compute frame-averaged Time-Activity Curves (TACs) for Tissue
Compartment Models (TCMs) as analytic convolutions of exponential kernels with a blood input function.

Every compartment model we support has an impulse response that is a sum of exponentials, so the tissue TAC is a
linear combination of

.. math::

    y_{r}(t) = \int_{0}^{t} u(\tau)\, e^{-r(t-\tau)}\,\mathrm{d}\tau,

where :math:`u(t)` is the (decay-weighted) input function and :math:`r` is an elimination rate. The input function is
sampled on a fine, possibly non-uniform, grid and is treated as piecewise-linear between the samples. For such an input
the convolution, its integral over any frame and its derivative with respect to :math:`r` are all available in closed
form through the moments

.. math::

    g_{k}(x) = \int_{0}^{1} v^{k} e^{-xv}\,\mathrm{d}v,\qquad x = r\Delta t.

PET measurements are averages over a frame of non-zero duration, so the functions return frame averages
:math:`\frac{1}{t_e - t_s}\int_{t_s}^{t_e} y_{r}(t)\,\mathrm{d}t` rather than point samples.

Note:
    All functions in this module are decorated with :func:`numba.njit` and release the GIL (``nogil=True``) so that
    they can run concurrently from worker threads.

Requires:
    The module relies on the :doc:`numpy <numpy:index>` and :doc:`numba <numba:index>` modules.

"""

import numba
import numpy as np


@numba.njit(nogil=True)
def calc_exp_moments(x: float) -> tuple:
    r"""Computes the moments :math:`g_{k}(x)=\int_{0}^{1}v^{k}e^{-xv}\mathrm{d}v` for :math:`k=0,\dots,4`.

    For :math:`|x|\geq 1` the closed form :math:`g_{0}=(1-e^{-x})/x` is used together with the upward recursion
    :math:`g_{k}=(k\,g_{k-1}-e^{-x})/x`. Close to zero the recursion cancels catastrophically, so we sum the power
    series :math:`g_{k}(x)=\sum_{j}\frac{(-x)^{j}}{j!\,(j+k+1)}` instead. Both branches are smooth and agree to machine
    precision at the switch, and :math:`g_{k}(0)=1/(k+1)`.

    Args:
        x (float): Product of the elimination rate and the time-step.

    Returns:
        tuple: ``(g0, g1, g2, g3, g4)``.

    """
    if abs(x) >= 1.0:
        e = np.exp(-x)
        g0 = (1.0 - e) / x
        g1 = (g0 - e) / x
        g2 = (2.0 * g1 - e) / x
        g3 = (3.0 * g2 - e) / x
        g4 = (4.0 * g3 - e) / x
        return g0, g1, g2, g3, g4

    g0 = 0.0
    g1 = 0.0
    g2 = 0.0
    g3 = 0.0
    g4 = 0.0
    term = 1.0
    for j in range(40):
        g0 += term / (j + 1.0)
        g1 += term / (j + 2.0)
        g2 += term / (j + 3.0)
        g3 += term / (j + 4.0)
        g4 += term / (j + 5.0)
        term *= -x / (j + 1.0)
        if abs(term) < 1.0e-18:
            break
    return g0, g1, g2, g3, g4


@numba.njit(nogil=True)
def calc_exp_conv_cumulative_integrals(steps: np.ndarray,
                                       input_vals: np.ndarray,
                                       rate: float,
                                       with_derivative: bool,
                                       with_second_derivative: bool) -> tuple:
    r"""Running integral of :math:`y_{r}(t)=u(t)\otimes e^{-rt}` at every grid point, and its rate derivatives.

    Within one grid step of length :math:`\Delta` the input is linear, going from :math:`c_0` to :math:`c_1`. With
    :math:`x=r\Delta` the convolution advances exactly as

    .. math::

        y_{n+1} = e^{-x}y_{n} + \Delta\left[c_{0}g_{1} + c_{1}(g_{0}-g_{1})\right],

    and its integral over the step is

    .. math::

        \int_{t_n}^{t_{n+1}} y\,\mathrm{d}t = \Delta\,y_{n}\,g_{0}
        + \frac{\Delta^{2}}{2}\left[c_{0}(g_{0}-g_{2}) + c_{1}(g_{0}-2g_{1}+g_{2})\right].

    Differentiating these recursions with :math:`\partial g_{k}/\partial r = -\Delta g_{k+1}` gives the exact first
    and second derivatives of the running integral with respect to the rate.

    Args:
        steps (np.ndarray): Lengths of the grid steps; ``len(steps) == len(input_vals) - 1``.
        input_vals (np.ndarray): Input function sampled at the grid points, starting at :math:`t=0`.
        rate (float): Elimination rate :math:`r` of the exponential kernel.
        with_derivative (bool): Whether to accumulate the first derivative with respect to ``rate``.
        with_second_derivative (bool): Whether to accumulate the second derivative with respect to ``rate``.

    Returns:
        tuple: ``(cum_int, d_cum_int, d2_cum_int)`` arrays of length ``len(input_vals)``. Derivatives that were not
        requested are all zeros.

    """
    num_pts = input_vals.shape[0]
    cum_int = np.zeros(num_pts)
    d_cum_int = np.zeros(num_pts)
    d2_cum_int = np.zeros(num_pts)
    track_dy = with_derivative or with_second_derivative

    y = 0.0
    dy = 0.0
    d2y = 0.0
    for n in range(num_pts - 1):
        h = steps[n]
        c0 = input_vals[n]
        c1 = input_vals[n + 1]
        g0, g1, g2, g3, g4 = calc_exp_moments(rate * h)
        e = np.exp(-rate * h)

        step_int = h * y * g0 + 0.5 * h * h * (c0 * (g0 - g2) + c1 * (g0 - 2.0 * g1 + g2))
        cum_int[n + 1] = cum_int[n] + step_int

        if with_second_derivative:
            d2_step_int = (h * d2y * g0 - 2.0 * h * h * dy * g1 + h * h * h * y * g2
                           + 0.5 * h * h * h * h * (c0 * (g2 - g4) + c1 * (g2 - 2.0 * g3 + g4)))
            d2_cum_int[n + 1] = d2_cum_int[n] + d2_step_int
            d2y = e * d2y - 2.0 * h * e * dy + h * h * e * y + h * h * h * (c1 * (g2 - g3) + c0 * g3)

        if track_dy:
            if with_derivative:
                d_step_int = (h * dy * g0 - h * h * y * g1
                              + 0.5 * h * h * h * (c0 * (g3 - g1) + c1 * (2.0 * g2 - g1 - g3)))
                d_cum_int[n + 1] = d_cum_int[n] + d_step_int
            dy = e * dy - h * e * y + h * h * (c1 * (g2 - g1) - c0 * g2)

        y = e * y + h * (c0 * g1 + c1 * (g0 - g1))

    return cum_int, d_cum_int, d2_cum_int


@numba.njit(nogil=True)
def _average_over_frames(cum_int: np.ndarray,
                         frame_lo: np.ndarray,
                         frame_hi: np.ndarray,
                         frame_durations: np.ndarray) -> np.ndarray:
    num_frames = frame_lo.shape[0]
    avg_vals = np.empty(num_frames)
    for m in range(num_frames):
        avg_vals[m] = (cum_int[frame_hi[m]] - cum_int[frame_lo[m]]) / frame_durations[m]
    return avg_vals


@numba.njit(nogil=True)
def calc_exp_conv_frame_averages(steps: np.ndarray,
                                 input_vals: np.ndarray,
                                 rate: float,
                                 frame_lo: np.ndarray,
                                 frame_hi: np.ndarray,
                                 frame_durations: np.ndarray,
                                 with_derivative: bool) -> tuple:
    r"""Frame averages of :math:`u(t)\otimes e^{-rt}` and their derivatives with respect to the rate :math:`r`.

    This is the atomic operation of every kinetic model in the package. The frame boundaries must be grid points;
    ``frame_lo`` and ``frame_hi`` hold their grid indices.

    Args:
        steps (np.ndarray): Lengths of the grid steps.
        input_vals (np.ndarray): Input function sampled at the grid points.
        rate (float): Elimination rate of the exponential kernel. Zero and negative values are allowed.
        frame_lo (np.ndarray): Grid index of the start of each frame.
        frame_hi (np.ndarray): Grid index of the end of each frame.
        frame_durations (np.ndarray): Duration of each frame.
        with_derivative (bool): Whether to compute the derivative with respect to ``rate``.

    Returns:
        tuple: ``(avg_vals, d_avg_vals)``, each of length equal to the number of frames.

    See Also:
        :func:`calc_exp_conv_cumulative_integrals`

    """
    cum_int, d_cum_int, _ = calc_exp_conv_cumulative_integrals(steps, input_vals, rate, with_derivative, False)
    avg_vals = _average_over_frames(cum_int, frame_lo, frame_hi, frame_durations)
    if with_derivative:
        d_avg_vals = _average_over_frames(d_cum_int, frame_lo, frame_hi, frame_durations)
    else:
        d_avg_vals = np.zeros(frame_lo.shape[0])
    return avg_vals, d_avg_vals


@numba.njit(nogil=True)
def calc_exp_conv_frame_averages_with_curvature(steps: np.ndarray,
                                                input_vals: np.ndarray,
                                                rate: float,
                                                frame_lo: np.ndarray,
                                                frame_hi: np.ndarray,
                                                frame_durations: np.ndarray) -> tuple:
    r"""Frame averages of :math:`u(t)\otimes e^{-rt}` with their first and second derivatives in :math:`r`.

    Returns:
        tuple: ``(avg_vals, d_avg_vals, d2_avg_vals)``.

    See Also:
        :func:`calc_exp_conv_frame_averages`
    """
    cum_int, d_cum_int, d2_cum_int = calc_exp_conv_cumulative_integrals(steps, input_vals, rate, True, True)
    return (_average_over_frames(cum_int, frame_lo, frame_hi, frame_durations),
            _average_over_frames(d_cum_int, frame_lo, frame_hi, frame_durations),
            _average_over_frames(d2_cum_int, frame_lo, frame_hi, frame_durations))


@numba.njit(nogil=True)
def calc_linear_frame_averages(steps: np.ndarray,
                               vals: np.ndarray,
                               frame_lo: np.ndarray,
                               frame_hi: np.ndarray,
                               frame_durations: np.ndarray) -> np.ndarray:
    r"""Frame averages of a piecewise-linear curve sampled on the grid. The trapezoidal rule is exact here.

    Args:
        steps (np.ndarray): Lengths of the grid steps.
        vals (np.ndarray): Curve values at the grid points.
        frame_lo (np.ndarray): Grid index of the start of each frame.
        frame_hi (np.ndarray): Grid index of the end of each frame.
        frame_durations (np.ndarray): Duration of each frame.

    Returns:
        np.ndarray: Average of the curve over every frame.
    """
    num_pts = vals.shape[0]
    cum_int = np.zeros(num_pts)
    for n in range(num_pts - 1):
        cum_int[n + 1] = cum_int[n] + 0.5 * steps[n] * (vals[n] + vals[n + 1])

    num_frames = frame_lo.shape[0]
    avg_vals = np.empty(num_frames)
    for m in range(num_frames):
        avg_vals[m] = (cum_int[frame_hi[m]] - cum_int[frame_lo[m]]) / frame_durations[m]
    return avg_vals
