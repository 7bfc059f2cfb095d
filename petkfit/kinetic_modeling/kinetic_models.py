r"""
This module provides the kinetic-model evaluation layer: the shared :class:`KineticModelContext` and the Tissue
Compartment Model (TCM) variants that compute frame-averaged TACs and their analytic Jacobians.

It includes:
    - :class:`KineticModelContext`: Scan timing, decay constant and blood input curves resampled onto one evaluation
      grid. It is built once per fitting session and shared, read-only, by every voxel and every thread. It also
      holds the selected model.
    - :class:`KineticModel`: The evaluator interface. Every variant can compute a TAC, or a TAC together with the
      Jacobian with respect to its parameters.
    - :class:`OneTissueCompartmentModel`, :class:`SerialTwoTissueCompartmentModel` and :class:`DualInputLiverModel`:
      the three supported topologies.

For every model the parameters are ordered with the kinetic rate constants first and the fractional blood volume
:math:`v_B` last. The measured TAC is modelled as

.. math::

    C_\mathrm{PET}(t) = (1-v_B)\,C_\mathrm{T}(t) + v_B\,C_\mathrm{B}(t),

frame-averaged over each scan frame. Models created with ``with_blood_volume=False`` drop :math:`v_B` (i.e.
:math:`v_B=0`).

See Also:
    * :mod:`petkfit.kinetic_modeling.tcms_as_convolutions`
    * :mod:`petkfit.kinetic_modeling.levenberg_marquardt`

"""
from dataclasses import dataclass
from typing import Union
import numpy as np
from scipy.interpolate import interp1d
from . import tcms_as_convolutions as tcms_conv
from ..utils.time_activity_curve import get_frame_bounds

_MIN_EIGEN_GAP_ = 1.0e-9
_DISPERSION_GAP_TOL_ = 1.0e-3


def _as_read_only(arr: np.ndarray, dtype=float) -> np.ndarray:
    out = np.array(arr, dtype=dtype, order='C', copy=True)
    out.flags.writeable = False
    return out


def _resample_blood_curve(blood_times: np.ndarray, blood_vals: np.ndarray, new_times: np.ndarray) -> np.ndarray:
    r"""
    Linearly interpolates a blood curve onto new times. Values before the first sample and after the last one are
    held constant.
    """
    interp_func = interp1d(x=blood_times, y=blood_vals, kind='linear', assume_sorted=True, bounds_error=False,
                           fill_value=(blood_vals[0], blood_vals[-1]))
    return interp_func(new_times)


@dataclass(frozen=True)
class KineticModelContext:
    r"""
    Shared, read-only data needed to evaluate a kinetic model for any voxel.

    The blood curves are stored on an evaluation grid that contains :math:`t=0`, every blood sampling time and every
    frame boundary, so that each frame starts and ends exactly on a grid point. The stored curves are multiplied by
    :math:`e^{-\lambda t}`, so the models predict activity that is *not* decay-corrected. Use a decay constant of 0 for
    decay-corrected data.

    Use :meth:`from_scan` to construct a context.

    Attributes:
        model (KineticModel): The selected kinetic model variant.
        decay_constant (float): Physical decay constant of the isotope, in the inverse of the time unit.
        frame_starts (np.ndarray): Start time of each frame.
        frame_ends (np.ndarray): End time of each frame.
        frame_durations (np.ndarray): Duration of each frame.
        grid_times (np.ndarray): Evaluation grid.
        grid_steps (np.ndarray): Length of each grid step.
        plasma_vals (np.ndarray): Decay-weighted plasma input on the grid.
        blood_vals (np.ndarray): Decay-weighted whole-blood input on the grid.
        blood_frame_avgs (np.ndarray): Frame averages of ``blood_vals``.
        frame_lo_idx (np.ndarray): Grid index of each frame start.
        frame_hi_idx (np.ndarray): Grid index of each frame end.
    """
    model: 'KineticModel'
    decay_constant: float
    frame_starts: np.ndarray
    frame_ends: np.ndarray
    frame_durations: np.ndarray
    grid_times: np.ndarray
    grid_steps: np.ndarray
    plasma_vals: np.ndarray
    blood_vals: np.ndarray
    blood_frame_avgs: np.ndarray
    frame_lo_idx: np.ndarray
    frame_hi_idx: np.ndarray

    @classmethod
    def from_scan(cls,
                  model: 'KineticModel',
                  scan_times: np.ndarray,
                  plasma: np.ndarray,
                  whole_blood: Union[np.ndarray, None] = None,
                  blood_times: Union[np.ndarray, None] = None,
                  blood_step: float = 1.0,
                  decay_constant: float = 0.0,
                  frame_duration: Union[float, np.ndarray, None] = None) -> 'KineticModelContext':
        r"""
        Builds the context from scan timing and blood input curves.

        Args:
            model (KineticModel): Kinetic model variant used by every evaluation with this context.
            scan_times (np.ndarray): Either ``(F, 2)`` frame ``[start, end]`` pairs, or the ``F`` frame starts.
            plasma (np.ndarray): Plasma input function samples.
            whole_blood (np.ndarray, optional): Whole-blood samples at the same times as ``plasma``. If None, the
                plasma curve is also used as the whole-blood curve.
            blood_times (np.ndarray, optional): Sampling times of the blood curves. If None, the curves are assumed to
                be sampled every ``blood_step`` starting at :math:`t=0`.
            blood_step (float): Sampling interval of the blood curves when ``blood_times`` is None. Defaults to 1.0.
            decay_constant (float): Decay constant of the isotope. Defaults to 0.0 (decay-corrected data).
            frame_duration (float, np.ndarray, optional): Frame duration(s) when ``scan_times`` only holds the frame
                starts. See :func:`petkfit.utils.time_activity_curve.get_frame_bounds`.

        Returns:
            KineticModelContext: The shared, read-only context.

        Raises:
            ValueError: If the blood curves are inconsistent, or the scan timing is invalid.

        """
        frame_starts, frame_ends = get_frame_bounds(scan_times=scan_times, frame_duration=frame_duration)
        if np.any(frame_starts < 0.0):
            raise ValueError("Frames can not start before t=0.")

        plasma = np.asarray(plasma, dtype=float).ravel()
        whole_blood = plasma if whole_blood is None else np.asarray(whole_blood, dtype=float).ravel()
        if blood_times is None:
            blood_times = np.arange(plasma.shape[0], dtype=float) * blood_step
        blood_times = np.asarray(blood_times, dtype=float).ravel()

        if not (plasma.shape == whole_blood.shape == blood_times.shape):
            raise ValueError("`plasma`, `whole_blood` and `blood_times` must have the same lengths. Got "
                             f"{plasma.shape}, {whole_blood.shape} and {blood_times.shape}.")
        if blood_times.shape[0] < 2 or np.any(np.diff(blood_times) <= 0.0):
            raise ValueError("The blood curves need at least two samples at strictly increasing times.")

        if blood_times[0] > 0.0:
            blood_times = np.append(0.0, blood_times)
            plasma = np.append(0.0, plasma)
            whole_blood = np.append(0.0, whole_blood)

        scan_end = np.max(frame_ends)
        grid_times = np.unique(np.concatenate(([0.0], blood_times, frame_starts, frame_ends)))
        grid_times = grid_times[(grid_times >= 0.0) & (grid_times <= scan_end)]
        grid_steps = np.diff(grid_times)

        decay_factors = np.exp(-decay_constant * grid_times)
        plasma_vals = _resample_blood_curve(blood_times, plasma, grid_times) * decay_factors
        blood_vals = _resample_blood_curve(blood_times, whole_blood, grid_times) * decay_factors

        frame_lo_idx = np.searchsorted(grid_times, frame_starts)
        frame_hi_idx = np.searchsorted(grid_times, frame_ends)
        frame_durations = frame_ends - frame_starts

        blood_frame_avgs = tcms_conv.calc_linear_frame_averages(grid_steps, blood_vals, frame_lo_idx, frame_hi_idx,
                                                                frame_durations)

        return cls(model=model,
                   decay_constant=float(decay_constant),
                   frame_starts=_as_read_only(frame_starts),
                   frame_ends=_as_read_only(frame_ends),
                   frame_durations=_as_read_only(frame_durations),
                   grid_times=_as_read_only(grid_times),
                   grid_steps=_as_read_only(grid_steps),
                   plasma_vals=_as_read_only(plasma_vals),
                   blood_vals=_as_read_only(blood_vals),
                   blood_frame_avgs=_as_read_only(blood_frame_avgs),
                   frame_lo_idx=_as_read_only(frame_lo_idx, dtype=np.int64),
                   frame_hi_idx=_as_read_only(frame_hi_idx, dtype=np.int64))

    @property
    def num_frames(self) -> int:
        return self.frame_starts.shape[0]

    def calc_plasma_conv(self, rate: float, with_derivative: bool = False) -> tuple[np.ndarray, np.ndarray]:
        r"""Frame averages of :math:`C_\mathrm{P}(t)\otimes e^{-rt}`, decay included, and their derivative in
        :math:`r`."""
        return tcms_conv.calc_exp_conv_frame_averages(self.grid_steps, self.plasma_vals,
                                                      float(rate) + self.decay_constant,
                                                      self.frame_lo_idx, self.frame_hi_idx, self.frame_durations,
                                                      bool(with_derivative))

    def calc_plasma_conv_with_curvature(self, rate: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        r"""Frame averages of :math:`C_\mathrm{P}(t)\otimes e^{-rt}` with their first and second derivatives in
        :math:`r`."""
        return tcms_conv.calc_exp_conv_frame_averages_with_curvature(self.grid_steps, self.plasma_vals,
                                                                     float(rate) + self.decay_constant,
                                                                     self.frame_lo_idx, self.frame_hi_idx,
                                                                     self.frame_durations)

    def calc_blood_conv(self, rate: float, with_derivative: bool = False) -> tuple[np.ndarray, np.ndarray]:
        r"""Frame averages of :math:`C_\mathrm{B}(t)\otimes e^{-rt}`, decay included, and their derivative in
        :math:`r`."""
        return tcms_conv.calc_exp_conv_frame_averages(self.grid_steps, self.blood_vals,
                                                      float(rate) + self.decay_constant,
                                                      self.frame_lo_idx, self.frame_hi_idx, self.frame_durations,
                                                      bool(with_derivative))


class KineticModel(object):
    r"""
    Base class for kinetic model evaluators.

    A subclass declares its kinetic parameter names and implements :meth:`calc_tissue_tac`. Models whose vascular
    term depends on the kinetic parameters also override :meth:`calc_blood_tac`. The base class mixes the tissue and
    blood terms with the fractional blood volume and assembles the Jacobian.

    Attributes:
        name (str): Short name of the model, as used by :func:`get_kinetic_model`.
        kinetic_param_names (tuple[str]): Names of the kinetic parameters, in order.
        with_blood_volume (bool): Whether the last parameter is the fractional blood volume ``vb``.
    """
    name: str = None
    kinetic_param_names: tuple = ()

    def __init__(self, with_blood_volume: bool = True):
        self.with_blood_volume = with_blood_volume

    def __repr__(self):
        return f"{type(self).__name__}(with_blood_volume={self.with_blood_volume})"

    @property
    def param_names(self) -> tuple:
        if self.with_blood_volume:
            return self.kinetic_param_names + ('vb',)
        return self.kinetic_param_names

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    def get_default_bounds(self) -> np.ndarray:
        r"""
        Default ``(initial, lower, upper)`` for each parameter: ``(0.1, 0.0, 5.0)`` for rate constants and
        ``(0.05, 0.0, 1.0)`` for fractions.

        Returns:
            np.ndarray: Array of shape ``(num_params, 3)``.
        """
        bounds = np.zeros((self.num_params, 3), float)
        for pid, param in enumerate(self.param_names):
            if param in ('vb', 'fa'):
                bounds[pid] = [0.05, 0.0, 1.0]
            else:
                bounds[pid] = [0.1, 0.0, 5.0]
        return bounds

    def calc_tac(self, params: np.ndarray, context: KineticModelContext) -> np.ndarray:
        """
        Computes the frame-averaged model TAC.

        Args:
            params (np.ndarray): Model parameters, ordered as :attr:`param_names`.
            context (KineticModelContext): Shared scan and blood input data.

        Returns:
            np.ndarray: Model TAC, one value per frame.
        """
        tac_vals, _ = self._calc_tac(params, context, None)
        return tac_vals

    def calc_tac_and_jacobian(self,
                              params: np.ndarray,
                              context: KineticModelContext,
                              sensitivity: Union[np.ndarray, None] = None) -> tuple[np.ndarray, np.ndarray]:
        """
        Computes the frame-averaged model TAC and its Jacobian with respect to the parameters.

        Columns of parameters that are not sensitive are not computed and are left as zeros.

        Args:
            params (np.ndarray): Model parameters, ordered as :attr:`param_names`.
            context (KineticModelContext): Shared scan and blood input data.
            sensitivity (np.ndarray, optional): Boolean mask of the parameters whose derivatives are needed.
                Defaults to all parameters.

        Returns:
            tuple[np.ndarray, np.ndarray]: The model TAC (length F) and the Jacobian (shape ``(F, P)``).
        """
        if sensitivity is None:
            sensitivity = np.ones(self.num_params, dtype=bool)
        else:
            sensitivity = np.asarray(sensitivity, dtype=bool)
        return self._calc_tac(params, context, sensitivity)

    def _calc_tac(self, params, context, sensitivity):
        params = np.asarray(params, dtype=float)
        num_kin = len(self.kinetic_param_names)
        kin_params = params[:num_kin]
        want_jac = sensitivity is not None
        kin_sens = sensitivity[:num_kin] if want_jac else None

        tissue_vals, d_tissue = self.calc_tissue_tac(kin_params, context, kin_sens)
        if not self.with_blood_volume:
            return tissue_vals, d_tissue

        vb = params[num_kin]
        blood_vals, d_blood = self.calc_blood_tac(kin_params, context, kin_sens)
        tac_vals = (1.0 - vb) * tissue_vals + vb * blood_vals
        if not want_jac:
            return tac_vals, None

        jac = np.zeros((context.num_frames, self.num_params), float)
        jac[:, :num_kin] = (1.0 - vb) * d_tissue + vb * d_blood
        if sensitivity[num_kin]:
            jac[:, num_kin] = blood_vals - tissue_vals
        return tac_vals, jac

    def calc_tissue_tac(self,
                        kin_params: np.ndarray,
                        context: KineticModelContext,
                        kin_sens: Union[np.ndarray, None] = None) -> tuple[np.ndarray, Union[np.ndarray, None]]:
        """
        Frame-averaged tissue TAC and, if ``kin_sens`` is given, its derivatives with respect to the kinetic
        parameters (shape ``(F, num_kinetic_params)``, zero columns where ``kin_sens`` is False).
        """
        raise NotImplementedError

    def calc_blood_tac(self,
                       kin_params: np.ndarray,
                       context: KineticModelContext,
                       kin_sens: Union[np.ndarray, None] = None) -> tuple[np.ndarray, Union[np.ndarray, None]]:
        """Frame-averaged vascular TAC. By default it is the whole-blood curve and does not depend on the kinetic
        parameters."""
        if kin_sens is None:
            return context.blood_frame_avgs, None
        return context.blood_frame_avgs, np.zeros((context.num_frames, len(self.kinetic_param_names)), float)


class OneTissueCompartmentModel(KineticModel):
    r"""
    The one tissue compartment model (1TCM), with impulse response :math:`K_{1}e^{-k_{2}t}`.

    Parameters: ``(K1, k2[, vb])``.
    """
    name = '1tcm'
    kinetic_param_names = ('K1', 'k2')

    def calc_tissue_tac(self, kin_params, context, kin_sens=None):
        k1, k2 = kin_params
        want_jac = kin_sens is not None
        conv_vals, d_conv_vals = context.calc_plasma_conv(k2, want_jac and kin_sens[1])
        tissue_vals = k1 * conv_vals
        if not want_jac:
            return tissue_vals, None

        jac = np.zeros((context.num_frames, 2), float)
        if kin_sens[0]:
            jac[:, 0] = conv_vals
        if kin_sens[1]:
            jac[:, 1] = k1 * d_conv_vals
        return tissue_vals, jac


def calc_serial_2tcm_eigen_rates(k2: float, k3: float, k4: float) -> tuple:
    r"""
    Eigen-rates and mixing coefficients of the serial 2TCM impulse response, and their partial derivatives.

    The impulse response of the total tissue activity is

    .. math::

        h(t) = K_{1}\left[a_{1}e^{-\alpha_{1}t} + a_{2}e^{-\alpha_{2}t}\right],\quad
        \alpha_{1,2} = \frac{s \mp D}{2},\quad a_{1} = \frac{k_{3}+k_{4}-\alpha_{1}}{D},\quad a_{2}=1-a_{1},

    where :math:`s=k_{2}+k_{3}+k_{4}` and :math:`D=\sqrt{s^{2}-4k_{2}k_{4}}`. :math:`D` vanishes only when
    :math:`k_{3}=0` and :math:`k_{2}=k_{4}`; it is floored at a tiny positive value so that everything stays finite.

    Args:
        k2 (float): Rate constant from the first tissue compartment back to plasma.
        k3 (float): Rate constant from the first to the second tissue compartment.
        k4 (float): Rate constant from the second tissue compartment back to the first.

    Returns:
        tuple: ``(alphas, coeffs, d_alphas, d_coeffs)``; ``alphas`` and ``coeffs`` have length 2, and the
        derivative arrays have shape ``(2, 3)`` with columns for ``(k2, k3, k4)``.
    """
    s = k2 + k3 + k4
    root = np.sqrt(max(s * s - 4.0 * k2 * k4, 0.0))
    root = max(root, _MIN_EIGEN_GAP_)

    alphas = np.array([0.5 * (s - root), 0.5 * (s + root)])
    numer = k3 + k4 - alphas[0]
    a1 = numer / root
    coeffs = np.array([a1, 1.0 - a1])

    d_root = np.array([s - 2.0 * k4, s, s - 2.0 * k2]) / root
    d_alphas = np.vstack((0.5 * (1.0 - d_root), 0.5 * (1.0 + d_root)))
    d_numer = np.array([0.0, 1.0, 1.0]) - d_alphas[0]
    d_a1 = (d_numer * root - numer * d_root) / (root * root)
    d_coeffs = np.vstack((d_a1, -d_a1))
    return alphas, coeffs, d_alphas, d_coeffs


class SerialTwoTissueCompartmentModel(KineticModel):
    r"""
    The serial (reversible) two tissue compartment model (2TCM).

    Parameters: ``(K1, k2, k3, k4[, vb])``. The irreversible 2TCM is obtained by holding ``k4`` at 0 with the
    sensitivity mask.

    See Also:
        :func:`calc_serial_2tcm_eigen_rates`
    """
    name = '2tcm'
    kinetic_param_names = ('K1', 'k2', 'k3', 'k4')

    def calc_tissue_tac(self, kin_params, context, kin_sens=None):
        k1, k2, k3, k4 = kin_params
        want_jac = kin_sens is not None
        alphas, coeffs, d_alphas, d_coeffs = calc_serial_2tcm_eigen_rates(k2, k3, k4)

        rates_sens = want_jac and bool(np.any(kin_sens[1:4]))
        conv_vals = np.empty((2, context.num_frames))
        d_conv_vals = np.empty((2, context.num_frames))
        for i in range(2):
            conv_vals[i], d_conv_vals[i] = context.calc_plasma_conv(alphas[i], rates_sens)

        resp_vals = coeffs @ conv_vals
        tissue_vals = k1 * resp_vals
        if not want_jac:
            return tissue_vals, None

        jac = np.zeros((context.num_frames, 4), float)
        if kin_sens[0]:
            jac[:, 0] = resp_vals
        for j in range(3):
            if kin_sens[j + 1]:
                jac[:, j + 1] = k1 * (d_coeffs[:, j] @ conv_vals + (coeffs * d_alphas[:, j]) @ d_conv_vals)
        return tissue_vals, jac


def _calc_dispersed_conv(conv_a: tuple[np.ndarray, np.ndarray, np.ndarray],
                         conv_k: tuple[np.ndarray, np.ndarray, np.ndarray],
                         ka: float,
                         alpha: float,
                         time_scale: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    r"""
    Combines two exponential convolutions into the convolution with a dispersed input:

    .. math::

        G = \left(k_{a}e^{-k_{a}t}\right)\otimes e^{-\alpha t}\otimes C_\mathrm{P}
          = k_{a}H,\qquad H = \frac{E(\alpha) - E(k_{a})}{k_{a}-\alpha},

    where :math:`E(r) = C_\mathrm{P}\otimes e^{-rt}`. Returns :math:`G` and its partial derivatives with respect to
    :math:`\alpha` and :math:`k_{a}`.

    :math:`H` is minus the divided difference :math:`E[\alpha, k_{a}]`, and its partial derivatives are
    :math:`-E[\alpha,\alpha,k_{a}]` and :math:`-E[\alpha,k_{a},k_{a}]`. When :math:`|k_{a}-\alpha|` is small
    compared with ``1 / time_scale`` the quotients cancel, so the divided differences are instead expanded in the gap
    :math:`\delta=k_{a}-\alpha` using the first and second rate derivatives at both rates:

    .. math::

        E[\alpha,k_{a}] \approx \frac{E'(\alpha)+E'(k_{a})}{2} - \frac{\delta}{12}\left[E''(k_{a})-E''(\alpha)\right],
        \quad
        E[\alpha,\alpha,k_{a}] \approx \frac{2E''(\alpha)+E''(k_{a})}{6},
        \quad
        E[\alpha,k_{a},k_{a}] \approx \frac{E''(\alpha)+2E''(k_{a})}{6}.

    Args:
        conv_a (tuple): :math:`E(\alpha)` with its first and second rate derivatives.
        conv_k (tuple): :math:`E(k_{a})` with its first and second rate derivatives.
        ka (float): Dispersion rate.
        alpha (float): Eigen-rate of the tissue response.
        time_scale (float): End of the scan.

    Returns:
        tuple: ``(disp_vals, d_alpha, d_ka)``.
    """
    val_a, d_val_a, d2_val_a = conv_a
    val_k, d_val_k, d2_val_k = conv_k
    gap = ka - alpha
    if abs(gap) * time_scale <= _DISPERSION_GAP_TOL_:
        h_vals = -(0.5 * (d_val_a + d_val_k) - gap * (d2_val_k - d2_val_a) / 12.0)
        dh_alpha = -(2.0 * d2_val_a + d2_val_k) / 6.0
        dh_ka = -(d2_val_a + 2.0 * d2_val_k) / 6.0
        return ka * h_vals, ka * dh_alpha, h_vals + ka * dh_ka

    diff_vals = val_a - val_k
    disp_vals = ka * diff_vals / gap
    d_alpha = ka * (d_val_a / gap + diff_vals / (gap * gap))
    d_ka = diff_vals / gap - ka * d_val_k / gap - ka * diff_vals / (gap * gap)
    return disp_vals, d_alpha, d_ka


class DualInputLiverModel(KineticModel):
    r"""
    Dual-input liver model: a serial 2TCM fed by a mixture of the hepatic artery and the portal vein.

    The portal-vein input is the arterial input delayed and dispersed by the gut with rate :math:`k_{a}` (mean
    transit time :math:`1/k_{a}`):

    .. math::

        C_\mathrm{PV}(t) = k_{a}e^{-k_{a}t}\otimes C_\mathrm{P}(t),\qquad
        C_\mathrm{in}(t) = f_{A}C_\mathrm{P}(t) + (1-f_{A})\,C_\mathrm{PV}(t).

    The vascular term mixes the whole-blood curve the same way. Because every piece is an exponential convolution of
    the arterial curves, the TAC and every Jacobian column, including the one for :math:`k_{a}`, are analytic.

    Parameters: ``(K1, k2, k3, k4, ka, fa[, vb])``.
    """
    name = 'liver'
    kinetic_param_names = ('K1', 'k2', 'k3', 'k4', 'ka', 'fa')

    def calc_tissue_tac(self, kin_params, context, kin_sens=None):
        k1, k2, k3, k4, ka, fa = kin_params
        want_jac = kin_sens is not None
        alphas, coeffs, d_alphas, d_coeffs = calc_serial_2tcm_eigen_rates(k2, k3, k4)

        # curvatures are needed when ka is close to an eigen-rate
        conv_ka = context.calc_plasma_conv_with_curvature(ka)
        time_scale = context.grid_times[-1]

        num_frames = context.num_frames
        input_vals = np.empty((2, num_frames))
        d_input_alpha = np.empty((2, num_frames))
        d_input_ka = np.empty((2, num_frames))
        d_input_fa = np.empty((2, num_frames))
        for i in range(2):
            conv_a = context.calc_plasma_conv_with_curvature(alphas[i])
            disp_vals, d_disp_alpha, d_disp_ka = _calc_dispersed_conv(conv_a, conv_ka, ka, alphas[i], time_scale)
            input_vals[i] = fa * conv_a[0] + (1.0 - fa) * disp_vals
            d_input_alpha[i] = fa * conv_a[1] + (1.0 - fa) * d_disp_alpha
            d_input_ka[i] = (1.0 - fa) * d_disp_ka
            d_input_fa[i] = conv_a[0] - disp_vals

        resp_vals = coeffs @ input_vals
        tissue_vals = k1 * resp_vals
        if not want_jac:
            return tissue_vals, None

        jac = np.zeros((num_frames, 6), float)
        if kin_sens[0]:
            jac[:, 0] = resp_vals
        for j in range(3):
            if kin_sens[j + 1]:
                jac[:, j + 1] = k1 * (d_coeffs[:, j] @ input_vals + (coeffs * d_alphas[:, j]) @ d_input_alpha)
        if kin_sens[4]:
            jac[:, 4] = k1 * (coeffs @ d_input_ka)
        if kin_sens[5]:
            jac[:, 5] = k1 * (coeffs @ d_input_fa)
        return tissue_vals, jac

    def calc_blood_tac(self, kin_params, context, kin_sens=None):
        ka, fa = kin_params[4], kin_params[5]
        want_jac = kin_sens is not None
        conv_vals, d_conv_vals = context.calc_blood_conv(ka, want_jac and kin_sens[4])
        blood_vals = fa * context.blood_frame_avgs + (1.0 - fa) * ka * conv_vals
        if not want_jac:
            return blood_vals, None

        jac = np.zeros((context.num_frames, 6), float)
        if kin_sens[4]:
            jac[:, 4] = (1.0 - fa) * (conv_vals + ka * d_conv_vals)
        if kin_sens[5]:
            jac[:, 5] = context.blood_frame_avgs - ka * conv_vals
        return blood_vals, jac


_KINETIC_MODELS_ = {
    OneTissueCompartmentModel.name: OneTissueCompartmentModel,
    SerialTwoTissueCompartmentModel.name: SerialTwoTissueCompartmentModel,
    DualInputLiverModel.name: DualInputLiverModel,
}


def get_kinetic_model(name: str, with_blood_volume: bool = True) -> KineticModel:
    r"""Function for obtaining a kinetic model evaluator by name.

    Args:
        name (str): Name of the model. One of ``'1tcm'``, ``'2tcm'`` or ``'liver'`` (case-insensitive).
        with_blood_volume (bool): Whether the model has a trailing fractional blood volume parameter.

    Returns:
        KineticModel: An instance of the selected model.

    Raises:
        ValueError: If ``name`` is not one of the supported models.
    """
    model_name = name.lower()
    if model_name not in _KINETIC_MODELS_:
        raise ValueError(f"Invalid model! Must be one of {', '.join(_KINETIC_MODELS_)}. Got {name}.")
    return _KINETIC_MODELS_[model_name](with_blood_volume=with_blood_volume)


def evaluate_kinetic_model(params: np.ndarray,
                           context: KineticModelContext,
                           want_jacobian: bool = False,
                           sensitivity: Union[np.ndarray, None] = None) -> tuple[np.ndarray, Union[np.ndarray, None]]:
    """
    Evaluates the context's model at ``params``.

    Args:
        params (np.ndarray): Model parameters.
        context (KineticModelContext): Shared context holding the selected model.
        want_jacobian (bool): Whether to also compute the Jacobian.
        sensitivity (np.ndarray, optional): Mask of the Jacobian columns to compute.

    Returns:
        tuple: ``(tac_vals, jacobian)``; ``jacobian`` is None when ``want_jacobian`` is False.
    """
    if want_jacobian:
        return context.model.calc_tac_and_jacobian(params, context, sensitivity)
    return context.model.calc_tac(params, context), None


def calc_tacs_for_param_matrix(param_matrix: np.ndarray, context: KineticModelContext) -> np.ndarray:
    """
    Computes model TACs for many parameter vectors at once.

    Args:
        param_matrix (np.ndarray): Either a single parameter vector of length P or a ``(P, N)`` matrix with one
            column per voxel.
        context (KineticModelContext): Shared context holding the selected model.

    Returns:
        np.ndarray: Matrix of shape ``(F, N)`` with the model TAC of each column (``N = 1`` for a vector).

    Raises:
        ValueError: If the number of parameters does not match the model.
    """
    param_matrix = np.asarray(param_matrix, dtype=float)
    if param_matrix.ndim == 1:
        param_matrix = param_matrix[:, None]
    if param_matrix.shape[0] != context.model.num_params:
        raise ValueError(f"Expected {context.model.num_params} parameters per column for "
                         f"{context.model.name}; got {param_matrix.shape[0]}.")

    tac_matrix = np.empty((context.num_frames, param_matrix.shape[1]), float)
    for vox_id in range(param_matrix.shape[1]):
        tac_matrix[:, vox_id] = context.model.calc_tac(param_matrix[:, vox_id], context)
    return tac_matrix
