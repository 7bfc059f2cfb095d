r"""
Voxel-wise kinetic fitting.

This module applies :func:`petkfit.kinetic_modeling.levenberg_marquardt.fit_tac_with_levmar` independently to every
column of a ``frames x voxels`` TAC matrix. The voxel range is split into contiguous blocks, one per worker thread.
The heavy numerical kernels release the GIL, so the workers run concurrently. Every worker owns its scratch buffers and
writes only the output columns of its own voxels, so no locking is needed and the results do not depend on the
number of workers.

It includes:
    - :func:`fit_tacs_voxelwise`: the parallel driver.
    - :class:`VoxelwiseKineticFit`: an analysis class wrapping the driver, which records the fit properties and saves
      the results.

"""
import logging
import os
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Union
import numpy as np

from .kinetic_models import KineticModelContext
from .levenberg_marquardt import LevMarConfig, fit_tac_with_levmar
from ..utils.data_io import write_dict_to_json, write_param_matrix_to_tsv

logger = logging.getLogger(__name__)


class ParameterShapeWarning(UserWarning):
    """Issued when the orientation of the initial-parameter input is ambiguous."""
    pass


class VoxelFittingError(RuntimeError):
    """Raised when a worker could not fit its voxels because it ran out of resources."""
    pass


@dataclass
class _WorkerScratch:
    """Per-worker buffers reused for every voxel of the worker's block."""
    tac_vals: np.ndarray
    weights: np.ndarray
    params: np.ndarray
    fitted_tac: np.ndarray

    @classmethod
    def allocate(cls, num_frames: int, num_params: int) -> '_WorkerScratch':
        return cls(tac_vals=np.empty(num_frames),
                   weights=np.empty(num_frames),
                   params=np.empty(num_params),
                   fitted_tac=np.empty(num_frames))


def _prepare_initial_params(initial_params: np.ndarray, num_params: int, num_voxels: int) -> np.ndarray:
    r"""
    Returns the initial parameters as a ``(num_params, num_voxels)`` array, broadcasting a single column.

    A one-row input is ambiguous: it could be one parameter for many voxels or a transposed parameter vector. It is
    reported with a :class:`ParameterShapeWarning` and read as a parameter vector shared by every voxel.
    """
    init_arr = np.asarray(initial_params, dtype=float)
    if init_arr.ndim == 2 and init_arr.shape[0] == 1:
        warnings.warn(f"Initial parameters have a single row (shape {init_arr.shape}); treating them as one "
                      f"parameter vector shared by all voxels.", ParameterShapeWarning, stacklevel=3)
        init_arr = init_arr.ravel()

    if init_arr.ndim == 1:
        if init_arr.shape[0] != num_params:
            raise ValueError(f"Expected {num_params} initial parameters; got {init_arr.shape[0]}.")
        return np.broadcast_to(init_arr[:, None], (num_params, num_voxels))

    if init_arr.ndim != 2 or init_arr.shape[0] != num_params or init_arr.shape[1] not in (1, num_voxels):
        raise ValueError(f"Initial parameters must have shape ({num_params},), ({num_params}, 1) or "
                         f"({num_params}, {num_voxels}). Got {init_arr.shape}.")
    return np.broadcast_to(init_arr, (num_params, num_voxels))


def _prepare_weights(weights: np.ndarray, num_frames: int, num_voxels: int) -> np.ndarray:
    """Returns the weights as a ``(num_frames, num_voxels)`` array, broadcasting a single column as a read-only
    view."""
    weights_arr = np.asarray(weights, dtype=float)
    if weights_arr.ndim == 2 and weights_arr.shape[1] == 1:
        weights_arr = weights_arr[:, 0]
    if weights_arr.ndim == 1:
        if weights_arr.shape[0] != num_frames:
            raise ValueError(f"Expected {num_frames} weights; got {weights_arr.shape[0]}.")
        return np.broadcast_to(weights_arr[:, None], (num_frames, num_voxels))
    if weights_arr.shape != (num_frames, num_voxels):
        raise ValueError(f"Weights must have shape ({num_frames},) or ({num_frames}, {num_voxels}). "
                         f"Got {weights_arr.shape}.")
    return weights_arr


def _check_param_vector(vals: np.ndarray, num_params: int, name: str) -> np.ndarray:
    vals = np.asarray(vals).ravel()
    if vals.shape[0] != num_params:
        raise ValueError(f"`{name}` must have {num_params} values; got {vals.shape[0]}.")
    return vals


def _fit_voxel_block(vox_ids: np.ndarray,
                     tac_matrix: np.ndarray,
                     weights: np.ndarray,
                     initial_params: np.ndarray,
                     lower_bounds: np.ndarray,
                     upper_bounds: np.ndarray,
                     sensitivity: np.ndarray,
                     context: KineticModelContext,
                     max_iters: int,
                     config: LevMarConfig,
                     param_matrix: np.ndarray,
                     fitted_tac_matrix: np.ndarray) -> int:
    scratch = _WorkerScratch.allocate(num_frames=tac_matrix.shape[0], num_params=initial_params.shape[0])
    for vox_id in vox_ids:
        scratch.tac_vals[:] = tac_matrix[:, vox_id]
        scratch.weights[:] = weights[:, vox_id]
        scratch.params[:] = initial_params[:, vox_id]
        fit_tac_with_levmar(tac_vals=scratch.tac_vals,
                            weights=scratch.weights,
                            context=context,
                            initial_params=scratch.params,
                            lower_bounds=lower_bounds,
                            upper_bounds=upper_bounds,
                            sensitivity=sensitivity,
                            max_iters=max_iters,
                            config=config,
                            out_params=param_matrix[:, vox_id],
                            out_tac=scratch.fitted_tac)
        fitted_tac_matrix[:, vox_id] = scratch.fitted_tac
    return len(vox_ids)


def fit_tacs_voxelwise(tac_matrix: np.ndarray,
                       weights: np.ndarray,
                       context: KineticModelContext,
                       initial_params: np.ndarray,
                       lower_bounds: np.ndarray,
                       upper_bounds: np.ndarray,
                       sensitivity: np.ndarray,
                       max_iters: int,
                       num_workers: Union[int, None] = None,
                       config: Union[LevMarConfig, None] = None) -> tuple[np.ndarray, np.ndarray]:
    r"""
    Fits the context's kinetic model to every voxel TAC with a pool of worker threads.

    All inputs are validated before any worker starts. Each worker fits a contiguous block of voxels and writes the
    results into that block's columns of the output matrices. Voxels that hit the iteration cap keep their best
    parameters; this never aborts the batch.

    Args:
        tac_matrix (np.ndarray): TACs with shape ``(num_frames, num_voxels)``. A single TAC is treated as one voxel.
        weights (np.ndarray): Frame weights; either one column shared by all voxels or a ``(num_frames, num_voxels)``
            matrix.
        context (KineticModelContext): Shared, read-only model context.
        initial_params (np.ndarray): Initial parameters; a vector of length P shared by all voxels, or a
            ``(P, num_voxels)`` matrix. A single-row input raises a :class:`ParameterShapeWarning` and is broadcast.
        lower_bounds (np.ndarray): Lower parameter bounds (length P), shared by all voxels.
        upper_bounds (np.ndarray): Upper parameter bounds (length P), shared by all voxels.
        sensitivity (np.ndarray): 0/1 mask of the parameters to estimate (length P).
        max_iters (int): Maximum number of Levenberg-Marquardt proposals per voxel.
        num_workers (int, optional): Size of the worker pool. Defaults to :func:`os.cpu_count`. The pool is never
            larger than the number of voxels.
        config (LevMarConfig, optional): Optimizer constants.

    Returns:
        tuple[np.ndarray, np.ndarray]: The fitted parameters ``(P, num_voxels)`` and the fitted TACs
        ``(num_frames, num_voxels)``.

    Raises:
        ValueError: If the shapes of the inputs are inconsistent with each other or with the model.
        VoxelFittingError: If a worker ran out of memory. Results of the other workers are still written.

    """
    tac_matrix = np.asarray(tac_matrix, dtype=float)
    if tac_matrix.ndim == 1:
        tac_matrix = tac_matrix[:, None]
    num_frames, num_voxels = tac_matrix.shape
    if num_frames != context.num_frames:
        raise ValueError(f"TACs have {num_frames} frames but the scan has {context.num_frames} frames.")

    num_params = context.model.num_params
    lower_bounds = _check_param_vector(lower_bounds, num_params, 'lower_bounds').astype(float)
    upper_bounds = _check_param_vector(upper_bounds, num_params, 'upper_bounds').astype(float)
    sensitivity = _check_param_vector(sensitivity, num_params, 'sensitivity').astype(bool)
    initial_params = _prepare_initial_params(initial_params, num_params, num_voxels)
    weights = _prepare_weights(weights, num_frames, num_voxels)
    if config is None:
        config = LevMarConfig()

    param_matrix = np.zeros((num_params, num_voxels), float)
    fitted_tac_matrix = np.zeros((num_frames, num_voxels), float)
    if num_voxels == 0:
        return param_matrix, fitted_tac_matrix

    if num_workers is None:
        num_workers = os.cpu_count() or 1
    num_workers = max(1, min(int(num_workers), num_voxels))
    vox_blocks = np.array_split(np.arange(num_voxels), num_workers)

    logger.info("Fitting %d voxels with the %s model using %d workers.", num_voxels, context.model.name,
                num_workers)

    failures = []
    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        futures = [executor.submit(_fit_voxel_block, vox_ids, tac_matrix, weights, initial_params, lower_bounds,
                                   upper_bounds, sensitivity, context, max_iters, config, param_matrix,
                                   fitted_tac_matrix)
                   for vox_ids in vox_blocks]
        for worker_id, future in enumerate(futures):
            try:
                future.result()
            except MemoryError as err:
                logger.error("Worker %d ran out of memory: %s", worker_id, err)
                failures.append(err)

    if failures:
        raise VoxelFittingError(f"{len(failures)} of {num_workers} workers ran out of memory; "
                                f"their voxels were not fitted.") from failures[0]
    return param_matrix, fitted_tac_matrix


class VoxelwiseKineticFit:
    r"""
    A class to fit a kinetic model to many voxel (or region) TACs and save the results.

    Example:

        .. code-block:: python

            import numpy as np
            from petkfit.kinetic_modeling.kinetic_models import KineticModelContext, get_kinetic_model
            from petkfit.kinetic_modeling.parametric_fitting import VoxelwiseKineticFit

            model = get_kinetic_model('2tcm')
            context = KineticModelContext.from_scan(model=model, scan_times=frame_times, plasma=plasma_vals,
                                                    blood_times=blood_times, decay_constant=np.log(2) / 109.77)
            voxel_fit = VoxelwiseKineticFit(tac_matrix=tacs, weights=np.ones(context.num_frames), context=context)
            voxel_fit.run_analysis()
            voxel_fit.save_analysis(output_directory='./results', output_filename_prefix='sub-001')

    Attributes:
        tac_matrix (np.ndarray): TACs, ``(num_frames, num_voxels)``.
        weights (np.ndarray): Frame weights, one column or one per voxel.
        context (KineticModelContext): Shared model context.
        initial_params (np.ndarray): Initial parameters. Defaults to the model's default initial guesses.
        lower_bounds (np.ndarray): Lower parameter bounds. Defaults to the model's defaults.
        upper_bounds (np.ndarray): Upper parameter bounds. Defaults to the model's defaults.
        sensitivity (np.ndarray): Mask of the parameters to estimate. Defaults to all parameters.
        max_iters (int): Maximum number of Levenberg-Marquardt proposals per voxel.
        num_workers (int): Size of the worker pool. None means one worker per CPU.
        config (LevMarConfig): Optimizer constants.
        param_matrix (np.ndarray): Fitted parameters, available after :meth:`run_analysis`.
        fitted_tac_matrix (np.ndarray): Fitted TACs, available after :meth:`run_analysis`.
        analysis_props (dict): Properties of the analysis.

    See Also:
        :func:`fit_tacs_voxelwise`
    """
    def __init__(self,
                 tac_matrix: np.ndarray,
                 weights: np.ndarray,
                 context: KineticModelContext,
                 initial_params: Union[np.ndarray, None] = None,
                 lower_bounds: Union[np.ndarray, None] = None,
                 upper_bounds: Union[np.ndarray, None] = None,
                 sensitivity: Union[np.ndarray, None] = None,
                 max_iters: int = 100,
                 num_workers: Union[int, None] = None,
                 config: Union[LevMarConfig, None] = None):
        default_bounds = context.model.get_default_bounds()
        tac_matrix = np.asarray(tac_matrix, dtype=float)
        self.tac_matrix = tac_matrix[:, None] if tac_matrix.ndim == 1 else tac_matrix
        self.weights = np.asarray(weights, dtype=float)
        self.context = context
        self.initial_params = default_bounds[:, 0] if initial_params is None else np.asarray(initial_params, float)
        self.lower_bounds = default_bounds[:, 1] if lower_bounds is None else np.asarray(lower_bounds, float)
        self.upper_bounds = default_bounds[:, 2] if upper_bounds is None else np.asarray(upper_bounds, float)
        if sensitivity is None:
            sensitivity = np.ones(context.model.num_params, dtype=bool)
        self.sensitivity = np.asarray(sensitivity).astype(bool)
        self.max_iters = max_iters
        self.num_workers = num_workers
        self.config = LevMarConfig() if config is None else config
        self.param_matrix: Union[np.ndarray, None] = None
        self.fitted_tac_matrix: Union[np.ndarray, None] = None
        self.analysis_props: dict = self.init_analysis_props()
        self._has_analysis_been_run: bool = False

    def init_analysis_props(self) -> dict:
        r"""
        Initializes the analysis properties dictionary with the model, bounds and scan description. The fit summary
        entries are None until :meth:`run_analysis` is called.

        Returns:
            dict: The analysis properties.
        """
        model = self.context.model
        props = {
            'ModelName': model.name,
            'ParameterNames': list(model.param_names),
            'WithBloodVolume': model.with_blood_volume,
            'LowerBounds': self.lower_bounds.tolist(),
            'UpperBounds': self.upper_bounds.tolist(),
            'Sensitivity': self.sensitivity.astype(int).tolist(),
            'MaxIterations': int(self.max_iters),
            'DecayConstant': self.context.decay_constant,
            'NumberOfFrames': int(self.tac_matrix.shape[0]),
            'NumberOfVoxels': int(self.tac_matrix.shape[1]),
            'ParameterMeans': None,
            'ParameterMedians': None,
            'MeanWRSS': None,
        }
        return props

    def run_analysis(self):
        r"""
        Runs the voxel-wise fit and then computes the fit properties.

        Specifically, it executes the following sequence:
            1. :func:`fit_tacs_voxelwise`
            2. :meth:`calculate_fit_properties`

        """
        self.param_matrix, self.fitted_tac_matrix = fit_tacs_voxelwise(tac_matrix=self.tac_matrix,
                                                                       weights=self.weights,
                                                                       context=self.context,
                                                                       initial_params=self.initial_params,
                                                                       lower_bounds=self.lower_bounds,
                                                                       upper_bounds=self.upper_bounds,
                                                                       sensitivity=self.sensitivity,
                                                                       max_iters=self.max_iters,
                                                                       num_workers=self.num_workers,
                                                                       config=self.config)
        self.calculate_fit_properties()
        self._has_analysis_been_run = True

    def calc_voxel_wrss(self) -> np.ndarray:
        """Weighted residual sum of squares of every voxel fit."""
        weights = self.weights[:, None] if self.weights.ndim == 1 else self.weights
        resid = self.tac_matrix - self.fitted_tac_matrix
        return np.sum(weights * resid * resid, axis=0)

    def calculate_fit_properties(self):
        param_names = self.context.model.param_names
        if self.param_matrix.shape[1] == 0:
            return
        means = np.mean(self.param_matrix, axis=1)
        medians = np.median(self.param_matrix, axis=1)
        self.analysis_props['ParameterMeans'] = {name: float(val) for name, val in zip(param_names, means)}
        self.analysis_props['ParameterMedians'] = {name: float(val) for name, val in zip(param_names, medians)}
        self.analysis_props['MeanWRSS'] = float(np.mean(self.calc_voxel_wrss()))

    def save_analysis(self, output_directory: str, output_filename_prefix: str):
        r"""
        Saves the fitted parameters, fitted TACs and analysis properties.

        The following files are written to ``output_directory``:
            * ``{prefix}_params.npy``: the ``(P, num_voxels)`` fitted parameter matrix.
            * ``{prefix}_fitted_tacs.npy``: the ``(num_frames, num_voxels)`` fitted TAC matrix.
            * ``{prefix}_params.tsv``: a table with one row per voxel and one column per parameter.
            * ``{prefix}_props.json``: the analysis properties.

        Args:
            output_directory (str): Directory where the results are saved. Created if needed.
            output_filename_prefix (str): Prefix of the output file names.

        Raises:
            RuntimeError: If the :meth:`run_analysis` method has not been called yet.
        """
        if not self._has_analysis_been_run:
            raise RuntimeError("'run_analysis' method must be called before 'save_analysis'.")
        output_directory = os.path.abspath(output_directory)
        os.makedirs(output_directory, exist_ok=True)
        file_name_prefix = os.path.join(output_directory,
                                        f"{output_filename_prefix}_model-{self.analysis_props['ModelName']}")
        np.save(f"{file_name_prefix}_params.npy", self.param_matrix)
        np.save(f"{file_name_prefix}_fitted_tacs.npy", self.fitted_tac_matrix)
        write_param_matrix_to_tsv(param_matrix=self.param_matrix,
                                  param_names=self.context.model.param_names,
                                  out_path=f"{file_name_prefix}_params.tsv")
        write_dict_to_json(meta_data_dict=self.analysis_props, out_path=f"{file_name_prefix}_props.json")

    def __call__(self, output_directory: str, output_filename_prefix: str):
        self.run_analysis()
        self.save_analysis(output_directory=output_directory, output_filename_prefix=output_filename_prefix)
