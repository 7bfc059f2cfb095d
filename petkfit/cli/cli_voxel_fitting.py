r"""
Command-line interface (CLI) for fitting Tissue Compartment Models (TCM) to many PET Time-Activity Curves (TACs) at
once.

This module provides a CLI to interact with the :mod:`petkfit.kinetic_modeling.parametric_fitting` module. It
utilizes argparse to handle command-line arguments.

The user must provide:
    * TAC matrix file path (frames x voxels; ``.npy`` or text)
    * Scan timing file path (frames x 2 start/end pairs, or the frame starts)
    * Blood input file path (time, plasma[, whole blood] columns)
    * Compartment model name for fitting. Supported models are '1tcm', '2tcm' and 'liver'.
    * Filename prefix for the output files
    * Output directory where the analysis results will be saved

User can optionally provide:
    * Initial guesses, lower and upper bounds, and a sensitivity mask for the fitting parameters
    * Whether to ignore blood volume contributions while fitting
    * A decay constant, or a radionuclide, for the forward model and per-frame weighting
    * A weights file, or decay-based per-frame weighting
    * Maximum number of Levenberg-Marquardt iterations and the number of worker threads

This script utilizes the :class:`VoxelwiseKineticFit<petkfit.kinetic_modeling.parametric_fitting.VoxelwiseKineticFit>`
class to perform the fits and save the results accordingly.

Example:
    In the proceeding example, we fit the serial 2TCM to every column of 'tacs.npy' with 8 threads.

    .. code-block:: bash

        petkfit-voxel-fit -t "tacs.npy"\
        -s "frame_times.txt" -i "blood.txt"\
        -m "2tcm"\
        -o "./" -p "cli_"\
        -r "F18" --decay-based-weights\
        -g 0.1 0.1 0.1 0.1 0.05\
        -l 0.0 0.0 0.0 0.0 0.0\
        -u 5.0 5.0 5.0 5.0 1.0\
        -f 100 -n 8 --print

See Also:
    :mod:`petkfit.kinetic_modeling.parametric_fitting` - module for voxel-wise fitting.

"""
import argparse
import logging
from typing import Union
import numpy as np

from ..kinetic_modeling import parametric_fitting as voxel_fit
from ..kinetic_modeling.kinetic_models import KineticModelContext, get_kinetic_model
from ..utils import data_io
from ..utils.time_activity_curve import calc_decay_based_weights

logger = logging.getLogger(__name__)

_EXAMPLE_ = ('Fitting every voxel TAC to the serial 2TCM using the F18 decay constant:\n\t'
             'petkfit-voxel-fit -t "tacs.npy" '
             '-s "frame_times.txt" -i "blood.txt" '
             '-m "2tcm" '
             '-o "./" -p "cli_" '
             '-r "F18" --decay-based-weights '
             '-g 0.1 0.1 0.1 0.1 0.05 '
             '-l 0.0 0.0 0.0 0.0 0.0 '
             '-u 5.0 5.0 5.0 5.0 1.0 '
             '-f 100 -n 8 '
             '--print')


def _generate_args() -> argparse.Namespace:
    r"""
    Generates and handles the arguments for the command-line interface.

    This function sets up the argument parser, adds required and optional arguments, and parses input arguments.

    Returns:
        argparse.Namespace: Parsed command-line arguments.

    Raises:
        argparse.ArgumentError: If necessary arguments are missing or invalid arguments are provided.
    """
    parser = argparse.ArgumentParser(prog='petkfit-voxel-fit',
                                     description='Command line interface for fitting Tissue Compartment Models (TCM) '
                                                 'to many PET Time Activity Curves (TACs).',
                                     formatter_class=argparse.RawTextHelpFormatter, epilog=_EXAMPLE_)

    # IO group
    grp_io = parser.add_argument_group('IO Paths and Prefixes')
    grp_io.add_argument("-t", "--tac-path", required=True, help="Path to the TAC matrix file (frames x voxels).")
    grp_io.add_argument("-s", "--scan-times-path", required=True,
                        help="Path to the scan timing file: frame [start, end] pairs, or frame starts.")
    grp_io.add_argument("-i", "--blood-input-path", required=True,
                        help="Path to the blood input file with time, plasma and, optionally, whole-blood columns.")
    grp_io.add_argument("-W", "--weights-path", required=False, default=None,
                        help="Path to a file of per-frame weights (one column, or frames x voxels).")
    grp_io.add_argument("-o", "--output-directory", required=True, help="Path to the output directory.")
    grp_io.add_argument("-p", "--output-filename-prefix", required=True, help="Prefix for the output filenames.")

    # Analysis group
    grp_analysis = parser.add_argument_group('Analysis Parameters')
    grp_analysis.add_argument("-m", "--model", required=True, choices=['1tcm', '2tcm', 'liver'],
                              help="Kinetic model to be fit.")
    grp_analysis.add_argument("-b", "--ignore-blood-volume", required=False, default=False, action='store_true',
                              help="Whether to ignore any blood volume contributions while fitting.")
    grp_analysis.add_argument("-g", "--initial-guesses", required=False, nargs='+', type=float,
                              help="Initial guesses for each fitting parameter.")
    grp_analysis.add_argument("-l", "--lower-bounds", required=False, nargs='+', type=float,
                              help="Lower bounds for each fitting parameter.")
    grp_analysis.add_argument("-u", "--upper-bounds", required=False, nargs='+', type=float,
                              help="Upper bounds for each fitting parameter.")
    grp_analysis.add_argument("-k", "--sensitivity", required=False, nargs='+', type=int, default=None,
                              help="0/1 flag for each parameter; 0 holds the parameter at its initial guess.")
    grp_analysis.add_argument("-w", "--decay-constant", required=False, type=float, default=None,
                              help="Decay constant, in the inverse of the scan time unit.")
    grp_analysis.add_argument("-r", "--radionuclide", required=False, default=None,
                              help="Radionuclide (e.g. F18) used to look up the decay constant.")
    grp_analysis.add_argument("--time-unit", required=False, default='min', choices=['s', 'min'],
                              help="Time unit of the scan and blood times. Used with --radionuclide.")
    grp_analysis.add_argument("--decay-based-weights", required=False, default=False, action='store_true',
                              help="Use Poisson, decay-based per-frame weights instead of uniform weights. With a "
                                   "non-zero decay constant the TACs are treated as not decay-corrected.")
    grp_analysis.add_argument("-d", "--frame-duration", required=False, type=float, default=None,
                              help="Frame duration, when the scan timing file only has frame starts.")
    grp_analysis.add_argument("-f", "--max-fit-iterations", required=False, default=100, type=int,
                              help="Maximum number of Levenberg-Marquardt iterations per voxel.")
    grp_analysis.add_argument("-n", "--num-workers", required=False, default=None, type=int,
                              help="Number of worker threads. Defaults to the number of CPUs.")

    # Printing arguments
    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument("--print", action="store_true", help="Whether to print the analysis results.")
    grp_verbose.add_argument("-v", "--verbose", action="store_true", help="Whether to log progress messages.")

    return parser.parse_args()


def _generate_bounds(initial: Union[list, None],
                     lower: Union[list, None],
                     upper: Union[list, None]) -> Union[np.ndarray, None]:
    r"""
    Generates the bounds for the fitting parameters.

    Args:
        initial (list, optional): List of initial guesses for fitting parameters. If None, no bounds are generated.
        lower (list, optional): List of lower bounds for fitting parameters.
        upper (list, optional): List of upper bounds for fitting parameters.

    Returns:
        (np.ndarray, optional): If initial is not None, an array of shape [n, 3] where column 0 has the initial
        guesses, column 1 the lower bounds, and column 2 the upper bounds. Otherwise None.

    Raises:
        ValueError: If initial is not None and the length of initial, lower, and upper are not the same.
    """
    if initial is None:
        return None
    if lower is None or upper is None or not (len(initial) == len(lower) == len(upper)):
        raise ValueError("The number of initial guesses, lower bounds and upper bounds must be the same.")
    return np.asarray([initial, lower, upper], dtype=float).T


def _get_decay_constant(decay_constant: Union[float, None], radionuclide: Union[str, None], time_unit: str) -> float:
    if decay_constant is not None:
        return decay_constant
    if radionuclide is not None:
        return data_io.get_decay_constant_for_radionuclide(radionuclide=radionuclide, time_unit=time_unit)
    return 0.0


def main():
    args = _generate_args()
    logging.basicConfig(format='%(asctime)s %(name)s %(levelname)s: %(message)s')
    logging.getLogger('petkfit').setLevel(logging.INFO if args.verbose else logging.WARNING)

    decay_constant = _get_decay_constant(args.decay_constant, args.radionuclide, args.time_unit)
    model = get_kinetic_model(name=args.model, with_blood_volume=not args.ignore_blood_volume)
    blood_input = data_io.load_blood_input(args.blood_input_path)
    context = KineticModelContext.from_scan(model=model,
                                            scan_times=data_io.safe_load_array(args.scan_times_path),
                                            plasma=blood_input.plasma,
                                            whole_blood=blood_input.whole_blood,
                                            blood_times=blood_input.times,
                                            decay_constant=decay_constant,
                                            frame_duration=args.frame_duration)
    logger.info(f"Built the {model.name} context with {context.num_frames} frames and "
                f"{context.grid_times.shape[0]} grid points.")

    tac_matrix = data_io.safe_load_array(args.tac_path)
    if args.weights_path is not None:
        weights = data_io.safe_load_array(args.weights_path)
    elif args.decay_based_weights:
        weights = calc_decay_based_weights(frame_starts=context.frame_starts,
                                           frame_ends=context.frame_ends,
                                           tac_vals=tac_matrix,
                                           decay_constant=decay_constant,
                                           decay_corrected=decay_constant == 0.0)
    else:
        weights = np.ones(context.num_frames)

    bounds = _generate_bounds(initial=args.initial_guesses, lower=args.lower_bounds, upper=args.upper_bounds)
    if bounds is None:
        bounds = model.get_default_bounds()

    voxel_fitting = voxel_fit.VoxelwiseKineticFit(tac_matrix=tac_matrix,
                                                  weights=weights,
                                                  context=context,
                                                  initial_params=bounds[:, 0],
                                                  lower_bounds=bounds[:, 1],
                                                  upper_bounds=bounds[:, 2],
                                                  sensitivity=args.sensitivity,
                                                  max_iters=args.max_fit_iterations,
                                                  num_workers=args.num_workers)
    try:
        voxel_fitting.run_analysis()
    except (ValueError, voxel_fit.VoxelFittingError) as err:
        logger.error(f"Voxel-wise fitting failed: {err}")
        raise err
    voxel_fitting.save_analysis(output_directory=args.output_directory,
                                output_filename_prefix=args.output_filename_prefix)

    if args.print:
        title_str = f"{'Param':<5} {'Mean':<10} {'Median':<10}|"
        print("-" * len(title_str))
        print(title_str)
        print("-" * len(title_str))
        means = voxel_fitting.analysis_props["ParameterMeans"] or {}
        medians = voxel_fitting.analysis_props["ParameterMedians"] or {}
        for param_name in means:
            print(f"{param_name:<5} {means[param_name]:<10.4f} {medians[param_name]:<10.4f}|")
        print("-" * len(title_str))
        print(f"Mean WRSS: {voxel_fitting.analysis_props['MeanWRSS']}")


if __name__ == "__main__":
    main()
