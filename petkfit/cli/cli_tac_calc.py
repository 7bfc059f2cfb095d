r"""
Command-line interface (CLI) for calculating model Time-Activity Curves (TACs) of a Tissue Compartment Model.

Given the scan timing, a blood input and one or more parameter vectors, the CLI writes the frame-averaged model TACs
as a text file with one row per frame: the frame start, the frame end, then one column per parameter vector. For a
single parameter vector, the Jacobian of the TAC with respect to the parameters can also be written.

Example:
    .. code-block:: bash

        petkfit-tac-calc -s "frame_times.txt" -i "blood.txt" -m "1tcm"\
        -P 0.5 0.3 0.05 -r "F18" -o "1tcm_tac.txt" --jacobian-path "1tcm_jac.txt"

See Also:
    :mod:`petkfit.kinetic_modeling.kinetic_models` - module implementing the kinetic models.

"""
import argparse
import numpy as np

from ..kinetic_modeling.kinetic_models import KineticModelContext, calc_tacs_for_param_matrix, get_kinetic_model
from ..utils import data_io

_EXAMPLE_ = ('Calculating a 1TCM TAC with blood volume for F18 data:\n\t'
             'petkfit-tac-calc -s "frame_times.txt" -i "blood.txt" -m "1tcm" '
             '-P 0.5 0.3 0.05 -r "F18" -o "1tcm_tac.txt"')


def _generate_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='petkfit-tac-calc',
                                     description='Command line interface for calculating frame-averaged model TACs.',
                                     formatter_class=argparse.RawTextHelpFormatter, epilog=_EXAMPLE_)
    grp_io = parser.add_argument_group('IO Paths')
    grp_io.add_argument("-s", "--scan-times-path", required=True,
                        help="Path to the scan timing file: frame [start, end] pairs, or frame starts.")
    grp_io.add_argument("-i", "--blood-input-path", required=True,
                        help="Path to the blood input file with time, plasma and, optionally, whole-blood columns.")
    grp_io.add_argument("-o", "--output-tac-path", required=True, help="Path of the output TAC file.")
    grp_io.add_argument("--jacobian-path", required=False, default=None,
                        help="Path of the output Jacobian file. Only for a single parameter vector.")

    grp_params = parser.add_argument_group('Model Parameters')
    grp_params.add_argument("-m", "--model", required=True, choices=['1tcm', '2tcm', 'liver'],
                            help="Kinetic model.")
    grp_params.add_argument("-b", "--ignore-blood-volume", required=False, default=False, action='store_true',
                            help="Whether the model has no blood volume parameter.")
    grp_source = grp_params.add_mutually_exclusive_group(required=True)
    grp_source.add_argument("-P", "--params", nargs='+', type=float, default=None,
                            help="A single parameter vector.")
    grp_source.add_argument("--params-path", default=None,
                            help="Path to a parameter matrix file (parameters x voxels).")
    grp_params.add_argument("-w", "--decay-constant", required=False, type=float, default=None,
                            help="Decay constant, in the inverse of the scan time unit.")
    grp_params.add_argument("-r", "--radionuclide", required=False, default=None,
                            help="Radionuclide (e.g. F18) used to look up the decay constant.")
    grp_params.add_argument("--time-unit", required=False, default='min', choices=['s', 'min'],
                            help="Time unit of the scan and blood times. Used with --radionuclide.")
    grp_params.add_argument("-d", "--frame-duration", required=False, type=float, default=None,
                            help="Frame duration, when the scan timing file only has frame starts.")

    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument("--print", action="store_true", help="Whether to print the calculated TACs.")
    return parser.parse_args()


def main():
    args = _generate_args()

    if args.decay_constant is not None:
        decay_constant = args.decay_constant
    elif args.radionuclide is not None:
        decay_constant = data_io.get_decay_constant_for_radionuclide(args.radionuclide, time_unit=args.time_unit)
    else:
        decay_constant = 0.0

    model = get_kinetic_model(name=args.model, with_blood_volume=not args.ignore_blood_volume)
    blood_input = data_io.load_blood_input(args.blood_input_path)
    context = KineticModelContext.from_scan(model=model,
                                            scan_times=data_io.safe_load_array(args.scan_times_path),
                                            plasma=blood_input.plasma,
                                            whole_blood=blood_input.whole_blood,
                                            blood_times=blood_input.times,
                                            decay_constant=decay_constant,
                                            frame_duration=args.frame_duration)

    if args.params is not None:
        param_matrix = np.asarray(args.params, dtype=float)[:, None]
    else:
        param_matrix = data_io.safe_load_array(args.params_path)
        if param_matrix.ndim == 1:
            param_matrix = param_matrix[:, None]

    tac_matrix = calc_tacs_for_param_matrix(param_matrix=param_matrix, context=context)
    out_table = np.column_stack((context.frame_starts, context.frame_ends, tac_matrix))
    np.savetxt(args.output_tac_path, out_table, fmt='%.8e', delimiter='\t',
               header='\t'.join(['start', 'end'] + [f'tac_{i}' for i in range(tac_matrix.shape[1])]))

    if args.jacobian_path is not None:
        if param_matrix.shape[1] != 1:
            raise ValueError("The Jacobian can only be written for a single parameter vector.")
        _, jac = model.calc_tac_and_jacobian(param_matrix[:, 0], context)
        np.savetxt(args.jacobian_path, jac, fmt='%.8e', delimiter='\t', header='\t'.join(model.param_names))

    if args.print:
        print(out_table)


if __name__ == "__main__":
    main()
