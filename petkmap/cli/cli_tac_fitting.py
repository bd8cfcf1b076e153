r"""
Command-line interface (CLI) for fitting compartment models to a PET region-of-interest Time-Activity Curve (TAC).

This module provides a CLI to interact with the :mod:`petkmap.kinetic_modeling.tac_fitting` module. It utilizes
argparse to handle command-line arguments.

The user must provide:
    * Input function file path, with the columns ``time plasma [whole_blood]``
    * Region of Interest (ROI) TAC file path, with the columns ``frame_start frame_end value [weight]``
    * Compartment model name. Supported models are '1t3p', '2t5p', 'srtm' and 'liver'.
    * Filename prefix for the output files
    * Output directory where the analysis results will be saved

User can optionally provide:
    * Initial guesses, lower bounds and upper bounds for the model parameters
    * Names of parameters to hold fixed at their initial guess
    * The radioactive decay constant, or the radionuclide half-life, in the time units of the TAC files
    * Maximum number of LM iterations
    * The fine-grid step used to evaluate the model

This script utilizes the :class:`FitTCMToTAC<petkmap.kinetic_modeling.tac_fitting.FitTCMToTAC>` class to perform the
fit and save the results.

Example:
    In the proceeding example, we assume that we have an input function named 'input_tac.txt', and an ROI TAC named
    'roi_tac.txt', both in minutes. We fit the two-tissue model with F18 decay.

    .. code-block:: bash

        petkmap-tcm-fit -i "input_tac.txt"\
        -r "roi_tac.txt"\
        -m "2t5p"\
        -o "./" -p "cli_"\
        --half-life 109.77\
        -g 0.1 0.1 0.05 0.01 0.05\
        -l 0.0 0.0 0.0 0.0 0.0\
        -u 5.0 5.0 5.0 5.0 1.0\
        -f 200 --print

See Also:
    :mod:`petkmap.kinetic_modeling.tac_fitting` - module for fitting TACs with compartment models.

"""
import argparse
import logging
from typing import Union

import numpy as np

from ..kinetic_modeling import tac_fitting as pet_fit
from ..kinetic_modeling.tcm_models import ModelVariant
from ..math_lib import decay_constant_from_half_life

logger = logging.getLogger(__name__)

_EXAMPLE_ = ('Fitting a TAC to the two-tissue model using the F18 half-life in minutes:\n\t'
             'petkmap-tcm-fit -i "input_tac.txt"'
             ' -r "2tcm_tac.txt" '
             '-m "2t5p" '
             '-o "./" -p "cli_" '
             '--half-life 109.77 '
             '-g 0.1 0.1 0.05 0.01 0.05 '
             '-l 0.0 0.0 0.0 0.0 0.0 '
             '-u 5.0 5.0 5.0 5.0 1.0 '
             '-f 200 '
             '--print')


def _generate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='petkmap-tcm-fit',
                                     description='Command line interface for fitting compartment models to PET Time '
                                                 'Activity Curves (TACs).',
                                     formatter_class=argparse.RawTextHelpFormatter, epilog=_EXAMPLE_)

    # IO group
    grp_io = parser.add_argument_group('IO Paths and Prefixes')
    grp_io.add_argument("-i", "--input-tac-path", required=True,
                        help="Path to the input function file (reference-region TAC for 'srtm').")
    grp_io.add_argument("-r", "--roi-tac-path", required=True, help="Path to the ROI TAC file.")
    grp_io.add_argument("-o", "--output-directory", required=True, help="Path to the output directory.")
    grp_io.add_argument("-p", "--output-filename-prefix", required=True, help="Prefix for the output filenames.")

    # Analysis group
    grp_analysis = parser.add_argument_group('Analysis Parameters')
    grp_analysis.add_argument("-m", "--model", required=True, choices=[variant.value for variant in ModelVariant],
                              help="Compartment model to be fit.")
    grp_analysis.add_argument("-g", "--initial-guesses", required=False, nargs='+', type=float,
                              help="Initial guesses for each fitting parameter.")
    grp_analysis.add_argument("-l", "--lower-bounds", required=False, nargs='+', type=float,
                              help="Lower bounds for each fitting parameter.")
    grp_analysis.add_argument("-u", "--upper-bounds", required=False, nargs='+', type=float,
                              help="Upper bounds for each fitting parameter.")
    grp_analysis.add_argument("-x", "--fixed-parameters", required=False, nargs='+', default=None,
                              help="Names of parameters held at their initial guess, e.g. 'Vb'.")
    grp_decay = grp_analysis.add_mutually_exclusive_group()
    grp_decay.add_argument("-d", "--decay-constant", required=False, type=float, default=0.0,
                           help="Radioactive decay constant in the inverse time units of the TAC files.")
    grp_decay.add_argument("--half-life", required=False, type=float, default=None,
                           help="Radionuclide half-life in the time units of the TAC files.")
    grp_analysis.add_argument("-f", "--max-fit-iterations", required=False, default=100, type=int,
                              help="Maximum number of LM iterations.")
    grp_analysis.add_argument("-s", "--fine-step", required=False, default=None, type=float,
                              help="Step of the fine time grid used to evaluate the model.")

    # Printing arguments
    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument("--print", action="store_true", help="Whether to print the analysis results.")
    grp_verbose.add_argument("-v", "--verbose", action="store_true", help="Display more information while running.")

    return parser


def _generate_args(argv: Union[list[str], None] = None) -> argparse.Namespace:
    r"""
    Generates and handles the arguments for the command-line interface.

    Args:
        argv (list[str], optional): Arguments to parse. Defaults to ``sys.argv[1:]``.

    Returns:
        argparse.Namespace: Parsed command-line arguments.
    """
    return _generate_parser().parse_args(argv)


def _generate_bounds(initial: Union[list, None],
                     lower: Union[list, None],
                     upper: Union[list, None]) -> Union[np.ndarray, None]:
    r"""
    Generates the bounds for the fitting parameters.

    This function takes lists of initial fitting parameters, lower bounds, and upper bounds. All three must be
    provided together, with the same length. If none are provided, the function returns None and the model defaults
    are used.

    Args:
        initial (list, optional): List of initial guesses for fitting parameters.
        lower (list, optional): List of lower bounds for fitting parameters.
        upper (list, optional): List of upper bounds for fitting parameters.

    Returns:
        (np.ndarray, optional): A numpy array of shape [n, 3], where n is the number of parameters, where column 0 has
        the initial guesses, column 1 has lower bounds, and column 2 has upper bounds. None if nothing was provided.

    Raises:
        ValueError: If only some of the lists are provided, or their lengths differ.
    """
    provided = [vals is not None for vals in (initial, lower, upper)]
    if not any(provided):
        return None
    if not all(provided):
        raise ValueError("Initial guesses, lower bounds and upper bounds must be provided together.")
    if (len(initial) != len(lower)) or (len(initial) != len(upper)):
        raise ValueError("The number of initial guesses, lower bounds and upper bounds must be the same.")
    return np.asarray(np.asarray([initial, lower, upper], dtype=float).T)


def _print_results(fit_props: dict) -> None:
    title_str = f"{'Param':<6} {'FitVal':>10} {'Lower':>8} {'Upper':>8}|"
    print("-" * len(title_str))
    print(title_str)
    print("-" * len(title_str))
    for param_name, val in fit_props['FitValues'].items():
        bounds = fit_props['Bounds'][param_name]
        fixed = ' (fixed)' if param_name in fit_props['FixedParameters'] else ''
        print(f"{param_name:<6} {val:>10.5f} {bounds['lo']:>8.3f} {bounds['hi']:>8.3f}|{fixed}")
    print("-" * len(title_str))
    print(f"Status: {fit_props['Status']} after {fit_props['Iterations']} iteration(s). Cost: {fit_props['Cost']:.5g}")


def main(argv: Union[list[str], None] = None):
    args = _generate_args(argv)
    logging.basicConfig(format='%(levelname)s:%(name)s: %(message)s')
    logging.getLogger('petkmap').setLevel(level=logging.INFO if args.verbose else logging.WARNING)

    bounds = _generate_bounds(initial=args.initial_guesses, lower=args.lower_bounds, upper=args.upper_bounds)
    decay_constant = args.decay_constant
    if args.half_life is not None:
        decay_constant = decay_constant_from_half_life(args.half_life)
    logger.info(f"Using decay constant {decay_constant:.6g}.")

    tac_fitting = pet_fit.FitTCMToTAC(input_tac_path=args.input_tac_path,
                                      roi_tac_path=args.roi_tac_path,
                                      output_directory=args.output_directory,
                                      output_filename_prefix=args.output_filename_prefix,
                                      compartment_model=args.model,
                                      parameter_bounds=bounds,
                                      fixed_parameters=args.fixed_parameters,
                                      decay_constant=decay_constant,
                                      max_iterations=args.max_fit_iterations,
                                      fine_step=args.fine_step)
    tac_fitting.run_analysis()
    tac_fitting.save_analysis()

    if args.print:
        _print_results(tac_fitting.analysis_props['FitProperties'])


if __name__ == "__main__":
    main()
