"""
Command-line interface (CLI) for generating PET parametric images by fitting a compartment model to every voxel of a
4D-PET image.

This module provides a CLI to work with the parametric_images module. It uses argparse to handle command-line
arguments.

The user must provide:
    * Input function file path
    * Path to the 4D PET image file, with a BIDS JSON sidecar holding the frame timing
    * The compartment model. Supported models are '1t3p', '2t5p', 'srtm' and 'liver'.
    * Output directory where the parametric images will be saved

Optionally, the user can supply a filename prefix, a mask image, parameter bounds, fixed parameters, the decay
constant (or ask for it to be read from the image metadata), and the number of worker threads.

This script uses the :class:`petkmap.kinetic_modeling.parametric_images.ParametricImageAnalysis` class to calculate
and save the images.

Example:
    .. code-block:: bash

         petkmap-parametric-image --input-tac-path /path/to/input.tac --pet4D-img-path /path/to/pet4D.nii.gz \
         --model 1t3p --mask-img-path /path/to/mask.nii.gz --decay-from-metadata \
         --output-directory ./images --output-filename-prefix sub-001 --num-workers 8

See Also:
    :mod:`petkmap.kinetic_modeling.parametric_images` - module for voxel-wise fits and parametric images.

"""
import argparse
import logging
from typing import Union

from ..kinetic_modeling import parametric_images as pet_pim
from ..kinetic_modeling.tcm_models import ModelVariant
from .cli_tac_fitting import _generate_bounds

logger = logging.getLogger(__name__)


def _generate_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="petkmap-parametric-image",
                                     description="Generate parametric images by fitting a compartment model to "
                                                 "every voxel of a 4D-PET image.",
                                     epilog="Example usage: petkmap-parametric-image "
                                            "--input-tac-path /path/to/input.tac "
                                            "--pet4D-img-path /path/to/image4D.nii.gz "
                                            "--output-directory /path/to/output --output-filename-prefix sub-001 "
                                            "--model 1t3p --decay-from-metadata")

    grp_io = parser.add_argument_group('I/O Paths')
    grp_io.add_argument("-i", "--input-tac-path", required=True,
                        help="Path to the input function file (reference-region TAC for 'srtm').")
    grp_io.add_argument("-p", "--pet4D-img-path", required=True, help="Path to the 4D PET image file.")
    grp_io.add_argument("-k", "--mask-img-path", required=False, default=None,
                        help="Path to a 3D mask image. Only voxels with positive mask values are fit.")
    grp_io.add_argument("-o", "--output-directory", required=True,
                        help="Directory where the output parametric images will be saved.")
    grp_io.add_argument("-f", "--output-filename-prefix", default="", help="Optional prefix for the output filenames.")

    grp_params = parser.add_argument_group('Model Parameters')
    grp_params.add_argument("-m", "--model", required=True, choices=[variant.value for variant in ModelVariant],
                            help="Compartment model to be fit.")
    grp_params.add_argument("-g", "--initial-guesses", required=False, nargs='+', type=float,
                            help="Initial guesses for each fitting parameter.")
    grp_params.add_argument("-l", "--lower-bounds", required=False, nargs='+', type=float,
                            help="Lower bounds for each fitting parameter.")
    grp_params.add_argument("-u", "--upper-bounds", required=False, nargs='+', type=float,
                            help="Upper bounds for each fitting parameter.")
    grp_params.add_argument("-x", "--fixed-parameters", required=False, nargs='+', default=None,
                            help="Names of parameters held at their initial guess.")
    grp_decay = grp_params.add_mutually_exclusive_group()
    grp_decay.add_argument("-d", "--decay-constant", required=False, type=float, default=0.0,
                           help="Decay constant in the inverse time units of the input function.")
    grp_decay.add_argument("--decay-from-metadata", action="store_true",
                           help="Compute the decay constant from the radionuclide in the image metadata.")
    grp_params.add_argument("--time-scale", required=False, type=float, default=1.0 / 60.0,
                            help="Factor converting the BIDS frame times (s) to the input function time units.")
    grp_params.add_argument("--image-scale", required=False, type=float, default=1.0,
                            help="Factor applied to the image values before fitting.")
    grp_params.add_argument("--fine-step", required=False, type=float, default=None,
                            help="Step of the fine time grid used to evaluate the model.")
    grp_params.add_argument("--max-fit-iterations", required=False, type=int, default=100,
                            help="Maximum number of LM iterations per voxel.")

    grp_run = parser.add_argument_group('Additional Options')
    grp_run.add_argument("-n", "--num-workers", required=False, type=int, default=None,
                         help="Number of worker threads. Defaults to all CPUs.")
    grp_run.add_argument("-v", "--verbose", action="store_true", help="Display more information while running.")
    return parser


def main(argv: Union[list[str], None] = None):
    args = _generate_parser().parse_args(argv)
    logging.basicConfig(format='%(levelname)s:%(name)s: %(message)s')
    logging.getLogger('petkmap').setLevel(level=logging.INFO if args.verbose else logging.WARNING)
    logger.info(f"Fitting with {pet_pim.get_num_workers(args.num_workers)} worker thread(s).")

    param_img = pet_pim.ParametricImageAnalysis(
        input_tac_path=args.input_tac_path,
        pet4d_img_path=args.pet4D_img_path,
        output_directory=args.output_directory,
        output_filename_prefix=args.output_filename_prefix,
        compartment_model=args.model,
        mask_img_path=args.mask_img_path,
        parameter_bounds=_generate_bounds(initial=args.initial_guesses, lower=args.lower_bounds,
                                          upper=args.upper_bounds),
        fixed_parameters=args.fixed_parameters,
        decay_constant=None if args.decay_from_metadata else args.decay_constant,
        time_scale=args.time_scale,
        image_scale=args.image_scale,
        fine_step=args.fine_step,
        max_iterations=args.max_fit_iterations,
        num_workers=args.num_workers)

    param_img.run_analysis()
    param_img.save_analysis()


if __name__ == "__main__":
    main()
