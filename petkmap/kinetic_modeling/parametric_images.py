"""
This module fits compartment models to many TACs at once, voxel by voxel, and generates parametric images from
4D-PET scans.

    - :func:`fit_many_tacs`: fits every row of a ``(num_voxels, num_frames)`` array on a pool of worker threads, and
      returns the results in input order.
    - :func:`get_num_workers`: the number of threads :func:`fit_many_tacs` will use.
    - :class:`ParametricImageAnalysis`: loads a 4D-PET NIfTI image and an input function file, fits every voxel in
      a mask, and saves one parametric image per model parameter along with status and iteration maps.

Each voxel fit only reads the shared input function, scan timing and decay constant, so the fits run concurrently
without locks. The convolution kernel releases the GIL while it runs.
"""
import dataclasses
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Union

import nibabel
import numpy as np

from .frame_integration import ScanTiming
from .lm_solver import FitStatus, LMSettings
from .tac_fitting import FitResult, FitTCMToTAC, fit_tac_with_evaluator, resolve_bounds
from .tcm_models import KineticModel, KineticModelEvaluator, ModelVariant, get_kinetic_model
from ..math_lib import decay_constant_from_half_life
from ..utils import image_io
from ..utils.errors import InvalidBounds, InvalidFrames, ParameterCountMismatch
from ..utils.time_activity_curve import InputFunction

logger = logging.getLogger(__name__)


def get_num_workers(requested: Union[int, None] = None) -> int:
    r"""
    Number of worker threads used for voxel fits.

    Args:
        requested (int, optional): Requested number of threads. Defaults to all available CPUs.

    Returns:
        int: ``min(requested, os.cpu_count())``, or ``os.cpu_count()`` if nothing was requested.

    Raises:
        ValueError: If ``requested`` is less than 1.
    """
    available = os.cpu_count() or 1
    if requested is None:
        return available
    if requested < 1:
        raise ValueError(f"The number of workers must be at least 1. Got {requested}.")
    return min(int(requested), available)


def _per_voxel(vals: np.ndarray, num_voxels: int, length: int, name: str, error: type) -> np.ndarray:
    """Broadcasts a shared 1D array to one row per voxel, or checks a 2D per-voxel array."""
    vals = np.asarray(vals, dtype=float)
    if vals.shape == (length,):
        vals = np.broadcast_to(vals, (num_voxels, length))
    if vals.shape != (num_voxels, length):
        raise error(f"`{name}` must have shape ({length},) or ({num_voxels}, {length}). Got {vals.shape}.")
    return vals


def fit_voxel_tac(evaluator: KineticModelEvaluator,
                  observed: np.ndarray,
                  weights: np.ndarray,
                  initial: np.ndarray,
                  lower: np.ndarray,
                  upper: np.ndarray,
                  free_mask: np.ndarray,
                  settings: LMSettings) -> FitResult:
    r"""
    Fits one voxel TAC, reporting a voxel with fewer usable frames than free parameters as
    :attr:`FitStatus.DIVERGED` instead of raising.

    A usable frame has a finite value and a positive weight. A skipped voxel keeps its initial parameters, with 0
    iterations and a NaN prediction and cost.

    See Also:
        :func:`fit_tac_with_evaluator`
    """
    usable = np.count_nonzero(np.isfinite(observed) & (weights > 0.0))
    if usable < np.count_nonzero(free_mask):
        return FitResult(params=np.array(initial, dtype=float),
                         predicted=np.full(evaluator.num_frames, np.nan),
                         iterations=0,
                         status=FitStatus.DIVERGED,
                         cost=np.nan,
                         param_names=evaluator.model.param_names,
                         free_mask=free_mask)
    return fit_tac_with_evaluator(evaluator, observed, weights, initial, lower=lower, upper=upper,
                                  free_mask=free_mask, settings=settings)


def fit_many_tacs(model: Union[str, ModelVariant, KineticModel],
                  tacs: np.ndarray,
                  weights: Union[np.ndarray, None],
                  input_function: InputFunction,
                  timing: ScanTiming,
                  decay_constant: float = 0.0,
                  initial: Union[np.ndarray, None] = None,
                  lower: Union[np.ndarray, None] = None,
                  upper: Union[np.ndarray, None] = None,
                  free_mask: Union[np.ndarray, None] = None,
                  max_iterations: Union[int, None] = None,
                  num_workers: Union[int, None] = None,
                  settings: Union[LMSettings, None] = None) -> list[FitResult]:
    r"""
    Fits a compartment model independently to every TAC of a batch.

    All fits share the model, input function, scan timing, decay constant, bounds and free mask. A single
    :class:`KineticModelEvaluator` is built once and shared read-only by every worker. Results are returned in the
    order of ``tacs``, whatever the thread scheduling.

    Contract errors (shapes, inverted bounds) are raised before any fit runs. A voxel that fails, numerically or
    because it has fewer usable frames than free parameters, only affects its own :class:`FitResult` status.

    Args:
        model (str, ModelVariant or KineticModel): The compartment model.
        tacs (np.ndarray): Frame-averaged TACs with shape ``(num_voxels, num_frames)``.
        weights (np.ndarray, optional): Per-frame weights, shared ``(num_frames,)`` or per voxel
            ``(num_voxels, num_frames)``. Defaults to ones.
        input_function (InputFunction): Blood input (or reference-region TAC for SRTM).
        timing (ScanTiming): Scan frame timing.
        decay_constant (float): Radioactive decay constant. Defaults to 0.
        initial (np.ndarray, optional): Initial values, shared ``(num_params,)`` or per voxel
            ``(num_voxels, num_params)``. Defaults to the model defaults.
        lower (np.ndarray, optional): Lower bounds. Defaults to the model defaults.
        upper (np.ndarray, optional): Upper bounds. Defaults to the model defaults.
        free_mask (np.ndarray, optional): Which parameters to fit. Defaults to all free.
        max_iterations (int, optional): Iteration cap per fit. Overrides ``settings.max_iterations``.
        num_workers (int, optional): Number of threads, capped at the CPU count. ``1`` fits serially. Defaults to all
            CPUs.
        settings (LMSettings, optional): Solver configuration.

    Returns:
        list[FitResult]: One result per TAC, in input order.

    Raises:
        UnknownModel: If the model is not supported.
        ParameterCountMismatch: If a parameter array does not match the model.
        InvalidBounds: If a lower bound is above its upper bound.
        InvalidFrames: If the TACs or weights do not match the scan timing.

    """
    kinetic_model = get_kinetic_model(model)
    defaults = resolve_bounds(kinetic_model, None, lower, upper)
    lower, upper = defaults[1], defaults[2]
    if np.any(lower > upper):
        raise InvalidBounds(f"Lower bounds {lower} exceed upper bounds {upper}.")

    tacs = np.asarray(tacs, dtype=float)
    if tacs.ndim != 2 or tacs.shape[1] != timing.num_frames:
        raise InvalidFrames(f"`tacs` must have shape (num_voxels, {timing.num_frames}). Got {tacs.shape}.")
    num_voxels, num_frames = tacs.shape
    weights = _per_voxel(np.ones(num_frames) if weights is None else weights, num_voxels, num_frames,
                         'weights', InvalidFrames)
    initial = kinetic_model.default_bounds_array()[:, 0] if initial is None else initial
    initial = _per_voxel(initial, num_voxels, kinetic_model.num_params, 'initial', ParameterCountMismatch)

    evaluator = KineticModelEvaluator(model=kinetic_model, input_function=input_function, timing=timing,
                                      decay_constant=decay_constant)
    free_mask = evaluator.validated_mask(free_mask)
    num_free = int(np.count_nonzero(free_mask))
    usable = np.count_nonzero(np.isfinite(tacs) & (weights > 0.0), axis=1)
    num_skipped = int(np.count_nonzero(usable < num_free))
    if num_skipped:
        logger.warning(f"{num_skipped} TAC(s) have fewer usable frames than the {num_free} free parameter(s) and "
                       f"will be reported as diverged.")

    settings = LMSettings() if settings is None else settings
    if max_iterations is not None:
        settings = dataclasses.replace(settings, max_iterations=int(max_iterations))

    fit_one = partial(fit_voxel_tac, evaluator, lower=lower, upper=upper, free_mask=free_mask, settings=settings)
    workers = get_num_workers(num_workers)
    logger.info(f"Fitting model '{kinetic_model.name}' to {num_voxels} TAC(s) with {workers} worker(s).")
    if workers == 1 or num_voxels < 2:
        return [fit_one(tac, weight, init) for tac, weight, init in zip(tacs, weights, initial)]
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(fit_one, tacs, weights, initial))


class ParametricImageAnalysis(object):
    r"""
    Generates parametric images by fitting a compartment model to every voxel of a 4D-PET image.

    The frame timing is read from the BIDS JSON sidecar of the image (``FrameTimesStart`` and ``FrameDuration`` in
    seconds), and scaled by ``time_scale`` to match the units of the input function file.

    Saving writes, to ``output_directory``:
        * ``{prefix}_desc-{model}_{param}.nii.gz`` for every model parameter.
        * ``{prefix}_desc-{model}_status.nii.gz`` with 0 for converged, 1 for the iteration cap, 2 for diverged, and
          -1 outside of the mask.
        * ``{prefix}_desc-{model}_iterations.nii.gz`` with the iteration count of each fit.
        * ``{prefix}_desc-{model}_props.json`` with the analysis properties.

    Attributes:
        input_tac_path (str): Absolute path to the input function file.
        pet4d_img_path (str): Absolute path to the 4D PET image.
        mask_img_path (str or None): Absolute path to a 3D mask image. Voxels with positive values are fitted.
        output_directory (str): Absolute path to the output directory.
        output_filename_prefix (str): Prefix of the output file names.
        model (KineticModel): The compartment model.
        analysis_props (dict): Properties of the analysis, saved as JSON.
        param_images (np.ndarray): Fitted parameters with shape ``(X, Y, Z, num_params)``, NaN outside the mask.
        status_image (np.ndarray): Fit status codes.
        iterations_image (np.ndarray): Fit iteration counts.

    Example:

        .. code-block:: python

            from petkmap.kinetic_modeling.parametric_images import ParametricImageAnalysis

            analysis = ParametricImageAnalysis(input_tac_path='sub-001_blood.txt',
                                               pet4d_img_path='sub-001_pet.nii.gz',
                                               output_directory='./',
                                               output_filename_prefix='sub-001',
                                               compartment_model='1t3p',
                                               mask_img_path='sub-001_brainmask.nii.gz',
                                               decay_constant=None)
            analysis.run_analysis()
            analysis.save_analysis()

    """
    def __init__(self,
                 input_tac_path: str,
                 pet4d_img_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 compartment_model: str,
                 mask_img_path: Union[str, None] = None,
                 parameter_bounds: Union[np.ndarray, None] = None,
                 fixed_parameters: Union[list[str], None] = None,
                 decay_constant: Union[float, None] = 0.0,
                 time_scale: float = 1.0 / 60.0,
                 image_scale: float = 1.0,
                 fine_step: Union[float, None] = None,
                 max_iterations: int = 100,
                 num_workers: Union[int, None] = None):
        r"""
        Args:
            input_tac_path (str): Input function file with the columns ``time plasma [whole_blood]``.
            pet4d_img_path (str): 4D PET image, with a BIDS JSON sidecar of the same name.
            output_directory (str): Directory for the output files.
            output_filename_prefix (str): Prefix for the output file names.
            compartment_model (str): One of ``'1t3p'``, ``'2t5p'``, ``'srtm'`` or ``'liver'``.
            mask_img_path (str, optional): 3D mask image. If not provided, every voxel with a finite value in some
                frame is fitted. Voxels with no finite value are never fitted. Non-finite frames are ignored, and a
                voxel with fewer finite frames than free parameters gets the diverged status.
            parameter_bounds (np.ndarray, optional): ``(initial, lower, upper)`` per parameter.
            fixed_parameters (list[str], optional): Names of parameters held at their initial value.
            decay_constant (float, optional): Decay constant in the inverse time units of the input function. If
                None, it is computed from the radionuclide half-life in the image metadata. Defaults to 0.
            time_scale (float): Factor converting the BIDS frame times (seconds) to the input function time units.
                Defaults to ``1/60`` for minutes.
            image_scale (float): Factor applied to the image values before fitting. Defaults to 1.
            fine_step (float, optional): Fine-grid step. Defaults to the :class:`ScanTiming` default.
            max_iterations (int): Iteration cap per voxel. Defaults to 100.
            num_workers (int, optional): Number of worker threads. Defaults to all CPUs.
        """
        self.input_tac_path: str = os.path.abspath(input_tac_path)
        self.pet4d_img_path: str = os.path.abspath(pet4d_img_path)
        self.mask_img_path: Union[str, None] = None if mask_img_path is None else os.path.abspath(mask_img_path)
        self.output_directory: str = os.path.abspath(output_directory)
        self.output_filename_prefix: str = output_filename_prefix
        self.model: KineticModel = get_kinetic_model(compartment_model)
        self.bounds: np.ndarray = FitTCMToTAC.validated_bounds(self.model, parameter_bounds)
        self.free_mask: np.ndarray = FitTCMToTAC.free_mask_from_fixed(self.model, fixed_parameters)
        self.decay_constant: Union[float, None] = decay_constant
        self.time_scale: float = time_scale
        self.image_scale: float = image_scale
        self.fine_step: Union[float, None] = fine_step
        self.max_iterations: int = max_iterations
        self.num_workers: Union[int, None] = num_workers
        self.analysis_props: dict = self.init_analysis_props()
        self.param_images: Union[np.ndarray, None] = None
        self.status_image: Union[np.ndarray, None] = None
        self.iterations_image: Union[np.ndarray, None] = None
        self._affine: Union[np.ndarray, None] = None

    def init_analysis_props(self) -> dict:
        props = {
            'FilePathInputTAC': self.input_tac_path,
            'FilePathPET': self.pet4d_img_path,
            'FilePathMask': self.mask_img_path,
            'TissueCompartmentModel': self.model.name,
            'ParameterNames': list(self.model.param_names),
            'FixedParameters': [name for name, free in zip(self.model.param_names, self.free_mask) if not free],
            'Bounds': {name: {'initial': float(val[0]), 'lo': float(val[1]), 'hi': float(val[2])}
                       for name, val in zip(self.model.param_names, self.bounds)},
            'DecayConstant': self.decay_constant,
            'ImageScale': self.image_scale,
            'MaxIterations': self.max_iterations,
            'ImageDimensions': None,
            'NumberOfVoxelsFit': None,
            'StatusCounts': None,
            'ParameterMeans': None,
            }
        return props

    def run_analysis(self):
        self.calculate_parametric_images()
        self.calculate_analysis_properties()

    def save_analysis(self):
        if self.param_images is None:
            raise RuntimeError("'run_analysis' method must be called before 'save_analysis'.")
        self.save_parametric_images()
        self.save_analysis_properties()

    def __call__(self):
        self.run_analysis()
        self.save_analysis()

    def resolved_decay_constant(self) -> float:
        r"""The decay constant to use, read from the image half-life if it was not provided."""
        if self.decay_constant is not None:
            return float(self.decay_constant)
        half_life = image_io.get_half_life_from_nifti(self.pet4d_img_path)
        return decay_constant_from_half_life(half_life * self.time_scale)

    def load_mask(self, spatial_shape: tuple) -> Union[np.ndarray, None]:
        if self.mask_img_path is None:
            return None
        mask = np.asarray(nibabel.load(self.mask_img_path).get_fdata()) > 0
        if mask.shape != spatial_shape:
            raise ValueError(f"Mask shape {mask.shape} does not match the PET image {spatial_shape}.")
        return mask

    def calculate_parametric_images(self):
        input_function = InputFunction.from_file(self.input_tac_path)
        pet_img = image_io.safe_load_4dpet_nifti(filename=self.pet4d_img_path)
        timing = ScanTiming.from_nifti(self.pet4d_img_path, time_scale=self.time_scale, step=self.fine_step)
        decay_constant = self.resolved_decay_constant()
        self.analysis_props['DecayConstant'] = decay_constant
        self._affine = pet_img.affine

        pet_data = pet_img.get_fdata() * self.image_scale
        spatial_shape = pet_data.shape[:3]
        if pet_data.shape[3] != timing.num_frames:
            raise InvalidFrames(f"The image has {pet_data.shape[3]} frames but its metadata describes "
                                f"{timing.num_frames}.")
        has_data = np.any(np.isfinite(pet_data), axis=-1)
        mask = self.load_mask(spatial_shape)
        mask = has_data if mask is None else mask & has_data
        tacs = pet_data[mask]

        results = fit_many_tacs(model=self.model,
                                tacs=tacs,
                                weights=None,
                                input_function=input_function,
                                timing=timing,
                                decay_constant=decay_constant,
                                initial=self.bounds[:, 0],
                                lower=self.bounds[:, 1],
                                upper=self.bounds[:, 2],
                                free_mask=self.free_mask,
                                max_iterations=self.max_iterations,
                                num_workers=self.num_workers)

        self.param_images = np.full(spatial_shape + (self.model.num_params,), np.nan, dtype=np.float32)
        self.status_image = np.full(spatial_shape, -1, dtype=np.int16)
        self.iterations_image = np.zeros(spatial_shape, dtype=np.int32)
        if results:
            self.param_images[mask] = np.stack([result.params for result in results])
            self.status_image[mask] = [result.status.code for result in results]
            self.iterations_image[mask] = [result.iterations for result in results]

    def calculate_analysis_properties(self):
        fitted = self.status_image >= 0
        self.analysis_props['ImageDimensions'] = list(self.status_image.shape)
        self.analysis_props['NumberOfVoxelsFit'] = int(np.count_nonzero(fitted))
        self.analysis_props['StatusCounts'] = {status.value: int(np.count_nonzero(self.status_image == status.code))
                                               for status in FitStatus}
        if np.any(fitted):
            means = np.mean(self.param_images[fitted], axis=0)
            self.analysis_props['ParameterMeans'] = {name: float(val)
                                                     for name, val in zip(self.model.param_names, means)}

    def _file_name_prefix(self) -> str:
        return os.path.join(self.output_directory, f"{self.output_filename_prefix}_desc-{self.model.name}")

    def save_parametric_images(self):
        file_name_prefix = self._file_name_prefix()
        maps = {name: self.param_images[..., param_id] for param_id, name in enumerate(self.model.param_names)}
        maps['status'] = self.status_image
        maps['iterations'] = self.iterations_image
        for label, image_array in maps.items():
            image_io.save_parametric_map(image_array=image_array, affine=self._affine,
                                         out_file=f"{file_name_prefix}_{label}.nii.gz")

    def save_analysis_properties(self):
        image_io.write_dict_to_json(meta_data_dict=self.analysis_props,
                                    out_path=f"{self._file_name_prefix()}_props.json")
