r"""
This module contains the single-TAC entry point for fitting compartment models, and an analysis class that fits a
region-of-interest TAC read from file.

    - :func:`fit_tac`: fits one of the compartment models in :mod:`petkmap.kinetic_modeling.tcm_models` to a
      frame-averaged TAC with the bounded Levenberg-Marquardt solver of
      :mod:`petkmap.kinetic_modeling.lm_solver`.
    - :class:`FitResult`: the outcome of a single fit.
    - :class:`FitTCMToTAC`: reads an input function file and a ROI TAC file, runs the fit, and saves the fit
      properties to a JSON file and the fitted curve to a TSV file.

All times, rates and the decay constant must be in consistent units. No unit conversion is performed.

"""
import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Union

import numpy as np
import pandas as pd

from .frame_integration import ScanTiming
from .lm_solver import FitStatus, LMSettings, levenberg_marquardt
from .tcm_models import KineticModel, KineticModelEvaluator, ModelVariant, get_kinetic_model
from ..utils import image_io
from ..utils.errors import InvalidFrames, ParameterCountMismatch
from ..utils.time_activity_curve import FramedTimeActivityCurve, InputFunction

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    """
    Result of fitting a compartment model to one TAC.

    Attributes:
        params (np.ndarray): Final values of all model parameters.
        predicted (np.ndarray): Frame-averaged model TAC at ``params``.
        iterations (int): Number of LM iterations performed.
        status (FitStatus): Terminal state of the fit. Non-convergence is not an error; the best parameters found are
            still reported.
        cost (float): Final weighted least-squares cost.
        param_names (tuple[str, ...]): Names of the model parameters.
        free_mask (np.ndarray): Which parameters were fitted.
    """
    params: np.ndarray
    predicted: np.ndarray
    iterations: int
    status: FitStatus
    cost: float
    param_names: tuple
    free_mask: np.ndarray

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED

    def params_dict(self) -> dict[str, float]:
        return {name: float(val) for name, val in zip(self.param_names, self.params)}


def resolve_bounds(model: KineticModel,
                   initial: Union[np.ndarray, None],
                   lower: Union[np.ndarray, None],
                   upper: Union[np.ndarray, None]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    r"""
    Fills in missing initial values and bounds with the model defaults.

    Args:
        model (KineticModel): The compartment model.
        initial (np.ndarray, optional): Initial values, or None for the model defaults.
        lower (np.ndarray, optional): Lower bounds, or None for the model defaults.
        upper (np.ndarray, optional): Upper bounds, or None for the model defaults.

    Returns:
        tuple: ``(initial, lower, upper)`` arrays.

    Raises:
        ParameterCountMismatch: If a provided array does not have one entry per model parameter.
    """
    defaults = model.default_bounds_array()
    resolved = []
    for col, vals in enumerate((initial, lower, upper)):
        vals = defaults[:, col].copy() if vals is None else np.asarray(vals, dtype=float)
        if vals.shape != (model.num_params,):
            raise ParameterCountMismatch(f"Model '{model.name}' takes {model.num_params} parameters "
                                         f"{model.param_names}. Got an array of shape {vals.shape}.")
        resolved.append(vals)
    return tuple(resolved)


def fit_tac_with_evaluator(evaluator: KineticModelEvaluator,
                           observed: np.ndarray,
                           weights: Union[np.ndarray, None],
                           initial: np.ndarray,
                           lower: np.ndarray,
                           upper: np.ndarray,
                           free_mask: Union[np.ndarray, None] = None,
                           settings: Union[LMSettings, None] = None) -> FitResult:
    r"""
    Fits a TAC using an already constructed :class:`KineticModelEvaluator`.

    The evaluator is only read, so this function can be called concurrently with a shared evaluator.

    See Also:
        :func:`fit_tac`
    """
    observed = np.asarray(observed, dtype=float)
    if observed.shape != (evaluator.num_frames,):
        raise InvalidFrames(f"Expected {evaluator.num_frames} frame values to match the scan timing. "
                            f"Got an array of shape {observed.shape}.")
    weights = np.ones_like(observed) if weights is None else weights
    free_mask = evaluator.validated_mask(free_mask)
    evaluator.validated_params(initial)

    lm_result = levenberg_marquardt(model_func=evaluator.tac,
                                    model_and_jacobian_func=evaluator.tac_and_jacobian,
                                    observed=observed,
                                    weights=weights,
                                    initial=initial,
                                    lower=lower,
                                    upper=upper,
                                    free_mask=free_mask,
                                    settings=settings)
    return FitResult(params=lm_result.params,
                     predicted=lm_result.predicted,
                     iterations=lm_result.iterations,
                     status=lm_result.status,
                     cost=lm_result.cost,
                     param_names=evaluator.model.param_names,
                     free_mask=free_mask)


def fit_tac(model: Union[str, ModelVariant, KineticModel],
            observed: np.ndarray,
            weights: Union[np.ndarray, None],
            input_function: InputFunction,
            timing: ScanTiming,
            decay_constant: float = 0.0,
            initial: Union[np.ndarray, None] = None,
            lower: Union[np.ndarray, None] = None,
            upper: Union[np.ndarray, None] = None,
            free_mask: Union[np.ndarray, None] = None,
            max_iterations: Union[int, None] = None,
            settings: Union[LMSettings, None] = None) -> FitResult:
    r"""
    Fits a compartment model to a single frame-averaged TAC.

    Args:
        model (str, ModelVariant or KineticModel): The compartment model, e.g. ``'1t3p'``.
        observed (np.ndarray): Frame-averaged TAC values, one per frame of ``timing``.
        weights (np.ndarray, optional): Non-negative per-frame weights. A weight of 0 excludes a frame. Defaults to
            ones.
        input_function (InputFunction): Blood input (or reference-region TAC for SRTM).
        timing (ScanTiming): Scan frame timing.
        decay_constant (float): Radioactive decay constant, in the inverse time units of the scan. Defaults to 0.
        initial (np.ndarray, optional): Initial parameter values. Defaults to the model defaults.
        lower (np.ndarray, optional): Lower bounds. Defaults to the model defaults.
        upper (np.ndarray, optional): Upper bounds. Defaults to the model defaults.
        free_mask (np.ndarray, optional): Which parameters to fit. Fixed parameters keep their initial value.
            Defaults to all free.
        max_iterations (int, optional): Iteration cap. Overrides ``settings.max_iterations`` when given.
        settings (LMSettings, optional): Solver configuration.

    Returns:
        FitResult: Final parameters, prediction, iteration count and status.

    Raises:
        UnknownModel: If the model is not supported.
        ParameterCountMismatch: If a parameter array does not match the model.
        InvalidBounds: If a lower bound is above its upper bound.
        InvalidFrames: If ``observed`` does not match the scan timing.
        InsufficientFrames: If there are more free parameters than frames with non-zero weight.

    Example:

        .. code-block:: python

            import numpy as np
            from petkmap.kinetic_modeling.tcm_models import evaluate
            from petkmap.kinetic_modeling.tac_fitting import fit_tac
            from petkmap.kinetic_modeling.frame_integration import ScanTiming
            from petkmap.utils.time_activity_curve import InputFunction

            times = np.array([0.0, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0])
            plasma = np.array([0.0, 40.0, 25.0, 12.0, 6.0, 4.0, 2.5, 1.5])
            input_function = InputFunction(times, plasma)
            timing = ScanTiming.from_durations([0.5] * 6 + [2.0] * 6 + [5.0] * 9)

            tac, _ = evaluate('1t3p', np.array([0.5, 0.3, 0.05]), input_function, timing, 0.00063)
            result = fit_tac('1t3p', tac, None, input_function, timing, 0.00063,
                             initial=np.array([0.3, 0.2, 0.1]),
                             lower=np.array([0.0, 0.0, 0.0]),
                             upper=np.array([5.0, 2.0, 1.0]))
            print(result.status, result.params_dict())

    """
    kinetic_model = get_kinetic_model(model)
    initial, lower, upper = resolve_bounds(kinetic_model, initial, lower, upper)
    settings = LMSettings() if settings is None else settings
    if max_iterations is not None:
        settings = dataclasses.replace(settings, max_iterations=int(max_iterations))
    evaluator = KineticModelEvaluator(model=kinetic_model, input_function=input_function, timing=timing,
                                      decay_constant=decay_constant)
    return fit_tac_with_evaluator(evaluator=evaluator, observed=observed, weights=weights, initial=initial,
                                  lower=lower, upper=upper, free_mask=free_mask, settings=settings)


class FitTCMToTAC(object):
    r"""
    Fits a compartment model to a ROI TAC read from file, and saves the results.

    The input function file has the columns ``time plasma [whole_blood]``. The ROI TAC file has the columns
    ``frame_start frame_end value [weight]``. For SRTM the input function file holds the reference-region TAC.

    Saving writes two files to ``output_directory``:
        * ``{prefix}_analysis-{model}_props.json`` with the fit values, bounds, status and iteration count.
        * ``{prefix}_analysis-{model}_fit.tsv`` with the observed and fitted frame values.

    Example:

        .. code-block:: python

            from petkmap.kinetic_modeling.tac_fitting import FitTCMToTAC

            analysis = FitTCMToTAC(input_tac_path='input_tac.txt', roi_tac_path='roi_tac.txt',
                                   output_directory='./', output_filename_prefix='sub-001',
                                   compartment_model='2t5p', decay_constant=0.00631)
            analysis.run_analysis()
            analysis.save_analysis()

    """
    def __init__(self,
                 input_tac_path: str,
                 roi_tac_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 compartment_model: str,
                 parameter_bounds: Union[None, np.ndarray] = None,
                 fixed_parameters: Union[None, list[str]] = None,
                 decay_constant: float = 0.0,
                 max_iterations: int = 100,
                 fine_step: Union[float, None] = None):
        self.input_tac_path: str = os.path.abspath(input_tac_path)
        self.roi_tac_path: str = os.path.abspath(roi_tac_path)
        self.output_directory: str = os.path.abspath(output_directory)
        self.output_filename_prefix: str = output_filename_prefix
        self.model: KineticModel = get_kinetic_model(compartment_model)
        self.bounds: np.ndarray = self.validated_bounds(self.model, parameter_bounds)
        self.free_mask: np.ndarray = self.free_mask_from_fixed(self.model, fixed_parameters)
        self.decay_constant: float = decay_constant
        self.max_iterations: int = max_iterations
        self.fine_step: Union[float, None] = fine_step
        self.analysis_props: dict = self.init_analysis_props()
        self.tac: Union[FramedTimeActivityCurve, None] = None
        self.fit_result: Union[FitResult, None] = None
        self._has_analysis_been_run: bool = False

    def init_analysis_props(self) -> dict:
        props = {
            'FilePathInputTAC': self.input_tac_path,
            'FilePathTTAC': self.roi_tac_path,
            'TissueCompartmentModel': self.model.name,
            'DecayConstant': self.decay_constant,
            'FitProperties': {
                'FitValues': {},
                'Bounds': {},
                'FixedParameters': [name for name, free in zip(self.model.param_names, self.free_mask) if not free],
                'MaxIterations': self.max_iterations,
                'Iterations': None,
                'Status': None,
                'Cost': None,
                }
            }
        return props

    @staticmethod
    def validated_bounds(model: KineticModel, parameter_bounds: Union[None, np.ndarray]) -> np.ndarray:
        r"""
        Checks user bounds with the form ``(initial, lower, upper)`` per parameter, or returns the model defaults.

        Raises:
            ParameterCountMismatch: If the bounds do not have shape ``(num_params, 3)``.
        """
        if parameter_bounds is None:
            return model.default_bounds_array()
        bounds = np.asarray(parameter_bounds, dtype=float)
        if bounds.shape != (model.num_params, 3):
            raise ParameterCountMismatch(f"Fit bounds for model '{model.name}' must have shape "
                                         f"({model.num_params}, 3): `(initial, lower, upper)` for each of "
                                         f"{model.param_names}. Got {bounds.shape}.")
        return bounds

    @staticmethod
    def free_mask_from_fixed(model: KineticModel, fixed_parameters: Union[None, list[str]]) -> np.ndarray:
        r"""
        Builds the free-parameter mask from the names of the parameters to hold fixed.

        Raises:
            ValueError: If a name is not a parameter of the model.
        """
        free_mask = np.ones(model.num_params, dtype=bool)
        for name in fixed_parameters or []:
            if name not in model.param_names:
                raise ValueError(f"'{name}' is not a parameter of model '{model.name}' {model.param_names}.")
            free_mask[model.param_names.index(name)] = False
        return free_mask

    def run_analysis(self):
        self.calculate_fit()
        self.calculate_fit_properties()
        self._has_analysis_been_run = True

    def calculate_fit(self):
        input_function = InputFunction.from_file(self.input_tac_path)
        self.tac = FramedTimeActivityCurve.from_file(self.roi_tac_path)
        timing = ScanTiming(frame_starts=self.tac.frame_starts, frame_ends=self.tac.frame_ends, step=self.fine_step)
        logger.info(f"Fitting model '{self.model.name}' to {self.roi_tac_path} "
                    f"({timing.num_frames} frames, fine step {timing.step:.4g}).")
        self.fit_result = fit_tac(model=self.model,
                                  observed=self.tac.tac_vals,
                                  weights=self.tac.weights,
                                  input_function=input_function,
                                  timing=timing,
                                  decay_constant=self.decay_constant,
                                  initial=self.bounds[:, 0],
                                  lower=self.bounds[:, 1],
                                  upper=self.bounds[:, 2],
                                  free_mask=self.free_mask,
                                  max_iterations=self.max_iterations)
        if not self.fit_result.converged:
            logger.warning(f"Fit of {self.roi_tac_path} ended with status '{self.fit_result.status.value}'.")

    def calculate_fit_properties(self):
        fit_props = self.analysis_props['FitProperties']
        fit_props['FitValues'] = {name: round(val, 5) for name, val in self.fit_result.params_dict().items()}
        fit_props['Bounds'] = self._generate_pretty_bounds(self.bounds.round(5))
        fit_props['Iterations'] = self.fit_result.iterations
        fit_props['Status'] = self.fit_result.status.value
        fit_props['Cost'] = float(self.fit_result.cost)

    def save_analysis(self):
        if not self._has_analysis_been_run:
            raise RuntimeError("'run_analysis' method must be run before running this method.")

        file_name_prefix = os.path.join(self.output_directory,
                                        f"{self.output_filename_prefix}_analysis"
                                        f"-{self.analysis_props['TissueCompartmentModel']}")
        analysis_props_file = f"{file_name_prefix}_props.json"
        image_io.write_dict_to_json(meta_data_dict=self.analysis_props, out_path=analysis_props_file)

        fit_table = pd.DataFrame(data={'frame_start': self.tac.frame_starts,
                                       'frame_end': self.tac.frame_ends,
                                       'observed': self.tac.tac_vals,
                                       'fitted': self.fit_result.predicted,
                                       'weight': self.tac.weights})
        fit_table.to_csv(f"{file_name_prefix}_fit.tsv", sep='\t', index=False)
        logger.info(f"Saved analysis to {analysis_props_file}")

    def _generate_pretty_bounds(self, bounds: np.ndarray) -> dict:
        param_bounds = {f'{param}': {'initial': float(val[0]),
                                     'lo': float(val[1]),
                                     'hi': float(val[2])} for param, val in
                        zip(self.model.param_names, bounds)}
        return param_bounds
