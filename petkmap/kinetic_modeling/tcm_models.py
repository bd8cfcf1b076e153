r"""
This module contains the compartment models used to fit PET Time-Activity Curves (TACs), along with their analytic
parameter Jacobians.

Four model variants are supported, see :class:`ModelVariant`:

    * ``'1t3p'``: one-tissue compartment model with blood volume (:math:`K_1, k_2, V_B`).
    * ``'2t5p'``: reversible serial two-tissue compartment model with blood volume
      (:math:`K_1, k_2, k_3, k_4, V_B`).
    * ``'srtm'``: simplified reference tissue model with a vascular term (:math:`R_1, k_2, \mathrm{BP}_{ND}, V_B`).
    * ``'liver'``: dual-input (hepatic artery and portal vein) two-tissue model
      (:math:`K_1, k_2, k_3, k_4, K_a, f_a, V_B`).

Every model is written as a combination of exponential convolutions of its input (see
:mod:`petkmap.kinetic_modeling.exp_convolution`) evaluated on the fine time grid of a
:class:`~petkmap.kinetic_modeling.frame_integration.ScanTiming`, and then averaged over the scan frames. The radioactive
decay constant :math:`\lambda` is added to the rate of every exponential kernel. Jacobian columns are analytic; the
derivative of a convolution with respect to its rate is the negative of the next-order kernel convolution.

Each variant is a :class:`KineticModel` record holding its own TAC and Jacobian functions. The records are looked up
with :func:`get_kinetic_model`.

Two-tissue closed form:

.. math::

    C_T(t) = K_1 \left[ a_1 \, C_p \otimes e^{-(\alpha_1 + \lambda)t} + a_2 \, C_p \otimes e^{-(\alpha_2 + \lambda)t}
    \right]

with :math:`s=k_2+k_3+k_4`, :math:`u=k_3+k_4`, :math:`\Delta=\sqrt{s^2-4k_2k_4}`,
:math:`\alpha_{1,2}=(s\mp\Delta)/2`, :math:`a_1=(u-\alpha_1)/\Delta` and :math:`a_2=(\alpha_2-u)/\Delta`. When the
two eigenvalues coincide (:math:`\Delta \to 0`, which needs :math:`k_3=0` and :math:`k_2=k_4`) the closed form is
0/0, so we expand about :math:`\alpha=s/2` instead. The expansion is even in :math:`\Delta`; with
:math:`C_n = C_p \otimes t^n e^{-(\alpha+\lambda)t}`,

.. math::

    C_T(t) = K_1 \left[ C_0 + (u - \alpha) C_1 + \Delta^2 \left(\frac{C_2}{8} + \frac{(u-\alpha) C_3}{24}\right)
    \right] + O(\Delta^4)

The :math:`\Delta^2` term vanishes at the repeated eigenvalue but its parameter derivatives do not, so it is kept for
the Jacobian.

"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

import numpy as np

from .exp_convolution import exp_convolve_on_grid, interpolate_input_on_grid
from .frame_integration import ScanTiming
from ..utils.errors import ParameterCountMismatch, UnknownModel
from ..utils.time_activity_curve import InputFunction

_DEGENERATE_TOL = 1.0e-5


class ModelVariant(Enum):
    """Supported compartment model variants."""
    ONE_TISSUE_3P = '1t3p'
    TWO_TISSUE_5P = '2t5p'
    SRTM = 'srtm'
    LIVER = 'liver'


@dataclass(frozen=True)
class KineticModel:
    """
    A compartment model variant.

    Attributes:
        variant (ModelVariant): The model tag.
        param_names (tuple[str, ...]): Parameter names, in the order the model expects them.
        default_bounds (tuple[tuple[float, float, float], ...]): ``(initial, lower, upper)`` per parameter.
        tac_func (Callable): ``f(params, grid, plasma, blood, decay) -> tac`` on the fine grid.
        jacobian_func (Callable): ``f(params, grid, plasma, blood, decay) -> (tac, jacobian)`` on the fine grid,
            with the Jacobian of shape ``(len(grid), num_params)``.
    """
    variant: ModelVariant
    param_names: tuple
    default_bounds: tuple
    tac_func: Callable
    jacobian_func: Callable

    @property
    def name(self) -> str:
        return self.variant.value

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    def default_bounds_array(self) -> np.ndarray:
        """Default ``(initial, lower, upper)`` bounds as an array of shape ``(num_params, 3)``."""
        return np.asarray(self.default_bounds, dtype=float)


def _one_tissue_tac(params, grid, plasma, blood, decay):
    k1, k2, vb = params
    conv = exp_convolve_on_grid(grid, plasma, k2 + decay, 0)
    return (1.0 - vb) * k1 * conv[0] + vb * blood


def _one_tissue_jacobian(params, grid, plasma, blood, decay):
    r"""1T3P TAC and Jacobian: :math:`\partial_{k_2}(C_p\otimes e^{-(k_2+\lambda)t}) = -C_p\otimes te^{-(k_2+\lambda)t}`."""
    k1, k2, vb = params
    conv = exp_convolve_on_grid(grid, plasma, k2 + decay, 1)
    tissue = k1 * conv[0]
    jac = np.empty((len(grid), 3))
    jac[:, 0] = (1.0 - vb) * conv[0]
    jac[:, 1] = -(1.0 - vb) * k1 * conv[1]
    jac[:, 2] = blood - tissue
    return (1.0 - vb) * tissue + vb * blood, jac


def _two_tissue_eigen(k2: float, k3: float, k4: float) -> tuple[float, float, float, bool]:
    r"""
    Returns ``(s, u, disc, is_degenerate)`` for the two-tissue rate matrix, where ``disc`` is :math:`\Delta^2`.

    The eigenvalues are treated as repeated when :math:`\Delta \leq 10^{-5} s`, including :math:`s=0`. A negative
    discriminant, which needs a negative :math:`k_3`, also takes the expansion branch.
    """
    s = k2 + k3 + k4
    u = k3 + k4
    disc = s * s - 4.0 * k2 * k4
    return s, u, disc, bool(disc <= (_DEGENERATE_TOL * s) ** 2)


def _degenerate_unit_response(conv: np.ndarray, offset: float, disc: float) -> np.ndarray:
    r""":math:`C_0 + (u-\alpha)C_1 + \Delta^2 (C_2/8 + (u-\alpha)C_3/24)`, for kernels at :math:`\alpha=s/2`."""
    return conv[0] + offset * conv[1] + disc * (conv[2] / 8.0 + offset * conv[3] / 24.0)


def _two_tissue_response(k1, k2, k3, k4, grid, input_vals, decay):
    r"""Two-tissue tissue curve (sum of both compartments) driven by ``input_vals`` on the grid."""
    s, u, disc, degenerate = _two_tissue_eigen(k2, k3, k4)
    if degenerate:
        alpha = s / 2.0
        conv = exp_convolve_on_grid(grid, input_vals, alpha + decay, 3)
        return k1 * _degenerate_unit_response(conv, u - alpha, disc)
    delta = np.sqrt(disc)
    alpha_1 = (s - delta) / 2.0
    alpha_2 = (s + delta) / 2.0
    a_1 = (u - alpha_1) / delta
    a_2 = (alpha_2 - u) / delta
    conv_1 = exp_convolve_on_grid(grid, input_vals, alpha_1 + decay, 0)[0]
    conv_2 = exp_convolve_on_grid(grid, input_vals, alpha_2 + decay, 0)[0]
    return k1 * (a_1 * conv_1 + a_2 * conv_2)


def _two_tissue_response_and_jacobian(k1, k2, k3, k4, grid, input_vals, decay):
    r"""
    Two-tissue tissue curve and its derivatives with respect to :math:`(K_1, k_2, k_3, k_4)`.

    For :math:`p\in\{k_2,k_3,k_4\}`, :math:`\partial_p s = 1`, :math:`\partial_p(k_2k_4) = (k_4, 0, k_2)` and
    :math:`\partial_p u = (0, 1, 1)`, which gives :math:`\partial_p\Delta = (s - 2\partial_p(k_2k_4))/\Delta`,
    :math:`\partial_p\alpha_{1,2} = (1 \mp \partial_p\Delta)/2` and
    :math:`\partial_p a_1 = -\partial_p a_2 = [(\partial_p u - \partial_p\alpha_1)\Delta - (u-\alpha_1)\partial_p\Delta]
    / \Delta^2`.

    In the repeated-eigenvalue branch, :math:`\partial_p \alpha = 1/2` and :math:`\partial_p \Delta^2 = 2s -
    4\partial_p(k_2k_4)`. Derivative terms that are themselves multiplied by :math:`\Delta^2` are dropped.
    """
    s, u, disc, degenerate = _two_tissue_eigen(k2, k3, k4)
    d_u = np.array([0.0, 1.0, 1.0])
    d_q = np.array([k4, 0.0, k2])
    jac = np.empty((len(grid), 4))

    if degenerate:
        alpha = s / 2.0
        offset = u - alpha
        conv = exp_convolve_on_grid(grid, input_vals, alpha + decay, 3)
        unit_response = _degenerate_unit_response(conv, offset, disc)
        curvature = conv[2] / 8.0 + offset * conv[3] / 24.0
        jac[:, 0] = unit_response
        for col in range(3):
            d_disc = 2.0 * s - 4.0 * d_q[col]
            jac[:, col + 1] = k1 * ((d_u[col] - 1.0) * conv[1] - 0.5 * offset * conv[2] + d_disc * curvature)
        return k1 * unit_response, jac

    delta = np.sqrt(disc)
    alpha_1 = (s - delta) / 2.0
    alpha_2 = (s + delta) / 2.0
    a_1 = (u - alpha_1) / delta
    a_2 = (alpha_2 - u) / delta
    conv_1 = exp_convolve_on_grid(grid, input_vals, alpha_1 + decay, 1)
    conv_2 = exp_convolve_on_grid(grid, input_vals, alpha_2 + decay, 1)
    unit_response = a_1 * conv_1[0] + a_2 * conv_2[0]
    jac[:, 0] = unit_response

    for col in range(3):
        d_delta = (s - 2.0 * d_q[col]) / delta
        d_alpha_1 = (1.0 - d_delta) / 2.0
        d_alpha_2 = (1.0 + d_delta) / 2.0
        d_a_1 = ((d_u[col] - d_alpha_1) * delta - (u - alpha_1) * d_delta) / (delta * delta)
        jac[:, col + 1] = k1 * (d_a_1 * (conv_1[0] - conv_2[0])
                                - a_1 * d_alpha_1 * conv_1[1]
                                - a_2 * d_alpha_2 * conv_2[1])
    return k1 * unit_response, jac


def _two_tissue_tac(params, grid, plasma, blood, decay):
    k1, k2, k3, k4, vb = params
    tissue = _two_tissue_response(k1, k2, k3, k4, grid, plasma, decay)
    return (1.0 - vb) * tissue + vb * blood


def _two_tissue_jacobian(params, grid, plasma, blood, decay):
    k1, k2, k3, k4, vb = params
    tissue, tissue_jac = _two_tissue_response_and_jacobian(k1, k2, k3, k4, grid, plasma, decay)
    jac = np.empty((len(grid), 5))
    jac[:, :4] = (1.0 - vb) * tissue_jac
    jac[:, 4] = blood - tissue
    return (1.0 - vb) * tissue + vb * blood, jac


def _srtm_tac(params, grid, ref_vals, blood, decay):
    r"""SRTM: the reference-region TAC replaces the plasma input and the blood curve in the vascular term."""
    r1, k2, bp, vb = params
    denom = 1.0 + bp
    conv = exp_convolve_on_grid(grid, ref_vals, k2 / denom + decay, 0)
    target = r1 * ref_vals + k2 * (1.0 - r1 / denom) * conv[0]
    return (1.0 - vb) * target + vb * ref_vals


def _srtm_jacobian(params, grid, ref_vals, blood, decay):
    r1, k2, bp, vb = params
    denom = 1.0 + bp
    conv = exp_convolve_on_grid(grid, ref_vals, k2 / denom + decay, 1)
    coeff = k2 * (1.0 - r1 / denom)
    target = r1 * ref_vals + coeff * conv[0]
    jac = np.empty((len(grid), 4))
    jac[:, 0] = (1.0 - vb) * (ref_vals - (k2 / denom) * conv[0])
    jac[:, 1] = (1.0 - vb) * ((1.0 - r1 / denom) * conv[0] - (coeff / denom) * conv[1])
    jac[:, 2] = (1.0 - vb) * (k2 / denom ** 2) * (r1 * conv[0] + coeff * conv[1])
    jac[:, 3] = ref_vals - target
    return (1.0 - vb) * target + vb * ref_vals, jac


def _liver_inputs(ka, fa, grid, plasma, blood, decay, order):
    r"""Portal-vein curves :math:`K_a\,C\otimes e^{-(K_a+\lambda)t}` for the plasma and whole-blood inputs."""
    portal_conv = exp_convolve_on_grid(grid, plasma, ka + decay, order)
    portal_wb_conv = exp_convolve_on_grid(grid, blood, ka + decay, order)
    c_in = fa * plasma + (1.0 - fa) * ka * portal_conv[0]
    blood_term = fa * blood + (1.0 - fa) * ka * portal_wb_conv[0]
    return c_in, blood_term, portal_conv, portal_wb_conv


def _liver_tac(params, grid, plasma, blood, decay):
    k1, k2, k3, k4, ka, fa, vb = params
    c_in, blood_term, _, _ = _liver_inputs(ka, fa, grid, plasma, blood, decay, 0)
    tissue = _two_tissue_response(k1, k2, k3, k4, grid, c_in, decay)
    return (1.0 - vb) * tissue + vb * blood_term


def _liver_jacobian(params, grid, plasma, blood, decay):
    r"""
    Liver TAC and Jacobian.

    The tissue response is linear in its input, so the :math:`K_a` and :math:`f_a` columns are the two-tissue
    response to :math:`\partial_{K_a}C_{in}=(1-f_a)(C_a\otimes e^{-(K_a+\lambda)t} - K_a C_a\otimes te^{-(K_a+\lambda)t})`
    and to :math:`\partial_{f_a}C_{in}=C_a - C_{pv}`.
    """
    k1, k2, k3, k4, ka, fa, vb = params
    c_in, blood_term, portal_conv, portal_wb_conv = _liver_inputs(ka, fa, grid, plasma, blood, decay, 1)
    tissue, tissue_jac = _two_tissue_response_and_jacobian(k1, k2, k3, k4, grid, c_in, decay)

    d_cin_d_ka = (1.0 - fa) * (portal_conv[0] - ka * portal_conv[1])
    d_blood_d_ka = (1.0 - fa) * (portal_wb_conv[0] - ka * portal_wb_conv[1])
    d_cin_d_fa = plasma - ka * portal_conv[0]
    d_blood_d_fa = blood - ka * portal_wb_conv[0]

    jac = np.empty((len(grid), 7))
    jac[:, :4] = (1.0 - vb) * tissue_jac
    jac[:, 4] = ((1.0 - vb) * _two_tissue_response(k1, k2, k3, k4, grid, d_cin_d_ka, decay)
                 + vb * d_blood_d_ka)
    jac[:, 5] = ((1.0 - vb) * _two_tissue_response(k1, k2, k3, k4, grid, d_cin_d_fa, decay)
                 + vb * d_blood_d_fa)
    jac[:, 6] = blood_term - tissue
    return (1.0 - vb) * tissue + vb * blood_term, jac


_KINETIC_MODELS_ = {
    ModelVariant.ONE_TISSUE_3P: KineticModel(
        variant=ModelVariant.ONE_TISSUE_3P,
        param_names=('K1', 'k2', 'Vb'),
        default_bounds=((0.1, 0.0, 5.0), (0.1, 0.0, 5.0), (0.05, 0.0, 1.0)),
        tac_func=_one_tissue_tac,
        jacobian_func=_one_tissue_jacobian),
    ModelVariant.TWO_TISSUE_5P: KineticModel(
        variant=ModelVariant.TWO_TISSUE_5P,
        param_names=('K1', 'k2', 'k3', 'k4', 'Vb'),
        default_bounds=((0.1, 0.0, 5.0), (0.1, 0.0, 5.0), (0.05, 0.0, 5.0), (0.01, 0.0, 5.0), (0.05, 0.0, 1.0)),
        tac_func=_two_tissue_tac,
        jacobian_func=_two_tissue_jacobian),
    ModelVariant.SRTM: KineticModel(
        variant=ModelVariant.SRTM,
        param_names=('R1', 'k2', 'BPnd', 'Vb'),
        default_bounds=((1.0, 0.0, 10.0), (0.1, 0.0, 5.0), (1.0, 0.0, 20.0), (0.0, 0.0, 1.0)),
        tac_func=_srtm_tac,
        jacobian_func=_srtm_jacobian),
    ModelVariant.LIVER: KineticModel(
        variant=ModelVariant.LIVER,
        param_names=('K1', 'k2', 'k3', 'k4', 'Ka', 'fa', 'Vb'),
        default_bounds=((0.5, 0.0, 10.0), (0.5, 0.0, 10.0), (0.01, 0.0, 5.0), (0.01, 0.0, 5.0),
                        (1.0, 0.0, 20.0), (0.2, 0.0, 1.0), (0.1, 0.0, 1.0)),
        tac_func=_liver_tac,
        jacobian_func=_liver_jacobian),
    }


def get_kinetic_model(model: Union[str, ModelVariant, KineticModel]) -> KineticModel:
    r"""
    Looks up a compartment model.

    Args:
        model (str, ModelVariant or KineticModel): The model tag. Strings are matched case-insensitively against
            the tag values (``'1t3p'``, ``'2t5p'``, ``'srtm'``, ``'liver'``) and enum names (e.g.
            ``'one_tissue_3p'``).

    Returns:
        KineticModel: The model record.

    Raises:
        UnknownModel: If the model is not one of the supported variants.
    """
    if isinstance(model, KineticModel):
        return model
    if isinstance(model, ModelVariant):
        return _KINETIC_MODELS_[model]
    if isinstance(model, str):
        tag = model.strip().lower().replace('-', '_')
        for variant in ModelVariant:
            if tag in (variant.value, variant.name.lower(), variant.name.lower().replace('_', '')):
                return _KINETIC_MODELS_[variant]
    valid = ', '.join(f"'{variant.value}'" for variant in ModelVariant)
    raise UnknownModel(f"Unknown compartment model {model!r}. Must be one of {valid}.")


class KineticModelEvaluator(object):
    r"""
    Evaluates a compartment model, and its Jacobian, as frame averages for a fixed input function and scan timing.

    The input curves are interpolated onto the fine grid of the scan timing once, at construction. After that the
    evaluator holds no mutable state, so a single instance can be shared by many concurrent voxel fits.

    Attributes:
        model (KineticModel): The compartment model.
        timing (ScanTiming): Frame timing and fine evaluation grid.
        decay_constant (float): Radioactive decay constant added to every kernel rate.
        plasma (np.ndarray): Plasma (or reference) input on the fine grid.
        whole_blood (np.ndarray): Whole-blood input on the fine grid.

    Example:

        .. code-block:: python

            import numpy as np
            from petkmap.kinetic_modeling.tcm_models import KineticModelEvaluator
            from petkmap.kinetic_modeling.frame_integration import ScanTiming
            from petkmap.utils.time_activity_curve import InputFunction

            times = np.array([0.0, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0])
            plasma = np.array([0.0, 40.0, 25.0, 12.0, 6.0, 4.0, 2.5, 1.5])
            timing = ScanTiming.from_durations([0.5] * 6 + [2.0] * 6 + [5.0] * 9)
            evaluator = KineticModelEvaluator('1t3p', InputFunction(times, plasma), timing, decay_constant=0.00063)
            tac, jac = evaluator.tac_and_jacobian(np.array([0.5, 0.3, 0.05]))

    """
    def __init__(self,
                 model: Union[str, ModelVariant, KineticModel],
                 input_function: InputFunction,
                 timing: ScanTiming,
                 decay_constant: float = 0.0):
        self.model: KineticModel = get_kinetic_model(model)
        self.timing: ScanTiming = timing
        self.decay_constant: float = float(decay_constant)
        grid = timing.fine_grid
        self.plasma: np.ndarray = interpolate_input_on_grid(grid, input_function.times, input_function.plasma)
        self.whole_blood: np.ndarray = interpolate_input_on_grid(grid, input_function.times,
                                                                 input_function.whole_blood)
        self.plasma.setflags(write=False)
        self.whole_blood.setflags(write=False)

    @property
    def num_params(self) -> int:
        return self.model.num_params

    @property
    def num_frames(self) -> int:
        return self.timing.num_frames

    def validated_params(self, params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=float)
        if params.shape != (self.num_params,):
            raise ParameterCountMismatch(f"Model '{self.model.name}' takes {self.num_params} parameters "
                                         f"{self.model.param_names}. Got an array of shape {params.shape}.")
        return params

    def validated_mask(self, free_mask: Union[np.ndarray, None]) -> np.ndarray:
        if free_mask is None:
            return np.ones(self.num_params, dtype=bool)
        free_mask = np.asarray(free_mask, dtype=bool)
        if free_mask.shape != (self.num_params,):
            raise ParameterCountMismatch(f"The free-parameter mask needs {self.num_params} entries. "
                                         f"Got shape {free_mask.shape}.")
        return free_mask

    def fine_tac(self, params: np.ndarray) -> np.ndarray:
        """Model TAC on the fine grid."""
        params = self.validated_params(params)
        return self.model.tac_func(tuple(params), self.timing.fine_grid, self.plasma, self.whole_blood,
                                   self.decay_constant)

    def tac(self, params: np.ndarray) -> np.ndarray:
        """Frame-averaged model TAC."""
        return self.timing.average(self.fine_tac(params))

    def tac_and_jacobian(self, params: np.ndarray,
                         free_mask: Union[np.ndarray, None] = None) -> tuple[np.ndarray, np.ndarray]:
        r"""
        Frame-averaged model TAC and its Jacobian with respect to the free parameters.

        Args:
            params (np.ndarray): All model parameters.
            free_mask (np.ndarray, optional): Boolean mask of the free parameters. Defaults to all free.

        Returns:
            tuple: (``tac``, ``jacobian``) with shapes ``(F,)`` and ``(F, num_free)``. Jacobian columns follow
            the order of the free parameters.
        """
        params = self.validated_params(params)
        free_mask = self.validated_mask(free_mask)
        fine_tac, fine_jac = self.model.jacobian_func(tuple(params), self.timing.fine_grid, self.plasma,
                                                      self.whole_blood, self.decay_constant)
        return self.timing.average(fine_tac), self.timing.average(fine_jac[:, free_mask])

    def jacobian(self, params: np.ndarray, free_mask: Union[np.ndarray, None] = None) -> np.ndarray:
        return self.tac_and_jacobian(params, free_mask)[1]


def evaluate(model: Union[str, ModelVariant, KineticModel],
             params: np.ndarray,
             input_function: InputFunction,
             timing: ScanTiming,
             decay_constant: float = 0.0,
             want_jacobian: bool = False,
             free_mask: Union[np.ndarray, None] = None) -> tuple[np.ndarray, Union[np.ndarray, None]]:
    r"""
    Computes the frame-averaged TAC of a compartment model, and optionally its Jacobian.

    This is a pure function, used for forward simulation. Fits use a :class:`KineticModelEvaluator` directly so
    that the input interpolation is done once per fit.

    Args:
        model (str, ModelVariant or KineticModel): The compartment model.
        params (np.ndarray): Model parameters, in the order of ``model.param_names``.
        input_function (InputFunction): The blood (or reference) input.
        timing (ScanTiming): Scan frame timing.
        decay_constant (float): Radioactive decay constant. Defaults to 0.
        want_jacobian (bool): Whether to also compute the Jacobian. Defaults to False.
        free_mask (np.ndarray, optional): Free parameters for the Jacobian columns. Defaults to all free.

    Returns:
        tuple: (``tac``, ``jacobian``); ``jacobian`` is None unless ``want_jacobian`` is set.

    Raises:
        UnknownModel: If the model is not supported.
        ParameterCountMismatch: If ``params`` does not match the model.
    """
    evaluator = KineticModelEvaluator(model=model, input_function=input_function, timing=timing,
                                      decay_constant=decay_constant)
    if want_jacobian:
        return evaluator.tac_and_jacobian(params, free_mask)
    return evaluator.tac(params), None
