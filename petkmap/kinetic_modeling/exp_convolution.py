r"""
This module computes convolutions of a sampled input function with exponential kernels. They are the building
blocks of every compartment model in :mod:`petkmap.kinetic_modeling.tcm_models`.

For an input :math:`x(t)` (plasma, whole-blood, or reference-region TAC) and a rate :math:`k` (a kinetic rate plus
the radioactive decay constant), we compute

.. math::

    C_{n}(t) = \int_{0}^{t} x(\tau)\,(t-\tau)^{n}\,e^{-k(t-\tau)}\,\mathrm{d}\tau, \qquad n = 0, 1, 2, 3.

:math:`C_0` is the plain convolution. The higher orders are the derivative kernels,
:math:`\partial C_n/\partial k = -C_{n+1}`. The models use them for analytic Jacobians.

The input is linearly interpolated onto the evaluation grid. Between two consecutive grid points the input is
linear and the kernel is exactly exponential, so each step has a closed-form integral. With
:math:`h = t_j - t_{j-1}` and :math:`M_n = \int_0^h s^n e^{-ks}\mathrm{d}s`, the recurrence is

.. math::

    C_0(t_j) &= e^{-kh} C_0(t_{j-1}) + S_0\\
    C_1(t_j) &= e^{-kh} \left[C_1(t_{j-1}) + h C_0(t_{j-1})\right] + S_1\\
    C_n(t_j) &= e^{-kh} \sum_{i=0}^{n} \binom{n}{i} h^{n-i} C_i(t_{j-1}) + S_n

where :math:`S_n = x_j M_n + (x_{j-1} - x_j) M_{n+1} / h`. The cost is O(1) per grid point.

Note:
    The grid-level kernel :func:`exp_convolve_on_grid` is decorated with :func:`numba.njit` and releases the GIL,
    so voxel fits running on a thread pool can evaluate convolutions concurrently.

"""
import numba
import numpy as np

from ..utils.errors import InsufficientInput

_MAX_ORDER = 3
_SERIES_THRESHOLD = 1.0
_SERIES_TERMS = 30


@numba.njit(nogil=True)
def _exp_moment(n: int, rate: float, h: float) -> float:
    r"""Computes :math:`M_n=\int_0^h s^n e^{-ks}\mathrm{d}s` for a single grid step.

    For :math:`k=0` this is plain integration, :math:`h^{n+1}/(n+1)`. For small :math:`|kh|` the closed form
    :math:`\frac{n!}{k^{n+1}}\left[1-e^{-kh}\sum_{j=0}^{n}\frac{(kh)^j}{j!}\right]` suffers from cancellation,
    so we sum the power series :math:`h^{n+1}\sum_m \frac{(-kh)^m}{m!(n+m+1)}` instead.
    """
    if rate == 0.0:
        return h ** (n + 1) / (n + 1)
    x = rate * h
    if abs(x) < _SERIES_THRESHOLD:
        total = 0.0
        term = 1.0
        for m in range(_SERIES_TERMS):
            total += term / (n + m + 1)
            term *= -x / (m + 1)
        return h ** (n + 1) * total
    partial = 0.0
    term = 1.0
    for j in range(n + 1):
        partial += term
        term *= x / (j + 1)
    n_fact = 1.0
    for j in range(2, n + 1):
        n_fact *= j
    return n_fact / rate ** (n + 1) * (1.0 - np.exp(-x) * partial)


@numba.njit(nogil=True)
def exp_convolve_on_grid(grid_times: np.ndarray, grid_vals: np.ndarray, rate: float, order: int) -> np.ndarray:
    r"""Convolves an input, already sampled on the evaluation grid, with :math:`(t-\tau)^n e^{-k(t-\tau)}`.

    The first grid point is taken as the time origin of the integral, so the output is zero there. Expanding
    :math:`(t_j-\tau)^n = \sum_i \binom{n}{i} h^{n-i} (t_{j-1}-\tau)^i` carries every order across a grid step.

    Args:
        grid_times (np.ndarray): Strictly increasing evaluation times, starting at 0.
        grid_vals (np.ndarray): Input values at ``grid_times``.
        rate (float): Kernel rate :math:`k` (kinetic rate plus decay constant).
        order (int): Highest kernel order to compute, at most 3.

    Returns:
        np.ndarray: Array of shape ``(order + 1, len(grid_times))``. Row ``n`` holds :math:`C_n`.

    """
    num_pts = grid_times.shape[0]
    out = np.zeros((order + 1, num_pts))
    conv = np.zeros(order + 1)
    moments = np.zeros(order + 2)
    for j in range(1, num_pts):
        h = grid_times[j] - grid_times[j - 1]
        x_curr = grid_vals[j]
        slope = (grid_vals[j - 1] - x_curr) / h
        decay = np.exp(-rate * h)
        for n in range(order + 2):
            moments[n] = _exp_moment(n, rate, h)
        # highest order first, so lower orders still hold the previous grid point
        for n in range(order, -1, -1):
            carried = 0.0
            binom = 1.0
            for i in range(n, -1, -1):
                carried += binom * h ** (n - i) * conv[i]
                binom = binom * i / (n - i + 1)
            conv[n] = decay * carried + x_curr * moments[n] + slope * moments[n + 1]
            out[n, j] = conv[n]
    return out


def validate_input_samples(input_times: np.ndarray, input_vals: np.ndarray) -> None:
    r"""Checks that an input function has at least two samples with strictly increasing times.

    Args:
        input_times (np.ndarray): Sample times.
        input_vals (np.ndarray): Sample values.

    Raises:
        InsufficientInput: If there are fewer than two samples, the arrays have different lengths, or the times
            are not strictly increasing.
    """
    if input_times.ndim != 1 or input_times.shape != input_vals.shape:
        raise InsufficientInput("Input times and values must be 1D arrays of the same length. "
                                f"Got {input_times.shape} and {input_vals.shape}.")
    if len(input_times) < 2:
        raise InsufficientInput(f"The input function needs at least 2 samples. Got {len(input_times)}.")
    if np.any(np.diff(input_times) <= 0.0):
        raise InsufficientInput("Input function times must be strictly increasing.")


def interpolate_input_on_grid(grid_times: np.ndarray, input_times: np.ndarray, input_vals: np.ndarray) -> np.ndarray:
    r"""Linearly interpolates input samples onto an evaluation grid.

    If the first sample is after :math:`t=0`, a :math:`x(0)=0` sample is prepended so the input rises from zero.
    Past the last sample the input is held at its last value.

    Args:
        grid_times (np.ndarray): Evaluation times.
        input_times (np.ndarray): Input sample times.
        input_vals (np.ndarray): Input sample values.

    Returns:
        np.ndarray: Input values at ``grid_times``.

    Raises:
        InsufficientInput: If the input samples are not valid. See :func:`validate_input_samples`.
    """
    input_times = np.asarray(input_times, dtype=float)
    input_vals = np.asarray(input_vals, dtype=float)
    validate_input_samples(input_times, input_vals)
    if input_times[0] > 0.0:
        input_times = np.append(0.0, input_times)
        input_vals = np.append(0.0, input_vals)
    return np.interp(x=grid_times, xp=input_times, fp=input_vals)


def calc_exp_convolution_with_derivatives(eval_times: np.ndarray,
                                          input_times: np.ndarray,
                                          input_vals: np.ndarray,
                                          rate: float,
                                          order: int = 1) -> np.ndarray:
    r"""Computes :math:`C_0,\ldots,C_{\mathrm{order}}` of an irregularly sampled input at the evaluation times.

    Args:
        eval_times (np.ndarray): Strictly increasing, non-negative evaluation times. They do not need to start at
            zero; the integral always starts at :math:`t=0`.
        input_times (np.ndarray): Input sample times.
        input_vals (np.ndarray): Input sample values.
        rate (float): Kernel rate :math:`k`.
        order (int): Highest kernel order, at most 3. Defaults to 1.

    Returns:
        np.ndarray: Array of shape ``(order + 1, len(eval_times))``.

    Raises:
        InsufficientInput: If the input has fewer than two samples.
        ValueError: If ``order`` is out of range or the evaluation times are not increasing and non-negative.

    See Also:
        * :func:`exp_convolve_on_grid`
        * :func:`calc_exp_convolution`

    """
    if not 0 <= order <= _MAX_ORDER:
        raise ValueError(f"`order` must be between 0 and {_MAX_ORDER}. Got {order}.")
    eval_times = np.asarray(eval_times, dtype=float)
    if eval_times.ndim != 1 or len(eval_times) == 0:
        raise ValueError("`eval_times` must be a non-empty 1D array.")
    if eval_times[0] < 0.0 or np.any(np.diff(eval_times) <= 0.0):
        raise ValueError("`eval_times` must be non-negative and strictly increasing.")

    prepend_origin = eval_times[0] > 0.0
    grid_times = np.append(0.0, eval_times) if prepend_origin else eval_times
    grid_vals = interpolate_input_on_grid(grid_times, input_times, input_vals)
    conv_vals = exp_convolve_on_grid(grid_times, grid_vals, float(rate), int(order))
    return conv_vals[:, 1:] if prepend_origin else conv_vals


def calc_exp_convolution(eval_times: np.ndarray,
                         input_times: np.ndarray,
                         input_vals: np.ndarray,
                         rate: float) -> np.ndarray:
    r"""Computes :math:`\int_0^t x(\tau)e^{-k(t-\tau)}\mathrm{d}\tau` at each evaluation time.

    Example:
        For a constant input :math:`x=c` the result is the charging curve :math:`c(1-e^{-kt})/k`, and :math:`ct`
        when :math:`k=0`:

        .. code-block:: python

            import numpy as np
            from petkmap.kinetic_modeling.exp_convolution import calc_exp_convolution

            t = np.linspace(0, 60, 601)
            conv = calc_exp_convolution(t, np.array([0.0, 60.0]), np.array([2.0, 2.0]), rate=0.1)

    Args:
        eval_times (np.ndarray): Strictly increasing, non-negative evaluation times.
        input_times (np.ndarray): Input sample times.
        input_vals (np.ndarray): Input sample values.
        rate (float): Kernel rate :math:`k`.

    Returns:
        np.ndarray: Convolution values at ``eval_times``.

    """
    return calc_exp_convolution_with_derivatives(eval_times, input_times, input_vals, rate, order=0)[0]
