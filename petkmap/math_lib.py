"""
Library for math functions for use elsewhere.
"""
import numpy as np


def l2norm(vec: np.ndarray) -> float:
    r"""
    Euclidean norm of a vector, :math:`\sqrt{\sum_i v_i^2}`.

    Args:
        vec (np.ndarray): Input vector.

    Returns:
        float: The L2 norm of ``vec``.
    """
    vec = np.asarray(vec, dtype=float)
    return float(np.sqrt(np.sum(vec * vec)))


def weighted_norm(vec: np.ndarray, weights: np.ndarray) -> float:
    r"""
    Weighted Euclidean norm of a vector, :math:`\sqrt{\sum_i (w_i v_i)^2}`.

    This is the norm used for the cost of a weighted least-squares fit, where ``vec`` holds the residuals and
    ``weights`` the per-frame weights. A weight of zero drops the corresponding entry.

    Args:
        vec (np.ndarray): Input vector.
        weights (np.ndarray): Weights with the same shape as ``vec``.

    Returns:
        float: The weighted L2 norm.
    """
    return l2norm(np.asarray(weights, dtype=float) * np.asarray(vec, dtype=float))


def decay_constant_from_half_life(half_life: float) -> float:
    r"""
    Radioactive decay constant :math:`\lambda=\ln(2)/T_{1/2}`.

    The result has the inverse of the time units of ``half_life``; for a fit with times in minutes pass the
    half-life in minutes.

    Args:
        half_life (float): Half-life of the radionuclide.

    Returns:
        float: The decay constant.

    Raises:
        ValueError: If ``half_life`` is not positive.
    """
    if half_life <= 0:
        raise ValueError(f"Half-life must be positive. Got {half_life}.")
    return float(np.log(2.0) / half_life)
