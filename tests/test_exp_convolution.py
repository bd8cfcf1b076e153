import numpy as np
import pytest
from scipy import integrate

from petkmap.kinetic_modeling.exp_convolution import (calc_exp_convolution, calc_exp_convolution_with_derivatives,
                                                      exp_convolve_on_grid, interpolate_input_on_grid)
from petkmap.utils.errors import InsufficientInput


@pytest.mark.parametrize('rate', [1.0e-4, 0.05, 0.3, 2.0, 25.0])
@pytest.mark.parametrize('value', [1.0, 3.7])
def test_constant_input_gives_charging_curve(rate, value):
    times = np.linspace(0.0, 60.0, 301)
    conv = calc_exp_convolution(times, np.array([0.0, 60.0]), np.array([value, value]), rate)
    expected = value * (1.0 - np.exp(-rate * times)) / rate
    np.testing.assert_allclose(conv, expected, rtol=1e-10, atol=1e-12)


def test_zero_rate_is_cumulative_integral():
    times = np.linspace(0.0, 10.0, 51)
    conv = calc_exp_convolution(times, np.array([0.0, 10.0]), np.array([2.5, 2.5]), 0.0)
    np.testing.assert_allclose(conv, 2.5 * times, rtol=1e-12)


def test_irregular_evaluation_times_not_starting_at_zero():
    times = np.array([0.5, 0.9, 2.0, 7.5, 20.0])
    conv = calc_exp_convolution(times, np.array([0.0, 30.0]), np.array([1.0, 1.0]), 0.2)
    np.testing.assert_allclose(conv, (1.0 - np.exp(-0.2 * times)) / 0.2, rtol=1e-10)


def test_piecewise_linear_input_matches_quadrature():
    input_times = np.array([0.0, 0.5, 1.0, 3.0, 10.0])
    input_vals = np.array([0.0, 10.0, 6.0, 3.0, 1.0])
    # every input kink is an evaluation time, so interpolating onto the grid keeps the input unchanged
    eval_times = np.array([0.25, 0.5, 0.8, 1.0, 2.0, 3.0, 5.0, 10.0, 12.0])
    rate = 0.4
    conv = calc_exp_convolution_with_derivatives(eval_times, input_times, input_vals, rate, order=3)

    def x(tau):
        return np.interp(tau, input_times, input_vals)

    def reference(t, n):
        kinks = input_times[(input_times > 0.0) & (input_times < t)]
        return integrate.quad(lambda tau: x(tau) * (t - tau) ** n * np.exp(-rate * (t - tau)), 0.0, t,
                              points=kinks if len(kinks) else None, limit=200, epsabs=1e-13, epsrel=1e-12)[0]

    for n in range(4):
        expected = [reference(t, n) for t in eval_times]
        np.testing.assert_allclose(conv[n], expected, rtol=1e-7, atol=1e-10)


def test_derivative_kernel_is_rate_derivative():
    grid = np.linspace(0.0, 30.0, 601)
    vals = interpolate_input_on_grid(grid, np.array([0.0, 1.0, 4.0, 30.0]), np.array([0.0, 20.0, 5.0, 1.0]))
    rate, step = 0.15, 1.0e-6
    conv = exp_convolve_on_grid(grid, vals, rate, 3)
    for n in range(3):
        upper = exp_convolve_on_grid(grid, vals, rate + step, n)[n]
        lower = exp_convolve_on_grid(grid, vals, rate - step, n)[n]
        np.testing.assert_allclose((upper - lower) / (2.0 * step), -conv[n + 1], rtol=1e-6, atol=1e-9)


def test_input_is_zero_before_first_sample_and_held_after_last():
    grid = np.array([0.0, 1.0, 2.0, 5.0, 10.0])
    vals = interpolate_input_on_grid(grid, np.array([2.0, 5.0]), np.array([4.0, 1.0]))
    np.testing.assert_allclose(vals, [0.0, 2.0, 4.0, 1.0, 1.0])


def test_too_few_samples():
    with pytest.raises(InsufficientInput):
        calc_exp_convolution(np.array([0.0, 1.0]), np.array([0.0]), np.array([1.0]), 0.1)


def test_unordered_input_times():
    with pytest.raises(InsufficientInput):
        calc_exp_convolution(np.array([0.0, 1.0]), np.array([0.0, 2.0, 1.0]), np.array([1.0, 1.0, 1.0]), 0.1)


def test_unordered_evaluation_times():
    with pytest.raises(ValueError):
        calc_exp_convolution(np.array([0.0, 2.0, 1.0]), np.array([0.0, 2.0]), np.array([1.0, 1.0]), 0.1)


def test_order_out_of_range():
    with pytest.raises(ValueError):
        calc_exp_convolution_with_derivatives(np.array([0.0, 1.0]), np.array([0.0, 2.0]), np.array([1.0, 1.0]),
                                              0.1, order=4)
