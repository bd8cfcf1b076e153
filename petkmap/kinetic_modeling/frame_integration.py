r"""
Scan timing and frame averaging.

A PET scan reports the activity in each frame as the time-average over the frame interval
:math:`[t_{\mathrm{start}}, t_{\mathrm{end}})`. Model curves are computed on a fine time grid and then reduced to
frame averages with :func:`average_over_frames`:

.. math::

    \bar{C}_i = \frac{1}{t_{\mathrm{end},i} - t_{\mathrm{start},i}} \int_{t_{\mathrm{start},i}}^{t_{\mathrm{end},i}}
    C(t)\,\mathrm{d}t

The average is linear in the curve, so the same function is used for a model TAC and for every column of its
Jacobian.

"""
from dataclasses import dataclass, field
from typing import Union

import numpy as np

from ..utils.errors import InvalidFrames
from ..utils import image_io


def average_over_frames(grid_times: np.ndarray,
                        values: np.ndarray,
                        frame_starts: np.ndarray,
                        frame_ends: np.ndarray) -> np.ndarray:
    r"""
    Time-averages a fine-grid curve over each frame using the trapezoidal rule.

    Frame edges that fall between grid points are resolved by linear interpolation, so the frames do not need to be
    aligned with the grid. Frames with zero duration return the interpolated value at the frame time.

    Args:
        grid_times (np.ndarray): Strictly increasing grid times covering every frame.
        values (np.ndarray): Curve values on the grid. Either 1D with shape ``(N,)``, or 2D with shape ``(N, P)`` to
            average ``P`` curves at once.
        frame_starts (np.ndarray): Frame start times.
        frame_ends (np.ndarray): Frame end times.

    Returns:
        np.ndarray: Frame averages with shape ``(F,)`` or ``(F, P)``.

    Raises:
        ValueError: If ``values`` does not match the grid, or a frame lies outside of the grid.

    """
    grid_times = np.asarray(grid_times, dtype=float)
    values = np.asarray(values, dtype=float)
    frame_starts = np.asarray(frame_starts, dtype=float)
    frame_ends = np.asarray(frame_ends, dtype=float)
    if values.shape[0] != grid_times.shape[0]:
        raise ValueError(f"`values` must have the grid along its first axis. Got {values.shape} for a grid of "
                         f"{grid_times.shape[0]} points.")
    if np.min(frame_starts) < grid_times[0] or np.max(frame_ends) > grid_times[-1]:
        raise ValueError("Frames must lie within the fine time grid.")

    dx = np.diff(grid_times)
    if values.ndim == 2:
        dx = dx[:, None]
    cum_int = np.zeros_like(values)
    cum_int[1:] = np.cumsum(dx * (values[1:] + values[:-1]) / 2.0, axis=0)

    int_starts, val_starts = _integral_up_to(grid_times, values, cum_int, frame_starts)
    int_ends, val_ends = _integral_up_to(grid_times, values, cum_int, frame_ends)

    durations = frame_ends - frame_starts
    if values.ndim == 2:
        durations = durations[:, None]
    zero_length = durations == 0.0
    safe_durations = np.where(zero_length, 1.0, durations)
    return np.where(zero_length, val_starts, (int_ends - int_starts) / safe_durations)


def _integral_up_to(grid_times: np.ndarray,
                    values: np.ndarray,
                    cum_int: np.ndarray,
                    times: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    r"""Cumulative trapezoidal integral and interpolated value of a grid curve at arbitrary times."""
    idx = np.clip(np.searchsorted(grid_times, times, side='right') - 1, 0, len(grid_times) - 2)
    t_lo = grid_times[idx]
    frac = (times - t_lo) / (grid_times[idx + 1] - t_lo)
    offset = times - t_lo
    if values.ndim == 2:
        frac = frac[:, None]
        offset = offset[:, None]
    vals_at = values[idx] + frac * (values[idx + 1] - values[idx])
    return cum_int[idx] + offset * (values[idx] + vals_at) / 2.0, vals_at


@dataclass(frozen=True, eq=False)
class ScanTiming:
    r"""
    Frame intervals of a dynamic scan and the fine time grid used to evaluate models.

    The fine grid is the uniform grid :math:`0, \Delta, 2\Delta, \ldots` up to the end of the last frame, merged
    with every frame start and end. Frames are therefore always aligned with grid points.

    Attributes:
        frame_starts (np.ndarray): Frame start times.
        frame_ends (np.ndarray): Frame end times.
        step (float): Fine-grid step size. If not provided, it defaults to
            ``max(min(frame durations) / 5, last frame end / 5000)``.
        fine_grid (np.ndarray): The fine evaluation grid. Computed on construction.

    Raises:
        InvalidFrames: If a frame is negative or has its end before its start, or frames overlap or are out of
            order.

    Example:

        .. code-block:: python

            import numpy as np
            from petkmap.kinetic_modeling.frame_integration import ScanTiming

            durations = np.array([0.5] * 4 + [1.0] * 4 + [5.0] * 4)
            ends = np.cumsum(durations)
            timing = ScanTiming(frame_starts=ends - durations, frame_ends=ends)
            print(timing.num_frames, timing.step, len(timing.fine_grid))

    """
    frame_starts: np.ndarray
    frame_ends: np.ndarray
    step: Union[float, None] = None
    fine_grid: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        starts = np.asarray(self.frame_starts, dtype=float)
        ends = np.asarray(self.frame_ends, dtype=float)
        self.validate_frames(starts, ends)
        step = self.default_step(starts, ends) if self.step is None else float(self.step)
        if step <= 0.0:
            raise InvalidFrames(f"The fine-grid step must be positive. Got {step}.")

        edges = np.unique(np.concatenate([[0.0], starts, ends]))
        uniform = np.arange(0.0, ends[-1], step)
        above = np.clip(np.searchsorted(edges, uniform), 1, max(len(edges) - 1, 1))
        nearest = np.minimum(np.abs(uniform - edges[above - 1]), np.abs(edges[above] - uniform))
        near_edge = nearest < 1.0e-6 * step
        fine_grid = np.union1d(uniform[~near_edge], edges)
        starts.setflags(write=False)
        ends.setflags(write=False)
        fine_grid.setflags(write=False)
        object.__setattr__(self, 'frame_starts', starts)
        object.__setattr__(self, 'frame_ends', ends)
        object.__setattr__(self, 'step', step)
        object.__setattr__(self, 'fine_grid', fine_grid)

    @staticmethod
    def validate_frames(starts: np.ndarray, ends: np.ndarray) -> None:
        if starts.ndim != 1 or starts.shape != ends.shape or len(starts) == 0:
            raise InvalidFrames("Frame starts and ends must be non-empty 1D arrays of the same length. "
                                f"Got {starts.shape} and {ends.shape}.")
        if np.any(starts < 0.0):
            raise InvalidFrames("Frame start times must be non-negative.")
        if np.any(ends < starts):
            raise InvalidFrames("Each frame must end after it starts.")
        if np.any(starts[1:] < ends[:-1]):
            raise InvalidFrames("Frames must be ordered and must not overlap.")
        if ends[-1] <= 0.0:
            raise InvalidFrames("The last frame must end after t=0.")

    @staticmethod
    def default_step(starts: np.ndarray, ends: np.ndarray) -> float:
        durations = ends - starts
        positive = durations[durations > 0.0]
        shortest = np.min(positive) if len(positive) else ends[-1]
        return float(max(shortest / 5.0, ends[-1] / 5000.0))

    @property
    def num_frames(self) -> int:
        return len(self.frame_starts)

    @property
    def frame_durations(self) -> np.ndarray:
        return self.frame_ends - self.frame_starts

    @property
    def frame_mid_times(self) -> np.ndarray:
        return (self.frame_starts + self.frame_ends) / 2.0

    def average(self, values: np.ndarray) -> np.ndarray:
        """Frame-averages a curve (or a matrix of curves) sampled on :attr:`fine_grid`."""
        return average_over_frames(self.fine_grid, values, self.frame_starts, self.frame_ends)

    @classmethod
    def from_durations(cls, durations: np.ndarray, step: Union[float, None] = None) -> 'ScanTiming':
        """Builds back-to-back frames starting at :math:`t=0` from their durations."""
        durations = np.asarray(durations, dtype=float)
        ends = np.cumsum(durations)
        return cls(frame_starts=ends - durations, frame_ends=ends, step=step)

    @classmethod
    def from_nifti(cls, image_path: str, time_scale: float = 1.0 / 60.0,
                   step: Union[float, None] = None) -> 'ScanTiming':
        r"""
        Builds the scan timing from the BIDS JSON sidecar of a 4D-PET NIfTI image.

        Args:
            image_path (str): Path to the NIfTI image. A ``.json`` sidecar with the same name must exist.
            time_scale (float): Factor applied to the BIDS frame times (seconds). Defaults to ``1/60`` so that
                times are in minutes.
            step (float, optional): Fine-grid step in the scaled units.

        Returns:
            ScanTiming: The frame timing of the image.

        See Also:
            :func:`petkmap.utils.image_io.get_frame_timing_for_nifti`
        """
        starts, ends = image_io.get_frame_timing_for_nifti(image_path=image_path)
        return cls(frame_starts=starts * time_scale, frame_ends=ends * time_scale, step=step)
