"""
Classes to handle data related to time activity curves (TACs) and input functions.
"""
from dataclasses import dataclass, field
from typing import Union

import numpy as np

from .image_io import safe_load_tac
from .errors import InvalidFrames
from ..kinetic_modeling.exp_convolution import validate_input_samples


@dataclass(frozen=True, eq=False)
class InputFunction:
    """
    Blood input function that drives a compartment model.

    For the reference tissue model the reference-region TAC takes the place of the plasma curve.

    Attributes:
        times (np.ndarray): Strictly increasing sample times.
        plasma (np.ndarray): Plasma (or reference-region) activity at each sample time.
        whole_blood (np.ndarray): Whole-blood activity at each sample time. Defaults to the plasma curve.

    Raises:
        InsufficientInput: If there are fewer than two samples, or the times are not strictly increasing.

    """
    times: np.ndarray
    plasma: np.ndarray
    whole_blood: Union[np.ndarray, None] = None

    def __post_init__(self):
        times = np.asarray(self.times, dtype=float)
        plasma = np.asarray(self.plasma, dtype=float)
        whole_blood = plasma if self.whole_blood is None else np.asarray(self.whole_blood, dtype=float)
        validate_input_samples(times, plasma)
        validate_input_samples(times, whole_blood)
        for arr in (times, plasma, whole_blood):
            arr.setflags(write=False)
        object.__setattr__(self, 'times', times)
        object.__setattr__(self, 'plasma', plasma)
        object.__setattr__(self, 'whole_blood', whole_blood)

    @classmethod
    def from_file(cls, filename: str) -> 'InputFunction':
        """
        Loads an input function from a text file with the columns ``time plasma [whole_blood]``.

        Args:
            filename (str): Path to the input function file.

        Returns:
            InputFunction: The loaded input function.

        Raises:
            ValueError: If the file does not have two or three columns.
        """
        tac_data = safe_load_tac(filename)
        if tac_data.shape[0] not in (2, 3):
            raise ValueError(f"Input function files need 2 or 3 columns (time, plasma, [whole blood]). "
                             f"{filename} has {tac_data.shape[0]}.")
        whole_blood = tac_data[2] if tac_data.shape[0] == 3 else None
        return cls(times=tac_data[0], plasma=tac_data[1], whole_blood=whole_blood)


@dataclass
class FramedTimeActivityCurve:
    """
    Frame-averaged TAC of a region, with one weight per frame.

    Attributes:
        frame_starts (np.ndarray): Frame start times.
        frame_ends (np.ndarray): Frame end times.
        tac_vals (np.ndarray): Frame-averaged activity values.
        weights (np.ndarray): Non-negative per-frame weights; defaults to ones.
    """
    frame_starts: np.ndarray
    frame_ends: np.ndarray
    tac_vals: np.ndarray
    weights: np.ndarray = field(default=None)

    def __post_init__(self):
        self.frame_starts = np.asarray(self.frame_starts, dtype=float)
        self.frame_ends = np.asarray(self.frame_ends, dtype=float)
        self.tac_vals = np.asarray(self.tac_vals, dtype=float)
        if self.weights is None:
            self.weights = np.ones_like(self.tac_vals)
        self.weights = np.asarray(self.weights, dtype=float)
        num_frames = len(self.tac_vals)
        if any(len(arr) != num_frames for arr in (self.frame_starts, self.frame_ends, self.weights)):
            raise InvalidFrames("Frame starts, frame ends, values and weights must have the same length.")
        if np.any(self.weights < 0.0):
            raise ValueError("Frame weights must be non-negative.")

    @property
    def frame_mid_times(self) -> np.ndarray:
        return (self.frame_starts + self.frame_ends) / 2.0

    @classmethod
    def from_file(cls, filename: str) -> 'FramedTimeActivityCurve':
        """
        Loads a TAC from a text file with the columns ``frame_start frame_end value [weight]``.

        Args:
            filename (str): Path to the TAC file.

        Returns:
            FramedTimeActivityCurve: The loaded TAC.

        Raises:
            ValueError: If the file does not have three or four columns.
        """
        tac_data = safe_load_tac(filename)
        if tac_data.shape[0] not in (3, 4):
            raise ValueError(f"TAC files need 3 or 4 columns (frame start, frame end, value, [weight]). "
                             f"{filename} has {tac_data.shape[0]}.")
        weights = tac_data[3] if tac_data.shape[0] == 4 else None
        return cls(frame_starts=tac_data[0], frame_ends=tac_data[1], tac_vals=tac_data[2], weights=weights)
