"""
Exceptions raised by the kinetic modeling engine.

Contract violations (bad shapes, unknown models, inverted bounds) derive from :class:`KineticFitError`, which is a
:class:`ValueError`, and are raised before any fitting iteration starts. :class:`SingularSystem` is only raised by the
damped normal-equation solve and is handled inside :func:`petkmap.kinetic_modeling.lm_solver.levenberg_marquardt`.
"""


class KineticFitError(ValueError):
    """Base class for contract violations in the kinetic modeling engine."""


class InsufficientInput(KineticFitError):
    """The input function has fewer than two samples, or its times are not strictly increasing."""


class UnknownModel(KineticFitError):
    """The requested model variant is not one of the supported compartment models."""


class ParameterCountMismatch(KineticFitError):
    """The number of parameters (or bounds, or mask entries) does not match the model."""


class InvalidBounds(KineticFitError):
    """A lower bound is larger than its upper bound."""


class InvalidFrames(KineticFitError):
    """Frame intervals are negative, overlapping, or out of order."""


class InsufficientFrames(KineticFitError):
    """There are more free parameters than frames with a non-zero weight."""


class SingularSystem(ArithmeticError):
    """The damped normal-equation matrix could not be solved."""
