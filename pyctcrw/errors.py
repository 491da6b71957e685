"""
Exception hierarchy for pyctcrw.

Every error raised by the engine derives from :class:`CTCRWError`, which can
carry the deployment key and the pipeline stage where it happened. Batch
runners use these two attributes to report partial failures without aborting
the remaining deployments.

Taxonomy
--------
- ConfigurationError: malformed model specification, bounds or inputs
- NumericalError: non positive-definite innovation covariance in the filter
- ConvergenceFailure: the optimizer exhausted its attempt budget
- UnfitModelError: prediction or correction requested on a failed fit
- BarrierUnresolvedError: residual barrier intersections after path correction
"""

from typing import Any, Optional


class CTCRWError(Exception):
    """Base class for all pyctcrw errors."""

    def __init__(self, message: str, deployment: Any = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.deployment = deployment
        self.stage = stage

    def __str__(self) -> str:
        context = []
        if self.deployment is not None:
            context.append(f"deployment={self.deployment!r}")
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConfigurationError(CTCRWError, ValueError):
    """Raised for an incomplete or inconsistent model specification."""


class NumericalError(CTCRWError, ArithmeticError):
    """Raised when an innovation covariance is not positive-definite."""


class ConvergenceFailure(CTCRWError):
    """The optimizer could not produce a usable fit."""


class UnfitModelError(ConvergenceFailure):
    """Raised when a failed fit is used for prediction or path correction."""


class BarrierUnresolvedError(CTCRWError):
    """
    Raised when path correction stops with barrier intersections left.

    Attributes
    ----------
    runs : list of dict
        One entry per unresolved run with its ``start`` and ``stop`` track
        indices and the ``coordinates`` of the offending points.
    track : pyctcrw.predicting.smoother.Track
        The partially corrected track at the moment the iteration bound was hit.
    """

    def __init__(self, message: str, runs=None, track=None, deployment: Any = None,
                 stage: Optional[str] = "correct"):
        super().__init__(message, deployment=deployment, stage=stage)
        self.runs = list(runs) if runs is not None else []
        self.track = track
