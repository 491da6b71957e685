"""
CTCRW modeling module for pyctcrw.

This module provides the statistical core of the engine:
- Observations: Time-ordered fixes of one deployment, DataFrame adapters
- Specification: Parameter roles (fixed/free, bounds) and closed-form CTCRW matrices
- Likelihood: Kalman filter over irregular times with exact Gaussian log-likelihood
- Estimation: Bounded maximum-likelihood fitting with restarts and warm start
"""

# Observations
from pyctcrw.modeling.observations import (
    Fix,
    ObservationSequence,
    jitter_duplicate_times,
    observations_from_dataframe,
)

# Specification
from pyctcrw.modeling.specification import (
    CTCRWModel,
    ModelSpecification,
    ParameterSpec,
    ctcrw_process_noise,
    ctcrw_transition,
    fixed,
    free,
)

# Likelihood
from pyctcrw.modeling.likelihood import FilterResult, filter_model, kalman_filter, log_likelihood

# Estimation
from pyctcrw.modeling.estimation import FitResult, FitStatus, fit_ctcrw

__all__ = [
    # Observations
    'Fix',
    'ObservationSequence',
    'jitter_duplicate_times',
    'observations_from_dataframe',
    # Specification
    'ParameterSpec',
    'ModelSpecification',
    'CTCRWModel',
    'fixed',
    'free',
    'ctcrw_transition',
    'ctcrw_process_noise',
    # Likelihood
    'FilterResult',
    'kalman_filter',
    'filter_model',
    'log_likelihood',
    # Estimation
    'FitStatus',
    'FitResult',
    'fit_ctcrw',
]
