"""
Kalman filtering and exact Gaussian likelihood for the CTCRW model.

The forward filter runs over arbitrary, irregular times. Transition and
process-noise matrices are evaluated in closed form for every gap Δt (see
:mod:`pyctcrw.modeling.specification`); nothing is discretized on a fixed grid.

Algorithm Overview:
1. Predict: x⁻ = T x, P⁻ = T P Tᵀ + Q
2. Innovation: r = z - H x⁻, S = H P⁻ Hᵀ + R
3. Update: K = P⁻ Hᵀ S⁻¹, x = x⁻ + K r, P = P⁻ - K H P⁻
4. Likelihood: ℓ += -½ log|S| - ½ rᵀ S⁻¹ r - log 2π

Rows whose observation is NaN are prediction-only: the update and the likelihood
contribution are skipped. A zero gap is a simultaneous update (T = I, Q = 0).
"""

from dataclasses import dataclass

import numpy as np
import scipy.linalg as sla

from pyctcrw.errors import NumericalError
from pyctcrw.modeling.specification import ctcrw_process_noise, ctcrw_transition

_LOG_2PI = np.log(2.0 * np.pi)


@dataclass(frozen=True)
class FilterResult:
    """
    Output of one forward filter pass.

    Attributes
    ----------
    log_likelihood : float
        Sum of the innovation log-densities over observed rows.
    times : np.ndarray, shape (n,)
    observed : np.ndarray of bool, shape (n,)
    x_pred, P_pred : np.ndarray, shapes (n, 4) and (n, 4, 4)
        One-step predictions (the initial state for the first row).
    x_filt, P_filt : np.ndarray, shapes (n, 4) and (n, 4, 4)
        Filtered estimates.
    transitions : np.ndarray, shape (n, 4, 4)
        T(Δt) used to reach each row from the previous one (identity for row 0).
    """

    log_likelihood: float
    times: np.ndarray
    observed: np.ndarray
    x_pred: np.ndarray
    P_pred: np.ndarray
    x_filt: np.ndarray
    P_filt: np.ndarray
    transitions: np.ndarray


def kalman_filter(
    times,
    observations,
    observation_variances,
    sigma2: float,
    beta: float,
    x0,
    P0,
) -> FilterResult:
    """
    Run the CTCRW Kalman filter forward over a set of times.

    Parameters
    ----------
    times : array-like, shape (n,)
        Non-decreasing times. The initial state (x0, P0) refers to ``times[0]``.
    observations : array-like, shape (n, 2)
        Observed positions; a row containing NaN is a prediction-only time.
    observation_variances : array-like, shape (n, 2)
        Measurement-error variances per row and axis.
    sigma2, beta : float
        Process parameters (σ², β), both positive.
    x0 : array-like, shape (4,)
    P0 : array-like, shape (4, 4)

    Returns
    -------
    FilterResult

    Raises
    ------
    NumericalError
        If the process parameters are not positive and finite, or an
        innovation covariance is non-finite or not positive-definite.
    """
    t = np.asarray(times, dtype=float)
    Z = np.asarray(observations, dtype=float)
    Rv = np.asarray(observation_variances, dtype=float)
    n = t.size

    if not (np.isfinite(sigma2) and np.isfinite(beta) and sigma2 > 0 and beta > 0):
        raise NumericalError(f"invalid process parameters sigma2={sigma2!r}, beta={beta!r}",
                             stage="filter")

    dts = np.diff(t)
    if np.any(dts < 0):
        raise NumericalError("filter times must be non-decreasing", stage="filter")

    T = np.empty((n, 4, 4))
    T[0] = np.eye(4)
    Q = np.zeros((n, 4, 4))
    if n > 1:
        T[1:] = ctcrw_transition(dts, beta)
        Q[1:] = ctcrw_process_noise(dts, sigma2, beta)

    observed = ~np.any(np.isnan(Z), axis=1)

    x_pred = np.zeros((n, 4))
    P_pred = np.zeros((n, 4, 4))
    x_filt = np.zeros((n, 4))
    P_filt = np.zeros((n, 4, 4))

    loglik = 0.0
    x = np.asarray(x0, dtype=float)
    P = np.asarray(P0, dtype=float)

    for k in range(n):
        # ========== PREDICTION STEP ==========
        if k > 0:
            x = T[k] @ x
            P = T[k] @ P @ T[k].T + Q[k]
        x_pred[k] = x
        P_pred[k] = P

        if not observed[k]:
            x_filt[k] = x
            P_filt[k] = P
            continue

        # ========== Innovation and its Covariance ==========
        r = Z[k] - x[:2]
        S = P[:2, :2] + np.diag(Rv[k])
        if not (np.all(np.isfinite(S)) and np.all(np.isfinite(r))):
            raise NumericalError(f"non-finite innovation at row {k}", stage="filter")
        try:
            cho = sla.cho_factor(S, lower=True, check_finite=False)
        except np.linalg.LinAlgError as exc:
            raise NumericalError(f"innovation covariance not positive-definite at row {k}",
                                 stage="filter") from exc

        # ========== UPDATE STEP ==========
        # K = P Hᵀ S⁻¹; with H = [I 0] this is P[:, :2] S⁻¹
        gain_t = sla.cho_solve(cho, P[:2, :], check_finite=False)
        x = x + gain_t.T @ r
        P = P - P[:, :2] @ gain_t
        P = 0.5 * (P + P.T)
        x_filt[k] = x
        P_filt[k] = P

        # ========== Likelihood Contribution ==========
        log_det = 2.0 * np.sum(np.log(np.diag(cho[0])))
        mahal = float(r @ sla.cho_solve(cho, r, check_finite=False))
        loglik += -0.5 * log_det - 0.5 * mahal - _LOG_2PI

    if not np.isfinite(loglik):
        raise NumericalError("log-likelihood is not finite", stage="filter")

    return FilterResult(
        log_likelihood=float(loglik),
        times=t,
        observed=observed,
        x_pred=x_pred,
        P_pred=P_pred,
        x_filt=x_filt,
        P_filt=P_filt,
        transitions=T,
    )


def filter_model(model, theta, times=None, observations=None,
                 observation_variances=None) -> FilterResult:
    """
    Run the filter for a bound :class:`CTCRWModel` and a full parameter vector.

    By default the filter runs over the model's own observations. The keyword
    arguments let the predictor substitute an augmented time grid.
    """
    theta = np.asarray(theta, dtype=float)
    sigma2, beta = model.process_parameters(theta)
    x0, P0 = model.initial_state(theta)

    if times is None:
        times = model.observations.times
        observations = model.observations.positions
        observation_variances = model.measurement_variances(theta)

    return kalman_filter(times, observations, observation_variances, sigma2, beta, x0, P0)


def log_likelihood(model, theta) -> float:
    """
    Exact Gaussian log-likelihood of the model's observations.

    Raises
    ------
    NumericalError
        For degenerate parameter values (see :func:`kalman_filter`).
    """
    return filter_model(model, theta).log_likelihood
