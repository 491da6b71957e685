"""
Forward simulation of CTCRW tracks.

Draws exact sample paths of the continuous-time correlated random walk at
arbitrary times, using the same closed-form transition and process-noise
matrices as the filter, and adds Gaussian measurement error per error class.
Used to build synthetic deployments for tests and sanity checks.
"""

from typing import Any, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from pyctcrw.errors import ConfigurationError
from pyctcrw.modeling.observations import ObservationSequence
from pyctcrw.modeling.specification import ctcrw_process_noise, ctcrw_transition


def simulate_ctcrw(
    times: Sequence[float],
    sigma: float,
    beta: float,
    error_sd: Union[float, Mapping[str, float]] = 0.0,
    error_classes: Optional[Sequence[Any]] = None,
    initial_position: Tuple[float, float] = (0.0, 0.0),
    initial_velocity: Optional[Tuple[float, float]] = None,
    seed: Optional[int] = None,
    deployment: Any = None,
) -> Tuple[np.ndarray, ObservationSequence]:
    """
    Simulate a CTCRW track and noisy observations of it.

    Parameters
    ----------
    times : sequence of float
        Strictly increasing observation times.
    sigma : float
        Diffusion scale σ (> 0).
    beta : float
        Velocity mean-reversion rate β (> 0).
    error_sd : float or mapping, default=0.0
        Measurement-error standard deviation, either one value for every fix
        or a mapping error class -> sd.
    error_classes : sequence, optional
        Error class label of each fix. Required when ``error_sd`` is a
        mapping; defaults to ``"default"`` for every fix otherwise.
    initial_position : (float, float), default=(0, 0)
    initial_velocity : (float, float) or None, default=None
        ``None`` draws the initial velocity from the stationary distribution
        N(0, σ²β/2) on each axis.
    seed : int or None, default=None
    deployment : any, optional
        Key attached to the returned observation sequence.

    Returns
    -------
    states : np.ndarray, shape (n, 4)
        True [x, y, vx, vy] at each time.
    observations : ObservationSequence
        Positions with measurement error added.

    Examples
    --------
    >>> t = np.arange(0.0, 100.0, 1.0)
    >>> states, obs = simulate_ctcrw(t, sigma=1.0, beta=0.5, error_sd=0.1, seed=0)
    >>> states.shape
    (100, 4)
    """
    t = np.asarray(times, dtype=float).reshape(-1)
    n = t.size
    if n == 0:
        raise ConfigurationError("at least one time is required", stage="simulate")
    if not (sigma > 0 and beta > 0):
        raise ConfigurationError("sigma and beta must be positive", stage="simulate")

    if error_classes is None:
        if isinstance(error_sd, Mapping):
            raise ConfigurationError("error_classes are required with a per-class error_sd",
                                     stage="simulate")
        error_classes = ["default"] * n
    labels = np.array([str(c) for c in error_classes], dtype=object)
    if labels.size != n:
        raise ConfigurationError("error_classes must have one label per time", stage="simulate")

    if isinstance(error_sd, Mapping):
        table = {str(k): float(v) for k, v in error_sd.items()}
        missing = sorted(set(labels) - set(table))
        if missing:
            raise ConfigurationError(f"no error_sd for classes {missing}", stage="simulate")
        sds = np.array([table[c] for c in labels])
    else:
        sds = np.full(n, float(error_sd))
    if np.any(sds < 0):
        raise ConfigurationError("error_sd must be non-negative", stage="simulate")

    rng = np.random.default_rng(seed)
    sigma2 = float(sigma) ** 2

    # ========== Initial State ==========
    states = np.zeros((n, 4))
    states[0, :2] = initial_position
    if initial_velocity is None:
        states[0, 2:] = rng.normal(0.0, np.sqrt(0.5 * sigma2 * beta), size=2)
    else:
        states[0, 2:] = initial_velocity

    # ========== Exact Transitions ==========
    if n > 1:
        dts = np.diff(t)
        if np.any(dts <= 0):
            raise ConfigurationError("times must be strictly increasing", stage="simulate")
        T = ctcrw_transition(dts, beta)
        Q = ctcrw_process_noise(dts, sigma2, beta)
        for k in range(1, n):
            noise = rng.multivariate_normal(np.zeros(4), Q[k - 1], method="eigh")
            states[k] = T[k - 1] @ states[k - 1] + noise

    positions = states[:, :2] + rng.normal(size=(n, 2)) * sds[:, None]
    observations = ObservationSequence(t, positions, labels, deployment=deployment)
    return states, observations
