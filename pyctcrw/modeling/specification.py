"""
CTCRW state-space model specification for pyctcrw.

This module turns a user-facing description of the model (which parameters are
fixed, which are free, their starting values and bounds) into a fully specified
:class:`CTCRWModel` bound to one deployment's observations.

Process Model
-------------
Each axis carries an independent, identical continuous-time correlated random
walk: velocity is an Ornstein-Uhlenbeck process with mean-reversion rate ``β``
and position integrates velocity. With ``x = β Δt``:

- T(Δt)   = [[1, (1 - e^(-x)) / β], [0, e^(-x)]]
- Q11(Δt) = σ²/β · (x - 2(1 - e^(-x)) + (1 - e^(-2x)) / 2)
- Q12(Δt) = σ²/2 · (1 - e^(-x))²
- Q22(Δt) = σ²β/2 · (1 - e^(-2x))

The stationary velocity variance is ``σ²β/2`` and, as ``β → ∞``, the position
process reduces to Brownian motion with variance ``σ² Δt``. Both parameters are
estimated on the log scale (``log_sigma``, ``log_beta``).

State vector: [x, y, vx, vy]. Observation: [x, y] with independent Gaussian
errors whose standard deviations depend on the fix's error class.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from pyctcrw.errors import ConfigurationError

# Below this value of β·Δt the position variance is evaluated by its series
# expansion; the closed form loses precision to cancellation.
_SERIES_THRESHOLD = 1e-4

PROCESS_PARAMETERS = ("log_sigma", "log_beta")


@dataclass(frozen=True)
class ParameterSpec:
    """
    Role, starting value and box constraint of one model parameter.

    Parameters
    ----------
    value : float
        Fixed value, or starting value when the parameter is free.
    fixed : bool, default=False
        Hold the parameter at ``value`` instead of estimating it.
    lower, upper : float
        Box constraint for the estimator. Infinite bounds are allowed.
    """

    value: float
    fixed: bool = False
    lower: float = -np.inf
    upper: float = np.inf

    def validate(self, name: str) -> None:
        if not np.isfinite(self.value):
            raise ConfigurationError(f"parameter {name!r} has a non-finite value {self.value!r}",
                                     stage="specification")
        if np.isnan(self.lower) or np.isnan(self.upper):
            raise ConfigurationError(f"parameter {name!r} has a NaN bound", stage="specification")
        if self.lower > self.upper:
            raise ConfigurationError(
                f"parameter {name!r} has lower bound {self.lower} > upper bound {self.upper}",
                stage="specification",
            )
        if not self.fixed and not (self.lower <= self.value <= self.upper):
            raise ConfigurationError(
                f"starting value {self.value} of {name!r} lies outside [{self.lower}, {self.upper}]",
                stage="specification",
            )


def fixed(value: float) -> ParameterSpec:
    """Shorthand for a fixed parameter."""
    return ParameterSpec(float(value), fixed=True)


def free(value: float, lower: float = -np.inf, upper: float = np.inf) -> ParameterSpec:
    """Shorthand for a free parameter with optional bounds."""
    return ParameterSpec(float(value), fixed=False, lower=float(lower), upper=float(upper))


ErrorClassEntry = Union[ParameterSpec, Tuple[ParameterSpec, ParameterSpec]]


def _as_spec(entry) -> ParameterSpec:
    if isinstance(entry, ParameterSpec):
        return entry
    if isinstance(entry, (int, float)):
        return fixed(entry)
    raise ConfigurationError(f"cannot interpret {entry!r} as a ParameterSpec", stage="specification")


# ========== Closed-Form Transition and Process Noise ==========

def ctcrw_transition(dt, beta: float) -> np.ndarray:
    """
    State-transition matrices T(Δt) for the 4-dimensional state [x, y, vx, vy].

    Parameters
    ----------
    dt : float or array-like, shape (m,)
        Elapsed times (non-negative).
    beta : float
        Velocity mean-reversion rate (> 0).

    Returns
    -------
    np.ndarray, shape (m, 4, 4)
    """
    dt = np.atleast_1d(np.asarray(dt, dtype=float))
    x = beta * dt
    t12 = -np.expm1(-x) / beta
    t22 = np.exp(-x)

    T = np.zeros((dt.size, 4, 4))
    T[:, 0, 0] = 1.0
    T[:, 1, 1] = 1.0
    T[:, 0, 2] = t12
    T[:, 1, 3] = t12
    T[:, 2, 2] = t22
    T[:, 3, 3] = t22
    return T


def ctcrw_process_noise(dt, sigma2: float, beta: float) -> np.ndarray:
    """
    Process-noise covariance matrices Q(Δt) for the state [x, y, vx, vy].

    Parameters
    ----------
    dt : float or array-like, shape (m,)
        Elapsed times (non-negative). ``Δt = 0`` gives a zero matrix.
    sigma2 : float
        Squared position diffusion scale σ².
    beta : float
        Velocity mean-reversion rate (> 0).

    Returns
    -------
    np.ndarray, shape (m, 4, 4)
    """
    dt = np.atleast_1d(np.asarray(dt, dtype=float))
    x = beta * dt
    em1 = np.expm1(-x)
    em2 = np.expm1(-2.0 * x)

    # x - 2(1 - e^-x) + (1 - e^-2x)/2, switched to its series for tiny x
    g = x + 2.0 * em1 - 0.5 * em2
    small = x < _SERIES_THRESHOLD
    xs = x[small]
    g[small] = xs ** 3 / 3.0 - xs ** 4 / 4.0 + 7.0 * xs ** 5 / 60.0

    q11 = sigma2 / beta * g
    q12 = 0.5 * sigma2 * em1 ** 2
    q22 = -0.5 * sigma2 * beta * em2

    Q = np.zeros((dt.size, 4, 4))
    Q[:, 0, 0] = q11
    Q[:, 1, 1] = q11
    Q[:, 0, 2] = Q[:, 2, 0] = q12
    Q[:, 1, 3] = Q[:, 3, 1] = q12
    Q[:, 2, 2] = q22
    Q[:, 3, 3] = q22
    return Q


# ========== User-Facing Specification ==========

@dataclass(frozen=True)
class ModelSpecification:
    """
    Parameter roles of a CTCRW model.

    Parameters
    ----------
    error_classes : mapping
        Error class label -> log standard deviation of the measurement error.
        An entry is either one :class:`ParameterSpec` shared by both axes, a
        ``(x_spec, y_spec)`` pair for separate axes, or a plain number
        (shorthand for a fixed value). Labels are compared as strings.
    log_sigma : ParameterSpec
        Log position diffusion scale.
    log_beta : ParameterSpec
        Log velocity mean-reversion rate. A finite lower bound keeps the fit
        away from degenerate near-zero-noise solutions.
    initial_position_sd : float, default=1e4
        Standard deviation of the initial position around the first fix.
    initial_velocity_sd : float or None, default=None
        Standard deviation of the initial velocity. ``None`` uses the
        stationary velocity standard deviation ``sqrt(σ²β/2)``.

    Notes
    -----
    The CTCRW parameters and the overall measurement-error scale are not
    jointly identifiable, so at least one error-class parameter must be fixed.
    """

    error_classes: Mapping[str, ErrorClassEntry]
    log_sigma: ParameterSpec = field(default_factory=lambda: free(0.0))
    log_beta: ParameterSpec = field(default_factory=lambda: free(0.0))
    initial_position_sd: float = 1e4
    initial_velocity_sd: Optional[float] = None

    def parameter_specs(self) -> Tuple[List[str], List[ParameterSpec], Dict[str, Tuple[int, int]]]:
        """
        Flatten the specification into parameter names and specs.

        Returns
        -------
        names : list of str
            ``log_tau_x[<class>]`` / ``log_tau_y[<class>]`` per class followed by
            ``log_sigma`` and ``log_beta``.
        specs : list of ParameterSpec
        class_index : dict
            Error class -> (index of x parameter, index of y parameter).
        """
        if not self.error_classes:
            raise ConfigurationError("at least one error class is required", stage="specification")

        names: List[str] = []
        specs: List[ParameterSpec] = []
        class_index: Dict[str, Tuple[int, int]] = {}

        for label, entry in self.error_classes.items():
            key = str(label)
            if key in class_index:
                raise ConfigurationError(f"error class {key!r} is listed twice", stage="specification")
            if isinstance(entry, tuple):
                if len(entry) != 2:
                    raise ConfigurationError(
                        f"error class {key!r} must map to one spec or an (x, y) pair",
                        stage="specification",
                    )
                names += [f"log_tau_x[{key}]", f"log_tau_y[{key}]"]
                specs += [_as_spec(entry[0]), _as_spec(entry[1])]
                class_index[key] = (len(specs) - 2, len(specs) - 1)
            else:
                names.append(f"log_tau[{key}]")
                specs.append(_as_spec(entry))
                class_index[key] = (len(specs) - 1, len(specs) - 1)

        names += list(PROCESS_PARAMETERS)
        specs += [_as_spec(self.log_sigma), _as_spec(self.log_beta)]
        return names, specs, class_index

    def build(self, observations) -> "CTCRWModel":
        """
        Bind the specification to an observation sequence.

        Raises
        ------
        ConfigurationError
            If an observation's error class has no entry, a parameter spec is
            malformed, the initial standard deviations are not positive, or no
            error-class parameter is fixed.
        """
        names, specs, class_index = self.parameter_specs()
        for name, spec in zip(names, specs):
            spec.validate(name)

        n_error = len(names) - len(PROCESS_PARAMETERS)
        if not any(spec.fixed for spec in specs[:n_error]):
            raise ConfigurationError(
                "at least one error-class scale must be fixed to anchor the model scale",
                deployment=observations.deployment, stage="specification",
            )
        if not (self.initial_position_sd > 0):
            raise ConfigurationError("initial_position_sd must be positive", stage="specification")
        if self.initial_velocity_sd is not None and not (self.initial_velocity_sd > 0):
            raise ConfigurationError("initial_velocity_sd must be positive", stage="specification")

        unknown = sorted(set(observations.error_classes) - set(class_index))
        if unknown:
            raise ConfigurationError(
                f"error classes {unknown} have no entry in the error model",
                deployment=observations.deployment, stage="specification",
            )

        idx = np.array([class_index[c] for c in observations.error_classes], dtype=int).reshape(-1, 2)
        return CTCRWModel(
            observations=observations,
            names=tuple(names),
            specs=tuple(specs),
            observation_index=idx,
            class_index=class_index,
            initial_position_sd=float(self.initial_position_sd),
            initial_velocity_sd=self.initial_velocity_sd,
        )


class CTCRWModel:
    """
    A CTCRW model bound to one deployment's observations.

    Instances are created by :meth:`ModelSpecification.build` and map a full
    parameter vector to everything the filter needs: measurement variances per
    fix, process parameters and the initial state.
    """

    def __init__(self, observations, names: Sequence[str], specs: Sequence[ParameterSpec],
                 observation_index: np.ndarray, class_index: Mapping[str, Tuple[int, int]],
                 initial_position_sd: float, initial_velocity_sd: Optional[float]):
        self.observations = observations
        self.names = tuple(names)
        self.specs = tuple(specs)
        self.observation_index = observation_index
        self.class_index = dict(class_index)
        self.initial_position_sd = initial_position_sd
        self.initial_velocity_sd = initial_velocity_sd

        self.free_mask = np.array([not s.fixed for s in self.specs], dtype=bool)
        self.initial_parameters = np.array([s.value for s in self.specs], dtype=float)
        self.lower = np.array([s.lower for s in self.specs], dtype=float)
        self.upper = np.array([s.upper for s in self.specs], dtype=float)

    @property
    def n_free(self) -> int:
        return int(self.free_mask.sum())

    @property
    def free_names(self) -> List[str]:
        return [n for n, f in zip(self.names, self.free_mask) if f]

    def expand(self, free_values) -> np.ndarray:
        """Full parameter vector with fixed values substituted."""
        theta = self.initial_parameters.copy()
        theta[self.free_mask] = np.asarray(free_values, dtype=float)
        return theta

    def process_parameters(self, theta) -> Tuple[float, float]:
        """Return (σ², β) for a full parameter vector."""
        log_sigma, log_beta = theta[-2], theta[-1]
        return float(np.exp(2.0 * log_sigma)), float(np.exp(log_beta))

    def measurement_variances(self, theta) -> np.ndarray:
        """Per-fix measurement variances, shape (n, 2)."""
        tau2 = np.exp(2.0 * np.asarray(theta, dtype=float))
        return tau2[self.observation_index]

    def initial_state(self, theta) -> Tuple[np.ndarray, np.ndarray]:
        """Initial mean and covariance at the time of the first fix."""
        sigma2, beta = self.process_parameters(theta)
        x0 = np.zeros(4)
        x0[:2] = self.observations.positions[0]

        if self.initial_velocity_sd is None:
            vel_var = 0.5 * sigma2 * beta
        else:
            vel_var = self.initial_velocity_sd ** 2
        pos_var = self.initial_position_sd ** 2
        P0 = np.diag([pos_var, pos_var, vel_var, vel_var])
        return x0, P0

    def rebind(self, observations) -> "CTCRWModel":
        """Same parameters, bound to another observation sequence."""
        if observations is self.observations:
            return self
        unknown = sorted(set(observations.error_classes) - set(self.class_index))
        if unknown:
            raise ConfigurationError(
                f"error classes {unknown} have no entry in the error model",
                deployment=observations.deployment, stage="specification",
            )
        idx = np.array([self.class_index[c] for c in observations.error_classes],
                       dtype=int).reshape(-1, 2)
        return CTCRWModel(observations, self.names, self.specs, idx, self.class_index,
                          self.initial_position_sd, self.initial_velocity_sd)
