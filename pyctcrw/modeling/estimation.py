"""
Maximum-likelihood estimation of CTCRW parameters.

The estimator minimizes the negative Kalman-filter log-likelihood over the free
parameters of a :class:`~pyctcrw.modeling.specification.CTCRWModel` with
``scipy.optimize``:

1. Validate the specification and bounds (no filtering happens before this).
2. Optionally warm-start each attempt with a capped ``dual_annealing`` search.
3. Refine with L-BFGS-B inside the box constraints.
4. Accept the attempt only if the optimizer converged and the numerical
   Hessian of the negative log-likelihood is invertible.
5. Keep the best accepted attempt; later attempts start from perturbed points.

A trial that makes the filter fail (:class:`NumericalError`) is scored with a
large finite penalty so the optimizer backs away without aborting the run.
"""

import enum
import warnings
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import dual_annealing, minimize
from tqdm import tqdm

from pyctcrw.errors import ConfigurationError, NumericalError, UnfitModelError
from pyctcrw.modeling.likelihood import log_likelihood

# Objective value for rejected trials. Finite so that L-BFGS-B line searches
# simply reject the step.
_PENALTY = 1e25


def _locked(a, dtype) -> np.ndarray:
    a = np.array(a, dtype=dtype)
    a.flags.writeable = False
    return a


class FitStatus(enum.Enum):
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True)
class FitResult:
    """
    Immutable outcome of :func:`fit_ctcrw`.

    Attributes
    ----------
    parameters : np.ndarray
        Full parameter vector (fixed values included), log scale.
    names : tuple of str
    free_mask : np.ndarray of bool
    covariance : np.ndarray or None
        Covariance of the free parameters (inverse Hessian of the negative
        log-likelihood). ``None`` when the fit failed.
    log_likelihood : float
        Achieved log-likelihood (``-inf`` when the fit failed).
    status : FitStatus
    attempts : int
        Number of attempts made.
    message : str
        Optimizer message of the accepted attempt, or the collected failure
        reasons.
    model : CTCRWModel
        The bound model; used by the predictor and path corrector.
    """

    parameters: np.ndarray
    names: Tuple[str, ...]
    free_mask: np.ndarray
    covariance: Optional[np.ndarray]
    log_likelihood: float
    status: FitStatus
    attempts: int
    message: str
    model: object = field(repr=False, compare=False)

    def __post_init__(self):
        # Frozen dataclass: arrays are copied and locked so predict/fix_path
        # always see the fitted values
        object.__setattr__(self, "parameters", _locked(self.parameters, float))
        object.__setattr__(self, "free_mask", _locked(self.free_mask, bool))
        if self.covariance is not None:
            object.__setattr__(self, "covariance", _locked(self.covariance, float))

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED

    @property
    def n_free(self) -> int:
        return int(np.sum(self.free_mask))

    @property
    def aic(self) -> float:
        return -2.0 * self.log_likelihood + 2.0 * self.n_free

    @property
    def sigma(self) -> float:
        """Position diffusion scale σ."""
        return float(np.exp(self.parameters[self.names.index("log_sigma")]))

    @property
    def beta(self) -> float:
        """Velocity mean-reversion rate β."""
        return float(np.exp(self.parameters[self.names.index("log_beta")]))

    @property
    def standard_errors(self) -> np.ndarray:
        """Standard errors for the full vector; NaN for fixed parameters."""
        se = np.full(self.parameters.size, np.nan)
        if self.covariance is not None:
            se[self.free_mask] = np.sqrt(np.diag(self.covariance))
        return se

    def require_converged(self, stage: Optional[str] = None) -> "FitResult":
        """Return self, or raise :class:`UnfitModelError` for a failed fit."""
        if self.status is not FitStatus.CONVERGED:
            deployment = getattr(getattr(self.model, "observations", None), "deployment", None)
            raise UnfitModelError(
                f"cannot use a fit with status '{self.status.value}': {self.message}",
                deployment=deployment, stage=stage,
            )
        return self

    def summary(self, level: float = 0.95) -> pd.DataFrame:
        """
        Parameter table with estimates, standard errors and Wald intervals.

        Returns
        -------
        pd.DataFrame
            Indexed by parameter name with columns ``estimate``, ``se``,
            ``lower``, ``upper`` and ``fixed``.
        """
        z = stats.norm.ppf(0.5 + level / 2.0)
        se = self.standard_errors
        return pd.DataFrame(
            {
                "estimate": self.parameters,
                "se": se,
                "lower": self.parameters - z * se,
                "upper": self.parameters + z * se,
                "fixed": ~self.free_mask,
            },
            index=pd.Index(self.names, name="parameter"),
        )


def _numerical_hessian(f: Callable, x: np.ndarray, rel_step: float = 1e-4) -> np.ndarray:
    """Central-difference Hessian of a scalar function."""
    x = np.asarray(x, dtype=float)
    m = x.size
    h = rel_step * np.maximum(np.abs(x), 1.0)
    f0 = f(x)
    H = np.zeros((m, m))

    for i in range(m):
        ei = np.zeros(m)
        ei[i] = h[i]
        H[i, i] = (f(x + ei) - 2.0 * f0 + f(x - ei)) / h[i] ** 2
        for j in range(i + 1, m):
            ej = np.zeros(m)
            ej[j] = h[j]
            H[i, j] = H[j, i] = (
                f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)
            ) / (4.0 * h[i] * h[j])
    return H


def _resolve_bounds(model, bounds) -> Tuple[np.ndarray, np.ndarray]:
    """Bounds of the free parameters, validated."""
    lb = model.lower[model.free_mask].copy()
    ub = model.upper[model.free_mask].copy()

    if bounds is not None:
        bounds = list(bounds)
        if len(bounds) != model.n_free:
            raise ConfigurationError(
                f"bounds has {len(bounds)} entries but the model has {model.n_free} free "
                f"parameters ({model.free_names})",
                deployment=model.observations.deployment, stage="estimate",
            )
        for i, pair in enumerate(bounds):
            try:
                lo, hi = pair
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"bounds entry {i} is not a (lower, upper) pair",
                                         stage="estimate") from exc
            lb[i] = -np.inf if lo is None else float(lo)
            ub[i] = np.inf if hi is None else float(hi)

    for i, name in enumerate(model.free_names):
        if np.isnan(lb[i]) or np.isnan(ub[i]) or lb[i] > ub[i]:
            raise ConfigurationError(
                f"invalid bounds for {name!r}: lower={lb[i]}, upper={ub[i]}",
                deployment=model.observations.deployment, stage="estimate",
            )
    return lb, ub


def fit_ctcrw(
    observations,
    specification,
    bounds: Optional[Sequence[Tuple[Optional[float], Optional[float]]]] = None,
    attempts: int = 1,
    retry_sd: float = 1.0,
    global_search_iterations: int = 0,
    search_radius: float = 5.0,
    max_iterations: int = 1000,
    prior: Optional[Callable[[np.ndarray], float]] = None,
    seed: Optional[int] = None,
    verbose: bool = False,
) -> FitResult:
    """
    Fit a CTCRW model to one deployment by maximum likelihood.

    Parameters
    ----------
    observations : ObservationSequence
        Cleaned, strictly time-ordered fixes of one deployment.
    specification : ModelSpecification
        Parameter roles, starting values and default bounds.
    bounds : sequence of (lower, upper) or None, default=None
        Box constraints for the free parameters, in the order of
        ``model.free_names``. ``None`` entries mean unbounded. Overrides the
        bounds stored in the specification.
    attempts : int, default=1
        Number of optimization attempts. Attempt 0 starts at the specified
        values; later attempts start from the best point found so far (or the
        specified values) perturbed by N(0, retry_sd²).
    retry_sd : float, default=1.0
        Standard deviation of the restart perturbation (log scale).
    global_search_iterations : int, default=0
        Iteration cap of the ``dual_annealing`` warm start; 0 disables it.
    search_radius : float, default=5.0
        Half-width of the warm-start box where a bound is infinite.
    max_iterations : int, default=1000
        Iteration cap of each L-BFGS-B run.
    prior : callable or None, default=None
        Log prior density of the full parameter vector, added to the
        log-likelihood during optimization.
    seed : int or None, default=None
        Seed for restart perturbations and the warm start.
    verbose : bool, default=False
        Show a progress bar over attempts and print the outcome.

    Returns
    -------
    FitResult
        ``status=CONVERGED`` with a covariance matrix, or ``status=FAILED``
        with ``covariance=None`` when every attempt failed.

    Raises
    ------
    ConfigurationError
        For an invalid specification or bounds, before any filtering.
    """
    # ========== Validation (no filtering before this point) ==========
    model = specification.build(observations)
    lb, ub = _resolve_bounds(model, bounds)
    if attempts < 1:
        raise ConfigurationError("attempts must be at least 1", stage="estimate")
    if global_search_iterations < 0 or max_iterations < 1:
        raise ConfigurationError("iteration budgets must be positive", stage="estimate")

    free_mask = model.free_mask.copy()

    def objective(free_values):
        theta = model.expand(free_values)
        try:
            value = -log_likelihood(model, theta)
        except NumericalError:
            return _PENALTY
        if prior is not None:
            value -= float(prior(theta))
        if not np.isfinite(value):
            return _PENALTY
        return value

    # ========== No Free Parameters ==========
    if model.n_free == 0:
        theta = model.initial_parameters.copy()
        try:
            ll = log_likelihood(model, theta)
        except NumericalError as exc:
            return FitResult(theta, model.names, free_mask, None, -np.inf, FitStatus.FAILED,
                             1, str(exc), model)
        return FitResult(theta, model.names, free_mask, np.zeros((0, 0)), ll,
                         FitStatus.CONVERGED, 1, "all parameters fixed", model)

    rng = np.random.default_rng(seed)
    start = model.initial_parameters[free_mask]
    best = None
    failures: List[str] = []

    attempt_iter = range(attempts)
    if verbose:
        attempt_iter = tqdm(attempt_iter, desc="ctcrw fit attempts")

    for attempt in attempt_iter:
        # ========== Starting Point ==========
        if attempt == 0:
            x_start = start.copy()
        else:
            base = best[0] if best is not None else start
            x_start = np.clip(base + rng.normal(0.0, retry_sd, size=base.size), lb, ub)

        # ========== Stochastic Warm Start ==========
        if global_search_iterations > 0:
            lo = np.where(np.isfinite(lb), lb, x_start - search_radius)
            hi = np.where(np.isfinite(ub), ub, x_start + search_radius)
            if np.all(hi > lo):
                warm = dual_annealing(
                    objective,
                    bounds=list(zip(lo, hi)),
                    maxiter=global_search_iterations,
                    seed=int(rng.integers(2 ** 31 - 1)),
                    no_local_search=True,
                    x0=np.clip(x_start, lo, hi),
                )
                if warm.fun < objective(x_start):
                    x_start = np.clip(warm.x, lb, ub)

        # ========== Local Gradient-Based Refinement ==========
        res = minimize(
            objective,
            x_start,
            method="L-BFGS-B",
            bounds=list(zip(lb, ub)),
            options={"maxiter": max_iterations},
        )
        if not res.success or res.fun >= _PENALTY:
            failures.append(f"attempt {attempt}: {res.message}")
            continue

        # ========== Hessian and Parameter Covariance ==========
        H = _numerical_hessian(objective, res.x)
        try:
            if not np.all(np.isfinite(H)):
                raise np.linalg.LinAlgError("non-finite Hessian")
            cov = np.linalg.inv(H)
        except np.linalg.LinAlgError as exc:
            failures.append(f"attempt {attempt}: Hessian not invertible ({exc})")
            continue
        cov = 0.5 * (cov + cov.T)
        if not (np.all(np.isfinite(cov)) and np.all(np.diag(cov) > 0)):
            failures.append(f"attempt {attempt}: Hessian not positive-definite")
            continue

        if best is None or res.fun < best[1]:
            best = (res.x.copy(), float(res.fun), cov, str(res.message))

    if best is None:
        message = "; ".join(failures)
        warnings.warn(f"CTCRW fit failed after {attempts} attempt(s): {message}", RuntimeWarning)
        return FitResult(model.initial_parameters.copy(), model.names, free_mask, None, -np.inf,
                         FitStatus.FAILED, attempts, message, model)

    for failure in failures:
        warnings.warn(f"CTCRW fit {failure}", RuntimeWarning)

    theta = model.expand(best[0])
    ll = log_likelihood(model, theta)
    if verbose:
        print(f"Converged: log-likelihood {ll:.3f} after {attempts} attempt(s)")
    return FitResult(theta, model.names, free_mask, best[2], ll, FitStatus.CONVERGED,
                     attempts, best[3], model)
