"""
Fixed-interval smoothing and track prediction for pyctcrw.

Given a converged :class:`~pyctcrw.modeling.estimation.FitResult`, the
predictor re-runs the Kalman filter over the union of the observation times and
any requested prediction times (prediction-only rows get a predict step and no
update), then runs the Rauch-Tung-Striebel (RTS) recursion backward to obtain
smoothed means and covariances at every retained time.

Key Features:
- Prediction on an explicit list of times or a regular interval grid
- Prediction times equal to an observation time are merged into that row
- Filtered (forward-only) estimates are kept next to the smoothed ones
- Tracks export to pandas or polars DataFrames
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl
import scipy.linalg as sla

from pyctcrw.errors import ConfigurationError
from pyctcrw.modeling.likelihood import FilterResult, filter_model
from pyctcrw.modeling.observations import _from_pandas_preserve


@dataclass(frozen=True)
class StateEstimate:
    """Smoothed state at a single instant: mean [x, y, vx, vy] and 4x4 covariance."""

    time: float
    mean: np.ndarray
    covariance: np.ndarray
    observed: bool
    corrected: bool = False

    @property
    def position(self) -> np.ndarray:
        return self.mean[:2]

    @property
    def velocity(self) -> np.ndarray:
        return self.mean[2:]


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=float if a.dtype != bool else bool)
    a.flags.writeable = False
    return a


class Track:
    """
    Ordered sequence of state estimates for one deployment.

    Parameters
    ----------
    times : array-like, shape (n,)
    means : array-like, shape (n, 4)
        Smoothed [x, y, vx, vy].
    covariances : array-like, shape (n, 4, 4)
        Smoothed covariances.
    observed : array-like of bool, shape (n,)
        True where the time is an original observation time.
    filtered_means, filtered_covariances : array-like, optional
        Forward-only estimates at the same times.
    corrected : array-like of bool, optional
        True where the path corrector moved or inserted the point.
    deployment : any, optional

    Notes
    -----
    Arrays are stored read-only; a Track is never modified after creation.
    """

    def __init__(self, times, means, covariances, observed, filtered_means=None,
                 filtered_covariances=None, corrected=None, deployment: Any = None):
        self.times = _readonly(np.asarray(times, dtype=float).reshape(-1))
        n = self.times.size
        self.means = _readonly(np.asarray(means, dtype=float).reshape(n, 4))
        self.covariances = _readonly(np.asarray(covariances, dtype=float).reshape(n, 4, 4))
        self.observed = _readonly(np.asarray(observed, dtype=bool).reshape(n))
        self.corrected = _readonly(
            np.zeros(n, dtype=bool) if corrected is None else np.asarray(corrected, dtype=bool).reshape(n)
        )
        self.filtered_means = None if filtered_means is None else _readonly(
            np.asarray(filtered_means, dtype=float).reshape(n, 4))
        self.filtered_covariances = None if filtered_covariances is None else _readonly(
            np.asarray(filtered_covariances, dtype=float).reshape(n, 4, 4))
        self.deployment = deployment

    def __len__(self) -> int:
        return int(self.times.size)

    def __getitem__(self, k: int) -> StateEstimate:
        return StateEstimate(
            time=float(self.times[k]),
            mean=self.means[k],
            covariance=self.covariances[k],
            observed=bool(self.observed[k]),
            corrected=bool(self.corrected[k]),
        )

    def __iter__(self):
        for k in range(len(self)):
            yield self[k]

    def __repr__(self) -> str:
        return (f"Track(n={len(self)}, observed={int(self.observed.sum())}, "
                f"corrected={int(self.corrected.sum())}, deployment={self.deployment!r})")

    @property
    def positions(self) -> np.ndarray:
        return self.means[:, :2]

    @property
    def velocities(self) -> np.ndarray:
        return self.means[:, 2:]

    @property
    def speed(self) -> np.ndarray:
        return np.hypot(self.means[:, 2], self.means[:, 3])

    def path_length(self) -> float:
        """Total Euclidean length of the polyline through the positions."""
        if len(self) < 2:
            return 0.0
        return float(np.sum(np.hypot(*np.diff(self.positions, axis=0).T)))

    def same_as(self, other: "Track") -> bool:
        """True when both tracks hold identical times, flags and estimates."""
        return (
            len(self) == len(other)
            and np.array_equal(self.times, other.times)
            and np.array_equal(self.means, other.means)
            and np.array_equal(self.covariances, other.covariances)
            and np.array_equal(self.observed, other.observed)
            and np.array_equal(self.corrected, other.corrected)
        )

    def to_dataframe(self, as_polars: bool = False) -> Union[pd.DataFrame, pl.DataFrame]:
        """
        Export the track as a DataFrame.

        Columns: ``time``, ``x``, ``y``, ``vx``, ``vy``, ``speed``, ``se_x``,
        ``se_y``, ``se_vx``, ``se_vy``, ``observed``, ``corrected``.
        """
        se = np.sqrt(np.clip(np.diagonal(self.covariances, axis1=1, axis2=2), 0.0, None))
        pdf = pd.DataFrame({
            "time": self.times,
            "x": self.means[:, 0],
            "y": self.means[:, 1],
            "vx": self.means[:, 2],
            "vy": self.means[:, 3],
            "speed": self.speed,
            "se_x": se[:, 0],
            "se_y": se[:, 1],
            "se_vx": se[:, 2],
            "se_vy": se[:, 3],
            "observed": self.observed,
            "corrected": self.corrected,
        })
        return _from_pandas_preserve(pdf, as_polars)


def rts_smoother(result: FilterResult) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rauch-Tung-Striebel backward pass over a forward filter result.

    Parameters
    ----------
    result : FilterResult
        Output of :func:`pyctcrw.modeling.likelihood.kalman_filter`.

    Returns
    -------
    x_smooth : np.ndarray, shape (n, 4)
    P_smooth : np.ndarray, shape (n, 4, 4)
    """
    x_filt, P_filt = result.x_filt, result.P_filt
    x_pred, P_pred = result.x_pred, result.P_pred
    T = result.transitions
    n = x_filt.shape[0]

    x_smooth = np.zeros_like(x_filt)
    P_smooth = np.zeros_like(P_filt)
    x_smooth[-1] = x_filt[-1]
    P_smooth[-1] = P_filt[-1]

    for k in range(n - 2, -1, -1):
        # ========== Smoother Gain C = P_filt[k] Tᵀ P_pred[k+1]⁻¹ ==========
        P_pred_k1 = P_pred[k + 1]
        cross = T[k + 1] @ P_filt[k]
        try:
            Ck = sla.solve(P_pred_k1, cross, assume_a="pos", check_finite=False).T
        except np.linalg.LinAlgError:
            Ck = cross.T @ np.linalg.pinv(P_pred_k1)

        x_smooth[k] = x_filt[k] + Ck @ (x_smooth[k + 1] - x_pred[k + 1])
        P = P_filt[k] + Ck @ (P_smooth[k + 1] - P_pred_k1) @ Ck.T
        P_smooth[k] = 0.5 * (P + P.T)

    return x_smooth, P_smooth


def prediction_times(start: float, end: float, interval: float, align: bool = True) -> np.ndarray:
    """
    Regular grid of prediction times covering [start, end].

    Parameters
    ----------
    start, end : float
        Time range, usually the first and last fix of a deployment.
    interval : float
        Grid spacing (> 0), in the time unit of the observations.
    align : bool, default=True
        Align the grid to multiples of ``interval`` (e.g. whole hours for an
        interval of 3600 s on epoch seconds). Otherwise the grid starts at
        ``start``.

    Returns
    -------
    np.ndarray
    """
    if not (interval > 0) or not np.isfinite(interval):
        raise ConfigurationError("interval must be a positive finite number", stage="predict")
    if end < start:
        raise ConfigurationError("end must not precede start", stage="predict")

    first = np.ceil(start / interval) * interval if align else start
    count = int(np.floor((end - first) / interval + 1e-9)) + 1
    if count <= 0:
        return np.zeros(0)
    return first + interval * np.arange(count)


def predict(
    fit,
    observations=None,
    times: Optional[Sequence[float]] = None,
    interval: Optional[float] = None,
) -> Track:
    """
    Smoothed states at the observation times and any prediction times.

    Parameters
    ----------
    fit : FitResult
        Must have ``status=FitStatus.CONVERGED``.
    observations : ObservationSequence, optional
        Defaults to the sequence the model was fitted to.
    times : sequence of float, optional
        Explicit prediction times.
    interval : float, optional
        Spacing of a regular prediction grid over the deployment's time range
        (see :func:`prediction_times`). May be combined with ``times``.

    Returns
    -------
    Track
        One state estimate per distinct time, flagged ``observed`` at the
        original observation times.

    Raises
    ------
    UnfitModelError
        If the fit did not converge.
    ConfigurationError
        For non-finite prediction times or times before the first fix.
    """
    fit.require_converged(stage="predict")

    model = fit.model if observations is None else fit.model.rebind(observations)
    obs = model.observations
    theta = fit.parameters

    requested = []
    if times is not None:
        requested.append(np.asarray(times, dtype=float).reshape(-1))
    if interval is not None:
        requested.append(prediction_times(obs.start, obs.end, interval))
    extra = np.unique(np.concatenate(requested)) if requested else np.zeros(0)

    if not np.all(np.isfinite(extra)):
        raise ConfigurationError("prediction times must be finite",
                                 deployment=obs.deployment, stage="predict")
    if extra.size and extra[0] < obs.start:
        raise ConfigurationError(
            f"prediction time {extra[0]} precedes the first fix at {obs.start}",
            deployment=obs.deployment, stage="predict",
        )
    extra = extra[~np.isin(extra, obs.times)]

    # ========== Merge Observation and Prediction Rows ==========
    n_obs = len(obs)
    all_times = np.concatenate([obs.times, extra])
    order = np.argsort(all_times, kind="stable")
    all_times = all_times[order]

    Z = np.vstack([obs.positions, np.full((extra.size, 2), np.nan)])[order]
    Rv = np.vstack([model.measurement_variances(theta), np.ones((extra.size, 2))])[order]
    observed = (order < n_obs)

    # ========== Forward Filter + Backward Smoother ==========
    result = filter_model(model, theta, times=all_times, observations=Z,
                          observation_variances=Rv)
    x_smooth, P_smooth = rts_smoother(result)

    return Track(
        times=all_times,
        means=x_smooth,
        covariances=P_smooth,
        observed=observed,
        filtered_means=result.x_filt,
        filtered_covariances=result.P_filt,
        deployment=obs.deployment,
    )
