"""
Observation sequences for pyctcrw.

This module holds the input side of the engine: a single telemetry fix, the
time-ordered sequence of fixes of one deployment, and the adapters that build
such a sequence from pandas or polars DataFrames.

The cleaning stages (archive unpacking, deduplication, speed filtering) live
outside this package. What arrives here is expected to be time-ordered, in a
projected planar coordinate system, and free of duplicate timestamps. The only
repair offered is :func:`jitter_duplicate_times`, which nudges exact duplicate
timestamps apart by a small fixed epsilon.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl

from pyctcrw.errors import ConfigurationError


@dataclass(frozen=True)
class Fix:
    """A single position-and-time observation from a tracking device."""

    time: float
    x: float
    y: float
    error_class: str


def _to_pandas_preserve(df: Union[pd.DataFrame, pl.DataFrame]) -> Tuple[pd.DataFrame, bool]:
    """
    Convert input DataFrame to pandas and track original type.

    Returns: (pandas_df, was_polars_flag)
    """
    if isinstance(df, pl.DataFrame):
        return df.to_pandas(), True
    if isinstance(df, pd.DataFrame):
        return df.copy(), False
    raise ConfigurationError("df must be either a pandas DataFrame or a polars DataFrame.")


def _from_pandas_preserve(pdf: pd.DataFrame, as_polars: bool) -> Union[pd.DataFrame, pl.DataFrame]:
    """Convert a pandas DataFrame to polars when requested."""
    return pl.from_pandas(pdf) if as_polars else pdf


def _time_column_to_seconds(values: pd.Series) -> np.ndarray:
    """
    Convert a time column to float seconds.

    Numeric columns are used as they are. Datetime-like columns (including
    strings parseable by ``pandas.to_datetime``) become seconds since the Unix
    epoch, which keeps differences exact to the nanosecond resolution of pandas.
    """
    if pd.api.types.is_numeric_dtype(values.dtype):
        return values.to_numpy(dtype=float)

    times = pd.to_datetime(values, utc=True)
    ns = times.to_numpy(dtype="datetime64[ns]").view("int64")
    return ns.astype(float) / 1e9


def jitter_duplicate_times(times: Sequence[float], eps: float = 1e-3) -> np.ndarray:
    """
    Separate exact duplicate timestamps by a small fixed epsilon.

    Each run of identical timestamps keeps its first value; the k-th repeat is
    shifted forward by ``k * eps``. The input must already be sorted.

    Parameters
    ----------
    times : sequence of float
        Non-decreasing timestamps.
    eps : float, default=1e-3
        Shift applied per repeated timestamp, in the time unit of ``times``.
        Must be smaller than the smallest positive gap in the data so the
        order of fixes is preserved.

    Returns
    -------
    np.ndarray
        Strictly increasing timestamps (given a small enough ``eps``).

    Raises
    ------
    ConfigurationError
        If ``eps`` is not positive or the timestamps are not sorted.
    """
    if eps <= 0:
        raise ConfigurationError("eps must be positive")

    original = np.asarray(times, dtype=float)
    t = original.copy()
    if t.size < 2:
        return t
    if np.any(np.diff(t) < 0):
        raise ConfigurationError("timestamps must be sorted before jittering")

    repeat = 0
    for k in range(1, t.size):
        if original[k] == original[k - 1]:
            repeat += 1
            t[k] = original[k] + repeat * eps
        else:
            repeat = 0
    return t


class ObservationSequence:
    """
    Time-ordered telemetry fixes of one deployment.

    Parameters
    ----------
    times : array-like of float, shape (n,)
        Strictly increasing timestamps.
    positions : array-like of float, shape (n, 2)
        Projected (x, y) coordinates.
    error_classes : sequence of str, length n
        Location-quality class of each fix. Values are converted to ``str`` so
        that numeric Argos classes (``3``) and their string form (``"3"``) refer
        to the same entry of the error model.
    deployment : any, optional
        Key identifying the deployment, carried into errors and batch records.

    Raises
    ------
    ConfigurationError
        If the sequence is empty, shapes disagree, values are non-finite, or
        timestamps are not strictly increasing.
    """

    def __init__(self, times, positions, error_classes, deployment: Any = None):
        t = np.array(times, dtype=float).reshape(-1)
        z = np.array(positions, dtype=float)
        classes = np.array([str(c) for c in error_classes], dtype=object)

        if t.size == 0:
            raise ConfigurationError("an observation sequence needs at least one fix",
                                     deployment=deployment, stage="observations")
        if z.shape != (t.size, 2):
            raise ConfigurationError(f"positions must have shape ({t.size}, 2), got {z.shape}",
                                     deployment=deployment, stage="observations")
        if classes.size != t.size:
            raise ConfigurationError("error_classes must have one entry per fix",
                                     deployment=deployment, stage="observations")
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(z))):
            raise ConfigurationError("times and positions must be finite",
                                     deployment=deployment, stage="observations")

        gaps = np.diff(t)
        if np.any(gaps <= 0):
            bad = int(np.argmax(gaps <= 0)) + 1
            raise ConfigurationError(
                f"fixes must be strictly time-ordered; fix {bad} at t={t[bad]!r} does not "
                "follow its predecessor (use jitter_duplicate_times for exact duplicates)",
                deployment=deployment, stage="observations",
            )

        t.flags.writeable = False
        z.flags.writeable = False
        classes.flags.writeable = False
        self._times = t
        self._positions = z
        self._classes = classes
        self.deployment = deployment

    @classmethod
    def from_fixes(cls, fixes: Iterable[Fix], deployment: Any = None) -> "ObservationSequence":
        """Build a sequence from :class:`Fix` records."""
        fixes = list(fixes)
        return cls(
            [f.time for f in fixes],
            np.array([[f.x, f.y] for f in fixes], dtype=float).reshape(-1, 2),
            [f.error_class for f in fixes],
            deployment=deployment,
        )

    @property
    def times(self) -> np.ndarray:
        return self._times

    @property
    def positions(self) -> np.ndarray:
        return self._positions

    @property
    def error_classes(self) -> np.ndarray:
        return self._classes

    @property
    def start(self) -> float:
        return float(self._times[0])

    @property
    def end(self) -> float:
        return float(self._times[-1])

    def __len__(self) -> int:
        return int(self._times.size)

    def __iter__(self):
        for t, (x, y), c in zip(self._times, self._positions, self._classes):
            yield Fix(float(t), float(x), float(y), c)

    def __repr__(self) -> str:
        return (f"ObservationSequence(n={len(self)}, start={self.start}, end={self.end}, "
                f"deployment={self.deployment!r})")


def observations_from_dataframe(
    df: Union[pd.DataFrame, pl.DataFrame],
    x_col: str = "x",
    y_col: str = "y",
    time_col: str = "time",
    class_col: str = "error_class",
    deployment: Any = None,
    jitter: Optional[float] = None,
) -> ObservationSequence:
    """
    Build an :class:`ObservationSequence` from a pandas or polars DataFrame.

    Rows are sorted by time (stable sort, so the original order of equal
    timestamps is kept). Datetime columns are converted to seconds since the
    Unix epoch; numeric columns are used as they are.

    Parameters
    ----------
    df : pd.DataFrame or pl.DataFrame
        One deployment's cleaned fixes in projected coordinates.
    x_col, y_col : str
        Projected coordinate columns.
    time_col : str, default="time"
        Timestamp column (numeric or datetime-like).
    class_col : str, default="error_class"
        Location-quality class column.
    deployment : any, optional
        Deployment key.
    jitter : float or None, default=None
        If given, duplicate timestamps are separated by this many seconds
        with :func:`jitter_duplicate_times` instead of being rejected.

    Returns
    -------
    ObservationSequence

    Raises
    ------
    ConfigurationError
        If a required column is missing or the fixes violate the sequence
        invariants.
    """
    pdf, _ = _to_pandas_preserve(df)

    missing = [c for c in (x_col, y_col, time_col, class_col) if c not in pdf.columns]
    if missing:
        raise ConfigurationError(f"DataFrame missing required columns: {missing}",
                                 deployment=deployment, stage="observations")

    times = _time_column_to_seconds(pdf[time_col])
    order = np.argsort(times, kind="stable")
    times = times[order]
    if jitter is not None:
        times = jitter_duplicate_times(times, eps=jitter)

    positions = pdf[[x_col, y_col]].to_numpy(dtype=float)[order]
    classes = pdf[class_col].to_numpy()[order]
    return ObservationSequence(times, positions, classes, deployment=deployment)
