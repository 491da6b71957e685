"""
Batch processing of many deployments.

Deployments are independent, so they can be fitted, predicted and corrected in
parallel worker processes. Every deployment yields a :class:`DeploymentRecord`;
a failure in one deployment is recorded with the stage where it happened and
never aborts the others.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import pandas as pd
import polars as pl
from tqdm import tqdm

from pyctcrw.correcting.barrier import BarrierGeometry, fix_path
from pyctcrw.errors import CTCRWError, ConfigurationError
from pyctcrw.modeling.estimation import FitResult, fit_ctcrw
from pyctcrw.modeling.observations import (
    ObservationSequence,
    _to_pandas_preserve,
    observations_from_dataframe,
)
from pyctcrw.modeling.specification import ModelSpecification
from pyctcrw.predicting.smoother import Track, predict


@dataclass(frozen=True)
class DeploymentRecord:
    """
    Outcome of the fit -> predict -> correct pipeline for one deployment.

    ``error`` is None on success. Otherwise it holds the raised exception
    (normally a :class:`~pyctcrw.errors.CTCRWError`, but anything raised
    inside the pipeline, e.g. by a user prior, is captured too) and ``stage``
    names the step that failed (``"estimate"``, ``"predict"`` or ``"correct"``). Results of the
    steps that did succeed are kept.
    """

    key: Any
    observations: ObservationSequence
    fit: Optional[FitResult] = None
    track: Optional[Track] = None
    corrected: Optional[Track] = None
    error: Optional[Exception] = None
    stage: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def final_track(self) -> Optional[Track]:
        return self.corrected if self.corrected is not None else self.track


def deployments_from_dataframe(
    df: Union[pd.DataFrame, pl.DataFrame],
    deployment_col: str = "deployment",
    **kwargs,
) -> Dict[Any, ObservationSequence]:
    """
    Split a long-format DataFrame of fixes into one sequence per deployment.

    Extra keyword arguments are passed to
    :func:`~pyctcrw.modeling.observations.observations_from_dataframe`.
    """
    pdf, _ = _to_pandas_preserve(df)
    if deployment_col not in pdf.columns:
        raise ConfigurationError(f"DataFrame missing deployment column {deployment_col!r}",
                                 stage="observations")
    return {
        key: observations_from_dataframe(group, deployment=key, **kwargs)
        for key, group in pdf.groupby(deployment_col, sort=True)
    }


def _run_deployment(key, observations, specification, barrier, fit_kwargs, predict_kwargs,
                    correct_kwargs) -> DeploymentRecord:
    """Worker: run one deployment end to end, capturing its errors."""
    fit = track = corrected = None
    stage = "estimate"
    try:
        fit = fit_ctcrw(observations, specification, **fit_kwargs)
        fit.require_converged(stage="estimate")
        stage = "predict"
        track = predict(fit, **predict_kwargs)
        if barrier is not None:
            stage = "correct"
            corrected = fix_path(track, fit, barrier, **correct_kwargs)
    except CTCRWError as exc:
        if exc.deployment is None:
            exc.deployment = key
        return DeploymentRecord(key, observations, fit, track, None, exc, exc.stage or stage)
    except Exception as exc:
        # Anything else (user prior, geometry library) stays with this deployment
        return DeploymentRecord(key, observations, fit, track, None, exc, stage)
    return DeploymentRecord(key, observations, fit, track, corrected)


def process_deployments(
    deployments: Mapping[Any, ObservationSequence],
    specification: ModelSpecification,
    barrier: Optional[BarrierGeometry] = None,
    max_workers: Optional[int] = None,
    fit_kwargs: Optional[dict] = None,
    predict_kwargs: Optional[dict] = None,
    correct_kwargs: Optional[dict] = None,
    verbose: bool = False,
) -> Dict[Any, DeploymentRecord]:
    """
    Fit, predict and (optionally) barrier-correct many deployments.

    Parameters
    ----------
    deployments : mapping
        Deployment key -> :class:`ObservationSequence`.
    specification : ModelSpecification
        Shared model specification.
    barrier : BarrierGeometry or None, default=None
        When given, every predicted track is passed through :func:`fix_path`.
    max_workers : int or None, default=None
        Number of worker processes. ``None`` or 1 runs sequentially in the
        calling process.
    fit_kwargs, predict_kwargs, correct_kwargs : dict or None
        Keyword arguments for :func:`fit_ctcrw`, :func:`predict` and
        :func:`fix_path`.
    verbose : bool, default=False
        Show a progress bar and print a summary of failures.

    Returns
    -------
    dict
        Deployment key -> :class:`DeploymentRecord`, in the input order.

    Examples
    --------
    >>> records = process_deployments(deployments, spec, predict_kwargs={"interval": 3600})
    >>> failed = {k: r.stage for k, r in records.items() if not r.ok}
    """
    fit_kwargs = dict(fit_kwargs or {})
    predict_kwargs = dict(predict_kwargs or {})
    correct_kwargs = dict(correct_kwargs or {})
    if max_workers is not None and max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1", stage="batch")

    keys = list(deployments)
    results: Dict[Any, DeploymentRecord] = {}

    if max_workers is None or max_workers == 1:
        iterator = tqdm(keys, desc="deployments") if verbose else keys
        for key in iterator:
            results[key] = _run_deployment(key, deployments[key], specification, barrier,
                                           fit_kwargs, predict_kwargs, correct_kwargs)
    else:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(_run_deployment, key, deployments[key], specification, barrier,
                                fit_kwargs, predict_kwargs, correct_kwargs): key
                for key in keys
            }
            done = as_completed(futures)
            if verbose:
                done = tqdm(done, total=len(futures), desc="deployments")
            for future in done:
                results[futures[future]] = future.result()

    if verbose:
        failed = [k for k in keys if not results[k].ok]
        print(f"Processed {len(keys)} deployments: {len(keys) - len(failed)} ok, {len(failed)} failed")
        for k in failed:
            print(f"  {k!r}: {results[k].stage}: {results[k].error}")

    return {k: results[k] for k in keys}
