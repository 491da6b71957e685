"""
pyctcrw - Continuous-time correlated random walk models for animal telemetry.

pyctcrw fits continuous-time correlated random walk (CTCRW) state-space models
to irregularly timed, error-prone location fixes, predicts smoothed tracks at
arbitrary times, and re-routes predicted paths around impassable barriers such
as land for marine animals.

Components
----------
- **modeling**: Observation sequences, parameter specifications, Kalman filter likelihood, maximum-likelihood fitting
- **predicting**: Rauch-Tung-Striebel smoothing and track prediction
- **correcting**: Barrier-aware path correction
- **utilities**: Track simulation and batch processing of many deployments

Quick Start
-----------
```python
import pyctcrw as ctc

obs = ctc.modeling.observations_from_dataframe(df, deployment="seal-01")

spec = ctc.modeling.ModelSpecification(
    error_classes={"3": ctc.modeling.fixed(np.log(250.0)), "A": ctc.modeling.free(np.log(1000.0))},
    log_beta=ctc.modeling.free(-4.0, lower=-12.0, upper=2.0),
)
fit = ctc.modeling.fit_ctcrw(obs, spec, attempts=3, seed=1)
print(fit.summary())

track = ctc.predicting.predict(fit, interval=3600.0)

barrier = ctc.correcting.BarrierGeometry(land_polygons)
corrected = ctc.correcting.fix_path(track, fit, barrier)
corrected.to_dataframe()
```
"""

from pyctcrw._version import __version__, __version_info__
from pyctcrw import correcting, modeling, predicting, utilities
from pyctcrw.errors import (
    BarrierUnresolvedError,
    ConfigurationError,
    ConvergenceFailure,
    CTCRWError,
    NumericalError,
    UnfitModelError,
)

__all__ = [
    '__version__',
    '__version_info__',
    'modeling',
    'predicting',
    'correcting',
    'utilities',
    'CTCRWError',
    'ConfigurationError',
    'NumericalError',
    'ConvergenceFailure',
    'UnfitModelError',
    'BarrierUnresolvedError',
]
