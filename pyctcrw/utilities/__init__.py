"""
Utility module for pyctcrw.

- Simulation: Exact forward simulation of CTCRW tracks with measurement error
- Batch: Fit/predict/correct many deployments, optionally in parallel
"""

from pyctcrw.utilities.simulation import simulate_ctcrw
from pyctcrw.utilities.batch import DeploymentRecord, deployments_from_dataframe, process_deployments

__all__ = [
    'simulate_ctcrw',
    'DeploymentRecord',
    'deployments_from_dataframe',
    'process_deployments',
]
