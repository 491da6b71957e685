"""Shared fixtures: synthetic deployments and simple barrier scenes."""

import numpy as np
import pytest
from shapely.geometry import Polygon

from pyctcrw.correcting.barrier import BarrierGeometry
from pyctcrw.modeling.estimation import fit_ctcrw
from pyctcrw.modeling.observations import ObservationSequence
from pyctcrw.modeling.specification import ModelSpecification, fixed, free
from pyctcrw.utilities.simulation import simulate_ctcrw

TRUE_LOG_SIGMA = 0.0
TRUE_LOG_BETA = np.log(0.5)
TRUE_ERROR_SD = 0.5


def irregular_times(n, seed):
    rng = np.random.default_rng(seed)
    return np.concatenate([[0.0], np.cumsum(rng.exponential(1.0, size=n - 1) + 0.05)])


def simulated_deployment(n, seed, deployment=None):
    times = irregular_times(n, seed)
    return simulate_ctcrw(
        times,
        sigma=np.exp(TRUE_LOG_SIGMA),
        beta=np.exp(TRUE_LOG_BETA),
        error_sd=TRUE_ERROR_SD,
        error_classes=["3"] * n,
        seed=seed + 1000,
        deployment=deployment,
    )


@pytest.fixture
def spec():
    """Error scale fixed at the truth, both process parameters free."""
    return ModelSpecification(
        error_classes={"3": fixed(np.log(TRUE_ERROR_SD))},
        log_sigma=free(0.5, lower=-5.0, upper=5.0),
        log_beta=free(0.0, lower=-6.0, upper=4.0),
    )


@pytest.fixture
def simulated():
    states, obs = simulated_deployment(120, seed=7, deployment="sim-7")
    return states, obs


@pytest.fixture
def fitted(simulated, spec):
    _, obs = simulated
    return fit_ctcrw(obs, spec, attempts=2, seed=3)


@pytest.fixture
def fixed_spec():
    """Every parameter fixed: fitting is a single likelihood evaluation."""
    return ModelSpecification(
        error_classes={"3": fixed(np.log(0.1))},
        log_sigma=fixed(0.0),
        log_beta=fixed(np.log(0.1)),
    )


@pytest.fixture
def crossing_fit(fixed_spec):
    """Two fixes whose straight connection crosses the rectangle barrier."""
    obs = ObservationSequence([0.0, 100.0], [[-10.0, 0.0], [10.0, 0.0]], ["3", "3"],
                              deployment="crossing")
    return fit_ctcrw(obs, fixed_spec)


@pytest.fixture
def rectangle():
    """Rectangle whose bottom edge is closer to the line y=0 than its top edge."""
    return BarrierGeometry(Polygon([(-2.0, -1.0), (2.0, -1.0), (2.0, 3.0), (-2.0, 3.0)]))


@pytest.fixture
def make_deployment():
    """Factory for simulated deployments of a given size."""
    return simulated_deployment
