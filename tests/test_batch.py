"""Tests for simulation and batch processing."""

import numpy as np
import pandas as pd
import pytest

from pyctcrw.errors import ConfigurationError
from pyctcrw.modeling.observations import ObservationSequence
from pyctcrw.utilities.batch import DeploymentRecord, deployments_from_dataframe, process_deployments
from pyctcrw.utilities.simulation import simulate_ctcrw


class TestSimulation:
    def test_shapes_and_reproducibility(self):
        t = np.arange(0.0, 50.0, 0.5)
        s1, o1 = simulate_ctcrw(t, sigma=1.0, beta=0.5, error_sd=0.2, seed=4)
        s2, o2 = simulate_ctcrw(t, sigma=1.0, beta=0.5, error_sd=0.2, seed=4)
        assert s1.shape == (100, 4)
        assert len(o1) == 100
        np.testing.assert_array_equal(s1, s2)
        np.testing.assert_array_equal(o1.positions, o2.positions)

    def test_zero_error_observes_truth(self):
        t = np.arange(10.0)
        states, obs = simulate_ctcrw(t, sigma=1.0, beta=1.0, seed=0)
        np.testing.assert_array_equal(obs.positions, states[:, :2])

    def test_per_class_errors(self):
        t = np.arange(4.0)
        _, obs = simulate_ctcrw(t, 1.0, 1.0, error_sd={"3": 0.1, "A": 1.0},
                                error_classes=["3", "A", "A", "3"], seed=0)
        assert list(obs.error_classes) == ["3", "A", "A", "3"]
        with pytest.raises(ConfigurationError):
            simulate_ctcrw(t, 1.0, 1.0, error_sd={"3": 0.1}, error_classes=["3", "B", "3", "3"])

    def test_bad_parameters(self):
        with pytest.raises(ConfigurationError):
            simulate_ctcrw([0.0, 1.0], sigma=0.0, beta=1.0)


class TestProcessDeployments:
    def test_sequential_with_failure(self, spec, make_deployment):
        _, good = make_deployment(60, seed=21, deployment="good")
        bad = ObservationSequence([0.0, 1.0], [[0, 0], [1, 0]], ["Z", "Z"], deployment="bad")

        records = process_deployments({"good": good, "bad": bad}, spec,
                                      fit_kwargs={"attempts": 2, "seed": 1},
                                      predict_kwargs={"interval": 5.0})
        assert list(records) == ["good", "bad"]

        ok = records["good"]
        assert isinstance(ok, DeploymentRecord)
        assert ok.ok and ok.fit.converged
        assert ok.final_track is ok.track
        assert ok.track.observed.sum() == 60

        failed = records["bad"]
        assert not failed.ok
        assert isinstance(failed.error, ConfigurationError)
        assert failed.stage == "specification"
        assert failed.track is None

    def test_parallel_with_barrier(self, fixed_spec, rectangle):
        crossing = ObservationSequence([0.0, 100.0], [[-10.0, 0.0], [10.0, 0.0]], ["3", "3"])
        clear = ObservationSequence([0.0, 100.0], [[-10.0, 10.0], [10.0, 10.0]], ["3", "3"])

        records = process_deployments({"crossing": crossing, "clear": clear}, fixed_spec,
                                      barrier=rectangle, max_workers=2,
                                      predict_kwargs={"interval": 10.0})
        assert all(r.ok for r in records.values())
        fixed_track = records["crossing"].final_track
        assert fixed_track.corrected.any()
        pos = fixed_track.positions
        assert not rectangle.contains(pos[:, 0], pos[:, 1]).any()
        assert not records["clear"].final_track.corrected.any()

    def test_foreign_exception_is_recorded(self, spec, make_deployment):
        _, first = make_deployment(30, seed=31, deployment="first")
        _, second = make_deployment(30, seed=32, deployment="second")

        def broken_prior(theta):
            raise RuntimeError("prior table not loaded")

        records = process_deployments({"first": first, "second": second}, spec,
                                      fit_kwargs={"prior": broken_prior})
        assert list(records) == ["first", "second"]
        for record in records.values():
            assert not record.ok
            assert isinstance(record.error, RuntimeError)
            assert record.stage == "estimate"
            assert record.fit is None and record.final_track is None

    def test_bad_worker_count(self, spec):
        with pytest.raises(ConfigurationError):
            process_deployments({}, spec, max_workers=0)


class TestDeploymentsFromDataFrame:
    def test_split(self):
        df = pd.DataFrame({
            "tag": ["b", "a", "a", "b"],
            "time": [0.0, 1.0, 0.0, 2.0],
            "x": [0.0, 1.0, 0.0, 2.0],
            "y": [0.0, 0.0, 0.0, 0.0],
            "error_class": ["3"] * 4,
        })
        deployments = deployments_from_dataframe(df, deployment_col="tag")
        assert list(deployments) == ["a", "b"]
        np.testing.assert_array_equal(deployments["a"].times, [0.0, 1.0])
        assert deployments["b"].deployment == "b"

    def test_missing_column(self):
        with pytest.raises(ConfigurationError):
            deployments_from_dataframe(pd.DataFrame({"x": [0.0]}))
