"""Tests for maximum-likelihood fitting."""

import numpy as np
import pandas as pd
import pytest

import pyctcrw.modeling.estimation as estimation
from pyctcrw.errors import ConfigurationError, NumericalError, UnfitModelError
from pyctcrw.modeling.estimation import FitStatus, fit_ctcrw
from pyctcrw.modeling.observations import ObservationSequence
from pyctcrw.modeling.specification import ModelSpecification, fixed, free


class TestFitCTCRW:
    def test_converges_on_simulated_track(self, fitted):
        assert fitted.status is FitStatus.CONVERGED
        assert fitted.converged
        assert fitted.covariance.shape == (2, 2)
        assert np.all(np.isfinite(fitted.standard_errors[fitted.free_mask]))
        assert np.isnan(fitted.standard_errors[0])
        assert np.isfinite(fitted.log_likelihood)

    def test_parameter_recovery_improves_with_sample_size(self, spec, make_deployment):
        """Standard errors shrink with more fixes and cover the generating values."""
        truth = np.array([0.0, np.log(0.5)])
        ses = []
        for n, seed in ((100, 11), (600, 12)):
            _, obs = make_deployment(n, seed=seed)
            fit = fit_ctcrw(obs, spec, attempts=3, seed=seed)
            assert fit.converged
            est = fit.parameters[-2:]
            se = fit.standard_errors[-2:]
            assert np.all(np.abs(est - truth) < 4.0 * se)
            ses.append(se)
        assert np.all(ses[1] < ses[0])

    def test_summary_table(self, fitted):
        table = fitted.summary()
        assert isinstance(table, pd.DataFrame)
        assert list(table.index) == ["log_tau[3]", "log_sigma", "log_beta"]
        assert bool(table.loc["log_tau[3]", "fixed"])
        row = table.loc["log_sigma"]
        assert row["lower"] < row["estimate"] < row["upper"]

    def test_deterministic_given_seed(self, simulated, spec):
        _, obs = simulated
        a = fit_ctcrw(obs, spec, attempts=2, seed=5)
        b = fit_ctcrw(obs, spec, attempts=2, seed=5)
        np.testing.assert_array_equal(a.parameters, b.parameters)

    def test_global_search_warm_start(self, simulated, spec, fitted):
        _, obs = simulated
        fit = fit_ctcrw(obs, spec, global_search_iterations=20, seed=2)
        assert fit.converged
        assert fit.log_likelihood == pytest.approx(fitted.log_likelihood, abs=0.05)

    def test_result_arrays_are_read_only(self, fitted):
        with pytest.raises(ValueError):
            fitted.parameters[-1] = 4.0
        with pytest.raises(ValueError):
            fitted.free_mask[0] = True
        with pytest.raises(ValueError):
            fitted.covariance[0, 0] = -1.0
        assert np.all(np.isfinite(fitted.standard_errors[fitted.free_mask]))

    def test_result_does_not_alias_inputs(self, fitted):
        theta = np.array(fitted.parameters)
        copy = fitted.__class__(theta, fitted.names, fitted.free_mask, fitted.covariance,
                                fitted.log_likelihood, fitted.status, 1, "", fitted.model)
        theta[-1] = 4.0
        assert copy.parameters[-1] == fitted.parameters[-1]

    def test_all_fixed(self, crossing_fit):
        assert crossing_fit.converged
        assert crossing_fit.n_free == 0
        assert crossing_fit.covariance.shape == (0, 0)

    def test_prior_is_applied(self, simulated, spec, fitted):
        _, obs = simulated

        def prior(theta):
            return -50.0 * (theta[-1] - 2.0) ** 2

        pulled = fit_ctcrw(obs, spec, prior=prior, seed=3)
        assert pulled.parameters[-1] > fitted.parameters[-1]


class TestTwoFixScenario:
    def test_single_free_diffusion_parameter(self):
        obs = ObservationSequence([0.0, 3600.0], [[0.0, 0.0], [1000.0, 0.0]], ["3", "3"])
        spec = ModelSpecification(
            error_classes={"3": fixed(0.0)},
            log_sigma=free(0.0, lower=-10.0, upper=10.0),
            log_beta=fixed(np.log(1.0 / 600.0)),
        )
        fit = fit_ctcrw(obs, spec)
        assert fit.converged
        assert fit.free_mask.tolist() == [False, True, False]


class TestConfigurationErrors:
    def _spec(self):
        return ModelSpecification(
            error_classes={"3": fixed(0.0), "A": free(1.0)},
            log_sigma=fixed(0.0),
            log_beta=fixed(0.0),
        )

    def _obs(self):
        return ObservationSequence([0.0, 1.0, 2.0], [[0, 0], [1, 0], [2, 0]], ["3", "A", "3"])

    def test_malformed_bounds_raise_before_filtering(self, monkeypatch):
        def forbidden(*args, **kwargs):
            raise AssertionError("the filter must not run")

        monkeypatch.setattr(estimation, "log_likelihood", forbidden)
        with pytest.raises(ConfigurationError, match="invalid bounds"):
            fit_ctcrw(self._obs(), self._spec(), bounds=[(5.0, 1.0)])

    def test_wrong_number_of_bounds(self):
        with pytest.raises(ConfigurationError, match="entries"):
            fit_ctcrw(self._obs(), self._spec(), bounds=[(0, 1), (0, 1)])

    def test_none_bounds_mean_unbounded(self):
        fit = fit_ctcrw(self._obs(), self._spec(), bounds=[(None, None)])
        assert fit.status in (FitStatus.CONVERGED, FitStatus.FAILED)

    def test_bad_attempts(self):
        with pytest.raises(ConfigurationError):
            fit_ctcrw(self._obs(), self._spec(), attempts=0)


class TestFailedFit:
    def test_failed_fit_is_reported_not_raised(self, monkeypatch, simulated, spec):
        _, obs = simulated

        class _Result:
            success = False
            fun = 0.0
            message = "forced failure"

        monkeypatch.setattr(estimation, "minimize", lambda *a, **k: _Result())
        with pytest.warns(RuntimeWarning, match="forced failure"):
            fit = fit_ctcrw(obs, spec, attempts=2, seed=0)
        assert fit.status is FitStatus.FAILED
        assert fit.covariance is None
        assert fit.attempts == 2
        with pytest.raises(UnfitModelError):
            fit.require_converged(stage="predict")


class TestRejectedTrials:
    def test_filter_failures_are_rejected_trials(self, monkeypatch, simulated, spec, fitted):
        _, obs = simulated
        real = estimation.log_likelihood
        rejected = []

        def unstable_at_fast_reversion(model, theta):
            if theta[-1] > 2.0:
                rejected.append(theta[-1])
                raise NumericalError("innovation covariance is not positive definite")
            return real(model, theta)

        monkeypatch.setattr(estimation, "log_likelihood", unstable_at_fast_reversion)
        fit = fit_ctcrw(obs, spec, global_search_iterations=20, seed=2)
        # the annealing search samples the whole box, so the bad region is visited
        assert rejected
        assert fit.converged
        assert fit.parameters[-1] < 2.0
        assert fit.log_likelihood == pytest.approx(fitted.log_likelihood, abs=0.05)
