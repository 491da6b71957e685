"""Tests for observation sequences and DataFrame adapters."""

import numpy as np
import pandas as pd
import polars as pl
import pytest

from pyctcrw.errors import ConfigurationError
from pyctcrw.modeling.observations import (
    Fix,
    ObservationSequence,
    jitter_duplicate_times,
    observations_from_dataframe,
)


class TestObservationSequence:
    def test_basic(self):
        obs = ObservationSequence([0.0, 1.0, 3.0], [[0, 0], [1, 0], [2, 1]], [3, "A", "B"],
                                  deployment="d1")
        assert len(obs) == 3
        assert obs.start == 0.0
        assert obs.end == 3.0
        assert list(obs.error_classes) == ["3", "A", "B"]
        assert obs.positions.shape == (3, 2)

    def test_arrays_are_read_only(self):
        obs = ObservationSequence([0.0, 1.0], [[0, 0], [1, 0]], ["3", "3"])
        with pytest.raises(ValueError):
            obs.positions[0, 0] = 5.0

    def test_iterates_fixes(self):
        obs = ObservationSequence([0.0, 1.0], [[0, 0], [1, 2]], ["3", "A"])
        fixes = list(obs)
        assert fixes[1] == Fix(1.0, 1.0, 2.0, "A")
        again = ObservationSequence.from_fixes(fixes)
        np.testing.assert_array_equal(again.positions, obs.positions)

    def test_rejects_duplicate_times(self):
        with pytest.raises(ConfigurationError, match="strictly time-ordered"):
            ObservationSequence([0.0, 1.0, 1.0], [[0, 0], [1, 0], [2, 0]], ["3"] * 3)

    def test_rejects_empty(self):
        with pytest.raises(ConfigurationError):
            ObservationSequence([], np.zeros((0, 2)), [])

    def test_rejects_non_finite(self):
        with pytest.raises(ConfigurationError):
            ObservationSequence([0.0, 1.0], [[0, np.nan], [1, 0]], ["3", "3"])

    def test_rejects_shape_mismatch(self):
        with pytest.raises(ConfigurationError):
            ObservationSequence([0.0, 1.0], [[0, 0]], ["3", "3"])


class TestJitter:
    def test_separates_duplicates(self):
        t = jitter_duplicate_times([0.0, 1.0, 1.0, 1.0, 2.0], eps=0.01)
        np.testing.assert_allclose(t, [0.0, 1.0, 1.01, 1.02, 2.0])
        assert np.all(np.diff(t) > 0)

    def test_unsorted_raises(self):
        with pytest.raises(ConfigurationError):
            jitter_duplicate_times([1.0, 0.0])

    def test_bad_eps(self):
        with pytest.raises(ConfigurationError):
            jitter_duplicate_times([0.0, 0.0], eps=0.0)


class TestFromDataFrame:
    def test_pandas_sorted_by_time(self):
        df = pd.DataFrame({
            "time": [2.0, 0.0, 1.0],
            "x": [2.0, 0.0, 1.0],
            "y": [0.0, 0.0, 0.0],
            "error_class": ["3", "A", "3"],
        })
        obs = observations_from_dataframe(df, deployment="seal")
        np.testing.assert_array_equal(obs.times, [0.0, 1.0, 2.0])
        np.testing.assert_array_equal(obs.positions[:, 0], [0.0, 1.0, 2.0])
        assert list(obs.error_classes) == ["A", "3", "3"]
        assert obs.deployment == "seal"

    def test_polars_with_datetimes(self):
        df = pl.DataFrame({
            "ts": ["2020-01-01T00:00:00", "2020-01-01T01:00:00"],
            "e": [0.0, 100.0],
            "n": [0.0, 50.0],
            "q": ["3", "3"],
        }).with_columns(pl.col("ts").str.to_datetime())
        obs = observations_from_dataframe(df, x_col="e", y_col="n", time_col="ts", class_col="q")
        assert obs.end - obs.start == pytest.approx(3600.0)

    def test_jitter_option(self):
        df = pd.DataFrame({"time": [0.0, 0.0], "x": [0.0, 1.0], "y": [0.0, 0.0],
                           "error_class": ["3", "3"]})
        with pytest.raises(ConfigurationError):
            observations_from_dataframe(df)
        obs = observations_from_dataframe(df, jitter=0.5)
        np.testing.assert_array_equal(obs.times, [0.0, 0.5])

    def test_missing_column(self):
        df = pd.DataFrame({"time": [0.0], "x": [0.0]})
        with pytest.raises(ConfigurationError, match="missing"):
            observations_from_dataframe(df)

    def test_not_a_dataframe(self):
        with pytest.raises(ConfigurationError):
            observations_from_dataframe({"time": [0.0]})
