"""Tests for bootstrap variance summarization and the abundance containers."""

import numpy as np
import pandas as pd
import pytest

from conftest import generate_bootstraps, identity
from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.errors import AlignmentError
from meshrink.stats.bootstrap import BootstrapSummary, log_transform, summarize_bootstraps


def _long(rows):
    return pd.DataFrame(rows, columns=["target_id", "sample", "bootstrap", "est_counts"])


@pytest.fixture
def observed():
    return pd.DataFrame(
        {"s1": [10.0, 20.0], "s2": [12.0, 18.0]},
        index=["tx1", "tx2"],
    )


@pytest.fixture
def bootstraps():
    # tx1: s1 var 1, s2 var 4; tx2: s1 var 0, s2 var 1
    return _long([
        ("tx1", "s1", 0, 9.0), ("tx1", "s1", 1, 10.0), ("tx1", "s1", 2, 11.0),
        ("tx1", "s2", 0, 10.0), ("tx1", "s2", 1, 12.0), ("tx1", "s2", 2, 14.0),
        ("tx2", "s1", 0, 20.0), ("tx2", "s1", 1, 20.0), ("tx2", "s1", 2, 20.0),
        ("tx2", "s2", 0, 17.0), ("tx2", "s2", 1, 18.0), ("tx2", "s2", 2, 19.0),
    ])


class TestObservedMatrix:

    def test_validation(self):
        with pytest.raises(TypeError):
            ObservedMatrix([[1.0]], pd.Index(["a"]), pd.Index(["s"]))
        with pytest.raises(ValueError, match="must match data rows"):
            ObservedMatrix(np.ones((2, 2)), pd.Index(["a"]), pd.Index(["s1", "s2"]))
        with pytest.raises(ValueError, match="unique"):
            ObservedMatrix(np.ones((2, 1)), pd.Index(["a", "a"]), pd.Index(["s1"]))

    def test_immutable_copy(self):
        data = np.arange(4.0).reshape(2, 2)
        matrix = ObservedMatrix(data, pd.Index(["a", "b"]), pd.Index(["s1", "s2"]))
        data[0, 0] = 100.0

        assert matrix.data[0, 0] == 0.0
        with pytest.raises(ValueError):
            matrix.data[0, 0] = 1.0

    def test_reindex_by_identifier(self, observed):
        matrix = ObservedMatrix.from_frame(observed)
        swapped = matrix.reindex_features(["tx2", "tx1"])

        np.testing.assert_array_equal(swapped.row("tx1"), [10.0, 12.0])
        assert list(swapped.feature_ids) == ["tx2", "tx1"]
        with pytest.raises(AlignmentError):
            matrix.reindex_features(["tx3"])

    def test_reorder_samples(self, observed):
        matrix = ObservedMatrix.from_frame(observed).reorder_samples(["s2", "s1"])
        np.testing.assert_array_equal(matrix.row("tx1"), [12.0, 10.0])
        with pytest.raises(AlignmentError):
            ObservedMatrix.from_frame(observed).reorder_samples(["s1"])

    def test_select_features(self, observed):
        matrix = ObservedMatrix.from_frame(observed)
        subset = matrix.select_features(np.array([False, True]))
        assert list(subset.feature_ids) == ["tx2"]


class TestTechnicalVariance:

    def test_rejects_negative_and_nan(self):
        with pytest.raises(ValueError, match="non-negative"):
            TechnicalVariance(pd.Series([0.1, -0.2], index=["a", "b"]))
        with pytest.raises(ValueError, match="undefined"):
            TechnicalVariance(pd.Series([0.1, np.nan], index=["a", "b"]))

    def test_align_to(self):
        tech = TechnicalVariance(pd.Series([0.1, 0.2], index=["a", "b"]))
        assert tech.align_to(["b", "a"]).values.tolist() == [0.2, 0.1]
        with pytest.raises(AlignmentError):
            tech.align_to(["c"])


class TestSummarizeBootstraps:

    def test_known_variances(self, observed, bootstraps):
        summary = summarize_bootstraps(observed, bootstraps, transform=identity)

        tech = summary.technical_variance
        np.testing.assert_allclose(tech.values.loc[["tx1", "tx2"]], [2.5, 0.5])
        np.testing.assert_allclose(tech.per_sample.loc["tx1"].to_numpy(), [1.0, 4.0])
        np.testing.assert_allclose(tech.per_sample.loc["tx2"].to_numpy(), [0.0, 1.0])
        np.testing.assert_array_equal(summary.observed.data, observed.to_numpy())

    def test_default_log_transform(self, observed, bootstraps):
        summary = summarize_bootstraps(observed, bootstraps)

        np.testing.assert_allclose(summary.observed.data, np.log(observed.to_numpy() + 0.5))
        expected = np.var(np.log(np.array([9.0, 10.0, 11.0]) + 0.5), ddof=1)
        np.testing.assert_allclose(
            summary.technical_variance.per_sample.loc["tx1", "s1"], expected
        )

    def test_log_transform_pseudocount(self):
        np.testing.assert_allclose(log_transform(1.0)(np.array([0.0, np.e - 1])), [0.0, 1.0])
        with pytest.raises(ValueError):
            log_transform(0.0)

    def test_features_in_one_input_dropped(self, observed, bootstraps):
        extra = _long([("tx9", "s1", 0, 1.0), ("tx9", "s1", 1, 2.0),
                       ("tx9", "s2", 0, 1.0), ("tx9", "s2", 1, 3.0)])
        bootstraps = pd.concat([bootstraps[bootstraps["target_id"] != "tx2"], extra])

        with pytest.warns(UserWarning, match="Dropping 1 features without bootstraps"):
            summary = summarize_bootstraps(observed, bootstraps, transform=identity)

        assert list(summary.observed.feature_ids) == ["tx1"]
        assert list(summary.technical_variance.feature_ids) == ["tx1"]

    def test_missing_sample_raises(self, observed, bootstraps):
        with pytest.raises(AlignmentError):
            summarize_bootstraps(observed, bootstraps[bootstraps["sample"] == "s1"])

    def test_single_replicate_raises(self, observed, bootstraps):
        with pytest.raises(ValueError, match="two bootstrap replicates"):
            summarize_bootstraps(observed, bootstraps[bootstraps["bootstrap"] == 0])

    def test_missing_columns(self, observed, bootstraps):
        with pytest.raises(ValueError, match="missing columns"):
            summarize_bootstraps(observed, bootstraps.drop(columns="est_counts"))

    def test_simulated_variance_recovered(self):
        rng = np.random.RandomState(3)
        ids = [f"g{i}" for i in range(50)]
        observed = pd.DataFrame(rng.uniform(5, 10, size=(50, 4)), index=ids,
                                columns=["a", "b", "c", "d"])
        sd = np.linspace(0.1, 1.0, 50)
        bootstraps = generate_bootstraps(observed, sd, n_bootstraps=400, seed=4)

        summary = summarize_bootstraps(observed, bootstraps, transform=identity)
        np.testing.assert_allclose(
            summary.technical_variance.values.loc[ids].to_numpy(), sd ** 2, rtol=0.15
        )


class TestRestrictTo:

    def test_keeps_observed_order(self, observed, bootstraps):
        summary = summarize_bootstraps(observed, bootstraps, transform=identity)
        restricted = summary.restrict_to(["tx2"])
        assert list(restricted.observed.feature_ids) == ["tx2"]
        assert restricted.technical_variance.values.loc["tx2"] == pytest.approx(0.5)

    def test_absent_ids_warn(self, observed, bootstraps):
        summary = summarize_bootstraps(observed, bootstraps, transform=identity)
        with pytest.warns(UserWarning, match="no bootstrap summary"):
            restricted = summary.restrict_to(["tx1", "tx_missing"])
        assert restricted.n_features == 1

    def test_misaligned_summary_rejected(self, observed):
        matrix = ObservedMatrix.from_frame(observed)
        with pytest.raises(AlignmentError):
            BootstrapSummary(matrix, TechnicalVariance(pd.Series([0.1], index=["tx1"])))
