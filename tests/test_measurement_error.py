"""Tests for the per-feature measurement error model fit."""

import numpy as np
import pandas as pd
import pytest

from conftest import two_group_covariates
from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.errors import AlignmentError, DesignRankError
from meshrink.stats.design_matrix import build_design_matrix
from meshrink.stats.measurement_error import _fit_chunk, fit_measurement_error_models


def _matrix(values, ids, samples):
    return ObservedMatrix(np.asarray(values, dtype=float), pd.Index(ids), pd.Index(samples))


class TestEndToEndScenarios:

    def test_intercept_only_constant_values(self):
        """Identical values per feature: RSS = 0 and sigma_sq = -sigma_q_sq."""
        samples = [f"s{i}" for i in range(6)]
        covariates = pd.DataFrame({"dummy": np.arange(6.0)}, index=samples)
        design = build_design_matrix("~ 1", covariates)
        observed = _matrix([[2.0] * 6, [7.5] * 6], ["a", "b"], samples)
        tech = TechnicalVariance(pd.Series([0.3, 0.05], index=["a", "b"]))

        fits = fit_measurement_error_models(observed, design, tech)

        np.testing.assert_allclose(fits.rss, [0.0, 0.0], atol=1e-20)
        np.testing.assert_allclose(fits.sigma_sq, [-0.3, -0.05], atol=1e-12)
        np.testing.assert_allclose(fits.to_frame()["sigma_sq_pmax"], [0.0, 0.0])
        np.testing.assert_allclose(fits.coefficients[:, 0], [2.0, 7.5])
        assert fits.degrees_free == 5

    def test_two_group_exact_fit(self):
        """[1,1,1,5,5,5] on intercept + indicator: coefficient 4, zero residuals."""
        covariates = two_group_covariates(3)
        design = build_design_matrix("~ condition", covariates)
        observed = _matrix([[1, 1, 1, 5, 5, 5]], ["tx"], covariates.index)
        tech = TechnicalVariance(pd.Series([0.0], index=["tx"]))

        fit = fit_measurement_error_models(observed, design, tech).feature_fits()["tx"]

        assert fit.coefficients[design.column_index("conditiontreated")] == pytest.approx(4.0)
        assert fit.coefficients[0] == pytest.approx(1.0)
        np.testing.assert_allclose(fit.residuals, np.zeros(6), atol=1e-12)
        assert fit.rss == pytest.approx(0.0, abs=1e-20)
        assert fit.mean_obs == pytest.approx(3.0)
        assert fit.var_obs == pytest.approx(np.var([1, 1, 1, 5, 5, 5], ddof=1))

    def test_degrees_free_shared(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech = TechnicalVariance(small_simulation["technical"])

        fits = fit_measurement_error_models(observed, small_design, tech)

        assert fits.degrees_free == small_design.n_samples - small_design.n_params == 4
        for fit in list(fits.feature_fits().values())[:25]:
            assert fit.degrees_free == 4
            assert fit.sigma_sq == pytest.approx(fit.rss / 4 - fit.sigma_q_sq)


class TestFitMechanics:

    def test_matches_lstsq_per_feature(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech = TechnicalVariance(small_simulation["technical"])
        fits = fit_measurement_error_models(observed, small_design, tech)

        y = observed.row("tx00017")
        beta, *_ = np.linalg.lstsq(small_design.X, y, rcond=None)
        np.testing.assert_allclose(fits.coefficient_frame().loc["tx00017"].to_numpy(), beta)

    def test_chunked_parallel_identical(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech = TechnicalVariance(small_simulation["technical"])

        serial = fit_measurement_error_models(observed, small_design, tech)
        parallel = fit_measurement_error_models(
            observed, small_design, tech, n_workers=4, chunk_size=17
        )

        assert serial.target_ids == parallel.target_ids
        np.testing.assert_allclose(serial.coefficients, parallel.coefficients, rtol=1e-12, atol=1e-14)
        np.testing.assert_allclose(serial.sigma_sq, parallel.sigma_sq, rtol=1e-12, atol=1e-14)

    def test_samples_aligned_by_identifier(self, small_simulation, small_design):
        frame = small_simulation["observed"]
        tech = TechnicalVariance(small_simulation["technical"])
        shuffled = frame[list(reversed(frame.columns))]

        a = fit_measurement_error_models(ObservedMatrix.from_frame(frame), small_design, tech)
        b = fit_measurement_error_models(ObservedMatrix.from_frame(shuffled), small_design, tech)

        np.testing.assert_allclose(a.coefficients, b.coefficients)
        np.testing.assert_allclose(a.rss, b.rss)

    def test_technical_variance_aligned_by_identifier(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech_series = small_simulation["technical"].copy()
        tech_series.iloc[0] = 0.5
        reversed_tech = TechnicalVariance(tech_series.iloc[::-1])

        fits = fit_measurement_error_models(observed, small_design, reversed_tech)
        assert fits.feature_fits()[tech_series.index[0]].sigma_q_sq == 0.5

    def test_feature_mismatch_raises(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech = TechnicalVariance(small_simulation["technical"].iloc[1:])
        with pytest.raises(AlignmentError):
            fit_measurement_error_models(observed, small_design, tech)

    def test_sample_mismatch_raises(self, small_simulation, small_design):
        frame = small_simulation["observed"].iloc[:, :5]
        tech = TechnicalVariance(small_simulation["technical"])
        with pytest.raises(AlignmentError):
            fit_measurement_error_models(ObservedMatrix.from_frame(frame), small_design, tech)

    def test_non_finite_rejected(self, small_simulation, small_design):
        frame = small_simulation["observed"].copy()
        frame.iloc[3, 2] = np.nan
        tech = TechnicalVariance(small_simulation["technical"])
        with pytest.raises(ValueError, match="non-finite"):
            fit_measurement_error_models(ObservedMatrix.from_frame(frame), small_design, tech)

    def test_rank_deficient_solve_raises(self):
        # Design bypassing the builder's rank check
        X = np.column_stack([np.ones(4), np.ones(4)])
        Y = np.arange(8.0).reshape(2, 4)
        with pytest.raises(DesignRankError):
            _fit_chunk(X, Y, np.zeros(2), 2, ("a", "b"))

    def test_results_read_only(self, small_simulation, small_design):
        observed = ObservedMatrix.from_frame(small_simulation["observed"])
        tech = TechnicalVariance(small_simulation["technical"])
        fits = fit_measurement_error_models(observed, small_design, tech)
        with pytest.raises(ValueError):
            fits.sigma_sq[0] = 1.0
        with pytest.raises(TypeError):
            fits.feature_fits()["new"] = None
