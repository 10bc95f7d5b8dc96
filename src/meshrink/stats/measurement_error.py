"""
Per-feature measurement error model fit.

For every feature i the observed (transformed) abundances y_i across samples
are regressed on the shared design matrix X by ordinary least squares:

    y_i = X β_i + ε_i,    Var(ε_ij) = σ²_i + σ²_qi

where σ²_qi is the technical (bootstrap) variance and σ²_i the biological
variance. The residual variance estimates the total, so

    sigma_sq_i = RSS_i / (n - p) - sigma_q_sq_i

is an unbiased estimate of the biological variance. It is negative whenever
the technical variance exceeds the residual variance; that is an expected
outcome, floored at zero during shrinkage, not an error.

Performance:
    X is shared by all features, so features are fit in vectorized chunks
    (one lstsq call per chunk). Chunks are independent and may run on a
    thread pool; numpy releases the GIL inside the LAPACK calls. Results are
    merged in chunk order, so the output never depends on completion order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.errors import AlignmentError, DesignRankError
from meshrink.stats.design_matrix import Design

logger = logging.getLogger(__name__)

__all__ = [
    'FeatureFit',
    'MeasurementErrorFits',
    'fit_measurement_error_models',
]


@dataclass(frozen=True)
class FeatureFit:
    """Measurement error model fit for a single feature.

    Attributes:
        target_id: Feature identifier.
        coefficients: OLS coefficients, parallel to the design columns.
        residuals: OLS residuals, parallel to the design rows.
        rss: Residual sum of squares.
        degrees_free: n_samples - n_params, identical for every feature of a fit.
        sigma_sq: Raw biological variance, RSS / degrees_free - sigma_q_sq.
            May be negative.
        sigma_q_sq: Technical variance.
        mean_obs: Mean of the observed values.
        var_obs: Variance of the observed values (ddof=1).
    """

    target_id: str
    coefficients: NDArray[np.float64]
    residuals: NDArray[np.float64]
    rss: float
    degrees_free: int
    sigma_sq: float
    sigma_q_sq: float
    mean_obs: float
    var_obs: float

    def __post_init__(self):
        for attr in ('coefficients', 'residuals'):
            arr = np.array(getattr(self, attr), dtype=np.float64, copy=True)
            arr.flags.writeable = False
            object.__setattr__(self, attr, arr)

    @property
    def sigma_sq_pmax(self) -> float:
        """Biological variance floored at zero."""
        return max(self.sigma_sq, 0.0)


@dataclass(frozen=True)
class MeasurementErrorFits:
    """Vectorized measurement error fits for all features of one design.

    Rows of every array follow ``target_ids``.
    """

    target_ids: tuple[str, ...]
    col_names: tuple[str, ...]
    coefficients: NDArray[np.float64]   # (n_features, n_params)
    residuals: NDArray[np.float64]      # (n_features, n_samples)
    rss: NDArray[np.float64]
    sigma_sq: NDArray[np.float64]
    sigma_q_sq: NDArray[np.float64]
    mean_obs: NDArray[np.float64]
    var_obs: NDArray[np.float64]
    degrees_free: int

    def __post_init__(self):
        object.__setattr__(self, 'target_ids', tuple(self.target_ids))
        for attr in ('coefficients', 'residuals', 'rss', 'sigma_sq',
                     'sigma_q_sq', 'mean_obs', 'var_obs'):
            arr = np.array(getattr(self, attr), dtype=np.float64, copy=True)
            if arr.shape[0] != len(self.target_ids):
                raise ValueError(
                    f"{attr} has {arr.shape[0]} rows for {len(self.target_ids)} features"
                )
            arr.flags.writeable = False
            object.__setattr__(self, attr, arr)

    @property
    def n_features(self) -> int:
        return len(self.target_ids)

    def feature_fits(self) -> Mapping[str, FeatureFit]:
        """Read-only mapping target_id -> FeatureFit."""
        fits = {
            tid: FeatureFit(
                target_id=tid,
                coefficients=self.coefficients[i],
                residuals=self.residuals[i],
                rss=float(self.rss[i]),
                degrees_free=self.degrees_free,
                sigma_sq=float(self.sigma_sq[i]),
                sigma_q_sq=float(self.sigma_q_sq[i]),
                mean_obs=float(self.mean_obs[i]),
                var_obs=float(self.var_obs[i]),
            )
            for i, tid in enumerate(self.target_ids)
        }
        return MappingProxyType(fits)

    def coefficient_frame(self) -> pd.DataFrame:
        """Coefficients as a DataFrame (features × design columns)."""
        return pd.DataFrame(
            self.coefficients, index=list(self.target_ids), columns=list(self.col_names)
        )

    def to_frame(self) -> pd.DataFrame:
        """Per-feature variance table, the input of shrinkage estimation."""
        return pd.DataFrame({
            'target_id': list(self.target_ids),
            'rss': self.rss,
            'sigma_sq': self.sigma_sq,
            'sigma_q_sq': self.sigma_q_sq,
            'mean_obs': self.mean_obs,
            'var_obs': self.var_obs,
            'sigma_sq_pmax': np.maximum(self.sigma_sq, 0.0),
        })


def _fit_chunk(
    X: NDArray[np.float64],
    Y: NDArray[np.float64],
    sigma_q_sq: NDArray[np.float64],
    degrees_free: int,
    col_names: tuple[str, ...],
) -> tuple[NDArray[np.float64], ...]:
    """OLS for a block of features sharing X. Y is (n_features, n_samples)."""
    n_params = X.shape[1]
    if Y.shape[0] == 0:
        empty = np.empty(0)
        return np.empty((0, n_params)), np.empty((0, X.shape[0])), empty, empty, empty, empty

    beta, _, rank, _ = np.linalg.lstsq(X, Y.T, rcond=None)
    if rank < n_params:
        raise DesignRankError(int(rank), n_params, list(col_names))

    residuals = Y - (X @ beta).T
    rss = np.sum(residuals ** 2, axis=1)
    sigma_sq = rss / degrees_free - sigma_q_sq

    mean_obs = Y.mean(axis=1)
    var_obs = Y.var(axis=1, ddof=1)

    return beta.T, residuals, rss, sigma_sq, mean_obs, var_obs


def fit_measurement_error_models(
    observed: ObservedMatrix,
    design: Design,
    technical_variance: TechnicalVariance,
    n_workers: int = 1,
    chunk_size: int = 2000,
) -> MeasurementErrorFits:
    """
    Fit the measurement error model to every feature.

    Args:
        observed: Transformed abundances (features × samples). Columns are
            aligned to ``design.sample_ids`` by sample identifier.
        design: Full-rank design matrix.
        technical_variance: sigma_q_sq for exactly the observed features.
        n_workers: Threads used for chunks; 1 runs serially.
        chunk_size: Features per vectorized lstsq call.

    Returns:
        MeasurementErrorFits in observed row order.

    Raises:
        AlignmentError: If observed samples differ from the design samples,
            or the technical variance covers a different feature set.
        DesignRankError: If the least-squares solve is rank-deficient.
        ValueError: If the observed matrix has non-finite values.
    """
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    observed = observed.reorder_samples(design.sample_ids)

    obs_ids = set(observed.feature_ids)
    tech_ids = set(technical_variance.feature_ids)
    if obs_ids != tech_ids:
        raise AlignmentError(
            "observed matrix vs technical variance",
            missing=sorted(obs_ids - tech_ids),
            extra=sorted(tech_ids - obs_ids),
        )
    sigma_q = technical_variance.align_to(observed.feature_ids).values.to_numpy()

    Y = observed.data
    if not np.all(np.isfinite(Y)):
        n_bad = int(np.sum(~np.all(np.isfinite(Y), axis=1)))
        raise ValueError(f"Observed matrix has non-finite values in {n_bad} features")

    X = design.X
    degrees_free = design.df_residual
    n_features = observed.n_features

    logger.info("Fitting measurement error models")
    logger.debug(
        "%d features, %d samples, %d params, df=%d",
        n_features, design.n_samples, design.n_params, degrees_free,
    )

    bounds = [(s, min(s + chunk_size, n_features)) for s in range(0, n_features, chunk_size)]
    if not bounds:
        bounds = [(0, 0)]

    def run(bound: tuple[int, int]):
        lo, hi = bound
        return _fit_chunk(X, Y[lo:hi], sigma_q[lo:hi], degrees_free, design.col_names)

    if n_workers == 1 or len(bounds) == 1:
        chunks = [run(b) for b in bounds]
    else:
        with ThreadPoolExecutor(max_workers=min(n_workers, len(bounds))) as executor:
            futures = [executor.submit(run, b) for b in bounds]
            chunks = [f.result() for f in futures]

    coefs, resids, rss, sigma_sq, mean_obs, var_obs = (
        np.concatenate(parts, axis=0) for parts in zip(*chunks)
    )

    return MeasurementErrorFits(
        target_ids=tuple(observed.feature_ids),
        col_names=design.col_names,
        coefficients=coefs,
        residuals=resids,
        rss=rss,
        sigma_sq=sigma_sq,
        sigma_q_sq=sigma_q,
        mean_obs=mean_obs,
        var_obs=var_obs,
        degrees_free=degrees_free,
    )
