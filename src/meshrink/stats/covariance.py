"""
Covariance of the per-feature coefficient estimates.

Two modes:

    homoscedastic    Var(β̂_i) = sigma_i · A
                     sigma_i = smooth_sigma_sq_pmax_i + sigma_q_sq_i
    heteroscedastic  Var(β̂_i) = A Xᵗ diag(s_i) X A
                     s_ij = smooth_sigma_sq_pmax_i + sigma_q_sq_ij

with A = (XᵗX)⁻¹ computed once per fit. The heteroscedastic (White/sandwich)
form is used when the bootstrap variance differs by sample; with s_ij
constant in j it reduces to the homoscedastic form.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from meshrink.errors import AlignmentError
from meshrink.stats.design_matrix import Design
from meshrink.stats.shrinkage import ShrinkageSummary

logger = logging.getLogger(__name__)

__all__ = ['covar_beta', 'compute_beta_covariances']


def covar_beta(
    sigma: float | NDArray[np.float64],
    X: NDArray[np.float64],
    xtx_inv: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Covariance matrix of the OLS coefficients of one feature.

    Args:
        sigma: Scalar total variance, or a vector of per-sample variances
            (length n_samples) for the sandwich estimator.
        X: Design matrix (n_samples × n_params).
        xtx_inv: (XᵗX)⁻¹.

    Returns:
        (n_params × n_params) covariance matrix.
    """
    sigma_arr = np.asarray(sigma, dtype=np.float64)
    if sigma_arr.ndim == 0:
        return float(sigma_arr) * xtx_inv
    if sigma_arr.shape != (X.shape[0],):
        raise ValueError(
            f"sigma must be a scalar or have length n_samples={X.shape[0]}, "
            f"got shape {sigma_arr.shape}"
        )
    B = X @ xtx_inv
    return B.T @ (sigma_arr[:, None] * B)


def _sandwich_chunk(B: NDArray[np.float64], S: NDArray[np.float64]) -> NDArray[np.float64]:
    # S is (n_features, n_samples); result is (n_features, p, p)
    return np.einsum('nj,in,nk->ijk', B, S, B, optimize=True)


def compute_beta_covariances(
    summary: ShrinkageSummary,
    design: Design,
    per_sample: pd.DataFrame | None = None,
    n_workers: int = 1,
    chunk_size: int = 2000,
) -> dict[str, NDArray[np.float64]]:
    """
    Coefficient covariance for every feature of a shrinkage summary.

    Args:
        summary: Shrinkage summary providing smooth_sigma_sq_pmax and sigma_q_sq.
        design: Design the features were fit against.
        per_sample: Optional per-sample technical variance (features × samples).
            When given, the sandwich estimator is used.
        n_workers: Threads used for heteroscedastic chunks.
        chunk_size: Features per vectorized chunk.

    Returns:
        Dict target_id -> read-only (p × p) covariance, in summary order.

    Raises:
        AlignmentError: If per_sample does not cover the summary features or
            the design samples.
    """
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")

    logger.info("Computing variance of betas")

    A = design.xtx_inv()
    X = design.X
    ids = list(summary.target_ids)
    smooth = summary.column('smooth_sigma_sq_pmax').to_numpy(dtype=np.float64)

    if per_sample is None:
        sigma = smooth + summary.column('sigma_q_sq').to_numpy(dtype=np.float64)
        covs = sigma[:, None, None] * A[None, :, :]
    else:
        per_sample = per_sample.copy()
        per_sample.index = per_sample.index.astype(str)
        per_sample.columns = per_sample.columns.astype(str)
        missing_rows = [t for t in ids if t not in per_sample.index]
        if missing_rows:
            raise AlignmentError("per-sample technical variance", missing=missing_rows)
        missing_cols = [s for s in design.sample_ids if s not in per_sample.columns]
        if missing_cols:
            raise AlignmentError("per-sample technical variance samples", missing=missing_cols)

        S = per_sample.loc[ids, list(design.sample_ids)].to_numpy(dtype=np.float64)
        S = S + smooth[:, None]
        B = X @ A

        bounds = [(s, min(s + chunk_size, len(ids))) for s in range(0, len(ids), chunk_size)]
        if n_workers == 1 or len(bounds) <= 1:
            parts = [_sandwich_chunk(B, S[lo:hi]) for lo, hi in bounds]
        else:
            with ThreadPoolExecutor(max_workers=min(n_workers, len(bounds))) as executor:
                futures = [executor.submit(_sandwich_chunk, B, S[lo:hi]) for lo, hi in bounds]
                parts = [f.result() for f in futures]
        p = design.n_params
        covs = np.concatenate(parts, axis=0) if parts else np.empty((0, p, p))

    logger.debug(
        "Beta covariances for %d features (%s)",
        len(ids), "sandwich" if per_sample is not None else "pooled",
    )

    result = {}
    for i, target_id in enumerate(ids):
        cov = np.array(covs[i], copy=True)
        cov.flags.writeable = False
        result[target_id] = cov
    return result
