"""
Bootstrap variance summarization.

Turns per-feature, per-sample bootstrap replicate abundances into the two
inputs of the measurement-error model:

    observed    : features × samples point estimates (transformed)
    sigma_q_sq  : per-feature technical variance = mean over samples of the
                  per-sample variance of the transformed bootstrap replicates

The default transform is ``log(x + 0.5)``, which stabilizes the variance of
low-abundance features. The same transform is applied to the point
estimates and to the replicates so both live on the same scale.

Features present in only one of the inputs are dropped, never imputed.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Iterable

import numpy as np
import pandas as pd

from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.errors import AlignmentError

logger = logging.getLogger(__name__)

__all__ = [
    'BootstrapSummary',
    'log_transform',
    'summarize_bootstraps',
]

Transform = Callable[[np.ndarray], np.ndarray]


def log_transform(pseudocount: float = 0.5) -> Transform:
    """Return ``x -> log(x + pseudocount)``."""
    if pseudocount <= 0:
        raise ValueError(f"pseudocount must be positive, got {pseudocount}")

    def _transform(x):
        return np.log(np.asarray(x, dtype=np.float64) + pseudocount)

    return _transform


@dataclass(frozen=True)
class BootstrapSummary:
    """Observed matrix and technical variance, aligned by feature id.

    Attributes:
        observed: Transformed point-estimate abundances.
        technical_variance: Technical variance for exactly the observed rows.
    """

    observed: ObservedMatrix
    technical_variance: TechnicalVariance

    def __post_init__(self):
        if not self.observed.feature_ids.equals(self.technical_variance.feature_ids):
            obs = set(self.observed.feature_ids)
            tech = set(self.technical_variance.feature_ids)
            raise AlignmentError(
                "bootstrap summary",
                missing=sorted(obs - tech),
                extra=sorted(tech - obs),
            )

    @property
    def n_features(self) -> int:
        return self.observed.n_features

    def restrict_to(self, retained_ids: Iterable[str]) -> BootstrapSummary:
        """
        Keep only features retained by the low-abundance filter.

        Retained ids absent from the summary are dropped with a warning.
        Row order follows the observed matrix.
        """
        retained = {str(f) for f in retained_ids}
        present = set(self.observed.feature_ids)
        absent = retained - present
        if absent:
            warnings.warn(
                f"{len(absent)} retained features have no bootstrap summary and are skipped",
                UserWarning,
                stacklevel=2,
            )
        keep = [f for f in self.observed.feature_ids if f in retained]
        logger.debug("Restricting bootstrap summary to %d of %d features", len(keep), self.n_features)
        return BootstrapSummary(
            observed=self.observed.reindex_features(keep),
            technical_variance=self.technical_variance.align_to(keep),
        )


def summarize_bootstraps(
    observed: ObservedMatrix | pd.DataFrame,
    bootstraps: pd.DataFrame,
    transform: Transform | None = None,
    value_column: str = "est_counts",
    target_column: str = "target_id",
    sample_column: str = "sample",
) -> BootstrapSummary:
    """
    Summarize bootstrap replicates into observed values and technical variance.

    Args:
        observed: Normalized point estimates (features × samples), untransformed.
        bootstraps: Long-format replicates with one row per
            (target, sample, bootstrap) and the abundance in ``value_column``.
        transform: Applied to point estimates and replicates before computing
            variances. Defaults to ``log(x + 0.5)``; pass ``lambda x: x``
            for the identity.
        value_column: Replicate abundance column.
        target_column: Feature identifier column.
        sample_column: Sample identifier column.

    Returns:
        BootstrapSummary whose rows are the features present in both inputs
        with complete replicates, in observed-matrix order.

    Raises:
        AlignmentError: If observed samples have no bootstrap replicates.
        ValueError: If required columns are missing or a (feature, sample)
            pair has fewer than two replicates.
    """
    if transform is None:
        transform = log_transform(0.5)
    if isinstance(observed, pd.DataFrame):
        observed = ObservedMatrix.from_frame(observed)

    required = [target_column, sample_column, value_column]
    absent = [c for c in required if c not in bootstraps.columns]
    if absent:
        raise ValueError(
            f"bootstraps is missing columns {absent}. Available: {list(bootstraps.columns)}"
        )

    logger.info("Summarizing bootstraps")

    bs = bootstraps[required].copy()
    bs[target_column] = bs[target_column].astype(str)
    bs[sample_column] = bs[sample_column].astype(str)
    bs[value_column] = transform(bs[value_column].to_numpy(dtype=np.float64))

    bs_samples = set(bs[sample_column].unique())
    missing_samples = [s for s in observed.sample_ids if s not in bs_samples]
    if missing_samples:
        raise AlignmentError("bootstrap samples", missing=missing_samples)
    extra_samples = sorted(bs_samples - set(observed.sample_ids))
    if extra_samples:
        warnings.warn(
            f"Ignoring bootstrap replicates for {len(extra_samples)} samples "
            f"absent from the observed matrix: {extra_samples[:5]}",
            UserWarning,
            stacklevel=2,
        )
        bs = bs[bs[sample_column].isin(set(observed.sample_ids))]

    grouped = bs.groupby([target_column, sample_column], sort=False)[value_column]
    n_reps = grouped.size()
    if (n_reps < 2).any():
        bad = n_reps[n_reps < 2].index[:5].tolist()
        raise ValueError(
            f"At least two bootstrap replicates are required per feature and sample; "
            f"found fewer for {bad}"
        )

    # R's var(): unbiased, ddof=1
    per_sample = grouped.var(ddof=1).unstack(sample_column)
    per_sample = per_sample.reindex(columns=list(observed.sample_ids))

    incomplete = per_sample.isna().any(axis=1)
    if incomplete.any():
        warnings.warn(
            f"Dropping {int(incomplete.sum())} features without bootstrap replicates "
            f"in every sample",
            UserWarning,
            stacklevel=2,
        )
        per_sample = per_sample.loc[~incomplete]

    bs_ids = set(per_sample.index)
    common = [f for f in observed.feature_ids if f in bs_ids]
    n_obs_only = observed.n_features - len(common)
    n_bs_only = len(bs_ids) - len(common)
    if n_obs_only or n_bs_only:
        warnings.warn(
            f"Dropping {n_obs_only} features without bootstraps and "
            f"{n_bs_only} bootstrapped features without point estimates",
            UserWarning,
            stacklevel=2,
        )

    per_sample = per_sample.loc[common]
    sigma_q_sq = per_sample.mean(axis=1)
    sigma_q_sq.name = "sigma_q_sq"

    observed_t = observed.reindex_features(common).apply(transform)

    logger.debug(
        "Bootstrap summary: %d features × %d samples", observed_t.n_features, observed_t.n_samples
    )

    return BootstrapSummary(
        observed=observed_t,
        technical_variance=TechnicalVariance(sigma_q_sq, per_sample=per_sample),
    )
