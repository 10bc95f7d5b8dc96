"""
Wald test of a single design coefficient across all features.

    wald = b / se(b),    se(b) = sqrt(diag(Var(β̂))[k])
    p    = 2 · P(Z > |wald|),  Z ~ N(0, 1)
    q    = Benjamini-Hochberg adjustment of p across the tested features
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats
from statsmodels.stats.multitest import multipletests

from meshrink.errors import AlignmentError

if TYPE_CHECKING:
    from meshrink.stats.model import ModelFit

logger = logging.getLogger(__name__)

__all__ = ['WaldResult', 'fdr_correction', 'wald_test']

_STAT_COLUMNS = ['target_id', 'b', 'se_b', 'wald_stat', 'pval', 'qval']
_SUMMARY_COLUMNS = [
    'mean_obs', 'var_obs', 'rss', 'sigma_sq', 'sigma_sq_pmax', 'sigma_q_sq',
    'smooth_sigma_sq', 'smooth_sigma_sq_pmax', 'x_group', 'iqr',
]


def fdr_correction(pvalues: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries stay NaN and do not count toward the number of tests.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if np.any(valid_mask):
        adj_pvals[valid_mask] = multipletests(pvalues[valid_mask], method='fdr_bh')[1]

    return adj_pvals


@dataclass(frozen=True)
class WaldResult:
    """Wald test of one coefficient.

    Attributes:
        coefficient: Tested design column.
        table: One row per feature: target_id, b, se_b, wald_stat, pval,
            qval, followed by the shrinkage summary columns.
    """

    coefficient: str
    table: pd.DataFrame

    @property
    def n_tested(self) -> int:
        return len(self.table)

    def significant(self, alpha: float = 0.05) -> pd.DataFrame:
        """Rows with qval <= alpha, most significant first."""
        hits = self.table[self.table['qval'] <= alpha]
        return hits.sort_values(['pval', 'target_id'], kind='mergesort').reset_index(drop=True)

    def to_frame(self) -> pd.DataFrame:
        return self.table.copy()

    def __repr__(self) -> str:
        n_sig = int((self.table['qval'] <= 0.05).sum())
        return f"WaldResult('{self.coefficient}', {self.n_tested} features, {n_sig} with q <= 0.05)"


def wald_test(model_fit: ModelFit, which_beta: str) -> WaldResult:
    """
    Wald test of ``which_beta`` for every feature of a model fit.

    Args:
        model_fit: Completed fit (coefficients, shrinkage summary, covariances).
        which_beta: Exact name of a design column.

    Returns:
        WaldResult with rows in the fit's feature order.

    Raises:
        AmbiguousCoefficientError: If the name matches zero or several columns.
        AlignmentError: If the summary or covariances do not cover the fitted
            features.
    """
    k = model_fit.design.column_index(which_beta)
    fits = model_fit.fits
    target_ids = list(fits.target_ids)

    logger.info("Wald test for '%s' (fit '%s')", which_beta, model_fit.name)

    summary = model_fit.summary.align_to(target_ids)

    missing = [t for t in target_ids if t not in model_fit.beta_covars]
    if missing:
        raise AlignmentError("beta covariances", missing=missing)
    var_b = np.array([model_fit.beta_covars[t][k, k] for t in target_ids], dtype=np.float64)

    b = fits.coefficients[:, k]
    se_b = np.sqrt(var_b)
    with np.errstate(divide='ignore', invalid='ignore'):
        wald_stat = b / se_b
    pval = 2.0 * stats.norm.sf(np.abs(wald_stat))
    qval = fdr_correction(pval)

    n_undefined = int(np.isnan(pval).sum())
    if n_undefined:
        logger.debug("%d features have an undefined Wald statistic", n_undefined)

    table = pd.DataFrame({
        'target_id': target_ids,
        'b': b,
        'se_b': se_b,
        'wald_stat': wald_stat,
        'pval': pval,
        'qval': qval,
    })
    for col in _SUMMARY_COLUMNS:
        table[col] = summary[col].to_numpy()

    return WaldResult(coefficient=which_beta, table=table)
