"""
Shrinkage of biological variance toward the abundance trend.

Per-feature biological variance estimates have only n - p degrees of freedom
and are very noisy. Features with similar mean abundance have similar
variance, so each estimate borrows strength from the trend across thousands
of features:

    1. Sort features by mean abundance and cut the sorted sequence into
       overlapping windows of fixed size (sliding_window_grouping). Every
       abundance level gets the same number of points, so the dense
       low-abundance region does not dominate the fit.
    2. Within each window, keep the features whose floored variance lies
       inside the window's interquartile range (iqr_membership). Outlying
       variances do not enter the trend.
    3. Fit a robust lowess of sigma_sq_pmax ** (1/4) on mean abundance using
       the IQR members, with bisquare reweighting iterations.
    4. Evaluate the curve at every feature, raise to the 4th power, and take
       max(smooth_sigma_sq, sigma_sq): shrinkage only moves an estimate
       upward from what the feature's own data showed.

The double square root compresses the scale of the variance and makes the
residuals around the trend nearly symmetric.

Features with zero floored variance can be excluded from the windows
(``ignore_zeroes``); they still receive a smoothed value from the curve.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable, Iterator

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from statsmodels.nonparametric.smoothers_lowess import lowess

from meshrink.errors import AlignmentError

logger = logging.getLogger(__name__)

__all__ = [
    'ShrinkageConfig',
    'SlidingWindow',
    'ShrinkageRow',
    'ShrinkageSummary',
    'sliding_window_grouping',
    'iqr_membership',
    'shrink_variances',
]

_REQUIRED_COLUMNS = ('target_id', 'mean_obs', 'sigma_sq', 'sigma_q_sq')


@dataclass(frozen=True)
class ShrinkageConfig:
    """Parameters of the sliding-window lowess shrinkage.

    Attributes:
        window_size: Features per window.
        step: Offset between consecutive window starts (<= window_size so
            consecutive windows overlap or touch).
        lower_quantile: Lower bound of the within-window range used for fitting.
        upper_quantile: Upper bound of the within-window range used for fitting.
        ignore_zeroes: Exclude features with floored variance of zero from the
            windows. They are still assigned a smoothed value.
        span: Fraction of training points in each local regression (lowess frac).
        robust_iterations: Bisquare reweighting iterations of the lowess fit.
        delta_fraction: lowess ``delta`` as a fraction of the abundance range;
            points closer than delta reuse linear interpolation.
        min_fit_points: Below this many training points the trend is constant.
    """

    window_size: int = 100
    step: int = 50
    lower_quantile: float = 0.25
    upper_quantile: float = 0.75
    ignore_zeroes: bool = True
    span: float = 0.75
    robust_iterations: int = 3
    delta_fraction: float = 0.01
    min_fit_points: int = 10

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        if not 1 <= self.step <= self.window_size:
            raise ValueError(
                f"step must be in [1, window_size={self.window_size}], got {self.step}"
            )
        if not 0.0 <= self.lower_quantile < self.upper_quantile <= 1.0:
            raise ValueError(
                f"Need 0 <= lower_quantile < upper_quantile <= 1, got "
                f"{self.lower_quantile}, {self.upper_quantile}"
            )
        if not 0.0 < self.span <= 1.0:
            raise ValueError(f"span must be in (0, 1], got {self.span}")
        if self.robust_iterations < 0:
            raise ValueError(f"robust_iterations must be >= 0, got {self.robust_iterations}")
        if self.delta_fraction < 0:
            raise ValueError(f"delta_fraction must be >= 0, got {self.delta_fraction}")
        if self.min_fit_points < 2:
            raise ValueError(f"min_fit_points must be >= 2, got {self.min_fit_points}")


@dataclass(frozen=True)
class SlidingWindow:
    """One window of abundance-sorted features."""

    index: int
    target_ids: tuple[str, ...]
    center: float

    def __len__(self) -> int:
        return len(self.target_ids)


@dataclass(frozen=True)
class ShrinkageRow:
    """Shrinkage result for a single feature."""

    target_id: str
    mean_obs: float
    sigma_sq: float
    sigma_sq_pmax: float
    sigma_q_sq: float
    smooth_sigma_sq: float
    smooth_sigma_sq_pmax: float
    iqr: bool
    x_group: int


class ShrinkageSummary:
    """
    Per-feature shrinkage table, sorted by mean abundance.

    Columns: target_id, mean_obs, var_obs, rss, sigma_sq, sigma_sq_pmax,
    sigma_q_sq, x_group, iqr, smooth_sigma_sq, smooth_sigma_sq_pmax.
    """

    COLUMNS = (
        'target_id', 'mean_obs', 'var_obs', 'rss', 'sigma_sq', 'sigma_sq_pmax',
        'sigma_q_sq', 'x_group', 'iqr', 'smooth_sigma_sq', 'smooth_sigma_sq_pmax',
    )

    def __init__(self, table: pd.DataFrame):
        missing = [c for c in self.COLUMNS if c not in table.columns]
        if missing:
            raise ValueError(f"Shrinkage table is missing columns {missing}")
        table = table.loc[:, list(self.COLUMNS)].reset_index(drop=True).copy()
        table['target_id'] = table['target_id'].astype(str)
        if not table['target_id'].is_unique:
            raise ValueError("Shrinkage table has duplicated target ids")
        self._table = table
        self._index = pd.Index(table['target_id'])

    @property
    def target_ids(self) -> pd.Index:
        return self._index

    def __len__(self) -> int:
        return len(self._table)

    def to_frame(self) -> pd.DataFrame:
        """Copy of the table."""
        return self._table.copy()

    def column(self, name: str) -> pd.Series:
        """One column indexed by target id."""
        return pd.Series(self._table[name].to_numpy(), index=self._index, name=name)

    def align_to(self, target_ids: Iterable[str]) -> pd.DataFrame:
        """
        Rows re-ordered to ``target_ids`` by identifier.

        Raises:
            AlignmentError: If the identifier sets differ.
        """
        wanted = pd.Index([str(t) for t in target_ids])
        indexer = self._index.get_indexer(wanted)
        missing = wanted[indexer < 0].tolist()
        extra = sorted(set(self._index) - set(wanted))
        if missing or extra:
            raise AlignmentError("shrinkage summary", missing=missing, extra=extra)
        return self._table.iloc[indexer].reset_index(drop=True)

    def row(self, target_id: str) -> ShrinkageRow:
        loc = self._index.get_indexer([str(target_id)])[0]
        if loc < 0:
            raise AlignmentError("shrinkage summary lookup", missing=[str(target_id)])
        return self._make_row(self._table.iloc[loc])

    def rows(self) -> Iterator[ShrinkageRow]:
        for _, rec in self._table.iterrows():
            yield self._make_row(rec)

    @staticmethod
    def _make_row(rec: pd.Series) -> ShrinkageRow:
        return ShrinkageRow(
            target_id=str(rec['target_id']),
            mean_obs=float(rec['mean_obs']),
            sigma_sq=float(rec['sigma_sq']),
            sigma_sq_pmax=float(rec['sigma_sq_pmax']),
            sigma_q_sq=float(rec['sigma_q_sq']),
            smooth_sigma_sq=float(rec['smooth_sigma_sq']),
            smooth_sigma_sq_pmax=float(rec['smooth_sigma_sq_pmax']),
            iqr=bool(rec['iqr']),
            x_group=int(rec['x_group']),
        )

    def __repr__(self) -> str:
        return f"ShrinkageSummary({len(self)} features, {int(self._table['iqr'].sum())} in fit)"


def sliding_window_grouping(
    df: pd.DataFrame,
    x_col: str = 'mean_obs',
    y_col: str = 'sigma_sq_pmax',
    config: ShrinkageConfig | None = None,
) -> list[SlidingWindow]:
    """
    Group abundance-sorted features into overlapping windows.

    Windows start every ``config.step`` features and hold
    ``config.window_size`` features. The last window is anchored at the end
    of the sorted sequence so every eligible feature belongs to at least one
    window. With fewer eligible features than window_size a single window
    holds them all.

    Args:
        df: Table with ``target_id``, ``x_col`` and ``y_col``.
        x_col: Sort key (mean abundance).
        y_col: Floored variance, used to drop zeroes when ``ignore_zeroes``.
        config: Window parameters.

    Returns:
        Windows in ascending abundance order. Empty if no feature is eligible.
    """
    config = config or ShrinkageConfig()

    eligible = df
    if config.ignore_zeroes:
        eligible = df[df[y_col] > 0]

    ids = eligible['target_id'].to_numpy(dtype=str)
    x = eligible[x_col].to_numpy(dtype=np.float64)
    n = len(ids)
    if n == 0:
        return []

    # ties broken by id so grouping is deterministic
    order = np.lexsort((ids, x))
    ids = ids[order]
    x = x[order]

    size = min(config.window_size, n)
    starts = list(range(0, n - size + 1, config.step))
    if starts[-1] + size < n:
        starts.append(n - size)

    windows = [
        SlidingWindow(
            index=k,
            target_ids=tuple(ids[s:s + size]),
            center=float(np.median(x[s:s + size])),
        )
        for k, s in enumerate(starts)
    ]
    logger.debug(
        "Sliding windows: %d windows of %d features (step %d) over %d features",
        len(windows), size, config.step, n,
    )
    return windows


def iqr_membership(
    df: pd.DataFrame,
    windows: list[SlidingWindow],
    y_col: str = 'sigma_sq_pmax',
    config: ShrinkageConfig | None = None,
) -> tuple[pd.Series, pd.Series]:
    """
    Flag features lying inside the interquartile range of a window.

    A feature is a member if, in at least one window containing it, its
    ``y_col`` value lies within [lower_quantile, upper_quantile] of that
    window's values (bounds inclusive).

    Returns:
        (iqr, x_group): boolean membership and the index of the first window
        containing each feature (-1 if in none), both indexed by target_id.
    """
    config = config or ShrinkageConfig()

    index = pd.Index(df['target_id'].astype(str))
    y = df[y_col].to_numpy(dtype=np.float64)
    iqr = np.zeros(len(index), dtype=bool)
    x_group = np.full(len(index), -1, dtype=np.int64)

    for window in windows:
        pos = index.get_indexer(list(window.target_ids))
        if np.any(pos < 0):
            raise AlignmentError(
                f"window {window.index}",
                missing=[t for t, p in zip(window.target_ids, pos) if p < 0],
            )
        vals = y[pos]
        lo, hi = np.quantile(vals, [config.lower_quantile, config.upper_quantile])
        inside = (vals >= lo) & (vals <= hi)
        iqr[pos[inside]] = True
        unassigned = x_group[pos] < 0
        x_group[pos[unassigned]] = window.index

    return (
        pd.Series(iqr, index=index, name='iqr'),
        pd.Series(x_group, index=index, name='x_group'),
    )


def _constant_trend(y_train: NDArray[np.float64], n_eval: int, reason: str) -> NDArray[np.float64]:
    level = float(np.median(y_train)) if len(y_train) else 0.0
    warnings.warn(
        f"Variance trend is constant ({reason}); using level {level ** 4:.4g}",
        UserWarning,
        stacklevel=3,
    )
    return np.full(n_eval, level)


def _fit_trend(
    x_train: NDArray[np.float64],
    y_train: NDArray[np.float64],
    x_eval: NDArray[np.float64],
    config: ShrinkageConfig,
) -> NDArray[np.float64]:
    """Robust lowess of y on x, evaluated at x_eval by linear interpolation."""
    n_train = len(x_train)
    if n_train < config.min_fit_points:
        return _constant_trend(y_train, len(x_eval), f"{n_train} training points")
    if np.unique(x_train).size < 2:
        return _constant_trend(y_train, len(x_eval), "single abundance value")

    delta = config.delta_fraction * float(np.ptp(x_train))
    fitted = lowess(
        y_train,
        x_train,
        frac=config.span,
        it=config.robust_iterations,
        delta=delta,
        return_sorted=True,
    )
    xs, ys = fitted[:, 0], fitted[:, 1]
    ok = np.isfinite(ys)
    xs, ys = xs[ok], ys[ok]

    xu, idx = np.unique(xs, return_index=True)
    yu = ys[idx]
    if xu.size < 2:
        return _constant_trend(y_train, len(x_eval), "degenerate lowess fit")

    # np.interp holds the end values beyond the training range
    pred = np.interp(x_eval, xu, yu)
    return np.maximum(pred, 0.0)


def shrink_variances(
    fits: pd.DataFrame,
    config: ShrinkageConfig | None = None,
) -> ShrinkageSummary:
    """
    Shrink raw biological variance estimates toward the abundance trend.

    Args:
        fits: Per-feature table with target_id, mean_obs, sigma_sq and
            sigma_q_sq (var_obs and rss are carried through when present),
            e.g. ``MeasurementErrorFits.to_frame()``.
        config: Shrinkage parameters.

    Returns:
        ShrinkageSummary sorted by mean abundance, with
        smooth_sigma_sq_pmax >= sigma_sq_pmax >= 0 for every feature.
    """
    config = config or ShrinkageConfig()

    missing = [c for c in _REQUIRED_COLUMNS if c not in fits.columns]
    if missing:
        raise ValueError(f"fits table is missing columns {missing}")

    df = fits.copy()
    df['target_id'] = df['target_id'].astype(str)
    if not df['target_id'].is_unique:
        raise ValueError("fits table has duplicated target ids")
    for optional in ('var_obs', 'rss'):
        if optional not in df.columns:
            df[optional] = np.nan

    logger.info("Shrinkage estimation")

    df['sigma_sq_pmax'] = np.maximum(df['sigma_sq'].to_numpy(dtype=np.float64), 0.0)

    windows = sliding_window_grouping(df, 'mean_obs', 'sigma_sq_pmax', config)
    iqr, x_group = iqr_membership(df, windows, 'sigma_sq_pmax', config)
    df['iqr'] = iqr.to_numpy()
    df['x_group'] = x_group.to_numpy()

    train = df[df['iqr']]
    shrink = _fit_trend(
        train['mean_obs'].to_numpy(dtype=np.float64),
        np.sqrt(np.sqrt(train['sigma_sq_pmax'].to_numpy(dtype=np.float64))),
        df['mean_obs'].to_numpy(dtype=np.float64),
        config,
    )
    df['smooth_sigma_sq'] = shrink ** 4
    df['smooth_sigma_sq_pmax'] = np.maximum(df['smooth_sigma_sq'], df['sigma_sq'])

    logger.debug(
        "Shrinkage: %d windows, %d of %d features in fit",
        len(windows), int(df['iqr'].sum()), len(df),
    )

    order = np.lexsort((df['target_id'].to_numpy(dtype=str), df['mean_obs'].to_numpy()))
    return ShrinkageSummary(df.iloc[order])
