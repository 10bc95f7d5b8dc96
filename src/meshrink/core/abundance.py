"""
Core data structures for per-feature abundance measurements.

ObservedMatrix holds the point-estimate abundance matrix consumed by the
measurement-error model. TechnicalVariance holds the bootstrap-derived
technical variance for each feature.

Biological Context:
    Abundance matrices are the fundamental input of the model fit:
    - Rows = features (transcripts, genes)
    - Columns = samples
    - Values = (possibly log-transformed) normalized abundances

    Technical variance is the quantification noise of each feature,
    estimated from bootstrap resampling of the reads. It is known
    before the fit and subtracted from the total residual variance.

Engineering Design:
    - Immutable: Operations return new instances (functional style)
    - Identifier-keyed: every re-ordering goes through feature identifiers,
      positional correspondence is never assumed after a transformation
    - Validated: Constructors check shape and identifier uniqueness

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from meshrink.core.abundance import ObservedMatrix
    >>>
    >>> matrix = ObservedMatrix(
    ...     data=np.array([[1.0, 2.0], [3.0, 4.0]]),
    ...     feature_ids=pd.Index(["tx1", "tx2"]),
    ...     sample_ids=pd.Index(["s1", "s2"]),
    ... )
    >>> matrix.reindex_features(["tx2", "tx1"]).data[0]
    array([3., 4.])
"""

from __future__ import annotations

from typing import Iterable

import numpy as np
import pandas as pd

from meshrink.errors import AlignmentError

__all__ = ['ObservedMatrix', 'TechnicalVariance']


def _missing_from(index: pd.Index, wanted: Iterable[str]) -> list[str]:
    return [str(i) for i in wanted if i not in index]


class ObservedMatrix:
    """
    Immutable features × samples matrix of point-estimate abundances.

    Attributes:
        data: Abundance matrix (features × samples), float64, read-only
        feature_ids: Row identifiers (target ids)
        sample_ids: Column identifiers

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - feature_ids and sample_ids are unique
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
    ):
        """
        Initialize ObservedMatrix with validation.

        Args:
            data: Abundance matrix (features × samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers

        Raises:
            TypeError: If data is not an ndarray or ids are not pd.Index
            ValueError: If shapes are inconsistent or ids are duplicated
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape
        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if not feature_ids.is_unique:
            dupes = feature_ids[feature_ids.duplicated()].unique().tolist()
            raise ValueError(f"feature_ids must be unique, duplicated: {dupes[:5]}")
        if not sample_ids.is_unique:
            dupes = sample_ids[sample_ids.duplicated()].unique().tolist()
            raise ValueError(f"sample_ids must be unique, duplicated: {dupes[:5]}")

        values = np.array(data, dtype=np.float64, copy=True)
        values.flags.writeable = False

        self._data = values
        self._feature_ids = feature_ids.astype(str)
        self._sample_ids = sample_ids.astype(str)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> ObservedMatrix:
        """Build from a DataFrame indexed by feature id with one column per sample."""
        return cls(
            data=frame.to_numpy(dtype=np.float64),
            feature_ids=pd.Index(frame.index),
            sample_ids=pd.Index(frame.columns),
        )

    @property
    def data(self) -> np.ndarray:
        """Abundance matrix (features × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers."""
        return self._sample_ids

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def row(self, feature_id: str) -> np.ndarray:
        """Abundances of one feature across all samples."""
        loc = self._feature_ids.get_indexer([feature_id])[0]
        if loc < 0:
            raise AlignmentError("row lookup", missing=[feature_id])
        return self._data[loc]

    def apply(self, func) -> ObservedMatrix:
        """Return a new matrix with ``func`` applied elementwise to the data."""
        return ObservedMatrix(
            data=np.asarray(func(self._data), dtype=np.float64),
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ObservedMatrix:
        """
        Subset matrix by features (rows) using a boolean mask.

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )
        return ObservedMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
        )

    def reindex_features(self, feature_ids: Iterable[str]) -> ObservedMatrix:
        """
        Re-order (and optionally subset) rows by identifier.

        Raises:
            AlignmentError: If any requested identifier is not present
        """
        wanted = pd.Index([str(f) for f in feature_ids])
        indexer = self._feature_ids.get_indexer(wanted)
        if np.any(indexer < 0):
            raise AlignmentError(
                "observed matrix rows",
                missing=_missing_from(self._feature_ids, wanted),
            )
        return ObservedMatrix(
            data=self._data[indexer, :],
            feature_ids=wanted,
            sample_ids=self._sample_ids,
        )

    def reorder_samples(self, sample_ids: Iterable[str]) -> ObservedMatrix:
        """
        Re-order columns by sample identifier.

        The requested ids must be exactly the matrix's samples (possibly
        permuted); the design matrix and the observed columns must cover
        the same samples.

        Raises:
            AlignmentError: If the sample sets differ
        """
        wanted = pd.Index([str(s) for s in sample_ids])
        missing = _missing_from(self._sample_ids, wanted)
        extra = [s for s in self._sample_ids if s not in wanted]
        if missing or extra:
            raise AlignmentError("observed matrix samples", missing=missing, extra=extra)
        indexer = self._sample_ids.get_indexer(wanted)
        return ObservedMatrix(
            data=self._data[:, indexer],
            feature_ids=self._feature_ids,
            sample_ids=wanted,
        )

    def to_frame(self) -> pd.DataFrame:
        """Copy of the matrix as a DataFrame (features × samples)."""
        return pd.DataFrame(
            self._data.copy(), index=self._feature_ids, columns=self._sample_ids
        )

    def __repr__(self) -> str:
        if self.n_features == 0:
            return f"ObservedMatrix(0 features × {self.n_samples} samples)"
        return (
            f"ObservedMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {list(self.sample_ids)}"
        )


class TechnicalVariance:
    """
    Bootstrap-derived technical variance per feature.

    Attributes:
        values: Series feature id -> pooled technical variance (sigma_q_sq),
            the mean across samples of the per-sample bootstrap variance
        per_sample: Optional DataFrame (features × samples) of per-sample
            bootstrap variance, used by the heteroscedastic covariance mode
    """

    def __init__(self, values: pd.Series, per_sample: pd.DataFrame | None = None):
        if not isinstance(values, pd.Series):
            raise TypeError(f"values must be pd.Series, got {type(values)}")
        values = values.astype(np.float64).copy()
        values.index = values.index.astype(str)

        if not values.index.is_unique:
            raise ValueError("technical variance index must be unique")
        if values.isna().any():
            bad = values.index[values.isna()].tolist()
            raise ValueError(f"technical variance undefined for {len(bad)} features: {bad[:5]}")
        if (values < 0).any():
            bad = values.index[values < 0].tolist()
            raise ValueError(f"technical variance must be non-negative, negative for: {bad[:5]}")

        if per_sample is not None:
            per_sample = per_sample.astype(np.float64).copy()
            per_sample.index = per_sample.index.astype(str)
            per_sample.columns = per_sample.columns.astype(str)
            if not per_sample.index.equals(values.index):
                per_sample = per_sample.reindex(values.index)
                if per_sample.isna().all(axis=1).any():
                    missing = per_sample.index[per_sample.isna().all(axis=1)].tolist()
                    raise AlignmentError("per-sample technical variance", missing=missing)

        self._values = values
        self._per_sample = per_sample

    @property
    def values(self) -> pd.Series:
        return self._values

    @property
    def per_sample(self) -> pd.DataFrame | None:
        return self._per_sample

    @property
    def feature_ids(self) -> pd.Index:
        return self._values.index

    def __len__(self) -> int:
        return len(self._values)

    def align_to(self, feature_ids: Iterable[str]) -> TechnicalVariance:
        """
        Re-index by feature identifier.

        Raises:
            AlignmentError: If any requested feature has no technical variance
        """
        wanted = pd.Index([str(f) for f in feature_ids])
        missing = _missing_from(self._values.index, wanted)
        if missing:
            raise AlignmentError("technical variance", missing=missing)
        per_sample = None
        if self._per_sample is not None:
            per_sample = self._per_sample.loc[wanted]
        return TechnicalVariance(self._values.loc[wanted], per_sample)

    def __repr__(self) -> str:
        mode = "per-sample" if self._per_sample is not None else "pooled"
        return f"TechnicalVariance({len(self)} features, {mode})"
