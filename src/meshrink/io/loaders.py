"""
Loaders for the pre-normalized tables consumed by the model.

Inputs are produced upstream (normalization, low-abundance filtering):

    abundance table   features × samples, first column = target id
    bootstrap table   long format, one row per (target_id, sample, bootstrap)
    covariates        one row per sample, a ``sample`` column plus covariates
    retained ids      one target id per line

Tab-separated files are recognized by a ``.tsv``/``.txt``/``.tab`` suffix
(optionally gzipped); everything else is read as comma-separated.

Examples:
    >>> from pathlib import Path
    >>> from meshrink.io.loaders import load_abundance_table
    >>>
    >>> observed = load_abundance_table(Path("norm_counts.tsv"))
    >>> print(f"Loaded {observed.n_features} targets × {observed.n_samples} samples")
"""

from __future__ import annotations

import warnings
from pathlib import Path

import numpy as np
import pandas as pd

from meshrink.core.abundance import ObservedMatrix

__all__ = [
    'load_abundance_table',
    'load_bootstrap_table',
    'load_covariates',
    'load_retained_ids',
]

_TAB_SUFFIXES = {'.tsv', '.txt', '.tab'}


def _check_file(path: Path | str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return path


def _separator(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes if s.lower() != '.gz']
    if suffixes and suffixes[-1] in _TAB_SUFFIXES:
        return '\t'
    return ','


def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    try:
        df = pd.read_csv(path, sep=_separator(path), **kwargs)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"File is empty: {path}") from e
    if df.empty:
        raise ValueError(f"File contains no data: {path}")
    return df


def load_abundance_table(path: Path | str) -> ObservedMatrix:
    """
    Load a normalized features × samples abundance table.

    Duplicated target ids keep their first occurrence, with a warning.

    Raises:
        FileNotFoundError: If path does not exist.
        ValueError: If the table is empty, has duplicated sample columns,
            or holds non-numeric or missing values.
    """
    path = _check_file(path)
    df = _read_table(path, index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    if df.columns.duplicated().any():
        dupes = df.columns[df.columns.duplicated()].tolist()
        raise ValueError(f"Duplicated sample columns in {path}: {dupes[:5]}")

    if df.index.duplicated().any():
        n_duplicates = int(df.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate target ids in {path.name}. "
            "Using first occurrence of each.",
            UserWarning,
            stacklevel=2,
        )
        df = df[~df.index.duplicated(keep='first')]

    try:
        data = df.to_numpy(dtype=np.float64)
    except ValueError as e:
        bad_cols = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
        raise ValueError(f"Non-numeric abundance columns in {path}: {bad_cols[:5]}") from e

    if np.isnan(data).any():
        n_rows = int(np.isnan(data).any(axis=1).sum())
        raise ValueError(f"{n_rows} targets in {path} have missing abundances")

    return ObservedMatrix(data, feature_ids=pd.Index(df.index), sample_ids=pd.Index(df.columns))


def load_bootstrap_table(
    path: Path | str,
    value_column: str = 'est_counts',
    target_column: str = 'target_id',
    sample_column: str = 'sample',
) -> pd.DataFrame:
    """
    Load long-format bootstrap replicates.

    Returns:
        DataFrame with string target and sample ids and a float value column.
        Other columns (e.g. the bootstrap number) are kept.

    Raises:
        ValueError: If required columns are missing or values are non-numeric.
    """
    path = _check_file(path)
    df = _read_table(path)

    required = [target_column, sample_column, value_column]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Bootstrap table {path} is missing columns {missing}. "
            f"Available: {list(df.columns)}"
        )

    df[target_column] = df[target_column].astype(str)
    df[sample_column] = df[sample_column].astype(str)
    values = pd.to_numeric(df[value_column], errors='coerce')
    if values.isna().any():
        raise ValueError(
            f"Bootstrap table {path} has {int(values.isna().sum())} missing or "
            f"non-numeric '{value_column}' values"
        )
    df[value_column] = values.astype(np.float64)
    return df


def load_covariates(path: Path | str, sample_column: str = 'sample') -> pd.DataFrame:
    """
    Load the sample covariates table, indexed by sample id.

    Raises:
        ValueError: If the sample column is missing or has duplicates.
    """
    path = _check_file(path)
    df = _read_table(path)

    if sample_column not in df.columns:
        raise ValueError(
            f"Covariates table {path} has no '{sample_column}' column. "
            f"Available: {list(df.columns)}"
        )
    df[sample_column] = df[sample_column].astype(str)
    if df[sample_column].duplicated().any():
        dupes = df.loc[df[sample_column].duplicated(), sample_column].tolist()
        raise ValueError(f"Duplicated samples in covariates table {path}: {dupes[:5]}")

    return df.set_index(sample_column)


def load_retained_ids(path: Path | str) -> list[str]:
    """
    Load the target ids kept by the low-abundance filter.

    One id per line; blank lines and ``#`` comments are skipped, as is a
    leading ``target_id`` header.
    """
    path = _check_file(path)
    ids = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            ids.append(line.split('\t')[0].split(',')[0])
    if ids and ids[0] == 'target_id':
        ids = ids[1:]
    if not ids:
        raise ValueError(f"No retained target ids in {path}")
    return list(dict.fromkeys(ids))
