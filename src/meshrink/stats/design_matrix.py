"""
Explicit design matrix construction for the per-feature linear model.

Builds a fixed design matrix X (samples × parameters) and a parallel list of
column names from a small set of statically typed term kinds:

    Intercept()                       -> "(Intercept)"
    Categorical("condition")          -> "condition<level>" indicator columns
    Numeric("age", standardize=False) -> "age"

Column names follow the R model-matrix convention so that coefficients are
addressed the same way users name them in a formula (e.g. ``conditionKO``).
An R-style formula (``"~ condition + age"``) is read with patsy and mapped
onto the same term list by :func:`parse_design_formula`.

The rank of X is checked with a rank-revealing SVD immediately after
construction. A rank-deficient design raises ``DesignRankError`` rather than
producing a silently degenerate least-squares fit downstream.
"""

from __future__ import annotations

import ast
import warnings
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from patsy import ModelDesc, PatsyError

from meshrink.errors import (
    AmbiguousCoefficientError,
    DesignRankError,
    InvalidDesignError,
)

__all__ = [
    'Intercept',
    'Categorical',
    'Numeric',
    'Term',
    'DesignSpec',
    'Design',
    'parse_design_formula',
    'build_design_matrix',
    'check_design_rank',
    'INTERCEPT_NAME',
]

INTERCEPT_NAME = "(Intercept)"

# Above this, (X'X)^-1 loses most of its significant digits
_CONDITION_WARN = 1e8


@dataclass(frozen=True)
class Intercept:
    """Column of ones."""


@dataclass(frozen=True)
class Categorical:
    """Indicator columns for a categorical covariate.

    Attributes:
        column: Covariate column name.
        reference: Level absorbed by the intercept. Defaults to the first level.
        levels: Explicit level order. Defaults to sorted unique values.
    """

    column: str
    reference: str | None = None
    levels: tuple[str, ...] | None = None


@dataclass(frozen=True)
class Numeric:
    """A numeric covariate used as-is, or centered and scaled."""

    column: str
    standardize: bool = False


Term = Union[Intercept, Categorical, Numeric]


@dataclass(frozen=True)
class DesignSpec:
    """Ordered list of design terms."""

    terms: tuple[Term, ...]

    def __post_init__(self):
        object.__setattr__(self, 'terms', tuple(self.terms))

    @property
    def has_intercept(self) -> bool:
        return any(isinstance(t, Intercept) for t in self.terms)

    @property
    def columns_used(self) -> list[str]:
        return [t.column for t in self.terms if not isinstance(t, Intercept)]

    def describe(self) -> str:
        """Formula-like description, e.g. ``~ condition + age``."""
        parts = [c if c.isidentifier() else f"Q('{c}')" for c in self.columns_used]
        if not self.has_intercept:
            parts.insert(0, "0")
        return "~ " + (" + ".join(parts) if parts else "1")


@dataclass(frozen=True)
class Design:
    """Complete design specification.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank, read-only.
        col_names: Column names, parallel to the columns of X.
        sample_ids: Sample identifiers, parallel to the rows of X.
        formula: Formula-like description of the terms.
    """

    X: NDArray[np.float64]
    col_names: tuple[str, ...]
    sample_ids: tuple[str, ...]
    formula: str

    def __post_init__(self):
        X = np.array(self.X, dtype=np.float64, copy=True)
        X.flags.writeable = False
        object.__setattr__(self, 'X', X)
        object.__setattr__(self, 'col_names', tuple(self.col_names))
        object.__setattr__(self, 'sample_ids', tuple(str(s) for s in self.sample_ids))

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def column_index(self, name: str) -> int:
        """
        Locate a column by exact name.

        Raises:
            AmbiguousCoefficientError: If the name matches zero or several columns.
        """
        matches = [i for i, col in enumerate(self.col_names) if col == name]
        if len(matches) != 1:
            raise AmbiguousCoefficientError(name, list(self.col_names), len(matches))
        return matches[0]

    def xtx_inv(self) -> NDArray[np.float64]:
        """(X'X)^-1, shape (n_params, n_params)."""
        return np.linalg.inv(self.X.T @ self.X)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=list(self.sample_ids), columns=list(self.col_names))


def _column_name(node: ast.expr, code: str) -> str:
    """Covariate name from a bare name or a ``Q("...")`` quote."""
    if isinstance(node, ast.Name):
        return node.id
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id == "Q"
        and len(node.args) == 1
        and not node.keywords
        and isinstance(node.args[0], ast.Constant)
        and isinstance(node.args[0].value, str)
    ):
        return node.args[0].value
    raise InvalidDesignError(
        f"Unsupported term '{code}': use a column name, Q(\"name\") or C(name)"
    )


def _literal(node: ast.expr, code: str):
    try:
        return ast.literal_eval(node)
    except ValueError as e:
        raise InvalidDesignError(f"Unsupported argument in '{code}'") from e


def _treatment_reference(node: ast.expr, code: str) -> str:
    """Reference level of a ``Treatment(...)`` contrast."""
    if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
            and node.func.id == "Treatment"):
        raise InvalidDesignError(
            f"Unsupported contrast in '{code}': only Treatment coding is available"
        )
    if node.args:
        return str(_literal(node.args[0], code))
    for kw in node.keywords:
        if kw.arg == "reference":
            return str(_literal(kw.value, code))
    raise InvalidDesignError(f"Treatment contrast in '{code}' has no reference level")


def _categorical_term(node: ast.Call, code: str) -> Categorical:
    """``C(x)``, ``C(x, Treatment("ref"))`` or ``C(x, levels=[...])``."""
    if not node.args:
        raise InvalidDesignError(f"'{code}' names no covariate")
    column = _column_name(node.args[0], code)

    contrast = node.args[1] if len(node.args) > 1 else None
    levels = None
    for kw in node.keywords:
        if kw.arg == "contrast":
            contrast = kw.value
        elif kw.arg == "levels":
            levels = tuple(str(lvl) for lvl in _literal(kw.value, code))
        else:
            raise InvalidDesignError(f"Unsupported argument '{kw.arg}' in '{code}'")
    if len(node.args) > 2:
        raise InvalidDesignError(f"Too many arguments in '{code}'")

    reference = _treatment_reference(contrast, code) if contrast is not None else None
    return Categorical(column, reference=reference, levels=levels)


def _factor_term(code: str, covariates: pd.DataFrame | None) -> Term:
    try:
        node = ast.parse(code, mode="eval").body
    except SyntaxError as e:
        raise InvalidDesignError(f"Cannot parse term '{code}'") from e

    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "C":
        return _categorical_term(node, code)

    column = _column_name(node, code)
    if covariates is not None and column in covariates.columns:
        series = covariates[column]
        if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
            return Numeric(column)
    return Categorical(column)


def parse_design_formula(
    formula: str,
    covariates: pd.DataFrame | None = None,
) -> DesignSpec:
    """
    Parse an R-style formula into a DesignSpec.

    The formula is read with patsy. Supported terms: ``~ a + b``,
    ``~ 0 + a`` / ``~ a - 1`` (no intercept), ``~ 1`` (intercept only),
    ``Q("odd-name")`` for columns that are not identifiers, and ``C(a)``,
    ``C(a, Treatment("ref"))`` or ``C(a, levels=[...])`` to force categorical
    coding. Interactions are not supported. Without ``C()``, a covariate is
    numeric when its column has a numeric (non-boolean) dtype and
    categorical otherwise.

    Args:
        formula: Formula string. A left-hand side (``y ~ ...``) is ignored.
        covariates: Sample covariates, used to infer term kinds.

    Returns:
        DesignSpec with the intercept first (if present).

    Raises:
        InvalidDesignError: On malformed formulas, unsupported terms or
            interaction terms.
    """
    if not isinstance(formula, str) or "~" not in formula:
        raise InvalidDesignError(f"'{formula}' is not a valid formula (missing '~')")
    if not formula.split("~", 1)[1].strip():
        raise InvalidDesignError(f"'{formula}' has an empty right-hand side")

    try:
        desc = ModelDesc.from_formula(formula)
    except PatsyError as e:
        raise InvalidDesignError(f"Invalid formula '{formula}': {e}") from e

    intercept = False
    terms: list[Term] = []
    seen: set[str] = set()
    for term in desc.rhs_termlist:
        if not term.factors:
            intercept = True
            continue
        if len(term.factors) > 1:
            raise InvalidDesignError(
                f"Interaction terms are not supported: '{term.name()}' in '{formula}'"
            )
        typed = _factor_term(term.factors[0].code, covariates)
        if typed.column in seen:
            continue
        seen.add(typed.column)
        terms.append(typed)

    if intercept:
        terms.insert(0, Intercept())
    if not terms:
        raise InvalidDesignError(f"'{formula}' produces no design columns")

    return DesignSpec(tuple(terms))


def check_design_rank(X: NDArray[np.float64], col_names: Sequence[str]) -> int:
    """
    Validate that X has full column rank.

    Returns:
        The numerical rank (equal to the number of columns).

    Raises:
        DesignRankError: If rank < number of columns.
    """
    rank = int(np.linalg.matrix_rank(X))
    if rank < X.shape[1]:
        raise DesignRankError(rank, X.shape[1], list(col_names))
    return rank


def _categorical_columns(
    term: Categorical,
    series: pd.Series,
    drop_reference: bool,
) -> tuple[NDArray[np.float64], list[str]]:
    values = series.astype(str)
    if term.levels is not None:
        levels = [str(lvl) for lvl in term.levels]
        unknown = sorted(set(values) - set(levels))
        if unknown:
            raise InvalidDesignError(
                f"Covariate '{term.column}' has values {unknown} not in levels {levels}"
            )
    else:
        levels = sorted(values.unique().tolist())

    if term.reference is not None:
        ref = str(term.reference)
        if ref not in levels:
            raise InvalidDesignError(
                f"Reference level '{ref}' not found in '{term.column}' levels {levels}"
            )
        levels = [ref] + [lvl for lvl in levels if lvl != ref]

    kept = levels[1:] if drop_reference else levels
    cols = np.column_stack(
        [(values == lvl).to_numpy(dtype=np.float64) for lvl in kept]
    ) if kept else np.empty((len(values), 0))
    names = [f"{term.column}{lvl}" for lvl in kept]
    return cols, names


def _numeric_column(term: Numeric, series: pd.Series) -> tuple[NDArray[np.float64], list[str]]:
    if not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series):
        raise InvalidDesignError(
            f"Covariate '{term.column}' is not numeric (dtype {series.dtype})"
        )
    vals = series.to_numpy(dtype=np.float64)
    if term.standardize:
        sigma = np.std(vals, ddof=1) if len(vals) > 1 else 0.0
        if sigma < 1e-10:
            raise InvalidDesignError(
                f"Covariate '{term.column}' has zero variance, cannot standardize"
            )
        vals = (vals - np.mean(vals)) / sigma
    return vals.reshape(-1, 1), [term.column]


def build_design_matrix(
    spec: DesignSpec | str,
    covariates: pd.DataFrame,
    sample_ids: Sequence[str] | None = None,
) -> Design:
    """
    Build the design matrix for a sample covariates table.

    Categorical terms use treatment coding (reference level dropped) when
    an intercept is present. Without an intercept the first categorical term
    gets one indicator per level, like ``~ 0 + condition`` in R.

    Args:
        spec: DesignSpec or formula string (parsed with parse_design_formula).
        covariates: One row per sample, indexed by sample id.
        sample_ids: Sample order of the observed matrix. When given, rows of
            the design follow this order; every id must be in covariates.

    Returns:
        Design with full-rank X and parallel column names.

    Raises:
        InvalidDesignError: Missing covariate columns or samples, missing
            values, invalid levels, or no residual degrees of freedom.
        DesignRankError: If X is rank-deficient.
    """
    if isinstance(spec, str):
        spec = parse_design_formula(spec, covariates)
    if not spec.terms:
        raise InvalidDesignError("Design specification has no terms")

    covariates = covariates.copy()
    covariates.index = covariates.index.astype(str)

    if sample_ids is not None:
        sample_ids = [str(s) for s in sample_ids]
        missing = [s for s in sample_ids if s not in covariates.index]
        if missing:
            raise InvalidDesignError(
                f"{len(missing)} samples missing from the covariates table: {missing[:5]}"
            )
        covariates = covariates.loc[sample_ids]
    else:
        sample_ids = list(covariates.index)

    if not covariates.index.is_unique:
        raise InvalidDesignError("Covariates table has duplicated sample ids")

    absent = [c for c in spec.columns_used if c not in covariates.columns]
    if absent:
        raise InvalidDesignError(
            f"Columns {absent} not found in covariates. "
            f"Available: {list(covariates.columns)}"
        )

    n_samples = len(covariates)
    parts: list[NDArray[np.float64]] = []
    col_names: list[str] = []
    full_coding_used = spec.has_intercept

    for term in spec.terms:
        if isinstance(term, Intercept):
            parts.append(np.ones((n_samples, 1)))
            col_names.append(INTERCEPT_NAME)
            continue

        series = covariates[term.column]
        if series.isna().any():
            bad = series.index[series.isna()].tolist()
            raise InvalidDesignError(
                f"Covariate '{term.column}' has missing values for samples {bad[:5]}"
            )

        if isinstance(term, Categorical):
            cols, names = _categorical_columns(term, series, drop_reference=full_coding_used)
            full_coding_used = True
        elif isinstance(term, Numeric):
            cols, names = _numeric_column(term, series)
        else:
            raise InvalidDesignError(f"Unknown design term: {term!r}")

        parts.append(cols)
        col_names.extend(names)

    X = np.hstack(parts) if parts else np.empty((n_samples, 0))
    n_params = X.shape[1]

    if n_params == 0:
        raise InvalidDesignError(f"'{spec.describe()}' produces no design columns")
    if n_params >= n_samples:
        raise InvalidDesignError(
            f"Insufficient residual df: {n_samples} samples - {n_params} params = "
            f"{n_samples - n_params}. Reduce covariates or increase sample size."
        )

    check_design_rank(X, col_names)

    cond_number = np.linalg.cond(X)
    if cond_number > _CONDITION_WARN:
        warnings.warn(
            f"Design matrix condition number is high ({cond_number:.3g}). "
            f"Near-collinearity may cause unstable estimates.",
            UserWarning,
            stacklevel=2,
        )

    return Design(
        X=X,
        col_names=tuple(col_names),
        sample_ids=tuple(sample_ids),
        formula=spec.describe(),
    )
