"""
Error kinds raised by the measurement-error pipeline.

All errors derive from ``MeshrinkError`` which itself is a ``ValueError``,
so callers that already guard pipeline calls with ``except ValueError``
keep working. Negative raw biological variance is NOT an error: it is a
valid model output that is floored during shrinkage.
"""

from __future__ import annotations

__all__ = [
    'MeshrinkError',
    'InvalidDesignError',
    'DesignRankError',
    'UnknownFitError',
    'AmbiguousCoefficientError',
    'AlignmentError',
]


class MeshrinkError(ValueError):
    """Base class for caller-visible pipeline failures."""


class InvalidDesignError(MeshrinkError):
    """Design specification cannot be evaluated against the covariates table."""


class DesignRankError(MeshrinkError):
    """Design matrix is not full column rank."""

    def __init__(self, rank: int, n_params: int, col_names: list[str] | None = None):
        self.rank = rank
        self.n_params = n_params
        self.col_names = list(col_names) if col_names is not None else []
        msg = f"Design matrix is rank-deficient: rank={rank}, n_params={n_params}."
        if self.col_names:
            msg += (
                f" Columns: {self.col_names}. A covariate may be collinear "
                f"with another term."
            )
        super().__init__(msg)


class UnknownFitError(MeshrinkError, KeyError):
    """Requested fit name does not exist."""

    def __init__(self, fit_name: str, available: list[str]):
        self.fit_name = fit_name
        self.available = list(available)
        super().__init__(
            f"'{fit_name}' is not a valid model. Fitted models: {self.available}"
        )

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class AmbiguousCoefficientError(MeshrinkError):
    """Tested coefficient name matches zero or more than one design column."""

    def __init__(self, which_beta: str, col_names: list[str], n_matches: int):
        self.which_beta = which_beta
        self.col_names = list(col_names)
        self.n_matches = n_matches
        if n_matches == 0:
            msg = (
                f"'{which_beta}' doesn't appear in your design. "
                f"Try one of the following: {', '.join(self.col_names)}"
            )
        else:
            msg = (
                f"'{which_beta}' is ambiguous: it matches {n_matches} columns. "
                f"Available columns: {', '.join(self.col_names)}"
            )
        super().__init__(msg)


class AlignmentError(MeshrinkError):
    """Feature identifier sets disagree at a join point."""

    def __init__(self, where: str, missing: list[str] | None = None, extra: list[str] | None = None):
        self.where = where
        self.missing = list(missing or [])
        self.extra = list(extra or [])
        parts = [f"Feature identifiers disagree at {where}"]
        if self.missing:
            parts.append(f"{len(self.missing)} missing (e.g. {self.missing[:5]})")
        if self.extra:
            parts.append(f"{len(self.extra)} unexpected (e.g. {self.extra[:5]})")
        super().__init__("; ".join(parts))
