"""
Named model fits and the analysis object that drives the pipeline.

Pipeline for one fit:

    BootstrapSummary ──► fit_measurement_error_models ──► (barrier)
                     ──► shrink_variances              ──► (barrier)
                     ──► compute_beta_covariances      ──► ModelFit

Shrinkage needs every raw variance estimate and covariances need every
shrunk estimate, so each stage runs to completion before the next begins.

ModelFit and FitStore are immutable: adding a fit or a Wald result returns
a new value. MeasurementErrorAnalysis holds the current FitStore and swaps
it only after an operation has fully succeeded, so a failed fit or test
never leaves a partial result behind.

Example:
    >>> analysis = MeasurementErrorAnalysis(observed, bootstraps, covariates)
    >>> analysis.fit("~ condition")
    >>> result = analysis.test("conditiontreated")
    >>> result.significant(0.1).head()
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from meshrink.core.abundance import ObservedMatrix
from meshrink.errors import UnknownFitError
from meshrink.stats.bootstrap import BootstrapSummary, log_transform, summarize_bootstraps
from meshrink.stats.covariance import compute_beta_covariances
from meshrink.stats.design_matrix import Design, DesignSpec, build_design_matrix
from meshrink.stats.measurement_error import MeasurementErrorFits, fit_measurement_error_models
from meshrink.stats.shrinkage import ShrinkageConfig, ShrinkageSummary, shrink_variances
from meshrink.stats.wald import WaldResult, wald_test

logger = logging.getLogger(__name__)

__all__ = [
    'FitConfig',
    'ModelFit',
    'FitStore',
    'fit_model',
    'MeasurementErrorAnalysis',
]

DEFAULT_FIT_NAME = 'full'


@dataclass(frozen=True)
class FitConfig:
    """Settings for one model fit.

    Attributes:
        shrinkage: Sliding-window lowess parameters.
        heteroscedastic: Use per-sample technical variance (sandwich
            covariance) instead of the pooled scalar.
        n_workers: Threads for the per-feature stages.
        chunk_size: Features per vectorized chunk.
        pseudocount: Added before the log transform of abundances.
        log_transform: Apply log(x + pseudocount) to abundances and
            bootstrap replicates; otherwise use them as given.
    """

    shrinkage: ShrinkageConfig = field(default_factory=ShrinkageConfig)
    heteroscedastic: bool = False
    n_workers: int = 1
    chunk_size: int = 2000
    pseudocount: float = 0.5
    log_transform: bool = True

    def __post_init__(self):
        if isinstance(self.shrinkage, Mapping):
            object.__setattr__(self, 'shrinkage', ShrinkageConfig(**self.shrinkage))
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.pseudocount <= 0:
            raise ValueError(f"pseudocount must be positive, got {self.pseudocount}")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> FitConfig:
        """Build from a (possibly nested) mapping, e.g. a parsed YAML file."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown fit settings: {unknown}. Known: {sorted(known)}")
        return cls(**dict(values))

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class ModelFit:
    """
    Immutable result of one named fit.

    Attributes:
        name: Fit name.
        design: Design matrix the features were fit against.
        fits: Per-feature OLS fits and raw variance components.
        summary: Shrinkage summary.
        beta_covars: target_id -> coefficient covariance matrix.
        wald: coefficient name -> WaldResult for the coefficients tested so far.
        config: Settings the fit was produced with.
    """

    name: str
    design: Design
    fits: MeasurementErrorFits
    summary: ShrinkageSummary
    beta_covars: Mapping[str, NDArray[np.float64]]
    wald: Mapping[str, WaldResult] = field(default_factory=dict)
    config: FitConfig = field(default_factory=FitConfig)

    def __post_init__(self):
        for attr in ('beta_covars', 'wald'):
            val = getattr(self, attr)
            if not isinstance(val, MappingProxyType):
                object.__setattr__(self, attr, MappingProxyType(dict(val)))

    @property
    def coefficient_names(self) -> list[str]:
        """Testable coefficient names."""
        return list(self.design.col_names)

    @property
    def n_features(self) -> int:
        return self.fits.n_features

    def with_wald(self, result: WaldResult) -> ModelFit:
        """New ModelFit with ``result`` stored under its coefficient name."""
        wald = dict(self.wald)
        wald[result.coefficient] = result
        return dataclasses.replace(self, wald=wald)

    def get_wald(self, which_beta: str) -> WaldResult:
        """
        Stored Wald result for ``which_beta``.

        Raises:
            AmbiguousCoefficientError: If the name is not a design column.
            KeyError: If the coefficient is valid but has not been tested.
        """
        if which_beta not in self.wald:
            self.design.column_index(which_beta)
            raise KeyError(
                f"'{which_beta}' has not been tested on fit '{self.name}'. "
                f"Tested: {sorted(self.wald)}"
            )
        return self.wald[which_beta]

    def __repr__(self) -> str:
        return (
            f"ModelFit('{self.name}', {self.n_features} features, "
            f"columns={self.coefficient_names}, tested={sorted(self.wald)})"
        )


@dataclass(frozen=True)
class FitStore:
    """Immutable mapping fit name -> ModelFit."""

    fits: Mapping[str, ModelFit] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.fits, MappingProxyType):
            object.__setattr__(self, 'fits', MappingProxyType(dict(self.fits)))

    @property
    def names(self) -> list[str]:
        return list(self.fits)

    def __contains__(self, fit_name: object) -> bool:
        return fit_name in self.fits

    def __len__(self) -> int:
        return len(self.fits)

    def get(self, fit_name: str) -> ModelFit:
        """
        Raises:
            UnknownFitError: If no fit has that name.
        """
        if fit_name not in self.fits:
            raise UnknownFitError(fit_name, self.names)
        return self.fits[fit_name]

    def with_fit(self, model_fit: ModelFit) -> FitStore:
        """New store with ``model_fit`` added, replacing a fit of the same name."""
        fits = dict(self.fits)
        fits[model_fit.name] = model_fit
        return FitStore(fits)


def fit_model(
    summary: BootstrapSummary,
    design: Design,
    fit_name: str = DEFAULT_FIT_NAME,
    config: FitConfig | None = None,
) -> ModelFit:
    """
    Fit, shrink and compute coefficient covariances for every feature.

    Args:
        summary: Transformed observed matrix and technical variance.
        design: Full-rank design whose samples match the observed columns.
        fit_name: Name the fit is stored under.
        config: Fit settings.

    Returns:
        ModelFit without Wald results.

    Raises:
        AlignmentError: If samples or features disagree between the inputs.
        DesignRankError: If the design is rank-deficient.
        ValueError: If heteroscedastic mode is requested without per-sample
            technical variance.
    """
    config = config or FitConfig()

    per_sample = None
    if config.heteroscedastic:
        per_sample = summary.technical_variance.per_sample
        if per_sample is None:
            raise ValueError(
                "Heteroscedastic mode needs per-sample technical variance; "
                "the bootstrap summary only has pooled values"
            )

    logger.info(
        "Fitting '%s': %d features, design %s", fit_name, summary.n_features, design.formula
    )

    fits = fit_measurement_error_models(
        summary.observed,
        design,
        summary.technical_variance,
        n_workers=config.n_workers,
        chunk_size=config.chunk_size,
    )
    shrinkage = shrink_variances(fits.to_frame(), config.shrinkage)
    beta_covars = compute_beta_covariances(
        shrinkage,
        design,
        per_sample=per_sample,
        n_workers=config.n_workers,
        chunk_size=config.chunk_size,
    )

    return ModelFit(
        name=fit_name,
        design=design,
        fits=fits,
        summary=shrinkage,
        beta_covars=beta_covars,
        config=config,
    )


class MeasurementErrorAnalysis:
    """
    Owner of the bootstrap summary and the named fits of one experiment.

    Args:
        observed: Normalized point estimates (features × samples), untransformed.
        bootstraps: Long-format bootstrap replicates (target_id, sample, value).
        covariates: Sample covariates indexed by sample id.
        retained_ids: Features kept by the low-abundance filter; all when None.
        config: Default fit settings.
        value_column: Replicate abundance column of ``bootstraps``.
    """

    def __init__(
        self,
        observed: ObservedMatrix | pd.DataFrame,
        bootstraps: pd.DataFrame,
        covariates: pd.DataFrame,
        retained_ids: Iterable[str] | None = None,
        config: FitConfig | None = None,
        value_column: str = 'est_counts',
    ):
        if isinstance(observed, pd.DataFrame):
            observed = ObservedMatrix.from_frame(observed)
        self._observed = observed
        self._bootstraps = bootstraps
        self._covariates = covariates
        self._retained_ids = None if retained_ids is None else [str(f) for f in retained_ids]
        self._config = config or FitConfig()
        self._value_column = value_column
        self._summaries: dict[tuple[bool, float], BootstrapSummary] = {}
        self._store = FitStore()

    @property
    def config(self) -> FitConfig:
        return self._config

    @property
    def store(self) -> FitStore:
        return self._store

    @property
    def bootstrap_summary(self) -> BootstrapSummary:
        """Bootstrap summary under the analysis settings, computed on first access."""
        return self._summary_for(self._config)

    def _summary_for(self, config: FitConfig) -> BootstrapSummary:
        """Bootstrap summary for the transform of ``config``, cached per transform."""
        key = (config.log_transform, config.pseudocount if config.log_transform else 0.0)
        if key not in self._summaries:
            if config.log_transform:
                transform = log_transform(config.pseudocount)
            else:
                transform = np.asarray
            summary = summarize_bootstraps(
                self._observed,
                self._bootstraps,
                transform=transform,
                value_column=self._value_column,
            )
            if self._retained_ids is not None:
                summary = summary.restrict_to(self._retained_ids)
            self._summaries[key] = summary
        return self._summaries[key]

    def fit(
        self,
        design: str | DesignSpec | Design,
        fit_name: str = DEFAULT_FIT_NAME,
        config: FitConfig | None = None,
    ) -> ModelFit:
        """
        Fit the measurement error model and store it under ``fit_name``.

        Refitting an existing name replaces that fit and its Wald results.

        Args:
            design: Formula (``"~ condition + batch"``), DesignSpec, or a
                prebuilt Design.
            fit_name: Name to store the fit under.
            config: Overrides the analysis-level settings for this fit,
                including the abundance transform.
        """
        config = config or self._config
        summary = self._summary_for(config)
        if not isinstance(design, Design):
            design = build_design_matrix(
                design, self._covariates, sample_ids=list(summary.observed.sample_ids)
            )

        model_fit = fit_model(summary, design, fit_name, config)
        if fit_name in self._store:
            logger.info("Replacing existing fit '%s'", fit_name)
        self._store = self._store.with_fit(model_fit)
        return model_fit

    def test(self, which_beta: str, fit_name: str = DEFAULT_FIT_NAME) -> WaldResult:
        """
        Wald test of one coefficient; the result is stored on the fit.

        Raises:
            UnknownFitError: If ``fit_name`` has not been fit.
            AmbiguousCoefficientError: If ``which_beta`` is not a single design column.
        """
        model_fit = self._store.get(fit_name)
        result = wald_test(model_fit, which_beta)
        self._store = self._store.with_fit(model_fit.with_wald(result))
        return result

    def fit_names(self) -> list[str]:
        return self._store.names

    def models(self) -> dict[str, list[str]]:
        """Fit name -> testable coefficient names."""
        return {name: fit.coefficient_names for name, fit in self._store.fits.items()}

    def get_fit(self, fit_name: str = DEFAULT_FIT_NAME) -> ModelFit:
        return self._store.get(fit_name)

    def coefficients(self, fit_name: str = DEFAULT_FIT_NAME) -> pd.DataFrame:
        """Coefficient estimates (features × design columns)."""
        return self._store.get(fit_name).fits.coefficient_frame()

    def wald_results(self, which_beta: str, fit_name: str = DEFAULT_FIT_NAME) -> pd.DataFrame:
        """Stored Wald table of a tested coefficient."""
        return self._store.get(fit_name).get_wald(which_beta).to_frame()

    def shrinkage_summary(self, fit_name: str = DEFAULT_FIT_NAME) -> pd.DataFrame:
        return self._store.get(fit_name).summary.to_frame()

    def __repr__(self) -> str:
        return (
            f"MeasurementErrorAnalysis({self._observed.n_features} features × "
            f"{self._observed.n_samples} samples, fits={self.fit_names()})"
        )
