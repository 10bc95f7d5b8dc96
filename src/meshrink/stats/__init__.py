"""
Statistical core of the measurement-error model.

Exports:
- Bootstrap summarization (technical variance)
- Explicit design matrix construction and rank checking
- Per-feature OLS fits and variance decomposition
- Sliding-window lowess shrinkage of biological variance
- Coefficient covariance and Wald tests with BH correction
- Named model fits and the analysis driver
"""

from .bootstrap import BootstrapSummary, log_transform, summarize_bootstraps
from .design_matrix import (
    Categorical,
    Design,
    DesignSpec,
    Intercept,
    Numeric,
    build_design_matrix,
    check_design_rank,
    parse_design_formula,
)
from .measurement_error import FeatureFit, MeasurementErrorFits, fit_measurement_error_models
from .shrinkage import (
    ShrinkageConfig,
    ShrinkageRow,
    ShrinkageSummary,
    SlidingWindow,
    iqr_membership,
    shrink_variances,
    sliding_window_grouping,
)
from .covariance import compute_beta_covariances, covar_beta
from .wald import WaldResult, fdr_correction, wald_test
from .model import FitConfig, FitStore, MeasurementErrorAnalysis, ModelFit, fit_model

__all__ = [
    "BootstrapSummary",
    "log_transform",
    "summarize_bootstraps",
    "Categorical",
    "Design",
    "DesignSpec",
    "Intercept",
    "Numeric",
    "build_design_matrix",
    "check_design_rank",
    "parse_design_formula",
    "FeatureFit",
    "MeasurementErrorFits",
    "fit_measurement_error_models",
    "ShrinkageConfig",
    "ShrinkageRow",
    "ShrinkageSummary",
    "SlidingWindow",
    "iqr_membership",
    "shrink_variances",
    "sliding_window_grouping",
    "compute_beta_covariances",
    "covar_beta",
    "WaldResult",
    "fdr_correction",
    "wald_test",
    "FitConfig",
    "FitStore",
    "MeasurementErrorAnalysis",
    "ModelFit",
    "fit_model",
]
