"""
meshrink - Measurement error models with variance shrinkage

Fits a per-feature linear model whose residual variance is split into
bootstrap-estimated technical variance and biological variance, shrinks the
biological variance toward its abundance trend, and Wald-tests design
coefficients across thousands of transcripts or genes.
"""

__version__ = "0.1.0"

from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.stats.model import FitConfig, MeasurementErrorAnalysis, ModelFit
from meshrink.stats.shrinkage import ShrinkageConfig

__all__ = [
    "ObservedMatrix",
    "TechnicalVariance",
    "FitConfig",
    "MeasurementErrorAnalysis",
    "ModelFit",
    "ShrinkageConfig",
]
