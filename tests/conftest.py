"""
Pytest configuration and shared fixtures.

Provides synthetic-data generators for the measurement error pipeline:
bootstrap replicate tables, sample covariates, and a large simulation with
a known biological variance trend.
"""

import numpy as np
import pandas as pd
import pytest

from meshrink.core.abundance import ObservedMatrix, TechnicalVariance
from meshrink.stats.bootstrap import BootstrapSummary
from meshrink.stats.design_matrix import build_design_matrix


def identity(x):
    return np.asarray(x, dtype=np.float64)


def two_group_covariates(n_per_group: int, levels=("control", "treated")) -> pd.DataFrame:
    """Covariates with a 'condition' column, indexed by sample id."""
    samples = [f"s{i + 1}" for i in range(2 * n_per_group)]
    condition = [levels[0]] * n_per_group + [levels[1]] * n_per_group
    return pd.DataFrame({"condition": condition}, index=pd.Index(samples, name="sample"))


def generate_bootstraps(
    observed: pd.DataFrame,
    technical_sd: np.ndarray,
    n_bootstraps: int = 10,
    seed: int = 0,
    multiplicative: bool = False,
) -> pd.DataFrame:
    """
    Long-format bootstrap replicates around each observed value.

    Args:
        observed: features × samples point estimates.
        technical_sd: Per-feature replicate standard deviation.
        n_bootstraps: Replicates per (feature, sample).
        seed: Random seed for reproducibility.
        multiplicative: Perturb on the log scale (positive values, for
            tests that use the default log transform).

    Returns:
        DataFrame with target_id, sample, bootstrap, est_counts.
    """
    rng = np.random.RandomState(seed)
    n_features, n_samples = observed.shape
    values = observed.to_numpy(dtype=np.float64)

    noise = rng.randn(n_features, n_samples, n_bootstraps) * technical_sd[:, None, None]
    if multiplicative:
        reps = values[:, :, None] * np.exp(noise)
    else:
        reps = values[:, :, None] + noise

    target = np.repeat(np.asarray(observed.index, dtype=str), n_samples * n_bootstraps)
    sample = np.tile(np.repeat(np.asarray(observed.columns, dtype=str), n_bootstraps), n_features)
    boot = np.tile(np.arange(n_bootstraps), n_features * n_samples)

    return pd.DataFrame({
        "target_id": target,
        "sample": sample,
        "bootstrap": boot,
        "est_counts": reps.reshape(-1),
    })


def simulate_log_scale(
    n_features: int = 10_000,
    n_per_group: int = 5,
    sigma_q_sq: float = 0.02,
    effect_fraction: float = 0.1,
    seed: int = 42,
) -> dict:
    """
    Simulate transformed abundances with a known biological variance trend.

    Per feature i and sample j:
        y_ij = mu_i + beta_i * treated_j + e_bio + e_tech
        e_bio ~ N(0, 0.01 + 0.01 * mu_i),  e_tech ~ N(0, sigma_q_sq)

    Returns:
        Dict with observed (DataFrame), technical (Series), covariates,
        true_sigma_sq (Series) and true_beta (Series).
    """
    rng = np.random.RandomState(seed)
    ids = [f"tx{i:05d}" for i in range(n_features)]
    covariates = two_group_covariates(n_per_group)
    treated = (covariates["condition"] == "treated").to_numpy(dtype=np.float64)
    n_samples = len(treated)

    mu = rng.uniform(1.0, 10.0, size=n_features)
    true_sigma_sq = 0.01 + 0.01 * mu
    beta = np.zeros(n_features)
    n_effect = int(effect_fraction * n_features)
    beta[:n_effect] = rng.choice([-1.5, 1.5], size=n_effect)

    bio = rng.randn(n_features, n_samples) * np.sqrt(true_sigma_sq)[:, None]
    tech = rng.randn(n_features, n_samples) * np.sqrt(sigma_q_sq)
    y = mu[:, None] + beta[:, None] * treated[None, :] + bio + tech

    observed = pd.DataFrame(y, index=ids, columns=covariates.index)
    return {
        "observed": observed,
        "technical": pd.Series(sigma_q_sq, index=ids),
        "covariates": covariates,
        "true_sigma_sq": pd.Series(true_sigma_sq, index=ids),
        "true_beta": pd.Series(beta, index=ids),
    }


def summary_from_simulation(sim: dict) -> BootstrapSummary:
    """BootstrapSummary with the known technical variance."""
    observed = ObservedMatrix.from_frame(sim["observed"])
    return BootstrapSummary(observed, TechnicalVariance(sim["technical"]))


@pytest.fixture(scope="session")
def large_simulation():
    """10,000 features, 5 vs 5 samples, known variance trend."""
    return simulate_log_scale(n_features=10_000, n_per_group=5, seed=42)


@pytest.fixture
def small_simulation():
    """300 features, 3 vs 3 samples."""
    return simulate_log_scale(n_features=300, n_per_group=3, seed=7)


@pytest.fixture
def small_design(small_simulation):
    return build_design_matrix("~ condition", small_simulation["covariates"])


@pytest.fixture
def count_scale_inputs():
    """
    Positive abundances with multiplicative bootstraps, for the default
    log(x + 0.5) transform: 200 features, 3 vs 3 samples.
    """
    rng = np.random.RandomState(11)
    covariates = two_group_covariates(3)
    ids = [f"ENST{i:06d}" for i in range(200)]
    base = np.exp(rng.uniform(2.0, 8.0, size=200))
    fold = np.ones(200)
    fold[:20] = 4.0
    treated = (covariates["condition"] == "treated").to_numpy()
    y = base[:, None] * np.where(treated[None, :], fold[:, None], 1.0)
    y = y * np.exp(rng.randn(200, 6) * 0.15)
    observed = pd.DataFrame(y, index=ids, columns=covariates.index)
    bootstraps = generate_bootstraps(
        observed, np.full(200, 0.1), n_bootstraps=8, seed=12, multiplicative=True
    )
    return {"observed": observed, "bootstraps": bootstraps, "covariates": covariates}
