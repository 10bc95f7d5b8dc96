"""
CLI for measurement error model fits.

Fits a per-feature linear model with bootstrap technical variance, shrinks
the biological variance toward its abundance trend and Wald-tests the
requested coefficients.

Usage:
    meshrink fit \\
        --abundance data/norm_counts.tsv \\
        --bootstraps data/bootstraps.tsv \\
        --covariates data/samples.csv \\
        --retained data/retained_ids.txt \\
        --formula "~ condition" \\
        --test conditiontreated \\
        --output results/

Outputs (in --output):
    shrinkage_<fit>.csv          per-feature variance components
    wald_<fit>_<coefficient>.csv Wald statistics, p- and q-values
    run_<fit>.json               parameters and summary of the run
"""

from __future__ import annotations

import argparse
import logging
import re
from datetime import datetime
from pathlib import Path

import numpy as np

from meshrink.cli._validators import _fit_name, _positive_int, _probability

logger = logging.getLogger(__name__)

_REQUIRED = ('abundance', 'bootstraps', 'covariates', 'formula', 'output')


def _safe_name(name: str) -> str:
    """Coefficient name usable in a file name, e.g. '(Intercept)' -> 'Intercept'."""
    return re.sub(r'[^A-Za-z0-9._-]+', '_', name).strip('_') or 'coef'


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def setup_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the fit subcommand to the parser."""
    parser = subparsers.add_parser(
        "fit",
        help="Fit the model, shrink variances and Wald-test coefficients",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Input files
    parser.add_argument(
        "--abundance", "-a",
        type=Path,
        default=None,
        help="Normalized abundance table (features × samples, first column = target id)",
    )
    parser.add_argument(
        "--bootstraps", "-b",
        type=Path,
        default=None,
        help="Long-format bootstrap table (target_id, sample, bootstrap, value)",
    )
    parser.add_argument(
        "--covariates", "-c",
        type=Path,
        default=None,
        help="Sample covariates table with a sample id column",
    )
    parser.add_argument(
        "--retained",
        type=Path,
        default=None,
        help="Target ids kept by the low-abundance filter, one per line (default: all)",
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Output directory for results",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML/JSON config file; explicit flags override its values",
    )

    # Model
    parser.add_argument(
        "--formula", "-f",
        default=None,
        help='Design formula, e.g. "~ condition + batch" or "~ 0 + C(group)"',
    )
    parser.add_argument(
        "--fit-name",
        type=_fit_name,
        default="full",
        help="Name of the fit (default: full)",
    )
    parser.add_argument(
        "--test",
        nargs="+",
        default=[],
        metavar="COEF",
        help="Design columns to Wald-test (see `meshrink design` for names)",
    )
    parser.add_argument(
        "--heteroscedastic",
        action="store_true",
        help="Use per-sample bootstrap variance (sandwich covariance)",
    )
    parser.add_argument(
        "--alpha",
        type=_probability,
        default=0.05,
        help="q-value threshold reported in the run summary (default: 0.05)",
    )

    # Input columns
    parser.add_argument(
        "--sample-column",
        default="sample",
        help="Sample id column of the covariates table (default: sample)",
    )
    parser.add_argument(
        "--value-column",
        default="est_counts",
        help="Abundance column of the bootstrap table (default: est_counts)",
    )

    # Execution
    parser.add_argument(
        "--workers", "-j",
        type=_positive_int,
        default=1,
        help="Worker threads for the per-feature stages (default: 1)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging",
    )

    parser.set_defaults(func=run_fit)


def setup_design_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the design subcommand to the parser."""
    parser = subparsers.add_parser(
        "design",
        help="Show the design matrix columns a formula produces",
    )
    parser.add_argument(
        "--covariates", "-c",
        type=Path,
        required=True,
        help="Sample covariates table with a sample id column",
    )
    parser.add_argument(
        "--formula", "-f",
        required=True,
        help='Design formula, e.g. "~ condition + batch"',
    )
    parser.add_argument(
        "--sample-column",
        default="sample",
        help="Sample id column of the covariates table (default: sample)",
    )
    parser.set_defaults(func=run_design)


def run_design(args: argparse.Namespace) -> int:
    """Print the design columns and rank for a formula."""
    from meshrink.errors import MeshrinkError
    from meshrink.io.loaders import load_covariates
    from meshrink.stats.design_matrix import build_design_matrix

    try:
        covariates = load_covariates(args.covariates, sample_column=args.sample_column)
        design = build_design_matrix(args.formula, covariates)
    except (MeshrinkError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Formula: {design.formula}")
    print(f"Samples: {design.n_samples}")
    print(f"Rank: {int(np.linalg.matrix_rank(design.X))} (full rank, {design.n_params} columns)")
    print(f"Residual degrees of freedom: {design.df_residual}")
    print("Columns:")
    for name in design.col_names:
        print(f"  {name}")
    return 0


def run_fit(args: argparse.Namespace) -> int:
    """Execute a measurement error model fit."""
    import meshrink
    from meshrink.cli.config import (
        fit_config_from_args,
        load_config,
        merge_config_with_args,
        validate_config,
    )
    from meshrink.errors import MeshrinkError
    from meshrink.io.loaders import (
        load_abundance_table,
        load_bootstrap_table,
        load_covariates,
        load_retained_ids,
    )
    from meshrink.io.writers import write_json_atomic, write_table_atomic
    from meshrink.stats.model import MeasurementErrorAnalysis

    _configure_logging(args.verbose)

    try:
        if args.config is not None:
            config = load_config(args.config)
            validate_config(config)
            args = merge_config_with_args(config, args, getattr(args, 'argv', None))

        missing = [name for name in _REQUIRED if getattr(args, name, None) is None]
        if missing:
            flags = ", ".join(f"--{m}" for m in missing)
            print(f"Error: {flags} required (on the command line or in --config)")
            return 1

        fit_config = fit_config_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    started = datetime.now()
    print("=" * 70)
    print("  Measurement Error Model Fit")
    print("=" * 70)
    print(f"Started: {started.strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    try:
        print(f"Loading abundances: {args.abundance}")
        observed = load_abundance_table(args.abundance)
        print(f"  {observed.n_features} features × {observed.n_samples} samples")

        print(f"Loading bootstraps: {args.bootstraps}")
        bootstraps = load_bootstrap_table(args.bootstraps, value_column=args.value_column)
        print(f"  {len(bootstraps):,} replicate rows")

        print(f"Loading covariates: {args.covariates}")
        covariates = load_covariates(args.covariates, sample_column=args.sample_column)

        retained = None
        if args.retained is not None:
            retained = load_retained_ids(args.retained)
            print(f"  {len(retained)} retained features")

        analysis = MeasurementErrorAnalysis(
            observed,
            bootstraps,
            covariates,
            retained_ids=retained,
            config=fit_config,
            value_column=args.value_column,
        )

        print(f"\nFitting '{args.fit_name}': {args.formula}")
        model_fit = analysis.fit(args.formula, fit_name=args.fit_name)
        print(f"  Design columns: {model_fit.coefficient_names}")
        print(f"  {model_fit.n_features} features, df = {model_fit.design.df_residual}")

        results = {}
        for coef in args.test:
            print(f"Testing: {coef}")
            results[coef] = analysis.test(coef, fit_name=args.fit_name)

        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)

        shrinkage_path = write_table_atomic(
            analysis.shrinkage_summary(args.fit_name),
            output_dir / f"shrinkage_{args.fit_name}.csv",
        )
        print(f"\nShrinkage summary: {shrinkage_path}")

        tests_summary = {}
        for coef, result in results.items():
            path = write_table_atomic(
                result.to_frame(),
                output_dir / f"wald_{args.fit_name}_{_safe_name(coef)}.csv",
            )
            n_sig = len(result.significant(args.alpha))
            tests_summary[coef] = {'file': path.name, 'n_tested': result.n_tested, 'n_significant': n_sig}
            print(f"  {coef}: {n_sig} of {result.n_tested} features with q <= {args.alpha} -> {path}")

        finished = datetime.now()
        summary = model_fit.summary.to_frame()
        run_info = {
            'meshrink_version': meshrink.__version__,
            'fit_name': args.fit_name,
            'formula': model_fit.design.formula,
            'design_columns': model_fit.coefficient_names,
            'n_samples': model_fit.design.n_samples,
            'degrees_free': model_fit.design.df_residual,
            'n_features': model_fit.n_features,
            'n_in_trend_fit': int(summary['iqr'].sum()),
            'n_negative_sigma_sq': int((summary['sigma_sq'] < 0).sum()),
            'inputs': {
                'abundance': args.abundance,
                'bootstraps': args.bootstraps,
                'covariates': args.covariates,
                'retained': args.retained,
            },
            'config': model_fit.config.to_dict(),
            'alpha': args.alpha,
            'tests': tests_summary,
            'started': started.isoformat(timespec='seconds'),
            'finished': finished.isoformat(timespec='seconds'),
        }
        run_path = write_json_atomic(run_info, output_dir / f"run_{args.fit_name}.json")
    except (MeshrinkError, OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Run summary: {run_path}")
    print(f"\nFinished: {finished.strftime('%Y-%m-%d %H:%M:%S')}")
    return 0
