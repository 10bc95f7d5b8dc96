"""
Configuration file support for the meshrink CLI.

Supports YAML and JSON config files with CLI argument override.

Example ``run.yaml``::

    abundance: data/norm_counts.tsv
    bootstraps: data/bootstraps.tsv
    covariates: data/samples.csv
    formula: "~ condition + batch"
    test: [conditiontreated]
    output: results/
    workers: 4
    fit:
      chunk_size: 2000
      pseudocount: 0.5
      shrinkage:
        window_size: 100
        step: 50
"""

import json
from argparse import Namespace
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from meshrink.stats.model import FitConfig
from meshrink.stats.shrinkage import ShrinkageConfig

# config key -> argparse destination
_SIMPLE_KEYS = {
    'abundance': 'abundance',
    'bootstraps': 'bootstraps',
    'covariates': 'covariates',
    'retained': 'retained',
    'formula': 'formula',
    'fit_name': 'fit_name',
    'test': 'test',
    'output': 'output',
    'workers': 'workers',
    'heteroscedastic': 'heteroscedastic',
    'alpha': 'alpha',
    'sample_column': 'sample_column',
    'value_column': 'value_column',
}
_PATH_KEYS = {'abundance', 'bootstraps', 'covariates', 'retained', 'output'}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


# single-letter aliases the fit/design parsers define
_SHORT_TO_LONG = {
    'a': 'abundance',
    'b': 'bootstraps',
    'c': 'covariates',
    'o': 'output',
    'f': 'formula',
    'j': 'workers',
    'v': 'verbose',
}


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    """Destinations of the options present on the command line."""
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) >= 2 and arg[1] in _SHORT_TO_LONG:
            # covers both "-j 4" and "-j4"
            explicit.add(_SHORT_TO_LONG[arg[1]])
    return explicit


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    The ``fit`` section is not mapped onto arguments; it is stored as
    ``fit_settings`` for :func:`fit_config_from_args`. Its ``n_workers`` and
    ``heteroscedastic`` entries are replaced only when --workers/-j or
    --heteroscedastic is given, or the top-level ``workers`` /
    ``heteroscedastic`` keys are set.

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values)
                  If None, assumes all args are defaults

    Returns:
        Updated Namespace with merged values
    """
    explicit = _explicit_args(cli_args)
    merged = Namespace(**vars(args))

    for config_key, arg_name in _SIMPLE_KEYS.items():
        if config_key not in config or arg_name in explicit:
            continue
        value = config[config_key]
        if value is None:
            continue
        if config_key in _PATH_KEYS:
            value = Path(value)
        if config_key == 'test' and isinstance(value, str):
            value = [value]
        setattr(merged, arg_name, value)

    # --workers / --heteroscedastic (or their top-level keys) win over the fit section
    fit_settings = dict(config.get('fit') or {})
    if 'workers' in explicit or config.get('workers') is not None:
        fit_settings['n_workers'] = merged.workers
    if 'heteroscedastic' in explicit or config.get('heteroscedastic') is not None:
        fit_settings['heteroscedastic'] = bool(merged.heteroscedastic)
    merged.fit_settings = fit_settings
    return merged


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Raises:
        ValueError: If configuration is invalid
    """
    known = set(_SIMPLE_KEYS) | {'fit'}
    unknown = sorted(set(config) - known)
    if unknown:
        raise ValueError(
            f"Unknown config keys: {unknown}. Choose from: {', '.join(sorted(known))}"
        )

    if 'workers' in config:
        workers = config['workers']
        if not isinstance(workers, int) or isinstance(workers, bool) or workers <= 0:
            raise ValueError(f"workers must be a positive integer, got: {workers}")

    if 'alpha' in config:
        alpha = config['alpha']
        if not isinstance(alpha, (int, float)) or not 0 < alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got: {alpha}")

    if 'test' in config and not isinstance(config['test'], (str, list)):
        raise ValueError(f"test must be a coefficient name or a list, got: {config['test']}")

    fit = config.get('fit') or {}
    if not isinstance(fit, dict):
        raise ValueError("'fit' section must be a mapping")
    fit_keys = {f.name for f in fields(FitConfig)}
    unknown_fit = sorted(set(fit) - fit_keys)
    if unknown_fit:
        raise ValueError(f"Unknown fit settings: {unknown_fit}. Choose from: {sorted(fit_keys)}")

    shrinkage = fit.get('shrinkage') or {}
    if not isinstance(shrinkage, dict):
        raise ValueError("'fit.shrinkage' section must be a mapping")
    shrink_keys = {f.name for f in fields(ShrinkageConfig)}
    unknown_shrink = sorted(set(shrinkage) - shrink_keys)
    if unknown_shrink:
        raise ValueError(
            f"Unknown shrinkage settings: {unknown_shrink}. Choose from: {sorted(shrink_keys)}"
        )


def fit_config_from_args(args: Namespace) -> FitConfig:
    """
    FitConfig for a parsed command line.

    After :func:`merge_config_with_args` the merged ``fit_settings`` are used
    as they are; without a config file the settings come from --workers and
    --heteroscedastic.
    """
    if not hasattr(args, 'fit_settings'):
        return FitConfig(n_workers=args.workers, heteroscedastic=bool(args.heteroscedastic))
    return FitConfig.from_dict(args.fit_settings)
