"""Input loading and atomic result writing."""

from .loaders import load_abundance_table, load_bootstrap_table, load_covariates, load_retained_ids
from .writers import write_json_atomic, write_table_atomic

__all__ = [
    "load_abundance_table",
    "load_bootstrap_table",
    "load_covariates",
    "load_retained_ids",
    "write_json_atomic",
    "write_table_atomic",
]
