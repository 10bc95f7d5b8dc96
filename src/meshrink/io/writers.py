"""
Atomic writers for result tables and run metadata.

Output is written to a temporary file in the destination directory and
moved into place with ``os.replace()``, so an interrupted run never leaves
a half-written result behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

__all__ = ['write_table_atomic', 'write_json_atomic']


def _atomic_replace(path: Path, write) -> None:
    dir_path = path.parent
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='w', dir=dir_path, suffix='.tmp', delete=False, newline=''
        ) as tmp:
            tmp_path = tmp.name
            write(tmp)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_table_atomic(df: pd.DataFrame, path: Path | str, sep: str | None = None) -> Path:
    """
    Write a DataFrame without its index.

    The separator defaults to tab for ``.tsv``/``.txt`` paths and comma
    otherwise.
    """
    path = Path(path)
    if sep is None:
        sep = '\t' if path.suffix.lower() in ('.tsv', '.txt') else ','
    _atomic_replace(path, lambda f: df.to_csv(f, sep=sep, index=False))
    logger.info("Wrote %d rows to %s", len(df), path)
    return path


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json_atomic(data: Any, path: Path | str, *, indent: int = 2) -> Path:
    """Write JSON-serializable ``data`` (numpy scalars allowed)."""
    path = Path(path)
    _atomic_replace(path, lambda f: json.dump(data, f, indent=indent, default=_json_default))
    logger.info("Wrote %s", path)
    return path
