"""I/O helpers for likelihood, weight and prediction tables."""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import pandas as pd
import yaml

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _existing(path: PathLike) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path


def _writable(path: PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def load_csv(path: PathLike, **kwargs: Any) -> pd.DataFrame:
    """Load a CSV file into a DataFrame.

    Args:
        path: Path to CSV file
        **kwargs: Passed through to pd.read_csv

    Returns:
        Loaded DataFrame
    """
    path = _existing(path)
    logger.info(f"Loading CSV from {path}")
    df = pd.read_csv(path, **kwargs)
    logger.info(f"Loaded {len(df)} rows, {len(df.columns)} columns")
    return df


def save_csv(df: pd.DataFrame, path: PathLike, **kwargs: Any) -> None:
    """Save a DataFrame as CSV, creating parent directories."""
    path = _writable(path)
    df.to_csv(path, **kwargs)
    logger.info(f"Saved {len(df)} rows to {path}")


def load_parquet(path: PathLike, **kwargs: Any) -> pd.DataFrame:
    """Load a Parquet file into a DataFrame.

    Args:
        path: Path to Parquet file
        **kwargs: Passed through to pd.read_parquet

    Returns:
        Loaded DataFrame
    """
    path = _existing(path)
    logger.info(f"Loading Parquet from {path}")
    df = pd.read_parquet(path, **kwargs)
    logger.info(f"Loaded {len(df)} rows, {len(df.columns)} columns")
    return df


def save_parquet(df: pd.DataFrame, path: PathLike, **kwargs: Any) -> None:
    """Save a DataFrame as Parquet, creating parent directories."""
    path = _writable(path)
    df.to_parquet(path, **kwargs)
    logger.info(f"Saved {len(df)} rows to {path}")


def load_table(path: PathLike) -> pd.DataFrame:
    """Load a CSV or Parquet table, dispatching on the file suffix."""
    suffix = Path(path).suffix.lower()
    if suffix in (".parquet", ".pq"):
        return load_parquet(path)
    if suffix == ".csv":
        return load_csv(path)
    raise ValueError(f"Unsupported table format: {path}")


def save_table(df: pd.DataFrame, path: PathLike) -> None:
    """Save a CSV or Parquet table without the index, dispatching on the suffix."""
    suffix = Path(path).suffix.lower()
    if suffix in (".parquet", ".pq"):
        save_parquet(df, path, index=False)
    elif suffix == ".csv":
        save_csv(df, path, index=False)
    else:
        raise ValueError(f"Unsupported table format: {path}")


def load_yaml(path: PathLike) -> Dict[str, Any]:
    """Load a YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed mapping (empty dict for an empty file)
    """
    path = _existing(path)
    logger.info(f"Loading YAML from {path}")
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    return data or {}
