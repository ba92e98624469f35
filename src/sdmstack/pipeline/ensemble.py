"""Ensemble projections by stacking-weighted averaging of candidate predictions."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from sdmstack.data.schema import (
    PredictionSchema,
    simulation_columns,
    validate_prediction_table,
    validate_weight_table,
)
from sdmstack.utils.io import load_table, save_table

logger = logging.getLogger(__name__)

DEFAULT_KEYS = ("year", "cell_id")


class KeyMismatchError(ValueError):
    """Candidate prediction tables do not cover an identical set of keys."""


def resolve_weights(weights: Optional[Sequence[float]], n_models: int) -> np.ndarray:
    """Validate and normalise ensemble weights.

    Missing weights (None, or every entry NaN, as left by a failed stacking
    run) resolve to uniform weights.

    Args:
        weights: One weight per candidate, or None
        n_models: Number of candidates being combined

    Returns:
        Non-negative weights summing to one

    Raises:
        ValueError: On length mismatch, partial NaN, negative or all-zero weights
    """
    if n_models < 1:
        raise ValueError("No candidate predictions to combine")
    if weights is None:
        logger.info(f"No weights supplied; using uniform weights over {n_models} models")
        return np.full(n_models, 1.0 / n_models)

    w = np.asarray(weights, dtype=float)
    if w.shape != (n_models,):
        raise ValueError(f"Expected {n_models} weights, got shape {w.shape}")
    if np.isnan(w).all():
        logger.warning("All weights undefined; using uniform weights")
        return np.full(n_models, 1.0 / n_models)
    if not np.isfinite(w).all():
        raise ValueError(f"Weights contain non-finite values: {w.tolist()}")
    if (w < 0).any():
        raise ValueError(f"Weights must be non-negative: {w.tolist()}")
    total = w.sum()
    if total <= 0:
        raise ValueError("Weights sum to zero")
    return w / total


def align_prediction_tables(
    tables: Sequence[pd.DataFrame],
    keys: Sequence[str] = DEFAULT_KEYS,
) -> List[pd.DataFrame]:
    """Index candidate tables by ``keys`` and put them in the first table's row order.

    Args:
        tables: One prediction table per candidate
        keys: Columns identifying a prediction (time, spatial unit)

    Returns:
        Tables indexed by ``keys``, row-aligned with each other

    Raises:
        KeyMismatchError: If any table has duplicate keys or a different key set
    """
    keys = list(keys)
    if not tables:
        raise ValueError("No prediction tables provided")

    indexed = []
    for i, df in enumerate(tables):
        missing = set(keys) - set(df.columns)
        if missing:
            raise ValueError(f"Prediction table {i} missing key columns: {missing}")
        frame = df.set_index(keys)
        if frame.index.has_duplicates:
            n_dup = int(frame.index.duplicated().sum())
            raise KeyMismatchError(f"Prediction table {i} has {n_dup} duplicate keys")
        indexed.append(frame)

    reference = indexed[0].index
    aligned = [indexed[0]]
    for i, frame in enumerate(indexed[1:], start=1):
        if not frame.index.equals(reference):
            missing_keys = reference.difference(frame.index)
            extra_keys = frame.index.difference(reference)
            if len(missing_keys) or len(extra_keys):
                raise KeyMismatchError(
                    f"Prediction table {i} key set differs from table 0: "
                    f"{len(missing_keys)} missing, {len(extra_keys)} unexpected "
                    f"(e.g. {list(missing_keys[:3]) + list(extra_keys[:3])})"
                )
            frame = frame.loc[reference]
        aligned.append(frame)
    return aligned


def combine_point_predictions(
    tables: Sequence[pd.DataFrame],
    weights: Optional[Sequence[float]] = None,
    keys: Sequence[str] = DEFAULT_KEYS,
    value_col: str = "est",
) -> pd.DataFrame:
    """Weighted mean of candidate point predictions per key.

    Args:
        tables: One prediction table per candidate, same order as ``weights``
        weights: Stacking weights (uniform when None or all NaN)
        keys: Key columns shared by all tables
        value_col: Column holding the point prediction

    Returns:
        Table with ``keys`` and ``value_col``
    """
    w = resolve_weights(weights, len(tables))
    aligned = align_prediction_tables(tables, keys)
    for i, frame in enumerate(aligned):
        if value_col not in frame.columns:
            raise ValueError(f"Prediction table {i} missing column {value_col}")

    values = np.column_stack([frame[value_col].to_numpy(dtype=float) for frame in aligned])
    blended = values @ w

    result = pd.DataFrame({value_col: blended}, index=aligned[0].index).reset_index()
    logger.info(f"Combined {len(tables)} point predictions over {len(result)} keys")
    return result


def combine_simulations(
    tables: Sequence[pd.DataFrame],
    weights: Optional[Sequence[float]] = None,
    keys: Sequence[str] = DEFAULT_KEYS,
    sim_prefix: str = "sim_",
) -> pd.DataFrame:
    """Blend simulation draws across candidates, draw by draw.

    Draw ``n`` of the ensemble is ``sum_k w_k * draw_n[k]`` at each key. Draws
    from different candidates are independent samples paired by their ``sim_n``
    index, which must be the same set in every table; they are not re-paired
    or rank-matched.

    Args:
        tables: One table per candidate with ``keys`` and N ``sim_prefix`` columns
        weights: Stacking weights (uniform when None or all NaN)
        keys: Key columns shared by all tables
        sim_prefix: Prefix of the draw columns (``sim_0``, ``sim_1``, ...)

    Returns:
        Table with ``keys`` and N blended draw columns
    """
    w = resolve_weights(weights, len(tables))
    aligned = align_prediction_tables(tables, keys)

    sim_cols = [simulation_columns(frame, sim_prefix) for frame in aligned]
    n_draws = {len(cols) for cols in sim_cols}
    if 0 in n_draws:
        raise ValueError(f"Prediction table without '{sim_prefix}' draw columns")
    if len(n_draws) > 1:
        raise ValueError(f"Candidates have different numbers of draws: {sorted(n_draws)}")
    for i, cols in enumerate(sim_cols[1:], start=1):
        if cols != sim_cols[0]:
            raise ValueError(
                f"Prediction table {i} draw columns {cols[:3]}... do not match "
                f"table 0 draw columns {sim_cols[0][:3]}..."
            )

    # (n_models, n_keys, n_draws)
    draws = np.stack([
        frame[cols].to_numpy(dtype=float) for frame, cols in zip(aligned, sim_cols)
    ])
    blended = np.tensordot(w, draws, axes=1)

    result = pd.DataFrame(blended, columns=sim_cols[0], index=aligned[0].index).reset_index()
    logger.info(
        f"Combined {len(tables)} x {blended.shape[1]} draws over {len(result)} keys"
    )
    return result


def combine_predictions(
    tables: Sequence[pd.DataFrame],
    weights: Optional[Sequence[float]] = None,
    mode: str = "point",
    schema: Optional[PredictionSchema] = None,
) -> pd.DataFrame:
    """Dispatch to point or simulation combining after schema validation."""
    schema = schema or PredictionSchema()
    for df in tables:
        validate_prediction_table(df, schema, mode=mode)
    if mode == "point":
        return combine_point_predictions(tables, weights, schema.keys, schema.value_col)
    if mode == "simulation":
        return combine_simulations(tables, weights, schema.keys, schema.sim_prefix)
    raise ValueError(f"Unknown ensemble mode: {mode}")


def blend_prediction_files(
    pred_files: Sequence[str],
    output_path: str,
    weights: Optional[Sequence[float]] = None,
    mode: str = "point",
    schema: Optional[PredictionSchema] = None,
) -> pd.DataFrame:
    """Blend candidate prediction files (CSV or Parquet) into one ensemble table.

    Args:
        pred_files: Paths to per-candidate prediction tables
        output_path: Path to save the ensemble table
        weights: Weights in the same order as ``pred_files``
        mode: "point" or "simulation"
        schema: Key/value column names

    Returns:
        Ensemble DataFrame
    """
    logger.info(f"Blending {len(pred_files)} prediction files ({mode} mode)")
    tables = [load_table(path) for path in pred_files]
    result = combine_predictions(tables, weights, mode=mode, schema=schema)
    save_table(result, output_path)
    logger.info(f"Saved ensemble predictions to {output_path}")
    return result


def ensemble_from_directory(
    pred_dir: str,
    output_path: str,
    weights_path: Optional[str] = None,
    pattern: str = "*.parquet",
    mode: str = "point",
    schema: Optional[PredictionSchema] = None,
) -> pd.DataFrame:
    """Ensemble all candidate prediction files in a directory.

    Files are matched to weight-table rows by file stem (``<model>.parquet``).
    Without a weight table, candidates are averaged uniformly.

    Args:
        pred_dir: Directory containing one prediction file per candidate
        output_path: Path to save the ensemble table
        weights_path: Optional weight table written by the ``stack`` step
        pattern: Glob pattern for prediction files
        mode: "point" or "simulation"
        schema: Key/value column names

    Returns:
        Ensemble DataFrame
    """
    pred_dir = Path(pred_dir)
    pred_files = {p.stem: p for p in sorted(pred_dir.glob(pattern))}
    if not pred_files:
        raise ValueError(f"No prediction files found in {pred_dir}")

    logger.info(f"Found {len(pred_files)} prediction files")
    for name in pred_files:
        logger.info(f"  - {name}")

    if weights_path is None:
        return blend_prediction_files(
            [str(p) for p in pred_files.values()], output_path, None, mode, schema
        )

    weight_table = validate_weight_table(load_table(weights_path))
    models = weight_table["model"].astype(str).tolist()
    missing = [m for m in models if m not in pred_files]
    if missing:
        raise ValueError(f"No prediction file for weighted models: {missing}")
    unweighted = sorted(set(pred_files) - set(models))
    if unweighted:
        raise ValueError(f"Prediction files without a weight: {unweighted}")

    return blend_prediction_files(
        [str(pred_files[m]) for m in models],
        output_path,
        weight_table["weight"].to_numpy(dtype=float),
        mode,
        schema,
    )
