"""Cross-validation fold assignment for survey observations."""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.model_selection import GroupKFold, KFold

logger = logging.getLogger(__name__)


def assign_folds(
    df: pd.DataFrame,
    n_folds: int = 10,
    seed: int = 42,
    group_col: Optional[str] = None,
) -> np.ndarray:
    """Assign each observation to a held-out fold.

    Random K-fold assignment by default. With ``group_col`` (e.g. survey year)
    whole groups are held out together.

    Args:
        df: Observation table, one row per haul
        n_folds: Number of folds
        seed: Random seed for the shuffled assignment
        group_col: Optional column whose levels are never split across folds

    Returns:
        Integer array of 1-based fold ids, aligned with ``df`` rows
    """
    n_obs = len(df)
    if n_folds < 2:
        raise ValueError(f"n_folds must be at least 2, got {n_folds}")
    if n_obs < n_folds:
        raise ValueError(f"Cannot split {n_obs} observations into {n_folds} folds")

    fold_ids = np.zeros(n_obs, dtype=int)
    positions = np.arange(n_obs)

    if group_col is not None:
        if group_col not in df.columns:
            raise ValueError(f"Group column {group_col} not found")
        groups = df[group_col].to_numpy()
        n_groups = len(pd.unique(groups))
        if n_groups < n_folds:
            raise ValueError(
                f"Cannot split {n_groups} groups of '{group_col}' into {n_folds} folds"
            )
        splitter = GroupKFold(n_splits=n_folds)
        splits = splitter.split(positions, groups=groups)
    else:
        splitter = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
        splits = splitter.split(positions)

    for fold_idx, (_, valid_idx) in enumerate(splits):
        fold_ids[valid_idx] = fold_idx + 1

    counts = np.bincount(fold_ids, minlength=n_folds + 1)[1:]
    logger.info(f"Assigned {n_obs} observations to {n_folds} folds: sizes={counts.tolist()}")
    return fold_ids
