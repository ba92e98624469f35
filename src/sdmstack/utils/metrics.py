"""Model diagnostics and ensemble summaries."""

import logging
from typing import Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from sdmstack.data.schema import simulation_columns
from sdmstack.pipeline.ensemble import align_prediction_tables, resolve_weights

logger = logging.getLogger(__name__)


def deviance_explained(logliks: Mapping[str, float], null_loglik: float) -> pd.DataFrame:
    """Percent deviance explained by each model relative to an intercept-only fit.

    Args:
        logliks: Model name to fitted log-likelihood
        null_loglik: Log-likelihood of the intercept-only (null) model

    Returns:
        DataFrame with ``model``, ``loglik``, ``resid_dev``, ``null_dev`` and
        ``dev_explained`` (percent)
    """
    null_dev = -2.0 * float(null_loglik)
    if null_dev == 0:
        raise ValueError("Null deviance is zero; deviance explained is undefined")

    rows = []
    for name, loglik in logliks.items():
        resid_dev = -2.0 * float(loglik)
        rows.append({
            "model": name,
            "loglik": float(loglik),
            "resid_dev": resid_dev,
            "null_dev": null_dev,
            "dev_explained": 100.0 * (null_dev - resid_dev) / null_dev,
        })
    return pd.DataFrame(rows)


def weighted_residuals(
    residuals: Sequence[np.ndarray],
    weights: Sequence[float],
) -> np.ndarray:
    """Stacking-weighted combination of per-model residual vectors.

    Args:
        residuals: One residual vector per model, aligned by observation
        weights: Stacking weights in the same model order

    Returns:
        Weighted residual vector
    """
    arrays = [np.asarray(r, dtype=float) for r in residuals]
    lengths = {len(r) for r in arrays}
    if len(lengths) != 1:
        raise ValueError(f"Residual vectors differ in length: {sorted(lengths)}")
    w = resolve_weights(weights, len(arrays))
    return np.tensordot(w, np.stack(arrays), axes=1)


def bhattacharyya_overlap(p: np.ndarray, q: np.ndarray) -> float:
    """Bhattacharyya coefficient between two densities over the same cells.

    Both inputs are normalised to sum to one first, so raw predicted CPUE
    can be passed directly. 0 means no overlap, 1 identical distributions.
    """
    p = np.asarray(p, dtype=float)
    q = np.asarray(q, dtype=float)
    if p.shape != q.shape:
        raise ValueError(f"Shape mismatch: {p.shape} vs {q.shape}")
    if not (np.isfinite(p).all() and np.isfinite(q).all()):
        raise ValueError("Densities must be finite")
    if (p < 0).any() or (q < 0).any():
        raise ValueError("Densities must be non-negative")
    p_sum, q_sum = p.sum(), q.sum()
    if p_sum <= 0 or q_sum <= 0:
        raise ValueError("Densities must have positive mass")
    coef = np.sqrt((p / p_sum) * (q / q_sum)).sum()
    return float(min(coef, 1.0))


def overlap_by_time(
    species_a: pd.DataFrame,
    species_b: pd.DataFrame,
    keys: Sequence[str] = ("year", "cell_id"),
    value_col: str = "est",
) -> pd.DataFrame:
    """Bhattacharyya overlap of two species' predicted distributions, per time step."""
    time_col = keys[0]
    a, b = align_prediction_tables([species_a, species_b], keys)
    times = a.index.get_level_values(time_col)

    rows = []
    for time in pd.unique(times):
        mask = times == time
        rows.append({
            time_col: time,
            "overlap": bhattacharyya_overlap(
                a.loc[mask, value_col].to_numpy(), b.loc[mask, value_col].to_numpy()
            ),
        })
    return pd.DataFrame(rows)


def _value_matrix(
    ensemble: pd.DataFrame, value_col: str, sim_prefix: str
) -> Tuple[np.ndarray, bool]:
    sims = simulation_columns(ensemble, sim_prefix)
    if sims:
        return ensemble[sims].to_numpy(dtype=float), True
    if value_col in ensemble.columns:
        return ensemble[[value_col]].to_numpy(dtype=float), False
    raise ValueError(f"Ensemble has neither '{value_col}' nor '{sim_prefix}' columns")


def _grid_attribute(
    ensemble: pd.DataFrame, grid: pd.DataFrame, unit_col: str, column: str
) -> np.ndarray:
    if column not in grid.columns:
        raise ValueError(f"Grid has no column {column}")
    lookup = grid.set_index(unit_col)[column]
    units = ensemble[unit_col]
    missing = set(units) - set(lookup.index)
    if missing:
        raise ValueError(f"{len(missing)} cells missing from grid, e.g. {sorted(missing)[:3]}")
    return lookup.loc[units].to_numpy(dtype=float)


def _summarize(
    per_time: pd.DataFrame,
    time_col: str,
    name: str,
    is_sim: bool,
    quantiles: Tuple[float, float],
) -> pd.DataFrame:
    out = pd.DataFrame({time_col: per_time.index.to_numpy()})
    if not is_sim:
        out[name] = per_time.iloc[:, 0].to_numpy()
        return out
    out[name] = per_time.mean(axis=1).to_numpy()
    out["lwr"] = per_time.quantile(quantiles[0], axis=1).to_numpy()
    out["upr"] = per_time.quantile(quantiles[1], axis=1).to_numpy()
    out["se"] = per_time.std(axis=1, ddof=1).to_numpy()
    return out


def biomass_index(
    ensemble: pd.DataFrame,
    grid: pd.DataFrame,
    keys: Sequence[str] = ("year", "cell_id"),
    value_col: str = "est",
    sim_prefix: str = "sim_",
    area_col: str = "area_km2",
    quantiles: Tuple[float, float] = (0.025, 0.975),
) -> pd.DataFrame:
    """Area-weighted total of predicted density per time step.

    Point ensembles give one total per time. Simulation ensembles are summed
    per draw and summarised by mean, quantiles and SE across draws.
    """
    time_col, unit_col = keys[0], keys[1]
    values, is_sim = _value_matrix(ensemble, value_col, sim_prefix)
    area = _grid_attribute(ensemble, grid, unit_col, area_col)

    totals = pd.DataFrame(values * area[:, None]).groupby(ensemble[time_col].to_numpy()).sum()
    return _summarize(totals, time_col, "index", is_sim, quantiles)


def mean_depth(
    ensemble: pd.DataFrame,
    grid: pd.DataFrame,
    keys: Sequence[str] = ("year", "cell_id"),
    value_col: str = "est",
    sim_prefix: str = "sim_",
    depth_col: str = "depth",
    quantiles: Tuple[float, float] = (0.025, 0.975),
) -> pd.DataFrame:
    """Density-weighted mean depth of the predicted distribution per time step."""
    time_col, unit_col = keys[0], keys[1]
    values, is_sim = _value_matrix(ensemble, value_col, sim_prefix)
    depth = _grid_attribute(ensemble, grid, unit_col, depth_col)

    times = ensemble[time_col].to_numpy()
    numerator = pd.DataFrame(values * depth[:, None]).groupby(times).sum()
    denominator = pd.DataFrame(values).groupby(times).sum()
    if (denominator <= 0).any().any():
        raise ValueError("Predicted density sums to zero for at least one time step")
    return _summarize(numerator / denominator, time_col, "mean_depth", is_sim, quantiles)
