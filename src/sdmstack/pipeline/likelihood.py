"""Collect out-of-fold log-likelihoods into an observations x candidates matrix."""

import logging
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from sdmstack.data.schema import validate_likelihood_table
from sdmstack.models.base import CandidateModel

logger = logging.getLogger(__name__)


class LikelihoodMatrix:
    """Held-out log-likelihoods, one row per observation and one column per candidate.

    All columns share the same observation set and ordering. Values may be
    ``-inf`` (or underflow to zero likelihood); those rows are masked by the
    stacking objective rather than here.
    """

    def __init__(
        self,
        values: np.ndarray,
        fold_ids: np.ndarray,
        model_names: Sequence[str],
        obs_ids: Optional[np.ndarray] = None,
        converged: Optional[Sequence[bool]] = None,
    ):
        values = np.asarray(values, dtype=float)
        fold_ids = np.asarray(fold_ids, dtype=int)
        model_names = list(model_names)

        if values.ndim != 2:
            raise ValueError(f"Likelihood matrix must be 2-D, got shape {values.shape}")
        if values.shape[1] == 0:
            raise ValueError("Likelihood matrix has no candidate columns")
        if len(fold_ids) != values.shape[0]:
            raise ValueError(
                f"Expected {values.shape[0]} fold ids, got {len(fold_ids)}"
            )
        if len(model_names) != values.shape[1]:
            raise ValueError(
                f"Expected {values.shape[1]} model names, got {len(model_names)}"
            )
        if len(set(model_names)) != len(model_names):
            raise ValueError(f"Duplicate model names: {model_names}")

        if obs_ids is None:
            obs_ids = np.arange(values.shape[0])
        if converged is None:
            converged = [True] * len(model_names)

        self.values = values
        self.fold_ids = fold_ids
        self.model_names = model_names
        self.obs_ids = np.asarray(obs_ids)
        self.converged = [bool(c) for c in converged]

    @property
    def n_obs(self) -> int:
        return self.values.shape[0]

    @property
    def n_models(self) -> int:
        return self.values.shape[1]

    @property
    def folds(self) -> List[int]:
        return sorted(int(f) for f in np.unique(self.fold_ids))

    def subset_folds(self, include_folds: Optional[Iterable[int]]) -> "LikelihoodMatrix":
        """Restrict to observations held out in ``include_folds`` (all when None)."""
        if include_folds is None:
            return self
        include = list(include_folds)
        mask = np.isin(self.fold_ids, include)
        if not mask.any():
            raise ValueError(f"No observations in folds {include}; available: {self.folds}")
        return LikelihoodMatrix(
            self.values[mask],
            self.fold_ids[mask],
            self.model_names,
            obs_ids=self.obs_ids[mask],
            converged=self.converged,
        )

    def to_frame(self) -> pd.DataFrame:
        """Wide table: ``obs_id``, ``cv_fold`` and one column per candidate."""
        df = pd.DataFrame(self.values, columns=self.model_names)
        df.insert(0, "cv_fold", self.fold_ids)
        df.insert(0, "obs_id", self.obs_ids)
        return df

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(n_obs={self.n_obs}, "
            f"models={self.model_names}, folds={self.folds})"
        )


def build_likelihood_matrix(candidates: Sequence[CandidateModel]) -> LikelihoodMatrix:
    """Stack candidates' held-out log-likelihoods column-wise.

    Args:
        candidates: Fitted candidates, all scored on the same observations

    Returns:
        LikelihoodMatrix with one column per candidate, in input order

    Raises:
        ValueError: If candidates disagree on observation count or fold assignment
    """
    if not candidates:
        raise ValueError("No candidate models provided")

    reference = candidates[0]
    for cand in candidates[1:]:
        if cand.n_obs != reference.n_obs:
            raise ValueError(
                f"Candidate {cand.name} has {cand.n_obs} observations, "
                f"expected {reference.n_obs} (as {reference.name})"
            )
        if not np.array_equal(cand.cv_fold, reference.cv_fold):
            raise ValueError(
                f"Fold assignment of {cand.name} differs from {reference.name}"
            )

    values = np.column_stack([cand.cv_loglik for cand in candidates])
    logger.info(
        f"Built likelihood matrix: {values.shape[0]} observations x "
        f"{values.shape[1]} candidates"
    )
    return LikelihoodMatrix(
        values,
        reference.cv_fold,
        [cand.name for cand in candidates],
        converged=[cand.converged for cand in candidates],
    )


def likelihood_matrix_from_long(
    df: pd.DataFrame,
    model_order: Optional[Sequence[str]] = None,
) -> LikelihoodMatrix:
    """Pivot a long ``(model, obs_id, cv_fold, cv_loglik)`` table.

    Args:
        df: Long-format table, one row per (model, observation)
        model_order: Column order of candidates (default: order of first appearance)

    Returns:
        LikelihoodMatrix

    Raises:
        ValueError: If any model lacks an observation, or folds disagree across models
    """
    validate_likelihood_table(df)

    if df.duplicated(subset=["model", "obs_id"]).any():
        raise ValueError("Duplicate (model, obs_id) rows in likelihood table")

    if model_order is None:
        model_order = list(pd.unique(df["model"]))
    else:
        model_order = list(model_order)
        unknown = set(model_order) - set(df["model"])
        if unknown:
            raise ValueError(f"Models not present in likelihood table: {unknown}")

    folds = df.pivot(index="obs_id", columns="model", values="cv_fold")
    folds = folds[model_order]
    if folds.isna().any().any():
        incomplete = folds.columns[folds.isna().any()].tolist()
        raise ValueError(f"Models missing observations: {incomplete}")
    if not (folds.nunique(axis=1) == 1).all():
        raise ValueError("Fold assignment differs across models")

    loglik = df.pivot(index="obs_id", columns="model", values="cv_loglik")[model_order]

    if "converged" in df.columns:
        converged = df.groupby("model")["converged"].all().reindex(model_order).tolist()
    else:
        converged = None

    return LikelihoodMatrix(
        loglik.to_numpy(dtype=float),
        folds.iloc[:, 0].to_numpy(dtype=int),
        model_order,
        obs_ids=loglik.index.to_numpy(),
        converged=converged,
    )


def summarize_candidates(candidates: Sequence[CandidateModel]) -> pd.DataFrame:
    """One row per candidate: configuration, summed held-out log-likelihood, convergence."""
    rows = []
    for cand in candidates:
        rows.append({
            "model": cand.name,
            "configuration": cand.configuration.label,
            "spatial": cand.configuration.spatial,
            "env_spline": cand.configuration.env_spline,
            "depth": cand.configuration.depth,
            "sum_loglik": cand.total_loglik(),
            "n_nonfinite": int((~np.isfinite(cand.cv_loglik)).sum()),
            "converged": cand.converged,
        })
    return pd.DataFrame(rows)
