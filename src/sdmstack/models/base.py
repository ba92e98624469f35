"""Candidate model containers."""

from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from pydantic import BaseModel


class ModelConfiguration(BaseModel):
    """Structural switches of a candidate species distribution model."""

    spatial: bool = False
    env_spline: bool = False
    depth: bool = False

    @property
    def label(self) -> str:
        """Short human-readable label, e.g. ``"spatial+env+depth"``."""
        parts = [
            name
            for name, enabled in (
                ("spatial", self.spatial),
                ("env", self.env_spline),
                ("depth", self.depth),
            )
            if enabled
        ]
        return "+".join(parts) if parts else "null"


class CandidateModel:
    """One fitted candidate and its out-of-fold log-likelihoods.

    Values are aligned by observation index across all candidates of a set;
    the fitted parameters are carried along but never interpreted here.
    """

    def __init__(
        self,
        name: str,
        cv_loglik: np.ndarray,
        cv_fold: np.ndarray,
        configuration: Optional[ModelConfiguration] = None,
        converged: bool = True,
        params: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.cv_loglik = np.asarray(cv_loglik, dtype=float)
        self.cv_fold = np.asarray(cv_fold, dtype=int)
        self.configuration = configuration or ModelConfiguration()
        self.converged = bool(converged)
        self.params = params or {}

        if self.cv_loglik.ndim != 1:
            raise ValueError(f"cv_loglik for {name} must be one-dimensional")
        if self.cv_loglik.shape != self.cv_fold.shape:
            raise ValueError(
                f"cv_loglik and cv_fold lengths differ for {name}: "
                f"{len(self.cv_loglik)} vs {len(self.cv_fold)}"
            )

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        name: str,
        configuration: Optional[ModelConfiguration] = None,
        converged: bool = True,
        loglik_col: str = "cv_loglik",
        fold_col: str = "cv_fold",
    ) -> "CandidateModel":
        """Build a candidate from a per-observation cross-validation table.

        Args:
            df: Table with one row per observation, in observation order
            name: Candidate identifier
            configuration: Structural switches of the candidate
            converged: Convergence flag reported by the fitting library
            loglik_col: Column holding held-out log-likelihoods
            fold_col: Column holding held-out fold ids

        Returns:
            CandidateModel instance
        """
        missing = {loglik_col, fold_col} - set(df.columns)
        if missing:
            raise ValueError(f"Missing required columns for {name}: {missing}")
        return cls(
            name=name,
            cv_loglik=df[loglik_col].to_numpy(),
            cv_fold=df[fold_col].to_numpy(),
            configuration=configuration,
            converged=converged,
        )

    @property
    def n_obs(self) -> int:
        return len(self.cv_loglik)

    def total_loglik(self) -> float:
        """Sum of finite held-out log-likelihoods."""
        finite = np.isfinite(self.cv_loglik)
        return float(self.cv_loglik[finite].sum())

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(name={self.name}, "
            f"configuration={self.configuration.label}, n_obs={self.n_obs}, "
            f"converged={self.converged})"
        )
