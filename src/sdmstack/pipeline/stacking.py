"""Likelihood-based model stacking weights.

Finds the convex combination of candidate predictive densities that maximises
the total held-out log score::

    maximise  sum_i log( sum_k w_k * exp(loglik[i, k]) )

Weights are parameterised as ``w = softmax(p)`` so an unconstrained optimizer
can be used. Observations whose mixture log-likelihood is not finite (every
candidate likelihood underflows to zero, or a value is NaN) are dropped from
the sum instead of propagating; how many were dropped is logged.
"""

import logging
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict
from scipy.optimize import minimize

from sdmstack.config import BOUNDED_METHODS, GRADIENT_METHODS, STACKING_METHODS, StackingConfig
from sdmstack.pipeline.likelihood import LikelihoodMatrix
from sdmstack.utils.seed import get_rng

logger = logging.getLogger(__name__)


class StackingError(RuntimeError):
    """Raised when stacking weights cannot be estimated."""


class StackingResult(BaseModel):
    """Stacking weights for one candidate set. Immutable once derived."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_names: List[str]
    weights: List[float]
    model_converged: List[bool]
    converged: bool
    fallback: bool = False
    n_used: int = 0
    n_excluded: int = 0
    objective: Optional[float] = None
    message: str = ""

    @property
    def weight_array(self) -> np.ndarray:
        return np.asarray(self.weights, dtype=float)

    def weight_for(self, name: str) -> float:
        return self.weights[self.model_names.index(name)]

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "StackingResult":
        """Rebuild a result from a weight table written by ``to_frame``."""
        stacking_converged = df["stacking_converged"] if "stacking_converged" in df else [True]
        fallback = df["fallback"] if "fallback" in df else [False]
        return cls(
            model_names=df["model"].astype(str).tolist(),
            weights=df["weight"].astype(float).tolist(),
            model_converged=df["converged"].astype(bool).tolist(),
            converged=bool(all(stacking_converged)),
            fallback=bool(any(fallback)),
        )

    def to_frame(self) -> pd.DataFrame:
        """One row per candidate with its weight and convergence flags."""
        return pd.DataFrame({
            "model": self.model_names,
            "weight": self.weights,
            "converged": self.model_converged,
            "stacking_converged": [self.converged] * len(self.model_names),
            "fallback": [self.fallback] * len(self.model_names),
        })


def softmax(params: np.ndarray) -> np.ndarray:
    """Numerically stable softmax of a parameter vector."""
    params = np.asarray(params, dtype=float)
    shifted = np.exp(params - params.max())
    return shifted / shifted.sum()


def uniform_weights(n_models: int) -> np.ndarray:
    if n_models < 1:
        raise ValueError("Need at least one model for uniform weights")
    return np.full(n_models, 1.0 / n_models)


def _mixture_terms(
    weights: np.ndarray, likelihoods: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-observation mixture density, its log and the finite mask."""
    mixture = likelihoods @ weights
    with np.errstate(divide="ignore", invalid="ignore"):
        log_mixture = np.log(mixture)
    return mixture, log_mixture, np.isfinite(log_mixture)


def stacking_objective(params: np.ndarray, likelihoods: np.ndarray) -> float:
    """Negative total log mixture likelihood over finite observations.

    Args:
        params: Unconstrained parameters, one per candidate
        likelihoods: (n_obs, n_models) array of likelihoods (not logs)

    Returns:
        Objective value to minimise
    """
    _, log_mixture, mask = _mixture_terms(softmax(params), likelihoods)
    return float(-log_mixture[mask].sum())


def stacking_gradient(params: np.ndarray, likelihoods: np.ndarray) -> np.ndarray:
    """Analytic gradient of ``stacking_objective`` with respect to ``params``.

    With ``m_i = sum_k w_k L_ik`` and ``w = softmax(p)``::

        d/dp_j = -w_j * (sum_i L_ij / m_i - n)

    where the sums run over the same finite observations as the objective.
    """
    weights = softmax(params)
    mixture, _, mask = _mixture_terms(weights, likelihoods)
    n_used = int(mask.sum())
    if n_used == 0:
        return np.zeros_like(weights)
    ratio = likelihoods[mask] / mixture[mask][:, None]
    return -weights * (ratio.sum(axis=0) - n_used)


def mixture_log_score(matrix: LikelihoodMatrix, weights: np.ndarray) -> Tuple[float, int]:
    """Total held-out log score of a weighted mixture and the number of observations used."""
    weights = np.asarray(weights, dtype=float)
    if len(weights) != matrix.n_models:
        raise ValueError(f"Expected {matrix.n_models} weights, got {len(weights)}")
    _, log_mixture, mask = _mixture_terms(weights, np.exp(matrix.values))
    return float(log_mixture[mask].sum()), int(mask.sum())


def _report_exclusions(n_excluded: int, n_total: int, warn_fraction: float) -> None:
    if n_excluded == 0:
        logger.info(f"All {n_total} observations have finite mixture likelihood")
        return
    fraction = n_excluded / n_total
    msg = (
        f"Excluded {n_excluded}/{n_total} observations ({fraction:.1%}) "
        f"with non-finite mixture log-likelihood"
    )
    if fraction > warn_fraction:
        logger.warning(msg)
    else:
        logger.info(msg)


def optimize_stacking_weights(
    matrix: LikelihoodMatrix,
    include_folds: Optional[Iterable[int]] = None,
    seed: Optional[int] = None,
    method: str = "L-BFGS-B",
    maxiter: int = 1000,
    param_bound: Optional[float] = 30.0,
    exclusion_warn_fraction: float = 0.1,
) -> StackingResult:
    """Estimate stacking weights that maximise the held-out log score.

    Args:
        matrix: Held-out log-likelihoods (observations x candidates)
        include_folds: Fold ids whose observations enter the objective (all when None)
        seed: Seed for the random starting parameters
        method: scipy.optimize.minimize method
        maxiter: Maximum optimizer iterations
        param_bound: Box bound on softmax parameters for bounded methods (None disables)
        exclusion_warn_fraction: Warn when more than this share of observations is masked

    Returns:
        StackingResult with converged weights

    Raises:
        ValueError: If ``method`` is not a supported optimizer
        StackingError: If no observation is usable, the optimizer raises, does not
            report success, or yields non-finite weights
    """
    if method not in STACKING_METHODS:
        raise ValueError(
            f"Unsupported stacking method: {method} (choose from {sorted(STACKING_METHODS)})"
        )

    matrix = matrix.subset_folds(include_folds)
    n_models = matrix.n_models
    likelihoods = np.exp(matrix.values)

    logger.info(
        f"Stacking {n_models} candidates on {matrix.n_obs} held-out observations "
        f"(folds={matrix.folds}, method={method})"
    )

    rng = get_rng(seed)
    x0 = rng.uniform(size=n_models)

    _, _, initial_mask = _mixture_terms(softmax(x0), likelihoods)
    if not initial_mask.any():
        raise StackingError(
            "Stacking failed: no observation has a finite mixture log-likelihood"
        )

    if n_models == 1:
        n_used = int(initial_mask.sum())
        _report_exclusions(matrix.n_obs - n_used, matrix.n_obs, exclusion_warn_fraction)
        return StackingResult(
            model_names=matrix.model_names,
            weights=[1.0],
            model_converged=matrix.converged,
            converged=True,
            n_used=n_used,
            n_excluded=matrix.n_obs - n_used,
            objective=stacking_objective(x0, likelihoods),
            message="single candidate",
        )

    kwargs = {"method": method, "options": {"maxiter": maxiter}}
    if method in GRADIENT_METHODS:
        kwargs["jac"] = stacking_gradient
    if method in BOUNDED_METHODS and param_bound is not None:
        kwargs["bounds"] = [(-param_bound, param_bound)] * n_models

    try:
        result = minimize(stacking_objective, x0, args=(likelihoods,), **kwargs)
    except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
        raise StackingError(f"Stacking failed: optimizer raised {e!r}") from e

    if not result.success:
        raise StackingError(f"Stacking failed: {result.message}")

    weights = softmax(result.x)
    if not np.all(np.isfinite(weights)):
        raise StackingError("Stacking failed: optimizer returned non-finite weights")

    _, _, final_mask = _mixture_terms(weights, likelihoods)
    n_used = int(final_mask.sum())
    _report_exclusions(matrix.n_obs - n_used, matrix.n_obs, exclusion_warn_fraction)

    weight_str = ", ".join(
        f"{name}={w:.4f}" for name, w in zip(matrix.model_names, weights)
    )
    logger.info(f"Stacking weights: {weight_str} (objective={result.fun:.4f})")

    return StackingResult(
        model_names=matrix.model_names,
        weights=[float(w) for w in weights],
        model_converged=matrix.converged,
        converged=True,
        n_used=n_used,
        n_excluded=matrix.n_obs - n_used,
        objective=float(result.fun),
        message=str(result.message),
    )


def stack_with_fallback(
    matrix: LikelihoodMatrix,
    config: Optional[StackingConfig] = None,
    seed: Optional[int] = None,
) -> StackingResult:
    """Stacking weights, falling back to uniform weights when optimisation fails.

    Args:
        matrix: Held-out log-likelihoods (observations x candidates)
        config: Stacking configuration (defaults when None)
        seed: Seed for the random starting parameters

    Returns:
        StackingResult; ``fallback`` is True and ``converged`` False when the
        uniform weights were substituted
    """
    config = config or StackingConfig()
    try:
        return optimize_stacking_weights(
            matrix,
            include_folds=config.include_folds,
            seed=seed,
            method=config.method,
            maxiter=config.maxiter,
            param_bound=config.param_bound,
            exclusion_warn_fraction=config.exclusion_warn_fraction,
        )
    except StackingError as e:
        logger.warning(f"{e}; falling back to uniform weights over {matrix.n_models} models")
        return StackingResult(
            model_names=matrix.model_names,
            weights=uniform_weights(matrix.n_models).tolist(),
            model_converged=matrix.converged,
            converged=False,
            fallback=True,
            message=str(e),
        )
