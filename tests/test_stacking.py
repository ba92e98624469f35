"""Tests for stacking weight optimisation."""

import logging

import numpy as np
import pytest
from scipy.optimize import OptimizeResult, check_grad

from sdmstack.config import StackingConfig
from sdmstack.pipeline import stacking
from sdmstack.pipeline.likelihood import LikelihoodMatrix
from sdmstack.pipeline.stacking import (
    StackingError,
    mixture_log_score,
    optimize_stacking_weights,
    softmax,
    stack_with_fallback,
    stacking_gradient,
    stacking_objective,
)


@pytest.fixture
def loglik_matrix():
    """Three candidates scored on 200 observations in 5 folds."""
    rng = np.random.default_rng(0)
    n_obs = 200
    base = rng.normal(-2.0, 0.5, size=(n_obs, 1))
    values = base + rng.normal(0.0, 0.3, size=(n_obs, 3))
    values[:, 0] += 0.2
    folds = np.arange(n_obs) % 5 + 1
    return LikelihoodMatrix(values, folds, ["m1", "m2", "m3"])


def _with_underflow_rows(matrix, n_rows):
    """Append rows whose likelihood underflows to zero for every candidate."""
    bad = np.full((n_rows, matrix.n_models), -1e4)
    return LikelihoodMatrix(
        np.vstack([matrix.values, bad]),
        np.concatenate([matrix.fold_ids, np.ones(n_rows, dtype=int)]),
        matrix.model_names,
    )


def test_softmax():
    """Test softmax is a probability vector and shift invariant."""
    p = np.array([0.5, -1.0, 3.0])
    z = softmax(p)
    assert np.isclose(z.sum(), 1.0)
    assert np.all(z > 0)
    assert np.allclose(z, softmax(p + 100.0))


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_weights_on_simplex(loglik_matrix, seed):
    """Test weights are in [0, 1] and sum to one."""
    result = optimize_stacking_weights(loglik_matrix, seed=seed)
    w = result.weight_array

    assert result.converged
    assert len(w) == 3
    assert np.all((w >= 0) & (w <= 1))
    assert abs(w.sum() - 1.0) < 1e-9


def test_nelder_mead_weights_on_simplex(loglik_matrix):
    """Test the derivative-free method also returns valid weights."""
    result = optimize_stacking_weights(loglik_matrix, seed=1, method="Nelder-Mead")
    w = result.weight_array
    assert np.all((w >= 0) & (w <= 1))
    assert abs(w.sum() - 1.0) < 1e-9


def test_dominant_candidate_gets_all_weight():
    """Test a candidate that is best at every observation takes (almost) all weight."""
    n_obs = 100
    values = np.column_stack([
        np.full(n_obs, -1.0),
        np.full(n_obs, -3.0),
        np.full(n_obs, -4.0),
    ])
    matrix = LikelihoodMatrix(values, np.arange(n_obs) % 4 + 1, ["best", "mid", "worst"])

    result = optimize_stacking_weights(matrix, seed=42)

    assert result.weight_for("best") > 0.99
    assert result.weight_for("mid") < 0.01
    assert result.weight_for("worst") < 0.01


def test_better_candidate_gets_largest_weight(loglik_matrix):
    """Test the candidate shifted upwards receives the largest weight."""
    result = optimize_stacking_weights(loglik_matrix, seed=0)
    assert np.argmax(result.weight_array) == 0


def test_stacked_score_beats_uniform(loglik_matrix):
    """Test optimised weights score at least as well as uniform weights."""
    result = optimize_stacking_weights(loglik_matrix, seed=0)

    stacked, _ = mixture_log_score(loglik_matrix, result.weight_array)
    uniform, _ = mixture_log_score(loglik_matrix, np.full(3, 1 / 3))

    assert stacked >= uniform - 1e-6
    assert np.isclose(-stacked, result.objective, rtol=1e-6)


def test_seed_makes_result_reproducible(loglik_matrix):
    """Test identical seeds give identical weights."""
    a = optimize_stacking_weights(loglik_matrix, seed=7)
    b = optimize_stacking_weights(loglik_matrix, seed=7)
    assert a.weights == b.weights


def test_gradient_matches_finite_differences(loglik_matrix):
    """Test the analytic gradient."""
    likelihoods = np.exp(loglik_matrix.values[:50])
    x0 = np.array([0.3, -0.2, 0.8])

    err = check_grad(stacking_objective, stacking_gradient, x0, likelihoods)
    scale = max(1.0, np.linalg.norm(stacking_gradient(x0, likelihoods)))

    assert err / scale < 1e-4


def test_underflow_rows_are_excluded(loglik_matrix):
    """Test rows where every likelihood underflows are masked, not fatal."""
    with_bad = _with_underflow_rows(loglik_matrix, 5)

    clean = optimize_stacking_weights(loglik_matrix, seed=3)
    masked = optimize_stacking_weights(with_bad, seed=3)

    assert np.all(np.isfinite(masked.weight_array))
    assert masked.n_excluded == 5
    assert masked.n_used == loglik_matrix.n_obs
    assert np.allclose(masked.weights, clean.weights, atol=1e-8)


def test_objective_ignores_nonfinite_rows():
    """Test the objective and gradient skip zero-likelihood rows."""
    likelihoods = np.array([[0.5, 0.2], [0.0, 0.0], [0.1, 0.4]])
    params = np.zeros(2)

    expected = -(np.log(0.35) + np.log(0.25))
    assert np.isclose(stacking_objective(params, likelihoods), expected)
    assert np.all(np.isfinite(stacking_gradient(params, likelihoods)))


def test_large_exclusion_warns(loglik_matrix, caplog):
    """Test a warning is logged when more than 10% of observations are masked."""
    with_bad = _with_underflow_rows(loglik_matrix, 50)

    with caplog.at_level(logging.INFO, logger="sdmstack.pipeline.stacking"):
        optimize_stacking_weights(with_bad, seed=0)

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert any("Excluded 50/250" in r.getMessage() for r in warnings)


def test_small_exclusion_does_not_warn(loglik_matrix, caplog):
    """Test masked observations under the threshold are only logged at INFO."""
    with_bad = _with_underflow_rows(loglik_matrix, 2)

    with caplog.at_level(logging.INFO, logger="sdmstack.pipeline.stacking"):
        optimize_stacking_weights(with_bad, seed=0)

    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
    assert any("Excluded 2/202" in r.getMessage() for r in caplog.records)


def test_no_usable_observations_raises():
    """Test an all-underflow matrix raises StackingError."""
    matrix = LikelihoodMatrix(np.full((10, 2), -1e4), np.ones(10), ["a", "b"])
    with pytest.raises(StackingError):
        optimize_stacking_weights(matrix, seed=0)


def test_include_folds(loglik_matrix):
    """Test the objective can be restricted to a subset of folds."""
    result = optimize_stacking_weights(loglik_matrix, include_folds=[1, 2], seed=0)
    assert result.n_used + result.n_excluded == 80


def test_unknown_folds_raise(loglik_matrix):
    """Test requesting only absent folds is an input error."""
    with pytest.raises(ValueError):
        optimize_stacking_weights(loglik_matrix, include_folds=[99])


def test_single_candidate():
    """Test a single candidate gets weight one without optimisation."""
    matrix = LikelihoodMatrix(np.full((5, 1), -1.0), np.ones(5), ["only"])
    result = optimize_stacking_weights(matrix, seed=0)
    assert result.weights == [1.0]
    assert result.converged


def test_optimizer_exception_becomes_stacking_error(loglik_matrix, monkeypatch):
    """Test an optimizer exception surfaces as StackingError."""
    def broken(*args, **kwargs):
        raise ValueError("boom")

    monkeypatch.setattr(stacking, "minimize", broken)
    with pytest.raises(StackingError, match="boom"):
        optimize_stacking_weights(loglik_matrix, seed=0)


def test_unsupported_method_is_not_a_stacking_failure(loglik_matrix):
    """Test a misspelt optimizer name raises instead of falling back to uniform weights."""
    with pytest.raises(ValueError, match="Unsupported stacking method") as excinfo:
        optimize_stacking_weights(loglik_matrix, seed=0, method="LBFGS")
    assert not isinstance(excinfo.value, StackingError)


def test_nonconvergence_falls_back_to_uniform(loglik_matrix, monkeypatch):
    """Test an unsuccessful optimisation falls back to uniform weights."""
    def not_converged(fun, x0, *args, **kwargs):
        return OptimizeResult(x=x0, fun=0.0, success=False, message="iteration limit")

    monkeypatch.setattr(stacking, "minimize", not_converged)

    result = stack_with_fallback(loglik_matrix, StackingConfig(), seed=0)

    assert result.fallback
    assert not result.converged
    assert np.allclose(result.weights, [1 / 3] * 3)
    assert "iteration limit" in result.message


def test_fallback_on_all_underflow():
    """Test stack_with_fallback never raises for unusable likelihoods."""
    matrix = LikelihoodMatrix(np.full((10, 4), -1e4), np.ones(10), list("abcd"))
    result = stack_with_fallback(matrix, seed=0)
    assert result.fallback
    assert result.weights == [0.25] * 4


def test_weight_table(loglik_matrix):
    """Test the weight table has one row per candidate."""
    result = stack_with_fallback(loglik_matrix, seed=0)
    table = result.to_frame()

    assert list(table["model"]) == ["m1", "m2", "m3"]
    assert {"model", "weight", "converged", "stacking_converged", "fallback"} <= set(table.columns)
    assert np.isclose(table["weight"].sum(), 1.0)


def test_weight_table_round_trip(loglik_matrix):
    """Test a weight table can be read back into a result."""
    result = stack_with_fallback(loglik_matrix, seed=0)
    restored = stacking.StackingResult.from_frame(result.to_frame())

    assert restored.model_names == result.model_names
    assert np.allclose(restored.weights, result.weights)
    assert restored.converged == result.converged
