"""Tests for diagnostics and ensemble summaries."""

import numpy as np
import pandas as pd
import pytest

from sdmstack.utils.metrics import (
    bhattacharyya_overlap,
    biomass_index,
    deviance_explained,
    mean_depth,
    overlap_by_time,
    weighted_residuals,
)


@pytest.fixture
def grid():
    """Projection grid with depth and area per cell."""
    return pd.DataFrame({
        "cell_id": ["A", "B"],
        "depth": [50.0, 150.0],
        "area_km2": [2.0, 4.0],
    })


@pytest.fixture
def point_ensemble():
    return pd.DataFrame({
        "year": [2020, 2020, 2021, 2021],
        "cell_id": ["A", "B", "A", "B"],
        "est": [1.0, 1.0, 3.0, 1.0],
    })


def test_deviance_explained():
    """Test deviance explained relative to the null model."""
    result = deviance_explained({"m1": -60.0, "m2": -100.0}, null_loglik=-100.0)

    assert list(result["model"]) == ["m1", "m2"]
    assert np.isclose(result.loc[0, "null_dev"], 200.0)
    assert np.isclose(result.loc[0, "resid_dev"], 120.0)
    assert np.isclose(result.loc[0, "dev_explained"], 40.0)
    assert np.isclose(result.loc[1, "dev_explained"], 0.0)


def test_deviance_explained_zero_null():
    with pytest.raises(ValueError):
        deviance_explained({"m1": -1.0}, null_loglik=0.0)


def test_weighted_residuals():
    """Test residuals are blended with the stacking weights."""
    r1 = np.array([1.0, -1.0, 0.5])
    r2 = np.array([-1.0, 1.0, 0.5])

    result = weighted_residuals([r1, r2], [0.25, 0.75])
    assert np.allclose(result, [-0.5, 0.5, 0.5])

    with pytest.raises(ValueError):
        weighted_residuals([r1, r2[:2]], [0.5, 0.5])


def test_bhattacharyya_overlap():
    """Test overlap bounds and scale invariance."""
    p = np.array([1.0, 2.0, 3.0])

    assert np.isclose(bhattacharyya_overlap(p, p), 1.0)
    assert np.isclose(bhattacharyya_overlap(p, 10 * p), 1.0)
    assert bhattacharyya_overlap(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == 0.0
    assert np.isclose(bhattacharyya_overlap(np.array([1.0, 1.0]), np.array([1.0, 0.0])), np.sqrt(0.5))


def test_bhattacharyya_invalid():
    """Test invalid densities."""
    with pytest.raises(ValueError):
        bhattacharyya_overlap(np.array([1.0, -1.0]), np.array([1.0, 1.0]))
    with pytest.raises(ValueError):
        bhattacharyya_overlap(np.zeros(2), np.ones(2))
    with pytest.raises(ValueError):
        bhattacharyya_overlap(np.ones(2), np.ones(3))


def test_overlap_by_time(point_ensemble):
    """Test per-year overlap between two species."""
    other = point_ensemble.copy()
    other["est"] = [1.0, 1.0, 0.0, 1.0]

    result = overlap_by_time(point_ensemble, other)

    assert list(result["year"]) == [2020, 2021]
    assert np.isclose(result.loc[0, "overlap"], 1.0)
    assert np.isclose(result.loc[1, "overlap"], np.sqrt(0.25))


def test_biomass_index_point(point_ensemble, grid):
    """Test area-weighted totals per year."""
    result = biomass_index(point_ensemble, grid)

    assert list(result["year"]) == [2020, 2021]
    assert np.allclose(result["index"], [6.0, 10.0])


def test_biomass_index_simulation(grid):
    """Test draw-wise totals summarised across draws."""
    ensemble = pd.DataFrame({
        "year": [2020, 2020],
        "cell_id": ["A", "B"],
        "sim_0": [1.0, 1.0],
        "sim_1": [2.0, 2.0],
        "sim_2": [3.0, 3.0],
    })

    result = biomass_index(ensemble, grid)

    assert np.isclose(result.loc[0, "index"], 12.0)
    assert np.isclose(result.loc[0, "se"], 6.0)
    assert result.loc[0, "lwr"] < result.loc[0, "index"] < result.loc[0, "upr"]


def test_biomass_index_missing_cells(point_ensemble, grid):
    with pytest.raises(ValueError, match="missing from grid"):
        biomass_index(point_ensemble, grid.iloc[:1])


def test_mean_depth(point_ensemble, grid):
    """Test density-weighted mean depth per year."""
    result = mean_depth(point_ensemble, grid)

    assert np.allclose(result["mean_depth"], [100.0, 75.0])
