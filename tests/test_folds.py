"""Tests for cross-validation fold assignment."""

import numpy as np
import pandas as pd
import pytest

from sdmstack.data.folds import assign_folds


@pytest.fixture
def hauls():
    """Survey hauls over five years."""
    return pd.DataFrame({
        "haul_id": range(50),
        "year": np.repeat([2003, 2004, 2005, 2006, 2007], 10),
    })


def test_assign_folds(hauls):
    """Test every haul gets a 1-based fold and folds are balanced."""
    folds = assign_folds(hauls, n_folds=5, seed=1)

    assert len(folds) == 50
    assert set(folds) == {1, 2, 3, 4, 5}
    assert np.all(np.bincount(folds)[1:] == 10)


def test_assign_folds_reproducible(hauls):
    """Test the seed controls the assignment."""
    a = assign_folds(hauls, n_folds=5, seed=1)
    b = assign_folds(hauls, n_folds=5, seed=1)
    c = assign_folds(hauls, n_folds=5, seed=2)

    assert np.array_equal(a, b)
    assert not np.array_equal(a, c)


def test_group_folds_keep_years_together(hauls):
    """Test grouped assignment holds out whole years."""
    folds = assign_folds(hauls, n_folds=5, group_col="year")

    per_year = pd.Series(folds).groupby(hauls["year"]).nunique()
    assert (per_year == 1).all()
    assert len(set(folds)) == 5


def test_assign_folds_errors(hauls):
    """Test invalid requests."""
    with pytest.raises(ValueError):
        assign_folds(hauls, n_folds=1)
    with pytest.raises(ValueError):
        assign_folds(hauls.iloc[:3], n_folds=5)
    with pytest.raises(ValueError):
        assign_folds(hauls, n_folds=10, group_col="year")
    with pytest.raises(ValueError):
        assign_folds(hauls, n_folds=5, group_col="missing")
