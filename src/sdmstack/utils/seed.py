"""Explicit random state for reproducible optimisation starts and draws."""

import random
from typing import Optional

import numpy as np


def set_seed(seed: int) -> None:
    """Seed the global Python and NumPy generators.

    Library code takes an explicit ``seed``/generator instead of relying on this;
    it is only called from the CLI entry points.

    Args:
        seed: Random seed value
    """
    random.seed(seed)
    np.random.seed(seed)


def get_rng(seed: Optional[int] = None) -> np.random.Generator:
    """Get a NumPy Generator with optional seed.

    Args:
        seed: Random seed value (optional)

    Returns:
        numpy Generator instance
    """
    return np.random.default_rng(seed)
