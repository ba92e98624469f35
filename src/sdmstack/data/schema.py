"""Column schemas and validation for stacking inputs and outputs."""

import logging
import re
from typing import List, Optional

import pandas as pd
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class LikelihoodSchema(BaseModel):
    """Schema for long-format cross-validation log-likelihood tables."""

    required_columns: List[str] = Field(
        default_factory=lambda: ["model", "obs_id", "cv_fold", "cv_loglik"]
    )
    optional_columns: List[str] = Field(default_factory=lambda: ["converged"])


class PredictionSchema(BaseModel):
    """Schema for per-candidate projection tables."""

    keys: List[str] = Field(default_factory=lambda: ["year", "cell_id"])
    value_col: str = "est"
    sim_prefix: str = "sim_"


class WeightSchema(BaseModel):
    """Schema for stacking weight tables."""

    required_columns: List[str] = Field(
        default_factory=lambda: ["model", "weight", "converged"]
    )


def validate_dataframe(
    df: pd.DataFrame,
    required_columns: List[str],
    optional_columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Validate DataFrame has required columns.

    Args:
        df: DataFrame to validate
        required_columns: List of required column names
        optional_columns: List of optional column names

    Returns:
        Validated DataFrame

    Raises:
        ValueError: If required columns are missing
    """
    missing_cols = set(required_columns) - set(df.columns)
    if missing_cols:
        raise ValueError(f"Missing required columns: {missing_cols}")

    if optional_columns:
        present_optional = set(optional_columns) & set(df.columns)
        logger.debug(f"Optional columns present: {present_optional}")

    return df


def validate_likelihood_table(df: pd.DataFrame) -> pd.DataFrame:
    schema = LikelihoodSchema()
    return validate_dataframe(df, schema.required_columns, schema.optional_columns)


def validate_weight_table(df: pd.DataFrame) -> pd.DataFrame:
    return validate_dataframe(df, WeightSchema().required_columns)


def simulation_columns(df: pd.DataFrame, prefix: str = "sim_") -> List[str]:
    """Return simulation draw columns (``prefix`` + integer) in draw order."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    matched = []
    for col in df.columns:
        m = pattern.match(str(col))
        if m:
            matched.append((int(m.group(1)), col))
    return [col for _, col in sorted(matched)]


def validate_prediction_table(
    df: pd.DataFrame,
    schema: PredictionSchema,
    mode: str = "point",
) -> pd.DataFrame:
    """Validate a candidate projection table for the given combine mode.

    Raises:
        ValueError: If key columns or value/simulation columns are missing
    """
    if mode == "point":
        return validate_dataframe(df, schema.keys + [schema.value_col])
    if mode == "simulation":
        validate_dataframe(df, schema.keys)
        if not simulation_columns(df, schema.sim_prefix):
            raise ValueError(
                f"No simulation columns with prefix '{schema.sim_prefix}' found"
            )
        return df
    raise ValueError(f"Unknown mode: {mode}")
