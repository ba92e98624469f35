"""Run ensemble projections for climate-model scenarios with fixed stacking weights."""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Dict, Optional, Sequence

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from tqdm import tqdm

from sdmstack.config import Config
from sdmstack.data.schema import PredictionSchema
from sdmstack.pipeline.ensemble import combine_predictions
from sdmstack.pipeline.stacking import StackingResult
from sdmstack.utils.metrics import biomass_index, mean_depth

logger = logging.getLogger(__name__)


class ProjectionContext(BaseModel):
    """Reference grid shared by every scenario run.

    Built once and passed by reference; scenario code reads from it and never
    modifies it. The grid is copied on construction, so later changes to the
    caller's frame do not reach the context.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    grid: pd.DataFrame
    unit_col: str = "cell_id"

    @field_validator("grid")
    @classmethod
    def _copy_grid(cls, v: pd.DataFrame) -> pd.DataFrame:
        return v.copy()

    @model_validator(mode="after")
    def _check_grid(self) -> "ProjectionContext":
        if self.unit_col not in self.grid.columns:
            raise ValueError(f"Grid missing unit column {self.unit_col}")
        if self.grid[self.unit_col].duplicated().any():
            raise ValueError(f"Grid has duplicate {self.unit_col} values")
        return self

    @classmethod
    def from_frame(cls, grid: pd.DataFrame, unit_col: str = "cell_id") -> "ProjectionContext":
        return cls(grid=grid, unit_col=unit_col)


class ProjectionScenario(BaseModel):
    """Per-candidate projections for one climate model and time horizon."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    climate_model: Optional[str] = None
    horizon: Optional[str] = None
    predictions: Dict[str, pd.DataFrame] = Field(default_factory=dict)


def run_scenario(
    scenario: ProjectionScenario,
    stacking: StackingResult,
    mode: str = "point",
    schema: Optional[PredictionSchema] = None,
) -> pd.DataFrame:
    """Combine one scenario's candidate projections with the stacking weights.

    Args:
        scenario: Projections keyed by candidate name
        stacking: Weights derived once for this candidate set
        mode: "point" or "simulation"
        schema: Key/value column names

    Returns:
        Ensemble prediction table

    Raises:
        ValueError: If the scenario's candidates differ from the stacked candidates
    """
    names = stacking.model_names
    missing = [n for n in names if n not in scenario.predictions]
    extra = sorted(set(scenario.predictions) - set(names))
    if missing or extra:
        raise ValueError(
            f"Scenario {scenario.name} candidates do not match stacking weights: "
            f"missing={missing}, unexpected={extra}"
        )

    logger.info(f"Running scenario {scenario.name} ({mode} mode)")
    tables = [scenario.predictions[n] for n in names]
    return combine_predictions(tables, stacking.weight_array, mode=mode, schema=schema)


def run_scenarios(
    scenarios: Sequence[ProjectionScenario],
    stacking: StackingResult,
    mode: str = "point",
    schema: Optional[PredictionSchema] = None,
    n_jobs: int = 1,
) -> Dict[str, pd.DataFrame]:
    """Run independent scenarios, optionally in a process pool.

    Args:
        scenarios: Scenarios to project
        stacking: Weights reused unchanged for every scenario
        mode: "point" or "simulation"
        schema: Key/value column names
        n_jobs: Worker processes (1 runs sequentially)

    Returns:
        Scenario name to ensemble prediction table
    """
    names = [s.name for s in scenarios]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate scenario names: {names}")

    results: Dict[str, pd.DataFrame] = {}
    if n_jobs <= 1 or len(scenarios) <= 1:
        for scenario in tqdm(scenarios, desc="Projecting scenarios"):
            results[scenario.name] = run_scenario(scenario, stacking, mode, schema)
    else:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            futures = {
                executor.submit(run_scenario, scenario, stacking, mode, schema): scenario.name
                for scenario in scenarios
            }
            for future in tqdm(
                as_completed(futures), total=len(futures), desc="Projecting scenarios"
            ):
                results[futures[future]] = future.result()

    return {name: results[name] for name in names}


def summarize_scenario(
    ensemble: pd.DataFrame,
    context: ProjectionContext,
    config: Optional[Config] = None,
) -> Dict[str, pd.DataFrame]:
    """Biomass index and mean depth of one scenario's ensemble."""
    config = config or Config()
    ens = config.ensemble
    keys = ens.keys
    if keys[1] != context.unit_col:
        raise ValueError(
            f"Ensemble unit key {keys[1]} does not match context unit column {context.unit_col}"
        )
    return {
        "index": biomass_index(
            ensemble, context.grid, keys, ens.value_col, ens.sim_prefix, config.area_col
        ),
        "depth": mean_depth(
            ensemble, context.grid, keys, ens.value_col, ens.sim_prefix, config.depth_col
        ),
    }
