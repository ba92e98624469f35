"""Configuration management using Pydantic."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdmstack.data.schema import PredictionSchema
from sdmstack.utils.io import load_yaml

# scipy.optimize.minimize methods usable without a Hessian
GRADIENT_METHODS = {"L-BFGS-B", "BFGS", "CG", "TNC", "SLSQP"}
BOUNDED_METHODS = {"L-BFGS-B", "TNC", "SLSQP", "Powell", "Nelder-Mead"}
STACKING_METHODS = GRADIENT_METHODS | {"Nelder-Mead", "Powell"}


class StackingConfig(BaseModel):
    """Configuration for the stacking weight optimizer.

    ``include_folds`` restricts the objective to a subset of held-out folds
    (all folds when None). ``param_bound`` caps the unconstrained softmax
    parameters for bounded methods so a dominated candidate's weight goes to
    roughly exp(-2 * param_bound) instead of drifting forever.
    """

    method: str = "L-BFGS-B"
    include_folds: Optional[List[int]] = None
    maxiter: int = 1000
    param_bound: float = 30.0
    exclusion_warn_fraction: float = 0.1  # Warn above this share of masked observations

    @field_validator("method")
    @classmethod
    def _check_method(cls, v: str) -> str:
        if v not in STACKING_METHODS:
            raise ValueError(
                f"Unsupported stacking method: {v} (choose from {sorted(STACKING_METHODS)})"
            )
        return v

    @field_validator("exclusion_warn_fraction")
    @classmethod
    def _check_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("exclusion_warn_fraction must be in [0, 1]")
        return v


class EnsembleConfig(BaseModel):
    """Configuration for the ensemble combiner."""

    mode: str = "point"  # "point" or "simulation"
    keys: List[str] = Field(default_factory=lambda: ["year", "cell_id"])
    value_col: str = "est"
    sim_prefix: str = "sim_"
    n_jobs: int = 1

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        if v not in ("point", "simulation"):
            raise ValueError(f"Unknown ensemble mode: {v}")
        return v

    def prediction_schema(self) -> PredictionSchema:
        return PredictionSchema(
            keys=self.keys, value_col=self.value_col, sim_prefix=self.sim_prefix
        )


class Config(BaseModel):
    """Main configuration for the stacking pipeline."""

    seed: int = 42
    folds: int = 10
    fold_group_col: Optional[str] = None

    stacking: StackingConfig = Field(default_factory=StackingConfig)
    ensemble: EnsembleConfig = Field(default_factory=EnsembleConfig)

    # Context grid columns used for index and depth summaries
    area_col: str = "area_km2"
    depth_col: str = "depth"

    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Config instance
        """
        data = load_yaml(path)
        return cls(**data)


class RuntimeSettings(BaseSettings):
    """Environment overrides (``SDMSTACK_LOG_LEVEL``, ``SDMSTACK_N_JOBS``)."""

    model_config = SettingsConfigDict(env_prefix="SDMSTACK_")

    log_level: Optional[str] = None
    n_jobs: Optional[int] = None

    def apply(self, config: Config) -> Config:
        """Return a copy of ``config`` with any environment overrides applied."""
        updated = config.model_copy(deep=True)
        if self.log_level is not None:
            updated.log_level = self.log_level
        if self.n_jobs is not None:
            updated.ensemble.n_jobs = self.n_jobs
        return updated


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to configuration file (defaults when None)

    Returns:
        Config instance
    """
    config = Config.from_yaml(config_path) if config_path else Config()
    return RuntimeSettings().apply(config)
