"""Command-line interface for the SDM stacking pipeline."""

import logging
import sys
from pathlib import Path

import click

from sdmstack.config import load_config
from sdmstack.data.folds import assign_folds
from sdmstack.data.schema import validate_dataframe, validate_weight_table
from sdmstack.pipeline.ensemble import ensemble_from_directory
from sdmstack.pipeline.likelihood import likelihood_matrix_from_long
from sdmstack.pipeline.scenarios import (
    ProjectionContext,
    ProjectionScenario,
    run_scenarios,
    summarize_scenario,
)
from sdmstack.pipeline.stacking import StackingResult, mixture_log_score, stack_with_fallback
from sdmstack.utils.io import load_table, save_table
from sdmstack.utils.metrics import deviance_explained, overlap_by_time
from sdmstack.utils.seed import set_seed

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

logger = logging.getLogger(__name__)


def _load(config):
    cfg = load_config(config)
    logging.getLogger().setLevel(cfg.log_level.upper())
    set_seed(cfg.seed)
    return cfg


@click.group()
def cli():
    """SDM stacking - likelihood-weighted ensembles of species distribution models."""
    pass


@cli.command()
@click.option("--input", required=True, help="Observation table (CSV or Parquet)")
@click.option("--output", required=True, help="Output table with a cv_fold column")
@click.option("--config", default=None, help="Configuration YAML file")
@click.option("--folds", default=None, type=int, help="Number of folds (overrides config)")
@click.option("--group-col", default=None, help="Hold out whole groups of this column")
def make_folds(input, output, config, folds, group_col):
    """Assign observations to cross-validation folds."""
    cfg = _load(config)

    df = load_table(input)
    df["cv_fold"] = assign_folds(
        df,
        n_folds=folds or cfg.folds,
        seed=cfg.seed,
        group_col=group_col or cfg.fold_group_col,
    )
    save_table(df, output)

    logger.info(f"Saved fold assignment to {output}")


@cli.command()
@click.option("--loglik", required=True, help="Long table of model, obs_id, cv_fold, cv_loglik")
@click.option("--out", required=True, help="Output weight table")
@click.option("--config", default=None, help="Configuration YAML file")
def stack(loglik, out, config):
    """Estimate stacking weights from held-out log-likelihoods."""
    cfg = _load(config)

    matrix = likelihood_matrix_from_long(load_table(loglik))
    result = stack_with_fallback(matrix, cfg.stacking, seed=cfg.seed)

    scored = matrix.subset_folds(cfg.stacking.include_folds)
    score, n_used = mixture_log_score(scored, result.weight_array)
    logger.info(f"Ensemble held-out log score: {score:.4f} over {n_used} observations")

    save_table(result.to_frame(), out)
    logger.info(f"Saved stacking weights to {out}")


@cli.command()
@click.option("--pred-dir", required=True, help="Directory with one prediction file per model")
@click.option("--out", required=True, help="Output ensemble table")
@click.option("--weights", default=None, help="Weight table from 'stack' (uniform if omitted)")
@click.option("--pattern", default="*.parquet", help="Glob pattern for prediction files")
@click.option("--mode", default=None, type=click.Choice(["point", "simulation"]))
@click.option("--config", default=None, help="Configuration YAML file")
def ensemble(pred_dir, out, weights, pattern, mode, config):
    """Combine candidate projections into an ensemble prediction."""
    cfg = _load(config)

    ensemble_from_directory(
        pred_dir=pred_dir,
        output_path=out,
        weights_path=weights,
        pattern=pattern,
        mode=mode or cfg.ensemble.mode,
        schema=cfg.ensemble.prediction_schema(),
    )

    logger.info(f"Saved ensemble predictions to {out}")


@cli.command()
@click.option("--scenario-dir", required=True, help="Directory with one subdirectory per scenario")
@click.option("--weights", required=True, help="Weight table from 'stack'")
@click.option("--outdir", required=True, help="Output directory for ensemble tables")
@click.option("--pattern", default="*.parquet", help="Glob pattern for prediction files")
@click.option("--config", default=None, help="Configuration YAML file")
def project(scenario_dir, weights, outdir, pattern, config):
    """Ensemble every climate scenario with one set of stacking weights."""
    cfg = _load(config)

    stacking = StackingResult.from_frame(validate_weight_table(load_table(weights)))

    scenarios = []
    for sub in sorted(p for p in Path(scenario_dir).iterdir() if p.is_dir()):
        predictions = {f.stem: load_table(f) for f in sorted(sub.glob(pattern))}
        scenarios.append(ProjectionScenario(name=sub.name, predictions=predictions))
    if not scenarios:
        raise click.UsageError(f"No scenario directories found in {scenario_dir}")

    results = run_scenarios(
        scenarios,
        stacking,
        mode=cfg.ensemble.mode,
        schema=cfg.ensemble.prediction_schema(),
        n_jobs=cfg.ensemble.n_jobs,
    )
    for name, table in results.items():
        save_table(table, Path(outdir) / f"{name}.parquet")

    logger.info(f"Saved {len(results)} scenario ensembles to {outdir}")


@cli.command()
@click.option("--logliks", required=True, help="Table of model, loglik")
@click.option("--null-loglik", required=True, type=float, help="Intercept-only log-likelihood")
@click.option("--out", required=True, help="Output deviance table")
def deviance(logliks, null_loglik, out):
    """Percent deviance explained per model."""
    df = validate_dataframe(load_table(logliks), ["model", "loglik"])
    result = deviance_explained(dict(zip(df["model"], df["loglik"])), null_loglik)
    save_table(result, out)

    logger.info(f"Saved deviance explained to {out}")


@cli.command()
@click.option("--species-a", required=True, help="Ensemble table for the first species")
@click.option("--species-b", required=True, help="Ensemble table for the second species")
@click.option("--out", required=True, help="Output overlap table")
@click.option("--config", default=None, help="Configuration YAML file")
def overlap(species_a, species_b, out, config):
    """Bhattacharyya overlap of two species' distributions per year."""
    cfg = _load(config)

    result = overlap_by_time(
        load_table(species_a),
        load_table(species_b),
        keys=cfg.ensemble.keys,
        value_col=cfg.ensemble.value_col,
    )
    save_table(result, out)

    logger.info(f"Saved overlap to {out}")


@cli.command()
@click.option("--ensemble", "ensemble_path", required=True, help="Ensemble table")
@click.option("--grid", required=True, help="Projection grid with depth and area columns")
@click.option("--outdir", required=True, help="Output directory")
@click.option("--config", default=None, help="Configuration YAML file")
def summarize(ensemble_path, grid, outdir, config):
    """Biomass index and mean depth of an ensemble projection."""
    cfg = _load(config)

    context = ProjectionContext.from_frame(load_table(grid), unit_col=cfg.ensemble.keys[1])
    summaries = summarize_scenario(load_table(ensemble_path), context, cfg)

    for name, table in summaries.items():
        save_table(table, Path(outdir) / f"{name}.csv")

    logger.info(f"Saved summaries to {outdir}")


if __name__ == "__main__":
    cli()
